import nox

PYTHON_VERSIONS = ["3.9", "3.10", "3.11", "3.12"]


@nox.session(python=PYTHON_VERSIONS)
def test(session: nox.Session) -> None:
    session.install(".[test]")
    session.run("pytest", *session.posargs)


@nox.session(python=PYTHON_VERSIONS)
def coverage(session: nox.Session) -> None:
    session.install(".[coverage]")
    session.run("pytest", "--cov=tinykrls", *session.posargs)
