"""
The exceptions raised by ``tinykrls``. All of them derive from
:class:`KRLSError`, and each one also subclasses the closest builtin exception
so that generic handlers (for example ``except ValueError``) keep working.
None of these conditions are transient, so nothing in the library retries
after catching one.
"""

from __future__ import annotations

__all__ = [
    "KRLSError",
    "InvalidParameterError",
    "UnstableDecompositionError",
    "SingularMatrixError",
    "NumericOverflowError",
    "NotFittedError",
]


class KRLSError(Exception):
    """Base class for all errors raised by ``tinykrls``"""


class InvalidParameterError(KRLSError, ValueError):
    """A parameter or input shape was rejected before any computation"""


class UnstableDecompositionError(KRLSError, ArithmeticError):
    """An eigendecomposition is degenerate or on the wrong scale

    Raised when eigenvalues are negative beyond numerical tolerance, or when
    the returned eigenvalues don't match the Rayleigh quotients of their
    eigenvectors (for example, squared eigenvalues from an SVD based solver).
    """


class SingularMatrixError(KRLSError, ArithmeticError):
    """The regularized kernel matrix has no inverse"""


class NumericOverflowError(KRLSError, FloatingPointError):
    """A leave-one-out error evaluation produced a non-finite value"""


class NotFittedError(KRLSError, RuntimeError):
    """A fitted-model accessor was called before a successful ``fit``"""
