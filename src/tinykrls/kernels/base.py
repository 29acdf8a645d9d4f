from __future__ import annotations

__all__ = ["Kernel", "KernelMatrix"]

from abc import abstractmethod

import equinox as eqx
import jax
import jax.numpy as jnp

from tinykrls.helpers import JAXArray


class Kernel(eqx.Module):
    """The base class for kernel implementations

    Subclasses should accept parameters in their ``__init__`` and then implement
    :func:`Kernel.evaluate` and :func:`Kernel.evaluate_diag`.
    """

    @abstractmethod
    def evaluate(self, X1: JAXArray, X2: JAXArray) -> JAXArray:
        """Evaluate the kernel at a pair of input coordinates

        This method should treat ``X1`` and ``X2`` as single datapoints with
        shape ``(n_dim,)``, and let the :class:`Kernel` ``vmap`` magic handle
        all the broadcasting. Users shouldn't generally call it directly;
        instead "call" the kernel instance, for example ``Gaussian(2.0)(X1,
        X2)`` for arrays of input coordinates ``X1`` and ``X2``.
        """
        del X1, X2
        raise NotImplementedError

    @abstractmethod
    def evaluate_diag(self, X: JAXArray) -> JAXArray:
        """Evaluate the kernel at a single coordinate paired with itself"""
        del X
        raise NotImplementedError

    def matmul(
        self,
        X1: JAXArray,
        X2: JAXArray,
        y: JAXArray,
        *,
        block_size: int | None = None,
    ) -> JAXArray:
        """Compute ``K(X1, X2) @ y``

        Args:
            X1: The row coordinates with shape ``(n1, n_dim)``.
            X2: The column coordinates with shape ``(n2, n_dim)``.
            y: The right hand side with shape ``(n2,)`` or ``(n2, m)``.
            block_size: If provided, the rows of ``X1`` are processed in blocks
                of this size so that at most a ``(block_size, n2)`` slab of the
                kernel matrix is resident at any time.
        """
        if block_size is None or block_size >= X1.shape[0]:
            return jnp.dot(self(X1, X2), y)
        return jnp.concatenate(
            [
                jnp.dot(self(X1[start : start + block_size], X2), y)
                for start in range(0, X1.shape[0], block_size)
            ],
            axis=0,
        )

    def __call__(self, X1: JAXArray, X2: JAXArray | None = None) -> JAXArray:
        if X2 is None:
            k = jax.vmap(self.evaluate_diag, in_axes=0)(X1)
            if k.ndim != 1:
                raise ValueError(
                    "Invalid kernel diagonal shape: "
                    f"expected ndim = 1, got ndim={k.ndim} "
                    "check the dimensions of the input coordinates"
                )
            return k
        k = jax.vmap(jax.vmap(self.evaluate, in_axes=(None, 0)), in_axes=(0, None))(
            X1, X2
        )
        if k.ndim != 2:
            raise ValueError(
                "Invalid kernel shape: "
                f"expected ndim = 2, got ndim={k.ndim} "
                "check the dimensions of the input coordinates"
            )
        return k


class KernelMatrix(eqx.Module):
    """An implicit, symmetric kernel matrix ``K(X, X)``

    This object never stores the full matrix. Matrix products are evaluated
    blockwise with :func:`Kernel.matmul`, so it can stand in for a dense array
    anywhere that only ``shape``, ``dtype`` and ``@`` are required, like the
    randomized eigensolver.

    Args:
        kernel: The kernel function.
        X: The input coordinates with shape ``(n_data, n_dim)``.
        block_size: The number of rows evaluated at once.
    """

    kernel: Kernel
    X: JAXArray
    block_size: int = eqx.field(default=512, static=True)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.X.shape[0], self.X.shape[0])

    @property
    def dtype(self) -> jnp.dtype:
        return self.X.dtype

    def diagonal(self) -> JAXArray:
        return self.kernel(self.X)

    def to_dense(self) -> JAXArray:
        return self.kernel(self.X, self.X)

    def __matmul__(self, other: JAXArray) -> JAXArray:
        return self.kernel.matmul(self.X, self.X, other, block_size=self.block_size)
