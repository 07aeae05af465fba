# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""Provide prior covariance matrix representations.

The prior covariance is only ever accessed through matrix-vector products, so every
representation is a :class:`scipy.sparse.linalg.LinearOperator`.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Callable, List, Optional, Union

import numpy as np
import scipy as sp
from scipy.sparse.linalg import LinearOperator
from scipy.spatial import distance_matrix

from geopcga.utils import NDArrayFloat, colnorms


class CovarianceMatrix(LinearOperator):
    """
    Represents a covariance matrix.

    This is an abstract class.
    """

    __slots__: List[str] = ["dtype", "count"]

    def __init__(self, shape) -> None:
        """
        Initialize the instance.

        Parameters
        ----------
        shape: Tuple[int, int]
            Shape of the matrix.
        """
        # counter of matrix-vector products
        self.count: int = 0
        super().__init__(dtype="d", shape=shape)

    @property
    def number_pts(self) -> int:
        """Number of points in the domain (n)."""
        return self.shape[0]

    def reset_comptors(self) -> None:
        """Set the comptors to zero."""
        self.count = 0

    def itercount(self) -> int:
        """Return the number of counts."""
        return self.count

    @abstractmethod
    def solve(self, b: NDArrayFloat) -> NDArrayFloat:
        """Solve Ax = b, with A, the current covariance matrix instance."""

    def get_diagonal(self) -> NDArrayFloat:
        """
        Return the diagonal entries of the matrix (variances).

        The matrix is never built explicitly. Instead the matvec interface is
        used to multiply all column of the identity matrix.
        """
        approx_diag = np.zeros(self.number_pts)
        for i in range(self.number_pts):
            # construct the ith row of the identity matrix
            v = np.zeros(self.number_pts)
            v[i] = 1.0
            approx_diag[i] = self.matvec(v)[i]
        return approx_diag

    def get_trace(self) -> float:
        """Return the trace of the covariance matrix."""
        return float(np.sum(self.get_diagonal()))


class DenseCovarianceMatrix(CovarianceMatrix):
    """Represents a dense covariance matrix."""

    def __init__(
        self,
        mat: NDArrayFloat,
        nugget: float = 0,
    ) -> None:
        _mat = np.asarray(mat, dtype=np.float64)
        if _mat.ndim != 2 or _mat.shape[0] != _mat.shape[1]:
            raise ValueError(
                f"The covariance matrix must be a square 2D array, got {_mat.shape}!"
            )
        self.mat: NDArrayFloat = _mat
        self.nugget: float = nugget
        super().__init__((_mat.shape[0], _mat.shape[0]))

    def _matvec(self, x: NDArrayFloat) -> NDArrayFloat:
        """Return the covariance matrix times the vector x."""
        self.count += 1
        return np.dot(self.mat, x) * (1 + self.nugget)

    def _rmatvec(self, x: NDArrayFloat) -> NDArrayFloat:
        """Return the covariance matrix conjugate transpose times the vector x."""
        self.count += 1
        return np.dot(self.mat.T, x) * (1 + self.nugget)

    def solve(self, b: NDArrayFloat) -> NDArrayFloat:
        """Solve Ax = b, with A, the current covariance matrix instance."""
        return sp.linalg.solve(self.mat * (1 + self.nugget), b, assume_a="sym")

    def get_diagonal(self) -> NDArrayFloat:
        """Return the diagonal entries of the matrix (variances)."""
        return self.mat.diagonal() * (1 + self.nugget)

    def get_trace(self) -> float:
        """Return the trace of the covariance matrix."""
        return float(self.mat.trace() * (1 + self.nugget))

    def todense(self) -> NDArrayFloat:
        return self.mat * (1 + self.nugget)


def generate_dense_matrix(
    pts: NDArrayFloat,
    kernel: Callable[[NDArrayFloat], NDArrayFloat],
    len_scale: Union[float, NDArrayFloat],
    nugget: float = 0.0,
) -> DenseCovarianceMatrix:
    """
    Generate a dense covariance matrix from points coordinates and a kernel.

    Compute O(n^2) interactions.

    Parameters
    ----------
    pts : NDArrayFloat
        Points coordinates with shape (n, ndim).
    kernel : Callable
        Isotropic covariance function of the scaled distance.
    len_scale: Union[float, NDArrayFloat]
        Correlation length along each axis. A scalar applies to all axes.
    nugget: float
        Relative nugget added to the diagonal. The default is 0.0.

    Returns
    -------
    DenseCovarianceMatrix
        The dense matrix.
    """
    # Scale the points coordinates
    scaled_pts = np.array(pts, copy=True, dtype=np.float64)
    if scaled_pts.ndim == 1:
        scaled_pts = scaled_pts.reshape(-1, 1)
    _len_scale = np.broadcast_to(
        np.asarray(len_scale, dtype=np.float64), (scaled_pts.shape[1],)
    )
    for dim in range(scaled_pts.shape[1]):
        scaled_pts[:, dim] /= _len_scale[dim]
    return DenseCovarianceMatrix(
        kernel(distance_matrix(scaled_pts, scaled_pts)), nugget=nugget
    )


class LowRankCovarianceMatrix(CovarianceMatrix):
    r"""
    Low rank approximation $\mathbf{Z}\mathbf{Z}^{T}$ of a covariance matrix.

    The K columns of $\mathbf{Z}$ are the zetas returned by
    :func:`geopcga.regularization.randomized_svd_zetas`.
    """

    def __init__(self, zetas: NDArrayFloat) -> None:
        """
        Initialize the instance.

        Parameters
        ----------
        zetas : NDArrayFloat
            2D array with shape (Ns, n_pc). Ns being the number of elements in the
            original covariance matrix.
        """
        _zetas = np.asarray(zetas, dtype=np.float64)
        if _zetas.ndim != 2:
            raise ValueError(
                f"zetas must be a 2D array with shape (Ns, n_pc), got {_zetas.shape}!"
            )
        self.zetas: NDArrayFloat = _zetas
        super().__init__((_zetas.shape[0], _zetas.shape[0]))

    @property
    def n_pc(self) -> int:
        """Return the number of principal components (columns of Z)."""
        return self.zetas.shape[1]

    def _matvec(self, x: NDArrayFloat) -> NDArrayFloat:
        """Return the covariance matrix times the vector x."""
        self.count += 1
        return self.zetas @ (self.zetas.T @ x.ravel())

    def _rmatvec(self, x: NDArrayFloat) -> NDArrayFloat:
        return self._matvec(x)

    def solve(self, x: NDArrayFloat) -> NDArrayFloat:
        r"""
        Return $(\mathbf{Z}\mathbf{Z}^{T})^{+} x$.

        The matrix is rank deficient, the pseudo-inverse is used so the result lies
        in the range of $\mathbf{Z}$.
        """
        pinv_zetas = sp.linalg.pinv(self.zetas)
        return pinv_zetas.T @ (pinv_zetas @ x)

    def get_diagonal(self) -> NDArrayFloat:
        """Return the diagonal entries of the matrix (variances)."""
        return np.sum(self.zetas**2, axis=1)

    def get_trace(self) -> float:
        """Return the trace of the covariance matrix."""
        return float(np.sum(self.zetas**2))

    def todense(self) -> NDArrayFloat:
        return self.zetas @ self.zetas.T


def get_explained_var(
    zetas: NDArrayFloat,
    cov_mat: Optional[CovarianceMatrix] = None,
    trace_cov_mat: Optional[float] = None,
) -> NDArrayFloat:
    """
    Return the fraction of the prior variance explained by each zeta.

    The squared norm of a zeta is the singular value of the associated component.
    """
    component_vars = colnorms(zetas) ** 2
    if trace_cov_mat is not None:
        return component_vars / trace_cov_mat
    if cov_mat is not None:
        return component_vars / cov_mat.get_trace()
    else:
        raise ValueError("You must provide a Covariance matrix instance or the trace !")
