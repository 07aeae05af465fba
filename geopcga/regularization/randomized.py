# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""
Randomized low rank factorization of the prior covariance matrix.

The covariance matrix is never inverted nor stored beyond what the caller supplies:
it is only accessed through products with (tall and skinny) matrices.

References
----------
- Halko N, Martinsson PG, Tropp JA. Finding structure with randomness:
  probabilistic algorithms for constructing approximate matrix decompositions.
  SIAM Review 2011; 53(2):217-288.
- PK Kitanidis, J Lee, Principal Component Geostatistical Approach for
  large‐dimensional inverse problems, WRR 50 (7), 5428-5443
"""

from __future__ import annotations

import logging
from time import time
from typing import Optional, Union

import numpy as np
import scipy as sp
from numpy.random import Generator, RandomState
from scipy.sparse.linalg import LinearOperator

from geopcga.utils import NDArrayFloat, check_random_state

# Seed used to draw the gaussian test matrix when none is given.
DEFAULT_SEED: int = 1


def _pivoted_qr(Y: NDArrayFloat) -> NDArrayFloat:
    """Return the orthonormal factor of the economic column-pivoted QR of Y."""
    return sp.linalg.qr(Y, mode="economic", pivoting=True)[0]


def _lu(Y: NDArrayFloat) -> NDArrayFloat:
    """Return the permuted lower triangular factor of the LU decomposition of Y."""
    return sp.linalg.lu(Y, permute_l=True)[0]


def range_finder(
    A: Union[NDArrayFloat, LinearOperator],
    size: int,
    n_power_its: int = 0,
    random_state: Optional[Union[int, RandomState, Generator]] = DEFAULT_SEED,
) -> NDArrayFloat:
    """
    Return an orthonormal basis approximating the range of the symmetric matrix A.

    The range is sampled with a gaussian test matrix and optionally refined with
    normalized power iterations, which improves the accuracy when the singular values
    of A decay slowly (algorithm 4.4 in Halko et al., 2011). Intermediate
    re-normalizations use the (cheap) LU decomposition while the first pass without
    power iterations and the last pass with power iterations use the numerically
    stable column-pivoted QR decomposition.

    Parameters
    ----------
    A : Union[NDArrayFloat, LinearOperator]
        Symmetric (m, m) matrix or linear operator supporting ``A @ X`` products.
        Because A is symmetric, products with its transpose reuse ``A @``.
    size : int
        Number of columns of the basis (target rank plus oversampling).
        It must not exceed m.
    n_power_its : int, optional
        Number of power iterations. The default is 0.
    random_state: Optional[Union[int, np.random.Generator, np.random.RandomState]]
        Pseudorandom number generator state used to draw the test matrix.
        If `random_state` is an int, a new ``RandomState`` instance is used,
        seeded with `random_state`.
        If `random_state` is already a ``Generator`` or ``RandomState``
        instance then that instance is used. The default is 1, so successive calls
        are reproducible.

    Returns
    -------
    NDArrayFloat
        (m, size) matrix with orthonormal columns.
    """
    if len(A.shape) != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"A must be a square matrix, got shape {A.shape}!")
    if size < 1 or size > A.shape[1]:
        raise ValueError(
            f"The range size ({size}) must be between 1 and the dimension of A"
            f" ({A.shape[1]})!"
        )
    if n_power_its < 0:
        raise ValueError("The number of power iterations must be positive or zero!")

    rng = check_random_state(random_state)
    Omega = rng.standard_normal(size=(A.shape[1], size))
    Y = A @ Omega

    if n_power_its == 0:
        return _pivoted_qr(Y)

    Q = _lu(Y)
    for it in range(1, n_power_its + 1):
        # (Q^T A)^T = A Q for a symmetric matrix
        Q = _lu(A @ Q)
        Q = A @ Q
        if it < n_power_its:
            Q = _lu(Q)
        else:
            Q = _pivoted_qr(Q)
    return Q


def randomized_svd_zetas(
    A: Union[NDArrayFloat, LinearOperator],
    n_pc: int,
    n_oversamples: int = 0,
    n_power_its: int = 0,
    random_state: Optional[Union[int, RandomState, Generator]] = DEFAULT_SEED,
) -> NDArrayFloat:
    r"""
    Return the zetas, i.e., the low rank factor Z with $ZZ^{T} \approx A$.

    The matrix is projected onto the basis returned by :func:`range_finder` and the
    small projected matrix is decomposed with a direct SVD (algorithm 5.1 in Halko
    et al., 2011). The decomposition is truncated to `n_pc` components after the SVD,
    the `n_oversamples` extra components are discarded.

    Parameters
    ----------
    A : Union[NDArrayFloat, LinearOperator]
        Symmetric positive semi-definite (m, m) prior covariance matrix.
    n_pc : int
        Target rank K, i.e., number of principal components.
    n_oversamples : int, optional
        Oversampling parameter p. The default is 0.
    n_power_its : int, optional
        Number of power iterations q. The default is 0.
    random_state: Optional[Union[int, np.random.Generator, np.random.RandomState]]
        See :func:`range_finder`. The default is 1.

    Returns
    -------
    NDArrayFloat
        The zetas as an (m, n_pc) matrix.
    """
    if n_pc < 1:
        raise ValueError("The number of principal components must be at least 1!")
    if n_oversamples < 0:
        raise ValueError("The oversampling parameter must be positive or zero!")

    logging.info("Randomized SVD of the prior covariance")
    start = time()

    Q = range_finder(A, n_pc + n_oversamples, n_power_its, random_state)
    # Q^T A = (A Q)^T for a symmetric matrix -> (n_pc + p, m)
    B = (A @ Q).T
    S, Vh = sp.linalg.svd(B, full_matrices=False)[1:]

    logging.info(
        "- time for randomized SVD with k = %d (p = %d, q = %d) is %g sec"
        % (n_pc, n_oversamples, n_power_its, round(time() - start))
    )
    logging.info(
        f"- 1st sing. val : {S[0]}, {n_pc}-th sing. val : {S[n_pc - 1]}, "
        f"ratio: {S[n_pc - 1] / S[0]}"
    )

    return Vh[:n_pc, :].T * np.sqrt(S[:n_pc])
