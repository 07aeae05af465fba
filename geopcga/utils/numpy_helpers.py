# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""Small numpy helpers."""

import numpy as np

from geopcga.utils.types import NDArrayFloat


def colnorms(Y: NDArrayFloat) -> NDArrayFloat:
    """
    Return the euclidean norm of each column of a matrix.

    Parameters
    ----------
    Y : NDArrayFloat
        2D array with shape (n, k). A 1D array is considered as a single column.

    Returns
    -------
    NDArrayFloat
        1D array of the k column norms.
    """
    _Y = np.asarray(Y, dtype=np.float64)
    if _Y.ndim == 1:
        _Y = _Y.reshape(-1, 1)
    if _Y.ndim != 2:
        raise ValueError(f"Y must be a 1D or 2D array, got {_Y.ndim} dimensions!")
    return np.linalg.norm(_Y, axis=0)
