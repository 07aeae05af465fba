"""
Provide the prior covariance representations and their randomized factorization.

.. currentmodule:: geopcga.regularization

Covariance matrices
^^^^^^^^^^^^^^^^^^^

.. autosummary::
   :toctree: _autosummary

    CovarianceMatrix
    DenseCovarianceMatrix
    LowRankCovarianceMatrix
    generate_dense_matrix
    get_explained_var

Randomized factorization
^^^^^^^^^^^^^^^^^^^^^^^^

.. autosummary::
   :toctree: _autosummary

    range_finder
    randomized_svd_zetas

"""

from geopcga.regularization.covariances import (
    CovarianceMatrix,
    DenseCovarianceMatrix,
    LowRankCovarianceMatrix,
    generate_dense_matrix,
    get_explained_var,
)
from geopcga.regularization.randomized import (
    DEFAULT_SEED,
    randomized_svd_zetas,
    range_finder,
)

__all__ = [
    "CovarianceMatrix",
    "DenseCovarianceMatrix",
    "LowRankCovarianceMatrix",
    "generate_dense_matrix",
    "get_explained_var",
    "DEFAULT_SEED",
    "range_finder",
    "randomized_svd_zetas",
]
