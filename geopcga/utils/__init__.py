"""
geopcga submodule providing tools and utilities for other submodules.

.. currentmodule:: geopcga.utils

Working string enums
^^^^^^^^^^^^^^^^^^^^

Provide a str enum class.

.. autosummary::
   :toctree: _autosummary

    StrEnum

Numpy helpers
^^^^^^^^^^^^^

.. autosummary::
   :toctree: _autosummary

    colnorms
    check_random_state

Others
^^^^^^

.. autosummary::
   :toctree: _autosummary

    show_versions

Types
^^^^^

.. autosummary::
   :toctree: _autosummary

    NDArrayFloat
    NDArrayInt
    NDArrayBool

"""

from scipy._lib._util import check_random_state  # To handle random_state

from geopcga.utils.enum import StrEnum
from geopcga.utils.numpy_helpers import colnorms
from geopcga.utils.types import NDArrayBool, NDArrayFloat, NDArrayInt
from geopcga.utils.versions import show_versions

__all__ = [
    "StrEnum",
    "colnorms",
    "check_random_state",
    "show_versions",
    "NDArrayFloat",
    "NDArrayInt",
    "NDArrayBool",
]
