"""
Purpose
=======

**geopcga** is an open-source, pure python, and object-oriented library that provides
an implementation of the Principal Component Geostatistical Approach (PCGA) for
large-scale geostatistical inverse problems with black-box forward models.

Submodules
==========

.. autosummary::
    inverse
    utils
    regularization

"""

from geopcga import inverse, regularization, utils
from geopcga.__about__ import __author__, __email__, __version__

__all__ = [
    "__version__",
    "__email__",
    "__author__",
    "inverse",
    "utils",
    "regularization",
]
