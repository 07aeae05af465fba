# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""
Provide interfaces to the inverse problem solvers.

The following functionalities are directly provided on module-level.

.. currentmodule:: geopcga.inverse.executors

Classes
=======

.. autosummary::
   :toctree: _autosummary

    BaseSolverConfig
    BaseInversionExecutor
    PCGAInversionExecutor
    PCGASolverConfig

Functions
=========

.. autosummary::
   :toctree: _autosummary

    register_params_ds

"""

from geopcga.inverse.executors.base import (
    BaseInversionExecutor,
    BaseSolverConfig,
    register_params_ds,
)
from geopcga.inverse.executors.pcga import PCGAInversionExecutor, PCGASolverConfig

__all__ = [
    "BaseSolverConfig",
    "BaseInversionExecutor",
    "PCGAInversionExecutor",
    "PCGASolverConfig",
    "register_params_ds",
]
