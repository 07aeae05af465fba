# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""
Provide the PCGA solver, the forward model batch dispatch and the executors.

The following functionalities are directly provided on module-level.

.. currentmodule:: geopcga.inverse

Inversion executors
^^^^^^^^^^^^^^^^^^^

.. autosummary::
   :toctree: _autosummary

    executors

Solvers
^^^^^^^

.. autosummary::
   :toctree: _autosummary

    PCGA
    SolveStrategy
    CovObs
    InternalState
    pcga_iteration
    pcga_iteration_lm
    rga_iteration
    apply_whitening

Forward models
^^^^^^^^^^^^^^

.. autosummary::
   :toctree: _autosummary

    EnsembleForwardModel
    WhitenedForwardModel
    ForwardModelError

"""

from geopcga.inverse import executors
from geopcga.inverse.executors import PCGAInversionExecutor, PCGASolverConfig
from geopcga.inverse.forward import (
    EnsembleForwardModel,
    ForwardModelError,
    WhitenedForwardModel,
)
from geopcga.inverse.solvers import (
    DEFAULT_DELTA,
    PCGA,
    CovObs,
    InternalState,
    SolveStrategy,
    apply_whitening,
    pcga_iteration,
    pcga_iteration_lm,
    rga_iteration,
)

__all__ = [
    "executors",
    "PCGAInversionExecutor",
    "PCGASolverConfig",
    "EnsembleForwardModel",
    "ForwardModelError",
    "WhitenedForwardModel",
    "DEFAULT_DELTA",
    "PCGA",
    "CovObs",
    "InternalState",
    "SolveStrategy",
    "apply_whitening",
    "pcga_iteration",
    "pcga_iteration_lm",
    "rga_iteration",
]
