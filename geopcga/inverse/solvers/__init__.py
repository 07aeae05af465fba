# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""Inverse problem solvers."""

from geopcga.inverse.solvers.pcga import (
    DEFAULT_DELTA,
    PCGA,
    CovObs,
    InternalState,
    SolveStrategy,
    apply_whitening,
    as_zetas,
    get_tau,
    pcga_iteration,
    pcga_iteration_lm,
    rga_iteration,
)

__all__ = [
    "DEFAULT_DELTA",
    "PCGA",
    "CovObs",
    "InternalState",
    "SolveStrategy",
    "apply_whitening",
    "as_zetas",
    "get_tau",
    "pcga_iteration",
    "pcga_iteration_lm",
    "rga_iteration",
]
