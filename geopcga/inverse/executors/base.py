# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""Implement the interface for inversion executors."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar, Union

import numpy as np

from geopcga.inverse.forward import EnsembleForwardModel
from geopcga.utils import NDArrayFloat


def register_params_ds(params_ds: str):  # type: ignore
    """
    Add the given string to the __doc__attribute of the class.

    Parameters
    ----------
    params_ds : str
        String added to the parameters section.
    """

    def decorator(klass: Type):  # type: ignore
        """Decorate the klass."""
        klass.__doc__ += params_ds
        return klass

    return decorator


base_solver_config_params_ds = """
    is_parallel: bool, optional
        Whether to run the forward models one at the time or in a concurrent way.
        The default is False.
    max_workers: int, optional
        Number of workers to use if the concurrency is enabled. The default is 2.
    use_threads: bool, optional
        Whether to use a pool of threads instead of a pool of processes when the
        concurrency is enabled. The default is False.
    random_state: Optional[Union[int, np.random.Generator, np.random.RandomState]]
        Pseudorandom number generator state used to draw random matrices.
        If `random_state` is ``None`` (or `np.random`), the
        `numpy.random.RandomState` singleton is used.
        If `random_state` is an int, a new ``RandomState`` instance is used,
        seeded with `random_state`.
        If `random_state` is already a ``Generator`` or ``RandomState``
        instance then that instance is used. The default is 1.
        """


@register_params_ds(base_solver_config_params_ds)
@dataclass
class BaseSolverConfig:
    """
    Base class for solver configuration.

    Attributes
    ----------
    """

    is_parallel: bool = False
    max_workers: int = 2
    use_threads: bool = False
    random_state: Optional[Union[int, np.random.Generator, np.random.RandomState]] = 1


_BaseSolverConfig = TypeVar("_BaseSolverConfig", bound=BaseSolverConfig)


class BaseInversionExecutor(ABC, Generic[_BaseSolverConfig]):
    r"""
    Base class Executor for assisted inversion.

    Parameters
    ----------
    forward_model : Callable[[NDArrayFloat], NDArrayFloat]
        Black-box forward model mapping a 1D parameters vector to a 1D vector of
        predictions. With a pool of processes, it must be picklable.
    s_init : NDArrayFloat
        Initial parameters vector with shape (:math:`N_{s}`).
    obs : NDArrayFloat
        Observations with shape (:math:`N_{obs}`).
    cov_obs: Union[float, NDArrayFloat]
        Either a float, a 1D array of diagonal covariances, or a 2D covariance
        matrix. This is usually denoted :math:`\mathbf{R}` and represents
        observation or measurement errors.
    solver_config : _BaseSolverConfig
        Configuration for the solver and the inversion.
    """

    def __init__(
        self,
        forward_model: Callable[[NDArrayFloat], NDArrayFloat],
        s_init: NDArrayFloat,
        obs: NDArrayFloat,
        cov_obs: Union[float, NDArrayFloat],
        solver_config: _BaseSolverConfig,
    ) -> None:
        """Initialize the executor."""
        self.solver_config: _BaseSolverConfig = solver_config
        self.s_init: NDArrayFloat = np.array(s_init, dtype=np.float64).ravel()
        self.obs: NDArrayFloat = np.array(obs, dtype=np.float64).ravel()
        self.cov_obs = cov_obs
        self.fwd_model: EnsembleForwardModel = EnsembleForwardModel(
            forward_model,
            is_parallel=solver_config.is_parallel,
            max_workers=solver_config.max_workers,
            use_threads=solver_config.use_threads,
            logger=self.logger,
        )

    @property
    def logger(self) -> Optional[logging.Logger]:
        """Return the logger of the configuration if any."""
        return getattr(self.solver_config, "logger", None)

    @property
    def s_dim(self) -> int:
        """Return the length of the parameters vector."""
        return self.s_init.size

    @property
    def d_dim(self) -> int:
        """Return the number of observations / forecast data."""
        return self.obs.size

    @abstractmethod
    def _init_solver(self) -> None:
        """Initiate a solver with its args."""

    def _get_solver_name(self) -> str:
        """Return the solver name."""
        return "unknown"

    def get_display_dict(self) -> Dict[str, Any]:
        return {}

    def _initial_display(self) -> None:
        """Display basic info about the inversion."""
        DISPLAY_TOP_LEN = 80
        DISPLAY_SHIFT = 50

        logging.info(f"{' Inversion Parameters ':=^{DISPLAY_TOP_LEN}}")

        # display specific to the solver
        display_dict = {
            "Method": self._get_solver_name(),
            "": "",  # space
            "Number of unknowns (adjusted values)": self.s_dim,
            "Number of observation data points (values)": self.d_dim,
            "Concurrent forward model runs": self.solver_config.is_parallel,
            **self.get_display_dict(),
        }

        for k, v in display_dict.items():
            if k == "":
                logging.info("")
            else:
                logging.info(f"{k: <{DISPLAY_SHIFT}}: {v}")

        # End of display
        logging.info(f"{'':=^{DISPLAY_TOP_LEN}}")

    def run(self) -> Any:
        """Display the inversion summary and initialize the solver."""
        self._initial_display()
        self._init_solver()
