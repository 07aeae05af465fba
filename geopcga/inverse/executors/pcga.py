# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""
Implement the interface for the PCGA inversion executor.

PCGA stands for Principal Component Geostatistical Approach.

The executor factorizes the prior covariance once with a randomized SVD, then runs
the Gauss-Newton iterations of :class:`geopcga.inverse.solvers.PCGA`.

References
----------

- J Lee, PK Kitanidis, "Large‐scale hydraulic tomography and joint inversion of head
and tracer data using the Principal Component Geostatistical Approach (PCGA)",
WRR 50 (7), 5410-5427

- PK Kitanidis, J Lee, Principal Component Geostatistical Approach for large‐dimensional
inverse problems, WRR 50 (7), 5428-5443
"""

import logging
from dataclasses import astuple, dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
from scipy.sparse.linalg import LinearOperator

from geopcga.inverse.executors.base import (
    BaseInversionExecutor,
    BaseSolverConfig,
    base_solver_config_params_ds,
    register_params_ds,
)
from geopcga.inverse.solvers import DEFAULT_DELTA, PCGA, SolveStrategy
from geopcga.regularization import get_explained_var, randomized_svd_zetas
from geopcga.utils import NDArrayFloat

pcga_solver_config_params_ds = r"""
    n_pc: int
        Number of principal components (zetas) of the prior covariance.
        The default is 20.
    n_oversamples: int
        Oversampling parameter of the randomized SVD. The default is 0.
    n_power_its: int
        Number of power iterations of the randomized SVD. The default is 0.
    strategy: SolveStrategy
        Solve strategy of the bordered system. The default is `SolveStrategy.PLAIN`.
    maxiter: int
        Maximum number of Gauss-Newton iterations. The default is 14.
    jtol: float
        The iterations stop when the cost decreases by less than `jtol`.
        The default is 0.01.
    delta: float
        Finite difference step. The default is sqrt(machine eps).
    is_randls: bool
        Whether to sketch the bordered system with `randls_mat`. The default is False.
    randls_mat: Optional[NDArrayFloat]
        Sketching matrix with N_obs + 1 columns. The default is None.
    whitening_mat: Optional[NDArrayFloat]
        Whitening matrix with N_obs columns, required by the whitened strategy.
        The default is None.
    lm_option: int
        0 for the undamped solve, 1 for the damped solves (Levenberg-Marquardt
        strategy only). The default is 1.
    max_step: float
        Step size above which the damping is increased. The default is 35.
    lm_lambda: float
        Initial damping parameter. The default is 0.5.
    lambda_up: float
        Damping increase factor. The default is 2.
    lambda_down: float
        Damping decrease factor. The default is 0.5.
    lm_gamma: float
        Exponent of the complementary damping weight. The default is 1.1.
    logger: Optional[logging.Logger]
        Logger. The default is `logging.getLogger("PCGA")`.
"""


@register_params_ds(pcga_solver_config_params_ds)
@register_params_ds(base_solver_config_params_ds)
@dataclass
class PCGASolverConfig(BaseSolverConfig):
    """
    Principal Component Geostatistical Approach Inversion Configuration.

    Attributes
    ----------
    """

    n_pc: int = 20
    n_oversamples: int = 0
    n_power_its: int = 0
    strategy: SolveStrategy = SolveStrategy.PLAIN
    maxiter: int = 14
    jtol: float = 0.01
    delta: float = DEFAULT_DELTA
    is_randls: bool = False
    randls_mat: Optional[NDArrayFloat] = None
    whitening_mat: Optional[NDArrayFloat] = None
    lm_option: int = 1
    max_step: float = 35.0
    lm_lambda: float = 0.5
    lambda_up: float = 2.0
    lambda_down: float = 0.5
    lm_gamma: float = 1.1
    logger: Optional[logging.Logger] = logging.getLogger("PCGA")

    def __iter__(self):
        return iter(astuple(self))


class PCGAInversionExecutor(BaseInversionExecutor[PCGASolverConfig]):
    """
    Principal Component Geostatistical Approach Inversion Executor.

    Parameters
    ----------
    forward_model : Callable[[NDArrayFloat], NDArrayFloat]
        Black-box forward model.
    s_init : NDArrayFloat
        Initial parameters vector.
    obs : NDArrayFloat
        Observations.
    cov_obs : Union[float, NDArrayFloat]
        Covariance of the measurement errors.
    drift : NDArrayFloat
        Drift (mean) vector of the prior.
    prior_cov : Optional[Union[NDArrayFloat, LinearOperator]]
        Prior covariance matrix or operator. Only required if `zetas` is None.
    solver_config : PCGASolverConfig
        Configuration of the inversion.
    s_true: Optional[NDArrayFloat]
        True parameters, only used to compute the RMSE. The default is None.
    zetas: Optional[NDArrayFloat]
        Precomputed zetas with shape (N_s, K). If None, they are computed from
        `prior_cov`. The default is None.
    """

    def __init__(
        self,
        forward_model: Callable[[NDArrayFloat], NDArrayFloat],
        s_init: NDArrayFloat,
        obs: NDArrayFloat,
        cov_obs: Union[float, NDArrayFloat],
        drift: NDArrayFloat,
        prior_cov: Optional[Union[NDArrayFloat, LinearOperator]],
        solver_config: PCGASolverConfig,
        s_true: Optional[NDArrayFloat] = None,
        zetas: Optional[NDArrayFloat] = None,
    ) -> None:
        super().__init__(forward_model, s_init, obs, cov_obs, solver_config)
        if zetas is None and prior_cov is None:
            raise ValueError(
                "You must provide either a prior covariance matrix (`prior_cov`) or "
                "precomputed zetas!"
            )
        self.drift = drift
        self.prior_cov = prior_cov
        self.s_true = s_true
        self.zetas: Optional[NDArrayFloat] = zetas
        self.solver: Optional[PCGA] = None

    def _get_solver_name(self) -> str:
        """Return the solver name."""
        return "PCGA"

    def get_display_dict(self) -> Dict[str, Any]:
        return {
            "Solve strategy": str(self.solver_config.strategy),
            "Number of principal components (n_pc)": self.solver_config.n_pc,
            "Oversampling (n_oversamples)": self.solver_config.n_oversamples,
            "Power iterations (n_power_its)": self.solver_config.n_power_its,
            "Maximum Gauss-Newton iterations": self.solver_config.maxiter,
        }

    def _compute_zetas(self) -> NDArrayFloat:
        """Factorize the prior covariance once."""
        assert self.prior_cov is not None
        zetas = randomized_svd_zetas(
            self.prior_cov,
            self.solver_config.n_pc,
            n_oversamples=self.solver_config.n_oversamples,
            n_power_its=self.solver_config.n_power_its,
            random_state=self.solver_config.random_state,
        )
        if isinstance(self.prior_cov, np.ndarray):
            trace = float(np.trace(self.prior_cov))
            logging.info(
                "- explained prior variance with %d components: %.3f"
                % (zetas.shape[1], np.sum(get_explained_var(zetas, trace_cov_mat=trace)))
            )
        return zetas

    def _init_solver(self) -> None:
        """Initiate a solver with its args."""
        if self.zetas is None:
            self.zetas = self._compute_zetas()
        self.solver = PCGA(
            self.s_init,
            self.obs,
            self.cov_obs,
            self.fwd_model,
            self.zetas,
            self.drift,
            s_true=self.s_true,
            strategy=self.solver_config.strategy,
            maxiter=self.solver_config.maxiter,
            jtol=self.solver_config.jtol,
            delta=self.solver_config.delta,
            is_randls=self.solver_config.is_randls,
            randls_mat=self.solver_config.randls_mat,
            whitening_mat=self.solver_config.whitening_mat,
            lm_option=self.solver_config.lm_option,
            max_step=self.solver_config.max_step,
            lm_lambda=self.solver_config.lm_lambda,
            lambda_up=self.solver_config.lambda_up,
            lambda_down=self.solver_config.lambda_down,
            lm_gamma=self.solver_config.lm_gamma,
            logger=self.solver_config.logger,
        )

    def run(self) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]:
        """
        Run the inversion.

        Returns
        -------
        Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]
            The estimates history, the RMSE history, the cost history and the
            number of iterations.
        """
        super().run()
        assert self.solver is not None
        return self.solver.run()
