# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""
Implement the Principal Component Geostatistical Approach for large-scale inversion.

The prior covariance is represented by K zetas (low rank factor) and the action of
the jacobian of the black-box forward model is approximated by finite differences
along the zetas, the drift and the current estimate. Three solve strategies are
available: the plain bordered (cokriging) solve, the same solve after pre-whitening
the observations (RGA) and a Levenberg-Marquardt damped solve.

References
----------
- J Lee, PK Kitanidis, "Large‐scale hydraulic tomography and joint inversion of head
  and tracer data using the Principal Component Geostatistical Approach (PCGA)",
  WRR 50 (7), 5410-5427

- PK Kitanidis, J Lee, Principal Component Geostatistical Approach for large‐dimensional
  inverse problems, WRR 50 (7), 5428-5443
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from time import time
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy as sp
from scipy.sparse.linalg import LinearOperator

from geopcga.inverse.forward import EnsembleForwardModel, WhitenedForwardModel
from geopcga.utils import NDArrayFloat, StrEnum

# Finite difference step: sqrt of the machine epsilon.
DEFAULT_DELTA: float = float(np.sqrt(np.finfo(np.float64).eps))


class SolveStrategy(StrEnum):
    """Strategy used to solve the bordered system at each iteration."""

    PLAIN = "plain"
    WHITENED = "whitened"
    LEVENBERG_MARQUARDT = "levenberg_marquardt"


class CovObs(LinearOperator):
    """Covariance matrix of the measurement errors (R)."""

    def __init__(self, cov: Union[float, NDArrayFloat], n_obs: int) -> None:
        """Initialize the instance."""
        error = ValueError(
            f"cov_obs must be either a 1D matrix of {n_obs} elements, or "
            f"a 2D matrix with dimensions ({n_obs}, {n_obs})."
        )
        cov = np.asarray(cov, dtype=np.float64)
        if cov.size == 1 and n_obs != 1:
            # Case of a float
            cov = np.ones((n_obs)) * cov.ravel()[0]
        else:
            # Case of 1D or 2D array with more than one value
            if cov.ndim > 2 or cov.ndim == 0:
                cov = cov.reshape(-1)
            if cov.shape[0] != n_obs:  # type: ignore
                raise error
            if cov.ndim == 2:
                if cov.shape[0] != cov.shape[1]:  # type: ignore
                    raise error
        # Only compute the covariance factorization once
        # If it's a diagonal, we never have to compute cholesky
        if cov.ndim == 2:
            self.lcho_factor: NDArrayFloat = sp.linalg.cholesky(cov, lower=True)
        else:
            self.lcho_factor = np.sqrt(cov)  # type: ignore

        super().__init__(shape=(n_obs, n_obs), dtype=np.float64)
        self.mat: NDArrayFloat = cov

    def _matvec(self, v: NDArrayFloat) -> NDArrayFloat:
        """Return cov_obs @ v."""
        if self.mat.ndim == 1:
            return self.mat * v.ravel()
        return self.mat @ v

    def _rmatvec(self, v: NDArrayFloat) -> NDArrayFloat:
        """Return cov_obs @ v."""
        return self._matvec(v)

    def solve(self, v: NDArrayFloat) -> NDArrayFloat:
        """Return cov_obs^{-1} @ v."""
        if self.mat.ndim == 2:
            return sp.linalg.cho_solve((self.lcho_factor, True), v)
        # Case 1D, the inverse of cov_obs (R matrix) is a diagonal matrix
        if v.ndim == 1:
            return v / self.mat
        return v / self.mat.reshape(-1, 1)

    def add_inflated(self, mat: NDArrayFloat, inflation: float = 1.0) -> NDArrayFloat:
        """Return the given matrix plus the inflated covariance matrix."""
        if self.mat.ndim == 2:
            return mat + inflation * self.mat
        # R is diagonal
        out = np.array(mat, copy=True)
        np.fill_diagonal(out, out.diagonal() + inflation * self.mat)
        return out

    def todense(self) -> NDArrayFloat:
        if self.mat.ndim == 1:
            return np.diag(self.mat)
        return self.mat


@dataclass
class InternalState:
    """Class to keep track of internal state."""

    # estimates history, column 0 is the initial guess
    s_hist: NDArrayFloat
    # RMSE with respect to the true parameters (NaN if the truth is unknown)
    rmse_seq: NDArrayFloat
    cost_seq: NDArrayFloat
    simul_obs: NDArrayFloat = field(
        default_factory=lambda: np.array([], dtype=np.float64)
    )
    step_seq: List[float] = field(default_factory=lambda: [])
    # LM damping parameters, the first values are the initial ones
    lambda_seq: List[float] = field(default_factory=lambda: [])
    tau_seq: List[float] = field(default_factory=lambda: [])
    n_iter: int = 0
    is_converged: bool = False
    status: str = "IDLE."

    @property
    def s_cur(self) -> NDArrayFloat:
        """Return the current estimate."""
        return self.s_hist[:, self.n_iter]

    @property
    def valid_s_hist(self) -> NDArrayFloat:
        """Return the meaningful part of the estimates history."""
        return self.s_hist[:, : self.n_iter + 1]

    @property
    def cost_cur(self) -> float:
        return float(self.cost_seq[self.n_iter - 1])


def get_tau(lm_lambda: float, lm_gamma: float) -> float:
    """Return the complementary damping weight 1 - (1 + lambda)^(-gamma)."""
    return 1.0 - (1.0 + lm_lambda) ** (-lm_gamma)


def as_zetas(
    zetas: Union[NDArrayFloat, Sequence[NDArrayFloat]], s_dim: int
) -> NDArrayFloat:
    """
    Return the zetas as a 2D array with shape (s_dim, K).

    Parameters
    ----------
    zetas : Union[NDArrayFloat, Sequence[NDArrayFloat]]
        Either a 2D array whose columns are the zetas or a sequence of K 1D vectors.
    s_dim : int
        Expected length of each zeta.
    """
    if isinstance(zetas, np.ndarray) and zetas.ndim == 2:
        if zetas.shape[0] != s_dim:
            raise ValueError(
                f"zetas must have shape ({s_dim}, K), got {zetas.shape}!"
            )
        _zetas = zetas.astype(np.float64)
    else:
        cols = [np.asarray(zeta, dtype=np.float64) for zeta in zetas]
        for i, zeta in enumerate(cols):
            if zeta.ndim != 1 or zeta.size != s_dim:
                raise ValueError(
                    f"zeta #{i} must be a 1D vector of {s_dim} elements, got shape"
                    f" {zeta.shape}!"
                )
        if len(cols) == 0:
            raise ValueError("At least one zeta must be provided!")
        _zetas = np.column_stack(cols)
    if _zetas.shape[1] == 0:
        raise ValueError("At least one zeta must be provided!")
    return _zetas


def apply_whitening(
    forward_model: Callable[[NDArrayFloat], NDArrayFloat],
    cov_obs: Union[float, NDArrayFloat],
    obs: NDArrayFloat,
    whitening_mat: NDArrayFloat,
) -> Tuple[WhitenedForwardModel, NDArrayFloat, NDArrayFloat]:
    """
    Project the inverse problem onto the whitened observation space.

    Parameters
    ----------
    forward_model : Callable[[NDArrayFloat], NDArrayFloat]
        Forward model f.
    cov_obs : Union[float, NDArrayFloat]
        Covariance of the measurement errors R (scalar, diagonal or full).
    obs : NDArrayFloat
        Observations y.
    whitening_mat : NDArrayFloat
        Whitening or projection matrix S with shape (N_w, N_obs).

    Returns
    -------
    Tuple[WhitenedForwardModel, NDArrayFloat, NDArrayFloat]
        S o f, S R S^T and S y.
    """
    _obs = np.asarray(obs, dtype=np.float64).ravel()
    S = np.asarray(whitening_mat, dtype=np.float64)
    if S.ndim != 2 or S.shape[1] != _obs.size:
        raise ValueError(
            f"The whitening matrix must have shape (N_w, {_obs.size}), got {S.shape}!"
        )
    R = CovObs(np.asarray(cov_obs), _obs.size).todense()
    return WhitenedForwardModel(forward_model, S), S @ R @ S.T, S @ _obs


class PCGA:
    """
    Solve inverse problem with PCGA (approx to quasi-linear method).

    Parameters
    ----------
    s_init : NDArrayFloat
        1D array of initial parameters, i.e., initial solution for the
        Gauss-Newton method.
    obs : NDArrayFloat
        1D array of (noisy) measurements used for inversion.
    cov_obs : Union[float, NDArrayFloat]
        Covariance matrix of observed data measurement errors with dimensions
        (:math:`N_{obs}`, :math:`N_{obs}`). Also denoted :math:`R`.
        If a 1D array is passed, it represents a diagonal covariance matrix.
        If a float is passed, it means the noise is the same for all
        measurements.
    forward_model : Callable
        Forward model obs = f(s) mapping a 1D parameter vector to a 1D prediction
        vector. An :class:`EnsembleForwardModel` is used as is.
    zetas : Union[NDArrayFloat, Sequence[NDArrayFloat]]
        The K zetas, i.e., the low rank factor Z of the prior covariance
        (Q ~ ZZ^T), as an (N_s, K) array or a sequence of K vectors.
    drift : NDArrayFloat
        1D drift (mean) vector X of the prior.
    s_true : Optional[NDArrayFloat]
        True parameters, only used to compute the RMSE. The default is None.
    strategy: SolveStrategy
        Solve strategy. The default is `SolveStrategy.PLAIN`.
    maxiter : int, optional
        Maximum number of Gauss-Newton iterations. The default is 14.
    jtol : float, optional
        The iterations stop when the cost decreases by less than `jtol`.
        The default is 0.01.
    delta : float, optional
        Finite difference step. The default is sqrt(machine eps).
    is_randls: bool, optional
        Whether to left multiply the bordered system by `randls_mat` before
        solving it (plain solves only). The default is False.
    randls_mat: Optional[NDArrayFloat]
        Sketching matrix with N_obs + 1 columns. Required if `is_randls` is True.
    whitening_mat: Optional[NDArrayFloat]
        Whitening matrix S with N_obs columns. Required by `SolveStrategy.WHITENED`.
    lm_option: int, optional
        0 for the undamped bordered solve, 1 for the two damped solves.
        Only used with `SolveStrategy.LEVENBERG_MARQUARDT`. The default is 1.
    max_step: float, optional
        Step size above which the damping is increased. The default is 35.
    lm_lambda: float, optional
        Initial damping parameter. The default is 0.5.
    lambda_up: float, optional
        Damping increase factor. The default is 2.
    lambda_down: float, optional
        Damping decrease factor. The default is 0.5.
    lm_gamma: float, optional
        Exponent of the complementary damping weight. The default is 1.1.
    is_parallel: bool, optional
        Whether to run the K + 2 perturbed forward models concurrently.
        The default is False.
    max_workers: int, optional
        Number of workers if the concurrency is enabled. The default is 2.
    use_threads: bool, optional
        Whether to use threads instead of processes. The default is False.
    logger: Optional[Logger], optional
        Logger, by default None.
    """

    def __init__(
        self,
        s_init: NDArrayFloat,
        obs: NDArrayFloat,
        cov_obs: Union[float, NDArrayFloat],
        forward_model: Callable,
        zetas: Union[NDArrayFloat, Sequence[NDArrayFloat]],
        drift: NDArrayFloat,
        s_true: Optional[NDArrayFloat] = None,
        strategy: SolveStrategy = SolveStrategy.PLAIN,
        maxiter: int = 14,
        jtol: float = 0.01,
        delta: float = DEFAULT_DELTA,
        is_randls: bool = False,
        randls_mat: Optional[NDArrayFloat] = None,
        whitening_mat: Optional[NDArrayFloat] = None,
        lm_option: int = 1,
        max_step: float = 35.0,
        lm_lambda: float = 0.5,
        lambda_up: float = 2.0,
        lambda_down: float = 0.5,
        lm_gamma: float = 1.1,
        is_parallel: bool = False,
        max_workers: int = 2,
        use_threads: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger: Optional[logging.Logger] = logger
        self.strategy: SolveStrategy = SolveStrategy(strategy)

        ##### Forward Model
        self.s_init: NDArrayFloat = np.array(s_init, dtype=np.float64).ravel()
        _obs = np.array(obs, dtype=np.float64).ravel()  # 1D vector
        _cov_obs = np.asarray(cov_obs, dtype=np.float64)

        if self.strategy == SolveStrategy.WHITENED:
            if whitening_mat is None:
                raise ValueError(
                    "A whitening matrix must be provided with the whitened strategy!"
                )
            if isinstance(forward_model, EnsembleForwardModel):
                # the caller's instance is left untouched
                whitened_fun, _cov_obs, _obs = apply_whitening(
                    forward_model.fun, _cov_obs, _obs, whitening_mat
                )
                forward_model = EnsembleForwardModel(
                    whitened_fun,
                    is_parallel=forward_model.is_parallel,
                    max_workers=forward_model.max_workers,
                    use_threads=forward_model.use_threads,
                    logger=forward_model.logger,
                )
            else:
                forward_model, _cov_obs, _obs = apply_whitening(
                    forward_model, _cov_obs, _obs, whitening_mat
                )
        self.obs: NDArrayFloat = _obs
        self.cov_obs: CovObs = CovObs(_cov_obs, self.n_obs)

        # forward solver setting should be done externally as a blackbox
        # only the dispatch of the runs is handled here
        if isinstance(forward_model, EnsembleForwardModel):
            self.forward_model: EnsembleForwardModel = forward_model
        else:
            self.forward_model = EnsembleForwardModel(
                forward_model,
                is_parallel=is_parallel,
                max_workers=max_workers,
                use_threads=use_threads,
                logger=logger,
            )

        ##### Prior
        self.zetas: NDArrayFloat = as_zetas(zetas, self.s_dim)
        self.drift: NDArrayFloat = np.array(drift, dtype=np.float64).ravel()
        if self.drift.size != self.s_dim:
            raise ValueError(
                f"The drift must be a 1D vector of {self.s_dim} elements, got "
                f"{self.drift.size} elements!"
            )
        self.s_true: Optional[NDArrayFloat] = None
        if s_true is not None:
            self.s_true = np.array(s_true, dtype=np.float64).ravel()
            if self.s_true.size != self.s_dim:
                raise ValueError(
                    f"s_true must be a 1D vector of {self.s_dim} elements, got "
                    f"{self.s_true.size} elements!"
                )

        ##### Optimization
        if maxiter < 1:
            raise ValueError("maxiter must be at least 1!")
        self.maxiter: int = maxiter
        self.jtol: float = jtol
        if delta <= 0.0:
            raise ValueError("The finite difference step delta must be positive!")
        self.delta: float = delta

        self.is_randls: bool = is_randls
        self.randls_mat: Optional[NDArrayFloat] = None
        if is_randls:
            if randls_mat is None:
                raise ValueError("randls_mat must be provided if is_randls is True!")
            self.randls_mat = np.asarray(randls_mat, dtype=np.float64)
            if self.randls_mat.ndim != 2 or self.randls_mat.shape[1] != self.n_obs + 1:
                raise ValueError(
                    f"randls_mat must have shape (N, {self.n_obs + 1}), got "
                    f"{self.randls_mat.shape}!"
                )

        if lm_option not in (0, 1):
            raise ValueError(f"lm_option must be 0 or 1, got {lm_option}!")
        self.lm_option: int = lm_option
        self.max_step: float = max_step
        self.lm_lambda_init: float = lm_lambda
        self.lm_lambda: float = lm_lambda
        self.lambda_up: float = lambda_up
        self.lambda_down: float = lambda_down
        self.lm_gamma: float = lm_gamma
        self.lm_tau: float = get_tau(lm_lambda, lm_gamma)

        # keep track of the internal state
        self.istate: InternalState = self._new_internal_state()

        self.display_init_parameters()

    @property
    def s_dim(self) -> int:
        """Return the length of the parameters vector."""
        return self.s_init.size

    @property
    def n_obs(self) -> int:
        """Return the number of observations/forecast data."""
        return self.obs.size

    @property
    def d_dim(self) -> int:
        """Return the number of forecast data. Alias for n_obs"""
        return self.n_obs

    @property
    def n_pc(self) -> int:
        """Return the number of principal components (zetas)."""
        return self.zetas.shape[1]

    @property
    def is_lm(self) -> bool:
        """Return whether the Levenberg-Marquardt damping is used."""
        return self.strategy == SolveStrategy.LEVENBERG_MARQUARDT

    def loginfo(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.info(msg)

    def logwarning(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.warning(msg)

    def _new_internal_state(self) -> InternalState:
        istate = InternalState(
            s_hist=np.full((self.s_dim, self.maxiter + 1), np.nan),
            rmse_seq=np.full(self.maxiter + 1, np.nan),
            cost_seq=np.full(self.maxiter, np.nan),
        )
        istate.s_hist[:, 0] = self.s_init
        istate.rmse_seq[0] = self.rmse(self.s_init)
        if self.is_lm:
            istate.lambda_seq.append(self.lm_lambda)
            istate.tau_seq.append(self.lm_tau)
        return istate

    def display_init_parameters(self) -> None:
        self.loginfo("##### PCGA Inversion #####")
        self.loginfo("##### 1. Initialize forward and inversion parameters")
        self.loginfo("------------ Inversion Parameters -------------------------")
        _dict = {
            "Number of unknowns": self.s_dim,
            "Number of observations": self.d_dim,
            "Number of principal components (n_pc)": self.n_pc,
            "Maximum Gauss-Newton iterations": self.maxiter,
            "Finite difference step (delta)": self.delta,
            "Minimum cost change (jtol)": self.jtol,
            "Solve strategy": str(self.strategy),
            "Sketched least squares (is_randls)": self.is_randls,
        }
        if self.is_lm:
            _dict["LM option (lm_option)"] = self.lm_option
            _dict["Maximum step (max_step)"] = self.max_step
            _dict["Initial damping (lm_lambda)"] = self.lm_lambda
            _dict["Damping factors (up/down)"] = f"{self.lambda_up}/{self.lambda_down}"
            _dict["Damping exponent (lm_gamma)"] = self.lm_gamma

        # first get the max length
        max_length: int = int(np.max([len(_str) for _str in _dict.keys()]))
        for k, v in _dict.items():
            self.loginfo(f"  {k: <{max_length}} : {v}")

        self.loginfo("-----------------------------------------------------------")

    def perturbation_ensemble(self, s_cur: NDArrayFloat) -> NDArrayFloat:
        """
        Return the K + 2 perturbed parameter vectors as columns.

        The first K columns are s + delta * zeta_i, then s + delta * X and
        s + delta * s.
        """
        directions = np.column_stack((self.zetas, self.drift, s_cur))
        return s_cur.reshape(-1, 1) + self.delta * directions

    def jac_mat(
        self, s_cur: NDArrayFloat, simul_obs: NDArrayFloat
    ) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, NDArrayFloat, NDArrayFloat]:
        """
        Return the finite difference approximations of the jacobian products.

        All K + 2 perturbed forward models are run as a single batch.

        Returns
        -------
        Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, NDArrayFloat, NDArrayFloat]
            HZ (N_obs, K), HQ (N_obs, N_s), HQH (N_obs, N_obs), HX (N_obs) and
            Hs (N_obs).
        """
        start = time()
        simul_obs_perturbation = self.forward_model(
            self.perturbation_ensemble(s_cur), self.n_obs
        )
        H = (simul_obs_perturbation - simul_obs.reshape(-1, 1)) / self.delta

        # eta_i = H zeta_i
        HZ = H[:, : self.n_pc]
        HX = H[:, self.n_pc]
        Hs = H[:, self.n_pc + 1]

        # sum_i eta_i zeta_i^T and sum_i eta_i eta_i^T
        HQ = HZ @ self.zetas.T
        HQH = HZ @ HZ.T

        self.loginfo(
            f"computed Jacobian-Matrix products in : {(time() - start):.3e} secs"
        )
        return HZ, HQ, HQH, HX, Hs

    def solve_bordered(
        self,
        mat: NDArrayFloat,
        HX: NDArrayFloat,
        rhs: NDArrayFloat,
        is_randls: bool = False,
    ) -> Tuple[NDArrayFloat, float]:
        """
        Solve the bordered (saddle point) system with a pseudo-inverse.

        [[mat, HX], [HX^T, 0]] [xi, beta] = [rhs, 0]

        Returns
        -------
        Tuple[NDArrayFloat, float]
            The low rank coefficients xi (N_obs) and the drift coefficient beta.
        """
        n = self.n_obs
        A = np.zeros((n + 1, n + 1), dtype=np.float64)
        A[:n, :n] = mat
        A[:n, n] = HX
        A[n, :n] = HX
        b = np.zeros(n + 1, dtype=np.float64)
        b[:n] = rhs

        if is_randls and self.randls_mat is not None:
            A = self.randls_mat @ A
            b = self.randls_mat @ b

        pinv_A, rank = sp.linalg.pinv(A, return_rank=True)
        if rank < min(A.shape):
            self.logwarning(
                f"the bordered system is rank deficient (rank {rank} < "
                f"{min(A.shape)}), the minimum norm solution is used"
            )
        x = pinv_A @ b
        return x[:n], float(x[n])

    def solve_system(
        self,
        HQH: NDArrayFloat,
        HX: NDArrayFloat,
        Hs: NDArrayFloat,
        simul_obs: NDArrayFloat,
    ) -> Tuple[NDArrayFloat, float]:
        """Return (xi, beta) for the current strategy."""
        innovation = self.obs - simul_obs
        if not self.is_lm or self.lm_option == 0:
            return self.solve_bordered(
                self.cov_obs.add_inflated(HQH, 1.0),
                HX,
                innovation + Hs,
                is_randls=self.is_randls,
            )

        xi_in, beta_in = self.solve_bordered(
            self.cov_obs.add_inflated(HQH, self.lm_lambda), HX, innovation
        )
        xi_pr, beta_pr = self.solve_bordered(
            self.cov_obs.add_inflated(HQH, -self.lm_tau), HX, Hs
        )
        return xi_in + xi_pr, beta_in + beta_pr

    def objective_function(
        self, simul_obs: NDArrayFloat, xi: NDArrayFloat, HQH: NDArrayFloat
    ) -> float:
        """
        Return the cost.

        0.5(y-h(s))^TR^{-1}(y-h(s)) + 0.5 xi^T HQH^T xi
        """
        ymhs = self.obs - simul_obs
        return float(
            0.5 * ymhs.dot(self.cov_obs.solve(ymhs)) + 0.5 * xi.dot(HQH @ xi)
        )

    def rmse(self, s: NDArrayFloat) -> float:
        """Return the root mean square error with respect to the true parameters."""
        if self.s_true is None:
            return np.nan
        return float(np.linalg.norm(s - self.s_true) / np.sqrt(self.s_dim))

    def check_convergence(self, n_iter: int) -> None:
        """Check the convergence criteria (no damping)."""
        if n_iter <= 1:
            return
        cost_change = self.istate.cost_seq[n_iter - 2] - self.istate.cost_seq[n_iter - 1]
        if cost_change < 0:
            self.logwarning(f"cost is increasing at iteration {n_iter}")
        elif cost_change < self.jtol:
            self.istate.is_converged = True
            self.istate.status = "CONVERGENCE: COST_CHANGE_<=_JTOL"
            self.loginfo("cost not changing, converged")

    def update_damping(self, step: float, n_iter: int) -> None:
        """
        Adapt the Levenberg-Marquardt damping and check the convergence criteria.

        After the first iteration, no cost change is available yet and the damping
        only depends on the step size.
        """
        if n_iter > 1:
            cost_change = (
                self.istate.cost_seq[n_iter - 2] - self.istate.cost_seq[n_iter - 1]
            )
            if step > self.max_step or cost_change < 0:
                if step > self.max_step:
                    self.loginfo(
                        f"step too large, lambda increased at iteration {n_iter}"
                    )
                if cost_change < 0:
                    self.logwarning(
                        f"cost is increasing, lambda increased at iteration {n_iter}"
                    )
                self.lm_lambda *= self.lambda_up
            elif cost_change < self.jtol:
                self.istate.is_converged = True
                self.istate.status = "CONVERGENCE: COST_CHANGE_<=_JTOL"
                self.loginfo("cost not changing, converged")
            else:
                self.lm_lambda *= self.lambda_down
                self.loginfo("lambda decreasing")
        else:
            if step > self.max_step:
                self.lm_lambda *= self.lambda_up
                self.loginfo("step too large, increasing lambda at step 1")
            else:
                self.lm_lambda *= self.lambda_down

        self.lm_tau = get_tau(self.lm_lambda, self.lm_gamma)
        self.istate.lambda_seq.append(self.lm_lambda)
        self.istate.tau_seq.append(self.lm_tau)

    def display_objfun(self, n_iter: int, cost: float, step: float) -> None:
        self.loginfo(f"== iteration {n_iter:d} summary ==")
        ymhs = self.obs - self.istate.simul_obs
        dat = {
            "cost 0.5 (obs. diff.)^T R^{-1}(obs. diff.) + 0.5 xi^T HQH^T xi": cost,
            "RMSE obs (norm(obs. diff.)/sqrt(nobs))": float(
                np.linalg.norm(ymhs) / np.sqrt(self.n_obs)
            ),
            "RMSE params (norm(s - s_true)/sqrt(ns))": self.istate.rmse_seq[n_iter],
            f"L2-norm diff btw sol {n_iter - 1:d} and sol {n_iter:d}": step,
        }
        if self.is_lm:
            dat["LM damping (lambda)"] = self.lm_lambda
        maxlen = max([len(k) for k in dat]) + 1
        for k, v in dat.items():
            self.loginfo(f"** {k:<{maxlen}} : {v:.3e}")

    def gauss_newton(self) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]:
        """
        Gauss-newton iteration.

        Returns
        -------
        Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]
            The estimates history (N_s, maxiter + 1), the RMSE history
            (maxiter + 1), the cost history (maxiter) and the number of iterations.
            Only the first n_iter + 1 estimates are meaningful.
        """
        # the damping is not carried over from a previous run
        self.lm_lambda = self.lm_lambda_init
        self.lm_tau = get_tau(self.lm_lambda, self.lm_gamma)
        self.istate = self._new_internal_state()
        istate = self.istate

        self.loginfo("##### 2. Start PCGA Inversion #####")
        self.loginfo("-- evaluate initial solution")

        s_cur = np.copy(self.s_init)
        istate.simul_obs = self.forward_model(s_cur, self.n_obs)[:, 0]

        while not istate.is_converged and istate.n_iter < self.maxiter:
            start = time()
            self.loginfo(f"***** Iteration {istate.n_iter + 1} ******")

            HZ, HQ, HQH, HX, Hs = self.jac_mat(s_cur, istate.simul_obs)
            xi, beta = self.solve_system(HQH, HX, Hs, istate.simul_obs)
            s_new = self.drift * beta + HQ.T @ xi

            step = float(np.linalg.norm(s_new - s_cur))
            istate.step_seq.append(step)
            istate.n_iter += 1
            istate.s_hist[:, istate.n_iter] = s_new
            istate.rmse_seq[istate.n_iter] = self.rmse(s_new)
            s_cur = s_new

            istate.simul_obs = self.forward_model(s_cur, self.n_obs)[:, 0]
            istate.cost_seq[istate.n_iter - 1] = self.objective_function(
                istate.simul_obs, xi, HQH
            )

            self.loginfo(
                "- Geostat. inversion at iteration %d is %g sec"
                % (istate.n_iter, round(time() - start))
            )
            self.display_objfun(istate.n_iter, istate.cost_cur, step)

            if self.is_lm:
                self.update_damping(step, istate.n_iter)
            else:
                self.check_convergence(istate.n_iter)

        if not istate.is_converged:
            istate.status = "STOP: TOTAL NO. of ITERATIONS REACHED LIMIT"

        self.loginfo("------------ Inversion Summary ---------------------------")
        self.loginfo(f"** Converged  = {istate.is_converged}")
        self.loginfo(f"** Status     = {istate.status}")
        self.loginfo(f"** Iterations = {istate.n_iter}")
        self.loginfo(f"** Forward model runs = {self.forward_model.n_runs}")

        return istate.s_hist, istate.rmse_seq, istate.cost_seq, istate.n_iter

    def run(self) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]:
        start = time()
        s_hist, rmse_seq, cost_seq, n_iter = self.gauss_newton()
        self.loginfo(f"** Total elapsed time is {(time() - start):.3e} secs")
        self.loginfo("----------------------------------------------------------")
        return s_hist, rmse_seq, cost_seq, n_iter


def pcga_iteration(
    forward_model: Callable,
    s_init: NDArrayFloat,
    drift: NDArrayFloat,
    zetas: Union[NDArrayFloat, Sequence[NDArrayFloat]],
    cov_obs: Union[float, NDArrayFloat],
    obs: NDArrayFloat,
    s_true: Optional[NDArrayFloat] = None,
    maxiter: int = 14,
    is_randls: bool = False,
    randls_mat: Optional[NDArrayFloat] = None,
    jtol: float = 0.01,
    **kwargs,
) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]:
    """
    Run the plain PCGA iterations.

    See :class:`PCGA` for the parameters. Additional keyword arguments are passed to
    the :class:`PCGA` constructor.

    Returns
    -------
    Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]
        The estimates history, the RMSE history, the cost history and the number
        of iterations.
    """
    return PCGA(
        s_init,
        obs,
        cov_obs,
        forward_model,
        zetas,
        drift,
        s_true=s_true,
        strategy=SolveStrategy.PLAIN,
        maxiter=maxiter,
        jtol=jtol,
        is_randls=is_randls,
        randls_mat=randls_mat,
        **kwargs,
    ).run()


def pcga_iteration_lm(
    forward_model: Callable,
    s_init: NDArrayFloat,
    drift: NDArrayFloat,
    zetas: Union[NDArrayFloat, Sequence[NDArrayFloat]],
    cov_obs: Union[float, NDArrayFloat],
    obs: NDArrayFloat,
    s_true: Optional[NDArrayFloat] = None,
    maxiter: int = 14,
    lm_option: int = 1,
    is_randls: bool = False,
    randls_mat: Optional[NDArrayFloat] = None,
    jtol: float = 0.01,
    **kwargs,
) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]:
    """Run the Levenberg-Marquardt damped PCGA iterations. See :func:`pcga_iteration`."""
    return PCGA(
        s_init,
        obs,
        cov_obs,
        forward_model,
        zetas,
        drift,
        s_true=s_true,
        strategy=SolveStrategy.LEVENBERG_MARQUARDT,
        maxiter=maxiter,
        jtol=jtol,
        lm_option=lm_option,
        is_randls=is_randls,
        randls_mat=randls_mat,
        **kwargs,
    ).run()


def rga_iteration(
    forward_model: Callable,
    s_init: NDArrayFloat,
    drift: NDArrayFloat,
    zetas: Union[NDArrayFloat, Sequence[NDArrayFloat]],
    cov_obs: Union[float, NDArrayFloat],
    obs: NDArrayFloat,
    whitening_mat: NDArrayFloat,
    s_true: Optional[NDArrayFloat] = None,
    maxiter: int = 14,
    jtol: float = 0.01,
    **kwargs,
) -> Tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat, int]:
    """
    Run the PCGA iterations on the whitened problem (S o f, S R S^T, S y).

    See :func:`pcga_iteration`.
    """
    return PCGA(
        s_init,
        obs,
        cov_obs,
        forward_model,
        zetas,
        drift,
        s_true=s_true,
        strategy=SolveStrategy.WHITENED,
        whitening_mat=whitening_mat,
        maxiter=maxiter,
        jtol=jtol,
        **kwargs,
    ).run()
