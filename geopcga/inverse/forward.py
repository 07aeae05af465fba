# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""
Batch evaluation of black-box forward models.

The forward model maps a parameter vector of size $N_{s}$ to a prediction vector of
size $N_{obs}$. It must be deterministic. The solvers only ever evaluate it on
ensembles of independent parameter vectors, which are dispatched here as a batch:
all runs are submitted, the batch waits for all of them, and the whole batch fails
if a single run fails.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Callable, List, Optional

import numpy as np

from geopcga.utils import NDArrayFloat


class ForwardModelError(RuntimeError):
    """Raised when a forward model run fails or returns invalid predictions."""


class WhitenedForwardModel:
    """Left multiply the predictions of a forward model by a whitening matrix S."""

    __slots__ = ["fun", "whitening_mat"]

    def __init__(
        self, fun: Callable[[NDArrayFloat], NDArrayFloat], whitening_mat: NDArrayFloat
    ) -> None:
        self.fun = fun
        self.whitening_mat: NDArrayFloat = np.asarray(whitening_mat, dtype=np.float64)

    def __call__(self, s: NDArrayFloat) -> NDArrayFloat:
        return self.whitening_mat @ np.asarray(self.fun(s), dtype=np.float64).ravel()


class EnsembleForwardModel:
    """
    Evaluate a vector forward model on all members of an ensemble.

    Parameters
    ----------
    fun : Callable[[NDArrayFloat], NDArrayFloat]
        Forward model mapping a 1D parameter vector to a 1D prediction vector.
        With processes, it must be picklable (defined at module level).
    is_parallel: bool, optional
        Whether to run the members one at the time or in a concurrent way.
        The default is False.
    max_workers: int, optional
        Number of workers to use if the concurrency is enabled. The default is 2.
    use_threads: bool, optional
        Whether to use a pool of threads instead of a pool of processes.
        The default is False.
    logger: Optional[logging.Logger]
        Logger, by default None.
    """

    __slots__ = ["fun", "is_parallel", "max_workers", "use_threads", "logger", "n_runs"]

    def __init__(
        self,
        fun: Callable[[NDArrayFloat], NDArrayFloat],
        is_parallel: bool = False,
        max_workers: int = 2,
        use_threads: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1!")
        self.fun = fun
        self.is_parallel: bool = is_parallel
        self.max_workers: int = max_workers
        self.use_threads: bool = use_threads
        self.logger: Optional[logging.Logger] = logger
        # total number of forward model runs performed so far
        self.n_runs: int = 0

    def loginfo(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.info(msg)

    def _get_executor(self) -> Executor:
        if self.use_threads:
            return ThreadPoolExecutor(max_workers=self.max_workers)
        return ProcessPoolExecutor(max_workers=self.max_workers)

    @staticmethod
    def _check_prediction(
        d_pred: NDArrayFloat, run_n: int, expected_size: Optional[int]
    ) -> NDArrayFloat:
        """
        Check and raise an exception if the prediction vector is not valid.

        Parameters
        ----------
        d_pred : NDArrayFloat
            Prediction vector returned by the forward model.
        run_n : int
            Run number (index of the member in the ensemble).
        expected_size: Optional[int]
            Expected number of predictions. None for the first member.

        Raises
        ------
        ForwardModelError
            Raised if the predictions do not form a vector of the expected size or
            if NaNs are found.
        """
        _d_pred = np.asarray(d_pred, dtype=np.float64)
        if _d_pred.ndim == 2 and 1 in _d_pred.shape:
            _d_pred = _d_pred.ravel()
        if _d_pred.ndim != 1:
            raise ForwardModelError(
                f"The forward model must return a 1D vector, got shape {_d_pred.shape}"
                f" for run {run_n}!"
            )
        if expected_size is not None and _d_pred.size != expected_size:
            raise ForwardModelError(
                f"The forward model returned {_d_pred.size} predictions for run "
                f"{run_n} while {expected_size} were expected!"
            )
        if np.isnan(_d_pred).any():
            raise ForwardModelError(
                "Something went wrong with NaN values"
                f" are found in predictions for run {run_n} !"
            )
        return _d_pred

    def _run(self, s: NDArrayFloat, run_n: int) -> NDArrayFloat:
        try:
            return self.fun(s)
        except Exception as e:
            raise ForwardModelError(f"The forward model failed for run {run_n}!") from e

    def __call__(
        self, s_ensemble: NDArrayFloat, n_obs: Optional[int] = None
    ) -> NDArrayFloat:
        """
        Call the forward model for all ensemble members, return predicted data.

        Parameters
        ----------
        s_ensemble : NDArrayFloat
            Ensemble of parameters vectors with shape $(N_{s}, N_{e})$. A 1D vector
            is considered as a single member.
        n_obs: Optional[int]
            Expected number of predictions per member. If None, it is inferred
            from the first member.

        Returns
        -------
        NDArrayFloat
            Predictions with shape $(N_{obs}, N_{e})$.
        """
        _s_ensemble = np.asarray(s_ensemble, dtype=np.float64)
        if _s_ensemble.ndim == 1:
            _s_ensemble = _s_ensemble.reshape(-1, 1)
        n_ensemble: int = _s_ensemble.shape[1]

        preds: List[NDArrayFloat] = []
        if self.is_parallel and self.max_workers > 1 and n_ensemble > 1:
            self.loginfo(
                f"- Running {n_ensemble} forward models with {self.max_workers}"
                " workers"
            )
            with self._get_executor() as executor:
                futures: List[Future] = [
                    executor.submit(self.fun, _s_ensemble[:, j])
                    for j in range(n_ensemble)
                ]
                try:
                    for j, future in enumerate(futures):
                        try:
                            res = future.result()
                        except Exception as e:
                            raise ForwardModelError(
                                f"The forward model failed for run {j}!"
                            ) from e
                        preds.append(self._check_prediction(res, j, n_obs))
                        n_obs = preds[0].size
                except ForwardModelError:
                    # do not wait for the runs which have not started yet
                    for future in futures:
                        future.cancel()
                    raise
        else:
            for j in range(n_ensemble):
                preds.append(
                    self._check_prediction(self._run(_s_ensemble[:, j], j), j, n_obs)
                )
                n_obs = preds[0].size

        self.n_runs += n_ensemble
        return np.column_stack(preds)
