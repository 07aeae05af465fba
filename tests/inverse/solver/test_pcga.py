import logging
from contextlib import nullcontext as does_not_raise

import numdifftools as nd
import numpy as np
import pytest
from geopcga.inverse import EnsembleForwardModel, ForwardModelError
from geopcga.inverse.solvers import (
    DEFAULT_DELTA,
    PCGA,
    CovObs,
    SolveStrategy,
    apply_whitening,
    get_tau,
    pcga_iteration,
    pcga_iteration_lm,
    rga_iteration,
)
from geopcga.utils import NDArrayFloat

# Linear test problem
N_S = 20
N_OBS = 8
N_PC = 5
RNG = np.random.default_rng(2026)
H_MAT = RNG.normal(size=(N_OBS, N_S))
ZETAS = RNG.normal(size=(N_S, N_PC))
DRIFT = np.ones(N_S)
S_TRUE = DRIFT * 0.5 + ZETAS @ RNG.normal(size=N_PC)
R_DIAG = np.full(N_OBS, 0.1)
OBS = H_MAT @ S_TRUE + RNG.normal(scale=np.sqrt(0.1), size=N_OBS)


def linear_model(s: NDArrayFloat) -> NDArrayFloat:
    return H_MAT @ s


def diag_model(s: NDArrayFloat) -> NDArrayFloat:
    return np.array([2.0 * s[0], 3.0 * s[1]])


def constant_model(s: NDArrayFloat) -> NDArrayFloat:
    return np.array([1.0, 2.0])


def nonlinear_model(s: NDArrayFloat) -> NDArrayFloat:
    return np.array([np.sum(s**2), s[0] * s[1], np.sin(s[2]) + s[3], np.exp(s[4])])


def failing_model(s: NDArrayFloat) -> NDArrayFloat:
    raise RuntimeError("the simulator crashed")


def bordered_solve(
    mat: NDArrayFloat, HX: NDArrayFloat, rhs: NDArrayFloat
) -> NDArrayFloat:
    n = HX.size
    A = np.zeros((n + 1, n + 1))
    A[:n, :n] = mat
    A[:n, n] = HX
    A[n, :n] = HX
    return np.linalg.solve(A, np.hstack([rhs, 0.0]))


def get_linear_solver(**kwargs) -> PCGA:
    return PCGA(
        np.zeros(N_S), OBS, R_DIAG, linear_model, ZETAS, DRIFT, s_true=S_TRUE, **kwargs
    )


def test_default_delta() -> None:
    assert DEFAULT_DELTA == pytest.approx(np.sqrt(np.finfo(np.float64).eps))


@pytest.mark.parametrize(
    "cov,expected_dense",
    [
        (0.5, np.eye(3) * 0.5),
        (np.array([1.0, 2.0, 3.0]), np.diag([1.0, 2.0, 3.0])),
        (
            np.array([[2.0, 0.5, 0.0], [0.5, 2.0, 0.0], [0.0, 0.0, 1.0]]),
            np.array([[2.0, 0.5, 0.0], [0.5, 2.0, 0.0], [0.0, 0.0, 1.0]]),
        ),
    ],
)
def test_cov_obs(cov, expected_dense) -> None:
    cov_obs = CovObs(cov, 3)
    v = np.array([1.0, -1.0, 2.0])
    np.testing.assert_allclose(cov_obs.todense(), expected_dense)
    np.testing.assert_allclose(cov_obs @ v, expected_dense @ v)
    np.testing.assert_allclose(cov_obs.solve(v), np.linalg.solve(expected_dense, v))
    np.testing.assert_allclose(
        cov_obs.add_inflated(np.ones((3, 3)), 2.0), np.ones((3, 3)) + 2 * expected_dense
    )


@pytest.mark.parametrize("cov", [np.ones(4), np.ones((3, 4)), np.ones((4, 4))])
def test_cov_obs_wrong_shape(cov) -> None:
    with pytest.raises(ValueError, match="cov_obs must be either"):
        CovObs(cov, 3)


def test_perturbation_ensemble() -> None:
    solver = get_linear_solver(delta=1e-3)
    s = np.arange(N_S, dtype=np.float64)
    ensemble = solver.perturbation_ensemble(s)
    assert ensemble.shape == (N_S, N_PC + 2)
    np.testing.assert_allclose(ensemble[:, :N_PC], s[:, None] + 1e-3 * ZETAS)
    np.testing.assert_allclose(ensemble[:, N_PC], s + 1e-3 * DRIFT)
    np.testing.assert_allclose(ensemble[:, N_PC + 1], s * (1 + 1e-3))


def test_jac_mat_against_numdifftools() -> None:
    rng = np.random.default_rng(54)
    s = rng.normal(size=5) * 0.5
    zetas = rng.normal(size=(5, 3))
    drift = np.ones(5)
    solver = PCGA(s, np.zeros(4), 1.0, nonlinear_model, zetas, drift)

    HZ, HQ, HQH, HX, Hs = solver.jac_mat(s, nonlinear_model(s))
    # one batch of K + 2 runs
    assert solver.forward_model.n_runs == 5

    jac = nd.Jacobian(nonlinear_model)(s)
    Q = zetas @ zetas.T
    np.testing.assert_allclose(HZ, jac @ zetas, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(HQ, jac @ Q, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(HQH, jac @ Q @ jac.T, rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(HX, jac @ drift, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(Hs, jac @ s, rtol=1e-5, atol=1e-6)


def test_two_obs_scenario(caplog) -> None:
    caplog.set_level(logging.INFO)
    obs = np.array([4.0, 9.0])
    s_hist, rmse_seq, cost_seq, n_iter = pcga_iteration(
        diag_model,
        np.zeros(2),
        np.zeros(2),
        [np.array([1.0, 0.0]), np.array([0.0, 1.0])],
        0.01,
        obs,
        s_true=np.array([2.0, 3.0]),
        maxiter=1,
        logger=logging.getLogger("PCGA"),
    )
    assert n_iter == 1
    # MAP estimate, the drift is zero so beta is the minimum norm solution
    expected = np.array([8.0 / 4.01, 27.0 / 9.01])
    np.testing.assert_allclose(s_hist[:, 1], expected, rtol=1e-10)
    np.testing.assert_allclose(s_hist[:, 1], [2.0, 3.0], atol=1e-2)

    xi = obs / np.array([4.01, 9.01])
    residuals = obs - np.array([2.0, 3.0]) * expected
    expected_cost = 0.5 * np.sum(residuals**2) / 0.01 + 0.5 * (
        4.0 * xi[0] ** 2 + 9.0 * xi[1] ** 2
    )
    assert cost_seq[0] == pytest.approx(expected_cost, rel=1e-10)
    # the data misfit is small
    assert np.linalg.norm(residuals) < 2e-2
    assert rmse_seq[1] == pytest.approx(np.linalg.norm(expected - [2.0, 3.0]) / np.sqrt(2))
    assert "rank deficient" in caplog.text
    assert "***** Iteration 1 ******" in caplog.text


def test_linear_model_one_iteration_is_cokriging() -> None:
    s_hist, _, _, n_iter = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=1
    )
    assert n_iter == 1

    Q = ZETAS @ ZETAS.T
    x = bordered_solve(H_MAT @ Q @ H_MAT.T + np.diag(R_DIAG), H_MAT @ DRIFT, OBS)
    expected = DRIFT * x[-1] + Q @ H_MAT.T @ x[:-1]
    np.testing.assert_allclose(s_hist[:, 1], expected, rtol=1e-5, atol=1e-6)


def test_linear_model_is_stationary() -> None:
    s_hist, _, cost_seq, n_iter = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=4
    )
    assert 2 <= n_iter <= 4
    np.testing.assert_allclose(s_hist[:, n_iter], s_hist[:, 1], rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(cost_seq[:n_iter], cost_seq[0], rtol=1e-5)


@pytest.mark.parametrize(
    "maxiter,expected_n_iter,expected_converged",
    [(1, 1, False), (2, 2, True), (6, 2, True)],
)
def test_termination_and_history(maxiter, expected_n_iter, expected_converged) -> None:
    # the jacobian is zero: all iterations give the same estimate and cost
    s_init = np.array([1.0, 2.0, 3.0])
    solver = PCGA(
        s_init,
        np.array([2.0, 3.0]),
        0.1,
        constant_model,
        np.eye(3)[:, :2],
        np.ones(3),
        s_true=np.zeros(3),
        maxiter=maxiter,
    )
    s_hist, rmse_seq, cost_seq, n_iter = solver.run()

    assert n_iter == expected_n_iter
    assert solver.istate.is_converged is expected_converged
    if expected_converged:
        assert solver.istate.status == "CONVERGENCE: COST_CHANGE_<=_JTOL"
    else:
        assert solver.istate.status == "STOP: TOTAL NO. of ITERATIONS REACHED LIMIT"

    assert s_hist.shape == (3, maxiter + 1)
    assert rmse_seq.shape == (maxiter + 1,)
    assert cost_seq.shape == (maxiter,)
    np.testing.assert_array_equal(s_hist[:, 0], s_init)
    np.testing.assert_allclose(s_hist[:, 1 : n_iter + 1], 0.0)
    assert np.all(np.isnan(s_hist[:, n_iter + 1 :]))
    np.testing.assert_allclose(cost_seq[:n_iter], 10.0)
    assert np.all(np.isnan(cost_seq[n_iter:]))
    assert rmse_seq[0] == pytest.approx(np.sqrt(14.0 / 3.0))
    np.testing.assert_allclose(rmse_seq[1 : n_iter + 1], 0.0)
    # initial run + (K + 2 perturbed runs + 1 run) per iteration
    assert solver.forward_model.n_runs == 1 + n_iter * 5
    np.testing.assert_allclose(solver.istate.valid_s_hist, s_hist[:, : n_iter + 1])


def test_rmse_without_truth() -> None:
    _, rmse_seq, _, n_iter = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=1
    )
    assert np.all(np.isnan(rmse_seq))


@pytest.mark.parametrize(
    "costs,n_iter,expected_converged,expected_log",
    [
        ((5.0, np.nan), 1, False, ""),
        ((5.0, 6.0), 2, False, "cost is increasing at iteration 2"),
        ((5.0, 4.995), 2, True, "cost not changing, converged"),
        ((5.0, 2.0), 2, False, ""),
    ],
)
def test_check_convergence(
    caplog, costs, n_iter, expected_converged, expected_log
) -> None:
    caplog.set_level(logging.INFO)
    solver = get_linear_solver(maxiter=3, logger=logging.getLogger("PCGA"))
    solver.istate.cost_seq[:2] = costs
    solver.check_convergence(n_iter)
    assert solver.istate.is_converged is expected_converged
    assert expected_log in caplog.text


@pytest.mark.parametrize(
    "costs,step,n_iter,expected_lambda,expected_converged",
    [
        ((5.0, np.nan), 1.0, 1, 0.25, False),  # step only
        ((5.0, np.nan), 100.0, 1, 1.0, False),  # step only
        ((5.0, 6.0), 1.0, 2, 1.0, False),  # cost increase
        ((5.0, 2.0), 100.0, 2, 1.0, False),  # step too large
        ((5.0, 4.995), 1.0, 2, 0.5, True),  # converged
        ((5.0, 2.0), 1.0, 2, 0.25, False),  # good step
    ],
)
def test_update_damping(
    costs, step, n_iter, expected_lambda, expected_converged
) -> None:
    solver = get_linear_solver(
        strategy=SolveStrategy.LEVENBERG_MARQUARDT, maxiter=3, max_step=35.0
    )
    solver.istate.cost_seq[:2] = costs
    solver.update_damping(step, n_iter)
    assert solver.lm_lambda == pytest.approx(expected_lambda)
    assert solver.lm_tau == pytest.approx(1.0 - (1.0 + expected_lambda) ** (-1.1))
    assert solver.istate.is_converged is expected_converged
    assert solver.istate.lambda_seq == pytest.approx([0.5, expected_lambda])


def test_lm_damping_increases_with_large_steps() -> None:
    solver = get_linear_solver(
        strategy=SolveStrategy.LEVENBERG_MARQUARDT, maxiter=3, max_step=1e-12
    )
    _, _, _, n_iter = solver.run()
    assert n_iter == 3
    assert not solver.istate.is_converged
    assert solver.istate.lambda_seq == pytest.approx([0.5, 1.0, 2.0, 4.0])
    assert solver.istate.tau_seq == pytest.approx(
        [get_tau(lbd, 1.1) for lbd in (0.5, 1.0, 2.0, 4.0)]
    )
    assert len(solver.istate.step_seq) == 3


def test_lm_first_iteration_is_two_damped_solves() -> None:
    s_init = S_TRUE * 0.5
    s_hist, _, _, _ = pcga_iteration_lm(
        linear_model, s_init, DRIFT, ZETAS, R_DIAG, OBS, maxiter=1, lm_option=1
    )
    Q = ZETAS @ ZETAS.T
    HQH = H_MAT @ Q @ H_MAT.T
    HX = H_MAT @ DRIFT
    Hs = H_MAT @ s_init
    tau = get_tau(0.5, 1.1)
    x_in = bordered_solve(HQH + 0.5 * np.diag(R_DIAG), HX, OBS - Hs)
    x_pr = bordered_solve(HQH - tau * np.diag(R_DIAG), HX, Hs)
    x = x_in + x_pr
    expected = DRIFT * x[-1] + Q @ H_MAT.T @ x[:-1]
    np.testing.assert_allclose(s_hist[:, 1], expected, rtol=1e-4, atol=1e-5)


def test_lm_option_zero_is_plain_solve() -> None:
    s_hist_lm, _, _, _ = pcga_iteration_lm(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=1, lm_option=0
    )
    s_hist, _, _, _ = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=1
    )
    np.testing.assert_allclose(s_hist_lm[:, 1], s_hist[:, 1])


@pytest.mark.parametrize(
    "randls_mat",
    [
        np.eye(N_OBS + 1),
        np.random.default_rng(11).normal(size=(N_OBS + 6, N_OBS + 1)),
    ],
)
def test_randls_gives_same_solution(randls_mat) -> None:
    s_hist, _, _, _ = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=1
    )
    s_hist_rls, _, _, _ = pcga_iteration(
        linear_model,
        np.zeros(N_S),
        DRIFT,
        ZETAS,
        R_DIAG,
        OBS,
        maxiter=1,
        is_randls=True,
        randls_mat=randls_mat,
    )
    np.testing.assert_allclose(s_hist_rls[:, 1], s_hist[:, 1], rtol=1e-6, atol=1e-8)


def test_apply_whitening() -> None:
    S = np.array([[1.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0], [0.0, 2.0] + [0.0] * 6])
    fwd, cov, obs = apply_whitening(linear_model, R_DIAG, OBS, S)
    np.testing.assert_allclose(cov, S @ np.diag(R_DIAG) @ S.T)
    np.testing.assert_allclose(obs, S @ OBS)
    np.testing.assert_allclose(fwd(S_TRUE), S @ H_MAT @ S_TRUE)

    with pytest.raises(ValueError, match="whitening matrix must have shape"):
        apply_whitening(linear_model, R_DIAG, OBS, S[:, :5])


def test_rga_iteration_is_whitened_pcga() -> None:
    S = np.random.default_rng(5).normal(size=(4, N_OBS))
    res_rga = rga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, S, maxiter=2
    )
    fwd, cov, obs = apply_whitening(linear_model, R_DIAG, OBS, S)
    res_pcga = pcga_iteration(fwd, np.zeros(N_S), DRIFT, ZETAS, cov, obs, maxiter=2)
    assert res_rga[3] == res_pcga[3]
    np.testing.assert_allclose(res_rga[0], res_pcga[0])
    np.testing.assert_allclose(res_rga[2], res_pcga[2])


def test_zetas_as_sequence() -> None:
    s_hist, _, _, _ = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, maxiter=1
    )
    s_hist_seq, _, _, _ = pcga_iteration(
        linear_model, np.zeros(N_S), DRIFT, list(ZETAS.T), R_DIAG, OBS, maxiter=1
    )
    np.testing.assert_allclose(s_hist_seq, s_hist)


@pytest.mark.parametrize(
    "kwargs,expected_exception",
    [
        ({}, does_not_raise()),
        ({"zetas": ZETAS[:-1]}, pytest.raises(ValueError, match="zetas must have shape")),
        (
            {"zetas": [ZETAS[:, 0], ZETAS[:-1, 1]]},
            pytest.raises(ValueError, match="zeta #1 must be a 1D vector"),
        ),
        ({"zetas": []}, pytest.raises(ValueError, match="At least one zeta")),
        ({"drift": DRIFT[:-1]}, pytest.raises(ValueError, match="The drift must be")),
        ({"s_true": S_TRUE[:-1]}, pytest.raises(ValueError, match="s_true must be")),
        ({"cov_obs": np.ones(N_OBS + 1)}, pytest.raises(ValueError, match="cov_obs")),
        ({"is_randls": True}, pytest.raises(ValueError, match="randls_mat must be")),
        (
            {"is_randls": True, "randls_mat": np.eye(N_OBS)},
            pytest.raises(ValueError, match="randls_mat must have shape"),
        ),
        (
            {"strategy": SolveStrategy.WHITENED},
            pytest.raises(ValueError, match="A whitening matrix must be provided"),
        ),
        (
            {"strategy": "whitened", "whitening_mat": np.eye(N_OBS + 1)},
            pytest.raises(ValueError, match="The whitening matrix must have shape"),
        ),
        ({"lm_option": 2}, pytest.raises(ValueError, match="lm_option must be 0 or 1")),
        ({"maxiter": 0}, pytest.raises(ValueError, match="maxiter must be at least 1")),
        ({"delta": 0.0}, pytest.raises(ValueError, match="delta must be positive")),
    ],
)
def test_input_validation(kwargs, expected_exception) -> None:
    args = {
        "s_init": np.zeros(N_S),
        "obs": OBS,
        "cov_obs": R_DIAG,
        "forward_model": linear_model,
        "zetas": ZETAS,
        "drift": DRIFT,
        "s_true": S_TRUE,
    }
    args.update(kwargs)
    with expected_exception:
        PCGA(**args)


def test_forward_model_failure_aborts_the_run() -> None:
    solver = PCGA(np.zeros(N_S), OBS, R_DIAG, failing_model, ZETAS, DRIFT)
    with pytest.raises(ForwardModelError, match="failed for run 0"):
        solver.run()


def test_parallel_forward_runs() -> None:
    res_seq = get_linear_solver(maxiter=2).run()
    res_par = get_linear_solver(
        maxiter=2, is_parallel=True, max_workers=3, use_threads=True
    ).run()
    np.testing.assert_allclose(res_par[0], res_seq[0])
    np.testing.assert_allclose(res_par[2], res_seq[2])
    assert res_par[3] == res_seq[3]


class ScriptedCostPCGA(PCGA):
    """PCGA whose cost at each iteration is given in advance."""

    def __init__(self, costs, *args, **kwargs) -> None:
        self.costs = list(costs)
        super().__init__(*args, **kwargs)

    def objective_function(self, simul_obs, xi, HQH) -> float:
        return self.costs[self.istate.n_iter - 1]


@pytest.mark.parametrize(
    "maxiter,expected_converged",
    [(3, False), (4, True)],
)
def test_convergence_at_last_iteration(maxiter, expected_converged) -> None:
    # the cost decreases by more than jtol, except on the fourth iteration
    costs = [10.0, 5.0, 2.0, 1.995]
    solver = ScriptedCostPCGA(
        costs,
        np.zeros(N_S),
        OBS,
        R_DIAG,
        linear_model,
        ZETAS,
        DRIFT,
        maxiter=maxiter,
        jtol=0.01,
    )
    _, _, cost_seq, n_iter = solver.run()
    assert n_iter == maxiter
    assert solver.istate.is_converged is expected_converged
    np.testing.assert_allclose(cost_seq, costs[:maxiter])
    if expected_converged:
        assert solver.istate.status == "CONVERGENCE: COST_CHANGE_<=_JTOL"
    else:
        assert solver.istate.status == "STOP: TOTAL NO. of ITERATIONS REACHED LIMIT"


def test_same_solver_run_twice_is_reproducible() -> None:
    solver = get_linear_solver(strategy=SolveStrategy.LEVENBERG_MARQUARDT, maxiter=3)
    s_hist_1, rmse_seq_1, cost_seq_1, n_iter_1 = solver.run()
    lambda_seq_1 = list(solver.istate.lambda_seq)
    s_hist_2, rmse_seq_2, cost_seq_2, n_iter_2 = solver.run()

    assert solver.istate.lambda_seq[0] == 0.5
    assert solver.istate.lambda_seq == lambda_seq_1
    assert n_iter_2 == n_iter_1
    np.testing.assert_array_equal(s_hist_2, s_hist_1)
    np.testing.assert_array_equal(cost_seq_2, cost_seq_1)
    np.testing.assert_array_equal(rmse_seq_2, rmse_seq_1)


@pytest.mark.parametrize(
    "whitening_mat",
    [
        np.eye(N_OBS) + 0.2 * np.random.default_rng(8).normal(size=(N_OBS, N_OBS)),
        np.random.default_rng(9).normal(size=(5, N_OBS)),
    ],
)
def test_whitened_solver_does_not_modify_forward_model(whitening_mat) -> None:
    fwd = EnsembleForwardModel(linear_model, is_parallel=True, use_threads=True)

    def get_solver() -> PCGA:
        return PCGA(
            np.zeros(N_S),
            OBS,
            R_DIAG,
            fwd,
            ZETAS,
            DRIFT,
            strategy=SolveStrategy.WHITENED,
            whitening_mat=whitening_mat,
            maxiter=2,
        )

    solver_1 = get_solver()
    res_1 = solver_1.run()
    res_2 = get_solver().run()

    assert fwd.fun is linear_model
    assert solver_1.forward_model is not fwd
    assert solver_1.forward_model.is_parallel
    assert solver_1.forward_model.use_threads
    np.testing.assert_array_equal(res_2[0], res_1[0])

    # same as applying the whitening to a bare function
    res_rga = rga_iteration(
        linear_model, np.zeros(N_S), DRIFT, ZETAS, R_DIAG, OBS, whitening_mat, maxiter=2
    )
    np.testing.assert_allclose(res_1[0], res_rga[0])
