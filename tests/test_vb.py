"""Variational Laplace on small synthetic problems with known answers."""

from __future__ import annotations

import numpy as np
import pytest

from spectral_dcm.exceptions import MalformedInputError, NumericalInstabilityError
from spectral_dcm.reduction import reduce_parameter_space
from spectral_dcm.vb import variational_laplace


def _linear_problem(seed: int = 3):
    """20 observations, four free parameters and one pinned at its prior mean."""
    rng = np.random.default_rng(seed)
    J0 = rng.standard_normal((20, 5))
    theta_true = np.array([0.8, -0.5, 0.3, 1.2, 0.7])
    prior_mean = np.array([0.0, 0.0, 0.0, 0.0, 0.7])
    V, Pt = reduce_parameter_space(np.array([1.0, 1.0, 1.0, 1.0, 0.0]))

    def predict(theta):
        return J0 @ theta

    return predict, J0 @ theta_true, theta_true, prior_mean, V, Pt


def _fit(predict, y, prior_mean, V, Pt, **kwargs):
    ny = 2 * np.asarray(y).size
    return variational_laplace(
        predict,
        y,
        prior_mean,
        V,
        Pt,
        hyper_mean=np.array([8.0]),
        hyper_precision=np.array([[16.0]]),
        Q=[np.eye(ny)],
        **kwargs,
    )


def test_linear_model_is_recovered():
    predict, y, theta_true, prior_mean, V, Pt = _linear_problem()
    res = _fit(predict, y, prior_mean, V, Pt, tol=1e-2)
    assert res.converged
    assert res.n_iter < 128
    assert np.allclose(res.mean, theta_true, atol=1e-2)
    # pinned parameter never moves
    assert res.mean[4] == 0.7
    assert res.full_covariance.shape == (5, 5)
    assert np.all(res.full_covariance[4] == 0)


def test_accepted_free_energy_never_decreases():
    predict, y, _, prior_mean, V, Pt = _linear_problem(seed=7)
    res = _fit(predict, y, prior_mean, V, Pt)
    F = res.accepted_free_energy
    assert res.accepted[0]
    assert np.all(np.diff(F) >= 0)
    assert res.final_free_energy == F.max()
    assert len(res.free_energy) == len(res.accepted) == res.n_iter


def test_nonlinear_posterior_covariance_is_symmetric_psd():
    rng = np.random.default_rng(11)
    J0 = 0.5 * rng.standard_normal((12, 3))
    theta_true = np.array([0.4, -0.3, 0.6])
    y = np.exp(J0 @ theta_true)
    V, Pt = reduce_parameter_space(np.ones(3))

    def predict(theta):
        return np.exp(J0 @ theta)

    res = _fit(predict, y, np.zeros(3), V, Pt, max_iter=32)
    C = res.covariance
    assert np.allclose(C, C.T)
    assert np.linalg.eigvalsh(C).min() > 0
    assert np.all(np.diff(res.accepted_free_energy) >= 0)
    assert res.hyper_covariance.shape == (1, 1)


def test_complex_data_are_fitted_as_real_vectors():
    rng = np.random.default_rng(2)
    B = rng.standard_normal((6, 2)) + 1j * rng.standard_normal((6, 2))
    theta_true = np.array([0.5, -1.0])
    V, Pt = reduce_parameter_space(np.ones(2))

    def predict(theta):
        return B @ theta

    res = _fit(predict, B @ theta_true, np.zeros(2), V, Pt, tol=1e-2)
    assert res.converged
    assert np.allclose(res.mean, theta_true, atol=1e-2)


def test_iteration_cap_returns_unconverged_result():
    predict, y, _, prior_mean, V, Pt = _linear_problem()
    res = _fit(predict, y, prior_mean, V, Pt, max_iter=2)
    assert not res.converged
    assert res.n_iter == 2
    assert res.free_energy.shape == (2,)


def test_malformed_inputs_fail_before_any_prediction():
    predict, y, _, prior_mean, V, Pt = _linear_problem()
    calls = []

    def counting_predict(theta):
        calls.append(theta)
        return predict(theta)

    with pytest.raises(MalformedInputError):
        variational_laplace(counting_predict, y, prior_mean, V, Pt, [8.0], [[16.0]], [np.eye(30)])
    with pytest.raises(MalformedInputError):
        variational_laplace(counting_predict, y, prior_mean, V, Pt, [8.0, 8.0], [[16.0]], [np.eye(40)])
    with pytest.raises(MalformedInputError):
        variational_laplace(counting_predict, y, prior_mean, V[:4], Pt, [8.0], [[16.0]], [np.eye(40)])
    with pytest.raises(MalformedInputError):
        variational_laplace(counting_predict, y, prior_mean, V, -Pt, [8.0], [[16.0]], [np.eye(40)])
    assert calls == []


def test_unusable_model_raises_with_trajectory():
    predict, y, _, prior_mean, V, Pt = _linear_problem()
    calls = []

    def failing_predict(theta):
        calls.append(theta)
        # first linearisation (1 + 4 calls) works, everything after is NaN
        if len(calls) > 5:
            return np.full(20, np.nan)
        return predict(theta)

    with pytest.raises(NumericalInstabilityError) as info:
        _fit(failing_predict, y, prior_mean, V, Pt)
    assert info.value.free_energy.shape == (1,)
    assert np.isfinite(info.value.free_energy[0])

    with pytest.raises(NumericalInstabilityError) as info:
        _fit(lambda theta: np.full(20, np.nan), y, prior_mean, V, Pt)
    assert info.value.free_energy.size == 0


def test_verbose_reports_iterations(capsys):
    predict, y, _, prior_mean, V, Pt = _linear_problem()
    _fit(predict, y, prior_mean, V, Pt, max_iter=3, verbose=True)
    out = capsys.readouterr().out
    assert out.count("[VL]  iter") == 3


def _trap_problem(threshold: float):
    """One parameter, linear below `threshold`, a large offset at or above it."""
    rng = np.random.default_rng(9)
    a = rng.standard_normal(10)
    calls = []

    def predict(theta):
        calls.append(float(theta[0]))
        offset = 50.0 if theta[0] >= threshold else 0.0
        return a * theta[0] + offset

    return predict, a * 0.9, calls


def test_rejected_steps_restart_from_last_accepted_state():
    predict, y, calls = _trap_problem(0.3)
    V, Pt = reduce_parameter_space(np.ones(1))
    res = _fit(predict, y, np.zeros(1), V, Pt, max_iter=32)
    assert (~res.accepted).any()
    assert np.all(np.diff(res.accepted_free_energy) >= 0)
    assert res.mean[0] < 0.3

    # one free parameter: each iteration evaluates its base point, then one perturbation
    base = np.array(calls[0::2])
    assert base.size == res.n_iter
    for i in np.flatnonzero(~res.accepted):
        if i + 1 >= res.n_iter:
            continue
        j = np.flatnonzero(res.accepted[:i])[-1]
        tried, retried = base[i] - base[j], base[i + 1] - base[j]
        assert np.sign(retried) == np.sign(tried)
        assert abs(retried) < abs(tried)


def test_rejections_alone_never_signal_convergence():
    rng = np.random.default_rng(10)
    a = rng.standard_normal(10)

    def predict(theta):
        # any move away from the prior mean is heavily penalised
        return a * theta[0] + (50.0 if theta[0] != 0 else 0.0)

    V, Pt = reduce_parameter_space(np.ones(1))
    res = _fit(predict, a * 0.9, np.zeros(1), V, Pt, max_iter=12)
    assert not res.converged
    assert res.n_iter == 12
    assert res.accepted.sum() == 1
    assert res.mean[0] == 0.0
