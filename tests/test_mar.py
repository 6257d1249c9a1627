"""MAR models, their cross-spectra and Yule-Walker fits."""

from __future__ import annotations

import numpy as np
import pytest

from spectral_dcm.exceptions import MalformedInputError, NumericalInstabilityError
from spectral_dcm.mar import MARModel, autocovariance, csd_to_mar, fit_mar, mar_to_csd


def _random_mar(n: int = 3, order: int = 2, seed: int = 0) -> MARModel:
    rng = np.random.default_rng(seed)
    coef = 0.2 * rng.standard_normal((order, n, n))
    B = rng.standard_normal((n, n))
    return MARModel(coef, B @ B.T + np.eye(n))


def _simulate_var1(A: np.ndarray, n_samples: int, seed: int = 4) -> np.ndarray:
    rng = np.random.default_rng(seed)
    y = np.zeros((n_samples, A.shape[0]))
    for t in range(1, n_samples):
        y[t] = A @ y[t - 1] + rng.standard_normal(A.shape[0])
    return y


def test_no_lags_no_innovation_gives_zero_csd():
    mar = MARModel(np.zeros((0, 3, 3)), np.zeros((3, 3)))
    S = mar_to_csd(mar, [0.0, 1.0, 5.0, 10.0], fs=20.0)
    assert S.shape == (4, 3, 3)
    assert np.all(S == 0)


def test_csd_is_hermitian_with_positive_diagonal():
    mar = _random_mar()
    freqs = np.linspace(0.0, 50.0, 20)
    S = mar_to_csd(mar, freqs, fs=100.0)
    assert S.shape == (20, 3, 3)
    assert np.allclose(S, np.conj(np.swapaxes(S, 1, 2)))
    diag = np.diagonal(S, axis1=1, axis2=2)
    assert np.all(diag.real > 0)
    assert np.allclose(diag.imag, 0.0)


def test_univariate_ar1_matches_closed_form():
    a, sigma2, fs = 0.7, 2.0, 10.0
    freqs = np.array([0.0, 1.0, 2.5, 5.0])
    S = mar_to_csd(MARModel([[[a]]], [[sigma2]]), freqs, fs)
    expected = sigma2 / np.abs(1.0 - a * np.exp(-2j * np.pi * freqs / fs)) ** 2
    assert np.allclose(S[:, 0, 0], expected)


def test_unit_root_raises_with_frequency():
    mar = MARModel([[[1.0]]], [[1.0]])
    with pytest.raises(NumericalInstabilityError) as info:
        mar_to_csd(mar, [0.0, 1.0, 2.0], fs=10.0)
    assert info.value.frequency == 0.0


def test_malformed_mar_inputs():
    with pytest.raises(MalformedInputError):
        MARModel(np.zeros((1, 2, 3)), np.eye(2))
    with pytest.raises(MalformedInputError):
        MARModel(np.zeros((1, 2, 2)), np.array([[1.0, 0.5], [0.0, 1.0]]))
    with pytest.raises(MalformedInputError):
        mar_to_csd(_random_mar(), [-1.0, 1.0], fs=10.0)


def test_autocovariance_lag_zero_is_sample_covariance():
    rng = np.random.default_rng(1)
    y = rng.standard_normal((500, 2))
    G = autocovariance(y, 3)
    assert G.shape == (4, 2, 2)
    assert np.allclose(G[0], np.cov(y.T, bias=True))


def test_fit_mar_recovers_var1():
    A = np.array([[0.5, 0.2], [0.0, 0.3]])
    y = _simulate_var1(A, 20000)
    mar = fit_mar(y, 1)
    assert mar.order == 1 and mar.n_channels == 2
    assert np.allclose(mar.coefficients[0], A, atol=0.05)
    assert np.allclose(mar.noise_cov, np.eye(2), atol=0.05)


def test_fit_mar_needs_enough_samples():
    with pytest.raises(MalformedInputError):
        fit_mar(np.zeros((5, 2)), 4)


def test_csd_to_mar_recovers_generating_model():
    fs = 2.0
    mar = MARModel([[[0.5, 0.1], [-0.2, 0.3]]], [[1.0, 0.3], [0.3, 0.8]])
    # midpoint grid over (0, fs/2)
    freqs = (np.arange(512) + 0.5) * fs / 1024.0
    S = mar_to_csd(mar, freqs, fs)
    back = csd_to_mar(S, freqs, fs, 1)
    assert np.allclose(back.coefficients, mar.coefficients, atol=1e-3)
    assert np.allclose(back.noise_cov, mar.noise_cov, atol=1e-3)
