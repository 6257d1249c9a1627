"""Multivariate autoregressive (MAR) models and their cross-spectral densities.

The central routine is :func:`mar_to_csd`, which evaluates

    A(f) = I - sum_k a_k exp(-i 2 pi f k / fs),   S(f) = A(f)^-1 C A(f)^-H

for a MAR model with lag matrices a_k and innovation covariance C. The
remaining functions go the other way: autocovariances (from data or from a
cross-spectrum) are turned into MAR coefficients by solving the block
Yule-Walker equations.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy import linalg

from .exceptions import MalformedInputError, NumericalInstabilityError
from .utils import check_square, symmetrize


@dataclass(frozen=True)
class MARModel:
    """Fitted MAR model.

    coefficients : ndarray, shape (p, n, n)
        Lag matrices a_1..a_p, y_t = sum_k a_k y_{t-k} + e_t.
    noise_cov : ndarray, shape (n, n)
        Innovation covariance of e_t.
    """

    coefficients: np.ndarray
    noise_cov: np.ndarray

    def __post_init__(self) -> None:
        C = np.atleast_2d(np.asarray(self.noise_cov, float))
        C = check_square(C, "noise_cov", symmetric=True)
        n = C.shape[0]
        A = np.asarray(self.coefficients, float)
        if A.size == 0:
            A = np.zeros((0, n, n))
        if A.ndim != 3 or A.shape[1:] != (n, n):
            raise MalformedInputError(
                f"coefficients must have shape (p, {n}, {n}), got {A.shape}"
            )
        if not np.all(np.isfinite(A)):
            raise MalformedInputError("coefficients contain non-finite values")
        object.__setattr__(self, "coefficients", A)
        object.__setattr__(self, "noise_cov", C)

    @property
    def order(self) -> int:
        return int(self.coefficients.shape[0])

    @property
    def n_channels(self) -> int:
        return int(self.noise_cov.shape[0])


def _check_frequencies(freqs) -> np.ndarray:
    freqs = np.asarray(freqs, float)
    if freqs.ndim != 1:
        raise MalformedInputError("freqs must be 1D")
    if not np.all(np.isfinite(freqs)) or np.any(freqs < 0):
        raise MalformedInputError("freqs must be finite and non-negative")
    return freqs


def mar_to_csd(mar: MARModel, freqs: np.ndarray, fs: float, tol: float = 1e-10) -> np.ndarray:
    """Cross-spectral density of a MAR model.

    Parameters
    ----------
    mar : MARModel
    freqs : array_like, shape (nf,)
        Frequencies in Hz.
    fs : float
        Sampling rate in Hz.
    tol : float
        A transfer matrix whose smallest singular value is below
        ``tol * max(1, largest)`` is treated as singular.

    Returns
    -------
    csd : complex ndarray, shape (nf, n, n)
        Hermitian spectral matrix per frequency, in the order of `freqs`.
    """
    freqs = _check_frequencies(freqs)
    if not fs > 0:
        raise MalformedInputError("fs must be > 0")
    n = mar.n_channels
    if freqs.size == 0:
        return np.zeros((0, n, n), complex)

    lags = np.arange(1, mar.order + 1)
    z = np.exp(-2j * np.pi * np.outer(freqs, lags) / fs)
    A = np.eye(n)[None, :, :] - np.einsum("fk,kij->fij", z, mar.coefficients)

    sv = np.linalg.svd(A, compute_uv=False)
    singular = sv[:, -1] <= tol * np.maximum(1.0, sv[:, 0])
    if np.any(singular):
        f_bad = float(freqs[np.argmax(singular)])
        raise NumericalInstabilityError(
            f"MAR transfer matrix is singular at {f_bad:g} Hz", frequency=f_bad
        )

    H = np.linalg.inv(A)
    S = H @ mar.noise_cov @ np.conj(np.swapaxes(H, -1, -2))
    return symmetrize(S)


def autocovariance(y: np.ndarray, max_lag: int) -> np.ndarray:
    """Biased sample autocovariance Gamma(k) = E[y_t y_{t-k}^T], k = 0..max_lag."""
    y = np.asarray(y, float)
    if y.ndim == 1:
        y = y[:, None]
    if y.ndim != 2:
        raise MalformedInputError("y must be 2D (time x channels)")
    T = y.shape[0]
    if max_lag < 0 or max_lag >= T:
        raise MalformedInputError(f"max_lag must be in [0, {T - 1}]")
    yc = y - y.mean(axis=0, keepdims=True)
    return np.stack([yc[k:].T @ yc[: T - k] / T for k in range(max_lag + 1)], axis=0)


def yule_walker(gammas: np.ndarray, order: int) -> MARModel:
    """Solve the block Yule-Walker equations for a MAR(order) model.

    gammas[k] must hold Gamma(k) = E[y_t y_{t-k}^T] for k = 0..order.
    """
    gammas = np.asarray(gammas, float)
    if gammas.ndim != 3 or gammas.shape[1] != gammas.shape[2]:
        raise MalformedInputError("gammas must have shape (lags, n, n)")
    if order < 0 or gammas.shape[0] < order + 1:
        raise MalformedInputError(f"need autocovariances up to lag {order}")
    n = gammas.shape[1]
    g0 = symmetrize(gammas[0])
    if order == 0:
        return MARModel(np.zeros((0, n, n)), g0)

    def gamma(k):
        return gammas[k] if k >= 0 else gammas[-k].T

    # block (k, j) of R is Gamma(j - k)
    R = np.block([[gamma(j - k) for j in range(order)] for k in range(order)])
    G = np.hstack([gammas[k] for k in range(1, order + 1)])
    try:
        coef = linalg.solve(R.T, G.T, assume_a="sym").T
    except linalg.LinAlgError as exc:
        raise NumericalInstabilityError(f"Yule-Walker system is singular: {exc}") from exc
    A = np.stack([coef[:, k * n : (k + 1) * n] for k in range(order)], axis=0)
    C = g0 - sum(A[k] @ gammas[k + 1].T for k in range(order))
    return MARModel(A, symmetrize(C))


def fit_mar(y: np.ndarray, order: int) -> MARModel:
    """Fit a MAR model of the given order to a (n_samples, n_channels) series."""
    y = np.asarray(y, float)
    if y.ndim == 1:
        y = y[:, None]
    if y.shape[0] < 2 * (order + 1):
        raise MalformedInputError(
            f"need at least {2 * (order + 1)} samples for a MAR({order}) fit"
        )
    return yule_walker(autocovariance(y, order), order)


def csd_to_autocovariance(csd: np.ndarray, freqs: np.ndarray, fs: float, max_lag: int) -> np.ndarray:
    """Autocovariances implied by a one-sided cross-spectrum.

    Uses Gamma(k) = (1/fs) * sum_f w_f 2 Re[S(f) exp(i 2 pi f k / fs)], with
    quadrature weights w_f from the frequency spacing.
    """
    freqs = _check_frequencies(freqs)
    csd = np.asarray(csd, complex)
    if csd.ndim != 3 or csd.shape[0] != freqs.size or csd.shape[1] != csd.shape[2]:
        raise MalformedInputError(
            f"csd of shape {csd.shape} does not match {freqs.size} frequencies"
        )
    if freqs.size < 2:
        raise MalformedInputError("need at least two frequencies")
    w = np.gradient(freqs)
    phase = np.exp(2j * np.pi * np.outer(np.arange(max_lag + 1), freqs) / fs)
    return 2.0 * np.einsum("lf,f,fij->lij", phase, w, csd).real / fs


def csd_to_mar(csd: np.ndarray, freqs: np.ndarray, fs: float, order: int) -> MARModel:
    """MAR model whose autocovariances match those of `csd` up to lag `order`."""
    return yule_walker(csd_to_autocovariance(csd, freqs, fs, order), order)
