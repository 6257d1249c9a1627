"""Predicted cross-spectral density of a linearised DCM.

The model collaborator supplies df/dx, dg/dx and df/du at the current
parameters. The transfer function is the resolvent

    K(w) = dg/dx (i 2 pi w I - df/dx)^-1 df/du,

evaluated in the eigenbasis of df/dx only when slow modes must be clamped.
It is combined with parameterised endogenous fluctuations Gu and observation
noise Gn:

    G(w) = K(w) Gu(w) K(w)^H + Gn(w).
"""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np

from .exceptions import MalformedInputError, NumericalInstabilityError
from .mar import csd_to_mar, mar_to_csd
from .utils import symmetrize

# slowest admissible decay rate (Hz) of any eigenmode
STABILITY_CAP = -1.0 / 32.0
MAX_MODAL_CONDITION = 1e8


def transfer_function(
    dfdx: np.ndarray,
    dgdx: np.ndarray,
    dfdu: np.ndarray,
    freqs: np.ndarray,
) -> np.ndarray:
    """Transfer function from inputs to observations.

    When every eigenvalue of df/dx decays at least as fast as
    ``STABILITY_CAP`` this is the resolvent dg/dx (i 2 pi w I - df/dx)^-1 df/du,
    which stays exact when df/dx is defective (e.g. repeated decay rates at
    rest). Otherwise the slow modes are clamped in the eigenbasis, which
    must then be well conditioned.

    Returns
    -------
    K : complex ndarray, shape (nf, n_outputs, n_inputs)
    """
    dfdx = np.asarray(dfdx, float)
    dgdx = np.asarray(dgdx, float)
    dfdu = np.asarray(dfdu, float)
    freqs = np.asarray(freqs, float)
    n = dfdx.shape[0]
    if dfdx.shape != (n, n) or dgdx.shape[1] != n or dfdu.shape[0] != n:
        raise MalformedInputError(
            f"incompatible Jacobians: df/dx {dfdx.shape}, dg/dx {dgdx.shape}, df/du {dfdu.shape}"
        )
    if not np.all(np.isfinite(dfdx)):
        raise NumericalInstabilityError("df/dx contains non-finite values")

    s = np.linalg.eigvals(dfdx)
    if np.all(s.real <= STABILITY_CAP):
        M = 2j * np.pi * freqs[:, None, None] * np.eye(n)[None] - dfdx[None]
        try:
            X = np.linalg.solve(M, np.broadcast_to(dfdu, (freqs.size,) + dfdu.shape))
        except np.linalg.LinAlgError as exc:
            raise NumericalInstabilityError("resolvent of df/dx is singular") from exc
        return dgdx @ X

    s, vecs = np.linalg.eig(dfdx)
    if np.linalg.cond(vecs) > MAX_MODAL_CONDITION:
        raise NumericalInstabilityError("eigenbasis of df/dx is ill-conditioned, cannot clamp slow modes")
    s = np.minimum(s.real, STABILITY_CAP) + 1j * s.imag
    dgdv = dgdx @ vecs
    dvdu = np.linalg.solve(vecs, dfdu.astype(complex))
    modes = 1.0 / (2j * np.pi * freqs[:, None] - s[None, :])
    return np.einsum("gk,fk,ku->fgu", dgdv, modes, dvdu)


def fluctuation_spectra(
    freqs: np.ndarray,
    ln_alpha: np.ndarray,
    ln_beta: np.ndarray,
    ln_gamma: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Spectra of neuronal fluctuations (Gu) and observation noise (Gn).

    Gu is diagonal with power-law shape exp(a1) w^-exp(a2); Gn has a global
    component exp(b1) shared by every channel pair plus a regional diagonal
    exp(c_i), both with shape w^-(exp(b2)/2). Shapes are normalised to unit sum.
    """
    freqs = np.asarray(freqs, float)
    if np.any(freqs <= 0):
        raise MalformedInputError("fluctuation spectra need strictly positive frequencies")
    ln_alpha = np.asarray(ln_alpha, float).ravel()
    ln_beta = np.asarray(ln_beta, float).ravel()
    ln_gamma = np.asarray(ln_gamma, float).ravel()
    n = ln_gamma.size

    g = freqs ** (-np.exp(ln_alpha[1]))
    g = g / g.sum()
    Gu = np.exp(ln_alpha[0]) * g[:, None, None] * np.eye(n)[None]

    g = freqs ** (-np.exp(ln_beta[1]) / 2.0)
    g = g / g.sum()
    Gn = g[:, None, None] * (np.exp(ln_beta[0]) * np.ones((n, n)) + np.diag(np.exp(ln_gamma)))[None]
    return Gu, Gn


def predict_csd(
    model,
    params: Dict[str, np.ndarray],
    states: np.ndarray,
    freqs: np.ndarray,
    mar_order: int | None = None,
) -> np.ndarray:
    """Model cross-spectral density, shape (nf, n_regions, n_regions).

    When `mar_order` > 1 the prediction is re-expressed through a MAR model of
    order ``mar_order - 1`` (sampling rate 2 * max(freqs)), which gives it the
    same spectral smoothness as an empirical CSD computed from a fitted MAR.
    """
    freqs = np.asarray(freqs, float)
    dfdx, dgdx = model.jacobians(params, states)
    K = transfer_function(dfdx, dgdx, model.input_matrix(params), freqs)
    Gu, Gn = fluctuation_spectra(freqs, params["ln_alpha"], params["ln_beta"], params["ln_gamma"])
    G = symmetrize(K @ Gu @ np.conj(np.swapaxes(K, -1, -2)) + Gn)
    if mar_order is not None and mar_order > 1:
        fs = 2.0 * freqs.max()
        G = mar_to_csd(csd_to_mar(G, freqs, fs, mar_order - 1), freqs, fs)
    return G
