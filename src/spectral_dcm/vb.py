"""Variational Laplace inversion of a frequency-domain model.

Gauss-Newton ascent on the variational free energy

    F = 1/2 [ln|iS| - e' iS e - ny ln 2 pi]                 (accuracy)
      + 1/2 [ln|Pt Cp| - ep' Pt ep]                          (parameter complexity)
      + 1/2 [ln|Ph Ch| - eh' Ph eh]                          (hyperparameter complexity)

with residual e = y - g(theta), data precision iS = sum_i exp(h_i) Q_i,
parameter deviation ep (reduced space) and hyperparameter deviation eh. Each
iteration alternates:

  M-step  Fisher scoring on the hyperparameters h given the current theta;
  E-step  a damped Gauss-Newton step on theta given h.

Steps that lower F are rejected: the previous state is restored and the
damping raised. Accepted steps lower the damping. Complex data are handled as
real vectors [Re; Im] (see ``utils.as_real_vector``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Sequence

import numpy as np
from scipy import linalg

from .exceptions import MalformedInputError, NumericalInstabilityError
from .precision import check_precision_components
from .utils import as_real_vector, check_psd, logdet, symmetrize

# largest tolerated infinity-norm of the prediction Jacobian
MAX_JACOBIAN_NORM = np.exp(32.0)
MAX_CONDITION = 1.0 / np.finfo(float).eps


@dataclass
class VLResult:
    mean: np.ndarray
    reduced_mean: np.ndarray
    covariance: np.ndarray
    V: np.ndarray
    hyper_mean: np.ndarray
    hyper_covariance: np.ndarray
    free_energy: np.ndarray
    accepted: np.ndarray
    n_iter: int
    converged: bool

    @property
    def full_covariance(self) -> np.ndarray:
        """Posterior covariance embedded in the full parameter space."""
        return self.V @ self.covariance @ self.V.T

    @property
    def accepted_free_energy(self) -> np.ndarray:
        return self.free_energy[self.accepted]

    @property
    def final_free_energy(self) -> float:
        return float(self.accepted_free_energy[-1])


def _inverse_pd(M: np.ndarray, name: str) -> np.ndarray:
    M = symmetrize(M)
    try:
        c = linalg.cho_factor(M)
    except linalg.LinAlgError as exc:
        raise NumericalInstabilityError(f"{name} is not positive definite") from exc
    inv = linalg.cho_solve(c, np.eye(M.shape[0]))
    if not np.all(np.isfinite(inv)):
        raise NumericalInstabilityError(f"{name} has a non-finite inverse")
    return symmetrize(inv)


def _damped_step(curvature: np.ndarray, gradient: np.ndarray, v: float) -> np.ndarray:
    """Solve (H + exp(-v) s I) dx = g with s the mean curvature."""
    n = gradient.size
    scale = max(float(np.trace(curvature)) / n, np.finfo(float).tiny)
    M = symmetrize(curvature) + np.exp(-v) * scale * np.eye(n)
    if not np.all(np.isfinite(M)) or np.linalg.cond(M) > MAX_CONDITION:
        raise NumericalInstabilityError("regularised curvature is singular")
    try:
        return linalg.solve(M, gradient, assume_a="pos")
    except linalg.LinAlgError as exc:
        raise NumericalInstabilityError("regularised curvature is singular") from exc


def _noise_precision(Q: Sequence[np.ndarray], h: np.ndarray) -> List[np.ndarray]:
    return [np.exp(hi) * q for hi, q in zip(h, Q)]


def _validate(y, prior_mean, V, theta_precision, hyper_mean, hyper_precision, Q, max_iter):
    y_vec = as_real_vector(y)
    if not np.all(np.isfinite(y_vec)):
        raise MalformedInputError("data contain non-finite values")
    prior_mean = np.asarray(prior_mean, float).ravel()
    V = np.asarray(V, float)
    if V.ndim != 2 or V.shape[0] != prior_mean.size:
        raise MalformedInputError(
            f"reduction operator of shape {V.shape} does not match {prior_mean.size} parameters"
        )
    if V.shape[1] == 0:
        raise MalformedInputError("no free parameters")
    Pt = check_psd(np.atleast_2d(np.asarray(theta_precision, float)), "theta_precision")
    if Pt.shape != (V.shape[1], V.shape[1]):
        raise MalformedInputError(
            f"theta_precision has shape {Pt.shape}, expected {(V.shape[1], V.shape[1])}"
        )
    Q = check_precision_components(Q, y_vec.size)
    mu_h = np.atleast_1d(np.asarray(hyper_mean, float)).ravel()
    if mu_h.size != len(Q):
        raise MalformedInputError(f"{len(Q)} precision components but {mu_h.size} hyperparameters")
    Ph = check_psd(np.atleast_2d(np.asarray(hyper_precision, float)), "hyper_precision")
    if Ph.shape != (len(Q), len(Q)):
        raise MalformedInputError(f"hyper_precision has shape {Ph.shape}, expected {(len(Q), len(Q))}")
    for M, name in ((Pt, "theta_precision"), (Ph, "hyper_precision")):
        try:
            logdet(M)
        except NumericalInstabilityError as exc:
            raise MalformedInputError(f"{name} must be positive definite") from exc
    if max_iter < 1:
        raise MalformedInputError("max_iter must be >= 1")
    return y_vec, prior_mean, V, symmetrize(Pt), mu_h, symmetrize(Ph), Q


def variational_laplace(
    predict: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    prior_mean: np.ndarray,
    V: np.ndarray,
    theta_precision: np.ndarray,
    hyper_mean: np.ndarray,
    hyper_precision: np.ndarray,
    Q: Sequence[np.ndarray],
    max_iter: int = 128,
    tol: float = 1e-1,
    patience: int = 4,
    dx: float = np.exp(-8.0),
    max_hyper_iter: int = 8,
    verbose: bool = False,
) -> VLResult:
    """Posterior over parameters and noise hyperparameters.

    Parameters
    ----------
    predict : callable
        Maps a full flat parameter vector to a prediction with the same
        number of entries as `y` (real or complex).
    y : array_like
        Data, e.g. an empirical CSD of shape (nf, n, n).
    prior_mean : ndarray, shape (d,)
        Prior mean; also the expansion point of the first iteration.
    V : ndarray, shape (d, k)
        Reduction operator, theta = prior_mean + V @ ep.
    theta_precision : ndarray, shape (k, k)
        Reduced prior precision.
    hyper_mean, hyper_precision : ndarray, shapes (nh,), (nh, nh)
        Gaussian prior on the log-precisions h.
    Q : sequence of ndarray
        Precision components, each (ny, ny) with ny = len(as_real_vector(y)).
    max_iter : int
        Iteration cap. Reaching it returns a result with ``converged=False``.
    tol, patience : float, int
        Converged once the predicted free-energy gain of the next step stays
        below `tol` for `patience` consecutive accepted iterations. Rejected
        iterations neither count nor reset the run.
    dx : float
        Finite-difference step for the prediction Jacobian.
    max_hyper_iter : int
        Fisher-scoring updates of h per iteration.
    verbose : bool
        Print one line per iteration.

    Returns
    -------
    VLResult
        Best accepted state. Raises NumericalInstabilityError (carrying the
        free-energy trajectory so far) if the curvature becomes singular or
        the model cannot be linearised.
    """
    y_vec, prior_mean, V, Pt, mu_h, Ph, Q = _validate(
        y, prior_mean, V, theta_precision, hyper_mean, hyper_precision, Q, max_iter
    )
    ny = y_vec.size
    n_p = V.shape[1]
    logdet_Pt, logdet_Ph = logdet(Pt), logdet(Ph)

    def linearize(ep):
        """Prediction and its Jacobian along the columns of V; flags instability."""
        theta = prior_mean + V @ ep
        try:
            f0 = as_real_vector(predict(theta))
            if f0.size != ny:
                raise MalformedInputError(f"prediction has {f0.size} entries, data have {ny}")
            J = np.empty((ny, n_p))
            for i in range(n_p):
                J[:, i] = (as_real_vector(predict(theta + dx * V[:, i])) - f0) / dx
        except NumericalInstabilityError:
            return None, None, True
        with np.errstate(invalid="ignore", over="ignore"):
            bad = not (np.all(np.isfinite(f0)) and np.all(np.isfinite(J)))
            bad = bad or np.abs(J).sum(axis=1).max() > MAX_JACOBIAN_NORM
        return f0, J, bad

    ep = np.zeros(n_p)
    h = mu_h.copy()
    v = -4.0
    best = None
    F_hist: List[float] = []
    acc_hist: List[bool] = []
    small_gain: List[bool] = []
    converged = False
    k = 0

    try:
        for k in range(1, max_iter + 1):
            f0, J, bad = linearize(ep)
            if bad and best is not None:
                for _ in range(4):
                    v = min(v - 2.0, -4.0)
                    ep = best["ep"] + _damped_step(best["curv"], best["grad"], v)
                    f0, J, bad = linearize(ep)
                    if not bad:
                        break
            if bad:
                raise NumericalInstabilityError(f"model cannot be linearised at iteration {k}")
            e = y_vec - f0

            # M-step: Fisher scoring on h, statistics always evaluated at the final h
            done = False
            for m in range(max_hyper_iter + 1):
                P = _noise_precision(Q, h)
                iS = symmetrize(sum(P))
                S = _inverse_pd(iS, "data precision")
                Cp = _inverse_pd(J.T @ iS @ J + Pt, "parameter curvature")
                PS = [p @ S for p in P]
                dFdh = np.array([
                    (np.trace(ps) - e @ p @ e - np.sum(Cp * (J.T @ p @ J))) / 2.0
                    for p, ps in zip(P, PS)
                ])
                dFdhh = np.array([[-np.sum(a * b.T) / 2.0 for b in PS] for a in PS])
                eh = h - mu_h
                dFdh = dFdh - Ph @ eh
                dFdhh = symmetrize(dFdhh - Ph)
                Ch = _inverse_pd(-dFdhh, "hyperparameter curvature")
                if m == max_hyper_iter or done:
                    break
                dh = np.clip(Ch @ dFdh, -1.0, 1.0)
                h = h + dh
                done = float(dFdh @ dh) < np.exp(-2.0)

            F = (logdet(iS) - e @ iS @ e - ny * np.log(2.0 * np.pi)) / 2.0
            F += (logdet_Pt + logdet(Cp) - ep @ Pt @ ep) / 2.0
            F += (logdet_Ph + logdet(Ch) - eh @ Ph @ eh) / 2.0
            F = float(F)

            accepted = best is None or F > best["F"]
            if accepted:
                best = {
                    "ep": ep.copy(),
                    "h": h.copy(),
                    "F": F,
                    "Cp": Cp,
                    "Ch": Ch,
                    "grad": J.T @ iS @ e - Pt @ ep,
                    "curv": symmetrize(J.T @ iS @ J + Pt),
                }
                v = min(v + 0.5, 4.0)
            else:
                h = best["h"].copy()
                v = min(v - 2.0, -4.0)
            F_hist.append(F)
            acc_hist.append(accepted)

            step = _damped_step(best["curv"], best["grad"], v)
            ep = best["ep"] + step
            gain = float(best["grad"] @ step)

            if verbose:
                status = "accept" if accepted else "reject"
                print(f"[VL]  iter {k:4d}  F = {F: .4e}  dF = {gain: .3e}  v = {v: .1f}  {status}")

            # rejected iterations do not count towards convergence
            if accepted:
                small_gain.append(gain < tol)
                if len(small_gain) >= patience and all(small_gain[-patience:]):
                    converged = True
                    if verbose:
                        print(f"[VL]  converged at iter {k}  F = {best['F']: .4e}")
                    break
    except NumericalInstabilityError as exc:
        raise NumericalInstabilityError(str(exc), free_energy=F_hist) from exc

    if verbose and not converged:
        print(f"[VL]  no convergence after {k} iterations  F = {best['F']: .4e}")

    return VLResult(
        mean=prior_mean + V @ best["ep"],
        reduced_mean=best["ep"],
        covariance=best["Cp"],
        V=V,
        hyper_mean=best["h"],
        hyper_covariance=best["Ch"],
        free_energy=np.asarray(F_hist, float),
        accepted=np.asarray(acc_hist, bool),
        n_iter=k,
        converged=converged,
    )
