"""High-level orchestration.

:func:`invert_spectral_dcm` is the entry point for callers that already hold
an empirical CSD, priors and a model collaborator. :func:`run_bold_to_dcm`
runs the whole chain from regional time series: MAR fit -> CSD -> priors and
reduction -> precision components -> inversion.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Sequence

import numpy as np

from .exceptions import MalformedInputError
from .forward import predict_csd
from .mar import fit_mar, mar_to_csd
from .models import HemodynamicDCM
from .precision import check_precision_components, csd_precision_components
from .reduction import reduce_parameter_space
from .vb import variational_laplace


@dataclass(frozen=True)
class SpectralPriors:
    """Reduced parameter precision, hyperprior and precision components."""

    theta_precision: np.ndarray
    hyper_mean: np.ndarray
    hyper_precision: np.ndarray
    Q: Sequence[np.ndarray]


def default_frequencies(dt: float, n_freqs: int = 32) -> np.ndarray:
    """Frequency grid from 1/128 Hz to the Nyquist frequency of sampling step `dt`."""
    if dt <= 0:
        raise MalformedInputError("dt must be > 0")
    return np.linspace(1.0 / 128.0, 1.0 / (2.0 * dt), n_freqs)


def invert_spectral_dcm(
    states: np.ndarray,
    csd: np.ndarray,
    model,
    freqs: np.ndarray,
    V: np.ndarray,
    mar_order: int | None,
    params: Dict[str, np.ndarray],
    priors: SpectralPriors,
    max_iter: int = 128,
    tol: float = 1e-1,
    verbose: bool = False,
) -> Dict[str, Any]:
    """Fit a spectral DCM to an empirical cross-spectral density.

    Parameters
    ----------
    states : ndarray
        Expansion point of the model states (n_regions x states per region).
    csd : complex ndarray, shape (nf, n_regions, n_regions)
        Empirical CSD.
    model : object
        Model collaborator exposing ``schema``, ``n_regions``, ``n_states``,
        ``jacobians(params, states)`` and ``input_matrix(params)``.
    freqs : ndarray, shape (nf,)
        Frequencies (Hz) of the CSD bins.
    V : ndarray, shape (d, k)
        Reduction operator from :func:`reduce_parameter_space`.
    mar_order : int or None
        Order of the MAR model behind the empirical CSD; predictions are
        smoothed through a MAR of order ``mar_order - 1``. None disables it.
    params : dict
        Prior means of all parameters (full space).
    priors : SpectralPriors
    max_iter, tol, verbose
        Passed to :func:`variational_laplace`.

    Returns
    -------
    results : dict
        - 'posterior'     : VLResult
        - 'params'        : posterior means keyed by parameter name
        - 'predicted_csd' : model CSD at the posterior mean
        - 'freqs'         : frequencies
    """
    csd = np.asarray(csd, complex)
    freqs = np.asarray(freqs, float)
    if freqs.ndim != 1:
        raise MalformedInputError("freqs must be 1D")
    if not np.all(np.isfinite(freqs)) or np.any(freqs <= 0):
        raise MalformedInputError("freqs must be finite and strictly positive")
    if csd.ndim != 3 or csd.shape[1] != csd.shape[2]:
        raise MalformedInputError(f"csd must have shape (nf, n, n), got {csd.shape}")
    if csd.shape[0] != freqs.size:
        raise MalformedInputError(
            f"csd has {csd.shape[0]} frequency bins but {freqs.size} frequencies were given"
        )
    if csd.shape[1] != model.n_regions:
        raise MalformedInputError(
            f"csd has {csd.shape[1]} channels but the model has {model.n_regions} regions"
        )
    Q = check_precision_components(priors.Q, 2 * csd.size)

    schema = model.schema
    prior_mean = schema.flatten(params)
    dfdx, dgdx = model.jacobians(schema.unflatten(prior_mean), states)
    if dfdx.shape != (model.n_states, model.n_states) or dgdx.shape != (model.n_regions, model.n_states):
        raise MalformedInputError(
            f"model Jacobians have shapes {dfdx.shape} and {dgdx.shape}, expected "
            f"{(model.n_states, model.n_states)} and {(model.n_regions, model.n_states)}"
        )

    def predict(theta):
        return predict_csd(model, schema.unflatten(theta), states, freqs, mar_order)

    result = variational_laplace(
        predict,
        csd,
        prior_mean,
        V,
        priors.theta_precision,
        priors.hyper_mean,
        priors.hyper_precision,
        Q,
        max_iter=max_iter,
        tol=tol,
        verbose=verbose,
    )
    return {
        "posterior": result,
        "params": schema.unflatten(result.mean),
        "predicted_csd": predict(result.mean),
        "freqs": freqs,
    }


def run_bold_to_dcm(
    bold: np.ndarray,
    dt: float,
    freqs: np.ndarray | None = None,
    mar_order: int = 8,
    A: np.ndarray | None = None,
    connectivity_variance: float | None = None,
    hyper_mean: float = 8.0,
    hyper_precision: float = 128.0,
    basis: str = "csd",
    max_iter: int = 128,
    tol: float = 1e-1,
    verbose: bool = False,
) -> Dict[str, Any]:
    """Spectral DCM of regional time series.

    Parameters
    ----------
    bold : ndarray, shape (n_regions, n_samples)
        Regional time series.
    dt : float
        Sampling step in seconds.
    freqs : ndarray or None
        Frequencies to model; defaults to :func:`default_frequencies`.
    mar_order : int
        Order of the MAR model used to estimate the empirical CSD.
    A : ndarray or None
        Prior mean of the connectivity (log self-connections on the diagonal).
    connectivity_variance : float or None
        Prior variance of connectivity parameters (default 1/64).
    hyper_mean, hyper_precision : float
        Prior mean and precision of each log-precision hyperparameter.
    basis : {"csd", "channel"}
        Precision basis, see :func:`csd_precision_components`.

    Returns
    -------
    results : dict
        Everything returned by :func:`invert_spectral_dcm`, plus
        'mar', 'csd' (empirical) and 'model'.
    """
    bold = np.asarray(bold, float)
    if bold.ndim != 2:
        raise MalformedInputError("bold must be 2D (n_regions, n_samples)")
    n_regions = bold.shape[0]
    if freqs is None:
        freqs = default_frequencies(dt)
    freqs = np.asarray(freqs, float)

    mar = fit_mar(bold.T, mar_order)
    csd = mar_to_csd(mar, freqs, 1.0 / dt)

    model = HemodynamicDCM(n_regions)
    params = model.default_parameters(A)
    V, theta_precision = reduce_parameter_space(
        model.default_prior_variances(connectivity_variance)
    )
    Q = csd_precision_components(csd, basis=basis)
    nh = len(Q)
    priors = SpectralPriors(
        theta_precision=theta_precision,
        hyper_mean=np.full(nh, float(hyper_mean)),
        hyper_precision=float(hyper_precision) * np.eye(nh),
        Q=Q,
    )

    results = invert_spectral_dcm(
        model.initial_states(),
        csd,
        model,
        freqs,
        V,
        mar_order,
        params,
        priors,
        max_iter=max_iter,
        tol=tol,
        verbose=verbose,
    )
    results.update({"mar": mar, "csd": csd, "model": model})
    return results
