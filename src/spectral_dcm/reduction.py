"""Projection of the prior onto parameters that are free to move."""

from __future__ import annotations

from typing import Tuple

import numpy as np

from .exceptions import MalformedInputError, NumericalInstabilityError
from .utils import check_psd, symmetrize


def reduce_parameter_space(prior_variance: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Reduction operator and reduced prior precision.

    Parameters
    ----------
    prior_variance : array_like, shape (d,) or (d, d)
        Prior variance per flattened parameter, or the full prior covariance.
        Zero variance pins a parameter at its prior mean.

    Returns
    -------
    V : ndarray, shape (d, k)
        One-hot columns selecting the k parameters with non-zero variance,
        ordered by decreasing variance (ties keep the original order).
    precision : ndarray, shape (k, k)
        inv(V^T C V).
    """
    C = np.asarray(prior_variance, float)
    if C.ndim == 1:
        if not np.all(np.isfinite(C)) or np.any(C < 0):
            raise MalformedInputError("prior variances must be finite and non-negative")
        C = np.diag(C)
    elif C.ndim == 2:
        C = check_psd(C, "prior covariance")
    else:
        raise MalformedInputError("prior covariance must be a vector or a square matrix")

    var = np.diag(C)
    idx = np.flatnonzero(var != 0)
    idx = idx[np.argsort(-var[idx], kind="stable")]

    d, k = C.shape[0], idx.size
    if k == 0:
        raise MalformedInputError("every parameter has zero prior variance")
    V = np.zeros((d, k))
    V[idx, np.arange(k)] = 1.0

    C_red = symmetrize(V.T @ C @ V)
    try:
        precision = np.linalg.inv(C_red)
    except np.linalg.LinAlgError as exc:
        raise NumericalInstabilityError("reduced prior covariance is singular") from exc
    return V, symmetrize(precision)
