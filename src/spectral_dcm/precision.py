"""Precision components for the cross-spectral data.

A complex CSD of shape (nf, n, n) is treated as the real residual vector
``as_real_vector(csd)`` of length 2 * nf * n * n (row-major entries, real
parts first). Every component returned here is a real symmetric PSD matrix
of that size, and the assumed data precision is sum_q exp(lambda_q) Q[q].
"""

from __future__ import annotations

from typing import List

import numpy as np

from .exceptions import MalformedInputError, NumericalInstabilityError
from .utils import check_psd, symmetrize

PRECISION_BASES = ("csd", "channel")


def _check_csd(csd) -> np.ndarray:
    csd = np.asarray(csd, complex)
    if csd.ndim != 3 or csd.shape[1] != csd.shape[2]:
        raise MalformedInputError(f"csd must have shape (nf, n, n), got {csd.shape}")
    if not np.all(np.isfinite(csd)):
        raise MalformedInputError("csd contains non-finite values")
    return csd


def real_embedding(M: np.ndarray) -> np.ndarray:
    """Real form [[Re, -Im], [Im, Re]] of a complex Hermitian matrix.

    For z = a + ib, z^H M z equals [a; b]^T real_embedding(M) [a; b].
    """
    M = np.asarray(M, complex)
    return np.block([[M.real, -M.imag], [M.imag, M.real]])


def _csd_component(csd: np.ndarray) -> np.ndarray:
    """Inverse covariance of the CSD entries, one block per frequency."""
    nf, n, _ = csd.shape
    m = n * n
    blocks = [np.kron(csd[f], csd[f]) for f in range(nf)]
    # MATLAB-style 1-norm of the block-diagonal matrix: max absolute column sum
    norm1 = max((np.abs(b).sum(axis=0).max() for b in blocks), default=0.0)
    if norm1 == 0.0:
        raise MalformedInputError("empirical csd is identically zero")
    Q = np.zeros((nf * m, nf * m), complex)
    reg = norm1 / 32.0 * np.eye(m)
    for f, b in enumerate(blocks):
        sl = slice(f * m, (f + 1) * m)
        try:
            Q[sl, sl] = np.linalg.inv(b + reg)
        except np.linalg.LinAlgError as exc:
            raise NumericalInstabilityError(f"csd covariance block {f} is singular") from exc
    return symmetrize(real_embedding(symmetrize(Q)))


def _channel_components(csd: np.ndarray) -> List[np.ndarray]:
    """Identity plus one selector per channel (entries in that channel's row or column)."""
    nf, n, _ = csd.shape
    ii, jj = np.indices((n, n))
    ii = np.tile(ii.ravel(), 2 * nf)
    jj = np.tile(jj.ravel(), 2 * nf)
    comps = [np.eye(ii.size)]
    for c in range(n):
        comps.append(np.diag(((ii == c) | (jj == c)).astype(float)))
    return comps


def csd_precision_components(csd: np.ndarray, basis: str = "csd") -> List[np.ndarray]:
    """Build the precision components Q from an empirical CSD.

    Parameters
    ----------
    csd : complex ndarray, shape (nf, n, n)
    basis : {"csd", "channel"}
        "csd" gives a single component shaped by the empirical spectrum
        itself (Friston et al. 2007, appendix A). "channel" gives an identity
        component plus one diagonal component per channel.

    Returns
    -------
    Q : list of ndarray, each (2 nf n^2, 2 nf n^2)
    """
    csd = _check_csd(csd)
    if basis == "csd":
        return [_csd_component(csd)]
    if basis == "channel":
        return _channel_components(csd)
    raise MalformedInputError(f"Unknown basis '{basis}'. Known: {list(PRECISION_BASES)}")


def check_precision_components(Q, size: int) -> List[np.ndarray]:
    """Validate a precision basis against a residual vector of length `size`."""
    if isinstance(Q, np.ndarray) and Q.ndim == 2:
        Q = [Q]
    Q = [np.asarray(q, float) for q in Q]
    if len(Q) == 0:
        raise MalformedInputError("at least one precision component is required")
    for i, q in enumerate(Q):
        check_psd(q, f"Q[{i}]")
        if q.shape[0] != size:
            raise MalformedInputError(
                f"Q[{i}] has size {q.shape[0]} but the data vector has length {size}"
            )
    return Q
