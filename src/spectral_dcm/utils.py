import numpy as np

from .exceptions import MalformedInputError, NumericalInstabilityError


def symmetrize(M):
    """Return (M + M^H) / 2."""
    M = np.asarray(M)
    return 0.5 * (M + np.conj(np.swapaxes(M, -1, -2)))


def as_real_vector(x):
    """Flatten a (possibly complex) array row-major and stack [Re; Im]."""
    x = np.asarray(x).ravel()
    return np.concatenate([x.real, x.imag]).astype(float)


def logdet(M):
    """Log-determinant of a symmetric positive definite matrix.

    Raises NumericalInstabilityError if M is not positive definite.
    """
    sign, value = np.linalg.slogdet(np.asarray(M, float))
    if sign <= 0 or not np.isfinite(value):
        raise NumericalInstabilityError("matrix is not positive definite")
    return float(value)


def check_square(M, name, symmetric=False, atol=1e-8):
    """Validate that M is a finite square matrix (optionally symmetric)."""
    M = np.asarray(M)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise MalformedInputError(f"{name} must be a square matrix, got shape {M.shape}")
    if not np.all(np.isfinite(M)):
        raise MalformedInputError(f"{name} contains non-finite values")
    if symmetric:
        scale = max(1.0, float(np.max(np.abs(M)))) if M.size else 1.0
        if not np.allclose(M, np.conj(M.T), atol=atol * scale, rtol=0.0):
            raise MalformedInputError(f"{name} must be symmetric")
    return M


def check_psd(M, name, atol=1e-10):
    """Validate that a symmetric matrix has no significantly negative eigenvalue."""
    M = check_square(M, name, symmetric=True)
    if M.size == 0:
        return M
    eig = np.linalg.eigvalsh(symmetrize(M))
    if eig.min() < -atol * max(1.0, abs(eig.max())):
        raise MalformedInputError(f"{name} must be positive semi-definite (min eig {eig.min():.3g})")
    return M


def print_header(title):
    line = "=" * len(title)
    print(f"\n{title}\n{line}")
