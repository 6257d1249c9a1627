"""Error types raised by the inversion code."""

from __future__ import annotations

import numpy as np


class SpectralDCMError(Exception):
    """Base class for all package errors."""


class MalformedInputError(SpectralDCMError, ValueError):
    """Inconsistent shapes, asymmetric or indefinite matrices, bad priors."""


class NumericalInstabilityError(SpectralDCMError, np.linalg.LinAlgError):
    """A matrix that must be inverted is singular to working precision.

    ``free_energy`` holds the trajectory reached before the failure so that a
    caller can still inspect how far the optimizer got.
    """

    def __init__(self, message: str, free_energy=None, frequency: float | None = None):
        super().__init__(message)
        self.free_energy = np.asarray([] if free_energy is None else free_energy, float)
        self.frequency = frequency
