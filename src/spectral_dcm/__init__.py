"""Top-level package for spectral DCM inversion."""

from .exceptions import (
    SpectralDCMError,
    MalformedInputError,
    NumericalInstabilityError,
)
from .mar import (
    MARModel,
    mar_to_csd,
    fit_mar,
    autocovariance,
    yule_walker,
    csd_to_autocovariance,
    csd_to_mar,
)
from .precision import csd_precision_components, real_embedding
from .reduction import reduce_parameter_space
from .schema import ParameterSpec, ParameterSchema
from .models import HemodynamicDCM
from .forward import transfer_function, fluctuation_spectra, predict_csd
from .vb import VLResult, variational_laplace
from .pipeline import SpectralPriors, default_frequencies, invert_spectral_dcm, run_bold_to_dcm

__all__ = [
    # exceptions
    "SpectralDCMError",
    "MalformedInputError",
    "NumericalInstabilityError",
    # mar
    "MARModel",
    "mar_to_csd",
    "fit_mar",
    "autocovariance",
    "yule_walker",
    "csd_to_autocovariance",
    "csd_to_mar",
    # precision / reduction
    "csd_precision_components",
    "real_embedding",
    "reduce_parameter_space",
    # model collaborator
    "ParameterSpec",
    "ParameterSchema",
    "HemodynamicDCM",
    "transfer_function",
    "fluctuation_spectra",
    "predict_csd",
    # inversion
    "VLResult",
    "variational_laplace",
    # high-level pipeline
    "SpectralPriors",
    "default_frequencies",
    "invert_spectral_dcm",
    "run_bold_to_dcm",
]
