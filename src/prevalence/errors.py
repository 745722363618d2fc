# src/prevalence/errors.py


class PrevalenceError(Exception):
    """Base class for every error raised by the prevalence pipeline."""


class InputSchemaError(PrevalenceError, ValueError):
    """A required column is missing, has the wrong type or breaks a row invariant."""


class DegenerateScaleError(PrevalenceError, ValueError):
    """A covariate has zero (or non-finite) spread in the training rows."""


class ConfigurationError(PrevalenceError, ValueError):
    """Sampler, model or prediction settings are out of range."""


class SamplerConvergenceWarning(UserWarning):
    """Divergences, low ESS or high R-hat. Results are kept but flagged degraded."""


class SamplerFatalError(PrevalenceError, RuntimeError):
    """The sampler produced no trustworthy draws."""


class SamplingCancelledError(SamplerFatalError):
    """Sampling was stopped by a timeout or cancellation token; partial draws are discarded."""


class EvaluationDivisionError(PrevalenceError, ZeroDivisionError):
    """MAPE was requested against an observed outcome of exactly zero."""
