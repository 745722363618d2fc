# src/prevalence/model/sampler.py
"""
NUTS sampling for the prevalence model.

Wraps `pm.sample` with the tuning surface of the pipeline
(chains / warmup / iterations / thin / seed / target_accept / max_depth /
step_size), post-processes the draws (thinning, finiteness checks) and
classifies the fit as succeeded / degraded from convergence diagnostics.

Every chain is an independent unit of work: PyMC runs them in separate
processes when `cores > 1` and concatenates the per-chain traces once all
chains finish. A fixed seed with a fixed chain count gives identical draws.
"""
import logging
import threading
import time
import warnings

import arviz as az
import numpy as np
import pymc as pm

from prevalence.errors import (
    ConfigurationError,
    SamplerConvergenceWarning,
    SamplerFatalError,
    SamplingCancelledError,
)
from prevalence.evaluation.sampling_diagnostics import (
    DEFAULT_THRESHOLDS,
    FitStatus,
    classify_fit,
    sampling_diagnostics,
)
from prevalence.model.model import PARAMETER_NAMES

logger = logging.getLogger(__name__)

DEFAULT_SAMPLER_CFG = {
    "chains": 4,
    "warmup": 300,
    "iterations": 2000,   # total per chain; kept = iterations - warmup
    "thin": 1,
    "seed": 123,
    "target_accept": 0.99,
    "max_depth": 15,
    "step_size": 0.01,
    "cores": 1,
    "timeout": None,      # seconds
    "progressbar": False,
}


def resolve_sampler_cfg(cfg=None) -> dict:
    """Fill defaults and validate the tuning configuration before any sampling starts."""
    s = {**DEFAULT_SAMPLER_CFG, **(cfg or {})}
    unknown = set(s) - set(DEFAULT_SAMPLER_CFG)
    if unknown:
        raise ConfigurationError(f"Unknown sampler keys: {sorted(unknown)}")

    try:
        for key in ("chains", "warmup", "iterations", "thin", "seed", "max_depth", "cores"):
            s[key] = int(s[key])
        s["target_accept"] = float(s["target_accept"])
        s["step_size"] = float(s["step_size"])
        s["timeout"] = None if s["timeout"] is None else float(s["timeout"])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid sampler configuration: {e}") from e
    s["progressbar"] = bool(s["progressbar"])

    if s["chains"] < 1:
        raise ConfigurationError(f"chains must be >= 1, got {s['chains']}")
    if s["warmup"] < 0:
        raise ConfigurationError(f"warmup must be >= 0, got {s['warmup']}")
    if s["iterations"] <= s["warmup"]:
        raise ConfigurationError(
            f"iterations ({s['iterations']}) must exceed warmup ({s['warmup']})"
        )
    if s["thin"] < 1:
        raise ConfigurationError(f"thin must be >= 1, got {s['thin']}")
    if not 0.0 < s["target_accept"] < 1.0:
        raise ConfigurationError(f"target_accept must be in (0, 1), got {s['target_accept']}")
    if s["max_depth"] < 1:
        raise ConfigurationError(f"max_depth must be >= 1, got {s['max_depth']}")
    if not s["step_size"] > 0:
        raise ConfigurationError(f"step_size must be > 0, got {s['step_size']}")
    if s["cores"] < 1:
        raise ConfigurationError(f"cores must be >= 1, got {s['cores']}")
    if s["timeout"] is not None and s["timeout"] <= 0:
        raise ConfigurationError(f"timeout must be > 0 seconds, got {s['timeout']}")
    return s


class CancellationToken:
    """Thread-safe stop flag with an optional deadline, checked between draws."""

    def __init__(self, timeout=None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() > self._deadline

    def check(self):
        if self.cancelled:
            raise SamplingCancelledError("Sampling cancelled; partial draws discarded.")
        if self.expired:
            raise SamplingCancelledError("Sampling timed out; partial draws discarded.")


class FitResult:
    """Posterior draws plus the status consumers must check before trusting them."""

    def __init__(self, idata, status, reasons, diagnostics, config, sampling_time):
        """
        Parameters
        ----------
        idata : arviz.InferenceData
            Pooled post-warmup (thinned) draws of every parameter.
        status : FitStatus
            SUCCEEDED or DEGRADED (a FAILED fit raises instead of returning).
        reasons : list of str
            Why the fit was degraded (empty when it succeeded).
        diagnostics : dict
            Output of `sampling_diagnostics`.
        config : dict
            Resolved sampler configuration.
        sampling_time : float
            Wall-clock seconds spent in `pm.sample`.
        """
        self.idata = idata
        self.status = FitStatus(status)
        self.reasons = list(reasons)
        self.diagnostics = diagnostics
        self.config = config
        self.sampling_time = sampling_time

    @property
    def n_chains(self) -> int:
        return int(self.idata.posterior.sizes["chain"])

    @property
    def n_draws(self) -> int:
        return int(self.idata.posterior.sizes["draw"])

    @property
    def n_samples(self) -> int:
        return self.n_chains * self.n_draws

    def require_usable(self, allow_degraded=True):
        """Raise SamplerFatalError unless the fit may be consumed downstream."""
        if self.status == FitStatus.FAILED:
            raise SamplerFatalError(f"Fit failed: {'; '.join(self.reasons) or 'no valid draws'}")
        if self.status == FitStatus.DEGRADED and not allow_degraded:
            raise SamplerFatalError(f"Fit is degraded: {'; '.join(self.reasons)}")
        return self

    def status_record(self) -> dict:
        return {
            "status": self.status.value,
            "reasons": self.reasons,
            "chains": self.n_chains,
            "draws_per_chain": self.n_draws,
            "sampling_time_s": round(self.sampling_time, 2),
            "divergences": self.diagnostics.get("divergences"),
            "rhat_max": self.diagnostics.get("rhat_max"),
            "ess_bulk_min": self.diagnostics.get("ess_bulk_min"),
        }

    def __repr__(self) -> str:
        return (
            f"FitResult(status={self.status.value}, chains={self.n_chains}, "
            f"draws={self.n_draws}, time={self.sampling_time:.1f}s)"
        )


def _step_scale(model: pm.Model, step_size: float) -> float:
    # PyMC sets the initial step to step_scale / n_dims ** 0.25
    n_dims = sum(int(np.size(v)) for v in model.initial_point().values())
    return float(step_size * max(n_dims, 1) ** 0.25)


def _check_finite(idata):
    if idata.posterior.sizes.get("draw", 0) == 0:
        raise SamplerFatalError("Sampler returned no post-warmup draws.")
    bad = [v for v in idata.posterior.data_vars if not np.isfinite(idata.posterior[v].values).all()]
    if bad:
        raise SamplerFatalError(f"Non-finite draws for {bad}; likelihood overflow or misspecification.")


def run_sampler(model: pm.Model, cfg=None, thresholds=None, token=None) -> FitResult:
    """
    Sample the posterior with NUTS and classify the fit.

    Parameters
    ----------
    model : pm.Model
        Output of `build_prevalence_model`. Shared read-only by all chains.
    cfg : dict, optional
        Sampler tuning (see DEFAULT_SAMPLER_CFG).
    thresholds : dict, optional
        Convergence thresholds (`rhat_max`, `ess_min`, `max_divergences`).
    token : CancellationToken, optional
        Checked after every draw. One is created from `cfg['timeout']` if omitted.

    Returns
    -------
    FitResult

    Raises
    ------
    ConfigurationError
        Invalid tuning values (raised before sampling).
    SamplingCancelledError
        Timeout or explicit cancellation.
    SamplerFatalError
        The sampler raised or produced non-finite / empty draws.
    """
    s = resolve_sampler_cfg(cfg)
    thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
    if s["chains"] < 2:
        logger.warning("Running a single chain; between-chain R-hat is not available.")

    token = token or CancellationToken(timeout=s["timeout"])
    draws = s["iterations"] - s["warmup"]
    nuts_kwargs = {
        "target_accept": s["target_accept"],
        "max_treedepth": s["max_depth"],
        "step_scale": _step_scale(model, s["step_size"]),
    }

    def _check_cancelled(trace, draw):
        token.check()

    logger.info(
        f"Sampling: chains={s['chains']} warmup={s['warmup']} kept/chain={draws} thin={s['thin']} "
        f"target_accept={s['target_accept']} max_depth={s['max_depth']} step_size={s['step_size']} seed={s['seed']}"
    )
    t0 = time.time()
    try:
        with model:
            idata = pm.sample(
                draws=draws,
                tune=s["warmup"],
                chains=s["chains"],
                cores=s["cores"],
                random_seed=s["seed"],
                nuts=nuts_kwargs,
                callback=_check_cancelled,
                discard_tuned_samples=True,
                compute_convergence_checks=False,
                return_inferencedata=True,
                progressbar=s["progressbar"],
            )
    except SamplingCancelledError:
        logger.warning("Sampling stopped before completion; no partial results are returned.")
        raise
    except Exception as e:
        raise SamplerFatalError(f"Sampler failed: {type(e).__name__}: {e}") from e
    sampling_time = time.time() - t0
    logger.info(f"Sampling finished in {sampling_time:.1f}s")

    if s["thin"] > 1:
        idata = idata.sel(draw=slice(None, None, s["thin"]))

    _check_finite(idata)

    var_names = [v for v in PARAMETER_NAMES if v in idata.posterior.data_vars]
    diagnostics = sampling_diagnostics(idata, var_names=var_names)
    status, reasons = classify_fit(diagnostics, thresholds)
    if status == FitStatus.DEGRADED:
        msg = "Sampler convergence problems: " + "; ".join(reasons)
        logger.warning(msg)
        warnings.warn(msg, SamplerConvergenceWarning, stacklevel=2)

    return FitResult(
        idata=idata,
        status=status,
        reasons=reasons,
        diagnostics=diagnostics,
        config=s,
        sampling_time=sampling_time,
    )


def load_fit(path, thresholds=None) -> FitResult:
    """Rebuild a FitResult (status re-derived from diagnostics) from a saved posterior.nc."""
    idata = az.from_netcdf(path)
    _check_finite(idata)
    var_names = [v for v in PARAMETER_NAMES if v in idata.posterior.data_vars]
    diagnostics = sampling_diagnostics(idata, var_names=var_names)
    status, reasons = classify_fit(diagnostics, thresholds)
    return FitResult(idata, status, reasons, diagnostics, config={}, sampling_time=0.0)
