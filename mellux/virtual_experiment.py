"""
Virtual populations of melatonin-suppression dose-response curves.

This module simulates the individual-level dose-response curves (melatonin
suppression as a function of light intensity, in lux) that an experiment on
light sensitivity would measure, and synthesizes noisy measurements of them.
The generated tables feed the power calculations in
``mellux.power_comparison``.

Approach
--------
- Curve model: two-parameter log-logistic in lux,
    y(lux) = 1 / (1 + (lux / 10**p1) ** (-p2)),
  where p1 = log10(ed50) and p2 > 0 controls steepness.
- Individual heterogeneity: p1 is drawn from the empirical inverse CDF of
  published individual estimates; log10(p2) | p1 follows a Bayesian
  regression log10(p2) ~ N(alpha + beta * p1, sigma0 + sigma1 * p1), with one
  posterior draw (alpha, beta, sigma0, sigma1) picked per individual.
- Variation control: a weight in [0, 1] shrinks p1 towards the median of its
  distribution and the regression draws towards their grand means. A weight
  of 1 keeps the empirical heterogeneity; 0 removes it entirely.
- Plausibility: individuals are re-drawn until their ed25 and ed75 fall
  within a multiple of the range of the empirical ed25/ed75 estimates.
- Measurement noise: additive Gaussian noise on the logit scale, with a noise
  level per individual drawn from a gamma distribution whose (shape, rate)
  are themselves posterior draws.
- Treatment: multiplies an individual's ed50 (adds log10(multiplier) to p1).
  Treated p1 values below zero are clamped to zero and flagged as truncated,
  because the curve model has no empirical support there.

Empirical tables
----------------
The posterior draws and estimate tables are inputs, never module state. Build
an ``EmpiricalTables`` directly or load one from a directory holding
``estimates.csv`` (p1, ed_25, ed_75), ``p1_p2_regression_draws.csv``
(alpha, beta, sigma0, sigma1) and ``sigma_fit_draws.csv`` (a, b).

Randomness
----------
Every sampling function takes an explicit ``numpy.random.Generator``. Seed it
for reproducible populations; hand independent generators to independent
workers.

Usage
-----
    tables = load_empirical_tables("data/")
    rng = np.random.default_rng(12345)
    df = virtual_treatment_experiment(
        40, lux=(10, 30, 100, 300), treated_ed50_multiplier=0.5,
        is_between=False, tables=tables, rng=rng,
    )
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import expit, logit


logger = logging.getLogger(__name__)

DEFAULT_LUX = (10.0, 30.0, 50.0, 100.0, 200.0, 400.0, 2000.0)
DEFAULT_THRESH_25 = 0.5
DEFAULT_THRESH_75 = 1.5
# Rejection sampling ceiling per individual; None restores unbounded sampling.
DEFAULT_MAX_ATTEMPTS = 10_000
_PROB_EPS = float(np.finfo(float).eps)

DESIGNS = ("simple", "within", "between")
REGRESSION_COLUMNS = ("alpha", "beta", "sigma0", "sigma1")
SIGMA_FIT_COLUMNS = ("a", "b")
ESTIMATE_COLUMNS = ("p1", "ed_25", "ed_75")
MEASUREMENT_COLUMNS = ["lux", "y", "id", "sigma", "p1", "p2", "p1_treated", "p1_truncated"]


class InvalidParameterRangeError(ValueError):
    """A variation level (and hence a shrinkage weight) lies outside [0, 1]."""


class ImplausibleDistributionError(RuntimeError):
    """Rejection sampling found no plausible individual within the attempt cap."""


class MissingEmpiricalDataError(ValueError):
    """An empirical draw or estimate table is absent, empty or malformed."""


class NonPositiveShapeParameterError(RuntimeError):
    """A sampled p2 was not strictly positive."""


# ---------- Validation helpers ----------

def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Raise ValueError unless value is a probability; either end point can be excluded."""
    if value is None or math.isnan(value):
        raise ValueError(f"{name} must be a probability, got {value}")
    above = value >= 0.0 if allow_zero else value > 0.0
    below = value <= 1.0 if allow_one else value < 1.0
    if not (above and below):
        interval = f"{'[' if allow_zero else '('}0, 1{']' if allow_one else ')'}"
        raise ValueError(f"{name} must lie in {interval}, got {value}")


def validate_positive(value: float, name: str) -> None:
    """Validate that value is a finite, strictly positive number."""
    if value is None or not (value == value) or not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")


def validate_variation_level(level: float) -> None:
    """Reject individual_variation_level outside [0, 1] before any sampling."""
    if level is None or not (level == level) or level < 0.0 or level > 1.0:
        raise InvalidParameterRangeError(
            f"individual_variation_level must be in [0, 1], got {level}"
        )


def _validate_lux(lux: Sequence[float]) -> np.ndarray:
    arr = np.atleast_1d(np.asarray(lux, dtype=float))
    if arr.size == 0:
        raise ValueError("lux must contain at least one value")
    if np.any(~np.isfinite(arr)) or np.any(arr <= 0):
        raise ValueError(f"lux values must be positive and finite, got {list(arr)}")
    return arr


# ---------- Curve model ----------

def logistic_2(lux, p1: float, p2: float):
    """Two-parameter log-logistic suppression curve.

    Returns values in (0, 1), increasing in log10(lux), with
    ``logistic_2(10**p1, p1, p2) == 0.5``.
    """
    lux = np.asarray(lux, dtype=float)
    y = 1.0 / (1.0 + 10.0 ** (-p2 * (np.log10(lux) - p1)))
    if y.ndim == 0:
        return float(y)
    return y


def ed(quantile: float, p1: float, p2: float) -> float:
    """Lux at which ``logistic_2`` reaches ``quantile`` (e.g. ed25 for 0.25)."""
    if not (0.0 < quantile < 1.0):
        raise ValueError(f"quantile must be in (0, 1), got {quantile}")
    return float(10.0 ** (p1 - math.log10(1.0 / quantile - 1.0) / p2))


def _ed_array(quantile: float, p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    return 10.0 ** (p1 - math.log10(1.0 / quantile - 1.0) / p2)


# ---------- Noise model ----------

def noise_logit(y, sigma: float, rng: np.random.Generator):
    """Add N(0, sigma) noise to y on the logit scale and map back to (0, 1)."""
    y = np.clip(np.asarray(y, dtype=float), _PROB_EPS, 1.0 - _PROB_EPS)
    noisy = expit(logit(y) + rng.normal(0.0, sigma, size=y.shape))
    # expit saturates to exactly 0 or 1 in float64 for |logit| > ~37
    noisy = np.clip(noisy, _PROB_EPS, 1.0 - _PROB_EPS)
    if noisy.ndim == 0:
        return float(noisy)
    return noisy


def logistic_noise(sigma: float, p1: float, p2: float, rng: np.random.Generator,
                   lux: Sequence[float] = DEFAULT_LUX) -> pd.DataFrame:
    """Noisy suppression values of one individual's curve at each lux value.

    Returns a dataframe with columns: lux, y.
    """
    lux_arr = _validate_lux(lux)
    y = logistic_2(lux_arr, p1, p2)
    return pd.DataFrame({"lux": lux_arr, "y": noise_logit(y, sigma, rng)})


def sample_sigma(sigma_fit_draws: pd.DataFrame, rng: np.random.Generator) -> float:
    """Draw a logit-scale noise level from the fitted gamma distribution.

    One posterior (a, b) pair is picked at random, so the draw carries the
    parameter uncertainty of the gamma fit. ``b`` is a rate.
    """
    if sigma_fit_draws is None or len(sigma_fit_draws) == 0:
        raise MissingEmpiricalDataError("sigma_fit_draws is empty")
    idx = int(rng.integers(0, len(sigma_fit_draws)))
    a = float(sigma_fit_draws["a"].iloc[idx])
    b = float(sigma_fit_draws["b"].iloc[idx])
    if not (a > 0 and b > 0):
        raise MissingEmpiricalDataError(f"sigma_fit_draws row {idx} has non-positive shape or rate: a={a}, b={b}")
    return float(rng.gamma(shape=a, scale=1.0 / b))


# ---------- Empirical tables ----------

def empirical_cdf_inv(p1_values: Sequence[float]) -> Callable[[np.ndarray], np.ndarray]:
    """Inverse CDF of a sample of p1 estimates (linear interpolation of order statistics)."""
    values = np.sort(np.asarray(p1_values, dtype=float))
    values = values[np.isfinite(values)]
    if values.size == 0:
        raise MissingEmpiricalDataError("p1 estimates are empty")

    def cdf_inv(prob):
        return np.quantile(values, prob)

    return cdf_inv


@dataclass(frozen=True)
class EmpiricalTables:
    """Read-only empirical inputs fitted offline to published estimates."""

    cdf_inv_full: Callable[[np.ndarray], np.ndarray]
    p1_p2_regression_draws: pd.DataFrame
    ed_25: np.ndarray
    ed_75: np.ndarray
    sigma_fit_draws: pd.DataFrame

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.cdf_inv_full is None or not callable(self.cdf_inv_full):
            raise MissingEmpiricalDataError("cdf_inv_full must be a callable inverse CDF")
        _require_columns(self.p1_p2_regression_draws, REGRESSION_COLUMNS, "p1_p2_regression_draws")
        _require_columns(self.sigma_fit_draws, SIGMA_FIT_COLUMNS, "sigma_fit_draws")
        _require_positive_estimates(self.ed_25, "ed_25")
        _require_positive_estimates(self.ed_75, "ed_75")
        # gamma(shape=a, rate=b) needs both strictly positive for sigma > 0
        for column in SIGMA_FIT_COLUMNS:
            if np.any(np.asarray(self.sigma_fit_draws[column], dtype=float) <= 0):
                raise MissingEmpiricalDataError(f"sigma_fit_draws column {column!r} must be positive")

    def p1_parameters(self, weight: float) -> "P1DistributionParameters":
        return P1DistributionParameters(cdf_inv_full=self.cdf_inv_full, weight=weight)

    def p2_parameters(self, weight: float) -> "P2DistributionParameters":
        draws = self.p1_p2_regression_draws
        return P2DistributionParameters(
            alpha=draws["alpha"].to_numpy(dtype=float),
            beta=draws["beta"].to_numpy(dtype=float),
            sigma0=draws["sigma0"].to_numpy(dtype=float),
            sigma1=draws["sigma1"].to_numpy(dtype=float),
            weight=weight,
        )


def _require_columns(df: Optional[pd.DataFrame], columns: Sequence[str], name: str) -> None:
    if df is None or len(df) == 0:
        raise MissingEmpiricalDataError(f"{name} is empty")
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise MissingEmpiricalDataError(f"{name} is missing columns: {', '.join(missing)}")
    if df[list(columns)].isna().any().any():
        raise MissingEmpiricalDataError(f"{name} contains missing values")


def _require_positive_estimates(values, name: str) -> None:
    arr = None if values is None else np.asarray(values, dtype=float)
    if arr is None or arr.size == 0:
        raise MissingEmpiricalDataError(f"{name} estimates are empty")
    if np.any(~np.isfinite(arr)) or np.any(arr <= 0):
        raise MissingEmpiricalDataError(f"{name} estimates must be finite and positive")


def _read_table(data_dir: str, filename: str, columns: Sequence[str]) -> pd.DataFrame:
    path = os.path.join(data_dir, filename)
    if not os.path.exists(path):
        raise MissingEmpiricalDataError(f"Empirical table not found: {path}")
    df = pd.read_csv(path)
    _require_columns(df, columns, filename)
    return df


def load_empirical_tables(data_dir: str) -> EmpiricalTables:
    """Load and validate the empirical tables stored as CSV files in ``data_dir``."""
    estimates = _read_table(data_dir, "estimates.csv", ESTIMATE_COLUMNS)
    draws = _read_table(data_dir, "p1_p2_regression_draws.csv", REGRESSION_COLUMNS)
    sigma_draws = _read_table(data_dir, "sigma_fit_draws.csv", SIGMA_FIT_COLUMNS)
    tables = EmpiricalTables(
        cdf_inv_full=empirical_cdf_inv(estimates["p1"].to_numpy(dtype=float)),
        p1_p2_regression_draws=draws,
        ed_25=estimates["ed_25"].to_numpy(dtype=float),
        ed_75=estimates["ed_75"].to_numpy(dtype=float),
        sigma_fit_draws=sigma_draws,
    )
    logger.info(
        "Loaded empirical tables from %s (%d estimates, %d regression draws, %d sigma draws)",
        data_dir, len(estimates), len(draws), len(sigma_draws),
    )
    return tables


# ---------- Individual parameter sampler ----------

@dataclass(frozen=True)
class P1DistributionParameters:
    """Inverse CDF of p1 and the weight (0<=weight<=1) of its empirical spread."""

    cdf_inv_full: Callable[[np.ndarray], np.ndarray]
    weight: float = 1.0


@dataclass(frozen=True)
class P2DistributionParameters:
    """Posterior draws of the log10(p2) | p1 regression and its variation weight."""

    alpha: np.ndarray
    beta: np.ndarray
    sigma0: np.ndarray
    sigma1: np.ndarray
    weight: float = 1.0


def _draw_p1_p2(n: int, p1_params: P1DistributionParameters, p2_params: P2DistributionParameters,
                rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
    weight_p1 = p1_params.weight
    weight_p2 = p2_params.weight
    p1_middle = float(np.asarray(p1_params.cdf_inv_full(0.5), dtype=float))

    alpha = np.asarray(p2_params.alpha, dtype=float)
    beta = np.asarray(p2_params.beta, dtype=float)
    sigma0 = np.asarray(p2_params.sigma0, dtype=float)
    sigma1 = np.asarray(p2_params.sigma1, dtype=float)
    ndraws = len(alpha)
    if ndraws == 0 or not (len(beta) == len(sigma0) == len(sigma1) == ndraws):
        raise MissingEmpiricalDataError("regression draws must be non-empty and of equal length")

    # Shrink the regression draws towards their grand means
    alpha = alpha + (alpha.mean() - alpha) * (1.0 - weight_p2)
    beta = beta + (beta.mean() - beta) * (1.0 - weight_p2)

    idx = rng.integers(0, ndraws, size=n)
    p1_raw = np.asarray(p1_params.cdf_inv_full(rng.random(n)), dtype=float).reshape(n)
    p1 = p1_raw + (p1_middle - p1_raw) * (1.0 - weight_p1)

    sigma_noise = weight_p2 * (sigma0[idx] + sigma1[idx] * p1)
    if np.any(sigma_noise < 0):
        raise ValueError("log10(p2) noise scale sigma0 + sigma1 * p1 is negative for some draws")
    p2_log = rng.normal(alpha[idx] + beta[idx] * p1, sigma_noise)
    p2 = 10.0 ** p2_log
    if np.any(~(p2 > 0)):
        raise NonPositiveShapeParameterError(f"sampled non-positive p2 values: {p2[~(p2 > 0)]}")
    return p1, p2


def sample_p1_p2(n: int, p1_params: P1DistributionParameters, p2_params: P2DistributionParameters,
                 rng: np.random.Generator) -> pd.DataFrame:
    """Sample n individual (p1, p2) pairs from the hierarchical empirical model.

    Weights outside [0, 1] are not checked here; callers validate them.
    Returns a dataframe with columns: p1, p2.
    """
    p1, p2 = _draw_p1_p2(int(n), p1_params, p2_params, rng)
    return pd.DataFrame({"p1": p1, "p2": p2})


def valid_individual(thresh_25: float, thresh_75: float, eds_25: Sequence[float], eds_75: Sequence[float],
                     p1_params: P1DistributionParameters, p2_params: P2DistributionParameters,
                     rng: np.random.Generator,
                     max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS) -> pd.DataFrame:
    """Draw one individual whose ed25 and ed75 lie in the plausible range.

    Accepts when ed25 >= thresh_25 * min(eds_25) and ed75 <= thresh_75 * max(eds_75).
    Raises ImplausibleDistributionError after ``max_attempts`` rejections
    (``None`` keeps drawing indefinitely).
    """
    lower = thresh_25 * float(np.min(eds_25))
    upper = thresh_75 * float(np.max(eds_75))
    attempts = 0
    while max_attempts is None or attempts < max_attempts:
        attempts += 1
        p1, p2 = _draw_p1_p2(1, p1_params, p2_params, rng)
        ed_25_sim = float(_ed_array(0.25, p1, p2)[0])
        ed_75_sim = float(_ed_array(0.75, p1, p2)[0])
        if ed_25_sim >= lower and ed_75_sim <= upper:
            if attempts > 1:
                logger.debug("Accepted individual after %d attempts", attempts)
            return pd.DataFrame({"p1": p1, "p2": p2})
        logger.debug(
            "Rejected p1=%.3f p2=%.3f: ed25=%.2f (lower %.2f), ed75=%.2f (upper %.2f)",
            p1[0], p2[0], ed_25_sim, lower, ed_75_sim, upper,
        )
    raise ImplausibleDistributionError(
        f"No plausible individual in {max_attempts} attempts "
        f"(ed25 >= {lower:.3g}, ed75 <= {upper:.3g}); check the variation weights and thresholds"
    )


# ---------- Population & experiment generator ----------

def virtual_population(n: int, thresh_25: float = DEFAULT_THRESH_25, thresh_75: float = DEFAULT_THRESH_75,
                       weight_p1: float = 1.0, weight_p2: float = 1.0, *,
                       tables: EmpiricalTables, rng: np.random.Generator,
                       max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS) -> pd.DataFrame:
    """Generate n plausible individual dose-response curves.

    Returns a dataframe with exactly n rows and columns: p1, p2.
    """
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")
    p1_params = tables.p1_parameters(weight_p1)
    p2_params = tables.p2_parameters(weight_p2)
    eds_25 = np.asarray(tables.ed_25, dtype=float)
    eds_75 = np.asarray(tables.ed_75, dtype=float)

    p1 = np.empty(n, dtype=float)
    p2 = np.empty(n, dtype=float)
    for i in range(n):
        indiv = valid_individual(thresh_25, thresh_75, eds_25, eds_75, p1_params, p2_params, rng,
                                 max_attempts=max_attempts)
        p1[i] = indiv["p1"].iloc[0]
        p2[i] = indiv["p2"].iloc[0]
    logger.info("Generated virtual population of %d individuals", n)
    return pd.DataFrame({"p1": p1, "p2": p2})


def treated_p1(multiplier: float, old_p1: float) -> float:
    """p1 after a treatment that sets ed50 = old ed50 * multiplier."""
    return math.log10(multiplier) + old_p1


def apply_treatment(multiplier: float, p1_natural: float) -> Tuple[float, bool]:
    """Return (p1_treated, p1_truncated), clamping negative treated p1 to 0."""
    p1_temp = treated_p1(multiplier, p1_natural)
    if p1_temp < 0:
        return 0.0, True
    return p1_temp, False


def _measure_individual(individual_id: int, sigma: float, p1_natural: float, p2: float,
                        multiplier: float, lux: np.ndarray, rng: np.random.Generator,
                        treated: Optional[bool] = None) -> pd.DataFrame:
    p1_temp, p1_truncated = apply_treatment(multiplier, p1_natural)
    df = logistic_noise(sigma, p1_temp, p2, rng, lux)
    df["id"] = individual_id
    df["sigma"] = sigma
    df["p1"] = p1_natural
    df["p2"] = p2
    df["p1_treated"] = p1_temp
    df["p1_truncated"] = p1_truncated
    if treated is not None:
        df["treated"] = treated
    return df


def _population_for_experiment(n: int, thresh_25: float, thresh_75: float, individual_variation_level: float,
                               tables: EmpiricalTables, rng: np.random.Generator,
                               max_attempts: Optional[int]) -> pd.DataFrame:
    validate_variation_level(individual_variation_level)
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")
    validate_positive(thresh_25, "thresh_25")
    validate_positive(thresh_75, "thresh_75")
    return virtual_population(
        n, thresh_25, thresh_75,
        weight_p1=individual_variation_level,
        weight_p2=individual_variation_level,
        tables=tables, rng=rng, max_attempts=max_attempts,
    )


def virtual_experiment(n: int, lux: Sequence[float] = DEFAULT_LUX,
                       thresh_25: float = DEFAULT_THRESH_25, thresh_75: float = DEFAULT_THRESH_75,
                       individual_variation_level: float = 1.0, treated_ed50_multiplier: float = 1.0, *,
                       tables: EmpiricalTables, rng: np.random.Generator,
                       max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS) -> pd.DataFrame:
    """Measure every individual of a fresh population once at each lux value.

    Every individual receives the treatment multiplier (1 means untreated).
    Returns n * len(lux) rows with columns:
    lux, y, id, sigma, p1, p2, p1_treated, p1_truncated.
    """
    lux_arr = _validate_lux(lux)
    validate_positive(treated_ed50_multiplier, "treated_ed50_multiplier")
    pop_df = _population_for_experiment(n, thresh_25, thresh_75, individual_variation_level,
                                        tables, rng, max_attempts)
    frames = []
    for i, (p1_natural, p2) in enumerate(zip(pop_df["p1"], pop_df["p2"]), start=1):
        sigma = sample_sigma(tables.sigma_fit_draws, rng)
        frames.append(_measure_individual(i, sigma, p1_natural, p2, treated_ed50_multiplier, lux_arr, rng))
    df = pd.concat(frames, ignore_index=True)
    logger.info("Virtual experiment: %d individuals x %d lux values", n, len(lux_arr))
    return df[MEASUREMENT_COLUMNS]


def virtual_treatment_experiment(n: int, lux: Sequence[float] = DEFAULT_LUX,
                                 thresh_25: float = DEFAULT_THRESH_25, thresh_75: float = DEFAULT_THRESH_75,
                                 individual_variation_level: float = 1.0, treated_ed50_multiplier: float = 1.0,
                                 is_between: bool = False, *,
                                 tables: EmpiricalTables, rng: np.random.Generator,
                                 max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS) -> pd.DataFrame:
    """Simulate a treated vs untreated experiment.

    - Between-subject: individuals 1..round(n/2) are untreated, the rest are
      treated; each is measured once.
    - Within-subject: each individual is measured untreated and then treated,
      with the same sigma, p1 and p2 on both occasions.

    Returns the ``virtual_experiment`` columns plus a boolean ``treated``.
    """
    lux_arr = _validate_lux(lux)
    validate_positive(treated_ed50_multiplier, "treated_ed50_multiplier")
    pop_df = _population_for_experiment(n, thresh_25, thresh_75, individual_variation_level,
                                        tables, rng, max_attempts)
    frames = []
    n_untreated = round(n / 2)
    for i, (p1_natural, p2) in enumerate(zip(pop_df["p1"], pop_df["p2"]), start=1):
        sigma = sample_sigma(tables.sigma_fit_draws, rng)
        if is_between:
            # treat 2nd half
            treated = i > n_untreated
            multiplier = treated_ed50_multiplier if treated else 1.0
            frames.append(_measure_individual(i, sigma, p1_natural, p2, multiplier, lux_arr, rng, treated=treated))
        else:
            frames.append(_measure_individual(i, sigma, p1_natural, p2, 1.0, lux_arr, rng, treated=False))
            frames.append(_measure_individual(i, sigma, p1_natural, p2, treated_ed50_multiplier, lux_arr, rng,
                                              treated=True))
    df = pd.concat(frames, ignore_index=True)
    logger.info(
        "Virtual %s-subject treatment experiment: %d individuals x %d lux values, multiplier %.3g",
        "between" if is_between else "within", n, len(lux_arr), treated_ed50_multiplier,
    )
    return df[MEASUREMENT_COLUMNS + ["treated"]]


@dataclass
class VirtualExperimentSpec:
    n_population: int
    lux: Tuple[float, ...] = DEFAULT_LUX
    thresh_25: float = DEFAULT_THRESH_25         # lower ed25 bound as a multiple of the smallest observed ed25
    thresh_75: float = DEFAULT_THRESH_75         # upper ed75 bound as a multiple of the largest observed ed75
    individual_variation_level: float = 1.0      # 1 = empirical heterogeneity, 0 = identical individuals
    treated_ed50_multiplier: float = 1.0         # treated ed50 = natural ed50 * multiplier
    design: str = "within"                       # "simple", "within" or "between"
    seed: Optional[int] = 12345
    max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS

    def validate(self) -> None:
        if not (self.n_population >= 1):
            raise ValueError("n_population must be >= 1")
        if self.design not in DESIGNS:
            raise ValueError(f"design must be one of {DESIGNS}, got {self.design!r}")
        validate_variation_level(self.individual_variation_level)
        validate_positive(self.thresh_25, "thresh_25")
        validate_positive(self.thresh_75, "thresh_75")
        validate_positive(self.treated_ed50_multiplier, "treated_ed50_multiplier")
        _validate_lux(self.lux)
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")

    def generate(self, tables: EmpiricalTables, rng: Optional[np.random.Generator] = None) -> pd.DataFrame:
        """Run the configured experiment; seeds a fresh generator when rng is None."""
        self.validate()
        if rng is None:
            rng = np.random.default_rng(self.seed)
        common = dict(
            lux=self.lux,
            thresh_25=self.thresh_25,
            thresh_75=self.thresh_75,
            individual_variation_level=self.individual_variation_level,
            treated_ed50_multiplier=self.treated_ed50_multiplier,
            tables=tables,
            rng=rng,
            max_attempts=self.max_attempts,
        )
        if self.design == "simple":
            return virtual_experiment(self.n_population, **common)
        return virtual_treatment_experiment(self.n_population, is_between=(self.design == "between"), **common)
