"""
Power of virtual light-sensitivity experiments by repeated hypothesis tests.

Given a table of simulated measurements (see ``mellux.virtual_experiment``),
this module repeatedly draws samples of individuals, runs the t-test matching
the experimental design, and records whether the observed difference has the
expected sign together with the test's p-value. The share of repetitions that
are both correctly signed and significant is a Monte Carlo estimate of the
statistical power of the design.

Comparisons
-----------
- Treatment comparison at one lux value (table from
  ``virtual_treatment_experiment``):
  * within-subject: n individuals, paired t-test of treated vs untreated.
  * between-subject: n untreated and n treated individuals, independent
    two-sample Student t-test.
- Lux comparison (table from ``virtual_experiment``): suppression at lux_2 vs
  lux_1, with higher lux expected to suppress more:
  * within-subject: n individuals measured at both lux values, paired t-test.
  * between-subject: 2n distinct individuals, n per lux value, independent
    two-sample Student t-test.

Individuals are sampled without replacement within a repetition. The sign
check and the p-value are reported separately; significance is applied only
when aggregating (``estimate_power``), so any threshold can be used after the
fact.

Usage
-----
1) Power of a within-subject design detecting a halving of ed50 at 30 lux
   with 12 participants:
   python3 -m mellux.power_comparison --mode treatment-power --data-dir data/ \
     --n-population 200 --multiplier 0.5 --compare-lux 30 --n 12 --sims 2000

2) Power to tell 30 lux from 100 lux with 8 participants per group:
   python3 -m mellux.power_comparison --mode lux-power --data-dir data/ \
     --compare-lux 30 --lux-2 100 --n 8 --between --sims 2000

3) Smallest sample reaching 80% power:
   python3 -m mellux.power_comparison --mode n-for-power --data-dir data/ \
     --multiplier 0.5 --compare-lux 30 --target-power 0.8 --n-population 300

Notes
-----
- Each evaluation seeds its own generator from ``seed``, so power at
  different sample sizes is computed with common random numbers.
- Monte Carlo error of a power estimate p is about sqrt(p * (1 - p) / sims);
  a Wilson interval is reported alongside.
"""

from __future__ import annotations

import argparse
import logging
import os
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.stats as sps
from statsmodels.stats.proportion import proportion_confint

from mellux.virtual_experiment import (
    DEFAULT_LUX,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_THRESH_25,
    DEFAULT_THRESH_75,
    DESIGNS,
    VirtualExperimentSpec,
    load_empirical_tables,
    validate_probability,
)


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64
RESULT_COLUMNS = ["result", "p_value"]


@dataclass(frozen=True)
class TestResult:
    """Outcome of one comparison: correct sign (1/0) and the test's p-value."""

    result: int
    p_value: float


@dataclass(frozen=True)
class PowerEstimate:
    power: float
    ci_low: float
    ci_high: float
    successes: int
    nreps: int


# ---------- Success predicates ----------

def run_t_test(vals_a: np.ndarray, vals_b: np.ndarray, paired: bool):
    """Two-sided t-test: paired for within-subject, Student two-sample otherwise."""
    if paired:
        return sps.ttest_rel(vals_a, vals_b)
    return sps.ttest_ind(vals_a, vals_b, equal_var=True)


def _sign_matches(diff: float, expect_higher: bool) -> int:
    if expect_higher:
        return 1 if diff > 0 else 0
    return 1 if diff < 0 else 0


def is_comparison_successful_one_lux(vals_untreated, vals_treated, is_treated_higher: bool, fit) -> TestResult:
    """Check that mean(treated) - mean(untreated) has the expected sign.

    The p-value of ``fit`` is passed through unchanged; it does not affect
    ``result``.
    """
    diff = float(np.mean(vals_treated) - np.mean(vals_untreated))
    return TestResult(result=_sign_matches(diff, is_treated_higher), p_value=float(fit.pvalue))


def is_comparison_successful(vals_1, vals_2, lux_1: float, lux_2: float, fit) -> TestResult:
    """As ``is_comparison_successful_one_lux`` with the higher lux expected to suppress more."""
    diff = float(np.mean(vals_2) - np.mean(vals_1))
    return TestResult(result=_sign_matches(diff, lux_2 > lux_1), p_value=float(fit.pvalue))


# ---------- Sampling inputs ----------

def _values_at_lux(population_df: pd.DataFrame, lux: float, treated: Optional[bool] = None) -> pd.Series:
    """Suppression values at one lux value indexed by individual id."""
    missing = [c for c in ("id", "lux", "y") if c not in population_df.columns]
    if treated is not None and "treated" not in population_df.columns:
        missing.append("treated")
    if missing:
        raise ValueError(f"population_df is missing columns: {', '.join(missing)}")

    rows = np.isclose(population_df["lux"].to_numpy(dtype=float), float(lux))
    if treated is not None:
        rows &= population_df["treated"].to_numpy(dtype=bool) == treated
    sub = population_df.loc[rows, ["id", "y"]]
    if sub.empty:
        group = "" if treated is None else (" for treated individuals" if treated else " for untreated individuals")
        raise ValueError(f"No measurements at lux={lux}{group}")
    if sub["id"].duplicated().any():
        raise ValueError(
            f"More than one measurement per individual at lux={lux}; "
            "filter the table to a single measurement occasion"
        )
    return sub.set_index("id")["y"]


def _check_sample_size(n: int, available: int, what: str) -> None:
    if n < 2:
        raise ValueError(f"n must be >= 2 for a t-test, got {n}")
    if n > available:
        raise ValueError(f"Cannot sample {n} {what}: population only has {available}")


@dataclass(frozen=True)
class _ComparisonInputs:
    """Value arrays and design of one comparison, ready for repeated sampling."""

    comparison: str          # "treatment" or "lux"
    vals_a: np.ndarray       # untreated values, or values at lux_1
    vals_b: np.ndarray       # treated values, or values at lux_2
    n: int
    is_between: bool
    is_treated_higher: bool = True
    lux_1: float = float("nan")
    lux_2: float = float("nan")

    def draw(self, rng: np.random.Generator) -> TestResult:
        n = self.n
        if self.comparison == "treatment":
            if self.is_between:
                vals_u = self.vals_a[rng.choice(len(self.vals_a), size=n, replace=False)]
                vals_t = self.vals_b[rng.choice(len(self.vals_b), size=n, replace=False)]
            else:
                idx = rng.choice(len(self.vals_a), size=n, replace=False)
                vals_u, vals_t = self.vals_a[idx], self.vals_b[idx]
            fit = run_t_test(vals_u, vals_t, paired=not self.is_between)
            return is_comparison_successful_one_lux(vals_u, vals_t, self.is_treated_higher, fit)

        if self.is_between:
            idx = rng.choice(len(self.vals_a), size=2 * n, replace=False)
            vals_1, vals_2 = self.vals_a[idx[:n]], self.vals_b[idx[n:]]
        else:
            idx = rng.choice(len(self.vals_a), size=n, replace=False)
            vals_1, vals_2 = self.vals_a[idx], self.vals_b[idx]
        fit = run_t_test(vals_1, vals_2, paired=not self.is_between)
        return is_comparison_successful(vals_1, vals_2, self.lux_1, self.lux_2, fit)


def _treatment_inputs(population_df: pd.DataFrame, lux: float, n: int, is_between: bool,
                      is_treated_higher: bool) -> _ComparisonInputs:
    untreated = _values_at_lux(population_df, lux, treated=False)
    treated = _values_at_lux(population_df, lux, treated=True)
    if is_between:
        if untreated.index.intersection(treated.index).size > 0:
            raise ValueError(
                "Between-subject comparison needs disjoint treated and untreated individuals; "
                "use a between-subject experiment table"
            )
        _check_sample_size(n, min(len(untreated), len(treated)), "individuals per group")
        vals_a, vals_b = untreated.to_numpy(dtype=float), treated.to_numpy(dtype=float)
    else:
        ids = untreated.index.intersection(treated.index)
        _check_sample_size(n, len(ids), "individuals measured both untreated and treated")
        vals_a = untreated.loc[ids].to_numpy(dtype=float)
        vals_b = treated.loc[ids].to_numpy(dtype=float)
    return _ComparisonInputs("treatment", vals_a, vals_b, int(n), bool(is_between),
                             is_treated_higher=bool(is_treated_higher), lux_1=float(lux))


def _lux_inputs(population_df: pd.DataFrame, lux_1: float, lux_2: float, n: int,
                is_between: bool) -> _ComparisonInputs:
    if np.isclose(float(lux_1), float(lux_2)):
        raise ValueError(f"lux_1 and lux_2 must differ, got {lux_1} and {lux_2}")
    vals_1 = _values_at_lux(population_df, lux_1)
    vals_2 = _values_at_lux(population_df, lux_2)
    ids = vals_1.index.intersection(vals_2.index)
    if is_between:
        _check_sample_size(n, len(ids) // 2, "individuals per lux group")
    else:
        _check_sample_size(n, len(ids), "individuals")
    return _ComparisonInputs("lux", vals_1.loc[ids].to_numpy(dtype=float), vals_2.loc[ids].to_numpy(dtype=float),
                             int(n), bool(is_between), lux_1=float(lux_1), lux_2=float(lux_2))


# ---------- Repetitions (serial or chunked parallel) ----------

@dataclass(frozen=True)
class _RepWorkerInput:
    start: int
    count: int
    seed: Optional[int]
    inputs: _ComparisonInputs


@dataclass
class _RepWorkerResult:
    start: int
    count: int
    results: np.ndarray
    pvals: np.ndarray


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Worker count for n_jobs: None, 0 and 1 run serially; negative values count back from the CPU total."""
    if not n_jobs:
        return 1
    if n_jobs > 0:
        return int(n_jobs)
    # -1 uses every core, -2 all but one
    return max(1, (os.cpu_count() or 1) + 1 + n_jobs)


def _effective_chunk_size(nreps: int, chunk_size: Optional[int]) -> int:
    size = chunk_size if chunk_size and chunk_size > 0 else DEFAULT_CHUNK_SIZE
    return max(1, min(int(size), nreps))


def _chunk_indices(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunks: List[Tuple[int, int]] = []
    start = 0
    while start < total:
        count = min(chunk_size, total - start)
        chunks.append((start, count))
        start += count
    return chunks


def _generate_chunk_seeds(rng: np.random.Generator, num_chunks: int) -> List[int]:
    if num_chunks <= 0:
        return []
    seeds = rng.integers(0, 2**63 - 1, size=num_chunks, dtype=np.int64)
    # Python ints pickle cleanly
    return [int(s) for s in seeds]


def _run_chunk(inputs: _ComparisonInputs, count: int, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
    results = np.empty(count, dtype=int)
    pvals = np.empty(count, dtype=float)
    for idx in range(count):
        outcome = inputs.draw(rng)
        results[idx] = outcome.result
        pvals[idx] = outcome.p_value
    return results, pvals


def _run_repetition_chunk(payload: _RepWorkerInput) -> _RepWorkerResult:
    rng = np.random.default_rng(payload.seed)
    results, pvals = _run_chunk(payload.inputs, payload.count, rng)
    return _RepWorkerResult(start=payload.start, count=payload.count, results=results, pvals=pvals)


def _collect(chunk_results: Iterable[_RepWorkerResult], results: np.ndarray, pvals: np.ndarray) -> None:
    for chunk in chunk_results:
        end = chunk.start + chunk.count
        results[chunk.start:end] = chunk.results
        pvals[chunk.start:end] = chunk.pvals


def _run_repetitions(inputs: _ComparisonInputs, nreps: int, rng: np.random.Generator,
                     n_jobs: Optional[int] = None, chunk_size: Optional[int] = None) -> pd.DataFrame:
    if nreps <= 0:
        raise ValueError("nreps must be a positive integer")

    worker_count = _resolve_n_jobs(n_jobs)
    if worker_count <= 1:
        results, pvals = _run_chunk(inputs, nreps, rng)
        return pd.DataFrame({"result": results, "p_value": pvals}, columns=RESULT_COLUMNS)

    chunk_info = _chunk_indices(nreps, _effective_chunk_size(nreps, chunk_size))
    seeds = _generate_chunk_seeds(rng, len(chunk_info))
    payloads = [
        _RepWorkerInput(start=start, count=count, seed=seeds[idx], inputs=inputs)
        for idx, (start, count) in enumerate(chunk_info)
    ]
    max_workers = min(worker_count, len(payloads)) or 1
    results = np.empty(nreps, dtype=int)
    pvals = np.empty(nreps, dtype=float)
    logger.info("Running %d repetitions in %d chunks on %d workers", nreps, len(payloads), max_workers)

    try:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            _collect(executor.map(_run_repetition_chunk, payloads), results, pvals)
    except (PermissionError, NotImplementedError, OSError):
        # Fallback to thread-based parallelism when processes are not allowed
        logger.warning("Process pool unavailable; running repetitions on threads")
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            _collect(executor.map(_run_repetition_chunk, payloads), results, pvals)

    return pd.DataFrame({"result": results, "p_value": pvals}, columns=RESULT_COLUMNS)


# ---------- Comparison tests ----------

def comparison_test_treatment_single(is_between: bool, lux: float, n: int, population_df: pd.DataFrame,
                                     is_treated_higher: bool, *, rng: np.random.Generator) -> int:
    """One treated vs untreated comparison at ``lux``; returns 1 if the sign is as expected.

    The p-value is discarded here; use ``comparison_test_treatment`` to keep it.
    """
    inputs = _treatment_inputs(population_df, lux, n, is_between, is_treated_higher)
    return inputs.draw(rng).result


def comparison_test_treatment(is_between: bool, lux: float, n: int, population_df: pd.DataFrame,
                              is_treated_higher: bool, nreps: int, *, rng: np.random.Generator,
                              n_jobs: Optional[int] = None, chunk_size: Optional[int] = None) -> pd.DataFrame:
    """Repeat the treated vs untreated comparison ``nreps`` times.

    Returns a dataframe with columns: result, p_value (one row per repetition).
    """
    inputs = _treatment_inputs(population_df, lux, n, is_between, is_treated_higher)
    return _run_repetitions(inputs, nreps, rng, n_jobs=n_jobs, chunk_size=chunk_size)


def comparison_test(is_between: bool, lux_1: float, lux_2: float, n: int, population_df: pd.DataFrame,
                    nreps: int, *, rng: np.random.Generator,
                    n_jobs: Optional[int] = None, chunk_size: Optional[int] = None) -> pd.DataFrame:
    """Repeat the lux_1 vs lux_2 comparison ``nreps`` times with fresh samples of n individuals.

    Returns a dataframe with columns: result, p_value (one row per repetition).
    """
    inputs = _lux_inputs(population_df, lux_1, lux_2, n, is_between)
    return _run_repetitions(inputs, nreps, rng, n_jobs=n_jobs, chunk_size=chunk_size)


# ---------- Power ----------

def estimate_power(results: pd.DataFrame, alpha: float = 0.05, alpha_ci: float = 0.05) -> PowerEstimate:
    """Share of repetitions with the expected sign and p < alpha, with a Wilson interval.

    NaN p-values count as non-significant.
    """
    validate_probability(alpha, "alpha", allow_zero=False, allow_one=False)
    validate_probability(alpha_ci, "alpha_ci", allow_zero=False, allow_one=False)
    nreps = len(results)
    if nreps == 0:
        raise ValueError("results is empty")
    pvals = np.nan_to_num(results["p_value"].to_numpy(dtype=float), nan=1.0)
    hits = (results["result"].to_numpy() == 1) & (pvals < alpha)
    k = int(hits.sum())
    low, high = proportion_confint(k, nreps, alpha=alpha_ci, method="wilson")
    return PowerEstimate(power=k / nreps, ci_low=float(low), ci_high=float(high), successes=k, nreps=nreps)


@dataclass
class ComparisonSpec:
    n: int                                 # individuals sampled per group
    lux: float = 100.0                     # lux of the treatment comparison, or the first lux
    lux_2: Optional[float] = None          # second lux; set for a lux vs lux comparison
    is_between: bool = False
    is_treated_higher: bool = True         # ed50 multiplier < 1 makes treated individuals more sensitive
    nreps: int = 1000
    alpha: float = 0.05
    seed: Optional[int] = 12345

    @property
    def comparison(self) -> str:
        return "treatment" if self.lux_2 is None else "lux"

    def validate(self) -> None:
        if not (self.n >= 2):
            raise ValueError("n must be >= 2")
        if not (self.nreps > 0):
            raise ValueError("nreps must be > 0")
        if not (self.lux > 0) or (self.lux_2 is not None and not (self.lux_2 > 0)):
            raise ValueError("lux values must be positive")
        validate_probability(self.alpha, "alpha", allow_zero=False, allow_one=False)

    def inputs(self, population_df: pd.DataFrame) -> _ComparisonInputs:
        if self.comparison == "treatment":
            return _treatment_inputs(population_df, self.lux, self.n, self.is_between, self.is_treated_higher)
        return _lux_inputs(population_df, self.lux, self.lux_2, self.n, self.is_between)


def max_sample_size(spec: ComparisonSpec, population_df: pd.DataFrame) -> int:
    """Largest n the table supports for this comparison."""
    if spec.comparison == "treatment":
        untreated = _values_at_lux(population_df, spec.lux, treated=False)
        treated = _values_at_lux(population_df, spec.lux, treated=True)
        if spec.is_between:
            return min(len(untreated), len(treated))
        return len(untreated.index.intersection(treated.index))
    vals_1 = _values_at_lux(population_df, spec.lux)
    vals_2 = _values_at_lux(population_df, spec.lux_2)
    ids = len(vals_1.index.intersection(vals_2.index))
    return ids // 2 if spec.is_between else ids


def simulate_results(spec: ComparisonSpec, population_df: pd.DataFrame, *,
                     n_jobs: Optional[int] = None, chunk_size: Optional[int] = None) -> pd.DataFrame:
    """Run ``spec.nreps`` repetitions with a generator seeded from ``spec.seed``."""
    spec.validate()
    rng = np.random.default_rng(spec.seed)
    return _run_repetitions(spec.inputs(population_df), spec.nreps, rng, n_jobs=n_jobs, chunk_size=chunk_size)


def simulate_power(spec: ComparisonSpec, population_df: pd.DataFrame, *, alpha_ci: float = 0.05,
                   n_jobs: Optional[int] = None, chunk_size: Optional[int] = None) -> PowerEstimate:
    """Monte Carlo power estimate for the comparison described by ``spec``."""
    results = simulate_results(spec, population_df, n_jobs=n_jobs, chunk_size=chunk_size)
    return estimate_power(results, alpha=spec.alpha, alpha_ci=alpha_ci)


def power_curve(
    base_spec: ComparisonSpec,
    population_df: pd.DataFrame,
    n_values: Sequence[int],
    alpha_ci: float = 0.05,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Compute power across a grid of sample sizes with Wilson intervals.

    Returns a DataFrame with columns: N, power, ci_low, ci_high.
    """
    rows = []
    for n in n_values:
        est = simulate_power(replace(base_spec, n=int(n)), population_df, alpha_ci=alpha_ci,
                             n_jobs=n_jobs, chunk_size=chunk_size)
        rows.append({"N": int(n), "power": est.power, "ci_low": est.ci_low, "ci_high": est.ci_high})
    return pd.DataFrame(rows, columns=["N", "power", "ci_low", "ci_high"])


def find_n_for_power(
    target_power: float,
    base_spec: ComparisonSpec,
    population_df: pd.DataFrame,
    n_min: int = 2,
    n_max: Optional[int] = None,
    tol: float = 0.0,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    max_iter: int = 32,
) -> Tuple[int, float]:
    """Binary search for the minimum sample size achieving target power.

    The search is capped by the number of individuals the table can supply.
    Returns (n_required, achieved_power_at_n).
    """
    validate_probability(target_power, "target_power", allow_zero=False, allow_one=False)
    base_spec.validate()

    cap = max_sample_size(base_spec, population_df)
    high = cap if n_max is None else min(int(n_max), cap)
    low = max(2, int(n_min))
    if high < low:
        raise ValueError(f"Search range [{low}, {high}] is empty for a table supporting n <= {cap}")

    power_cache: dict[int, float] = {}

    def evaluate(n: int) -> float:
        if n not in power_cache:
            power_cache[n] = simulate_power(replace(base_spec, n=int(n)), population_df,
                                            n_jobs=n_jobs, chunk_size=chunk_size).power
            logger.info("n=%d: power %.3f", n, power_cache[n])
        return power_cache[n]

    if evaluate(high) < target_power - tol:
        raise RuntimeError(
            f"Unable to achieve target power {target_power:.3f} with n <= {high}; "
            "simulate a larger population"
        )

    best_n, best_pw = high, power_cache[high]
    iterations = 0
    while low <= high and iterations < max_iter:
        mid = (low + high) // 2
        pw = evaluate(mid)
        if pw >= target_power - tol:
            best_n, best_pw = mid, pw
            high = mid - 1
        else:
            low = mid + 1
        iterations += 1

    if iterations >= max_iter and low <= high:
        raise RuntimeError("Binary search did not converge within max_iter")

    return best_n, best_pw


# ---------- CLI ----------

def _parse_csv_numbers(s: Optional[str], cast=float) -> Optional[list]:
    """Parse a comma-separated list of numbers; None stays None."""
    if s is None:
        return None
    items = []
    for part in str(s).split(','):
        part = part.strip()
        if not part:
            continue
        items.append(cast(part))
    return items


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Virtual melatonin-suppression experiments and the power of their designs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--mode", choices=["experiment", "treatment-power", "lux-power", "curve", "n-for-power"],
                   default="treatment-power", help="Analysis mode")
    p.add_argument("--data-dir", required=True,
                   help="Directory with estimates.csv, p1_p2_regression_draws.csv and sigma_fit_draws.csv")
    # Population
    p.add_argument("--n-population", type=int, default=100, help="Individuals in the simulated population")
    p.add_argument("--lux", type=str, default=",".join(f"{x:g}" for x in DEFAULT_LUX),
                   help="Comma-separated lux values measured per individual")
    p.add_argument("--thresh-25", type=float, default=DEFAULT_THRESH_25,
                   help="Lower ed25 bound as a multiple of the smallest observed ed25")
    p.add_argument("--thresh-75", type=float, default=DEFAULT_THRESH_75,
                   help="Upper ed75 bound as a multiple of the largest observed ed75")
    p.add_argument("--variation-level", type=float, default=1.0,
                   help="Individual variation level in [0,1] (1 = empirical heterogeneity)")
    p.add_argument("--multiplier", type=float, default=1.0, help="Treated ed50 = natural ed50 * multiplier")
    p.add_argument("--design", choices=list(DESIGNS), default="within",
                   help="Experiment design for --mode experiment")
    p.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS,
                   help="Rejection sampling attempts per individual before giving up")
    # Comparison
    p.add_argument("--between", action="store_true", help="Between-subject comparison (default within-subject)")
    p.add_argument("--compare-lux", type=float, default=100.0, help="Lux of the treatment comparison (or first lux)")
    p.add_argument("--lux-2", type=float, default=None, help="Second lux for --mode lux-power")
    p.add_argument("--treated-lower", action="store_true",
                   help="Expect lower suppression under treatment (multiplier > 1)")
    p.add_argument("--n", type=int, default=10, help="Individuals sampled per group")
    p.add_argument("--n-values", type=str, default="4,8,12,16,24,32", help="Comma-separated N grid for --mode curve")
    p.add_argument("--target-power", type=float, default=0.8, help="Target power for --mode n-for-power")
    p.add_argument("--n-min", type=int, default=2, help="Search min for --mode n-for-power")
    p.add_argument("--n-max", type=int, default=None, help="Search max for --mode n-for-power")
    p.add_argument("--alpha", type=float, default=0.05, help="Significance level")
    p.add_argument("--sims", type=int, default=1000, help="Monte Carlo repetitions per evaluation")
    p.add_argument("--seed", type=int, default=12345, help="Random seed")
    p.add_argument("--n-jobs", type=int, default=1, help="Worker processes (-1 uses all cores)")
    p.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Repetitions per task when parallelized")
    p.add_argument("--output", type=str, default=None, help="CSV path for the experiment table or power curve")
    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="WARNING")
    return p


def _population_spec(args: argparse.Namespace, design: str) -> VirtualExperimentSpec:
    return VirtualExperimentSpec(
        n_population=args.n_population,
        lux=tuple(_parse_csv_numbers(args.lux)),
        thresh_25=args.thresh_25,
        thresh_75=args.thresh_75,
        individual_variation_level=args.variation_level,
        treated_ed50_multiplier=args.multiplier,
        design=design,
        seed=args.seed,
        max_attempts=args.max_attempts,
    )


def _print_truncation_note(population_df: pd.DataFrame) -> None:
    share = float(population_df["p1_truncated"].mean())
    if share > 0:
        logger.warning("%.1f%% of measurements use a truncated treated p1", 100 * share)
        print(f"  Note: {share:.1%} of measurements have p1_treated clamped to 0 (treatment too extreme)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    tables = load_empirical_tables(args.data_dir)

    if args.mode == "experiment":
        df = _population_spec(args, args.design).generate(tables)
        print("Virtual experiment")
        print(f"  Design: {args.design}, individuals: {args.n_population}, lux: {args.lux}")
        print(f"  Rows: {len(df)}, ed50 multiplier: {args.multiplier}")
        _print_truncation_note(df)
        if args.output:
            df.to_csv(args.output, index=False)
            print(f"  Written to {args.output}")
        else:
            print(df.head(10).to_string(index=False))
        return 0

    if args.mode == "lux-power":
        if args.lux_2 is None:
            raise SystemExit("--lux-2 is required for --mode lux-power")
        population_df = _population_spec(args, "simple").generate(tables)
    else:
        population_df = _population_spec(args, "between" if args.between else "within").generate(tables)

    spec = ComparisonSpec(
        n=args.n,
        lux=args.compare_lux,
        lux_2=args.lux_2 if args.mode == "lux-power" else None,
        is_between=args.between,
        is_treated_higher=not args.treated_lower,
        nreps=args.sims,
        alpha=args.alpha,
        seed=args.seed,
    )
    design_label = "between-subject" if args.between else "within-subject"

    if args.mode in ("treatment-power", "lux-power"):
        est = simulate_power(spec, population_df, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
        print("Power analysis (simulation)")
        if spec.comparison == "treatment":
            print(f"  Comparison: treated vs untreated at {spec.lux:g} lux, ed50 multiplier {args.multiplier}")
        else:
            print(f"  Comparison: {spec.lux:g} lux vs {spec.lux_2:g} lux")
        print(f"  Design: {design_label}, n per group: {spec.n}, population: {args.n_population}")
        print(f"  alpha={spec.alpha}, sims={spec.nreps}, n_jobs={args.n_jobs}")
        _print_truncation_note(population_df)
        print(f"  Estimated power: {est.power:.3f}")
        print(f"  95% CI: [{est.ci_low:.3f}, {est.ci_high:.3f}]")
    elif args.mode == "curve":
        n_values = _parse_csv_numbers(args.n_values, cast=int)
        curve = power_curve(spec, population_df, n_values, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
        print(f"Power curve ({design_label}, treated vs untreated at {spec.lux:g} lux)")
        _print_truncation_note(population_df)
        print(curve.to_string(index=False, float_format=lambda x: f"{x:.3f}"))
        if args.output:
            curve.to_csv(args.output, index=False)
            print(f"  Written to {args.output}")
    else:
        n_req, pw = find_n_for_power(
            args.target_power,
            spec,
            population_df,
            n_min=args.n_min,
            n_max=args.n_max,
            n_jobs=args.n_jobs,
            chunk_size=args.chunk_size,
        )
        print("Sample size for target power (simulation)")
        print(f"  Target power: {args.target_power}")
        print(f"  Required n per group: {n_req}")
        print(f"  Achieved power at n: {pw:.3f}")
        print(f"  Design: {design_label}, treated vs untreated at {spec.lux:g} lux, multiplier {args.multiplier}")
        print(f"  alpha={spec.alpha}, sims={spec.nreps}, population={args.n_population}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
