"""
Streamlit app: power of virtual light-sensitivity experiments
1) Treatment effect (treated vs untreated at one lux value)
2) Lux comparison (suppression at two lux values)

This app is a thin UI over the analysis modules:
- mellux.virtual_experiment (virtual populations and experiments)
- mellux.power_comparison (repeated t-tests and power)
"""

from __future__ import annotations

import json
from typing import Any, Dict

import streamlit as st

from mellux.virtual_experiment import (
    DEFAULT_LUX,
    DEFAULT_THRESH_25,
    DEFAULT_THRESH_75,
    ImplausibleDistributionError,
    MissingEmpiricalDataError,
    VirtualExperimentSpec,
    load_empirical_tables,
)
from mellux.power_comparison import (
    ComparisonSpec,
    find_n_for_power,
    max_sample_size,
    power_curve,
    simulate_power,
)


st.set_page_config(page_title="Melatonin Suppression Power", layout="wide")
st.title("Light Sensitivity Experiments — Simulated Power")
st.caption("Simulate individual dose-response curves and estimate the power of within- and between-subject designs.")
st.warning(
    "This application is intended for educational and exploratory purposes only. "
    "The analyses have not undergone expert statistical review."
)


def _download_button(label: str, payload: Dict[str, Any], key: str) -> None:
    st.download_button(
        label=label,
        data=json.dumps(payload, indent=2),
        file_name=f"{key}.json",
        mime="application/json",
        key=key,
    )


def _parse_lux(text: str) -> tuple:
    values = tuple(float(part) for part in text.split(",") if part.strip())
    if not values:
        raise ValueError("no lux values given")
    return values


HELP = {
    "data_dir": (
        "Directory holding estimates.csv (p1, ed_25, ed_75), p1_p2_regression_draws.csv (alpha, beta, sigma0, sigma1) "
        "and sigma_fit_draws.csv (a, b). These are the empirical estimates and posterior draws the virtual individuals "
        "are sampled from."
    ),
    "n_population": (
        "Number of virtual individuals generated before sampling. Each repetition draws n individuals without "
        "replacement from this population, so it must be at least n (2n for a between-subject lux comparison). "
        "A population much larger than n keeps the repetitions from reusing the same individuals."
    ),
    "lux": (
        "Comma-separated lux values at which every individual is measured. The comparison lux values must be among them."
    ),
    "variation": (
        "Individual variation level in [0, 1]. 1 keeps the empirical spread of ed50 and curve steepness; 0 makes every "
        "individual identical so only measurement noise remains. Lower values raise power."
    ),
    "thresh": (
        "Plausibility bounds for rejection sampling: an individual is kept only if its ed25 is at least thresh_25 times "
        "the smallest observed ed25 and its ed75 at most thresh_75 times the largest observed ed75."
    ),
    "multiplier": (
        "Treatment effect as a multiplier on ed50. 0.5 halves the light intensity needed for 50% suppression, making "
        "treated individuals more sensitive. Treated p1 below 0 is clamped to 0 and reported as truncated."
    ),
    "between": (
        "Between-subject: separate individuals per group, Student two-sample t-test. Within-subject: the same "
        "individuals measured in both conditions, paired t-test."
    ),
    "sims": (
        "Monte Carlo repetitions per power estimate. SE(power) ≈ sqrt(p·(1−p)/sims); 1000 for quick checks, 5000+ "
        "for reported numbers. Keep sims and seed fixed when comparing scenarios."
    ),
    "seed": "Random seed for both the population and the repetitions.",
    "n_jobs": (
        "Worker processes for the repetitions. 1 runs serially; -1 uses all cores (falls back to threads when "
        "multiprocessing is blocked)."
    ),
    "chunk_size": "Repetitions per task handed to each worker.",
    "target_power": "Desired probability of a correctly signed, significant result.",
}

qp = st.query_params
_comparison_q = (qp.get("comparison", "treatment") or "treatment")
comparison = st.sidebar.radio(
    "Comparison",
    ["Treatment effect", "Lux comparison"],
    index=0 if _comparison_q.lower().startswith("treat") else 1,
    help="Treated vs untreated at one lux value, or one lux value against another.",
)

st.sidebar.subheader("Empirical data")
data_dir = st.sidebar.text_input("Data directory", value=qp.get("data_dir", "data"), help=HELP["data_dir"])


def _goal_inputs(default_n: int, default_grid: str):
    goal = st.radio("Goal", ("Estimate power for fixed n", "Power curve", "Find n for target power"), index=0)
    if goal == "Estimate power for fixed n":
        value = st.number_input("n per group", min_value=2, max_value=5000, value=default_n, step=1)
    elif goal == "Power curve":
        value = st.text_input("n grid", value=default_grid)
    else:
        value = st.number_input("Target power", min_value=0.50, max_value=0.99, value=0.80, step=0.01,
                                format="%.2f", help=HELP["target_power"])
    return goal, value


def _population_inputs(design_label: str):
    st.subheader("Virtual population")
    c1, c2, c3 = st.columns(3)
    with c1:
        n_population = st.number_input("Population size", min_value=4, max_value=5000, value=200, step=10,
                                       help=HELP["n_population"])
    with c2:
        lux_text = st.text_input("Lux values", value=",".join(f"{x:g}" for x in DEFAULT_LUX), help=HELP["lux"])
    with c3:
        variation = st.number_input("Individual variation level", min_value=0.0, max_value=1.0, value=1.0,
                                    step=0.05, format="%.2f", help=HELP["variation"])
    with st.expander("Plausibility bounds (optional)"):
        t1, t2 = st.columns(2)
        with t1:
            thresh_25 = st.number_input("thresh_25", min_value=0.01, max_value=10.0, value=DEFAULT_THRESH_25,
                                        step=0.05, help=HELP["thresh"])
        with t2:
            thresh_75 = st.number_input("thresh_75", min_value=0.01, max_value=10.0, value=DEFAULT_THRESH_75,
                                        step=0.05, help=HELP["thresh"])
    st.caption(f"Design: {design_label}")
    try:
        lux = _parse_lux(lux_text)
    except ValueError:
        st.error(f"Lux values must be comma-separated numbers, got {lux_text!r}")
        st.stop()
    return int(n_population), lux, float(variation), float(thresh_25), float(thresh_75)


def _simulation_inputs():
    c1, c2, c3, c4, c5 = st.columns(5)
    with c1:
        alpha = st.number_input("Alpha (two-sided)", min_value=0.0001, max_value=0.2, value=0.05, step=0.005,
                                format="%.3f")
    with c2:
        sims = st.number_input("Monte Carlo repetitions", min_value=100, max_value=20000, value=1000, step=100,
                               help=HELP["sims"])
    with c3:
        seed = st.number_input("Random seed", min_value=0, max_value=10**9, value=12345, step=1, help=HELP["seed"])
    with c4:
        n_jobs = st.number_input("Worker processes", min_value=-1, max_value=64, value=1, step=1,
                                 help=HELP["n_jobs"], format="%d")
    with c5:
        chunk_size = st.number_input("Chunk size", min_value=1, max_value=2048, value=64, step=16,
                                     help=HELP["chunk_size"], format="%d")
    return float(alpha), int(sims), int(seed), int(n_jobs), int(chunk_size)


def _generate(pop_spec: VirtualExperimentSpec):
    try:
        tables = load_empirical_tables(data_dir)
        with st.spinner("Generating virtual population…"):
            return pop_spec.generate(tables)
    except MissingEmpiricalDataError as exc:
        st.error(f"Empirical data unavailable: {exc}")
    except ImplausibleDistributionError as exc:
        st.error(f"Could not sample plausible individuals: {exc}")
    except ValueError as exc:
        st.error(f"Invalid population settings: {exc}")
    return None


def _show_truncation(population_df) -> float:
    share = float(population_df["p1_truncated"].mean())
    if share > 0:
        st.info(f"{share:.1%} of measurements have treated p1 clamped to 0 (treatment too extreme for the curve model)")
    return share


def panel_treatment():
    st.header("Treatment effect — treated vs untreated")
    alpha, sims, seed, n_jobs, chunk_size = _simulation_inputs()
    is_between = st.checkbox("Between-subject design", value=False, help=HELP["between"])
    design = "between" if is_between else "within"
    n_population, lux, variation, thresh_25, thresh_75 = _population_inputs(f"{design}-subject")

    st.subheader("Treatment")
    c1, c2, c3 = st.columns(3)
    with c1:
        multiplier = st.number_input("ed50 multiplier", min_value=0.01, max_value=100.0, value=0.5, step=0.05,
                                     help=HELP["multiplier"])
    with c2:
        compare_lux = st.selectbox("Comparison lux", lux, index=min(1, len(lux) - 1))
    with c3:
        is_treated_higher = st.checkbox("Expect more suppression when treated", value=multiplier < 1.0)

    goal, goal_value = _goal_inputs(12, "4,8,12,16,24,32")

    if not st.button("Run", type="primary"):
        return
    pop_spec = VirtualExperimentSpec(
        n_population=n_population, lux=lux, thresh_25=thresh_25, thresh_75=thresh_75,
        individual_variation_level=variation, treated_ed50_multiplier=float(multiplier),
        design=design, seed=seed,
    )
    population_df = _generate(pop_spec)
    if population_df is None:
        return
    truncated = _show_truncation(population_df)
    spec = ComparisonSpec(n=2, lux=float(compare_lux), is_between=is_between,
                          is_treated_higher=bool(is_treated_higher), nreps=sims, alpha=alpha, seed=seed)
    inputs = {
        "design": design, "n_population": n_population, "lux": list(lux), "variation_level": variation,
        "thresh_25": thresh_25, "thresh_75": thresh_75, "multiplier": float(multiplier),
        "compare_lux": float(compare_lux), "alpha": alpha, "sims": sims, "seed": seed,
    }
    _run_goal(goal, goal_value, spec, population_df, inputs, truncated, n_jobs, chunk_size, key="treatment")


def panel_lux():
    st.header("Lux comparison — suppression at two light intensities")
    alpha, sims, seed, n_jobs, chunk_size = _simulation_inputs()
    is_between = st.checkbox("Between-subject design", value=False, help=HELP["between"])
    n_population, lux, variation, thresh_25, thresh_75 = _population_inputs(
        "between-subject" if is_between else "within-subject")
    if len(lux) < 2:
        st.error("Enter at least two lux values")
        return
    c1, c2 = st.columns(2)
    with c1:
        lux_1 = st.selectbox("Lower lux", lux, index=0)
    with c2:
        lux_2 = st.selectbox("Higher lux", lux, index=len(lux) - 1)

    goal, goal_value = _goal_inputs(8, "3,5,8,12,16")

    if not st.button("Run", type="primary"):
        return
    if lux_1 == lux_2:
        st.error("Choose two different lux values")
        return
    pop_spec = VirtualExperimentSpec(
        n_population=n_population, lux=lux, thresh_25=thresh_25, thresh_75=thresh_75,
        individual_variation_level=variation, design="simple", seed=seed,
    )
    population_df = _generate(pop_spec)
    if population_df is None:
        return
    spec = ComparisonSpec(n=2, lux=float(lux_1), lux_2=float(lux_2), is_between=is_between,
                          nreps=sims, alpha=alpha, seed=seed)
    inputs = {
        "design": "between" if is_between else "within", "n_population": n_population, "lux": list(lux),
        "variation_level": variation, "thresh_25": thresh_25, "thresh_75": thresh_75,
        "lux_1": float(lux_1), "lux_2": float(lux_2), "alpha": alpha, "sims": sims, "seed": seed,
    }
    _run_goal(goal, goal_value, spec, population_df, inputs, 0.0, n_jobs, chunk_size, key="lux")


def _run_goal(goal, goal_value, spec, population_df, inputs, truncated, n_jobs, chunk_size, key):
    cap = max_sample_size(spec, population_df)
    st.caption(f"The population supports n ≤ {cap} per group.")
    try:
        if goal == "Estimate power for fixed n":
            n = int(goal_value)
            spec.n = n
            with st.spinner("Running repetitions…"):
                est = simulate_power(spec, population_df, n_jobs=n_jobs, chunk_size=chunk_size)
            st.metric("Estimated power", f"{est.power:.3f}")
            st.caption(f"95% Wilson CI: [{est.ci_low:.3f}, {est.ci_high:.3f}] ({est.successes}/{est.nreps})")
            results = {"n": n, "power": est.power, "power_ci": (est.ci_low, est.ci_high)}
        elif goal == "Power curve":
            n_values = [int(float(x)) for x in str(goal_value).split(",") if x.strip()]
            with st.spinner("Computing power curve…"):
                curve = power_curve(spec, population_df, n_values, n_jobs=n_jobs, chunk_size=chunk_size)
            st.line_chart(curve.set_index("N")[["power", "ci_low", "ci_high"]])
            st.dataframe(curve)
            results = {"curve": curve.to_dict(orient="list")}
        else:
            with st.spinner("Searching for n…"):
                best_n, best_pw = find_n_for_power(float(goal_value), spec, population_df,
                                                   n_jobs=n_jobs, chunk_size=chunk_size)
            st.metric("Required n per group", f"{best_n}")
            st.caption(f"Estimated power at n: {best_pw:.3f}")
            results = {"n_required": int(best_n), "power": float(best_pw)}
    except (ValueError, RuntimeError) as exc:
        st.error(str(exc))
        return

    results["truncated_share"] = truncated
    _download_button("Download scenario (JSON)", payload={"comparison": key, "inputs": inputs, "results": results},
                     key=f"{key}_{goal.split()[0].lower()}")

    with st.expander("Guidance and sanity checks", expanded=False):
        st.markdown(
            "- With an ed50 multiplier of 1 (or two equal curves), power ≈ alpha/2: only correctly signed significant "
            "results count.\n"
            "- Power rises with n, with a multiplier further from 1, and with a lower individual variation level.\n"
            "- Within-subject designs remove between-individual variation and usually need far fewer participants.\n"
            "- Monte Carlo precision: use ≥3000 repetitions for reported numbers.\n"
            "- If n approaches the population size, the repetitions reuse nearly the same individuals; simulate a "
            "larger population."
        )


if comparison == "Treatment effect":
    panel_treatment()
else:
    panel_lux()
