import math
import os
from dataclasses import replace
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
import scipy.stats as sps

import mellux.power_comparison as pc
import mellux.virtual_experiment as ve


Y_UNTREATED = np.array([0.20, 0.25, 0.30, 0.35, 0.40, 0.45])
Y_SHIFT = np.array([0.05, 0.02, 0.08, 0.01, 0.06, 0.03])


def _within_table() -> pd.DataFrame:
    rows = []
    for i, (y_u, shift) in enumerate(zip(Y_UNTREATED, Y_SHIFT), start=1):
        for lux, offset in [(30.0, -0.1 - 0.01 * i), (100.0, 0.0)]:
            rows.append({"lux": lux, "y": y_u + offset, "id": i, "treated": False})
            rows.append({"lux": lux, "y": y_u + offset + shift, "id": i, "treated": True})
    return pd.DataFrame(rows)


def _between_table() -> pd.DataFrame:
    rows = []
    for i, (y_u, shift) in enumerate(zip(Y_UNTREATED, Y_SHIFT), start=1):
        rows.append({"lux": 100.0, "y": y_u, "id": i, "treated": False})
        rows.append({"lux": 100.0, "y": y_u + 0.1 + shift, "id": i + 6, "treated": True})
    return pd.DataFrame(rows)


def _treatment_population(tables, n, is_between, multiplier, seed=5, lux=(30, 100)) -> pd.DataFrame:
    return ve.virtual_treatment_experiment(
        n, lux=lux, treated_ed50_multiplier=multiplier, is_between=is_between,
        tables=tables, rng=np.random.default_rng(seed),
    )


# ---------- Success predicates ----------

def test_one_lux_predicate_checks_sign_only():
    fit = SimpleNamespace(pvalue=0.03)
    higher = pc.is_comparison_successful_one_lux([0.2, 0.3], [0.5, 0.6], True, fit)
    assert higher.result == 1
    assert higher.p_value == pytest.approx(0.03)
    assert pc.is_comparison_successful_one_lux([0.2, 0.3], [0.5, 0.6], False, fit).result == 0
    # a non-significant fit does not change the sign check
    assert pc.is_comparison_successful_one_lux([0.2, 0.3], [0.5, 0.6], True,
                                               SimpleNamespace(pvalue=0.9)).result == 1


def test_equal_means_never_succeed():
    fit = SimpleNamespace(pvalue=1.0)
    assert pc.is_comparison_successful_one_lux([0.4, 0.6], [0.5, 0.5], True, fit).result == 0
    assert pc.is_comparison_successful_one_lux([0.4, 0.6], [0.5, 0.5], False, fit).result == 0
    assert pc.is_comparison_successful([0.4, 0.6], [0.5, 0.5], 30, 100, fit).result == 0


def test_lux_predicate_expects_more_suppression_at_higher_lux():
    vals_1, vals_2 = np.array([0.2, 0.3, 0.25]), np.array([0.6, 0.7, 0.65])
    fit = sps.ttest_rel(vals_1, vals_2)
    assert pc.is_comparison_successful(vals_1, vals_2, 30, 100, fit).result == 1
    assert pc.is_comparison_successful(vals_1, vals_2, 100, 30, fit).result == 0
    assert pc.is_comparison_successful(vals_1, vals_2, 30, 100, fit).p_value == pytest.approx(fit.pvalue)


# ---------- Test selection ----------

def test_within_uses_paired_test():
    df = _within_table()
    res = pc.comparison_test_treatment(False, 100, 6, df, True, 3, rng=np.random.default_rng(1))
    expected = sps.ttest_rel(Y_UNTREATED, Y_UNTREATED + Y_SHIFT).pvalue
    assert (res["result"] == 1).all()
    assert np.allclose(res["p_value"], expected)
    unpaired = sps.ttest_ind(Y_UNTREATED, Y_UNTREATED + Y_SHIFT).pvalue
    assert not np.isclose(expected, unpaired)


def test_between_uses_student_test():
    df = _between_table()
    res = pc.comparison_test_treatment(True, 100, 6, df, True, 3, rng=np.random.default_rng(1))
    expected = sps.ttest_ind(Y_UNTREATED, Y_UNTREATED + 0.1 + Y_SHIFT, equal_var=True).pvalue
    assert np.allclose(res["p_value"], expected)
    assert (res["result"] == 1).all()


def test_single_comparison_returns_sign_flag():
    df = _within_table()
    assert pc.comparison_test_treatment_single(False, 100, 4, df, True, rng=np.random.default_rng(0)) == 1
    assert pc.comparison_test_treatment_single(False, 100, 4, df, False, rng=np.random.default_rng(0)) == 0


def test_lux_comparison_on_treatment_table_rejected():
    # two measurements per individual at each lux
    with pytest.raises(ValueError):
        pc.comparison_test(False, 30, 100, 3, _within_table(), 5, rng=np.random.default_rng(0))


def test_lux_comparison_on_untreated_rows():
    df = _within_table()
    df = df[~df["treated"]].drop(columns="treated")
    res = pc.comparison_test(False, 30, 100, 6, df, 4, rng=np.random.default_rng(0))
    # y at 100 lux is at least 0.1 above y at 30 lux for everybody
    assert (res["result"] == 1).all()
    assert (res["p_value"] < 1e-3).all()


Y_LUX_30 = np.array([0.10, 0.18, 0.22, 0.31, 0.27, 0.40, 0.12, 0.35, 0.25, 0.19, 0.33, 0.29])
Y_LUX_100 = Y_LUX_30 + np.array([0.15, 0.05, 0.22, 0.08, 0.30, 0.02, 0.11, 0.19, 0.07, 0.25, 0.04, 0.13])


def _lux_table(n_individuals: int = 12) -> pd.DataFrame:
    rows = []
    for i in range(n_individuals):
        rows.append({"lux": 30.0, "y": Y_LUX_30[i], "id": i + 1})
        rows.append({"lux": 100.0, "y": Y_LUX_100[i], "id": i + 1})
    return pd.DataFrame(rows)


def test_lux_within_uses_paired_test():
    res = pc.comparison_test(False, 30, 100, 12, _lux_table(), 3, rng=np.random.default_rng(2))
    expected = sps.ttest_rel(Y_LUX_30, Y_LUX_100).pvalue
    assert np.allclose(res["p_value"], expected)
    assert (res["result"] == 1).all()
    assert not np.isclose(expected, sps.ttest_ind(Y_LUX_30, Y_LUX_100).pvalue)


def test_lux_between_uses_student_test_on_disjoint_individuals():
    n = 6
    res = pc.comparison_test(True, 30, 100, n, _lux_table(), 1, rng=np.random.default_rng(2))
    # the whole population is split into two disjoint groups of n
    idx = np.random.default_rng(2).choice(12, size=2 * n, replace=False)
    assert len(set(idx[:n]) & set(idx[n:])) == 0
    expected = sps.ttest_ind(Y_LUX_30[idx[:n]], Y_LUX_100[idx[n:]], equal_var=True).pvalue
    welch = sps.ttest_ind(Y_LUX_30[idx[:n]], Y_LUX_100[idx[n:]], equal_var=False).pvalue
    assert res["p_value"].iloc[0] == pytest.approx(expected)
    assert not np.isclose(expected, welch)


def test_lux_between_needs_two_n_individuals():
    with pytest.raises(ValueError):
        pc.comparison_test(True, 30, 100, 6, _lux_table(11), 1, rng=np.random.default_rng(0))
    assert len(pc.comparison_test(True, 30, 100, 5, _lux_table(11), 2, rng=np.random.default_rng(0))) == 2


# ---------- Input errors ----------

def test_sample_size_errors():
    df = _within_table()
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(False, 100, 1, df, True, 5, rng=np.random.default_rng(0))
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(False, 100, 7, df, True, 5, rng=np.random.default_rng(0))
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(True, 100, 7, _between_table(), True, 5, rng=np.random.default_rng(0))


def test_between_on_within_table_rejected():
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(True, 100, 3, _within_table(), True, 5, rng=np.random.default_rng(0))


def test_missing_lux_and_columns_rejected():
    df = _within_table()
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(False, 55, 3, df, True, 5, rng=np.random.default_rng(0))
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(False, 100, 3, df.drop(columns="treated"), True, 5,
                                     rng=np.random.default_rng(0))
    with pytest.raises(ValueError):
        pc.comparison_test(False, 100, 100, 3, df[~df["treated"]], 5, rng=np.random.default_rng(0))


def test_nreps_must_be_positive():
    with pytest.raises(ValueError):
        pc.comparison_test_treatment(False, 100, 3, _within_table(), True, 0, rng=np.random.default_rng(0))


# ---------- Aggregation ----------

def test_estimate_power_counts_correct_and_significant():
    results = pd.DataFrame({"result": [1, 1, 0, 1], "p_value": [0.01, 0.2, 0.001, float("nan")]})
    est = pc.estimate_power(results, alpha=0.05)
    assert est.power == pytest.approx(0.25)
    assert est.successes == 1
    assert est.nreps == 4
    assert 0.0 <= est.ci_low < 0.25 < est.ci_high <= 1.0


def test_estimate_power_rejects_bad_input():
    with pytest.raises(ValueError):
        pc.estimate_power(pd.DataFrame({"result": [], "p_value": []}))
    with pytest.raises(ValueError):
        pc.estimate_power(pd.DataFrame({"result": [1], "p_value": [0.01]}), alpha=1.5)


def test_comparison_test_shape(tables):
    df = ve.virtual_experiment(20, lux=(30, 300), tables=tables, rng=np.random.default_rng(3))
    res = pc.comparison_test(True, 30, 300, 5, df, 25, rng=np.random.default_rng(4))
    assert list(res.columns) == ["result", "p_value"]
    assert len(res) == 25
    assert set(res["result"]).issubset({0, 1})
    assert res["p_value"].between(0, 1).all()


# ---------- Parallel runner ----------

def test_parallel_repetitions_reproducible(tables):
    df = _treatment_population(tables, 20, False, 0.5)
    kwargs = dict(n_jobs=2, chunk_size=16)
    a = pc.comparison_test_treatment(False, 30, 6, df, True, 50, rng=np.random.default_rng(9), **kwargs)
    b = pc.comparison_test_treatment(False, 30, 6, df, True, 50, rng=np.random.default_rng(9), **kwargs)
    pd.testing.assert_frame_equal(a, b)
    assert len(a) == 50


def test_parallel_matches_serial_within_mc_error(tables):
    df = _treatment_population(tables, 30, False, 0.5)
    spec = pc.ComparisonSpec(n=8, lux=30, nreps=200, seed=21)
    serial = pc.simulate_power(spec, df, n_jobs=1)
    parallel = pc.simulate_power(spec, df, n_jobs=2, chunk_size=32)
    mc_se = math.sqrt(max(serial.power * (1 - serial.power), 0.05) / spec.nreps)
    assert abs(parallel.power - serial.power) <= 5 * mc_se + 1e-3


def test_chunking_helpers():
    assert pc._chunk_indices(10, 4) == [(0, 4), (4, 4), (8, 2)]
    assert pc._effective_chunk_size(10, None) == 10
    assert pc._effective_chunk_size(100, 16) == 16
    assert pc._effective_chunk_size(100, 0) == pc.DEFAULT_CHUNK_SIZE
    assert pc._effective_chunk_size(100, -5) == pc.DEFAULT_CHUNK_SIZE
    assert pc._effective_chunk_size(0, 16) == 1
    assert pc._resolve_n_jobs(None) == 1
    assert pc._resolve_n_jobs(0) == 1
    assert pc._resolve_n_jobs(3) == 3
    assert pc._resolve_n_jobs(-1) == (os.cpu_count() or 1)
    assert pc._resolve_n_jobs(-10_000) == 1


# ---------- Power behaviour ----------

def test_within_power_increases_with_n(tables):
    df = _treatment_population(tables, 40, False, 0.5)
    low = pc.simulate_power(pc.ComparisonSpec(n=3, lux=30, nreps=300), df)
    high = pc.simulate_power(pc.ComparisonSpec(n=20, lux=30, nreps=300), df)
    assert high.power > low.power + 0.05
    assert high.ci_low - 1e-12 <= high.power <= high.ci_high + 1e-12


def test_between_power_increases_with_n(tables):
    df = _treatment_population(tables, 120, True, 0.25)
    low = pc.simulate_power(pc.ComparisonSpec(n=4, lux=30, is_between=True, nreps=300), df)
    high = pc.simulate_power(pc.ComparisonSpec(n=40, lux=30, is_between=True, nreps=300), df)
    assert high.power > low.power + 0.05


def test_power_increases_with_lux_separation(tables):
    df = ve.virtual_experiment(40, lux=(30, 50, 300), tables=tables, rng=np.random.default_rng(8))
    near = pc.simulate_power(pc.ComparisonSpec(n=4, lux=30, lux_2=50, nreps=300), df)
    far = pc.simulate_power(pc.ComparisonSpec(n=4, lux=30, lux_2=300, nreps=300), df)
    assert far.power > near.power


def test_power_curve_columns(tables):
    df = _treatment_population(tables, 30, False, 0.5)
    curve = pc.power_curve(pc.ComparisonSpec(n=2, lux=30, nreps=100), df, [3, 6, 12])
    assert list(curve.columns) == ["N", "power", "ci_low", "ci_high"]
    assert list(curve["N"]) == [3, 6, 12]
    assert ((curve["ci_low"] - 1e-12 <= curve["power"]) & (curve["power"] <= curve["ci_high"] + 1e-12)).all()


def test_find_n_for_power_reaches_target(tables):
    df = _treatment_population(tables, 40, False, 0.25)
    base = pc.ComparisonSpec(n=2, lux=30, nreps=200, seed=3)
    n_req, pw = pc.find_n_for_power(0.8, base, df)
    assert 2 <= n_req <= 40
    assert pw >= 0.8
    assert pc.simulate_power(replace(base, n=n_req), df).power == pytest.approx(pw)


def test_find_n_for_power_unreachable(tables):
    df = _treatment_population(tables, 40, False, 1.0)
    with pytest.raises(RuntimeError):
        pc.find_n_for_power(0.8, pc.ComparisonSpec(n=2, lux=30, nreps=200), df, n_max=10)


def test_max_sample_size_and_spec_validation():
    assert pc.max_sample_size(pc.ComparisonSpec(n=2), _within_table()) == 6
    assert pc.max_sample_size(pc.ComparisonSpec(n=2, is_between=True), _between_table()) == 6
    with pytest.raises(ValueError):
        pc.ComparisonSpec(n=1).validate()
    with pytest.raises(ValueError):
        pc.ComparisonSpec(n=5, lux_2=-3.0).validate()
    assert pc.ComparisonSpec(n=5, lux_2=300.0).comparison == "lux"


# ---------- CLI ----------

def test_cli_experiment_writes_table(tables_dir, tmp_path, capsys):
    out = os.path.join(tmp_path, "experiment.csv")
    code = pc.main(["--mode", "experiment", "--data-dir", tables_dir, "--n-population", "5",
                    "--lux", "10,100", "--design", "simple", "--output", out])
    assert code == 0
    table = pd.read_csv(out)
    assert len(table) == 10
    assert list(table.columns) == ve.MEASUREMENT_COLUMNS
    assert "Rows: 10" in capsys.readouterr().out


def test_cli_treatment_power(tables_dir, capsys):
    code = pc.main(["--mode", "treatment-power", "--data-dir", tables_dir, "--n-population", "12",
                    "--lux", "30,100", "--compare-lux", "30", "--multiplier", "0.5", "--n", "5",
                    "--sims", "50"])
    assert code == 0
    assert "Estimated power" in capsys.readouterr().out


def test_cli_curve(tables_dir, capsys):
    code = pc.main(["--mode", "curve", "--data-dir", tables_dir, "--n-population", "12",
                    "--lux", "30", "--compare-lux", "30", "--multiplier", "0.5", "--n-values", "3,6",
                    "--sims", "40"])
    assert code == 0
    assert "Power curve" in capsys.readouterr().out


def test_cli_lux_power_needs_second_lux(tables_dir):
    with pytest.raises(SystemExit):
        pc.main(["--mode", "lux-power", "--data-dir", tables_dir, "--n-population", "6", "--lux", "30,100"])
