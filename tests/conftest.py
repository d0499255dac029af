import os

import numpy as np
import pandas as pd
import pytest

import mellux.virtual_experiment as ve


# Synthetic stand-ins for the published estimates: p1 spans ed50 of ~4 to ~250 lux,
# log10(p2) ~ 0.6 with little dependence on p1, logit noise sigma around 0.5.
P1_ESTIMATES = np.linspace(0.6, 2.4, 37)
ED_25 = np.linspace(3.0, 120.0, 37)
ED_75 = np.linspace(20.0, 800.0, 37)


def _synthetic_frames(seed: int = 7):
    rng = np.random.default_rng(seed)
    draws = pd.DataFrame({
        "alpha": 0.6 + 0.02 * rng.standard_normal(200),
        "beta": 0.01 * rng.standard_normal(200),
        "sigma0": rng.uniform(0.06, 0.10, 200),
        "sigma1": np.zeros(200),
    })
    sigma_draws = pd.DataFrame({
        "a": rng.uniform(8.0, 12.0, 100),
        "b": rng.uniform(18.0, 22.0, 100),
    })
    estimates = pd.DataFrame({"p1": P1_ESTIMATES, "ed_25": ED_25, "ed_75": ED_75})
    return estimates, draws, sigma_draws


@pytest.fixture
def tables() -> ve.EmpiricalTables:
    estimates, draws, sigma_draws = _synthetic_frames()
    t = ve.EmpiricalTables(
        cdf_inv_full=ve.empirical_cdf_inv(estimates["p1"]),
        p1_p2_regression_draws=draws,
        ed_25=estimates["ed_25"].to_numpy(),
        ed_75=estimates["ed_75"].to_numpy(),
        sigma_fit_draws=sigma_draws,
    )
    return t


@pytest.fixture
def tables_dir(tmp_path) -> str:
    estimates, draws, sigma_draws = _synthetic_frames()
    estimates.to_csv(os.path.join(tmp_path, "estimates.csv"), index=False)
    draws.to_csv(os.path.join(tmp_path, "p1_p2_regression_draws.csv"), index=False)
    sigma_draws.to_csv(os.path.join(tmp_path, "sigma_fit_draws.csv"), index=False)
    return str(tmp_path)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(2024)
