"""
test_pooling.py

Rubin's rules on hand-computed values and on fitted statsmodels results.

Run: python -m pytest test_pooling.py -v
"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from bootstrap_and_impute.diary_data import load_daily_diary
from bootstrap_and_impute.models import fit_mixed, fit_ols
from bootstrap_and_impute.pooling import pool_estimates, pool_fits


class TestPoolEstimates:

    def test_hand_computed_values(self):
        pooled = pool_estimates([1.0, 2.0, 3.0], [1.0, 1.0, 1.0], names=["b"])
        row = pooled.iloc[0]
        assert row["term"] == "b"
        assert row["estimate"] == pytest.approx(2.0)
        assert row["ubar"] == pytest.approx(1.0)
        assert row["b"] == pytest.approx(1.0)
        assert row["t"] == pytest.approx(1.0 + 4.0 / 3.0)
        assert row["std_error"] == pytest.approx(np.sqrt(7.0 / 3.0))
        assert row["riv"] == pytest.approx(4.0 / 3.0)
        assert row["lambda"] == pytest.approx(4.0 / 7.0)
        # df_old = (m - 1) / lambda^2
        assert row["df"] == pytest.approx(2.0 / (4.0 / 7.0) ** 2)
        expected_fmi = (4.0 / 3.0 + 2.0 / (row["df"] + 3.0)) / (4.0 / 3.0 + 1.0)
        assert row["fmi"] == pytest.approx(expected_fmi)
        assert row["m"] == 3

    def test_interval_uses_t_reference(self):
        pooled = pool_estimates([1.0, 2.0, 3.0], [1.0, 1.0, 1.0])
        row = pooled.iloc[0]
        crit = stats.t.ppf(0.975, row["df"])
        assert row["lower"] == pytest.approx(2.0 - crit * row["std_error"])
        assert row["upper"] == pytest.approx(2.0 + crit * row["std_error"])
        assert row["p_value"] == pytest.approx(2 * stats.t.sf(2.0 / row["std_error"], row["df"]))

    def test_barnard_rubin_small_sample_df(self):
        dfcom = 20.0
        pooled = pool_estimates([1.0, 2.0, 3.0], [1.0, 1.0, 1.0], dfcom=dfcom)
        lam = 4.0 / 7.0
        df_old = 2.0 / lam ** 2
        df_obs = (dfcom + 1) / (dfcom + 3) * dfcom * (1 - lam)
        assert pooled["df"].iloc[0] == pytest.approx(df_old * df_obs / (df_old + df_obs))
        assert pooled["df"].iloc[0] < dfcom

    def test_identical_estimates_without_dfcom(self):
        pooled = pool_estimates([[1.5, 0.2]] * 4, [[0.25, 0.01]] * 4, names=["a", "b"])
        assert (pooled["b"] == 0).all()
        assert (pooled["lambda"] == 0).all()
        assert np.isinf(pooled["df"]).all()
        assert (pooled["fmi"] == 0).all()
        np.testing.assert_allclose(pooled["std_error"], [0.5, 0.1])
        z = stats.norm.ppf(0.975)
        np.testing.assert_allclose(pooled["upper"], [1.5 + z * 0.5, 0.2 + z * 0.1])

    def test_identical_estimates_with_dfcom(self):
        pooled = pool_estimates([2.0, 2.0], [1.0, 1.0], dfcom=10)
        assert pooled["df"].iloc[0] == pytest.approx(11.0 / 13.0 * 10.0)

    def test_multiple_terms(self):
        est = np.array([[1.0, 10.0], [1.2, 11.0], [0.8, 9.0]])
        var = np.array([[0.1, 1.0], [0.1, 1.0], [0.1, 1.0]])
        pooled = pool_estimates(est, var, names=["x", "y"])
        assert list(pooled["term"]) == ["x", "y"]
        np.testing.assert_allclose(pooled["estimate"], [1.0, 10.0])
        np.testing.assert_allclose(pooled["b"], [0.04, 1.0])

    @pytest.mark.parametrize("kwargs", [
        {"estimates": [1.0], "variances": [1.0]},
        {"estimates": [1.0, 2.0], "variances": [1.0, 1.0, 1.0]},
        {"estimates": [1.0, 2.0], "variances": [1.0, 1.0], "level": 0.0},
        {"estimates": [1.0, 2.0], "variances": [1.0, 1.0], "names": ["a", "b"]},
    ])
    def test_invalid_input(self, kwargs):
        with pytest.raises(ValueError):
            pool_estimates(**kwargs)


class TestPoolFits:

    @pytest.fixture(scope="class")
    def datasets(self):
        return [load_daily_diary(n_people=20, n_days=4, seed=s, natural_missing=0.0) for s in (1, 2, 3)]

    def test_pool_ols_uses_residual_df(self, datasets):
        fits = [fit_ols(d, "NegAff ~ STRESS") for d in datasets]
        pooled = pool_fits(fits)
        assert list(pooled["term"]) == ["Intercept", "STRESS"]
        assert (pooled["df"] <= fits[0].df_resid).all()
        expected = np.mean([f.params["STRESS"] for f in fits])
        assert pooled.set_index("term").loc["STRESS", "estimate"] == pytest.approx(expected)

    def test_pool_mixed_uses_fixed_effects(self, datasets):
        fits = [fit_mixed(d, "NegAff ~ STRESS", "UserID") for d in datasets]
        pooled = pool_fits(fits)
        assert list(pooled["term"]) == ["Intercept", "STRESS"]
        ubar = np.mean([f.bse_fe["STRESS"] ** 2 for f in fits])
        assert pooled.set_index("term").loc["STRESS", "ubar"] == pytest.approx(ubar)

    def test_pool_mixed_uses_classic_df(self, datasets):
        fits = [fit_mixed(d, "NegAff ~ STRESS", "UserID") for d in datasets]
        pooled = pool_fits(fits)
        assert "Group Var" not in set(pooled["term"])
        expected = pool_estimates(
            [f.fe_params.to_numpy() for f in fits],
            [f.bse_fe.to_numpy() ** 2 for f in fits],
            names=["Intercept", "STRESS"],
        )
        np.testing.assert_allclose(pooled["df"], expected["df"])

    def test_mismatched_terms(self, datasets):
        fits = [fit_ols(datasets[0], "NegAff ~ STRESS"), fit_ols(datasets[1], "NegAff ~ Age")]
        with pytest.raises(ValueError, match="different terms"):
            pool_fits(fits)

    def test_needs_two_fits(self, datasets):
        with pytest.raises(ValueError):
            pool_fits([fit_ols(datasets[0], "NegAff ~ STRESS")])
