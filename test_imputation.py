"""
test_imputation.py

Missingness injection, missing-data summaries, chained imputation and
pooled analyses of the completed datasets.

Run: python -m pytest test_imputation.py -v
"""

import os

import numpy as np
import pandas as pd
import pytest

from bootstrap_and_impute.diary_data import load_daily_diary
from bootstrap_and_impute.imputation import (
    TRACE_COLUMNS,
    impute_chained,
    plot_imputed_vs_observed,
    plot_trace,
    pool_mixed,
    pool_ols,
)
from bootstrap_and_impute.missingness import (
    inject_missing,
    missing_patterns,
    missing_summary,
    plot_missingness,
)

IMP_COLUMNS = ["STRESS", "PosAff", "NegAff", "Age", "Female", "Day"]


@pytest.fixture(scope="module")
def diary():
    return load_daily_diary(n_people=30, n_days=5, seed=21, natural_missing=0.0)


@pytest.fixture(scope="module")
def incomplete(diary):
    return inject_missing(diary, ["STRESS", "NegAff"], 0.2, mechanism="MAR", driver="Age", seed=4)


@pytest.fixture(scope="module")
def imputed(incomplete):
    return impute_chained(incomplete, m=3, n_iter=2, columns=IMP_COLUMNS, seed=7)


# ============================================================================
# Missingness
# ============================================================================


class TestInjectMissing:

    def test_mcar_exact_count(self, diary):
        out = inject_missing(diary, ["STRESS", "NegAff"], 0.25, seed=1)
        assert out["STRESS"].isna().sum() == round(0.25 * len(diary))
        assert out["NegAff"].isna().sum() == round(0.25 * len(diary))
        assert not diary["STRESS"].isna().any()

    def test_only_observed_cells_are_counted(self):
        df = pd.DataFrame({"x": [np.nan, np.nan, 1.0, 2.0, 3.0, 4.0]})
        out = inject_missing(df, ["x"], 0.5, seed=0)
        assert out["x"].isna().sum() == 4

    def test_mar_targets_high_driver_rows(self):
        rng = np.random.default_rng(0)
        df = pd.DataFrame({"driver": rng.normal(size=3000), "y": rng.normal(size=3000)})
        out = inject_missing(df, ["y"], 0.3, mechanism="MAR", driver="driver", seed=2)
        missing = out["y"].isna()
        assert df.loc[missing, "driver"].mean() > df.loc[~missing, "driver"].mean()
        assert not out["driver"].isna().any()

    def test_zero_prop_is_a_copy(self, diary):
        out = inject_missing(diary, ["STRESS"], 0.0, seed=1)
        pd.testing.assert_frame_equal(out, diary)
        assert out is not diary

    @pytest.mark.parametrize("kwargs", [
        {"prop": 1.0},
        {"prop": -0.1},
        {"prop": 0.2, "mechanism": "MNAR"},
        {"prop": 0.2, "mechanism": "MAR"},
        {"prop": 0.2, "mechanism": "MAR", "driver": "NegAff"},
        {"prop": 0.2, "mechanism": "MAR", "driver": "Unknown"},
    ])
    def test_invalid_arguments(self, diary, kwargs):
        with pytest.raises(ValueError):
            inject_missing(diary, ["STRESS", "NegAff"], **kwargs)

    def test_unknown_column(self, diary):
        with pytest.raises(ValueError, match="Missing expected columns"):
            inject_missing(diary, ["Sleep"], 0.1)


class TestMissingSummaries:

    def _frame(self):
        return pd.DataFrame({
            "a": [1.0, np.nan, 3.0, np.nan],
            "b": [1.0, 2.0, np.nan, np.nan],
            "c": [1.0, 2.0, 3.0, 4.0],
        })

    def test_summary_sorted_by_missing(self):
        summary = missing_summary(self._frame())
        assert list(summary["variable"]) == ["a", "b", "c"]
        assert list(summary["n_missing"]) == [2, 2, 0]
        assert list(summary["pct_missing"]) == [50.0, 50.0, 0.0]

    def test_patterns(self):
        patterns = missing_patterns(self._frame())
        assert patterns["count"].sum() == 4
        assert len(patterns) == 4
        complete = patterns[patterns["n_missing"] == 0]
        assert complete[["a", "b", "c"]].iloc[0].tolist() == [1, 1, 1]
        assert patterns["n_missing"].max() == 2

    def test_patterns_most_frequent_first(self, incomplete):
        patterns = missing_patterns(incomplete, ["STRESS", "NegAff", "Age"])
        assert patterns["count"].is_monotonic_decreasing
        assert patterns["count"].sum() == len(incomplete)

    def test_plot(self, incomplete, tmp_path):
        path = plot_missingness(incomplete, str(tmp_path / "miss.png"), ["STRESS", "NegAff", "Age"])
        assert os.path.exists(path)


# ============================================================================
# Chained imputation
# ============================================================================


class TestImputeChained:

    def test_completed_datasets(self, imputed, incomplete):
        assert imputed.m == 3
        assert imputed.imputed == ["STRESS", "NegAff"]
        for i in range(1, imputed.m + 1):
            completed = imputed.complete(i)
            assert not completed[IMP_COLUMNS].isna().any().any()
            assert len(completed) == len(incomplete)

    def test_observed_values_unchanged(self, imputed, incomplete):
        observed = incomplete["NegAff"].notna().to_numpy()
        for completed in imputed.datasets:
            np.testing.assert_allclose(
                completed["NegAff"].to_numpy()[observed], incomplete["NegAff"].to_numpy()[observed]
            )
            assert completed["UserID"].tolist() == incomplete["UserID"].tolist()

    def test_pmm_draws_observed_values(self, imputed, incomplete):
        donors = set(incomplete["NegAff"].dropna().round(6))
        mask = incomplete["NegAff"].isna().to_numpy()
        values = imputed.complete(1)["NegAff"].to_numpy()[mask]
        assert set(np.round(values, 6)) <= donors

    def test_integer_columns_keep_dtype(self, imputed, incomplete):
        assert imputed.complete(2)["Day"].dtype == incomplete["Day"].dtype

    def test_trace(self, imputed):
        assert list(imputed.trace.columns) == TRACE_COLUMNS
        assert len(imputed.trace) == 3 * 2 * 2
        assert sorted(imputed.trace["iteration"].unique()) == [1, 2]

    def test_complete_and_long(self, imputed, incomplete):
        assert imputed.complete(0)["STRESS"].isna().sum() == incomplete["STRESS"].isna().sum()
        with pytest.raises(ValueError):
            imputed.complete(4)
        long = imputed.long()
        assert len(long) == 4 * len(incomplete)
        assert list(long.columns[:2]) == [".imp", ".id"]
        assert sorted(long[".imp"].unique()) == [0, 1, 2, 3]
        assert len(imputed.long(include_original=False)) == 3 * len(incomplete)

    def test_n_imputed(self, imputed, incomplete):
        assert imputed.n_imputed == {
            "STRESS": int(incomplete["STRESS"].isna().sum()),
            "NegAff": int(incomplete["NegAff"].isna().sum()),
        }

    def test_plots(self, imputed, tmp_path):
        assert os.path.exists(plot_trace(imputed, str(tmp_path / "trace.png")))
        assert os.path.exists(plot_imputed_vs_observed(imputed, str(tmp_path / "dens.png")))

    def test_global_random_state_restored(self, incomplete):
        np.random.seed(123)
        expected = np.random.random(3)
        np.random.seed(123)
        impute_chained(incomplete, m=2, n_iter=1, columns=IMP_COLUMNS, seed=5)
        np.testing.assert_array_equal(np.random.random(3), expected)

    def test_nothing_to_impute(self, diary, caplog):
        result = impute_chained(diary, m=2, n_iter=1, columns=IMP_COLUMNS, seed=1)
        assert result.imputed == []
        assert result.m == 2
        pd.testing.assert_frame_equal(result.complete(1), diary.reset_index(drop=True))
        assert "No missing values" in caplog.text
        with pytest.raises(ValueError):
            plot_trace(result, "unused.png")

    @pytest.mark.parametrize("kwargs", [
        {"m": 0},
        {"n_iter": 0},
        {"columns": ["NegAff"]},
        {"columns": ["NegAff", "Missing"]},
    ])
    def test_invalid_arguments(self, incomplete, kwargs):
        with pytest.raises(ValueError):
            impute_chained(incomplete, **kwargs)

    def test_all_missing_column(self):
        df = pd.DataFrame({"a": [1.0, 2.0, 3.0, 4.0], "b": [np.nan] * 4})
        with pytest.raises(ValueError, match="no observed values"):
            impute_chained(df, m=1, n_iter=1, id_col=None)

    def test_row_missing_everything(self):
        df = pd.DataFrame({"a": [1.0, np.nan, 3.0, 4.0], "b": [2.0, np.nan, 1.0, 5.0]})
        with pytest.raises(ValueError, match="missing every"):
            impute_chained(df, m=1, n_iter=1, id_col=None)


class TestPooledAnalyses:

    def test_pool_ols(self, imputed):
        pooled = pool_ols(imputed, "NegAff ~ STRESS + Age")
        assert list(pooled["term"]) == ["Intercept", "STRESS", "Age"]
        assert (pooled["m"] == 3).all()
        assert ((pooled["fmi"] >= 0) & (pooled["fmi"] <= 1)).all()

    def test_pool_mixed(self, imputed):
        pooled = pool_mixed(imputed, "NegAff ~ STRESS", "UserID")
        assert list(pooled["term"]) == ["Intercept", "STRESS"]
        assert (pooled["lower"] < pooled["upper"]).all()
