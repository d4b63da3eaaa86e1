"""Model fitting helpers for the lecture fragments.

Key functions:
- fit_ols(df, formula)
- fit_mixed(df, formula, group, re_formula=None, reml=True)
- coef_table(result, level=0.95)

The statistic classes below are plain picklable callables so they can be
shipped to bootstrap worker processes.
"""
from __future__ import annotations

import re
import warnings
from typing import List, Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.regression.mixed_linear_model import MixedLMResults
from statsmodels.tools.sm_exceptions import ConvergenceWarning

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def formula_columns(df: pd.DataFrame, *formulas: Optional[str]) -> List[str]:
    """Columns of ``df`` referenced by the given formulas, in column order."""
    names = set()
    for formula in formulas:
        if formula:
            names.update(_IDENT.findall(formula))
    return [c for c in df.columns if c in names]


def model_frame(
    df: pd.DataFrame,
    formula: str,
    group: Optional[str] = None,
    re_formula: Optional[str] = None,
) -> pd.DataFrame:
    cols = formula_columns(df, formula, re_formula)
    if group is not None and group not in cols:
        cols.append(group)
    if not cols:
        raise ValueError(f"Formula references no columns of the data: {formula}")
    frame = df.dropna(subset=cols).reset_index(drop=True)
    if frame.empty:
        raise ValueError(f"No complete rows left for formula: {formula}")
    return frame


def fit_ols(df: pd.DataFrame, formula: str):
    """Ordinary least squares on complete rows."""
    frame = model_frame(df, formula)
    return smf.ols(formula, data=frame).fit()


def fit_mixed(
    df: pd.DataFrame,
    formula: str,
    group: str,
    re_formula: Optional[str] = None,
    reml: bool = True,
):
    """Linear mixed model with random effects by ``group`` on complete rows."""
    frame = model_frame(df, formula, group=group, re_formula=re_formula)
    model = smf.mixedlm(formula, data=frame, groups=frame[group], re_formula=re_formula)
    return model.fit(reml=reml)


def is_mixed(result) -> bool:
    # fit() hands back a results wrapper around MixedLMResults
    return isinstance(getattr(result, "_results", result), MixedLMResults)


def fixed_effects(result) -> pd.Series:
    if is_mixed(result):
        return result.fe_params
    return result.params


def coef_table(result, level: float = 0.95) -> pd.DataFrame:
    """Estimate, standard error, Wald CI and p-value per (fixed-effect) term."""
    params = fixed_effects(result)
    terms = list(params.index)
    ci = result.conf_int(alpha=1 - level)
    if is_mixed(result):
        bse = result.bse_fe
    else:
        bse = result.bse
    table = pd.DataFrame({
        "term": terms,
        "estimate": params.values,
        "std_error": np.asarray(bse.loc[terms], dtype=float),
        "lower": np.asarray(ci.loc[terms].iloc[:, 0], dtype=float),
        "upper": np.asarray(ci.loc[terms].iloc[:, 1], dtype=float),
        "p_value": np.asarray(result.pvalues.loc[terms], dtype=float),
    })
    return table


# ============================================================================
# Bootstrap statistics
# ============================================================================


class ColumnStatistic:
    """Mean, median or sd of one column."""

    _FUNCS = {
        "mean": np.nanmean,
        "median": np.nanmedian,
        "sd": lambda x: np.nanstd(x, ddof=1),
    }

    def __init__(self, column: str, func: str = "mean"):
        if func not in self._FUNCS:
            raise ValueError(f"Unknown statistic {func!r}; expected one of {sorted(self._FUNCS)}")
        self.column = column
        self.func = func

    def __call__(self, df: pd.DataFrame) -> pd.Series:
        value = self._FUNCS[self.func](df[self.column].to_numpy(dtype=float))
        return pd.Series({f"{self.func}({self.column})": float(value)})


class OLSCoefficients:
    """OLS coefficients for a fixed formula."""

    def __init__(self, formula: str):
        self.formula = formula

    def __call__(self, df: pd.DataFrame) -> pd.Series:
        return fit_ols(df, self.formula).params


class MixedCoefficients:
    """Fixed-effect estimates of a linear mixed model."""

    def __init__(self, formula: str, group: str, re_formula: Optional[str] = None, reml: bool = True):
        self.formula = formula
        self.group = group
        self.re_formula = re_formula
        self.reml = reml

    def __call__(self, df: pd.DataFrame) -> pd.Series:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            result = fit_mixed(df, self.formula, self.group, re_formula=self.re_formula, reml=self.reml)
        return result.fe_params
