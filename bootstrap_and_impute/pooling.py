"""Rubin's rules for combining estimates across multiply-imputed datasets.

For m completed datasets with estimates q_i and squared standard errors u_i:

    Q = mean(q_i)                       pooled estimate
    U = mean(u_i)                       within-imputation variance
    B = var(q_i)                        between-imputation variance
    T = U + (1 + 1/m) B                 total variance
    riv = (1 + 1/m) B / U               relative increase in variance
    lambda = (1 + 1/m) B / T            proportion of variance due to missingness
    df_old = (m - 1) / lambda^2
    df_obs = (dfcom + 1) / (dfcom + 3) * dfcom * (1 - lambda)
    df = df_old * df_obs / (df_old + df_obs)        (Barnard-Rubin)
    fmi = (riv + 2 / (df + 3)) / (riv + 1)
"""
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .models import fixed_effects, is_mixed


def _barnard_rubin_df(m: int, lam: np.ndarray, dfcom: Optional[float]) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        df_old = np.where(lam > 0, (m - 1) / lam ** 2, np.inf)
    if dfcom is None or not np.isfinite(dfcom):
        return df_old
    df_obs = (dfcom + 1) / (dfcom + 3) * dfcom * (1 - lam)
    with np.errstate(divide="ignore", invalid="ignore"):
        df = np.where(np.isinf(df_old), df_obs, df_old * df_obs / (df_old + df_obs))
    return df


def pool_estimates(
    estimates,
    variances,
    names: Optional[Sequence[str]] = None,
    dfcom: Optional[float] = None,
    level: float = 0.95,
) -> pd.DataFrame:
    """Pool per-imputation estimates and variances with Rubin's rules.

    Parameters
    ----------
    estimates, variances : array-like, shape (m, k)
        Estimates and squared standard errors from each completed dataset.
    names : sequence of str
        Term names (defaults to t1..tk).
    dfcom : float or None
        Complete-data residual degrees of freedom. None uses the classic
        large-sample df.
    level : float
        Confidence level for the pooled intervals.
    """
    q = np.asarray(estimates, dtype=float)
    u = np.asarray(variances, dtype=float)
    if q.ndim == 1:
        q = q[:, np.newaxis]
    if u.ndim == 1:
        u = u[:, np.newaxis]
    if q.shape != u.shape:
        raise ValueError(f"estimates {q.shape} and variances {u.shape} must have the same shape")
    m, k = q.shape
    if m < 2:
        raise ValueError(f"Pooling needs at least 2 imputations, got {m}")
    if not 0 < level < 1:
        raise ValueError(f"level must be in (0, 1), got {level}")
    names = list(names) if names is not None else [f"t{i + 1}" for i in range(k)]
    if len(names) != k:
        raise ValueError(f"Expected {k} names, got {len(names)}")

    qbar = q.mean(axis=0)
    ubar = u.mean(axis=0)
    b = q.var(axis=0, ddof=1)
    t = ubar + (1 + 1 / m) * b

    with np.errstate(divide="ignore", invalid="ignore"):
        riv = np.where(ubar > 0, (1 + 1 / m) * b / ubar, np.inf)
        lam = np.where(t > 0, (1 + 1 / m) * b / t, 0.0)
    df = _barnard_rubin_df(m, lam, dfcom)
    fmi = (riv + 2 / (df + 3)) / (riv + 1)

    se = np.sqrt(t)
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = qbar / se
    # infinite df falls back to the normal reference distribution
    finite_df = np.where(np.isfinite(df), df, 1.0)
    q_level = 1 - (1 - level) / 2
    p_value = np.where(np.isfinite(df), 2 * stats.t.sf(np.abs(statistic), finite_df), 2 * stats.norm.sf(np.abs(statistic)))
    crit = np.where(np.isfinite(df), stats.t.ppf(q_level, finite_df), stats.norm.ppf(q_level))

    return pd.DataFrame({
        "term": names,
        "estimate": qbar,
        "std_error": se,
        "statistic": statistic,
        "df": df,
        "p_value": p_value,
        "lower": qbar - crit * se,
        "upper": qbar + crit * se,
        "ubar": ubar,
        "b": b,
        "t": t,
        "riv": riv,
        "lambda": lam,
        "fmi": fmi,
        "m": m,
    })


def pool_fits(results: Sequence, dfcom: Optional[float] = None, level: float = 0.95) -> pd.DataFrame:
    """Pool fitted statsmodels results (OLS or MixedLM fixed effects).

    For OLS fits without an explicit ``dfcom`` the residual df of the first
    fit is used, matching the usual complete-data df.
    """
    if len(results) < 2:
        raise ValueError(f"Pooling needs at least 2 fitted models, got {len(results)}")
    params = [fixed_effects(r) for r in results]
    names = list(params[0].index)
    for p in params[1:]:
        if list(p.index) != names:
            raise ValueError("Fitted models have different terms and cannot be pooled")

    estimates = np.vstack([p.to_numpy(dtype=float) for p in params])
    if is_mixed(results[0]):
        variances = np.vstack([np.asarray(r.bse_fe.loc[names], dtype=float) ** 2 for r in results])
    else:
        variances = np.vstack([np.asarray(r.bse.loc[names], dtype=float) ** 2 for r in results])
        if dfcom is None:
            dfcom = float(results[0].df_resid)

    return pool_estimates(estimates, variances, names=names, dfcom=dfcom, level=level)
