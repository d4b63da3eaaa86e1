"""Multiple imputation by chained equations.

Key functions:
- impute_chained(df, m=5, n_iter=10, ...) -> ImputationResult
- plot_trace(result, output_path)
- plot_imputed_vs_observed(result, output_path)
- pool_ols(result, formula), pool_mixed(result, formula, group)

Notes:
- Each of the m completed datasets comes from its own chain of statsmodels
  MICEData cycles, imputing with predictive mean matching
- Identifier and non-numeric columns are carried through untouched
- The trace records mean and sd of the imputed cells after every cycle
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pandas.api.types import is_integer_dtype, is_numeric_dtype
from statsmodels.imputation.mice import MICEData

from .models import fit_mixed, fit_ols
from .pooling import pool_fits

logger = logging.getLogger(__name__)

TRACE_COLUMNS = ["imputation", "iteration", "variable", "mean", "sd"]


@dataclass
class ImputationResult:
    original: pd.DataFrame
    datasets: List[pd.DataFrame]
    columns: List[str]
    imputed: List[str]
    n_iter: int
    trace: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=TRACE_COLUMNS))

    @property
    def m(self) -> int:
        return len(self.datasets)

    @property
    def n_imputed(self) -> Dict[str, int]:
        return {c: int(self.original[c].isna().sum()) for c in self.imputed}

    def complete(self, i: int) -> pd.DataFrame:
        """The i-th completed dataset (1-based); 0 gives the incomplete original."""
        if i == 0:
            return self.original.copy()
        if not 1 <= i <= self.m:
            raise ValueError(f"Imputation index must be in 0..{self.m}, got {i}")
        return self.datasets[i - 1].copy()

    def long(self, include_original: bool = True) -> pd.DataFrame:
        """All datasets stacked with .imp (0 = original) and .id columns."""
        frames = []
        start = 0 if include_original else 1
        for i in range(start, self.m + 1):
            frame = self.complete(i).reset_index(drop=True)
            frame.insert(0, ".id", np.arange(len(frame)))
            frame.insert(0, ".imp", i)
            frames.append(frame)
        return pd.concat(frames, ignore_index=True)


def _imputation_columns(df: pd.DataFrame, columns: Optional[Sequence[str]], id_col: Optional[str]) -> List[str]:
    if columns is None:
        return [c for c in df.columns if c != id_col and is_numeric_dtype(df[c]) and df[c].dtype != bool]
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"Missing expected columns: {missing}")
    non_numeric = [c for c in columns if not is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"Chained imputation needs numeric columns, got: {non_numeric}")
    return list(columns)


def impute_chained(
    df: pd.DataFrame,
    m: int = 5,
    n_iter: int = 10,
    columns: Optional[Sequence[str]] = None,
    id_col: Optional[str] = "UserID",
    seed: Optional[int] = None,
    k_pmm: int = 20,
) -> ImputationResult:
    """Generate ``m`` completed datasets by chained equations.

    Parameters
    ----------
    df : DataFrame
        Incomplete data.
    m : int
        Number of imputations.
    n_iter : int
        Chained-equation cycles per imputation.
    columns : sequence of str or None
        Columns used in the imputation models; defaults to every numeric
        column except ``id_col``.
    seed : int or None
        Seed for the chains. MICEData draws from numpy's global generator,
        which is reseeded per chain and restored afterwards.
    k_pmm : int
        Donor pool size for predictive mean matching.
    """
    if m < 1:
        raise ValueError(f"m must be a positive integer, got {m}")
    if n_iter < 1:
        raise ValueError(f"n_iter must be a positive integer, got {n_iter}")

    cols = _imputation_columns(df, columns, id_col)
    if len(cols) < 2:
        raise ValueError(f"Chained imputation needs at least 2 columns, got {cols}")

    original = df.reset_index(drop=True)
    work = original[cols].astype(float)
    work.columns = pd.Index([str(c) for c in cols], dtype=object)

    targets = [c for c in work.columns if work[c].isna().any()]
    if not targets:
        logger.warning("No missing values in the imputation columns; returning copies of the data")
        return ImputationResult(
            original=original, datasets=[original.copy() for _ in range(m)],
            columns=list(work.columns), imputed=[], n_iter=n_iter,
        )

    all_missing = [c for c in targets if work[c].isna().all()]
    if all_missing:
        raise ValueError(f"Cannot impute columns with no observed values: {all_missing}")
    if work.isna().all(axis=1).any():
        raise ValueError("Some rows are missing every imputation column; drop them before imputing")

    miss_idx = {c: np.flatnonzero(work[c].isna().to_numpy()) for c in targets}
    rng = np.random.default_rng(seed)
    datasets: List[pd.DataFrame] = []
    trace_rows = []

    global_state = np.random.get_state()
    try:
        for i in range(1, m + 1):
            np.random.seed(int(rng.integers(0, 2 ** 31 - 1)))
            chain = MICEData(work, k_pmm=k_pmm)
            for it in range(1, n_iter + 1):
                chain.update_all(1)
                for col in targets:
                    vals = chain.data[col].to_numpy()[miss_idx[col]]
                    trace_rows.append({
                        "imputation": i,
                        "iteration": it,
                        "variable": col,
                        "mean": float(np.mean(vals)),
                        "sd": float(np.std(vals, ddof=1)) if len(vals) > 1 else 0.0,
                    })

            completed = original.copy()
            for col, name in zip(cols, work.columns):
                values = chain.data[name].to_numpy()
                if is_integer_dtype(original[col]):
                    values = np.round(values).astype(original[col].dtype)
                completed[col] = values
            datasets.append(completed)
            logger.info(f"Imputation {i}/{m} finished after {n_iter} cycles")
    finally:
        np.random.set_state(global_state)

    return ImputationResult(
        original=original, datasets=datasets, columns=list(work.columns),
        imputed=targets, n_iter=n_iter, trace=pd.DataFrame(trace_rows, columns=TRACE_COLUMNS),
    )


# ============================================================================
# Plots
# ============================================================================


def plot_trace(result: ImputationResult, output_path: str) -> str:
    """Mean and sd of imputed values per cycle, one line per chain."""
    variables = result.imputed
    if not variables:
        raise ValueError("Nothing was imputed; no convergence trace to plot")

    fig, axes = plt.subplots(len(variables), 2, figsize=(10, 2.6 * len(variables)), squeeze=False)
    for row, var in enumerate(variables):
        sub = result.trace[result.trace["variable"] == var]
        for imp, chain in sub.groupby("imputation"):
            axes[row, 0].plot(chain["iteration"], chain["mean"], lw=1.2, label=f"imp {imp}")
            axes[row, 1].plot(chain["iteration"], chain["sd"], lw=1.2)
        axes[row, 0].set_ylabel(var, fontsize=9)
        axes[row, 0].set_title(f"mean {var}", fontsize=9)
        axes[row, 1].set_title(f"sd {var}", fontsize=9)
    axes[-1, 0].set_xlabel("Iteration", fontsize=9)
    axes[-1, 1].set_xlabel("Iteration", fontsize=9)
    axes[0, 0].legend(fontsize=7)

    plt.tight_layout()
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path


def plot_imputed_vs_observed(result: ImputationResult, output_path: str) -> str:
    """Density histograms of observed against imputed values per variable."""
    variables = result.imputed
    if not variables:
        raise ValueError("Nothing was imputed; no imputed values to plot")

    fig, axes = plt.subplots(1, len(variables), figsize=(4 * len(variables), 3.5), squeeze=False)
    for j, var in enumerate(variables):
        mask = result.original[var].isna().to_numpy()
        observed = result.original[var].dropna().to_numpy(dtype=float)
        imputed = np.concatenate([d[var].to_numpy(dtype=float)[mask] for d in result.datasets])
        ax = axes[0, j]
        ax.hist(observed, bins=25, density=True, alpha=0.5, color="steelblue", label="observed")
        ax.hist(imputed, bins=25, density=True, alpha=0.5, color="tomato", label="imputed")
        ax.set_title(var, fontsize=10)
    axes[0, 0].legend(fontsize=8)

    plt.tight_layout()
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path


# ============================================================================
# Analysis and pooling
# ============================================================================


def fit_each(result: ImputationResult, fit_fn: Callable[[pd.DataFrame], object]) -> List:
    """Apply the same analysis to every completed dataset."""
    return [fit_fn(d) for d in result.datasets]


def pool_ols(result: ImputationResult, formula: str, level: float = 0.95) -> pd.DataFrame:
    fits = fit_each(result, lambda d: fit_ols(d, formula))
    return pool_fits(fits, level=level)


def pool_mixed(
    result: ImputationResult,
    formula: str,
    group: str,
    re_formula: Optional[str] = None,
    level: float = 0.95,
) -> pd.DataFrame:
    fits = fit_each(result, lambda d: fit_mixed(d, formula, group, re_formula=re_formula))
    return pool_fits(fits, level=level)
