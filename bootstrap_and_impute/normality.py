"""Normality checks for skewed diary measures and model residuals.

Produces a histogram and a Q-Q plot against the normal, and reports
skewness, excess kurtosis and the Shapiro-Wilk test.
"""
from __future__ import annotations

import os
from typing import Dict, Optional

import matplotlib.pyplot as plt
import numpy as np
from scipy import stats


def normality_report(values, name: str = "x", alpha: float = 0.05) -> Dict:
    """Summarize how far a sample departs from normality.

    Parameters
    ----------
    values : array-like
        Sample values. Missing values are dropped.
    name : str
        Label stored in the report.
    alpha : float
        Significance level for the Shapiro-Wilk decision.

    Returns
    -------
    dict
        n, mean, sd, skewness, excess kurtosis, Shapiro-Wilk W and p.
    """
    x = np.asarray(values, dtype=float)
    x = x[~np.isnan(x)]
    if len(x) < 3:
        raise ValueError(f"Need at least 3 non-missing values for normality checks, got {len(x)}")

    # Shapiro-Wilk p-values are unreliable past 5000 points
    sw_sample = x if len(x) <= 5000 else np.random.default_rng(0).choice(x, 5000, replace=False)
    w, p = stats.shapiro(sw_sample)

    return {
        "name": name,
        "n": int(len(x)),
        "mean": float(np.mean(x)),
        "sd": float(np.std(x, ddof=1)),
        "skewness": float(stats.skew(x)),
        "excess_kurtosis": float(stats.kurtosis(x)),
        "shapiro_W": float(w),
        "shapiro_p": float(p),
        "reject_normality": bool(p < alpha),
    }


def plot_distribution(values, output_path: str, title: Optional[str] = None) -> str:
    """Save a histogram and normal Q-Q plot side by side."""
    x = np.asarray(values, dtype=float)
    x = x[~np.isnan(x)]

    fig, axes = plt.subplots(1, 2, figsize=(10, 4))
    axes[0].hist(x, bins=30, color="C0", alpha=0.8)
    axes[0].set_title("Histogram")

    stats.probplot(x, dist="norm", plot=axes[1])
    axes[1].set_title("Q-Q plot vs Normal")

    if title:
        fig.suptitle(title)
    plt.tight_layout()
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    plt.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path


def residual_diagnostics(result, output_dir: str, name: str = "model") -> Dict:
    """Normality report and figure for a fitted statsmodels result's residuals."""
    resid = np.asarray(result.resid, dtype=float)
    report = normality_report(resid, name=f"{name} residuals")
    png_path = os.path.join(output_dir, f"{name}_residuals.png")
    report["figure"] = plot_distribution(resid, png_path, title=f"Residuals: {name}")
    return report
