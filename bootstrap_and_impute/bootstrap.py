"""Bootstrap resampling and confidence intervals.

Resamples rows (or whole persons), refits the statistic on each resample and
reports percentile, basic, normal and BCa intervals. Mixed models can also be
bootstrapped parametrically by simulating from the fitted model.

Resample indices are drawn in the parent process, so a given seed gives the
same replicates whatever the number of workers.
"""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats
from tqdm import tqdm

from .models import MixedCoefficients, fit_mixed, model_frame

logger = logging.getLogger(__name__)

CI_METHODS = ("perc", "basic", "norm", "bca")


@dataclass
class BootstrapResult:
    t0: np.ndarray
    replicates: np.ndarray  # (B, k)
    names: List[str]
    kind: str = "nonparametric"
    seed: Optional[int] = None
    cluster: Optional[str] = None
    data: Optional[pd.DataFrame] = field(default=None, repr=False)
    statistic: Optional[Callable] = field(default=None, repr=False)

    @property
    def B(self) -> int:
        return int(self.replicates.shape[0])

    def std_error(self) -> np.ndarray:
        return np.nanstd(self.replicates, axis=0, ddof=1)

    def bias(self) -> np.ndarray:
        return np.nanmean(self.replicates, axis=0) - self.t0

    def summary(self) -> pd.DataFrame:
        return pd.DataFrame({
            "term": self.names,
            "original": self.t0,
            "bias": self.bias(),
            "std_error": self.std_error(),
        })


def _as_vector(value: Any) -> Tuple[np.ndarray, List[str]]:
    if isinstance(value, pd.Series):
        return value.to_numpy(dtype=float), [str(i) for i in value.index]
    arr = np.atleast_1d(np.asarray(value, dtype=float)).ravel()
    return arr, [f"t{i + 1}" for i in range(len(arr))]


# ============================================================================
# Worker pool
# ============================================================================


@contextmanager
def worker_pool(workers: int) -> Iterator[Optional[Pool]]:
    """Yield a process pool that can be shared by several bootstrap calls.

    Yields None for a single worker so callers evaluate in-process.
    """
    if workers is None or workers <= 1:
        yield None
        return
    logger.info(f"Starting bootstrap worker pool with {workers} workers")
    with Pool(workers) as pool:
        yield pool


def _chunks(n: int, size: int) -> List[Tuple[int, int]]:
    return [(start, min(start + size, n)) for start in range(0, n, size)]


def _run_tasks(func: Callable, tasks: Sequence[Tuple], total: int, pool: Optional[Pool], progress: bool, desc: str) -> List[np.ndarray]:
    out: List[np.ndarray] = []
    with tqdm(total=total, desc=desc, disable=not progress) as bar:
        results = pool.imap(func, tasks) if pool is not None else map(func, tasks)
        for chunk in results:
            out.extend(chunk)
            bar.update(len(chunk))
    return out


# ============================================================================
# Nonparametric bootstrap
# ============================================================================


def _cluster_rows(data: pd.DataFrame, cluster: str) -> Tuple[np.ndarray, List[np.ndarray]]:
    codes, uniques = pd.factorize(data[cluster], sort=True)
    rows = [np.flatnonzero(codes == j) for j in range(len(uniques))]
    return uniques, rows


def resample(data: pd.DataFrame, draw: np.ndarray, cluster: Optional[str] = None, cluster_rows: Optional[List[np.ndarray]] = None) -> pd.DataFrame:
    """Materialize one resample.

    With ``cluster`` set, ``draw`` indexes clusters; each drawn copy gets a
    fresh label so repeated persons count as distinct clusters.
    """
    if cluster is None:
        return data.iloc[draw].reset_index(drop=True)
    if cluster_rows is None:
        _, cluster_rows = _cluster_rows(data, cluster)
    pieces = [cluster_rows[c] for c in draw]
    idx = np.concatenate(pieces)
    sample = data.iloc[idx].reset_index(drop=True)
    sample[cluster] = np.repeat(np.arange(len(draw)), [len(p) for p in pieces])
    return sample


def _evaluate_draws(task: Tuple) -> List[np.ndarray]:
    data, statistic, cluster, draws = task
    cluster_rows = _cluster_rows(data, cluster)[1] if cluster is not None else None
    return [_as_vector(statistic(resample(data, d, cluster, cluster_rows)))[0] for d in draws]


def bootstrap(
    data: pd.DataFrame,
    statistic: Callable[[pd.DataFrame], Any],
    B: int = 1000,
    seed: Optional[int] = None,
    cluster: Optional[str] = None,
    workers: int = 1,
    pool: Optional[Pool] = None,
    chunk_size: int = 25,
    progress: bool = False,
) -> BootstrapResult:
    """Resample with replacement and evaluate ``statistic`` on each resample.

    Parameters
    ----------
    data : DataFrame
        Rows to resample.
    statistic : callable
        ``statistic(df)`` returning a scalar, array or Series (Series index
        becomes the term names). Must be picklable when run in a pool.
    B : int
        Number of bootstrap replicates.
    seed : int or None
        Seed for the resample indices.
    cluster : str or None
        Column identifying persons; whole persons are resampled when set.
    workers : int
        Open a temporary pool of this size when ``pool`` is not given.
    pool : multiprocessing.Pool or None
        Existing pool to evaluate replicates in.

    Returns
    -------
    BootstrapResult
    """
    if B < 1:
        raise ValueError(f"B must be positive, got {B}")
    if len(data) == 0:
        raise ValueError("Cannot bootstrap an empty table")
    if cluster is not None and cluster not in data.columns:
        raise ValueError(f"Cluster column not found: {cluster}")

    t0, names = _as_vector(statistic(data))

    rng = np.random.default_rng(seed)
    n_units = data[cluster].nunique() if cluster is not None else len(data)
    draws = rng.integers(0, n_units, size=(B, n_units))

    tasks = [(data, statistic, cluster, draws[a:b]) for a, b in _chunks(B, chunk_size)]
    if pool is None and workers > 1:
        with worker_pool(workers) as own_pool:
            reps = _run_tasks(_evaluate_draws, tasks, B, own_pool, progress, "Bootstrap")
    else:
        reps = _run_tasks(_evaluate_draws, tasks, B, pool, progress, "Bootstrap")

    replicates = np.vstack(reps)
    if replicates.shape[1] != len(t0):
        raise ValueError(
            f"Statistic returned {replicates.shape[1]} values on a resample but {len(t0)} on the original data"
        )
    logger.info(f"Bootstrap finished: B={B}, {len(names)} terms, cluster={cluster}")
    return BootstrapResult(
        t0=t0, replicates=replicates, names=names, kind="nonparametric",
        seed=seed, cluster=cluster, data=data, statistic=statistic,
    )


# ============================================================================
# Parametric bootstrap for mixed models
# ============================================================================


def simulate_mixed(result, frame: pd.DataFrame, group: str, size: int, rng: np.random.Generator) -> np.ndarray:
    """Draw ``size`` response vectors from a fitted MixedLM.

    y* = X beta + Z b* + e*, with b* ~ N(0, cov_re) per group and
    e* ~ N(0, scale).
    """
    model = result.model
    X = np.asarray(model.exog, dtype=float)
    Z = np.asarray(model.exog_re, dtype=float)
    fixed = X @ np.asarray(result.fe_params, dtype=float)
    cov_re = np.atleast_2d(np.asarray(result.cov_re, dtype=float))
    sigma = float(np.sqrt(result.scale))

    codes, uniques = pd.factorize(frame[group])
    n, k_re = Z.shape
    sims = np.empty((size, n))
    for b in range(size):
        effects = rng.multivariate_normal(np.zeros(k_re), cov_re, size=len(uniques))
        sims[b] = fixed + np.einsum("ij,ij->i", Z, effects[codes]) + rng.normal(0.0, sigma, size=n)
    return sims


def _evaluate_responses(task: Tuple) -> List[np.ndarray]:
    frame, statistic, response, ys = task
    out = []
    for y in ys:
        sim = frame.copy()
        sim[response] = y
        out.append(_as_vector(statistic(sim))[0])
    return out


def parametric_bootstrap_mixed(
    data: pd.DataFrame,
    formula: str,
    group: str,
    B: int = 500,
    seed: Optional[int] = None,
    re_formula: Optional[str] = None,
    reml: bool = True,
    workers: int = 1,
    pool: Optional[Pool] = None,
    chunk_size: int = 25,
    progress: bool = False,
) -> BootstrapResult:
    """Simulate from the fitted mixed model, refit, and collect fixed effects."""
    if B < 1:
        raise ValueError(f"B must be positive, got {B}")
    response = formula.split("~")[0].strip()
    if response not in data.columns:
        raise ValueError(f"Response of formula must be a plain column for simulation, got {response!r}")

    frame = model_frame(data, formula, group=group, re_formula=re_formula)
    fitted = fit_mixed(frame, formula, group, re_formula=re_formula, reml=reml)
    t0, names = _as_vector(fitted.fe_params)

    rng = np.random.default_rng(seed)
    ys = simulate_mixed(fitted, frame, group, B, rng)

    statistic = MixedCoefficients(formula, group, re_formula=re_formula, reml=reml)
    tasks = [(frame, statistic, response, ys[a:b]) for a, b in _chunks(B, chunk_size)]
    if pool is None and workers > 1:
        with worker_pool(workers) as own_pool:
            reps = _run_tasks(_evaluate_responses, tasks, B, own_pool, progress, "Parametric bootstrap")
    else:
        reps = _run_tasks(_evaluate_responses, tasks, B, pool, progress, "Parametric bootstrap")

    logger.info(f"Parametric bootstrap finished: B={B}, {len(names)} fixed effects")
    return BootstrapResult(
        t0=t0, replicates=np.vstack(reps), names=names, kind="parametric",
        seed=seed, cluster=group, data=frame, statistic=statistic,
    )


# ============================================================================
# Confidence intervals
# ============================================================================


def jackknife(result: BootstrapResult) -> np.ndarray:
    """Leave-one-out estimates over rows, or over clusters for cluster bootstraps."""
    if result.data is None or result.statistic is None:
        raise ValueError("Jackknife needs the original data and statistic")
    data = result.data
    if result.cluster is None:
        leave_out = [np.array([i]) for i in range(len(data))]
    else:
        leave_out = _cluster_rows(data, result.cluster)[1]
    values = []
    for rows in leave_out:
        subset = data.drop(index=data.index[rows])
        values.append(_as_vector(result.statistic(subset))[0])
    return np.vstack(values)


def _bca_limits(result: BootstrapResult, alpha: float) -> Tuple[np.ndarray, np.ndarray]:
    if result.kind != "nonparametric":
        raise ValueError("BCa intervals are only available for nonparametric bootstraps")

    reps = result.replicates
    prop = np.mean(reps < result.t0, axis=0)
    if np.any(prop <= 0) or np.any(prop >= 1):
        raise ValueError("Degenerate bootstrap distribution: BCa bias correction is undefined")
    z0 = stats.norm.ppf(prop)

    jack = jackknife(result)
    d = jack.mean(axis=0) - jack
    num = np.sum(d ** 3, axis=0)
    den = 6.0 * np.sum(d ** 2, axis=0) ** 1.5
    accel = np.divide(num, den, out=np.zeros_like(num), where=den > 0)

    lower = np.empty(len(result.t0))
    upper = np.empty(len(result.t0))
    for j in range(len(result.t0)):
        limits = []
        for q in (alpha / 2, 1 - alpha / 2):
            z = z0[j] + stats.norm.ppf(q)
            adj = stats.norm.cdf(z0[j] + z / (1 - accel[j] * z))
            limits.append(np.nanquantile(reps[:, j], adj))
        lower[j], upper[j] = limits
    return lower, upper


def bootstrap_ci(result: BootstrapResult, level: float = 0.95, method: str = "perc") -> pd.DataFrame:
    """Confidence intervals from bootstrap replicates.

    Methods: ``perc`` (percentile), ``basic``, ``norm`` (bias-corrected
    normal) and ``bca`` (bias-corrected and accelerated).
    """
    if not 0 < level < 1:
        raise ValueError(f"level must be in (0, 1), got {level}")
    if method not in CI_METHODS:
        raise ValueError(f"Unknown CI method {method!r}; expected one of {CI_METHODS}")

    alpha = 1 - level
    reps = result.replicates
    t0 = result.t0

    if method == "perc":
        lower, upper = np.nanquantile(reps, [alpha / 2, 1 - alpha / 2], axis=0)
    elif method == "basic":
        q_lo, q_hi = np.nanquantile(reps, [alpha / 2, 1 - alpha / 2], axis=0)
        lower, upper = 2 * t0 - q_hi, 2 * t0 - q_lo
    elif method == "norm":
        z = stats.norm.ppf(1 - alpha / 2)
        centre = t0 - result.bias()
        se = result.std_error()
        lower, upper = centre - z * se, centre + z * se
    else:
        lower, upper = _bca_limits(result, alpha)

    return pd.DataFrame({
        "term": result.names,
        "estimate": t0,
        "lower": lower,
        "upper": upper,
        "method": method,
        "level": level,
    })


def compare_intervals(result: BootstrapResult, methods: Sequence[str] = ("perc", "bca"), level: float = 0.95) -> pd.DataFrame:
    return pd.concat([bootstrap_ci(result, level, m) for m in methods], ignore_index=True)


def interval_report(result: BootstrapResult, table: pd.DataFrame) -> Dict:
    return {
        "kind": result.kind,
        "B": result.B,
        "seed": result.seed,
        "cluster": result.cluster,
        "intervals": table.to_dict(orient="records"),
    }


def plot_replicates(result: BootstrapResult, intervals: pd.DataFrame, output_path: str, term: Optional[str] = None) -> str:
    """Histogram of one term's replicates with the original estimate and interval limits."""
    term = term if term is not None else result.names[0]
    if term not in result.names:
        raise ValueError(f"Unknown term {term!r}; expected one of {result.names}")
    j = result.names.index(term)

    plt.figure(figsize=(6, 4))
    plt.hist(result.replicates[:, j], bins=40, color="C0", alpha=0.7)
    plt.axvline(result.t0[j], color="black", lw=1.5, label="original estimate")
    rows = intervals[intervals["term"] == term]
    for k, (_, row) in enumerate(rows.iterrows()):
        color = f"C{k + 1}"
        plt.axvline(row["lower"], color=color, linestyle="--", lw=1.2, label=f"{row['method']} CI")
        plt.axvline(row["upper"], color=color, linestyle="--", lw=1.2)
    plt.xlabel(term)
    plt.ylabel("Bootstrap replicates")
    plt.title(f"Bootstrap distribution (B={result.B})")
    plt.legend(fontsize=8)
    plt.tight_layout()
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    plt.savefig(output_path, dpi=150)
    plt.close()
    return output_path
