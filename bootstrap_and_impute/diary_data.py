"""
diary_data.py

Daily-diary sample data used throughout the lecture.
Builds the bundled person-day table, validates user-supplied tables,
and derives per-person averages and within/between components.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

ID_COL = "UserID"
DAILY_COLS = ["STRESS", "PosAff", "NegAff", "SOLs", "WASONs"]
PERSON_COLS = ["Age", "Female", "BornAUS", "SES"]
REQUIRED_COLS = [ID_COL, "Day"] + PERSON_COLS + DAILY_COLS

STUDY_START = "2017-02-27"


# ============================================================================
# Loading
# ============================================================================


def validate_columns(df: pd.DataFrame, required: Iterable[str]) -> None:
    """
    Check that every required column is present.

    Raises:
        ValueError: listing the missing columns
    """
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Missing expected columns: {missing}")


def _simulate_daily_diary(n_people: int, n_days: int, seed: int, natural_missing: float) -> pd.DataFrame:
    rng = np.random.default_rng(seed)

    ids = np.arange(1, n_people + 1)
    age = rng.integers(18, 26, size=n_people)
    female = rng.binomial(1, 0.6, size=n_people)
    born_aus = rng.binomial(1, 0.7, size=n_people)
    ses = np.clip(np.round(rng.normal(6, 2, size=n_people)), 1, 10)

    # person-level random effects
    stress_level = rng.normal(0.0, 0.4, size=n_people)
    na_intercept = rng.normal(0.0, 0.25, size=n_people)
    pa_intercept = rng.normal(0.0, 0.5, size=n_people)

    n = n_people * n_days
    person = np.repeat(np.arange(n_people), n_days)
    day = np.tile(np.arange(n_days), n_people)

    stress = np.clip(np.round(rng.gamma(2.0, 1.2, size=n) * np.exp(stress_level[person])), 0, 10)
    log_na = 0.1 + 0.09 * stress + na_intercept[person] + rng.normal(0.0, 0.2, size=n)
    neg_aff = np.clip(np.round(np.exp(log_na), 2), 1, 5)
    pos_aff = np.clip(np.round(3.2 - 0.07 * stress + pa_intercept[person] + rng.normal(0.0, 0.5, size=n), 2), 1, 5)
    sols = np.round(np.exp(rng.normal(2.6 + 0.05 * stress, 0.6)), 0)
    wasons = rng.poisson(np.exp(-0.4 + 0.05 * stress)).astype(float)

    df = pd.DataFrame({
        ID_COL: ids[person],
        "SurveyDay": pd.Timestamp(STUDY_START) + pd.to_timedelta(day, unit="D"),
        "Day": day,
        "Age": age[person].astype(float),
        "Female": female[person],
        "BornAUS": born_aus[person],
        "SES": ses[person],
        "STRESS": stress,
        "PosAff": pos_aff,
        "NegAff": neg_aff,
        "SOLs": sols,
        "WASONs": wasons,
    })

    if natural_missing > 0:
        for col in DAILY_COLS:
            mask = rng.random(n) < natural_missing
            df.loc[mask, col] = np.nan

    return df


def load_daily_diary(
    path: Optional[str] = None,
    n_people: int = 60,
    n_days: int = 10,
    seed: int = 12345,
    natural_missing: float = 0.02,
) -> pd.DataFrame:
    """
    Load the daily-diary table.

    Without a path, the bundled sample is generated deterministically from
    ``seed``: one row per person-day with right-skewed STRESS, NegAff and
    SOLs and a small share of naturally missing daily values.

    Args:
        path: Optional CSV or Parquet file with the same columns
        n_people: Number of participants in the bundled sample
        n_days: Number of survey days per participant
        seed: Seed for the bundled sample
        natural_missing: Share of daily values left missing in the bundled sample

    Returns:
        DataFrame sorted by (UserID, Day)
    """
    if path is None:
        if n_people < 2 or n_days < 1:
            raise ValueError(f"Need at least 2 people and 1 day, got n_people={n_people}, n_days={n_days}")
        df = _simulate_daily_diary(n_people, n_days, seed, natural_missing)
        logger.info(f"Generated bundled diary sample: {len(df)} rows, {n_people} people")
        return df

    suffix = Path(path).suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path)
    elif suffix in (".parquet", ".pq"):
        df = pd.read_parquet(path)
    else:
        raise ValueError(f"Unsupported dataset format: {path} (expected .csv or .parquet)")

    validate_columns(df, REQUIRED_COLS)
    if "SurveyDay" in df.columns:
        df["SurveyDay"] = pd.to_datetime(df["SurveyDay"], errors="coerce")
    logger.info(f"Read {len(df)} rows from {path}")
    return df.sort_values([ID_COL, "Day"]).reset_index(drop=True)


# ============================================================================
# Derived tables
# ============================================================================


def person_means(
    df: pd.DataFrame,
    columns: Sequence[str],
    id_col: str = ID_COL,
    covariates: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Average each daily column within person.

    Missing daily values are ignored. ``n_days`` holds the number of rows
    per person; time-invariant ``covariates`` are carried from the first row.
    """
    columns = list(columns)
    validate_columns(df, [id_col] + columns + list(covariates or []))

    grouped = df.groupby(id_col, sort=True)
    out = grouped[columns].mean()
    out["n_days"] = grouped.size()
    if covariates:
        out = out.join(grouped[list(covariates)].first())
    return out.reset_index()


def within_between(df: pd.DataFrame, columns: Sequence[str], id_col: str = ID_COL) -> pd.DataFrame:
    """Add <col>_B (person mean) and <col>_W (deviation from it) for each column."""
    validate_columns(df, [id_col] + list(columns))
    out = df.copy()
    for col in columns:
        between = out.groupby(id_col)[col].transform("mean")
        out[f"{col}_B"] = between
        out[f"{col}_W"] = out[col] - between
    return out


def first_day(df: pd.DataFrame, id_col: str = ID_COL, day_col: str = "Day") -> pd.DataFrame:
    """Keep each person's earliest survey day."""
    validate_columns(df, [id_col, day_col])
    idx = df.groupby(id_col)[day_col].idxmin()
    return df.loc[idx].reset_index(drop=True)
