"""
tables.py

Format result tables for slides: rounding, p-values, CI labels and
Markdown pipe tables.
"""

from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd


def format_p(value: Optional[Any], digits: int = 3) -> str:
    if value is None:
        return "N/A"
    try:
        p = float(value)
    except (TypeError, ValueError):
        return "N/A"
    if np.isnan(p):
        return "N/A"
    threshold = 10 ** -digits
    if p < threshold:
        return f"< {threshold:.{digits}f}"
    return f"{p:.{digits}f}"


def ci_label(lower: Any, upper: Any, digits: int = 2) -> str:
    try:
        return f"[{float(lower):.{digits}f}, {float(upper):.{digits}f}]"
    except (TypeError, ValueError):
        return "N/A"


def round_frame(df: pd.DataFrame, digits: int = 2) -> pd.DataFrame:
    """Round float columns; p-value columns are formatted instead."""
    out = df.copy()
    for col in out.columns:
        if col in ("p_value", "p"):
            out[col] = [format_p(v) for v in out[col]]
        elif pd.api.types.is_float_dtype(out[col]):
            out[col] = out[col].round(digits)
    return out


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if np.isnan(value):
            return "NA"
        return f"{value:g}"
    return str(value).replace("|", "\\|")


def to_pipe_table(df: pd.DataFrame, columns: Optional[Sequence[str]] = None, digits: int = 2) -> str:
    """Render a DataFrame as a Markdown pipe table."""
    if columns is not None:
        df = df[list(columns)]
    df = round_frame(df, digits)
    header = [str(c) for c in df.columns]
    lines = [
        "| " + " | ".join(header) + " |",
        "|" + "|".join("---" for _ in header) + "|",
    ]
    for row in df.itertuples(index=False):
        lines.append("| " + " | ".join(_cell(v) for v in row) + " |")
    return "\n".join(lines)


def with_ci_column(df: pd.DataFrame, digits: int = 2, level: Optional[float] = None) -> pd.DataFrame:
    """Collapse lower/upper columns into a single CI label column."""
    name = f"{int(round(level * 100))}% CI" if level is not None else "CI"
    out = df.drop(columns=["lower", "upper"]).copy()
    out[name] = [ci_label(lo, hi, digits) for lo, hi in zip(df["lower"], df["upper"])]
    return out
