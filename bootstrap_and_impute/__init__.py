"""Package entry for bootstrap_and_impute (lecture helpers).

Keep this file minimal so the runner is importable via `-m bootstrap_and_impute.lecture`.
"""
__all__ = [
    "config",
    "diary_data",
    "normality",
    "models",
    "bootstrap",
    "missingness",
    "imputation",
    "pooling",
    "tables",
    "deck",
    "lecture",
]
__version__ = "0.1.0"
