"""Run settings for the lecture build.

Defaults can be overridden by BOOTMI_* environment variables and then by
explicit keyword overrides (the CLI passes its parsed arguments here).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

ENV_PREFIX = "BOOTMI_"
SUPPORTED_FORMATS = ("md", "docx")


def _as_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


# env var suffix -> (field name, converter)
_ENV_FIELDS = {
    "WORKERS": ("workers", int),
    "N_BOOT": ("n_boot", int),
    "N_BOOT_MIXED": ("n_boot_mixed", int),
    "SEED": ("seed", int),
    "N_IMPUTATIONS": ("n_imputations", int),
    "N_ITERATIONS": ("n_iterations", int),
    "OUTPUT_DIR": ("output_dir", str),
    "DATASET": ("dataset_path", str),
    "PROGRESS": ("progress", _as_bool),
}


@dataclass
class LectureConfig:
    output_dir: str = "./lecture_output"
    dataset_path: Optional[str] = None
    seed: int = 12345
    n_boot: int = 500
    n_boot_mixed: int = 100
    workers: int = 1
    n_imputations: int = 5
    n_iterations: int = 10
    missing_prop: float = 0.2
    ci_level: float = 0.95
    n_people: int = 60
    n_days: int = 10
    progress: bool = True
    formats: Tuple[str, ...] = field(default_factory=lambda: SUPPORTED_FORMATS)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "LectureConfig":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for suffix, (name, convert) in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            try:
                values[name] = convert(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {ENV_PREFIX + suffix}: {raw!r}") from None

        known = {f.name for f in fields(cls)}
        for name, value in overrides.items():
            if name not in known:
                raise ValueError(f"Unknown config option: {name}")
            if value is not None:
                values[name] = value

        if "formats" in values:
            values["formats"] = tuple(values["formats"])

        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        for name in ("n_boot", "n_boot_mixed", "workers", "n_imputations", "n_iterations", "n_people", "n_days"):
            value = getattr(self, name)
            if int(value) < 1:
                raise ValueError(f"{name} must be a positive integer, got {value}")
        if self.n_imputations < 2:
            raise ValueError(f"n_imputations must be at least 2 to pool estimates, got {self.n_imputations}")
        if not 0 < self.ci_level < 1:
            raise ValueError(f"ci_level must be in (0, 1), got {self.ci_level}")
        if not 0 <= self.missing_prop < 1:
            raise ValueError(f"missing_prop must be in [0, 1), got {self.missing_prop}")
        unknown = [f for f in self.formats if f not in SUPPORTED_FORMATS]
        if unknown:
            raise ValueError(f"Unsupported output formats: {unknown}")

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
