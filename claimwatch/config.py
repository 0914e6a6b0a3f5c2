"""Detection thresholds and their validation."""

import json
from dataclasses import dataclass, fields, asdict
from datetime import date
from pathlib import Path

from claimwatch.errors import ConfigError


@dataclass(frozen=True)
class DetectionConfig:
    """Every tunable threshold used by the rule engine.

    Defaults follow the documented rule catalogue: 10x charge magnification,
    |zMAD| > 4.5 for peer outliers, |z| > 3 for monthly spikes, a +/-3xIQR
    extreme-outlier fence, 120-day inactivity gaps and 7-day bursts of 4+
    claims.
    """

    charge_multiplier: float = 10.0
    zmad_threshold: float = 4.5
    monthly_z_threshold: float = 3.0
    iqr_multiplier: float = 3.0
    min_cohort_size: int = 5
    inactivity_gap_days: int = 120
    burst_window_days: int = 7
    burst_min_claims: int = 4
    los_max_days: int = 365
    date_window_start: date = date(2020, 1, 1)
    date_window_end: date = date(2023, 12, 31)
    revision_pct_threshold: float = 10.0
    revision_abs_threshold: float = 100.0
    isolation_trees: int = 200
    isolation_subsample: int = 256
    isolation_threshold: float = 0.6
    random_seed: int = 42
    relaxed_join_window_days: int = 14

    def validate(self) -> "DetectionConfig":
        """Raise ConfigError for the first out-of-range field."""
        checks = [
            ("charge_multiplier", self.charge_multiplier > 1, "must be greater than 1"),
            ("zmad_threshold", self.zmad_threshold > 0, "must be positive"),
            ("monthly_z_threshold", self.monthly_z_threshold > 0, "must be positive"),
            ("iqr_multiplier", self.iqr_multiplier > 0, "must be positive"),
            ("min_cohort_size", self.min_cohort_size >= 2, "must be at least 2"),
            ("inactivity_gap_days", self.inactivity_gap_days >= 1, "must be at least 1"),
            ("burst_window_days", self.burst_window_days >= 1, "must be at least 1"),
            ("burst_min_claims", self.burst_min_claims >= 2, "must be at least 2"),
            ("los_max_days", self.los_max_days >= 1, "must be at least 1"),
            ("date_window_end", self.date_window_start <= self.date_window_end,
             "must not precede date_window_start"),
            ("revision_pct_threshold", self.revision_pct_threshold > 0, "must be positive"),
            ("revision_abs_threshold", self.revision_abs_threshold >= 0, "must not be negative"),
            ("isolation_trees", self.isolation_trees >= 1, "must be at least 1"),
            ("isolation_subsample", self.isolation_subsample >= 2, "must be at least 2"),
            ("isolation_threshold", 0 < self.isolation_threshold < 1, "must be in (0, 1)"),
            ("relaxed_join_window_days", self.relaxed_join_window_days >= 0,
             "must not be negative"),
        ]
        for name, ok, reason in checks:
            if not ok:
                raise ConfigError(f"{name}={getattr(self, name)!r} {reason}")
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        data["date_window_start"] = self.date_window_start.isoformat()
        data["date_window_end"] = self.date_window_end.isoformat()
        return data


def _whole_number(raw) -> int:
    if isinstance(raw, bool):
        raise ValueError("booleans are not numbers")
    number = float(raw)
    if not number.is_integer():
        raise ValueError(f"{raw!r} is not a whole number")
    return int(number)


def _real_number(raw) -> float:
    if isinstance(raw, bool):
        raise ValueError("booleans are not numbers")
    return float(raw)


def config_from_dict(overrides: dict, base: DetectionConfig | None = None) -> DetectionConfig:
    """Build a validated config from a mapping of field overrides."""
    base = base or DetectionConfig()
    known = {f.name: f for f in fields(DetectionConfig)}
    values = {}
    for key, raw in overrides.items():
        if key not in known:
            raise ConfigError(f"unknown configuration key: {key}")
        if raw is None:
            continue
        default = getattr(base, key)
        try:
            if isinstance(default, date):
                values[key] = raw if isinstance(raw, date) else date.fromisoformat(str(raw))
            elif isinstance(default, int):
                values[key] = _whole_number(raw)
            else:
                values[key] = _real_number(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key}={raw!r} has the wrong type: {e}") from e
    merged = {f: getattr(base, f) for f in known}
    merged.update(values)
    return DetectionConfig(**merged).validate()


def load_config(path: str | Path) -> DetectionConfig:
    """Load threshold overrides from a JSON object file."""
    try:
        data = json.loads(Path(path).read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return config_from_dict(data)
