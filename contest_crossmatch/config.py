"""Matching parameters: defaults, JSON overrides, and validation.

- `MatchSettings` holds every tolerance and heuristic threshold the engine uses.
- `load_settings` reads optional JSON config to override the defaults.
- `MatchSettings.validate` rejects inverted ranges before any state is touched.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Tuple

from platformdirs import user_config_dir

from .errors import ConfigurationError

APP_NAME = "Contest Crossmatch"
CONFIG_ENV_VAR = "CROSSMATCH_CONFIG"
CONFIG_FILENAME = "crossmatch.json"

EXCHANGE_FIELDS = ("multiplier", "serial", "name")


@dataclass(frozen=True)
class MatchSettings:
    """Tolerances and heuristic constants for one cross-match run.

    Times are in minutes. The adjudication band and the singleton heuristics
    are tuning constants carried over from years of manual log checking;
    they are kept configurable rather than derived.
    """

    # exact phases
    time_tolerance: int = 15
    max_time_tolerance: int = 24 * 60
    serial_tolerance: int = 1

    # probabilistic fallback
    time_full: float = 15.0
    time_zero: float = 60.0
    serial_full: float = 1.0
    serial_zero: float = 10.0
    probability_floor: float = 0.1
    review_low: float = 0.4
    review_high: float = 0.5

    # singleton resolution
    close_call_similarity: float = 0.94
    exchange_similarity: float = 0.92
    active_qsos: int = 10
    valid_active_qsos: int = 5
    invalid_call_max_qsos: int = 5
    far_more_common_factor: int = 10
    required_exchange: Tuple[str, ...] = field(default=EXCHANGE_FIELDS)

    def validate(self) -> "MatchSettings":
        """Raise ConfigurationError unless every range and threshold is usable."""
        if self.time_tolerance < 0 or self.max_time_tolerance < self.time_tolerance:
            raise ConfigurationError(
                f"time tolerances inverted: {self.time_tolerance} > {self.max_time_tolerance}"
            )
        if self.serial_tolerance < 0:
            raise ConfigurationError("serial tolerance must not be negative")
        for name, full, zero in (
            ("time", self.time_full, self.time_zero),
            ("serial", self.serial_full, self.serial_zero),
        ):
            if zero <= full:
                raise ConfigurationError(f"{name} range inverted: full={full} zero={zero}")
        if self.review_high < self.review_low:
            raise ConfigurationError(
                f"adjudication band inverted: {self.review_low} > {self.review_high}"
            )
        for name in (
            "probability_floor",
            "review_low",
            "review_high",
            "close_call_similarity",
            "exchange_similarity",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must lie in [0, 1], got {value}")
        unknown = set(self.required_exchange) - set(EXCHANGE_FIELDS)
        if unknown:
            raise ConfigurationError(f"unknown exchange fields: {', '.join(sorted(unknown))}")
        return self


DEFAULT_SETTINGS = MatchSettings()


def _config_path() -> Path:
    """Resolve the JSON settings file path, honoring env override."""
    env = os.getenv(CONFIG_ENV_VAR)
    if env:
        return Path(env).expanduser()
    cfg_dir = Path(user_config_dir(appname=APP_NAME, appauthor=False))
    cfg_dir.mkdir(parents=True, exist_ok=True)
    return cfg_dir / CONFIG_FILENAME


def _coerce(default: Any, value: Any) -> Any:
    """Return value converted to the type of default, or None if it doesn't fit."""
    if isinstance(default, bool) or isinstance(value, bool):
        return None
    if isinstance(default, int):
        return value if isinstance(value, int) else None
    if isinstance(default, float):
        return float(value) if isinstance(value, (int, float)) else None
    if isinstance(default, tuple):
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return tuple(v.lower() for v in value)
    return None


def load_settings() -> MatchSettings:
    """Load settings from JSON, overriding defaults.

    JSON shape example:
    { "time_tolerance": 10, "review_low": 0.35, "required_exchange": ["serial"] }
    Unknown keys and values of the wrong type are ignored; the result is not
    validated here so that a bad range surfaces as ConfigurationError at run time.

    Returns defaults if the config file cannot be read or parsed.
    """
    p = _config_path()
    overrides: Dict[str, Any] = {}
    try:
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            if isinstance(raw, dict):
                known = {fld.name for fld in fields(MatchSettings)}
                for key, val in raw.items():
                    if key in known:
                        coerced = _coerce(getattr(DEFAULT_SETTINGS, key), val)
                        if coerced is not None:
                            overrides[key] = coerced
    except (IOError, OSError, json.JSONDecodeError, ValueError, TypeError):
        # Ignore malformed configs; fall back to defaults
        return DEFAULT_SETTINGS
    return replace(DEFAULT_SETTINGS, **overrides)
