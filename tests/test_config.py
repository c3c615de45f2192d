import json
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import START

from contest_crossmatch.config import DEFAULT_SETTINGS, load_settings
from contest_crossmatch.context import MatchContext
from contest_crossmatch.errors import ConfigurationError


def test_default_settings(temp_db):
    """Defaults are used when no config file exists."""
    settings = load_settings()
    assert settings == DEFAULT_SETTINGS
    assert settings.time_tolerance == 15
    assert settings.max_time_tolerance == 1440
    assert (settings.review_low, settings.review_high) == (0.4, 0.5)
    assert settings.required_exchange == ("multiplier", "serial", "name")


def test_custom_settings(tmp_path, monkeypatch):
    """Test loading overrides from a config file."""
    config_path = tmp_path / "crossmatch.json"
    with open(config_path, "w") as f:
        json.dump(
            {
                "time_tolerance": 10,
                "review_low": 0.35,
                "required_exchange": ["Serial"],
                "unknown_key": 1,
                "active_qsos": "many",
            },
            f,
        )
    monkeypatch.setenv("CROSSMATCH_CONFIG", str(config_path))

    settings = load_settings()
    assert settings.time_tolerance == 10
    assert settings.review_low == 0.35
    assert settings.required_exchange == ("serial",)
    # Values of the wrong type are ignored
    assert settings.active_qsos == DEFAULT_SETTINGS.active_qsos


def test_malformed_config_fallback(tmp_path, monkeypatch):
    """Test that malformed config files fall back to defaults."""
    config_path = tmp_path / "bad.json"
    with open(config_path, "w") as f:
        f.write("{ invalid json }")
    monkeypatch.setenv("CROSSMATCH_CONFIG", str(config_path))

    assert load_settings() == DEFAULT_SETTINGS


@pytest.mark.parametrize(
    "overrides",
    [
        {"time_full": 60.0, "time_zero": 15.0},
        {"serial_full": 10.0, "serial_zero": 10.0},
        {"review_low": 0.6, "review_high": 0.5},
        {"probability_floor": 1.5},
        {"time_tolerance": 30, "max_time_tolerance": 15},
        {"required_exchange": ("signal",)},
    ],
)
def test_validation_rejects_bad_settings(overrides):
    with pytest.raises(ConfigurationError):
        replace(DEFAULT_SETTINGS, **overrides).validate()


def test_context_rejects_bad_settings_before_touching_state(builder):
    builder.log("W1AW")
    qso = builder.worked("W1AW", "K6XX", 0)
    bad = replace(DEFAULT_SETTINGS, time_full=60.0, time_zero=15.0)
    with pytest.raises(ConfigurationError):
        MatchContext.for_contest(builder.engine, builder.contest_id, settings=bad)
    assert builder.row(qso).match_type.value == "None"


def test_context_rejects_empty_scope(builder):
    with pytest.raises(ConfigurationError):
        MatchContext.for_contest(builder.engine, builder.contest_id)
    with pytest.raises(ConfigurationError):
        MatchContext.for_contest(builder.engine, builder.contest_id + 100)


def test_context_applies_clock_adjustment(builder):
    builder.log("W1AW", clock_adj=-120)
    qso = builder.worked("W1AW", "K6XX", 10)
    ctx = builder.ctx()
    with ctx.session() as session:
        (view,) = ctx.load_views(session)
    assert view.id == qso
    assert view.time == START + timedelta(minutes=8)
