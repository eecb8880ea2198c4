from __future__ import annotations

import pytest
from sqlmodel import Session, SQLModel, create_engine

from unical.config import (
    DEFAULT_SETTINGS,
    REMOVAL_MODE_HARD,
    AllDayPolicy,
    ConfigurationError,
    EngineConfig,
    build_engine_config,
    list_settings,
    load_engine_config,
    upsert_setting,
    validate_setting,
)
from unical.models import EventSource


def _session(tmp_path) -> Session:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'config.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return Session(engine)


def test_defaults_build_a_valid_engine_config(monkeypatch) -> None:
    for key in DEFAULT_SETTINGS:
        monkeypatch.delenv(f"UNICAL_{key.upper()}", raising=False)

    config = load_engine_config()

    assert config.enabled_sources == frozenset(EventSource)
    assert config.per_source_timeout_sec == 30.0
    assert config.sync_interval_sec == 300
    assert config.lookback_days == 7
    assert config.lookahead_days == 30
    assert config.removal_mode == "tombstone"
    assert config.all_day_policy.default_blocking is True


def test_stored_settings_override_defaults_and_env_overrides_both(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("UNICAL_LOOKAHEAD_DAYS", raising=False)
    monkeypatch.setenv("UNICAL_REMOVAL_MODE", "hard")

    with _session(tmp_path) as session:
        upsert_setting(session, "lookahead_days", "14")
        upsert_setting(session, "removal_mode", "tombstone")
        upsert_setting(session, "enabled_sources", "internal, providerB")
        config = load_engine_config(session)

    assert config.lookahead_days == 14
    assert config.removal_mode == REMOVAL_MODE_HARD
    assert config.enabled_sources == frozenset({EventSource.INTERNAL, EventSource.PROVIDER_B})


def test_upsert_setting_rejects_unknown_keys_and_bad_values(tmp_path) -> None:
    with _session(tmp_path) as session:
        with pytest.raises(ValueError, match="Unknown setting key"):
            upsert_setting(session, "timezone", "UTC")
        with pytest.raises(ValueError, match="Unknown calendar source"):
            upsert_setting(session, "enabled_sources", "internal,outlook")
        with pytest.raises(ValueError, match="must be a number > 0"):
            upsert_setting(session, "per_source_timeout_sec", "0")
        with pytest.raises(ValueError, match="must be one of"):
            upsert_setting(session, "removal_mode", "archive")

        assert list_settings(session) == []


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("sync_interval_sec", "0"),
        ("lookback_days", "-1"),
        ("lookback_days", "seven"),
        ("all_day_default_blocking", "maybe"),
        ("enabled_sources", " , "),
    ],
)
def test_validate_setting_rejects(key: str, value: str) -> None:
    with pytest.raises(ValueError):
        validate_setting(key, value)


def test_build_engine_config_wraps_errors_as_configuration_error() -> None:
    values = dict(DEFAULT_SETTINGS)
    values["cycle_budget_sec"] = "-5"

    with pytest.raises(ConfigurationError, match="cycle_budget_sec"):
        build_engine_config(values)


def test_engine_config_requires_an_enabled_source() -> None:
    with pytest.raises(ConfigurationError, match="At least one calendar source"):
        EngineConfig(enabled_sources=frozenset())


def test_all_day_policy_prefers_explicit_types() -> None:
    policy = AllDayPolicy(
        default_blocking=False,
        blocking_types=frozenset({"dive"}),
        informational_types=frozenset({"holiday"}),
    )

    assert policy.blocks("DIVE") is True
    assert policy.blocks("holiday") is False
    assert policy.blocks("training") is False
    assert policy.blocks(None) is False
    assert AllDayPolicy().blocks("holiday") is True


def test_all_day_lists_are_parsed_case_insensitively() -> None:
    values = dict(DEFAULT_SETTINGS)
    values["all_day_default_blocking"] = "no"
    values["all_day_blocking_types"] = "Dive, TRAINING"

    policy = build_engine_config(values).all_day_policy

    assert policy.blocks("training") is True
    assert policy.blocks("outOfOffice") is False
