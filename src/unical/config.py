from __future__ import annotations

from dataclasses import dataclass, field
import os

from sqlmodel import Session, select

from unical.models import EventSource, Settings

REMOVAL_MODE_HARD = "hard"
REMOVAL_MODE_TOMBSTONE = "tombstone"

DEFAULT_SETTINGS: dict[str, str] = {
    "enabled_sources": ",".join(source.value for source in EventSource),
    "per_source_timeout_sec": "30",
    "sync_interval_sec": "300",
    "cycle_budget_sec": "150",
    "lookback_days": "7",
    "lookahead_days": "30",
    "removal_mode": REMOVAL_MODE_TOMBSTONE,
    "all_day_default_blocking": "true",
    "all_day_blocking_types": "",
    "all_day_informational_types": "",
}

ALLOWED_SETTING_KEYS: set[str] = set(DEFAULT_SETTINGS)
ENV_PREFIX = "UNICAL_"

_POSITIVE_FLOAT_KEYS: set[str] = {"per_source_timeout_sec", "cycle_budget_sec"}
_POSITIVE_INT_KEYS: set[str] = {"sync_interval_sec"}
_NON_NEGATIVE_INT_KEYS: set[str] = {"lookback_days", "lookahead_days"}
_BOOL_KEYS: set[str] = {"all_day_default_blocking"}
_BOOL_VALUES: dict[str, bool] = {"true": True, "1": True, "yes": True, "false": False, "0": False, "no": False}
_REMOVAL_MODES: set[str] = {REMOVAL_MODE_HARD, REMOVAL_MODE_TOMBSTONE}


class ConfigurationError(ValueError):
    """Raised for invalid engine configuration or an unusable sync scope."""


@dataclass(frozen=True)
class AllDayPolicy:
    """Decides whether an all-day event blocks its owner's whole day.

    Event types are compared case-insensitively. Explicit lists win over the
    default.
    """

    default_blocking: bool = True
    blocking_types: frozenset[str] = frozenset()
    informational_types: frozenset[str] = frozenset()

    def blocks(self, event_type: str | None) -> bool:
        kind = (event_type or "").strip().lower()
        if kind and kind in self.informational_types:
            return False
        if kind and kind in self.blocking_types:
            return True
        return self.default_blocking


@dataclass(frozen=True)
class EngineConfig:
    enabled_sources: frozenset[EventSource] = frozenset(EventSource)
    per_source_timeout_sec: float = 30.0
    sync_interval_sec: int = 300
    cycle_budget_sec: float = 150.0
    lookback_days: int = 7
    lookahead_days: int = 30
    removal_mode: str = REMOVAL_MODE_TOMBSTONE
    all_day_policy: AllDayPolicy = field(default_factory=AllDayPolicy)

    def __post_init__(self) -> None:
        if not self.enabled_sources:
            raise ConfigurationError("At least one calendar source must be enabled.")
        if self.per_source_timeout_sec <= 0:
            raise ConfigurationError("per_source_timeout_sec must be > 0.")
        if self.sync_interval_sec < 1:
            raise ConfigurationError("sync_interval_sec must be >= 1.")
        if self.removal_mode not in _REMOVAL_MODES:
            raise ConfigurationError(f"Unknown removal_mode: {self.removal_mode}.")


def validate_setting(key: str, value: str) -> None:
    if key not in ALLOWED_SETTING_KEYS:
        allowed = ", ".join(sorted(ALLOWED_SETTING_KEYS))
        raise ValueError(f"Unknown setting key: {key}. Allowed keys: {allowed}.")

    if key == "enabled_sources":
        _parse_sources(value)
        return

    if key == "removal_mode":
        if value.strip().lower() not in _REMOVAL_MODES:
            allowed = ", ".join(sorted(_REMOVAL_MODES))
            raise ValueError(f"Invalid value for {key}: must be one of {allowed}.")
        return

    if key in _POSITIVE_FLOAT_KEYS:
        if _parse_float(value, key) <= 0:
            raise ValueError(f"Invalid value for {key}: must be a number > 0.")
        return

    if key in _POSITIVE_INT_KEYS:
        if _parse_int(value, key) < 1:
            raise ValueError(f"Invalid value for {key}: must be an integer >= 1.")
        return

    if key in _NON_NEGATIVE_INT_KEYS:
        if _parse_int(value, key) < 0:
            raise ValueError(f"Invalid value for {key}: must be an integer >= 0.")
        return

    if key in _BOOL_KEYS:
        _parse_bool(value, key)
        return


def _parse_int(value: str, key: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: must be an integer.") from exc


def _parse_float(value: str, key: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: must be a number.") from exc


def _parse_bool(value: str, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized not in _BOOL_VALUES:
        raise ValueError(f"Invalid value for {key}: must be true or false.")
    return _BOOL_VALUES[normalized]


def _parse_list(value: str) -> frozenset[str]:
    return frozenset(item.strip().lower() for item in value.split(",") if item.strip())


def _parse_sources(value: str) -> frozenset[EventSource]:
    sources: set[EventSource] = set()
    for item in value.split(","):
        name = item.strip()
        if not name:
            continue
        try:
            sources.add(EventSource(name))
        except ValueError as exc:
            allowed = ", ".join(source.value for source in EventSource)
            raise ValueError(f"Unknown calendar source: {name}. Allowed sources: {allowed}.") from exc
    if not sources:
        raise ValueError("enabled_sources must name at least one source.")
    return frozenset(sources)


def list_settings(session: Session) -> list[Settings]:
    return session.exec(select(Settings).order_by(Settings.key)).all()


def upsert_setting(session: Session, key: str, value: str) -> Settings:
    validate_setting(key, value)

    setting = session.get(Settings, key)
    if setting is None:
        setting = Settings(key=key, value=value)
        session.add(setting)
    else:
        setting.value = value

    session.commit()
    session.refresh(setting)
    return setting


def resolve_settings(session: Session | None = None) -> dict[str, str]:
    """Defaults, overlaid by stored settings, overlaid by ``UNICAL_*`` env vars."""
    values = dict(DEFAULT_SETTINGS)
    if session is not None:
        for setting in list_settings(session):
            if setting.key in ALLOWED_SETTING_KEYS:
                values[setting.key] = setting.value
    for key in ALLOWED_SETTING_KEYS:
        env_value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
        if env_value is not None and env_value.strip():
            values[key] = env_value.strip()
    return values


def build_engine_config(values: dict[str, str]) -> EngineConfig:
    try:
        for key, value in values.items():
            validate_setting(key, value)
        return EngineConfig(
            enabled_sources=_parse_sources(values["enabled_sources"]),
            per_source_timeout_sec=float(values["per_source_timeout_sec"]),
            sync_interval_sec=int(values["sync_interval_sec"]),
            cycle_budget_sec=float(values["cycle_budget_sec"]),
            lookback_days=int(values["lookback_days"]),
            lookahead_days=int(values["lookahead_days"]),
            removal_mode=values["removal_mode"].strip().lower(),
            all_day_policy=AllDayPolicy(
                default_blocking=_parse_bool(values["all_day_default_blocking"], "all_day_default_blocking"),
                blocking_types=_parse_list(values["all_day_blocking_types"]),
                informational_types=_parse_list(values["all_day_informational_types"]),
            ),
        )
    except ConfigurationError:
        raise
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def load_engine_config(session: Session | None = None) -> EngineConfig:
    return build_engine_config(resolve_settings(session))
