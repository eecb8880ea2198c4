"""Connections store: which owners sync which sources, and with what credentials."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import json
import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from unical.connectors.base import CalendarConnector, ConnectorConfigError, FetchResult
from unical.connectors.internal import InternalBookingConnector
from unical.connectors.provider_a import ProviderAConnector
from unical.connectors.provider_b import ProviderBConnector
from unical.connectors.provider_c import ProviderCConnector
from unical.models import CalendarConnection, EventSource
from unical.timeutil import TimeRange, now_iso

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[dict[str, Any], Engine], CalendarConnector]


@dataclass(frozen=True)
class SourceBinding:
    owner_id: str
    connector: CalendarConnector


@dataclass(frozen=True)
class UnavailableConnector:
    """Stands in for a connection whose settings cannot build a connector."""

    source: EventSource
    error: ConnectorConfigError

    def fetch_events(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        cursor: str | None = None,
        deadline: float | None = None,
    ) -> FetchResult:
        del time_range, cursor, deadline
        return FetchResult(source=self.source, owner_id=owner_id, error=self.error)


CONNECTOR_FACTORIES: dict[EventSource, ConnectorFactory] = {
    EventSource.INTERNAL: lambda config, engine: InternalBookingConnector.from_config(config, engine=engine),
    EventSource.PROVIDER_A: lambda config, engine: ProviderAConnector.from_config(config),
    EventSource.PROVIDER_B: lambda config, engine: ProviderBConnector.from_config(config),
    EventSource.PROVIDER_C: lambda config, engine: ProviderCConnector.from_config(config),
}


def build_connector(
    source: EventSource,
    config: dict[str, Any],
    *,
    engine: Engine,
    factories: dict[EventSource, ConnectorFactory] | None = None,
) -> CalendarConnector:
    factory = (factories or CONNECTOR_FACTORIES).get(source)
    if factory is None:
        return UnavailableConnector(source=source, error=ConnectorConfigError(f"No connector for {source.value}."))
    try:
        return factory(config, engine)
    except (ConnectorConfigError, ValueError, TypeError) as exc:
        logger.warning("connection_misconfigured source=%s error_type=%s", source.value, exc.__class__.__name__)
        reason = str(exc) if isinstance(exc, ConnectorConfigError) else f"Invalid {source.value} connection settings."
        return UnavailableConnector(source=source, error=ConnectorConfigError(reason))


def validate_connection_config(
    source: EventSource,
    config: dict[str, Any],
    *,
    engine: Engine,
    factories: dict[EventSource, ConnectorFactory] | None = None,
) -> list[str]:
    """Problems that would keep ``config`` from building a connector; empty when valid."""
    factory = (factories or CONNECTOR_FACTORIES).get(source)
    if factory is None:
        return [f"No connector for {source.value}."]
    try:
        factory(config, engine)
    except ConnectorConfigError as exc:
        return [str(exc)]
    except (ValueError, TypeError):
        return [f"Invalid {source.value} connection settings."]
    return []


def load_bindings(
    engine: Engine,
    *,
    factories: dict[EventSource, ConnectorFactory] | None = None,
) -> dict[EventSource, list[SourceBinding]]:
    """Bindings for every active, sync-enabled connection, grouped by source."""
    with Session(engine) as session:
        connections = session.exec(
            select(CalendarConnection)
            .where(CalendarConnection.is_active == 1)
            .where(CalendarConnection.sync_enabled == 1)
            .order_by(CalendarConnection.owner_id, CalendarConnection.id)
        ).all()

    bindings: dict[EventSource, list[SourceBinding]] = {}
    for connection in connections:
        source = EventSource(connection.source)
        try:
            config = json.loads(connection.provider_config_json or "{}")
        except json.JSONDecodeError:
            config = None
        if isinstance(config, dict):
            connector = build_connector(source, config, engine=engine, factories=factories)
        else:
            connector = UnavailableConnector(
                source=source,
                error=ConnectorConfigError(f"Connection settings for {source.value} are not a JSON object."),
            )
        bindings.setdefault(source, []).append(SourceBinding(owner_id=connection.owner_id, connector=connector))
    return bindings


def add_connection(
    session: Session,
    *,
    owner_id: str,
    source: EventSource,
    config: dict[str, Any] | None = None,
    connection_name: str | None = None,
    factories: dict[EventSource, ConnectorFactory] | None = None,
) -> CalendarConnection:
    """Create or replace the owner's connection for ``source``; rejects settings no connector accepts."""
    owner = owner_id.strip()
    if not owner:
        raise ValueError("Connection owner must not be empty.")
    problems = validate_connection_config(source, config or {}, engine=session.get_bind(), factories=factories)
    if problems:
        logger.warning("connection_rejected owner_id=%s source=%s", owner, source.value)
        raise ValueError(" ".join(problems))

    existing = session.exec(
        select(CalendarConnection)
        .where(CalendarConnection.owner_id == owner)
        .where(CalendarConnection.source == source)
    ).first()
    timestamp = now_iso()
    if existing is None:
        existing = CalendarConnection(
            owner_id=owner,
            source=source,
            created_at=timestamp,
        )
    existing.connection_name = connection_name
    existing.provider_config_json = json.dumps(config or {}, sort_keys=True)
    existing.is_active = 1
    existing.sync_enabled = 1
    existing.updated_at = timestamp
    session.add(existing)
    session.commit()
    session.refresh(existing)
    return existing


def list_connections(session: Session, owner_id: str | None = None) -> list[CalendarConnection]:
    query = select(CalendarConnection).order_by(CalendarConnection.owner_id, CalendarConnection.source)
    if owner_id is not None:
        query = query.where(CalendarConnection.owner_id == owner_id)
    return list(session.exec(query).all())


def mark_connections_synced(
    engine: Engine,
    pairs: Iterable[tuple[str, EventSource]],
    *,
    timestamp: str | None = None,
) -> None:
    wanted = set(pairs)
    if not wanted:
        return
    synced_at = timestamp or now_iso()
    with Session(engine) as session:
        for connection in session.exec(select(CalendarConnection)).all():
            if (connection.owner_id, EventSource(connection.source)) in wanted:
                connection.last_sync_at = synced_at
                session.add(connection)
        session.commit()
