from __future__ import annotations

from datetime import datetime

from sqlmodel import Session, SQLModel, create_engine

from unical.connectors.base import ConnectorTransientError
from unical.connectors.internal import InternalBookingConnector
from unical.models import EventSource, InternalBooking
from unical.timeutil import UTC, TimeRange

WINDOW = TimeRange(
    start=datetime(2026, 3, 1, 0, 0, tzinfo=UTC),
    end=datetime(2026, 3, 10, 0, 0, tzinfo=UTC),
)


def _create_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'internal.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def _booking(booking_id: str, **overrides) -> InternalBooking:
    values = {
        "id": booking_id,
        "owner_id": "U1",
        "title": f"Booking {booking_id}",
        "operation_date": "2026-03-02",
        "start_time": "09:00",
        "end_time": "10:00",
        "type": "DIVE",
    }
    values.update(overrides)
    return InternalBooking(**values)


def test_internal_connector_normalizes_bookings_in_local_time(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    with Session(engine) as session:
        session.add_all(
            [
                _booking("b1", location="Reef gate"),
                _booking("b2", status="CANCELLED"),
                _booking("b3", operation_date="2026-03-03", start_time=None, end_time=None, type="TRAINING"),
                _booking("b4", start_time=None, end_time="11:00"),
                _booking("b5", start_time="15:00", end_time=None),
                _booking("b6", owner_id="U2"),
                _booking("b7", operation_date="2026-04-20"),
                _booking("b8", start_time="9am"),
            ]
        )
        session.commit()

    connector = InternalBookingConnector.from_config({"timezone": "Europe/Berlin"}, engine=engine)
    result = connector.fetch_events("U1", WINDOW)

    assert result.error is None
    assert result.normalization_errors == 2
    assert [removed.source_id for removed in result.removed] == ["b2"]
    events = {event.source_id: event for event in result.events}
    assert sorted(events) == ["b1", "b3", "b5"]

    timed = events["b1"]
    assert timed.source == EventSource.INTERNAL
    assert timed.start_time == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
    assert timed.end_time == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    assert timed.location == "Reef gate"
    assert timed.event_type == "DIVE"

    all_day = events["b3"]
    assert all_day.all_day is True
    assert all_day.start_time == datetime(2026, 3, 2, 23, 0, tzinfo=UTC)
    assert all_day.end_time == datetime(2026, 3, 3, 23, 0, tzinfo=UTC)

    assert events["b5"].start_time == events["b5"].end_time


def test_internal_connector_reports_store_failures(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'empty.sqlite'}")

    result = InternalBookingConnector(engine=engine).fetch_events("U1", WINDOW)

    assert isinstance(result.error, ConnectorTransientError)
    assert result.failed is True
