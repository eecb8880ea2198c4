"""Store-backed run lease shared by every process syncing into one database."""
from __future__ import annotations

from datetime import timedelta
import logging
import os
import socket
import uuid

from sqlalchemy import delete, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from unical.models import SyncLease
from unical.timeutil import dt_to_db, now_utc

logger = logging.getLogger(__name__)

SYNC_LEASE_NAME = "sync_cycle"


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class StoreLease:
    """Cross-process mutual exclusion through one row in ``sync_leases``.

    Acquiring is a conditional UPDATE of an expired (or already owned) row,
    falling back to an INSERT when no row exists; the primary key rejects a
    racing second insert. A lease left behind by a crashed process is taken
    over once it expires.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        ttl_sec: float,
        name: str = SYNC_LEASE_NAME,
        holder: str | None = None,
    ) -> None:
        if ttl_sec <= 0:
            raise ValueError("ttl_sec must be > 0.")
        self.engine = engine
        self.ttl_sec = ttl_sec
        self.name = name
        self.holder = holder or _default_holder()

    def acquire(self) -> bool:
        now = now_utc()
        acquired_at = dt_to_db(now)
        expires_at = dt_to_db(now + timedelta(seconds=self.ttl_sec))

        with Session(self.engine) as session:
            try:
                taken = session.connection().execute(
                    update(SyncLease)
                    .where(SyncLease.name == self.name)
                    .where(or_(SyncLease.expires_at <= acquired_at, SyncLease.holder == self.holder))
                    .values(holder=self.holder, acquired_at=acquired_at, expires_at=expires_at)
                )
                if taken.rowcount == 0:
                    session.add(
                        SyncLease(
                            name=self.name,
                            holder=self.holder,
                            acquired_at=acquired_at,
                            expires_at=expires_at,
                        )
                    )
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("sync_lease_busy name=%s", self.name)
                return False

        logger.debug("sync_lease_acquired name=%s holder=%s expires_at=%s", self.name, self.holder, expires_at)
        return True

    def release(self) -> None:
        with Session(self.engine) as session:
            session.connection().execute(
                delete(SyncLease)
                .where(SyncLease.name == self.name)
                .where(SyncLease.holder == self.holder)
            )
            session.commit()
        logger.debug("sync_lease_released name=%s holder=%s", self.name, self.holder)

    def current_holder(self) -> str | None:
        """Holder of the unexpired lease, if any."""
        with Session(self.engine) as session:
            row = session.get(SyncLease, self.name)
        if row is None or row.expires_at <= dt_to_db(now_utc()):
            return None
        return row.holder
