from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy.engine import Engine
from sqlmodel import Session, create_engine

from unical.config import DEFAULT_SETTINGS
from unical.models import Settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = PROJECT_ROOT / ".data" / "unical.sqlite"
DB_PATH_ENV = "UNICAL_DB_PATH"
# The daemon and manual `sync run` share one file; writers wait instead of failing fast.
SQLITE_BUSY_TIMEOUT_SEC = 30


def get_db_path() -> Path:
    configured = os.getenv(DB_PATH_ENV)
    if not configured:
        return DEFAULT_DB_PATH
    candidate = Path(configured).expanduser()
    return candidate if candidate.is_absolute() else (Path.cwd() / candidate).resolve()


def get_database_url(*, ensure_directory: bool = False) -> str:
    db_path = get_db_path()
    if ensure_directory:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def get_engine(*, ensure_directory: bool = False) -> Engine:
    return create_engine(
        get_database_url(ensure_directory=ensure_directory),
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SEC},
    )


def _alembic_config() -> Config:
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", get_database_url(ensure_directory=True))
    return alembic_cfg


def initialize_database() -> Path:
    """Upgrade the schema to head and insert any missing default settings."""
    command.upgrade(_alembic_config(), "head")

    engine = get_engine(ensure_directory=True)
    seeded = 0
    with Session(engine) as session:
        for key, value in DEFAULT_SETTINGS.items():
            if session.get(Settings, key) is None:
                session.add(Settings(key=key, value=value))
                seeded += 1
        session.commit()

    db_path = get_db_path()
    logger.info("database_initialized path=%s seeded_settings=%s", db_path, seeded)
    return db_path
