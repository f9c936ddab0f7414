"""Database initialization and helpers."""

from __future__ import annotations

import logging
import secrets
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from .config import settings
from .database import engine, get_session
from .models import Meta
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_root_token()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"

    config = Config()
    config.set_main_option("script_location", str(script_location))
    # ConfigParser interpolates "%", which appears in encoded passwords.
    url = engine.url.render_as_string(hide_password=False)
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions. SQLite files are copied to ``.bak``
    first unless ``make_backup`` is false.
    """
    actions: list[str] = []
    if engine.dialect.name == "sqlite":
        db_path = Path(engine.url.database or settings.database_path)
        if make_backup and db_path.exists():
            backup_path = db_path.with_suffix(db_path.suffix + ".bak")
            shutil.copy(db_path, backup_path)
            actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    for action in actions:
        logger.info("Database upgrade: %s", action)
    return actions


def ensure_root_token() -> str:
    with get_session() as session:
        existing = session.get(Meta, settings.root_token_key)
        if existing:
            return existing.value
        token = secrets.token_urlsafe(32)
        meta = Meta(key=settings.root_token_key, value=token, updated_at=utcnow())
        session.merge(meta)
        return token


def rotate_root_token() -> str:
    token = secrets.token_urlsafe(32)
    with get_session() as session:
        meta = Meta(key=settings.root_token_key, value=token, updated_at=utcnow())
        session.merge(meta)
    logger.info("Admin token rotated")
    return token


def fetch_root_token() -> str:
    with get_session() as session:
        meta = session.get(Meta, settings.root_token_key)
        if not meta:
            return ensure_root_token()
        return meta.value
