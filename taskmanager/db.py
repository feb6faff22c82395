from __future__ import annotations

import re
from contextlib import contextmanager
from typing import Iterator

from flask import current_app
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .logging import get_logger

log = get_logger(__name__)

_DB_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


class Base(DeclarativeBase):
    pass


def ensure_mysql_database(database_url: str) -> None:
    """Create the MySQL schema named in ``database_url`` if it is missing."""
    url = make_url(database_url)
    db_name = url.database
    if not db_name:
        return
    if not _DB_NAME_RE.match(db_name):
        raise ValueError("Database name contains unsupported characters")

    engine = create_engine(url.set(database="mysql"), future=True, isolation_level="AUTOCOMMIT")
    try:
        with engine.connect() as conn:
            conn.execute(
                text(
                    "CREATE DATABASE IF NOT EXISTS "
                    f"`{db_name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
                )
            )
    finally:
        engine.dispose()
    log.info("database_ensured", database=db_name)


def init_db(app) -> None:
    database_url = app.config["DATABASE_URL"]
    is_mysql = make_url(database_url).drivername.startswith("mysql")

    engine_kwargs = {"future": True}
    if is_mysql:
        engine_kwargs["pool_pre_ping"] = True
        if app.config.get("AUTO_CREATE_DB", False):
            ensure_mysql_database(database_url)

    engine = create_engine(database_url, **engine_kwargs)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    app.extensions["db_engine"] = engine
    app.extensions["db_sessionmaker"] = SessionLocal

    if app.config.get("AUTO_CREATE_DB", False):
        from .models import Base as ModelsBase

        ModelsBase.metadata.create_all(engine)


def get_session():
    sessionmaker_factory = current_app.extensions["db_sessionmaker"]
    return sessionmaker_factory()


@contextmanager
def session_scope() -> Iterator:
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
