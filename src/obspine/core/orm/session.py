"""SQLAlchemy engine factory and session helpers.

This module provides:

* ``create_obs_engine``   -- Create a SA engine from a URL.
* ``ObsSession``          -- A pre-configured ``Session`` subclass.
* ``obs_session_factory`` -- ``sessionmaker`` producing ``ObsSession``.
* ``is_memory_url``       -- True for in-process SQLite databases.

Tags:
    orm, sqlalchemy, session, engine
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def is_memory_url(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith(":memory:") or url in ("sqlite://", "sqlite:///"))


def create_obs_engine(url: str = "sqlite:///obspine.db", *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``, etc.)
    echo:
        If ``True``, log all SQL to stdout.
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if not url.startswith("sqlite"):
        return _sa_create_engine(url, echo=echo, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    if is_memory_url(url):
        # every checkout must see the same in-memory database
        kwargs.setdefault("poolclass", StaticPool)

    engine = _sa_create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
        cursor = dbapi_connection.cursor()
        if not is_memory_url(url):
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class ObsSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Domain objects are built from ORM rows after commit, so attributes must
    stay loaded.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def obs_session_factory(engine: Engine) -> sessionmaker[ObsSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``ObsSession`` instances."""
    return sessionmaker(bind=engine, class_=ObsSession, expire_on_commit=False)
