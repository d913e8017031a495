"""Engine construction and lookup for the catalog database.

SQLite and MariaDB are both supported. ``sqlite://`` builds an in-memory
database held on a single connection shared by all threads, so callers
serialize their access with :data:`db_lock`.
"""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterator
from urllib.parse import unquote, urlparse

from flask import g, has_app_context
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

db_lock = Lock()
"""Serializes every statement issued against the catalog database."""

_MEMORY_PATHS = {"", "/", ":memory:", "/:memory:"}


class DatabaseEngine:
    """Thin wrapper handing out context-managed SQLAlchemy connections."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        with self._engine.connect() as conn:
            yield conn

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Yield a connection whose transaction commits when the block exits cleanly."""

        with self._engine.begin() as conn:
            yield conn

    def dispose(self) -> None:
        self._engine.dispose()


def sqlite_path_from_dsn(dsn: str) -> str | None:
    """Return the absolute database file named by a SQLite DSN.

    ``None`` is returned for in-memory databases.
    """

    parsed = urlparse(dsn)
    if parsed.scheme.split("+", 1)[0] != "sqlite":
        raise ValueError(f"not a SQLite DSN: {dsn!r}")
    path = unquote(parsed.path or "")
    if parsed.netloc not in ("", "localhost"):
        path = f"//{parsed.netloc}{path}"
    if path in _MEMORY_PATHS:
        return None
    return os.fspath(Path(path).resolve())


def _apply_sqlite_pragmas(dbapi_conn: Any, busy_timeout: float) -> None:
    if not isinstance(dbapi_conn, sqlite3.Connection):
        return
    statements = ["PRAGMA journal_mode=WAL", "PRAGMA foreign_keys=ON"]
    timeout_ms = int(max(busy_timeout, 0) * 1000)
    if timeout_ms:
        statements.insert(0, f"PRAGMA busy_timeout={timeout_ms}")
    for statement in statements:
        try:
            dbapi_conn.execute(statement).fetchall()
        except sqlite3.OperationalError:
            # In-memory databases refuse WAL; the default journal is fine there.
            continue


def _apply_mariadb_lock_timeout(dbapi_conn: Any, lock_timeout: float) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute(
            "SET SESSION innodb_lock_wait_timeout = %s", (max(int(lock_timeout), 1),)
        )
    finally:
        cursor.close()


def build_engine_from_dsn(
    dsn: str,
    *,
    timeout: float | None = None,
    pool_size: int = 5,
    pool_recycle: int = 1_800,
    pool_pre_ping: bool = True,
) -> DatabaseEngine:
    """Create a :class:`DatabaseEngine` for ``dsn``.

    ``timeout`` becomes SQLite's busy timeout or MariaDB's lock wait
    timeout and defaults to five seconds.
    """

    wait = 5.0 if timeout is None else timeout
    dialect = urlparse(dsn).scheme.split("+", 1)[0]
    pool_options: dict[str, Any] = {
        "pool_size": pool_size,
        "pool_recycle": pool_recycle,
        "pool_pre_ping": pool_pre_ping,
    }

    if dialect == "sqlite":
        sqlite_path = sqlite_path_from_dsn(dsn)
        connect_args = {"check_same_thread": False}
        if sqlite_path is None:
            engine = create_engine(
                "sqlite://", future=True, poolclass=StaticPool, connect_args=connect_args
            )
        else:
            Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f"sqlite:///{sqlite_path}", future=True, connect_args=connect_args, **pool_options
            )
        event.listen(
            engine, "connect", lambda dbapi_conn, _record: _apply_sqlite_pragmas(dbapi_conn, wait)
        )
        return DatabaseEngine(engine)

    engine = create_engine(dsn, future=True, **pool_options)
    if dialect in {"mysql", "mariadb"}:
        event.listen(
            engine,
            "connect",
            lambda dbapi_conn, _record: _apply_mariadb_lock_timeout(dbapi_conn, wait),
        )
    return DatabaseEngine(engine)


_fallback_connection: DatabaseEngine | None = None


def set_fallback_connection(conn: DatabaseEngine | None) -> None:
    """Replace the engine used outside of a Flask application context."""

    global _fallback_connection
    _fallback_connection = conn


def get_db(
    connection_factory: Callable[[], DatabaseEngine] | None = None,
    *,
    context_key: str = 'db',
) -> DatabaseEngine:
    """Return the engine for the current app context or the process fallback.

    ``connection_factory`` is only called when no engine exists yet.
    """

    global _fallback_connection

    if has_app_context():
        engine = getattr(g, context_key, None)
        if engine is None:
            engine = connection_factory() if connection_factory else _fallback_connection
            if engine is None:
                raise RuntimeError('Database connection is not configured')
            setattr(g, context_key, engine)
        if not isinstance(engine, DatabaseEngine):
            raise RuntimeError('Database connection is not configured correctly')
        return engine

    if _fallback_connection is None:
        if connection_factory is None:
            raise RuntimeError('Database connection is not configured')
        _fallback_connection = connection_factory()
    return _fallback_connection


__all__ = [
    "DatabaseEngine",
    "build_engine_from_dsn",
    "db_lock",
    "get_db",
    "set_fallback_connection",
    "sqlite_path_from_dsn",
]
