# review_agents/db.py
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import mysql.connector
from mysql.connector import errors as mysql_errors
from mysql.connector.constants import ClientFlag

from .errors import StoreUnavailable


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v


def _int_env(name: str, default: int) -> int:
    v = _env(name)
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default


def _bool_env(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    return s in ("1", "true", "yes", "y", "on")


_DEFAULT_SQLITE_PATH = Path(__file__).resolve().parents[3] / "data" / "review_portal.db"


@dataclass
class DbConfig:
    driver: str = "mysql"
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "root"
    password: str = ""
    database: str = "review_portal"
    path: str = str(_DEFAULT_SQLITE_PATH)

    connect_timeout: int = 10
    autocommit: bool = True


def get_db_config() -> DbConfig:
    return DbConfig(
        driver=(_env("DB_DRIVER", "mysql") or "mysql").strip().lower(),
        host=_env("DB_HOST", "127.0.0.1") or "127.0.0.1",
        port=_int_env("DB_PORT", 3306),
        user=_env("DB_USER", "root") or "root",
        password=_env("DB_PASSWORD", "") or "",
        database=_env("DB_NAME", "review_portal") or "review_portal",
        path=_env("DB_PATH", str(_DEFAULT_SQLITE_PATH)) or str(_DEFAULT_SQLITE_PATH),
        connect_timeout=_int_env("DB_CONNECT_TIMEOUT", 10),
        # reads outside an explicit transaction must not pin a stale snapshot
        autocommit=_bool_env("DB_AUTOCOMMIT", True),
    )


class _ConnWrapper:
    """
    Wrap mysql-connector connection to ensure:
    - conn.cursor() defaults to dictionary=True
    - existing code using "with conn.cursor() as cur" gets dict rows
    - driver error classes are reachable from the connection
    """

    dialect = "mysql"
    IntegrityError = mysql_errors.IntegrityError
    OperationalError = mysql_errors.OperationalError
    InterfaceError = mysql_errors.InterfaceError

    def __init__(self, conn):
        self._conn = conn
        self._tx_depth = 0

    def __getattr__(self, item):
        return getattr(self._conn, item)

    def cursor(self, *args, **kwargs):
        if "dictionary" not in kwargs:
            kwargs["dictionary"] = True
        # buffered avoids "Unread result" surprises in some flows
        if "buffered" not in kwargs:
            kwargs["buffered"] = True
        return self._conn.cursor(*args, **kwargs)

    def begin(self) -> None:
        self._conn.start_transaction()


class _SqliteCursor:
    """Gives sqlite3 the same surface as a mysql-connector dict cursor (%s params, dict rows, `with`)."""

    def __init__(self, cur: sqlite3.Cursor):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._cur.close()
        return False

    def execute(self, sql: str, params: Any = ()) -> None:
        self._cur.execute(sql.replace("%s", "?"), tuple(params or ()))

    def fetchone(self) -> Optional[Dict[str, Any]]:
        row = self._cur.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._cur.fetchall()]

    @property
    def rowcount(self) -> int:
        return self._cur.rowcount

    @property
    def lastrowid(self) -> Optional[int]:
        return self._cur.lastrowid

    def close(self) -> None:
        self._cur.close()


class _SqliteConnWrapper:
    dialect = "sqlite"
    IntegrityError = sqlite3.IntegrityError
    OperationalError = sqlite3.OperationalError
    InterfaceError = sqlite3.InterfaceError

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._tx_depth = 0

    def cursor(self, *args, **kwargs):
        return _SqliteCursor(self._conn.cursor())

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def begin(self) -> None:
        # take the write lock up front so concurrent writers queue on busy_timeout
        self._conn.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def _connect_sqlite(cfg: DbConfig) -> _SqliteConnWrapper:
    if cfg.path != ":memory:":
        Path(cfg.path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        cfg.path,
        timeout=max(1, cfg.connect_timeout),
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    if cfg.path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return _SqliteConnWrapper(conn)


def get_conn(cfg: Optional[DbConfig] = None):
    cfg = cfg or get_db_config()
    if cfg.driver == "sqlite":
        try:
            return _connect_sqlite(cfg)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open sqlite store {cfg.path}: {e}") from e

    try:
        conn = mysql.connector.connect(
            host=cfg.host,
            port=cfg.port,
            user=cfg.user,
            password=cfg.password,
            database=cfg.database,
            connection_timeout=cfg.connect_timeout,
            autocommit=cfg.autocommit,
            # rowcount reports matched rows, so conditional UPDATE claims read the same on both drivers
            client_flags=[ClientFlag.FOUND_ROWS],
        )
    except mysql.connector.Error as e:
        raise StoreUnavailable(f"cannot connect to mysql {cfg.host}:{cfg.port}/{cfg.database}: {e}") from e
    return _ConnWrapper(conn)


def safe_rollback(conn) -> None:
    try:
        if getattr(conn, "in_transaction", False):
            conn.rollback()
    except Exception:
        # connection already gone; the caller's own error is the one worth surfacing
        pass


def safe_close(conn) -> None:
    if conn is None:
        return
    try:
        conn.close()
    except Exception:
        pass


def is_store_error(conn, exc: BaseException) -> bool:
    if isinstance(exc, StoreUnavailable):
        return True
    store_errors = (
        getattr(conn, "OperationalError", None),
        getattr(conn, "InterfaceError", None),
    )
    return any(cls is not None and isinstance(exc, cls) for cls in store_errors)


@contextmanager
def store_guard(conn) -> Iterator[None]:
    """Re-raise driver connectivity errors as StoreUnavailable."""
    try:
        yield
    except StoreUnavailable:
        raise
    except Exception as e:
        if is_store_error(conn, e):
            raise StoreUnavailable(f"{type(e).__name__}: {e}") from e
        raise


@contextmanager
def transaction(conn) -> Iterator[Any]:
    """
    One atomic unit per outermost call. Nested calls join the outer
    transaction, so a case update and its event rows commit together.
    """
    depth = getattr(conn, "_tx_depth", 0)
    if depth:
        conn._tx_depth = depth + 1
        try:
            yield conn
        finally:
            conn._tx_depth = depth
        return

    with store_guard(conn):
        safe_rollback(conn)
        conn.begin()
    conn._tx_depth = 1
    try:
        with store_guard(conn):
            yield conn
            conn.commit()
    except BaseException:
        safe_rollback(conn)
        raise
    finally:
        conn._tx_depth = 0


def ping(conn) -> None:
    with store_guard(conn):
        with conn.cursor() as cur:
            cur.execute("SELECT 1 AS ok")
            cur.fetchone()


def count_notifications_by_status(conn) -> Dict[str, int]:
    with store_guard(conn):
        with conn.cursor() as cur:
            cur.execute("SELECT status, COUNT(*) AS c FROM notifications GROUP BY status")
            rows = cur.fetchall() or []
    return {str(r["status"]): int(r["c"]) for r in rows}


def count_pending_notifications(conn, now_ts: str) -> int:
    with store_guard(conn):
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS c
                FROM notifications
                WHERE status IN ('queued', 'retry')
                  AND (retry_after IS NULL OR retry_after <= %s)
                """,
                (now_ts,),
            )
            row = cur.fetchone()
    return int(row["c"]) if row else 0
