# review_agents/idempotency.py
from __future__ import annotations

from datetime import datetime, timedelta

from .db import transaction
from .utils import to_db_ts


def claim(conn, lock_key: str, owner: str, ttl_seconds: int, now: datetime) -> bool:
    """
    DB lease on idempotency_locks.
    Returns True if acquired (or renewed by the same owner), False if another
    owner holds an unexpired lease.
    """
    lock_key = (lock_key or "").strip()
    if not lock_key:
        return False

    now_ts = to_db_ts(now)
    expires = to_db_ts(now + timedelta(seconds=int(ttl_seconds)))
    with transaction(conn):
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM idempotency_locks WHERE lock_key=%s AND expires_at <= %s",
                (lock_key, now_ts),
            )
            try:
                cur.execute(
                    "INSERT INTO idempotency_locks (lock_key, locked_by, expires_at, created_at) VALUES (%s, %s, %s, %s)",
                    (lock_key, owner, expires, now_ts),
                )
                return True
            except conn.IntegrityError:
                cur.execute(
                    "UPDATE idempotency_locks SET expires_at=%s WHERE lock_key=%s AND locked_by=%s",
                    (expires, lock_key, owner),
                )
                return cur.rowcount == 1


def release(conn, lock_key: str, owner: str) -> None:
    with transaction(conn):
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM idempotency_locks WHERE lock_key=%s AND locked_by=%s",
                (lock_key, owner),
            )
