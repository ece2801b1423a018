# review_agents/notifications.py
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .db import store_guard, transaction
from .utils import json_dumps, now_dt, to_db_ts

log = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"
CHANNEL_INTERNAL = "internal"
CHANNELS = (CHANNEL_EMAIL, CHANNEL_SMS, CHANNEL_INTERNAL)

STATUS_QUEUED = "queued"
STATUS_SENDING = "sending"
STATUS_RETRY = "retry"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SEEN = "seen"

SKIP_DEDUPED = "deduped"
ERR_INVALID_RECIPIENT = "invalid_recipient"
ERR_INVALID_CHANNEL = "invalid_channel"

_DEDUPE_KEY_MAX = 190


def _dedupe_key(raw: Optional[str]) -> Optional[str]:
    """Blank keys disable dedupe; keys too long for the column are replaced by their digest."""
    key = (raw or "").strip()
    if not key:
        return None
    if len(key) > _DEDUPE_KEY_MAX:
        key = "sha256:" + hashlib.sha256(key.encode("utf-8")).hexdigest()
    return key


@dataclass(frozen=True)
class EnqueueResult:
    ok: bool
    notification_id: Optional[int] = None
    skipped: Optional[str] = None
    error: Optional[str] = None


def _valid_recipient(to_user_id: Any) -> bool:
    if to_user_id is None or isinstance(to_user_id, bool):
        return False
    try:
        return int(str(to_user_id).strip()) > 0
    except ValueError:
        return False


def _find_by_dedupe_key(cur, dedupe_key: str) -> Optional[int]:
    cur.execute("SELECT id FROM notifications WHERE dedupe_key=%s LIMIT 1", (dedupe_key,))
    row = cur.fetchone()
    return int(row["id"]) if row else None


class NotificationQueue:
    """
    Producer side of the outbound queue.

    enqueue() never raises for recoverable conditions: a duplicate dedupe
    key or an empty recipient comes back as an EnqueueResult. Only a store
    outage propagates (as StoreUnavailable).
    """

    def __init__(self, clock: Callable[[], Any] = now_dt):
        self.clock = clock

    def enqueue(
        self,
        conn,
        *,
        to_user_id: Any,
        template: str,
        channel: str = CHANNEL_INTERNAL,
        case_id: Optional[int] = None,
        variables: Optional[Dict[str, Any]] = None,
        language: str = "en",
        dedupe_key: Optional[str] = None,
    ) -> EnqueueResult:
        if not _valid_recipient(to_user_id):
            log.warning("enqueue skipped: invalid recipient %r template=%s case=%s", to_user_id, template, case_id)
            return EnqueueResult(ok=False, error=ERR_INVALID_RECIPIENT)

        ch = (channel or "").strip().lower()
        if ch not in CHANNELS:
            log.warning("enqueue skipped: invalid channel %r template=%s", channel, template)
            return EnqueueResult(ok=False, error=ERR_INVALID_CHANNEL)

        key = _dedupe_key(dedupe_key)
        ts = to_db_ts(self.clock())

        with store_guard(conn):
            with conn.cursor() as cur:
                if key:
                    existing = _find_by_dedupe_key(cur, key)
                    if existing is not None:
                        return EnqueueResult(ok=True, notification_id=existing, skipped=SKIP_DEDUPED)
                try:
                    cur.execute(
                        """
                        INSERT INTO notifications
                          (case_id, to_user_id, channel, template, language, variables_json,
                           status, attempts, dedupe_key, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s, %s, %s)
                        """,
                        (
                            case_id,
                            int(to_user_id),
                            ch,
                            template,
                            (language or "en").strip().lower(),
                            json_dumps(variables or {}),
                            STATUS_QUEUED,
                            key,
                            ts,
                            ts,
                        ),
                    )
                    new_id = cur.lastrowid
                except conn.IntegrityError:
                    # lost the race on the unique dedupe index
                    if not key:
                        raise
                    return EnqueueResult(ok=True, notification_id=_find_by_dedupe_key(cur, key), skipped=SKIP_DEDUPED)

        log.debug("enqueued notification id=%s template=%s channel=%s to=%s", new_id, template, ch, to_user_id)
        return EnqueueResult(ok=True, notification_id=int(new_id) if new_id is not None else None)


def get_notification(conn, notification_id: int) -> Optional[Dict[str, Any]]:
    with store_guard(conn):
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM notifications WHERE id=%s", (int(notification_id),))
            return cur.fetchone()


def mark_seen(conn, notification_id: int, now=None) -> bool:
    """In-app read receipt: sent -> seen. Returns False when the row was not in `sent`."""
    ts = to_db_ts(now or now_dt())
    with transaction(conn):
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE notifications SET status=%s, seen_at=%s, updated_at=%s WHERE id=%s AND status=%s",
                (STATUS_SEEN, ts, ts, int(notification_id), STATUS_SENT),
            )
            changed = cur.rowcount == 1
            if changed:
                cur.execute(
                    "UPDATE inbox_items SET seen_at=%s WHERE notification_id=%s AND seen_at IS NULL",
                    (ts, int(notification_id)),
                )
    return changed
