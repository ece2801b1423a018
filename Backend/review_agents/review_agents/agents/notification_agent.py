# review_agents/agents/notification_agent.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..assignment import DoctorDirectory
from ..channels import DeliveryResult, default_channels
from ..config import AgentSettings, get_settings
from ..db import get_conn, is_store_error, store_guard, transaction
from ..errors import DeliveryFailure, InvalidRecipient, StoreUnavailable
from ..notifications import (
    CHANNEL_INTERNAL,
    ERR_INVALID_RECIPIENT,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RETRY,
    STATUS_SENDING,
    STATUS_SENT,
)
from ..utils import json_dumps, now_dt, to_db_ts
from .base_agent import BaseAgent

log = logging.getLogger(__name__)

LOST_CLAIM = "lost_claim"


class _LostClaim(Exception):
    pass


@dataclass
class BatchReport:
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0
    dry_run: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "claimed": self.claimed,
            "sent": self.sent,
            "retried": self.retried,
            "failed": self.failed,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


def backoff_seconds(attempts: int, base_sec: int, multiplier: int) -> int:
    """Delay before the next try after `attempts` failures: base * multiplier^(attempts-1)."""
    return int(base_sec) * (int(multiplier) ** max(0, int(attempts) - 1))


class NotificationAgent(BaseAgent):
    """
    Consumer side of the notification queue.

    Rows are claimed one at a time with a single conditional UPDATE
    (queued/retry, or a `sending` row whose lease ran out) so several
    workers can drain the same table without double-sending.
    """

    name = "notifications"

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        channels: Optional[Dict[str, Any]] = None,
        directory: Optional[DoctorDirectory] = None,
        clock: Callable[[], datetime] = now_dt,
        conn_factory: Callable[[], Any] = get_conn,
        stop_event: Optional[threading.Event] = None,
    ):
        self.settings = settings or get_settings()
        super().__init__(self.settings.notification_poll_ms, conn_factory=conn_factory, stop_event=stop_event)
        self.channels = (
            channels if channels is not None else default_channels(self.settings.notification_send_timeout_sec, clock=clock)
        )
        self.directory = directory or DoctorDirectory()
        self.clock = clock

    @property
    def worker_id(self) -> str:
        return self.settings.worker_id

    def backoff_for(self, attempts: int) -> int:
        return backoff_seconds(
            attempts,
            self.settings.notification_backoff_base_sec,
            self.settings.notification_backoff_multiplier,
        )

    # -----------------------------
    # Selection / claim
    # -----------------------------
    def find_due(self, conn, now: datetime) -> List[Dict[str, Any]]:
        ts = to_db_ts(now)
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, channel, template, to_user_id, status, attempts
                    FROM notifications
                    WHERE (status IN (%s, %s) AND (retry_after IS NULL OR retry_after <= %s))
                       OR (status = %s AND locked_until <= %s)
                    ORDER BY created_at ASC, id ASC
                    LIMIT %s
                    """,
                    (STATUS_QUEUED, STATUS_RETRY, ts, STATUS_SENDING, ts, int(self.settings.notification_batch_size)),
                )
                return cur.fetchall() or []

    def claim(self, conn, notification_id: int, now: datetime) -> bool:
        ts = to_db_ts(now)
        lease = to_db_ts(now + timedelta(seconds=int(self.settings.notification_lock_seconds)))
        with transaction(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE notifications
                    SET status=%s, locked_by=%s, locked_until=%s, updated_at=%s
                    WHERE id=%s
                      AND (
                        (status IN (%s, %s) AND (retry_after IS NULL OR retry_after <= %s))
                        OR (status = %s AND locked_until <= %s)
                      )
                    """,
                    (
                        STATUS_SENDING,
                        self.worker_id,
                        lease,
                        ts,
                        int(notification_id),
                        STATUS_QUEUED,
                        STATUS_RETRY,
                        ts,
                        STATUS_SENDING,
                        ts,
                    ),
                )
                return cur.rowcount == 1

    def _load(self, conn, notification_id: int) -> Optional[Dict[str, Any]]:
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM notifications WHERE id=%s", (int(notification_id),))
                return cur.fetchone()

    # -----------------------------
    # Outcome
    # -----------------------------
    def _record(self, conn, row: Dict[str, Any], result: DeliveryResult) -> str:
        now = self.clock()
        ts = to_db_ts(now)
        with transaction(conn):
            with conn.cursor() as cur:
                if result.ok:
                    cur.execute(
                        """
                        UPDATE notifications
                        SET status=%s, response=%s, last_error=NULL, sent_at=%s,
                            locked_by=NULL, locked_until=NULL, updated_at=%s
                        WHERE id=%s AND status=%s AND locked_by=%s
                        """,
                        (STATUS_SENT, json_dumps(result.model_dump()), ts, ts, row["id"], STATUS_SENDING, self.worker_id),
                    )
                    outcome = STATUS_SENT
                else:
                    attempts = int(row.get("attempts") or 0) + 1
                    if attempts >= int(self.settings.notification_max_retries):
                        outcome, retry_after = STATUS_FAILED, None
                    else:
                        outcome = STATUS_RETRY
                        retry_after = to_db_ts(now + timedelta(seconds=self.backoff_for(attempts)))
                    cur.execute(
                        """
                        UPDATE notifications
                        SET status=%s, attempts=%s, retry_after=%s, response=%s, last_error=%s,
                            locked_by=NULL, locked_until=NULL, updated_at=%s
                        WHERE id=%s AND status=%s AND locked_by=%s
                        """,
                        (
                            outcome,
                            attempts,
                            retry_after,
                            json_dumps(result.model_dump()),
                            (result.error or "delivery_failed")[:1000],
                            ts,
                            row["id"],
                            STATUS_SENDING,
                            self.worker_id,
                        ),
                    )
                if cur.rowcount != 1:
                    log.warning("notification %s lost its claim before the outcome was recorded", row["id"])
                    return LOST_CLAIM
        return outcome

    # -----------------------------
    # Delivery
    # -----------------------------
    def _attempt(self, conn, row: Dict[str, Any], recipient: Optional[Dict[str, Any]], channel: Any) -> DeliveryResult:
        if recipient is None:
            return DeliveryResult(ok=False, error=f"{ERR_INVALID_RECIPIENT}: user {row.get('to_user_id')} not found")
        if channel is None:
            return DeliveryResult(ok=False, error=f"no_channel_adapter_for_{row.get('channel')}")
        try:
            return channel.deliver(conn, row, recipient)
        except InvalidRecipient as e:
            return DeliveryResult(ok=False, error=f"{ERR_INVALID_RECIPIENT}: {e.value}")
        except DeliveryFailure as e:
            return DeliveryResult(ok=False, error=e.error)
        except Exception as e:
            if is_store_error(conn, e):
                raise StoreUnavailable(f"{type(e).__name__}: {e}") from e
            log.exception("channel %s raised for notification %s", row.get("channel"), row.get("id"))
            return DeliveryResult(ok=False, error=f"{type(e).__name__}: {e}"[:500])

    def process(self, conn, notification_id: int, now: datetime) -> Optional[str]:
        if not self.claim(conn, notification_id, now):
            return None
        row = self._load(conn, notification_id)
        if row is None:
            return None

        recipient = self.directory.get_user(conn, row.get("to_user_id"))
        channel = self.channels.get(str(row.get("channel") or ""))
        if getattr(channel, "name", None) == CHANNEL_INTERNAL:
            # inbox row and status flip commit together; a lost claim rolls both back
            try:
                with transaction(conn):
                    result = self._attempt(conn, row, recipient, channel)
                    outcome = self._record(conn, row, result)
                    if outcome == LOST_CLAIM:
                        raise _LostClaim(row["id"])
            except _LostClaim:
                outcome = LOST_CLAIM
        else:
            result = self._attempt(conn, row, recipient, channel)
            outcome = self._record(conn, row, result)

        if outcome == STATUS_SENT:
            log.info("SENT notification id=%s channel=%s template=%s", row["id"], row["channel"], row["template"])
        else:
            log.warning(
                "notification id=%s channel=%s -> %s (%s)",
                row["id"],
                row["channel"],
                outcome,
                result.error,
            )
        return outcome

    def run_once(self, conn) -> BatchReport:
        report = BatchReport(dry_run=self.settings.notification_dry_run)
        now = self.clock()
        due = self.find_due(conn, now)
        if report.dry_run:
            for row in due:
                log.info(
                    "DRY-RUN would send notification id=%s channel=%s template=%s to=%s attempt=%s",
                    row["id"],
                    row["channel"],
                    row["template"],
                    row["to_user_id"],
                    int(row.get("attempts") or 0) + 1,
                )
            return report

        for row in due:
            try:
                outcome = self.process(conn, int(row["id"]), now)
            except StoreUnavailable as e:
                log.error("notification batch aborted, store unavailable: %s", e)
                raise
            except Exception as e:
                if is_store_error(conn, e):
                    log.error("notification batch aborted, store unavailable: %s", e)
                    raise StoreUnavailable(f"{type(e).__name__}: {e}") from e
                report.errors += 1
                log.exception("notification %s failed", row["id"])
                continue
            if outcome is None:
                continue
            report.claimed += 1
            if outcome == STATUS_SENT:
                report.sent += 1
            elif outcome == STATUS_RETRY:
                report.retried += 1
            elif outcome == STATUS_FAILED:
                report.failed += 1
        return report
