# review_agents/agents/base_agent.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from ..db import get_conn, safe_close, safe_rollback
from ..errors import StoreUnavailable

log = logging.getLogger(__name__)


class BaseAgent:
    """
    Periodic loop around run_once(conn).

    A StoreUnavailable aborts the current pass, drops the connection and
    waits for the next tick; there is no inner retry loop.
    """

    name = "agent"

    def __init__(
        self,
        interval_ms: int,
        conn_factory: Callable[[], Any] = get_conn,
        stop_event: Optional[threading.Event] = None,
    ):
        self.interval_ms = max(50, int(interval_ms))
        self.conn_factory = conn_factory
        self.stop_event = stop_event or threading.Event()

    def run_once(self, conn) -> Any:
        raise NotImplementedError

    def stop(self) -> None:
        self.stop_event.set()

    def run_forever(self) -> None:
        log.info("starting %s loop interval=%sms", self.name, self.interval_ms)
        conn = None
        while not self.stop_event.is_set():
            try:
                if conn is None:
                    conn = self.conn_factory()
                self.run_once(conn)
            except StoreUnavailable as e:
                log.error("[%s] store unavailable, pass aborted: %s", self.name, e)
                safe_close(conn)
                conn = None
            except Exception:
                log.exception("[%s] pass failed", self.name)
                safe_rollback(conn)
            self.stop_event.wait(self.interval_ms / 1000.0)
        safe_close(conn)
        log.info("%s loop stopped", self.name)
