# review_agents/worker.py
from __future__ import annotations

import json
import logging
import signal
import sys
import threading
import time
from typing import List

from . import config as _config  # loads .env before anything reads the environment
from .agents.notification_agent import NotificationAgent
from .agents.sla_agent import SlaAgent
from .config import get_settings
from .db import count_pending_notifications, get_conn, get_db_config, safe_close
from .errors import StoreUnavailable
from .schema import migrate
from .utils import now_dt, to_db_ts

log = logging.getLogger("review_agents.worker")

HEARTBEAT_SECONDS = 30.0


def _setup_logging(worker_id: str) -> None:
    logging.basicConfig(
        level=getattr(logging, _config.LOG_LEVEL, logging.INFO),
        format=f"[worker:{worker_id}] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _connect_or_die():
    try:
        return get_conn()
    except StoreUnavailable as e:
        log.error("FATAL: cannot connect to DB: %s", e)
        raise


def _start(agent, name: str) -> threading.Thread:
    t = threading.Thread(target=agent.run_forever, name=name, daemon=True)
    t.start()
    return t


def main() -> None:
    settings = get_settings()
    _setup_logging(settings.worker_id)

    conn = _connect_or_die()
    try:
        applied = migrate(conn)
        cfg = get_db_config()
        log.info(
            "Connected. driver=%s migrations_applied=%s sla_role=%s sla_dry_run=%s notification_dry_run=%s",
            cfg.driver,
            applied or "none",
            settings.sla_role,
            settings.sla_dry_run,
            settings.notification_dry_run,
        )

        stop = threading.Event()

        def _on_signal(signum, frame):
            log.info("signal %s received, stopping", signum)
            stop.set()

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)

        threads: List[threading.Thread] = [
            _start(NotificationAgent(settings=settings, stop_event=stop), "notification-agent"),
        ]
        if settings.is_sla_primary:
            threads.append(_start(SlaAgent(settings=settings, stop_event=stop), "sla-agent"))
        else:
            log.info("SLA_ROLE=%s: sla sweeper disabled in this process", settings.sla_role)

        last_hb = 0.0
        while not stop.is_set():
            now_t = time.time()
            if now_t - last_hb >= HEARTBEAT_SECONDS:
                try:
                    if conn is None:
                        conn = get_conn()
                    pending = count_pending_notifications(conn, to_db_ts(now_dt()))
                    log.info("heartbeat pending_count=%s", pending)
                except StoreUnavailable as e:
                    log.error("heartbeat error=%s", e)
                    safe_close(conn)
                    conn = None
                last_hb = now_t
            stop.wait(1.0)

        for t in threads:
            t.join(timeout=10)
    finally:
        safe_close(conn)


def run_sla_sweep() -> None:
    """One sweep pass, then exit. Exit code 1 when the store is unreachable."""
    settings = get_settings()
    _setup_logging(settings.worker_id)
    conn = None
    try:
        conn = _connect_or_die()
        report = SlaAgent(settings=settings).run_once(conn)
        print(json.dumps(report.as_dict()), flush=True)
    except StoreUnavailable as e:
        log.error("sla sweep aborted: %s", e)
        sys.exit(1)
    finally:
        safe_close(conn)


def run_notifications() -> None:
    """Drain one batch of due notifications, then exit."""
    settings = get_settings()
    _setup_logging(settings.worker_id)
    conn = None
    try:
        conn = _connect_or_die()
        report = NotificationAgent(settings=settings).run_once(conn)
        print(json.dumps(report.as_dict()), flush=True)
    except StoreUnavailable as e:
        log.error("notification batch aborted: %s", e)
        sys.exit(1)
    finally:
        safe_close(conn)


def migrate_main() -> None:
    settings = get_settings()
    _setup_logging(settings.worker_id)
    conn = None
    try:
        conn = _connect_or_die()
        applied = migrate(conn)
        log.info("migrations applied: %s", applied or "none (already current)")
    except StoreUnavailable as e:
        log.error("migration aborted: %s", e)
        sys.exit(1)
    finally:
        safe_close(conn)


if __name__ == "__main__":
    main()
