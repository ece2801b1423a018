# review_agents/schema.py
from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from .db import store_guard, transaction
from .utils import now_dt, to_db_ts

log = logging.getLogger(__name__)

_DIALECT_TOKENS: Dict[str, Dict[str, str]] = {
    "mysql": {
        "pk": "INT AUTO_INCREMENT PRIMARY KEY",
        "ts": "DATETIME",
        "text": "LONGTEXT",
        "table_opts": " ENGINE=InnoDB DEFAULT CHARSET=utf8mb4",
    },
    "sqlite": {
        "pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "ts": "TEXT",
        "text": "TEXT",
        "table_opts": "",
    },
}


# -----------------------------
# Versioned migrations
# -----------------------------
MIGRATIONS: List[Tuple[int, str, List[str]]] = [
    (
        1,
        "case sla engine tables",
        [
            """
            CREATE TABLE IF NOT EXISTS users (
              id {pk},
              name VARCHAR(190) NOT NULL,
              email VARCHAR(190) NULL,
              phone VARCHAR(40) NULL,
              role VARCHAR(20) NOT NULL,
              specialty_id INT NULL,
              lang VARCHAR(10) NOT NULL DEFAULT 'en',
              is_active INT NOT NULL DEFAULT 1,
              created_at {ts} NOT NULL
            ){table_opts}
            """,
            """
            CREATE TABLE IF NOT EXISTS cases (
              id {pk},
              reference_code VARCHAR(40) NULL,
              status VARCHAR(32) NOT NULL,
              patient_user_id INT NULL,
              doctor_id INT NULL,
              specialty_id INT NULL,
              language VARCHAR(10) NOT NULL DEFAULT 'en',
              urgency_flag INT NOT NULL DEFAULT 0,
              reason_for_review {text} NULL,
              sla_type VARCHAR(32) NULL,
              sla_hours INT NULL,
              sla_deadline {ts} NULL,
              sla_paused_at {ts} NULL,
              sla_remaining_seconds INT NULL,
              paid_at {ts} NULL,
              accepted_at {ts} NULL,
              breached_at {ts} NULL,
              completed_at {ts} NULL,
              created_at {ts} NOT NULL,
              updated_at {ts} NOT NULL
            ){table_opts}
            """,
            "CREATE UNIQUE INDEX ux_cases_reference_code ON cases (reference_code)",
            "CREATE INDEX ix_cases_status_deadline ON cases (status, sla_deadline)",
            """
            CREATE TABLE IF NOT EXISTS case_assignments (
              id {pk},
              case_id INT NOT NULL,
              doctor_id INT NOT NULL,
              assigned_at {ts} NOT NULL,
              accepted_at {ts} NULL,
              completed_at {ts} NULL,
              reassigned_from_doctor_id INT NULL
            ){table_opts}
            """,
            "CREATE INDEX ix_case_assignments_case ON case_assignments (case_id, completed_at)",
            "CREATE INDEX ix_cases_doctor_status ON cases (doctor_id, status)",
            """
            CREATE TABLE IF NOT EXISTS case_events (
              id {pk},
              case_id INT NOT NULL,
              event_type VARCHAR(80) NOT NULL,
              payload_json {text} NULL,
              created_at {ts} NOT NULL
            ){table_opts}
            """,
            "CREATE INDEX ix_case_events_case ON case_events (case_id, id)",
            """
            CREATE TABLE IF NOT EXISTS notifications (
              id {pk},
              case_id INT NULL,
              to_user_id INT NOT NULL,
              channel VARCHAR(20) NOT NULL,
              template VARCHAR(80) NOT NULL,
              language VARCHAR(10) NOT NULL DEFAULT 'en',
              variables_json {text} NULL,
              status VARCHAR(20) NOT NULL DEFAULT 'queued',
              attempts INT NOT NULL DEFAULT 0,
              retry_after {ts} NULL,
              locked_by VARCHAR(80) NULL,
              locked_until {ts} NULL,
              response {text} NULL,
              last_error {text} NULL,
              dedupe_key VARCHAR(190) NULL,
              sent_at {ts} NULL,
              seen_at {ts} NULL,
              created_at {ts} NOT NULL,
              updated_at {ts} NOT NULL
            ){table_opts}
            """,
            "CREATE UNIQUE INDEX ux_notifications_dedupe ON notifications (dedupe_key)",
            "CREATE INDEX ix_notifications_pending ON notifications (status, retry_after, id)",
            """
            CREATE TABLE IF NOT EXISTS inbox_items (
              id {pk},
              user_id INT NOT NULL,
              notification_id INT NULL,
              case_id INT NULL,
              template VARCHAR(80) NOT NULL,
              title VARCHAR(190) NOT NULL,
              body_json {text} NULL,
              created_at {ts} NOT NULL,
              seen_at {ts} NULL
            ){table_opts}
            """,
            "CREATE INDEX ix_inbox_items_user ON inbox_items (user_id, id)",
            """
            CREATE TABLE IF NOT EXISTS idempotency_locks (
              lock_key VARCHAR(190) NOT NULL PRIMARY KEY,
              locked_by VARCHAR(80) NOT NULL,
              expires_at {ts} NOT NULL,
              created_at {ts} NOT NULL
            ){table_opts}
            """,
        ],
    ),
]


def _render(sql: str, dialect: str) -> str:
    return sql.format(**_DIALECT_TOKENS[dialect]).strip()


def _ensure_migrations_table(conn) -> None:
    dialect = conn.dialect
    with conn.cursor() as cur:
        cur.execute(
            _render(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                  version INT NOT NULL PRIMARY KEY,
                  name VARCHAR(190) NOT NULL,
                  applied_at {ts} NOT NULL
                ){table_opts}
                """,
                dialect,
            )
        )


def applied_versions(conn) -> List[int]:
    with store_guard(conn):
        _ensure_migrations_table(conn)
        with conn.cursor() as cur:
            cur.execute("SELECT version FROM schema_migrations ORDER BY version")
            rows = cur.fetchall() or []
    return [int(r["version"]) for r in rows]


def migrate(conn) -> List[int]:
    """
    Apply every migration newer than the store's recorded version.
    Returns the versions applied by this call (empty when already current).
    """
    done = set(applied_versions(conn))
    applied: List[int] = []
    for version, name, statements in MIGRATIONS:
        if version in done:
            continue
        with transaction(conn):
            with conn.cursor() as cur:
                for stmt in statements:
                    cur.execute(_render(stmt, conn.dialect))
                cur.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (%s, %s, %s)",
                    (version, name, to_db_ts(now_dt())),
                )
        log.info("applied migration %s (%s)", version, name)
        applied.append(version)
    return applied
