# review_agents/agents/sla_agent.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .. import events as E
from ..assignment import AssignmentManager
from ..case_lifecycle import CaseLifecycle
from ..case_status import SLA_ACTIVE_STATUSES, CaseStatus
from ..config import AgentSettings, get_settings
from ..db import get_conn, is_store_error, store_guard, transaction
from ..errors import StoreUnavailable
from ..idempotency import claim, release
from ..notifications import CHANNEL_EMAIL, CHANNEL_INTERNAL
from ..utils import now_dt, parse_ts, seconds_between, to_db_ts
from .base_agent import BaseAgent

log = logging.getLogger(__name__)

SWEEP_LEASE_KEY = "sla_sweep"

REMINDER_THRESHOLDS = (
    ("24h", 24 * 60 * 60),
    ("6h", 6 * 60 * 60),
    ("1h", 60 * 60),
)
_REMINDER_STATUSES = (CaseStatus.ASSIGNED, CaseStatus.IN_REVIEW, CaseStatus.REJECTED_FILES)


@dataclass
class SweepReport:
    breached: int = 0
    reassigned: int = 0
    escalated: int = 0
    timeouts: int = 0
    reminders: int = 0
    errors: int = 0
    dry_run: bool = False
    skipped: Optional[str] = None
    failed_case_ids: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "breached": self.breached,
            "reassigned": self.reassigned,
            "escalated": self.escalated,
            "timeouts": self.timeouts,
            "reminders": self.reminders,
            "errors": self.errors,
            "dry_run": self.dry_run,
            "skipped": self.skipped,
        }


def _in_clause(statuses) -> str:
    return ", ".join(["%s"] * len(statuses))


class SlaAgent(BaseAgent):
    """
    Recurring SLA sweep: deadline breaches, doctor response timeouts and
    pre-breach reminders. Every candidate is re-derived from stored state,
    so a pass that dies halfway is simply picked up by the next one.
    """

    name = "sla"

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        lifecycle: Optional[CaseLifecycle] = None,
        assigner: Optional[AssignmentManager] = None,
        clock: Callable[[], datetime] = now_dt,
        conn_factory: Callable[[], Any] = get_conn,
        stop_event: Optional[threading.Event] = None,
    ):
        self.settings = settings or get_settings()
        super().__init__(self.settings.sla_sweep_interval_ms, conn_factory=conn_factory, stop_event=stop_event)
        self.clock = clock
        self.lifecycle = lifecycle or CaseLifecycle(settings=self.settings, clock=clock)
        self.assigner = assigner or AssignmentManager(
            directory=self.lifecycle.directory,
            max_active_cases=self.settings.max_active_cases_per_doctor,
        )
        self._running = threading.Lock()

    # -----------------------------
    # Pass control
    # -----------------------------
    def run_once(self, conn) -> SweepReport:
        report = SweepReport(dry_run=self.settings.sla_dry_run)
        if not self.settings.is_sla_primary:
            log.debug("sla sweep skipped: role=%s", self.settings.sla_role)
            report.skipped = "passive"
            return report

        if not self._running.acquire(blocking=False):
            log.info("sla sweep skipped: previous pass still running")
            report.skipped = "overlap"
            return report
        try:
            return self._sweep(conn, report)
        finally:
            self._running.release()

    def _sweep(self, conn, report: SweepReport) -> SweepReport:
        now = self.clock()
        owner = self.settings.worker_id
        if not report.dry_run:
            if not claim(conn, SWEEP_LEASE_KEY, owner, self.settings.sla_lease_seconds, now):
                log.info("sla sweep skipped: lease %s held by another worker", SWEEP_LEASE_KEY)
                report.skipped = "lease_held"
                return report
        try:
            self.breach_pass(conn, now, report)
            self.timeout_pass(conn, now, report)
            if self.settings.sla_reminders_enabled:
                self.reminder_pass(conn, now, report)
        finally:
            if not report.dry_run:
                release(conn, SWEEP_LEASE_KEY, owner)

        log.info(
            "sla sweep done breached=%s reassigned=%s escalated=%s timeouts=%s reminders=%s errors=%s%s",
            report.breached,
            report.reassigned,
            report.escalated,
            report.timeouts,
            report.reminders,
            report.errors,
            " (DRY-RUN)" if report.dry_run else "",
        )
        return report

    def _isolate(self, conn, case_id: int, what: str, fn: Callable[[], None], report: SweepReport) -> None:
        try:
            fn()
        except StoreUnavailable:
            raise
        except Exception as e:
            if is_store_error(conn, e):
                raise StoreUnavailable(f"{type(e).__name__}: {e}") from e
            report.errors += 1
            report.failed_case_ids.append(case_id)
            log.exception("sla %s failed for case %s", what, case_id)

    # -----------------------------
    # Escalation helpers
    # -----------------------------
    @staticmethod
    def _count_outcome(report: SweepReport, outcome: str) -> None:
        if outcome == "reassigned":
            report.reassigned += 1
        else:
            report.escalated += 1

    def _escalate_to_admins(self, conn, case: Dict[str, Any], payload: Dict[str, Any], dedupe_prefix: str) -> None:
        admin_ids = self.lifecycle.notify_admins(
            conn,
            case,
            E.TPL_ADMIN_ESCALATION,
            {"reason": payload.get("reason"), "trigger": payload.get("trigger")},
            dedupe_prefix=dedupe_prefix,
        )
        self.lifecycle.log_case_event(conn, case["id"], E.ADMIN_NOTIFIED, {**payload, "adminIds": admin_ids})

    def _reassign_or_escalate(self, conn, case_id: int, previous_doctor: Optional[int], trigger: str, dedupe_prefix: str) -> str:
        case = self.lifecycle.get_case(conn, case_id)
        doc = self.assigner.pick_doctor(conn, case.get("specialty_id"), exclude_doctor_id=previous_doctor)
        if doc:
            case = self.lifecycle.reassign_case(conn, case_id, doc["id"], reason=trigger)
            self.lifecycle.log_case_event(conn, case_id, E.DOCTOR_NOTIFIED, {"doctorId": doc["id"], "reason": trigger})
            self._escalate_to_admins(
                conn,
                case,
                {"reason": trigger, "from": previous_doctor, "to": doc["id"]},
                dedupe_prefix,
            )
            return "reassigned"

        if trigger == E.REASON_DOCTOR_TIMEOUT:
            # take the case off the silent doctor; it waits in REASSIGNED for an operator
            case = self.lifecycle.reassign_case(conn, case_id, None, reason=f"{trigger}_{E.REASON_NO_DOCTOR}")
        self.lifecycle.log_case_event(
            conn,
            case_id,
            E.CASE_REASSIGNMENT_FAILED,
            {"reason": E.REASON_NO_DOCTOR, "trigger": trigger},
        )
        self._escalate_to_admins(
            conn,
            case,
            {"reason": E.REASON_NO_DOCTOR, "trigger": trigger, "from": previous_doctor},
            dedupe_prefix,
        )
        return "escalated"

    # -----------------------------
    # 1) Deadline breaches
    # -----------------------------
    def find_breach_candidates(self, conn, now: datetime) -> List[Dict[str, Any]]:
        statuses = sorted(s.value for s in SLA_ACTIVE_STATUSES)
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT id, doctor_id, specialty_id, sla_deadline
                    FROM cases
                    WHERE status IN ({_in_clause(statuses)})
                      AND sla_deadline IS NOT NULL
                      AND sla_deadline <= %s
                      AND sla_paused_at IS NULL
                      AND breached_at IS NULL
                    ORDER BY sla_deadline ASC, id ASC
                    LIMIT %s
                    """,
                    (*statuses, to_db_ts(now), int(self.settings.sla_sweep_limit)),
                )
                return cur.fetchall() or []

    def breach_pass(self, conn, now: datetime, report: SweepReport) -> None:
        for row in self.find_breach_candidates(conn, now):
            case_id = int(row["id"])
            self._isolate(conn, case_id, "breach", lambda: self._handle_breach(conn, row, report), report)

    def _handle_breach(self, conn, row: Dict[str, Any], report: SweepReport) -> None:
        case_id = int(row["id"])
        previous = int(row["doctor_id"]) if row.get("doctor_id") is not None else None
        if report.dry_run:
            doc = self.assigner.pick_doctor(conn, row.get("specialty_id"), exclude_doctor_id=previous)
            log.info(
                "DRY-RUN breach case=%s deadline=%s doctor=%s -> %s",
                case_id,
                to_db_ts(parse_ts(row.get("sla_deadline"))),
                previous,
                f"reassign to {doc['id']}" if doc else "escalate (no doctor available)",
            )
            report.breached += 1
            return

        with transaction(conn):
            self.lifecycle.mark_sla_breach(conn, case_id)
            outcome = self._reassign_or_escalate(
                conn,
                case_id,
                previous,
                E.REASON_SLA_BREACH,
                f"{E.TPL_ADMIN_ESCALATION}:{E.REASON_SLA_BREACH}:{case_id}",
            )
        report.breached += 1
        self._count_outcome(report, outcome)

    # -----------------------------
    # 2) Doctor response timeouts
    # -----------------------------
    def find_timeout_candidates(self, conn, now: datetime) -> List[Dict[str, Any]]:
        cutoff = now - timedelta(hours=float(self.settings.doctor_response_timeout_hours))
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.id AS case_id, c.specialty_id, a.id AS assignment_id, a.doctor_id, a.assigned_at
                    FROM cases c
                    JOIN case_assignments a ON a.case_id = c.id AND a.completed_at IS NULL
                    WHERE c.status = %s
                      AND a.accepted_at IS NULL
                      AND a.assigned_at < %s
                    ORDER BY a.assigned_at ASC, a.id ASC
                    LIMIT %s
                    """,
                    (CaseStatus.ASSIGNED.value, to_db_ts(cutoff), int(self.settings.sla_sweep_limit)),
                )
                return cur.fetchall() or []

    def timeout_pass(self, conn, now: datetime, report: SweepReport) -> None:
        for row in self.find_timeout_candidates(conn, now):
            case_id = int(row["case_id"])
            self._isolate(conn, case_id, "timeout", lambda: self._handle_timeout(conn, row, report), report)

    def _handle_timeout(self, conn, row: Dict[str, Any], report: SweepReport) -> None:
        case_id = int(row["case_id"])
        doctor_id = int(row["doctor_id"])
        if report.dry_run:
            doc = self.assigner.pick_doctor(conn, row.get("specialty_id"), exclude_doctor_id=doctor_id)
            log.info(
                "DRY-RUN doctor timeout case=%s doctor=%s assigned_at=%s -> %s",
                case_id,
                doctor_id,
                to_db_ts(parse_ts(row.get("assigned_at"))),
                f"reassign to {doc['id']}" if doc else "escalate (no doctor available)",
            )
            report.timeouts += 1
            return

        with transaction(conn):
            self.lifecycle.log_case_event(
                conn,
                case_id,
                E.DOCTOR_TIMEOUT_REASSIGNMENT,
                {
                    "doctorId": doctor_id,
                    "assignmentId": int(row["assignment_id"]),
                    "assignedAt": to_db_ts(parse_ts(row.get("assigned_at"))),
                },
            )
            outcome = self._reassign_or_escalate(
                conn,
                case_id,
                doctor_id,
                E.REASON_DOCTOR_TIMEOUT,
                f"{E.TPL_ADMIN_ESCALATION}:{E.REASON_DOCTOR_TIMEOUT}:{row['assignment_id']}",
            )
        report.timeouts += 1
        self._count_outcome(report, outcome)

    # -----------------------------
    # 3) Pre-breach reminders
    # -----------------------------
    def find_reminder_candidates(self, conn, now: datetime) -> List[Dict[str, Any]]:
        statuses = [s.value for s in _REMINDER_STATUSES]
        horizon = now + timedelta(seconds=max(s for _, s in REMINDER_THRESHOLDS))
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT id, doctor_id, sla_deadline
                    FROM cases
                    WHERE status IN ({_in_clause(statuses)})
                      AND doctor_id IS NOT NULL
                      AND sla_paused_at IS NULL
                      AND sla_deadline IS NOT NULL
                      AND sla_deadline > %s
                      AND sla_deadline <= %s
                    ORDER BY sla_deadline ASC, id ASC
                    LIMIT %s
                    """,
                    (*statuses, to_db_ts(now), to_db_ts(horizon), int(self.settings.sla_sweep_limit)),
                )
                return cur.fetchall() or []

    def reminder_pass(self, conn, now: datetime, report: SweepReport) -> None:
        for row in self.find_reminder_candidates(conn, now):
            case_id = int(row["id"])
            self._isolate(conn, case_id, "reminder", lambda: self._handle_reminders(conn, row, now, report), report)

    def _handle_reminders(self, conn, row: Dict[str, Any], now: datetime, report: SweepReport) -> None:
        case_id = int(row["id"])
        doctor_id = int(row["doctor_id"])
        seconds_left = seconds_between(parse_ts(row["sla_deadline"]), now)
        levels = [level for level, limit in REMINDER_THRESHOLDS if seconds_left <= limit]
        if not levels:
            return
        if report.dry_run:
            log.info("DRY-RUN reminders case=%s doctor=%s levels=%s", case_id, doctor_id, ",".join(levels))
            return

        queued = 0
        with transaction(conn):
            case = self.lifecycle.get_case(conn, case_id)
            for level in levels:
                for channel in (CHANNEL_INTERNAL, CHANNEL_EMAIL):
                    res = self.lifecycle.notify(
                        conn,
                        case,
                        to_user_id=doctor_id,
                        template=E.TPL_SLA_REMINDER,
                        channel=channel,
                        variables={"level": level, "hoursLeft": max(0, seconds_left // 3600), "secondsRemaining": seconds_left},
                        dedupe_key=f"sla:{level}:{channel}:doctor:{case_id}:{doctor_id}",
                        language="en",
                    )
                    if res.ok and not res.skipped:
                        queued += 1
            if queued:
                self.lifecycle.log_case_event(
                    conn,
                    case_id,
                    E.SLA_REMINDER_QUEUED,
                    {"levels": levels, "doctorId": doctor_id, "secondsRemaining": seconds_left},
                )
        report.reminders += queued
