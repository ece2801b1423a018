# review_agents/case_lifecycle.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from . import events as E
from .assignment import DoctorDirectory
from .case_status import (
    BREACHABLE_FROM,
    REASSIGNABLE_FROM,
    CaseStatus,
    can_transition,
    normalize_status,
    replay_status,
)
from .config import AgentSettings, get_settings
from .db import store_guard, transaction
from .errors import CaseNotFound, InvalidTransition
from .notifications import CHANNEL_EMAIL, CHANNEL_INTERNAL, EnqueueResult, NotificationQueue
from .utils import json_dumps, json_loads, new_reference_code, now_dt, parse_ts, seconds_between, to_db_ts

log = logging.getLogger(__name__)

S = CaseStatus

# columns transition_case() may set alongside the status
_UPDATABLE_FIELDS = {
    "reference_code",
    "doctor_id",
    "specialty_id",
    "patient_user_id",
    "sla_type",
    "sla_hours",
    "sla_deadline",
    "sla_paused_at",
    "sla_remaining_seconds",
    "paid_at",
    "accepted_at",
    "breached_at",
    "completed_at",
}


# -----------------------------
# Helpers
# -----------------------------
def _db_value(v: Any) -> Any:
    if isinstance(v, datetime):
        return to_db_ts(v)
    if isinstance(v, CaseStatus):
        return v.value
    return v


def _lock_clause(conn) -> str:
    return " FOR UPDATE" if getattr(conn, "dialect", "") == "mysql" else ""


def compute_sla_status(case: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Summarise a case's SLA clock for dashboards.

    While paused the frozen remaining budget is reported; otherwise the
    distance to sla_deadline. A deadline equal to `now` counts as overdue.
    """
    now = now or now_dt()
    deadline = parse_ts(case.get("sla_deadline"))
    paused = parse_ts(case.get("sla_paused_at")) is not None
    out: Dict[str, Any] = {
        "has_deadline": deadline is not None,
        "deadline": to_db_ts(deadline),
        "paused": paused,
        "breached": parse_ts(case.get("breached_at")) is not None,
        "remaining_seconds": None,
        "minutes_remaining": None,
        "minutes_overdue": 0,
        "overdue": False,
    }
    if paused:
        remaining = int(case.get("sla_remaining_seconds") or 0)
        out["remaining_seconds"] = remaining
        out["minutes_remaining"] = remaining // 60
        return out
    if deadline is None:
        return out

    remaining = seconds_between(deadline, now)
    if remaining > 0:
        out["remaining_seconds"] = remaining
        out["minutes_remaining"] = remaining // 60
    else:
        out["remaining_seconds"] = 0
        out["minutes_remaining"] = 0
        out["minutes_overdue"] = (-remaining) // 60
        out["overdue"] = True
    return out


class CaseLifecycle:
    """
    Case state machine.

    Every mutating call runs in one transaction covering the case row and
    its case_events rows; when called inside an outer transaction() it joins
    it. Notification requests go through NotificationQueue.enqueue, which
    reports duplicates and bad recipients as results instead of raising.
    """

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        queue: Optional[NotificationQueue] = None,
        directory: Optional[DoctorDirectory] = None,
        clock: Callable[[], datetime] = now_dt,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.queue = queue or NotificationQueue(clock=clock)
        self.directory = directory or DoctorDirectory()

    # -----------------------------
    # Store access
    # -----------------------------
    def _load_case(self, conn, case_id: Any, for_update: bool = False) -> Dict[str, Any]:
        sql = "SELECT * FROM cases WHERE id=%s"
        if for_update:
            sql += _lock_clause(conn)
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (case_id,))
                row = cur.fetchone()
        if not row:
            raise CaseNotFound(case_id)
        return row

    def _update_case(self, conn, case_id: int, fields: Dict[str, Any]) -> None:
        data = {k: _db_value(v) for k, v in fields.items()}
        data["updated_at"] = to_db_ts(self.clock())
        assignments = ", ".join(f"{col}=%s" for col in data)
        with conn.cursor() as cur:
            cur.execute(f"UPDATE cases SET {assignments} WHERE id=%s", (*data.values(), case_id))

    def _open_assignment(self, conn, case_id: int) -> Optional[Dict[str, Any]]:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM case_assignments
                WHERE case_id=%s AND completed_at IS NULL
                ORDER BY id DESC
                LIMIT 1
                """,
                (case_id,),
            )
            return cur.fetchone()

    def _finalize_open_assignments(self, conn, case_id: int) -> int:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE case_assignments SET completed_at=%s WHERE case_id=%s AND completed_at IS NULL",
                (to_db_ts(self.clock()), case_id),
            )
            return cur.rowcount

    def log_case_event(self, conn, case_id: int, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO case_events (case_id, event_type, payload_json, created_at) VALUES (%s, %s, %s, %s)",
                    (case_id, event_type, json_dumps(payload) if payload is not None else None, to_db_ts(self.clock())),
                )
                return int(cur.lastrowid)

    def _apply_status(
        self,
        conn,
        case: Dict[str, Any],
        to_status: CaseStatus,
        fields: Optional[Dict[str, Any]] = None,
        event_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        current = normalize_status(case["status"])
        if current == to_status and not fields:
            return False
        updates = dict(fields or {})
        if current != to_status:
            updates["status"] = to_status
        self._update_case(conn, case["id"], updates)
        if current != to_status:
            payload = {"from": current.value}
            payload.update(event_payload or {})
            self.log_case_event(conn, case["id"], E.status_event(to_status.value), payload)
        return current != to_status

    def notify(
        self,
        conn,
        case: Dict[str, Any],
        *,
        to_user_id: Any,
        template: str,
        channel: str,
        variables: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        language: Optional[str] = None,
    ) -> EnqueueResult:
        base = {
            "caseId": case["id"],
            "caseReference": case.get("reference_code") or str(case["id"]),
            "slaDeadline": to_db_ts(parse_ts(case.get("sla_deadline"))) or "",
            "caseUrl": f"{self.settings.app_url}/cases/{case['id']}",
        }
        base.update(variables or {})
        res = self.queue.enqueue(
            conn,
            to_user_id=to_user_id,
            template=template,
            channel=channel,
            case_id=case["id"],
            variables=base,
            language=language or case.get("language") or "en",
            dedupe_key=dedupe_key,
        )
        if res.ok and not res.skipped:
            self.log_case_event(
                conn,
                case["id"],
                E.notification_event(template),
                {"to": to_user_id, "channel": channel, "notificationId": res.notification_id},
            )
        return res

    def notify_admins(self, conn, case: Dict[str, Any], template: str, variables: Dict[str, Any], dedupe_prefix: Optional[str] = None) -> List[int]:
        admin_ids = self.directory.get_active_admin_ids(conn)
        for admin_id in admin_ids:
            key = f"{dedupe_prefix}:admin:{admin_id}" if dedupe_prefix else None
            self.notify(
                conn,
                case,
                to_user_id=admin_id,
                template=template,
                channel=CHANNEL_INTERNAL,
                variables=variables,
                dedupe_key=key,
                language="en",
            )
        return admin_ids

    # -----------------------------
    # Reads
    # -----------------------------
    def get_case(self, conn, case_id: Any) -> Dict[str, Any]:
        return self._load_case(conn, case_id)

    def get_open_assignment(self, conn, case_id: Any) -> Optional[Dict[str, Any]]:
        with store_guard(conn):
            return self._open_assignment(conn, case_id)

    def list_case_events(self, conn, case_id: Any) -> List[Dict[str, Any]]:
        self._load_case(conn, case_id)
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, case_id, event_type, payload_json, created_at FROM case_events WHERE case_id=%s ORDER BY id ASC",
                    (case_id,),
                )
                rows = cur.fetchall() or []
        out = []
        for r in rows:
            out.append(
                {
                    "id": int(r["id"]),
                    "case_id": r["case_id"],
                    "event_type": r["event_type"],
                    "payload": json_loads(r.get("payload_json")) if r.get("payload_json") else None,
                    "created_at": to_db_ts(parse_ts(r.get("created_at"))),
                }
            )
        return out

    def replay_case_status(self, conn, case_id: Any) -> CaseStatus:
        return replay_status(e["event_type"] for e in self.list_case_events(conn, case_id))

    # -----------------------------
    # Generic transition
    # -----------------------------
    def transition_case(self, conn, case_id: Any, to_status: Any, **fields: Any) -> Dict[str, Any]:
        """
        Move a case along the transition table. A same-state request is a
        no-op. SLA_BREACH is never reachable here; use mark_sla_breach.
        """
        target = normalize_status(to_status)
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"transition_case: unsupported fields {sorted(unknown)}")

        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current == target:
                return case
            if target == S.SLA_BREACH:
                raise InvalidTransition(current.value, target.value, "breach is declared by mark_sla_breach")
            if not can_transition(current, target):
                raise InvalidTransition(current.value, target.value)
            self._apply_status(conn, case, target, fields)
            return self._load_case(conn, case_id)

    # -----------------------------
    # Intake
    # -----------------------------
    def create_draft(
        self,
        conn,
        language: str = "en",
        urgency_flag: bool = False,
        reason_for_review: str = "",
        *,
        patient_user_id: Optional[int] = None,
        specialty_id: Optional[int] = None,
    ) -> int:
        ts = to_db_ts(self.clock())
        lang = (language or "en").strip().lower()
        with transaction(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO cases
                      (status, patient_user_id, specialty_id, language, urgency_flag, reason_for_review, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (S.DRAFT.value, patient_user_id, specialty_id, lang, 1 if urgency_flag else 0, reason_for_review or "", ts, ts),
                )
                case_id = int(cur.lastrowid)
            self.log_case_event(
                conn,
                case_id,
                E.CASE_DRAFT_CREATED,
                {"language": lang, "urgency_flag": bool(urgency_flag), "reason_for_review": reason_for_review or ""},
            )
        log.info("case %s created in DRAFT", case_id)
        return case_id

    def submit(self, conn, case_id: Any) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current == S.SUBMITTED:
                return case
            if not can_transition(current, S.SUBMITTED):
                raise InvalidTransition(current.value, S.SUBMITTED.value)
            self._apply_status(conn, case, S.SUBMITTED)
            self.log_case_event(conn, case["id"], E.CASE_SUBMITTED)
            return self._load_case(conn, case_id)

    def _unique_reference_code(self, conn) -> str:
        with conn.cursor() as cur:
            for _ in range(10):
                code = new_reference_code()
                cur.execute("SELECT 1 AS x FROM cases WHERE reference_code=%s LIMIT 1", (code,))
                if cur.fetchone() is None:
                    return code
        raise RuntimeError("could not allocate a unique reference code")

    def mark_paid(self, conn, case_id: Any, sla_type: Optional[str] = None) -> Dict[str, Any]:
        """
        SUBMITTED -> PAID. Deadline is created_at + SLA hours for the type.
        Re-entry on an already-paid case changes nothing.
        """
        sla_key = (sla_type or self.settings.default_sla_type).strip().lower()
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current != S.SUBMITTED:
                if case.get("paid_at") or current == S.PAID:
                    log.info("case %s already paid; mark_paid is a no-op", case["id"])
                    return case
                raise InvalidTransition(current.value, S.PAID.value)

            hours = self.settings.hours_for(sla_key)
            created_at = parse_ts(case["created_at"])
            deadline = created_at + timedelta(hours=hours)
            fields: Dict[str, Any] = {
                "sla_type": sla_key,
                "sla_hours": hours,
                "sla_deadline": deadline,
                "paid_at": self.clock(),
            }
            if not case.get("reference_code"):
                fields["reference_code"] = self._unique_reference_code(conn)

            self._apply_status(conn, case, S.PAID, fields)
            self.log_case_event(conn, case["id"], E.PAYMENT_CONFIRMED, {"sla_type": sla_key, "sla_hours": hours})
            self.log_case_event(conn, case["id"], E.CASE_READY_FOR_ASSIGNMENT)

            case = self._load_case(conn, case_id)
            self.notify(
                conn,
                case,
                to_user_id=case.get("patient_user_id"),
                template=E.TPL_PAYMENT_CONFIRMATION,
                channel=CHANNEL_EMAIL,
                variables={"slaType": sla_key, "slaHours": hours},
                dedupe_key=f"{E.TPL_PAYMENT_CONFIRMATION}:{case['id']}",
            )
        log.info("case %s paid sla_type=%s deadline=%s", case["id"], sla_key, to_db_ts(deadline))
        return case

    # -----------------------------
    # Assignment
    # -----------------------------
    def assign_doctor(
        self,
        conn,
        case_id: Any,
        doctor_id: int,
        replaced_doctor_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        doctor_id = int(doctor_id)
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current != S.ASSIGNED and not can_transition(current, S.ASSIGNED):
                raise InvalidTransition(current.value, S.ASSIGNED.value)

            open_row = self._open_assignment(conn, case["id"])
            if current == S.ASSIGNED and open_row and int(open_row["doctor_id"]) == doctor_id:
                return case

            self._finalize_open_assignments(conn, case["id"])
            self._apply_status(conn, case, S.ASSIGNED, {"doctor_id": doctor_id})
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO case_assignments (case_id, doctor_id, assigned_at, reassigned_from_doctor_id)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (case["id"], doctor_id, to_db_ts(self.clock()), replaced_doctor_id),
                )
                assignment_id = int(cur.lastrowid)
            self.log_case_event(
                conn,
                case["id"],
                E.CASE_ASSIGNED,
                {"doctorId": doctor_id, "replacedDoctorId": replaced_doctor_id, "assignmentId": assignment_id},
            )

            case = self._load_case(conn, case_id)
            for channel in (CHANNEL_INTERNAL, CHANNEL_EMAIL):
                self.notify(
                    conn,
                    case,
                    to_user_id=doctor_id,
                    template=E.TPL_CASE_ASSIGNED,
                    channel=channel,
                    dedupe_key=f"{E.TPL_CASE_ASSIGNED}:{assignment_id}:{channel}",
                    language="en",
                )
        log.info("case %s assigned to doctor %s (replaced=%s)", case["id"], doctor_id, replaced_doctor_id)
        return case

    def reassign_case(
        self,
        conn,
        case_id: Any,
        new_doctor_id: Optional[int],
        reason: str = "manual",
    ) -> Dict[str, Any]:
        """
        Hand the case to another doctor. Legal from ASSIGNED, IN_REVIEW and
        SLA_BREACH. Without a new doctor the case parks in REASSIGNED with no
        open assignment until someone retries.
        """
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current != S.REASSIGNED and current not in REASSIGNABLE_FROM:
                raise InvalidTransition(current.value, S.REASSIGNED.value)

            open_row = self._open_assignment(conn, case["id"])
            previous = int(open_row["doctor_id"]) if open_row else case.get("doctor_id")

            self._apply_status(conn, case, S.REASSIGNED)
            self.log_case_event(
                conn,
                case["id"],
                E.CASE_REASSIGNED,
                {"reason": reason, "from": previous, "to": new_doctor_id},
            )

            if new_doctor_id is None:
                self._finalize_open_assignments(conn, case["id"])
                log.warning("case %s left in REASSIGNED without a doctor (reason=%s)", case["id"], reason)
                return self._load_case(conn, case_id)

            case = self.assign_doctor(conn, case_id, int(new_doctor_id), replaced_doctor_id=previous)
            if previous is not None and int(previous) != int(new_doctor_id):
                self.notify(
                    conn,
                    case,
                    to_user_id=previous,
                    template=E.TPL_CASE_REASSIGNED,
                    channel=CHANNEL_INTERNAL,
                    variables={"reason": reason},
                    language="en",
                )
        log.info("case %s reassigned %s -> %s (reason=%s)", case["id"], previous, new_doctor_id, reason)
        return case

    def start_review(self, conn, case_id: Any, doctor_id: int) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current == S.IN_REVIEW:
                return case
            if not can_transition(current, S.IN_REVIEW):
                raise InvalidTransition(current.value, S.IN_REVIEW.value)

            open_row = self._open_assignment(conn, case["id"])
            if not open_row or int(open_row["doctor_id"]) != int(doctor_id):
                raise InvalidTransition(
                    current.value, S.IN_REVIEW.value, f"doctor {doctor_id} does not hold the open assignment"
                )

            now = self.clock()
            if not open_row.get("accepted_at"):
                with conn.cursor() as cur:
                    cur.execute(
                        "UPDATE case_assignments SET accepted_at=%s WHERE id=%s",
                        (to_db_ts(now), open_row["id"]),
                    )
            fields: Dict[str, Any] = {}
            if not case.get("accepted_at"):
                fields["accepted_at"] = now
            self._apply_status(conn, case, S.IN_REVIEW, fields)
            self.log_case_event(conn, case["id"], E.CASE_ACCEPTED, {"doctorId": int(doctor_id)})
            return self._load_case(conn, case_id)

    # -----------------------------
    # SLA clock
    # -----------------------------
    def mark_sla_breach(self, conn, case_id: Any) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current == S.SLA_BREACH:
                return case
            if current not in BREACHABLE_FROM:
                raise InvalidTransition(current.value, S.SLA_BREACH.value)

            self._apply_status(conn, case, S.SLA_BREACH, {"breached_at": self.clock()})
            self.log_case_event(
                conn,
                case["id"],
                E.SLA_BREACHED,
                {"deadline": to_db_ts(parse_ts(case.get("sla_deadline"))), "doctorId": case.get("doctor_id")},
            )

            case = self._load_case(conn, case_id)
            doctor_id = case.get("doctor_id")
            if doctor_id:
                for channel in (CHANNEL_INTERNAL, CHANNEL_EMAIL):
                    self.notify(
                        conn,
                        case,
                        to_user_id=doctor_id,
                        template=E.TPL_SLA_BREACH,
                        channel=channel,
                        dedupe_key=f"{E.TPL_SLA_BREACH}:{case['id']}:{doctor_id}:{channel}",
                        language="en",
                    )
        log.warning("case %s breached its SLA", case["id"])
        return case

    def pause_sla(self, conn, case_id: Any, reason: str = E.REASON_FILES_REQUESTED) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            deadline = parse_ts(case.get("sla_deadline"))
            if case.get("sla_paused_at") or deadline is None:
                return case
            now = self.clock()
            remaining = max(0, seconds_between(deadline, now))
            self._update_case(conn, case["id"], {"sla_paused_at": now, "sla_remaining_seconds": remaining})
            self.log_case_event(conn, case["id"], E.SLA_PAUSED, {"reason": reason, "remaining_seconds": remaining})
            return self._load_case(conn, case_id)

    def resume_sla(self, conn, case_id: Any, reason: str = E.REASON_FILES_RECEIVED) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            if not case.get("sla_paused_at"):
                return case
            remaining = int(case.get("sla_remaining_seconds") or 0)
            deadline = self.clock() + timedelta(seconds=remaining)
            self._update_case(
                conn,
                case["id"],
                {"sla_deadline": deadline, "sla_paused_at": None, "sla_remaining_seconds": None},
            )
            self.log_case_event(conn, case["id"], E.SLA_RESUMED, {"reason": reason, "remaining_seconds": remaining})
            return self._load_case(conn, case_id)

    # -----------------------------
    # Missing files
    # -----------------------------
    def request_files(self, conn, case_id: Any, doctor_id: Optional[int] = None, reason: str = "") -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current == S.REJECTED_FILES:
                return case
            if not can_transition(current, S.REJECTED_FILES):
                raise InvalidTransition(current.value, S.REJECTED_FILES.value)

            self._apply_status(conn, case, S.REJECTED_FILES)
            self.pause_sla(conn, case["id"], reason=E.REASON_FILES_REQUESTED)
            self.log_case_event(conn, case["id"], E.FILES_REQUESTED, {"doctorId": doctor_id, "reason": reason})

            case = self._load_case(conn, case_id)
            variables = {"reason": reason}
            for channel in (CHANNEL_INTERNAL, CHANNEL_EMAIL):
                self.notify(
                    conn,
                    case,
                    to_user_id=case.get("patient_user_id"),
                    template=E.TPL_FILES_REQUESTED,
                    channel=channel,
                    variables=variables,
                )
            self.notify_admins(conn, case, E.TPL_FILES_REQUESTED, variables)
            return case

    def files_received(self, conn, case_id: Any) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            target = S.IN_REVIEW if case.get("accepted_at") else S.ASSIGNED
            if current != S.REJECTED_FILES:
                raise InvalidTransition(current.value, target.value, "no files were requested")

            self._apply_status(conn, case, target)
            self.resume_sla(conn, case["id"], reason=E.REASON_FILES_RECEIVED)
            self.log_case_event(conn, case["id"], E.FILES_RECEIVED, {"resumedTo": target.value})
            return self._load_case(conn, case_id)

    # -----------------------------
    # Completion
    # -----------------------------
    def complete_case(self, conn, case_id: Any) -> Dict[str, Any]:
        with transaction(conn):
            case = self._load_case(conn, case_id, for_update=True)
            current = normalize_status(case["status"])
            if current == S.COMPLETED:
                return case
            if not can_transition(current, S.COMPLETED):
                raise InvalidTransition(current.value, S.COMPLETED.value)

            self._finalize_open_assignments(conn, case["id"])
            self._apply_status(conn, case, S.COMPLETED, {"completed_at": self.clock()})
            self.log_case_event(conn, case["id"], E.CASE_COMPLETED, {"doctorId": case.get("doctor_id")})

            case = self._load_case(conn, case_id)
            for channel in (CHANNEL_INTERNAL, CHANNEL_EMAIL):
                self.notify(
                    conn,
                    case,
                    to_user_id=case.get("patient_user_id"),
                    template=E.TPL_CASE_COMPLETED,
                    channel=channel,
                    dedupe_key=f"{E.TPL_CASE_COMPLETED}:{case['id']}:{channel}",
                )
        log.info("case %s completed", case["id"])
        return case
