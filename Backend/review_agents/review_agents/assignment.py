# review_agents/assignment.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .case_status import ACTIVE_LOAD_STATUSES
from .db import store_guard

log = logging.getLogger(__name__)

ROLE_DOCTOR = "doctor"
ROLE_ADMIN = "admin"


# -----------------------------
# User / doctor directory
# -----------------------------
class DoctorDirectory:
    """Reads doctors, admins and users from the `users` table."""

    def get_active_doctors(self, conn, specialty_id: Any) -> List[Dict[str, Any]]:
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, name, email, phone, lang
                    FROM users
                    WHERE role=%s AND is_active=1 AND specialty_id=%s
                    ORDER BY name ASC, id ASC
                    """,
                    (ROLE_DOCTOR, specialty_id),
                )
                return cur.fetchall() or []

    def get_open_case_count(self, conn, doctor_id: int) -> int:
        statuses = sorted(s.value for s in ACTIVE_LOAD_STATUSES)
        placeholders = ", ".join(["%s"] * len(statuses))
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) AS c FROM cases WHERE doctor_id=%s AND status IN ({placeholders})",
                    (int(doctor_id), *statuses),
                )
                row = cur.fetchone()
        return int(row["c"]) if row else 0

    def get_user(self, conn, user_id: Any) -> Optional[Dict[str, Any]]:
        if user_id is None:
            return None
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM users WHERE id=%s", (int(user_id),))
                return cur.fetchone()

    def get_active_admin_ids(self, conn) -> List[int]:
        with store_guard(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id FROM users WHERE role=%s AND is_active=1 ORDER BY id ASC",
                    (ROLE_ADMIN,),
                )
                rows = cur.fetchall() or []
        return [int(r["id"]) for r in rows]


# -----------------------------
# Doctor selection
# -----------------------------
class AssignmentManager:
    def __init__(self, directory: Optional[DoctorDirectory] = None, max_active_cases: int = 0):
        self.directory = directory or DoctorDirectory()
        self.max_active_cases = int(max_active_cases or 0)

    def pick_doctor(
        self,
        conn,
        specialty_id: Any,
        exclude_doctor_id: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Lowest open-case load wins; ties go to name, then id.

        Returns None when nobody is eligible (no specialty on the case, no
        active doctor, everyone excluded or at capacity). Callers escalate
        that to an operator; it is not an error.
        """
        if specialty_id is None or str(specialty_id).strip() == "":
            return None

        best: Optional[Dict[str, Any]] = None
        best_key = None
        for doc in self.directory.get_active_doctors(conn, specialty_id):
            doc_id = int(doc["id"])
            if exclude_doctor_id is not None and doc_id == int(exclude_doctor_id):
                continue
            load = self.directory.get_open_case_count(conn, doc_id)
            if self.max_active_cases > 0 and load >= self.max_active_cases:
                continue
            key = (load, str(doc.get("name") or "").lower(), doc_id)
            if best_key is None or key < best_key:
                best = {**doc, "id": doc_id, "load": load}
                best_key = key

        if best is None:
            log.info("no eligible doctor for specialty=%s exclude=%s", specialty_id, exclude_doctor_id)
        return best
