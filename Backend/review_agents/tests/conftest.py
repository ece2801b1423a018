from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from review_agents.assignment import AssignmentManager, DoctorDirectory
from review_agents.case_lifecycle import CaseLifecycle
from review_agents.config import AgentSettings
from review_agents.db import DbConfig, get_conn, safe_close
from review_agents.notifications import NotificationQueue
from review_agents.schema import migrate
from review_agents.utils import to_db_ts

T0 = datetime(2025, 3, 1, 9, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn():
    c = get_conn(DbConfig(driver="sqlite", path=":memory:"))
    migrate(c)
    yield c
    safe_close(c)


@pytest.fixture
def settings():
    return AgentSettings(
        worker_id="test-worker",
        doctor_response_timeout_hours=6,
        max_active_cases_per_doctor=4,
        notification_max_retries=3,
        notification_backoff_base_sec=30,
        notification_backoff_multiplier=4,
        app_url="https://portal.test",
    )


@pytest.fixture
def directory():
    return DoctorDirectory()


@pytest.fixture
def lifecycle(settings, clock, directory):
    return CaseLifecycle(settings=settings, queue=NotificationQueue(clock=clock), directory=directory, clock=clock)


@pytest.fixture
def assigner(directory, settings):
    return AssignmentManager(directory=directory, max_active_cases=settings.max_active_cases_per_doctor)


@pytest.fixture
def make_user(conn):
    def _make(role="doctor", name="Dr. A", specialty_id=None, email=None, phone=None, is_active=True):
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (name, email, phone, role, specialty_id, lang, is_active, created_at)
                VALUES (%s, %s, %s, %s, %s, 'en', %s, %s)
                """,
                (
                    name,
                    email if email is not None else f"{name.lower().replace(' ', '.')}@example.com",
                    phone,
                    role,
                    specialty_id,
                    1 if is_active else 0,
                    to_db_ts(T0),
                ),
            )
            return int(cur.lastrowid)

    return _make


@pytest.fixture
def patient(make_user):
    return make_user(role="patient", name="Pat Client", phone="+971 50 123 4567")


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", name="Ops Admin")


@pytest.fixture
def paid_case(lifecycle, conn, patient):
    """Factory: a case walked to PAID in specialty 7."""

    def _make(sla_type="standard_72h", specialty_id=7, urgency_flag=False):
        case_id = lifecycle.create_draft(
            conn,
            "en",
            urgency_flag,
            "second opinion",
            patient_user_id=patient,
            specialty_id=specialty_id,
        )
        lifecycle.submit(conn, case_id)
        lifecycle.mark_paid(conn, case_id, sla_type)
        return case_id

    return _make


def fetch_all(conn, sql, params=()):
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.fetchall()


@pytest.fixture
def query(conn):
    def _query(sql, params=()):
        return fetch_all(conn, sql, params)

    return _query
