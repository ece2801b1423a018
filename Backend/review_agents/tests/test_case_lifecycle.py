from __future__ import annotations

from datetime import timedelta

import pytest

from review_agents import events as E
from review_agents.case_lifecycle import compute_sla_status
from review_agents.case_status import CaseStatus
from review_agents.errors import CaseNotFound, InvalidStatus, InvalidTransition
from review_agents.utils import parse_ts

S = CaseStatus


def _event_types(lifecycle, conn, case_id):
    return [e["event_type"] for e in lifecycle.list_case_events(conn, case_id)]


def test_draft_submit_pay_sets_deadline_from_created_at(lifecycle, conn, patient, clock):
    case_id = lifecycle.create_draft(conn, "en", True, "urgent scan", patient_user_id=patient, specialty_id=3)
    created = lifecycle.get_case(conn, case_id)
    assert created["status"] == "DRAFT"
    assert created["urgency_flag"] == 1

    clock.advance(minutes=40)
    lifecycle.submit(conn, case_id)
    clock.advance(minutes=5)
    case = lifecycle.mark_paid(conn, case_id, "priority_24h")

    assert case["status"] == "PAID"
    assert parse_ts(case["sla_deadline"]) == parse_ts(created["created_at"]) + timedelta(hours=24)
    assert case["sla_hours"] == 24
    assert case["reference_code"].startswith("RV-")

    types = _event_types(lifecycle, conn, case_id)
    assert types.index(E.CASE_DRAFT_CREATED) < types.index("status:SUBMITTED") < types.index("status:PAID")
    assert E.PAYMENT_CONFIRMED in types
    assert E.notification_event(E.TPL_PAYMENT_CONFIRMATION) in types


def test_mark_paid_twice_keeps_one_transition_and_one_notification(lifecycle, conn, paid_case, clock, query):
    case_id = paid_case("standard_72h")
    first = lifecycle.get_case(conn, case_id)

    clock.advance(hours=3)
    again = lifecycle.mark_paid(conn, case_id, "standard_72h")

    assert again["sla_deadline"] == first["sla_deadline"]
    assert _event_types(lifecycle, conn, case_id).count("status:PAID") == 1
    rows = query("SELECT * FROM notifications WHERE template=%s", (E.TPL_PAYMENT_CONFIRMATION,))
    assert len(rows) == 1
    assert rows[0]["dedupe_key"] == f"payment_confirmation:{case_id}"
    assert rows[0]["channel"] == "email"


def test_unknown_sla_type_falls_back_to_standard(lifecycle, conn, paid_case):
    case = lifecycle.get_case(conn, paid_case("express"))
    assert case["sla_hours"] == 72


def test_missing_case_raises(lifecycle, conn):
    with pytest.raises(CaseNotFound):
        lifecycle.get_case(conn, 999)
    with pytest.raises(CaseNotFound):
        lifecycle.submit(conn, 999)


def test_illegal_transition_leaves_case_untouched(lifecycle, conn, patient):
    case_id = lifecycle.create_draft(conn, patient_user_id=patient, specialty_id=1)
    with pytest.raises(InvalidTransition):
        lifecycle.transition_case(conn, case_id, "PAID")
    with pytest.raises(InvalidTransition):
        lifecycle.mark_paid(conn, case_id)
    assert lifecycle.get_case(conn, case_id)["status"] == "DRAFT"
    assert _event_types(lifecycle, conn, case_id) == [E.CASE_DRAFT_CREATED]


def test_transition_case_normalizes_and_guards(lifecycle, conn, paid_case, make_user):
    case_id = paid_case()
    with pytest.raises(InvalidStatus):
        lifecycle.transition_case(conn, case_id, "archived")
    with pytest.raises(InvalidTransition):
        lifecycle.transition_case(conn, case_id, "sla breach")
    with pytest.raises(ValueError):
        lifecycle.transition_case(conn, case_id, "assigned", status="x")

    doctor = make_user(name="Dr. Ng", specialty_id=7)
    case = lifecycle.transition_case(conn, case_id, "assigned", doctor_id=doctor)
    assert case["status"] == "ASSIGNED"
    # same-state request changes nothing
    lifecycle.transition_case(conn, case_id, S.ASSIGNED)
    assert _event_types(lifecycle, conn, case_id).count("status:ASSIGNED") == 1


def test_assign_doctor_opens_one_assignment_and_notifies(lifecycle, conn, paid_case, make_user, query):
    case_id = paid_case()
    doctor = make_user(name="Dr. A", specialty_id=7)

    case = lifecycle.assign_doctor(conn, case_id, doctor)
    lifecycle.assign_doctor(conn, case_id, doctor)

    assert case["status"] == "ASSIGNED"
    assert case["doctor_id"] == doctor
    rows = query("SELECT * FROM case_assignments WHERE case_id=%s", (case_id,))
    assert len(rows) == 1 and rows[0]["completed_at"] is None
    sent = query("SELECT channel FROM notifications WHERE template=%s AND to_user_id=%s", (E.TPL_CASE_ASSIGNED, doctor))
    assert sorted(r["channel"] for r in sent) == ["email", "internal"]


def test_start_review_requires_the_assigned_doctor(lifecycle, conn, paid_case, make_user, query):
    case_id = paid_case()
    doc_a = make_user(name="Dr. A", specialty_id=7)
    doc_b = make_user(name="Dr. B", specialty_id=7)
    lifecycle.assign_doctor(conn, case_id, doc_a)

    with pytest.raises(InvalidTransition):
        lifecycle.start_review(conn, case_id, doc_b)

    case = lifecycle.start_review(conn, case_id, doc_a)
    assert case["status"] == "IN_REVIEW"
    assert case["accepted_at"] is not None
    row = query("SELECT accepted_at FROM case_assignments WHERE case_id=%s", (case_id,))[0]
    assert row["accepted_at"] is not None
    assert E.CASE_ACCEPTED in _event_types(lifecycle, conn, case_id)


def test_pause_then_resume_at_same_instant_restores_deadline(lifecycle, conn, paid_case, make_user, clock):
    case_id = paid_case()
    lifecycle.assign_doctor(conn, case_id, make_user(specialty_id=7))
    before = lifecycle.get_case(conn, case_id)["sla_deadline"]

    paused = lifecycle.pause_sla(conn, case_id)
    assert paused["sla_paused_at"] is not None
    assert compute_sla_status(paused, clock())["paused"] is True

    resumed = lifecycle.resume_sla(conn, case_id)
    assert resumed["sla_deadline"] == before
    assert resumed["sla_paused_at"] is None


def test_pause_shifts_deadline_by_paused_time(lifecycle, conn, paid_case, make_user, clock):
    case_id = paid_case()
    lifecycle.assign_doctor(conn, case_id, make_user(specialty_id=7))
    before = parse_ts(lifecycle.get_case(conn, case_id)["sla_deadline"])

    lifecycle.pause_sla(conn, case_id)
    lifecycle.pause_sla(conn, case_id)
    clock.advance(hours=5)
    resumed = lifecycle.resume_sla(conn, case_id)

    assert parse_ts(resumed["sla_deadline"]) == before + timedelta(hours=5)


def test_request_files_round_trip(lifecycle, conn, paid_case, make_user, admin, patient, query, clock):
    case_id = paid_case()
    doctor = make_user(specialty_id=7)
    lifecycle.assign_doctor(conn, case_id, doctor)
    lifecycle.start_review(conn, case_id, doctor)

    case = lifecycle.request_files(conn, case_id, doctor, "need the MRI")
    assert case["status"] == "REJECTED_FILES"
    assert case["sla_paused_at"] is not None
    to_patient = query(
        "SELECT channel FROM notifications WHERE template=%s AND to_user_id=%s",
        (E.TPL_FILES_REQUESTED, patient),
    )
    assert sorted(r["channel"] for r in to_patient) == ["email", "internal"]
    to_admin = query("SELECT channel FROM notifications WHERE template=%s AND to_user_id=%s", (E.TPL_FILES_REQUESTED, admin))
    assert [r["channel"] for r in to_admin] == ["internal"]

    clock.advance(hours=2)
    case = lifecycle.files_received(conn, case_id)
    assert case["status"] == "IN_REVIEW"
    assert case["sla_paused_at"] is None

    with pytest.raises(InvalidTransition):
        lifecycle.files_received(conn, case_id)


def test_files_received_before_acceptance_goes_back_to_assigned(lifecycle, conn, paid_case, make_user):
    case_id = paid_case()
    doctor = make_user(specialty_id=7)
    lifecycle.assign_doctor(conn, case_id, doctor)
    lifecycle.request_files(conn, case_id, doctor, "blurry scan")
    assert lifecycle.files_received(conn, case_id)["status"] == "ASSIGNED"


def test_complete_case_finalizes_assignment(lifecycle, conn, paid_case, make_user, patient, query):
    case_id = paid_case()
    doctor = make_user(specialty_id=7)
    lifecycle.assign_doctor(conn, case_id, doctor)
    with pytest.raises(InvalidTransition):
        lifecycle.complete_case(conn, case_id)
    lifecycle.start_review(conn, case_id, doctor)

    case = lifecycle.complete_case(conn, case_id)

    assert case["status"] == "COMPLETED"
    assert case["completed_at"] is not None
    assert lifecycle.get_open_assignment(conn, case_id) is None
    done = query("SELECT * FROM notifications WHERE template=%s AND to_user_id=%s", (E.TPL_CASE_COMPLETED, patient))
    assert len(done) == 2


def test_audit_replay_matches_current_status(lifecycle, conn, paid_case, make_user):
    case_id = paid_case()
    doc_a = make_user(name="Dr. A", specialty_id=7)
    doc_b = make_user(name="Dr. B", specialty_id=7)
    lifecycle.assign_doctor(conn, case_id, doc_a)
    lifecycle.reassign_case(conn, case_id, doc_b, reason="manual")
    lifecycle.start_review(conn, case_id, doc_b)
    lifecycle.request_files(conn, case_id, doc_b, "labs")
    lifecycle.files_received(conn, case_id)
    lifecycle.complete_case(conn, case_id)

    assert lifecycle.replay_case_status(conn, case_id) == S.COMPLETED
    assert lifecycle.get_case(conn, case_id)["status"] == "COMPLETED"


def test_reassign_without_doctor_parks_case(lifecycle, conn, paid_case, make_user, query):
    case_id = paid_case()
    lifecycle.assign_doctor(conn, case_id, make_user(specialty_id=7))

    case = lifecycle.reassign_case(conn, case_id, None, reason="manual")

    assert case["status"] == "REASSIGNED"
    assert lifecycle.get_open_assignment(conn, case_id) is None
    events = lifecycle.list_case_events(conn, case_id)
    reassigned = [e for e in events if e["event_type"] == E.CASE_REASSIGNED][-1]
    assert reassigned["payload"]["to"] is None


def test_reassign_from_paid_is_rejected(lifecycle, conn, paid_case, make_user):
    case_id = paid_case()
    with pytest.raises(InvalidTransition):
        lifecycle.reassign_case(conn, case_id, make_user(specialty_id=7))


def test_compute_sla_status_boundary(lifecycle, conn, paid_case, clock):
    case = lifecycle.get_case(conn, paid_case())
    deadline = parse_ts(case["sla_deadline"])

    at = compute_sla_status(case, deadline)
    assert at["overdue"] is True
    assert at["minutes_overdue"] == 0

    early = compute_sla_status(case, deadline - timedelta(minutes=90))
    assert early["overdue"] is False
    assert early["minutes_remaining"] == 90

    late = compute_sla_status(case, deadline + timedelta(minutes=61))
    assert late["minutes_overdue"] == 61
