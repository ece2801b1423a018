from __future__ import annotations

import dataclasses
import sqlite3
from datetime import timedelta

import pytest
import requests

from review_agents.agents.notification_agent import NotificationAgent, backoff_seconds
from review_agents.channels import DeliveryResult, EmailChannel, InternalFeedChannel
from review_agents.errors import StoreUnavailable
from review_agents.notifications import NotificationQueue, get_notification
from review_agents.utils import json_loads, parse_ts, to_db_ts


class FakeChannel:
    """Records deliveries; fails the first `fail_times` calls."""

    def __init__(self, name, fail_times=0, error="provider_down", raises=None):
        self.name = name
        self.fail_times = fail_times
        self.error = error
        self.raises = raises
        self.calls = []

    def deliver(self, conn, notification, recipient):
        self.calls.append((notification["id"], recipient["id"]))
        if self.raises is not None:
            raise self.raises
        if len(self.calls) <= self.fail_times:
            return DeliveryResult(ok=False, error=self.error)
        return DeliveryResult(ok=True, provider_message_id=f"{self.name}-{len(self.calls)}")


class TimeoutSession:
    def __init__(self):
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "timeout": timeout})
        raise requests.Timeout("read timed out")


def _agent(settings, clock, channels, directory, **overrides):
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    return NotificationAgent(settings=settings, channels=channels, directory=directory, clock=clock)


def _enqueue(conn, clock, to_user_id, channel="email", template="case_assigned"):
    res = NotificationQueue(clock=clock).enqueue(conn, to_user_id=to_user_id, template=template, channel=channel)
    assert res.ok
    return res.notification_id


def test_backoff_schedule():
    assert [backoff_seconds(n, 30, 4) for n in (1, 2, 3)] == [30, 120, 480]


def test_email_failing_three_times_ends_failed(conn, settings, clock, directory, make_user):
    doctor = make_user(name="Dr. Mail", specialty_id=7)
    nid = _enqueue(conn, clock, doctor)
    email = FakeChannel("email", fail_times=99)
    agent = _agent(settings, clock, {"email": email}, directory)

    first = agent.run_once(conn)
    assert first.retried == 1
    row = get_notification(conn, nid)
    assert row["status"] == "retry" and row["attempts"] == 1
    assert parse_ts(row["retry_after"]) == clock() + timedelta(seconds=30)

    # not due yet
    assert agent.run_once(conn).claimed == 0

    clock.advance(seconds=30)
    agent.run_once(conn)
    assert get_notification(conn, nid)["attempts"] == 2

    clock.advance(seconds=120)
    third = agent.run_once(conn)
    row = get_notification(conn, nid)
    assert third.failed == 1
    assert row["status"] == "failed"
    assert row["attempts"] == 3
    assert row["last_error"] == "provider_down"

    clock.advance(days=2)
    assert agent.run_once(conn).claimed == 0
    assert len(email.calls) == 3
    assert get_notification(conn, nid)["attempts"] == 3


def test_success_after_retry(conn, settings, clock, directory, make_user):
    doctor = make_user(name="Dr. Mail", specialty_id=7)
    nid = _enqueue(conn, clock, doctor)
    agent = _agent(settings, clock, {"email": FakeChannel("email", fail_times=1)}, directory)

    agent.run_once(conn)
    clock.advance(seconds=30)
    report = agent.run_once(conn)

    row = get_notification(conn, nid)
    assert report.sent == 1
    assert row["status"] == "sent"
    assert row["attempts"] == 1
    assert row["sent_at"] is not None
    assert row["locked_by"] is None


def test_claim_is_exclusive_until_lease_expires(conn, settings, clock, directory, make_user):
    nid = _enqueue(conn, clock, make_user(specialty_id=7))
    one = _agent(settings, clock, {}, directory)
    two = _agent(settings, clock, {}, directory, worker_id="worker-2")

    assert one.claim(conn, nid, clock()) is True
    assert two.claim(conn, nid, clock()) is False
    assert get_notification(conn, nid)["locked_by"] == "test-worker"

    clock.advance(seconds=settings.notification_lock_seconds)
    assert two.claim(conn, nid, clock()) is True
    assert get_notification(conn, nid)["locked_by"] == "worker-2"


def test_stale_worker_cannot_record_after_losing_claim(conn, settings, clock, directory, make_user):
    nid = _enqueue(conn, clock, make_user(specialty_id=7))
    one = _agent(settings, clock, {}, directory)
    two = _agent(settings, clock, {}, directory, worker_id="worker-2")
    one.claim(conn, nid, clock())
    clock.advance(seconds=settings.notification_lock_seconds)
    two.claim(conn, nid, clock())

    row = get_notification(conn, nid)
    assert one._record(conn, row, DeliveryResult(ok=True)) == "lost_claim"
    assert get_notification(conn, nid)["status"] == "sending"


def test_internal_channel_writes_inbox_row(conn, settings, clock, directory, make_user, query):
    user = make_user(specialty_id=7)
    nid = _enqueue(conn, clock, user, channel="internal", template="case_assigned")
    agent = _agent(settings, clock, {"internal": InternalFeedChannel()}, directory)

    assert agent.run_once(conn).sent == 1

    inbox = query("SELECT * FROM inbox_items WHERE notification_id=%s", (nid,))
    assert len(inbox) == 1
    assert inbox[0]["user_id"] == user
    assert inbox[0]["title"] == "New case assigned"
    assert get_notification(conn, nid)["status"] == "sent"


def test_inbox_row_stamped_with_agent_clock(conn, settings, clock, directory, make_user, query):
    user = make_user(specialty_id=7)
    nid = _enqueue(conn, clock, user, channel="internal")
    clock.advance(hours=3)
    agent = _agent(settings, clock, {"internal": InternalFeedChannel(clock=clock)}, directory)

    agent.run_once(conn)

    inbox = query("SELECT created_at FROM inbox_items WHERE notification_id=%s", (nid,))
    assert inbox[0]["created_at"] == to_db_ts(clock())


def test_default_internal_channel_uses_agent_clock(settings, clock, directory):
    agent = NotificationAgent(settings=settings, directory=directory, clock=clock)
    assert agent.channels["internal"].clock is clock


class StolenClaimFeed(InternalFeedChannel):
    """Writes the inbox row, then another worker takes the row over."""

    def deliver(self, conn, notification, recipient):
        result = super().deliver(conn, notification, recipient)
        with conn.cursor() as cur:
            cur.execute("UPDATE notifications SET locked_by=%s WHERE id=%s", ("worker-2", notification["id"]))
        return result


def test_inbox_row_discarded_when_claim_is_lost(conn, settings, clock, directory, make_user, query):
    nid = _enqueue(conn, clock, make_user(specialty_id=7), channel="internal")
    agent = _agent(settings, clock, {"internal": StolenClaimFeed(clock=clock)}, directory)

    report = agent.run_once(conn)

    assert report.sent == 0
    assert query("SELECT id FROM inbox_items WHERE notification_id=%s", (nid,)) == []
    assert get_notification(conn, nid)["status"] == "sending"


def test_provider_timeout_counts_as_failed_attempt(conn, settings, clock, directory, make_user):
    nid = _enqueue(conn, clock, make_user(specialty_id=7))
    session = TimeoutSession()
    email = EmailChannel(
        api_url="https://mail.test/send",
        api_key="key",
        sender="noreply@portal.test",
        enabled=True,
        timeout_sec=2,
        session=session,
    )
    agent = _agent(settings, clock, {"email": email}, directory)

    report = agent.run_once(conn)

    row = get_notification(conn, nid)
    assert report.retried == 1
    assert row["status"] == "retry"
    assert row["last_error"].startswith("email_timeout")
    assert session.calls[0]["timeout"] == 2


def test_recipient_without_address_is_a_failed_attempt(conn, settings, clock, directory, make_user):
    nid = _enqueue(conn, clock, make_user(name="No Mail", email="", specialty_id=7))
    ghost = _enqueue(conn, clock, 424242)
    agent = _agent(settings, clock, {"email": EmailChannel(enabled=True, session=TimeoutSession())}, directory)

    agent.run_once(conn)

    assert get_notification(conn, nid)["last_error"].startswith("invalid_recipient")
    assert get_notification(conn, ghost)["last_error"].startswith("invalid_recipient")


def test_disabled_email_is_recorded_as_skipped_send(conn, settings, clock, directory, make_user):
    nid = _enqueue(conn, clock, make_user(specialty_id=7))
    agent = _agent(settings, clock, {"email": EmailChannel(enabled=False)}, directory)

    assert agent.run_once(conn).sent == 1
    assert json_loads(get_notification(conn, nid)["response"])["skipped"] is True


def test_unexpected_channel_error_is_isolated(conn, settings, clock, directory, make_user):
    user = make_user(specialty_id=7)
    bad = _enqueue(conn, clock, user, channel="sms")
    good = _enqueue(conn, clock, user, channel="email")
    channels = {"sms": FakeChannel("sms", raises=ValueError("bad payload")), "email": FakeChannel("email")}

    report = _agent(settings, clock, channels, directory).run_once(conn)

    assert report.retried == 1 and report.sent == 1
    assert get_notification(conn, bad)["last_error"].startswith("ValueError")
    assert get_notification(conn, good)["status"] == "sent"


def test_store_failure_aborts_the_batch(conn, settings, clock, directory, make_user):
    user = make_user(specialty_id=7)
    _enqueue(conn, clock, user, channel="sms")
    later = _enqueue(conn, clock, user, channel="email")
    email = FakeChannel("email")
    channels = {"sms": FakeChannel("sms", raises=sqlite3.OperationalError("disk I/O error")), "email": email}

    with pytest.raises(StoreUnavailable):
        _agent(settings, clock, channels, directory).run_once(conn)

    assert email.calls == []
    assert get_notification(conn, later)["status"] == "queued"


def test_dry_run_sends_nothing(conn, settings, clock, directory, make_user):
    nid = _enqueue(conn, clock, make_user(specialty_id=7))
    email = FakeChannel("email")

    report = _agent(settings, clock, {"email": email}, directory, notification_dry_run=True).run_once(conn)

    assert report.dry_run is True and report.claimed == 0
    assert email.calls == []
    assert get_notification(conn, nid)["status"] == "queued"
