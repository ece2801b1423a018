# review_agents/errors.py
from __future__ import annotations

from typing import Any, Optional


class ReviewAgentsError(Exception):
    """Base class for errors raised by the case SLA engine."""


class CaseNotFound(ReviewAgentsError):
    def __init__(self, case_id: Any):
        super().__init__(f"Case not found: {case_id}")
        self.case_id = case_id


class InvalidTransition(ReviewAgentsError):
    def __init__(self, from_status: Any, to_status: Any, detail: Optional[str] = None):
        msg = f"Cannot transition from {from_status} to {to_status}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.from_status = from_status
        self.to_status = to_status


class InvalidStatus(ReviewAgentsError):
    def __init__(self, value: Any):
        super().__init__(f"Unknown case status: {value!r}")
        self.value = value


class InvalidRecipient(ReviewAgentsError):
    def __init__(self, value: Any = None):
        super().__init__(f"Invalid notification recipient: {value!r}")
        self.value = value


class DeliveryFailure(ReviewAgentsError):
    """Transient channel error; the dispatcher retries it with backoff."""

    def __init__(self, error: str):
        super().__init__(error)
        self.error = error


class StoreUnavailable(ReviewAgentsError):
    """The persistent store cannot be reached; the current pass must abort."""
