# review_agents/case_status.py
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from .errors import InvalidStatus, InvalidTransition
from .events import STATUS_PREFIX
from .utils import normalize_token


class CaseStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PAID = "PAID"
    ASSIGNED = "ASSIGNED"
    IN_REVIEW = "IN_REVIEW"
    REJECTED_FILES = "REJECTED_FILES"
    COMPLETED = "COMPLETED"
    SLA_BREACH = "SLA_BREACH"
    REASSIGNED = "REASSIGNED"

    def __str__(self) -> str:
        return self.value


S = CaseStatus

TRANSITIONS: Dict[CaseStatus, FrozenSet[CaseStatus]] = {
    S.DRAFT: frozenset({S.SUBMITTED}),
    S.SUBMITTED: frozenset({S.PAID}),
    S.PAID: frozenset({S.ASSIGNED}),
    S.ASSIGNED: frozenset({S.IN_REVIEW, S.REJECTED_FILES, S.REASSIGNED}),
    S.IN_REVIEW: frozenset({S.COMPLETED, S.REJECTED_FILES}),
    S.REJECTED_FILES: frozenset({S.ASSIGNED, S.IN_REVIEW}),
    S.SLA_BREACH: frozenset({S.REASSIGNED}),
    S.REASSIGNED: frozenset({S.ASSIGNED, S.IN_REVIEW}),
    S.COMPLETED: frozenset(),
}

INITIAL_STATUS = S.DRAFT
TERMINAL_STATUSES: FrozenSet[CaseStatus] = frozenset({S.COMPLETED})

# Edges taken only by the dedicated system operations, outside the generic table.
BREACHABLE_FROM: FrozenSet[CaseStatus] = frozenset({S.ASSIGNED, S.IN_REVIEW})
REASSIGNABLE_FROM: FrozenSet[CaseStatus] = frozenset({S.ASSIGNED, S.IN_REVIEW, S.SLA_BREACH})

# "Active" for the sweeper's breach query.
SLA_ACTIVE_STATUSES: FrozenSet[CaseStatus] = frozenset({S.ASSIGNED, S.IN_REVIEW})

# Statuses that count toward a doctor's open-case load.
ACTIVE_LOAD_STATUSES: FrozenSet[CaseStatus] = frozenset(
    {S.ASSIGNED, S.IN_REVIEW, S.REJECTED_FILES, S.SLA_BREACH}
)

# Loose spellings accepted at the boundary.
ALIASES: Mapping[str, CaseStatus] = {
    "NEW": S.SUBMITTED,
    "PENDING": S.SUBMITTED,
    "ACCEPTED": S.ASSIGNED,
    "IN_PROGRESS": S.IN_REVIEW,
    "INREVIEW": S.IN_REVIEW,
    "FILES_REQUESTED": S.REJECTED_FILES,
    "FILE_REQUESTED": S.REJECTED_FILES,
    "MORE_INFO_NEEDED": S.REJECTED_FILES,
    "BREACHED": S.SLA_BREACH,
    "SLA_BREACHED": S.SLA_BREACH,
    "BREACHED_SLA": S.SLA_BREACH,
    "DELAYED": S.SLA_BREACH,
    "OVERDUE": S.SLA_BREACH,
    "DONE": S.COMPLETED,
    "FINISHED": S.COMPLETED,
}


def normalize_status(value) -> CaseStatus:
    """
    Map any accepted external spelling onto the canonical enum.

    "in review", "in-review", "InReview" and "IN_PROGRESS" all become
    CaseStatus.IN_REVIEW. Anything unrecognised raises InvalidStatus.
    """
    if isinstance(value, CaseStatus):
        return value
    token = normalize_token(str(value) if value is not None else "")
    if not token:
        raise InvalidStatus(value)
    if token in CaseStatus.__members__:
        return CaseStatus[token]
    alias = ALIASES.get(token) or ALIASES.get(token.replace("_", ""))
    if alias is None:
        raise InvalidStatus(value)
    return alias


def can_transition(from_status: CaseStatus, to_status: CaseStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def is_terminal(status: CaseStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_legal_edge(from_status: CaseStatus, to_status: CaseStatus) -> bool:
    """Table edges plus the breach and reassignment edges the system takes itself."""
    if can_transition(from_status, to_status):
        return True
    if to_status == S.SLA_BREACH:
        return from_status in BREACHABLE_FROM
    if to_status == S.REASSIGNED:
        return from_status in REASSIGNABLE_FROM
    return False


def replay_status(event_types: Iterable[str], initial: Optional[CaseStatus] = None) -> CaseStatus:
    """
    Rebuild a case's status from its ordered audit trail.

    Only `status:<X>` events move the state; every step must be a legal
    edge, otherwise InvalidTransition is raised for the offending step.
    """
    current = initial or INITIAL_STATUS
    for event_type in event_types:
        if not event_type or not event_type.startswith(STATUS_PREFIX):
            continue
        target = normalize_status(event_type[len(STATUS_PREFIX):])
        if target == current:
            continue
        if not is_legal_edge(current, target):
            raise InvalidTransition(current.value, target.value, "audit replay")
        current = target
    return current
