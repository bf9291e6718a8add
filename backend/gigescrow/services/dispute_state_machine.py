"""Dispute state machine: pure logic, no DB dependency.

OPEN -> UNDER_REVIEW -> RESOLVED -> CLOSED, with the actor allowed to
drive each step.
"""

from enum import StrEnum

from gigescrow.services.errors import InvalidStateTransition


class DisputeStatus(StrEnum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class DisputeAction(StrEnum):
    START_REVIEW = "start_review"
    RESOLVE = "resolve"
    CLOSE = "close"


class DisputeType(StrEnum):
    REFUND_REQUEST = "REFUND_REQUEST"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    PAYMENT_ISSUE = "PAYMENT_ISSUE"
    CONTRACT_BREACH = "CONTRACT_BREACH"
    OTHER = "OTHER"


class DisputePriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ResolutionOutcome(StrEnum):
    FUNDS_RELEASED = "FUNDS_RELEASED"
    REFUNDED = "REFUNDED"
    PARTIAL_SETTLEMENT = "PARTIAL_SETTLEMENT"


class Actor(StrEnum):
    PARTY = "party"
    ADMIN = "admin"
    SYSTEM = "system"


# (current_status, action) -> (new_status, allowed actors)
TRANSITIONS: dict[tuple[DisputeStatus, DisputeAction], tuple[DisputeStatus, frozenset[Actor]]] = {
    (DisputeStatus.OPEN, DisputeAction.START_REVIEW): (
        DisputeStatus.UNDER_REVIEW,
        frozenset({Actor.ADMIN, Actor.SYSTEM}),
    ),
    (DisputeStatus.UNDER_REVIEW, DisputeAction.RESOLVE): (
        DisputeStatus.RESOLVED,
        frozenset({Actor.ADMIN}),
    ),
    (DisputeStatus.RESOLVED, DisputeAction.CLOSE): (
        DisputeStatus.CLOSED,
        frozenset({Actor.ADMIN, Actor.SYSTEM}),
    ),
}

ACTIVE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
})

TERMINAL_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.RESOLVED,
    DisputeStatus.CLOSED,
})

# Days until a resolution is expected, per priority
RESOLUTION_DAYS: dict[DisputePriority, int] = {
    DisputePriority.HIGH: 5,
    DisputePriority.MEDIUM: 10,
    DisputePriority.LOW: 15,
}

HIGH_PRIORITY_ABOVE = 50_000
LOW_PRIORITY_BELOW = 5_000


def priority_for_amount(amount: int) -> DisputePriority:
    """> 50,000 is HIGH, < 5,000 is LOW, anything in between is MEDIUM."""
    if amount > HIGH_PRIORITY_ABOVE:
        return DisputePriority.HIGH
    if amount < LOW_PRIORITY_BELOW:
        return DisputePriority.LOW
    return DisputePriority.MEDIUM


_ACTION_NAMES = frozenset(a.value for a in DisputeAction)


def _parse(current: str, actor: str) -> tuple[DisputeStatus, Actor] | None:
    try:
        return DisputeStatus(current), Actor(actor)
    except ValueError:
        return None


def validate_transition(current: str, action: str, actor: str) -> DisputeStatus:
    """Status a dispute moves to when ``actor`` performs ``action`` on it.

    Unknown statuses, actions or actors, steps missing from the workflow and
    steps reserved for another actor all raise InvalidStateTransition.
    """
    parsed = _parse(current, actor)
    if parsed is None or action not in _ACTION_NAMES:
        raise InvalidStateTransition(current, action, actor)
    status, who = parsed

    step = TRANSITIONS.get((status, DisputeAction(action)))
    if step is None or who not in step[1]:
        raise InvalidStateTransition(current, action, actor)
    return step[0]


def get_available_actions(current: str, actor: str) -> list[str]:
    """Workflow steps ``actor`` may take next; parties never drive a dispute."""
    parsed = _parse(current, actor)
    if parsed is None:
        return []
    status, who = parsed
    return [
        action.value
        for (from_status, action), (_, actors) in TRANSITIONS.items()
        if from_status == status and who in actors
    ]
