from __future__ import annotations

CASE_PENDING = "pending"
CASE_ASSIGNED = "assigned"
CASE_IN_PROGRESS = "in-progress"
CASE_RESOLVED = "resolved"
CASE_CLOSED = "closed"

CASE_STATUSES = (CASE_PENDING, CASE_ASSIGNED, CASE_IN_PROGRESS, CASE_RESOLVED, CASE_CLOSED)

# assigned_lawyer_id is set exactly when the case is in one of these.
ASSIGNED_STATUSES = frozenset({CASE_ASSIGNED, CASE_IN_PROGRESS, CASE_RESOLVED, CASE_CLOSED})
OFFER_ACCEPTING_STATUSES = frozenset({CASE_PENDING})

_TRANSITIONS: dict[str, frozenset[str]] = {
    CASE_PENDING: frozenset({CASE_ASSIGNED}),
    CASE_ASSIGNED: frozenset({CASE_IN_PROGRESS, CASE_CLOSED}),
    CASE_IN_PROGRESS: frozenset({CASE_RESOLVED, CASE_CLOSED}),
    CASE_RESOLVED: frozenset({CASE_CLOSED}),
    CASE_CLOSED: frozenset(),
}


def normalize_case_status(raw: str | None) -> str:
    value = str(raw or "").strip().lower().replace("_", "-")
    return value if value in CASE_STATUSES else ""


def transition_allowed(from_status: str, to_status: str) -> bool:
    from_code = normalize_case_status(from_status)
    to_code = normalize_case_status(to_status)
    if not from_code or not to_code or from_code == to_code:
        return False
    return to_code in _TRANSITIONS.get(from_code, frozenset())


def owner_may_apply(to_status: str) -> bool:
    """Owners can only close a case."""
    return normalize_case_status(to_status) == CASE_CLOSED
