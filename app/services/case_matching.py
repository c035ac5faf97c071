from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.case_proposal import CaseProposal
from app.models.case_status_history import CaseStatusHistory
from app.models.common import utcnow
from app.models.legal_case import LegalCase
from app.models.user import User
from app.realtime.events import (
    CaseAssigned,
    CaseStatusChanged,
    DomainEventBus,
    ProposalRejected,
    ProposalSubmitted,
    publish_event,
)
from app.services.case_status_flow import (
    CASE_ASSIGNED,
    CASE_CLOSED,
    CASE_PENDING,
    OFFER_ACCEPTING_STATUSES,
    normalize_case_status,
    owner_may_apply,
    transition_allowed,
)
from app.services.channel_provisioner import (
    CHANNEL_ACTIVE,
    channel_id_for_case,
    close_channel,
    ensure_channel,
)
from app.services.errors import (
    AlreadyOffered,
    AlreadyResolved,
    Conflict,
    Forbidden,
    InvalidPayload,
    NotAvailable,
    NotFound,
)
from app.services.identity import ROLE_ADMIN, ROLE_CITIZEN, ROLE_LAWYER

_LOG = logging.getLogger("app.matching")

PROPOSAL_OFFER = "offer"
PROPOSAL_REQUEST = "request"

PROPOSAL_PENDING = "pending"
PROPOSAL_ACCEPTED = "accepted"
PROPOSAL_REJECTED = "rejected"

ACTION_ACCEPT = "accept"
ACTION_REJECT = "reject"

DEFAULT_REQUEST_MESSAGE = "I would like you to handle my legal case."


@dataclass(frozen=True)
class MatchState:
    """What a writer read before its conditional update."""

    case_id: uuid.UUID
    case_kind: str
    citizen_id: uuid.UUID
    assigned_lawyer_id: uuid.UUID | None
    status: str
    version: int
    proposal_id: uuid.UUID | None = None
    proposal_kind: str | None = None
    proposal_lawyer_id: uuid.UUID | None = None
    proposal_status: str | None = None


@dataclass
class RespondResult:
    proposal: CaseProposal
    legal_case: LegalCase
    channel_id: str | None = None
    rejected_proposal_ids: list[str] = field(default_factory=list)


def _uuid_or_404(raw: Any, detail: str) -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError) as exc:
        raise NotFound(detail) from exc


def _read_state(db: Session, case_id: uuid.UUID, proposal_id: uuid.UUID | None = None) -> MatchState:
    legal_case = db.get(LegalCase, case_id, populate_existing=True)
    if legal_case is None:
        raise NotFound("Case not found")
    proposal = None
    if proposal_id is not None:
        proposal = db.get(CaseProposal, proposal_id, populate_existing=True)
        if proposal is None or proposal.case_id != legal_case.id:
            raise NotFound("Request not found")
    return MatchState(
        case_id=legal_case.id,
        case_kind=legal_case.case_kind,
        citizen_id=legal_case.citizen_id,
        assigned_lawyer_id=legal_case.assigned_lawyer_id,
        status=legal_case.status,
        version=int(legal_case.version or 0),
        proposal_id=proposal.id if proposal is not None else None,
        proposal_kind=proposal.kind if proposal is not None else None,
        proposal_lawyer_id=proposal.lawyer_id if proposal is not None else None,
        proposal_status=proposal.status if proposal is not None else None,
    )


def _bump_version(db: Session, state: MatchState, **values: Any) -> bool:
    now = utcnow()
    stmt = (
        update(LegalCase)
        .where(LegalCase.id == state.case_id, LegalCase.version == state.version)
        .values(version=state.version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return bool(db.execute(stmt).rowcount or 0)


def _ensure_open_for_proposals(state: MatchState) -> None:
    if state.assigned_lawyer_id is not None:
        raise NotAvailable("Case is already assigned to a lawyer")
    if state.status not in OFFER_ACCEPTING_STATUSES:
        raise NotAvailable("Case is not available for offers")


def _active_lawyer(db: Session, lawyer_id: uuid.UUID) -> User | None:
    lawyer = db.get(User, lawyer_id)
    if lawyer is None or lawyer.role != ROLE_LAWYER or not lawyer.is_active or not lawyer.lawyer_verified:
        return None
    return lawyer


def _has_pending(db: Session, case_id: uuid.UUID, kind: str, lawyer_id: uuid.UUID) -> bool:
    row = (
        db.query(CaseProposal.id)
        .filter(
            CaseProposal.case_id == case_id,
            CaseProposal.kind == kind,
            CaseProposal.lawyer_id == lawyer_id,
            CaseProposal.status == PROPOSAL_PENDING,
        )
        .first()
    )
    return row is not None


def _max_attempts() -> int:
    return max(int(settings.MATCHER_MAX_RETRIES or 1), 1)


def _append_proposal(
    db: Session,
    *,
    case_id: uuid.UUID,
    kind: str,
    lawyer_id: uuid.UUID,
    citizen_check: uuid.UUID | None,
    message: str | None,
    events: DomainEventBus | None,
) -> CaseProposal:
    for _ in range(_max_attempts()):
        state = _read_state(db, case_id)
        if citizen_check is not None and state.citizen_id != citizen_check:
            raise Forbidden("Case not found or access denied")
        _ensure_open_for_proposals(state)
        if _has_pending(db, state.case_id, kind, lawyer_id):
            if kind == PROPOSAL_OFFER:
                raise AlreadyOffered("You have already offered help for this case")
            raise AlreadyOffered("You have already requested this lawyer for this case")

        # Serializes against a concurrent accept: no proposal lands on an assigned case.
        if not _bump_version(db, state):
            db.rollback()
            continue

        now = utcnow()
        row = CaseProposal(
            case_id=state.case_id,
            kind=kind,
            citizen_id=state.citizen_id,
            lawyer_id=lawyer_id,
            message=message,
            status=PROPOSAL_PENDING,
            requested_at=now,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        _LOG.info("proposal submitted case=%s kind=%s lawyer=%s id=%s", state.case_id, kind, lawyer_id, row.id)
        publish_event(
            events,
            ProposalSubmitted(
                case_id=str(state.case_id),
                case_kind=state.case_kind,
                proposal_id=str(row.id),
                kind=kind,
                citizen_id=str(state.citizen_id),
                lawyer_id=str(lawyer_id),
                message=message,
            ),
        )
        return row
    raise Conflict()


def submit_offer(
    db: Session,
    *,
    case_id: Any,
    lawyer_id: Any,
    message: str | None = None,
    events: DomainEventBus | None = None,
) -> CaseProposal:
    case_uuid = _uuid_or_404(case_id, "Case not found")
    lawyer_uuid = _uuid_or_404(lawyer_id, "Lawyer not found")
    if _active_lawyer(db, lawyer_uuid) is None:
        raise Forbidden("Only active verified lawyers can offer help")
    return _append_proposal(
        db,
        case_id=case_uuid,
        kind=PROPOSAL_OFFER,
        lawyer_id=lawyer_uuid,
        citizen_check=None,
        message=_clean_message(message),
        events=events,
    )


def submit_request(
    db: Session,
    *,
    case_id: Any,
    citizen_id: Any,
    lawyer_id: Any,
    message: str | None = None,
    events: DomainEventBus | None = None,
) -> CaseProposal:
    case_uuid = _uuid_or_404(case_id, "Case not found")
    citizen_uuid = _uuid_or_404(citizen_id, "Case not found or access denied")
    lawyer_uuid = _uuid_or_404(lawyer_id, "Lawyer not found or not verified")
    if _active_lawyer(db, lawyer_uuid) is None:
        raise NotFound("Lawyer not found or not verified")
    return _append_proposal(
        db,
        case_id=case_uuid,
        kind=PROPOSAL_REQUEST,
        lawyer_id=lawyer_uuid,
        citizen_check=citizen_uuid,
        message=_clean_message(message) or DEFAULT_REQUEST_MESSAGE,
        events=events,
    )


def _ensure_counterpart(state: MatchState, actor_id: uuid.UUID) -> None:
    if state.proposal_kind == PROPOSAL_OFFER:
        allowed = actor_id == state.citizen_id
    else:
        allowed = actor_id == state.proposal_lawyer_id
    if not allowed:
        raise Forbidden("Access denied - you cannot respond to this request")


def _normalize_action(raw: Any) -> str:
    action = str(raw or "").strip().lower()
    if action not in {ACTION_ACCEPT, ACTION_REJECT}:
        raise InvalidPayload('Invalid action. Use "accept" or "reject"')
    return action


def respond(
    db: Session,
    *,
    case_id: Any,
    proposal_id: Any,
    actor_id: Any,
    action: str,
    events: DomainEventBus | None = None,
) -> RespondResult:
    normalized_action = _normalize_action(action)
    case_uuid = _uuid_or_404(case_id, "Case not found")
    proposal_uuid = _uuid_or_404(proposal_id, "Request not found")
    actor_uuid = _uuid_or_404(actor_id, "Request not found")

    for attempt in range(_max_attempts()):
        state = _read_state(db, case_uuid, proposal_uuid)
        _ensure_counterpart(state, actor_uuid)
        if state.proposal_status != PROPOSAL_PENDING:
            raise AlreadyResolved()

        if normalized_action == ACTION_REJECT:
            if _commit_reject(db, state):
                proposal = db.get(CaseProposal, proposal_uuid)
                legal_case = db.get(LegalCase, case_uuid)
                publish_event(
                    events,
                    ProposalRejected(
                        case_id=str(state.case_id),
                        case_kind=state.case_kind,
                        proposal_id=str(state.proposal_id),
                        kind=str(state.proposal_kind),
                        citizen_id=str(state.citizen_id),
                        lawyer_id=str(state.proposal_lawyer_id),
                        responder_id=str(actor_uuid),
                    ),
                )
                return RespondResult(proposal=proposal, legal_case=legal_case)
            db.rollback()
            continue

        if state.assigned_lawyer_id is not None or state.status not in OFFER_ACCEPTING_STATUSES:
            raise AlreadyResolved("Case already has an assigned lawyer")
        try:
            channel_id, rejected_ids = _commit_accept(db, state, actor_uuid)
        except Conflict:
            db.rollback()
            _LOG.info("accept lost a race case=%s proposal=%s attempt=%s", case_uuid, proposal_uuid, attempt + 1)
            continue

        proposal = db.get(CaseProposal, proposal_uuid)
        legal_case = db.get(LegalCase, case_uuid)
        _LOG.info(
            "case assigned case=%s lawyer=%s proposal=%s rejected=%s",
            state.case_id,
            state.proposal_lawyer_id,
            state.proposal_id,
            len(rejected_ids),
        )
        publish_event(
            events,
            CaseAssigned(
                case_id=str(state.case_id),
                case_kind=state.case_kind,
                citizen_id=str(state.citizen_id),
                lawyer_id=str(state.proposal_lawyer_id),
                proposal_id=str(state.proposal_id),
                channel_id=channel_id,
                rejected_proposal_ids=tuple(rejected_ids),
            ),
        )
        return RespondResult(
            proposal=proposal,
            legal_case=legal_case,
            channel_id=channel_id,
            rejected_proposal_ids=rejected_ids,
        )
    raise Conflict()


def _commit_reject(db: Session, state: MatchState) -> bool:
    now = utcnow()
    updated = db.execute(
        update(CaseProposal)
        .where(CaseProposal.id == state.proposal_id, CaseProposal.status == PROPOSAL_PENDING)
        .values(status=PROPOSAL_REJECTED, responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    if not updated:
        return False
    db.commit()
    return True


def _commit_accept(db: Session, state: MatchState, actor_id: uuid.UUID) -> tuple[str, list[str]]:
    """Assign, cross-reject and provision the channel in one transaction."""
    now = utcnow()
    lawyer_id = state.proposal_lawyer_id
    claimed = db.execute(
        update(LegalCase)
        .where(
            LegalCase.id == state.case_id,
            LegalCase.version == state.version,
            LegalCase.assigned_lawyer_id.is_(None),
            LegalCase.status.in_(OFFER_ACCEPTING_STATUSES),
        )
        .values(
            assigned_lawyer_id=lawyer_id,
            status=CASE_ASSIGNED,
            version=state.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    if not claimed:
        raise Conflict()

    accepted = db.execute(
        update(CaseProposal)
        .where(CaseProposal.id == state.proposal_id, CaseProposal.status == PROPOSAL_PENDING)
        .values(status=PROPOSAL_ACCEPTED, responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    if not accepted:
        raise Conflict()

    sibling_ids = [
        proposal_id
        for (proposal_id,) in db.query(CaseProposal.id)
        .filter(
            CaseProposal.case_id == state.case_id,
            CaseProposal.id != state.proposal_id,
            CaseProposal.status == PROPOSAL_PENDING,
        )
        .all()
    ]
    if sibling_ids:
        db.execute(
            update(CaseProposal)
            .where(CaseProposal.id.in_(sibling_ids), CaseProposal.status == PROPOSAL_PENDING)
            .values(status=PROPOSAL_REJECTED, responded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    db.add(
        CaseStatusHistory(
            case_id=state.case_id,
            from_status=state.status,
            to_status=CASE_ASSIGNED,
            changed_by=actor_id,
            comment="Lawyer assigned",
        )
    )
    channel, _ = ensure_channel(
        db,
        channel_id=channel_id_for_case(state.case_kind, state.case_id),
        channel_type=state.case_kind,
        participants=[(state.citizen_id, ROLE_CITIZEN), (lawyer_id, ROLE_LAWYER)],
        status=CHANNEL_ACTIVE,
        case_kind=state.case_kind,
        case_id=state.case_id,
    )
    channel_id = channel.channel_id
    db.commit()
    return channel_id, [str(proposal_id) for proposal_id in sibling_ids]


def change_case_status(
    db: Session,
    *,
    case_id: Any,
    actor_id: Any,
    to_status: str,
    comment: str | None = None,
    events: DomainEventBus | None = None,
) -> LegalCase:
    case_uuid = _uuid_or_404(case_id, "Case not found")
    actor_uuid = _uuid_or_404(actor_id, "Case not found")
    target = normalize_case_status(to_status)
    if not target or target == CASE_PENDING:
        raise InvalidPayload("Unknown case status")

    for _ in range(_max_attempts()):
        state = _read_state(db, case_uuid)
        is_lawyer = state.assigned_lawyer_id is not None and actor_uuid == state.assigned_lawyer_id
        is_owner = actor_uuid == state.citizen_id
        if not is_lawyer and not (is_owner and owner_may_apply(target)):
            raise Forbidden("Access denied - you cannot change this case")
        if not transition_allowed(state.status, target):
            raise NotAvailable(f"Cannot move case from {state.status} to {target}")

        if not _bump_version(db, state, status=target):
            db.rollback()
            continue
        db.add(
            CaseStatusHistory(
                case_id=state.case_id,
                from_status=state.status,
                to_status=target,
                changed_by=actor_uuid,
                comment=(str(comment).strip()[:400] or None) if comment else None,
            )
        )
        if target == CASE_CLOSED:
            close_channel(db, channel_id_for_case(state.case_kind, state.case_id))
        db.commit()
        legal_case = db.get(LegalCase, case_uuid, populate_existing=True)
        _LOG.info("case status case=%s %s -> %s by=%s", state.case_id, state.status, target, actor_uuid)
        publish_event(
            events,
            CaseStatusChanged(
                case_id=str(state.case_id),
                case_kind=state.case_kind,
                citizen_id=str(state.citizen_id),
                lawyer_id=str(state.assigned_lawyer_id) if state.assigned_lawyer_id else None,
                from_status=state.status,
                to_status=target,
                changed_by=str(actor_uuid),
            ),
        )
        return legal_case
    raise Conflict()


def list_proposals(db: Session, *, case_id: Any, actor_id: Any, actor_role: str) -> list[CaseProposal]:
    case_uuid = _uuid_or_404(case_id, "Case not found")
    actor_uuid = _uuid_or_404(actor_id, "Case not found")
    legal_case = db.get(LegalCase, case_uuid)
    if legal_case is None:
        raise NotFound("Case not found")
    query = db.query(CaseProposal).filter(CaseProposal.case_id == case_uuid)
    if actor_role == ROLE_ADMIN or legal_case.citizen_id == actor_uuid:
        pass
    elif actor_role == ROLE_LAWYER:
        query = query.filter(CaseProposal.lawyer_id == actor_uuid)
    else:
        raise Forbidden("Case not found or access denied")
    return query.order_by(CaseProposal.requested_at.asc(), CaseProposal.id.asc()).all()


def case_history(db: Session, case_id: uuid.UUID) -> list[CaseStatusHistory]:
    return (
        db.query(CaseStatusHistory)
        .filter(CaseStatusHistory.case_id == case_id)
        .order_by(CaseStatusHistory.created_at.asc(), CaseStatusHistory.id.asc())
        .all()
    )


def serialize_proposal(row: CaseProposal) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "case_id": str(row.case_id),
        "kind": row.kind,
        "citizen_id": str(row.citizen_id),
        "lawyer_id": str(row.lawyer_id),
        "message": row.message,
        "status": row.status,
        "requested_at": row.requested_at.isoformat() if row.requested_at else None,
        "responded_at": row.responded_at.isoformat() if row.responded_at else None,
    }


def serialize_case(row: LegalCase) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "case_kind": row.case_kind,
        "title": row.title,
        "citizen_id": str(row.citizen_id),
        "assigned_lawyer_id": str(row.assigned_lawyer_id) if row.assigned_lawyer_id else None,
        "status": row.status,
        "version": int(row.version or 0),
    }


def _clean_message(message: str | None) -> str | None:
    text = str(message or "").strip()
    return text or None
