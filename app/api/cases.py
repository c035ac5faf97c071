from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_current_user, get_event_bus, require_role
from app.db.session import get_db
from app.realtime.events import DomainEventBus
from app.schemas.matching import CaseStatusChange, OfferCreate, ProposalRespond, RequestCreate
from app.services.case_matching import (
    case_history,
    change_case_status,
    list_proposals,
    respond,
    serialize_case,
    serialize_proposal,
    submit_offer,
    submit_request,
)
from app.services.identity import ROLE_CITIZEN, ROLE_LAWYER, Identity
from app.services.store import store_errors

router = APIRouter()


@router.post("/{case_id}/offers", status_code=201)
def create_offer(
    case_id: str,
    payload: OfferCreate,
    db: Session = Depends(get_db),
    user: Identity = Depends(require_role(ROLE_LAWYER)),
    events: DomainEventBus = Depends(get_event_bus),
):
    with store_errors(db):
        row = submit_offer(db, case_id=case_id, lawyer_id=user.user_id, message=payload.message, events=events)
    return serialize_proposal(row)


@router.post("/{case_id}/requests", status_code=201)
def create_request(
    case_id: str,
    payload: RequestCreate,
    db: Session = Depends(get_db),
    user: Identity = Depends(require_role(ROLE_CITIZEN)),
    events: DomainEventBus = Depends(get_event_bus),
):
    with store_errors(db):
        row = submit_request(
            db,
            case_id=case_id,
            citizen_id=user.user_id,
            lawyer_id=payload.lawyer_id,
            message=payload.message,
            events=events,
        )
    return serialize_proposal(row)


@router.post("/{case_id}/proposals/{proposal_id}/respond")
def respond_to_proposal(
    case_id: str,
    proposal_id: str,
    payload: ProposalRespond,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
    events: DomainEventBus = Depends(get_event_bus),
):
    with store_errors(db):
        result = respond(
            db,
            case_id=case_id,
            proposal_id=proposal_id,
            actor_id=user.user_id,
            action=payload.action,
            events=events,
        )
    return {
        "proposal": serialize_proposal(result.proposal),
        "case": serialize_case(result.legal_case),
        "channel_id": result.channel_id,
        "rejected_proposal_ids": result.rejected_proposal_ids,
    }


@router.get("/{case_id}/proposals")
def get_proposals(
    case_id: str,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        rows = list_proposals(db, case_id=case_id, actor_id=user.user_id, actor_role=user.role)
    return {"rows": [serialize_proposal(row) for row in rows], "total": len(rows)}


@router.post("/{case_id}/status")
def update_case_status(
    case_id: str,
    payload: CaseStatusChange,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
    events: DomainEventBus = Depends(get_event_bus),
):
    with store_errors(db):
        row = change_case_status(
            db,
            case_id=case_id,
            actor_id=user.user_id,
            to_status=payload.status,
            comment=payload.comment,
            events=events,
        )
        history = case_history(db, row.id)
    return {
        "case": serialize_case(row),
        "history": [
            {
                "from_status": item.from_status,
                "to_status": item.to_status,
                "changed_by": str(item.changed_by) if item.changed_by else None,
                "comment": item.comment,
                "created_at": item.created_at.isoformat() if item.created_at else None,
            }
            for item in history
        ],
    }
