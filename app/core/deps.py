from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.realtime.events import DomainEventBus
from app.services.errors import Forbidden, Unauthenticated
from app.services.identity import Identity, verify_credential
from app.services.store import store_errors

bearer = HTTPBearer(auto_error=False)

def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    db: Session = Depends(get_db),
) -> Identity:
    if not creds:
        raise Unauthenticated("Authentication token required")
    with store_errors(db):
        return verify_credential(db, creds.credentials)

def require_role(*roles: str):
    def _inner(user: Identity = Depends(get_current_user)) -> Identity:
        if user.role not in roles:
            raise Forbidden("Insufficient permissions")
        return user
    return _inner

def get_event_bus(request: Request) -> DomainEventBus:
    return request.app.state.event_bus
