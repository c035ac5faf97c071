from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from jose import JWTError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import decode_jwt
from app.models.user import User
from app.services.errors import Unauthenticated

_LOG = logging.getLogger("app.identity")

ROLE_CITIZEN = "citizen"
ROLE_LAWYER = "lawyer"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    user_id: uuid.UUID
    role: str
    name: str
    active: bool = True

    @property
    def key(self) -> str:
        return str(self.user_id)


def extract_bearer(raw: str | None) -> str | None:
    value = str(raw or "").strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if token and scheme.lower() == "bearer":
        return token.strip() or None
    return value


def verify_credential(db: Session, credential: str | None) -> Identity:
    token = str(credential or "").strip()
    if not token:
        raise Unauthenticated("Authentication token required")
    try:
        claims = decode_jwt(token, settings.ACCESS_JWT_SECRET)
    except JWTError as exc:
        _LOG.info("credential rejected: %s", exc)
        raise Unauthenticated("Authentication failed") from exc

    try:
        user_id = uuid.UUID(str(claims.get("sub") or ""))
    except ValueError as exc:
        raise Unauthenticated("Authentication failed") from exc

    user = db.get(User, user_id)
    if user is None or not bool(user.is_active):
        raise Unauthenticated("User not found or inactive")
    return Identity(user_id=user.id, role=str(user.role or "").lower(), name=user.name, active=bool(user.is_active))
