from datetime import datetime, timedelta, timezone
from jose import jwt

from app.core.config import settings

def create_jwt(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    data = payload.copy()
    data.update({"iat": int(now.timestamp()), "exp": int((now + expires_delta).timestamp())})
    return jwt.encode(data, secret, algorithm="HS256")

def decode_jwt(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=["HS256"])

def create_access_token(user_id, role: str, expires_delta: timedelta | None = None) -> str:
    ttl = expires_delta if expires_delta is not None else timedelta(minutes=settings.ACCESS_JWT_TTL_MINUTES)
    return create_jwt({"sub": str(user_id), "role": role}, settings.ACCESS_JWT_SECRET, ttl)
