from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any

import redis

from app.core.config import settings

_LOG = logging.getLogger("app.presence")

_redis_client: redis.Redis | None = None
_redis_lock = threading.Lock()

_memory_lock = threading.Lock()
_memory_state: dict[str, dict[str, dict[str, Any]]] = {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _get_redis_client() -> redis.Redis | None:
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    with _redis_lock:
        if _redis_client is not None:
            return _redis_client
        try:
            client = redis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_timeout=0.25,
                socket_connect_timeout=0.25,
            )
            client.ping()
            _redis_client = client
            return _redis_client
        except Exception:
            _LOG.warning("Redis presence unavailable; fallback to in-memory presence")
            _redis_client = None
            return None


def _channel_users_key(channel_id: str) -> str:
    return f"chat:typing:channel:{channel_id}:users"


def _user_payload_key(channel_id: str, user_id: str) -> str:
    return f"chat:typing:channel:{channel_id}:user:{user_id}"


def set_typing(
    *,
    channel_id: str,
    user_id: str,
    name: str,
    role: str,
    typing: bool,
    ttl_seconds: int | None = None,
) -> None:
    channel_key = str(channel_id or "").strip()
    user_key = str(user_id or "").strip()
    if not channel_key or not user_key:
        return

    ttl = max(2, int(ttl_seconds or settings.TYPING_TTL_SECONDS))
    payload = None
    if typing:
        payload = {
            "user_id": user_key,
            "name": str(name or "").strip() or "Participant",
            "role": str(role or "").strip().lower() or "unknown",
            "updated_at": _utc_now().isoformat(),
        }

    client = _get_redis_client()
    if client is not None:
        users_key = _channel_users_key(channel_key)
        payload_key = _user_payload_key(channel_key, user_key)
        try:
            pipe = client.pipeline()
            if payload is None:
                pipe.delete(payload_key)
                pipe.srem(users_key, user_key)
            else:
                pipe.sadd(users_key, user_key)
                pipe.setex(payload_key, ttl, json.dumps(payload))
                pipe.expire(users_key, max(60, ttl * 8))
            pipe.execute()
            return
        except redis.RedisError:
            _LOG.warning("Redis presence write failed channel=%s", channel_key)

    with _memory_lock:
        users = _memory_state.setdefault(channel_key, {})
        if payload is None:
            users.pop(user_key, None)
            if not users:
                _memory_state.pop(channel_key, None)
            return
        users[user_key] = {**payload, "expires_at": _utc_now().timestamp() + ttl}


def list_typing(*, channel_id: str, exclude_user_id: str | None = None) -> list[dict[str, Any]]:
    channel_key = str(channel_id or "").strip()
    if not channel_key:
        return []
    excluded = str(exclude_user_id or "").strip()

    client = _get_redis_client()
    if client is not None:
        users_key = _channel_users_key(channel_key)
        try:
            members = [str(member) for member in (client.smembers(users_key) or [])]
            if not members:
                return []
            rows = client.mget([_user_payload_key(channel_key, member) for member in members])
            stale: list[str] = []
            result: list[dict[str, Any]] = []
            for member, raw in zip(members, rows):
                if not raw:
                    stale.append(member)
                    continue
                try:
                    payload = json.loads(str(raw))
                except ValueError:
                    stale.append(member)
                    continue
                if excluded and member == excluded:
                    continue
                result.append(_public_entry(member, payload))
            if stale:
                client.srem(users_key, *stale)
            result.sort(key=lambda item: item["updated_at"], reverse=True)
            return result
        except redis.RedisError:
            _LOG.warning("Redis presence read failed channel=%s", channel_key)

    now_ts = _utc_now().timestamp()
    with _memory_lock:
        users = _memory_state.get(channel_key) or {}
        expired = [key for key, payload in users.items() if float(payload.get("expires_at") or 0) <= now_ts]
        for key in expired:
            users.pop(key, None)
        if not users:
            _memory_state.pop(channel_key, None)
        result = [_public_entry(key, payload) for key, payload in users.items() if not (excluded and key == excluded)]
    result.sort(key=lambda item: item["updated_at"], reverse=True)
    return result


def _public_entry(user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "name": str(payload.get("name") or "Participant"),
        "role": str(payload.get("role") or "unknown"),
        "updated_at": str(payload.get("updated_at") or ""),
    }


def clear_presence_for_tests() -> None:
    global _redis_client
    with _memory_lock:
        _memory_state.clear()
    _redis_client = None
