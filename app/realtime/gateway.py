from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.db.session import SessionLocal
from app.realtime.events import (
    CaseAssigned,
    CaseStatusChanged,
    ConnectionAccepted,
    ConnectionRejected,
    ConnectionRequested,
    DomainEvent,
    DomainEventBus,
    ProposalRejected,
    ProposalSubmitted,
)
from app.services import chat_presence
from app.services.case_matching import PROPOSAL_OFFER
from app.services.channel_provisioner import is_participant
from app.services.chat_service import append_message, mark_read, serialize_message, validate_client_message
from app.services.direct_connections import (
    open_direct_channel,
    respond_connection,
    send_connection_request,
)
from app.services.errors import AccessDenied, CoreError, Forbidden, InvalidPayload, RateLimited
from app.services.identity import ROLE_CITIZEN, ROLE_LAWYER, Identity, verify_credential
from app.services.rate_limit import MessageRateLimiter, get_rate_limiter
from app.services.store import run_store_call

_LOG = logging.getLogger("app.gateway")

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
USER_STATUSES = {STATUS_ONLINE, "away", "busy"}

# inbound signal -> event relayed to the rest of the channel
_SIGNALS: dict[str, str] = {
    "accept-call": "call-accepted",
    "reject-call": "call-rejected",
    "end-call": "call-ended",
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "ice-candidate",
}


class Connection(Protocol):
    async def send(self, event: str, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


def user_room(user_id: Any) -> str:
    return f"user_{user_id}"


@dataclass
class LiveSession:
    session_id: str
    connection: Connection
    identity: Identity
    rooms: set[str] = field(default_factory=set)
    status: str = STATUS_ONLINE

    @property
    def user_id(self) -> str:
        return self.identity.key


def _require_dict(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise InvalidPayload("Event payload must be an object")
    return data


def _channel_from(data: Any) -> str:
    raw = data.get("channelId") if isinstance(data, dict) else data
    channel_id = str(raw or "").strip()
    if not channel_id:
        raise InvalidPayload("channelId is required")
    return channel_id


def _sender_payload(identity: Identity) -> dict[str, Any]:
    return {"id": identity.key, "name": identity.name, "role": identity.role}


def _join_tx(db: Session, channel_id: str, user_id: uuid.UUID) -> list[str]:
    if not is_participant(db, channel_id, user_id):
        raise AccessDenied()
    return mark_read(db, channel_id=channel_id, user_id=user_id)


def _mark_read_tx(db: Session, channel_id: str, user_id: uuid.UUID, message_ids: list[Any] | None) -> list[str]:
    if not is_participant(db, channel_id, user_id):
        raise AccessDenied()
    return mark_read(db, channel_id=channel_id, user_id=user_id, message_ids=message_ids)


def _append_tx(
    db: Session,
    channel_id: str,
    identity: Identity,
    content: str,
    message_type: str,
    file_ref: dict | None,
) -> dict[str, Any]:
    if not is_participant(db, channel_id, identity.user_id):
        raise AccessDenied("Chat not found or access denied")
    row = append_message(
        db,
        channel_id=channel_id,
        sender_id=identity.user_id,
        content=content,
        message_type=message_type,
        file_ref=file_ref,
    )
    return serialize_message(row, sender=_sender_payload(identity), read_by=[identity.key])


class SessionGateway:
    """Live connections, room membership and realtime relay.

    All registries belong to the instance; one gateway runs per event loop.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        rate_limiter: MessageRateLimiter | None = None,
        event_bus: DomainEventBus | None = None,
        store_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter or MessageRateLimiter(get_rate_limiter())
        self.store_timeout = store_timeout
        self.event_bus: DomainEventBus | None = None
        self._sessions: dict[str, LiveSession] = {}
        self._rooms: dict[str, set[str]] = {}
        self._channel_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._inbox: asyncio.Queue[DomainEvent] | None = None
        self._tasks: list[asyncio.Task] = []
        self._unsubscribe: Callable[[], None] | None = None
        self._handlers: dict[str, Callable[[LiveSession, Any], Awaitable[None]]] = {
            "join_channel": self._on_join_channel,
            "leave_channel": self._on_leave_channel,
            "send_message": self._on_send_message,
            "mark_read": self._on_mark_read,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "update_status": self._on_update_status,
            "initiate-call": self._on_initiate_call,
            "send_connection_request": self._on_send_connection_request,
            "respond_to_connection_request": self._on_respond_to_connection_request,
            "direct_message_request": self._on_direct_message_request,
        }
        for signal in _SIGNALS:
            self._handlers[signal] = partial(self._relay_signal, signal)
        if event_bus is not None:
            self.attach(event_bus)

    # lifecycle

    def attach(self, event_bus: DomainEventBus) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self.event_bus = event_bus
        self._unsubscribe = event_bus.subscribe(self._on_domain_event)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._pump_events()),
            asyncio.create_task(self._purge_rate_limits()),
        ]

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        for session in list(self._sessions.values()):
            await self.disconnect(session)

    # registry

    def session_count(self) -> int:
        return len(self._sessions)

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def is_online(self, user_id: Any) -> bool:
        return bool(self._rooms.get(user_room(user_id)))

    def _join_room(self, session: LiveSession, room: str) -> None:
        session.rooms.add(room)
        self._rooms.setdefault(room, set()).add(session.session_id)

    def _leave_room(self, session: LiveSession, room: str) -> None:
        session.rooms.discard(room)
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(session.session_id)
        if not members:
            self._rooms.pop(room, None)
            self._drop_idle_lock(room)

    def _channel_lock(self, channel_id: str) -> asyncio.Lock:
        lock = self._channel_locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._channel_locks[channel_id] = lock
        return lock

    def _drop_idle_lock(self, channel_id: str) -> None:
        lock = self._channel_locks.get(channel_id)
        if lock is None or self._lock_users.get(channel_id) or channel_id in self._rooms:
            return
        self._channel_locks.pop(channel_id, None)

    def tracked_locks(self) -> int:
        return len(self._channel_locks)

    async def _store(self, func, *args, writes: bool = True, **kwargs):
        return await run_store_call(
            self.session_factory,
            func,
            *args,
            timeout=self.store_timeout,
            writes=writes,
            **kwargs,
        )

    # delivery

    async def _send(self, session: LiveSession, event: str, data: Any) -> None:
        if session.session_id not in self._sessions:
            return
        try:
            await session.connection.send(event, data)
        except Exception:
            _LOG.warning("delivery failed session=%s event=%s", session.session_id, event, exc_info=True)

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        *,
        exclude_session_id: str | None = None,
    ) -> int:
        delivered = 0
        for session_id in sorted(self._rooms.get(room, ())):
            if session_id == exclude_session_id:
                continue
            session = self._sessions.get(session_id)
            if session is None:
                continue
            await self._send(session, event, data)
            delivered += 1
        return delivered

    async def emit_to_user(self, user_id: Any, event: str, data: Any) -> int:
        return await self.emit_to_room(user_room(user_id), event, data)

    async def _broadcast(self, event: str, data: Any, *, exclude_session_id: str | None = None) -> None:
        for session in list(self._sessions.values()):
            if session.session_id != exclude_session_id:
                await self._send(session, event, data)

    async def _send_error(self, session: LiveSession, event: str, exc: CoreError) -> None:
        await self._send(session, "error", {"message": exc.message, "code": exc.code, "event": event})

    # connection lifecycle

    async def connect(self, connection: Connection, credential: str | None) -> LiveSession:
        """Authenticate and register a live session.

        Raises ``Unauthenticated`` (or ``StoreUnavailable``) without registering
        anything; closing the transport is the caller's job.
        """
        identity = await self._store(verify_credential, credential, writes=False)
        session = LiveSession(session_id=uuid.uuid4().hex, connection=connection, identity=identity)
        first_session = not self.is_online(identity.key)
        self._sessions[session.session_id] = session
        self._join_room(session, user_room(identity.key))
        _LOG.info("session connected session=%s user=%s role=%s", session.session_id, identity.key, identity.role)
        await self._send(session, "connected", {"sessionId": session.session_id, "userId": identity.key})
        if first_session:
            await self._broadcast(
                "user_status_update",
                {"userId": identity.key, "status": STATUS_ONLINE},
                exclude_session_id=session.session_id,
            )
        return session

    async def disconnect(self, session: LiveSession) -> None:
        if self._sessions.pop(session.session_id, None) is None:
            return
        for room in list(session.rooms):
            self._leave_room(session, room)
        session.status = STATUS_OFFLINE
        _LOG.info("session closed session=%s user=%s", session.session_id, session.user_id)
        if not self.is_online(session.user_id):
            await self._broadcast("user_status_update", {"userId": session.user_id, "status": STATUS_OFFLINE})

    async def handle(self, session: LiveSession, event: str, data: Any = None) -> None:
        if session.session_id not in self._sessions:
            return
        handler = self._handlers.get(str(event or ""))
        try:
            if handler is None:
                raise InvalidPayload(f"Unknown event: {event}")
            await handler(session, data)
        except CoreError as exc:
            await self._send_error(session, str(event or ""), exc)
        except Exception:
            _LOG.exception("handler failed session=%s event=%s", session.session_id, event)
            await self._send(
                session,
                "error",
                {"message": "Internal error", "code": "INTERNAL", "event": str(event or "")},
            )

    # rooms and messages

    async def _on_join_channel(self, session: LiveSession, data: Any) -> None:
        channel_id = _channel_from(data)
        newly_read = await self._store(_join_tx, channel_id, session.identity.user_id)
        self._join_room(session, channel_id)
        if newly_read:
            await self.emit_to_room(
                channel_id,
                "messages_read",
                {"channelId": channel_id, "readBy": session.user_id, "messageIds": newly_read},
                exclude_session_id=session.session_id,
            )
        await self._send(session, "channel_joined", {"channelId": channel_id})

    async def _on_leave_channel(self, session: LiveSession, data: Any) -> None:
        channel_id = _channel_from(data)
        if channel_id == user_room(session.user_id):
            raise InvalidPayload("Cannot leave the personal room")
        self._leave_room(session, channel_id)
        await self._send(session, "channel_left", {"channelId": channel_id})

    async def _on_send_message(self, session: LiveSession, data: Any) -> None:
        payload = _require_dict(data)
        channel_id = _channel_from(payload)
        content, message_type, file_ref = validate_client_message(
            payload.get("content"),
            payload.get("type") or payload.get("messageType"),
            payload.get("fileRef"),
        )
        verdict = await run_in_threadpool(self.rate_limiter.check, session.user_id)
        if not verdict.allowed:
            raise RateLimited(retry_after_seconds=verdict.retry_after_seconds)

        self._lock_users[channel_id] = self._lock_users.get(channel_id, 0) + 1
        try:
            async with self._channel_lock(channel_id):
                message = await self._store(_append_tx, channel_id, session.identity, content, message_type, file_ref)
                await self.emit_to_room(channel_id, "new_message", message)
        finally:
            remaining = self._lock_users.pop(channel_id, 1) - 1
            if remaining:
                self._lock_users[channel_id] = remaining
            self._drop_idle_lock(channel_id)
        await self._send(
            session,
            "message_sent",
            {
                "messageId": message["id"],
                "channelId": channel_id,
                "seq": message["seq"],
                "timestamp": message["timestamp"],
            },
        )

    async def _on_mark_read(self, session: LiveSession, data: Any) -> None:
        channel_id = _channel_from(data)
        message_ids = data.get("messageIds") if isinstance(data, dict) else None
        if message_ids is not None and not isinstance(message_ids, list):
            raise InvalidPayload("messageIds must be a list")
        newly_read = await self._store(_mark_read_tx, channel_id, session.identity.user_id, message_ids or None)
        if newly_read:
            await self.emit_to_room(
                channel_id,
                "messages_read",
                {"channelId": channel_id, "readBy": session.user_id, "messageIds": newly_read},
                exclude_session_id=session.session_id,
            )

    async def _typing(self, session: LiveSession, data: Any, typing: bool) -> None:
        channel_id = _channel_from(data)
        if channel_id not in session.rooms:
            raise AccessDenied()
        await run_in_threadpool(
            chat_presence.set_typing,
            channel_id=channel_id,
            user_id=session.user_id,
            name=session.identity.name,
            role=session.identity.role,
            typing=typing,
        )
        if typing:
            event, body = "user_typing", {"channelId": channel_id, "userId": session.user_id, "name": session.identity.name}
        else:
            event, body = "user_stop_typing", {"channelId": channel_id, "userId": session.user_id}
        await self.emit_to_room(channel_id, event, body, exclude_session_id=session.session_id)

    async def _on_typing_start(self, session: LiveSession, data: Any) -> None:
        await self._typing(session, data, True)

    async def _on_typing_stop(self, session: LiveSession, data: Any) -> None:
        await self._typing(session, data, False)

    async def _on_update_status(self, session: LiveSession, data: Any) -> None:
        raw = data.get("status") if isinstance(data, dict) else data
        status = str(raw or "").strip().lower()
        if status not in USER_STATUSES:
            raise InvalidPayload("Unknown status")
        session.status = status
        await self._broadcast(
            "user_status_update",
            {"userId": session.user_id, "status": status},
            exclude_session_id=session.session_id,
        )

    # call signaling, never persisted

    async def _on_initiate_call(self, session: LiveSession, data: Any) -> None:
        payload = _require_dict(data)
        target = str(payload.get("targetUserId") or "").strip()
        if not target:
            raise InvalidPayload("targetUserId is required")
        body = {**payload, "from": _sender_payload(session.identity)}
        if not await self.emit_to_user(target, "incoming-call", body):
            _LOG.debug("call target offline user=%s", target)

    async def _relay_signal(self, kind: str, session: LiveSession, data: Any) -> None:
        payload = _require_dict(data)
        channel_id = _channel_from(payload)
        if channel_id not in session.rooms:
            raise AccessDenied()
        body = {**payload, "from": _sender_payload(session.identity)}
        await self.emit_to_room(channel_id, _SIGNALS[kind], body, exclude_session_id=session.session_id)

    # direct connections

    async def _on_send_connection_request(self, session: LiveSession, data: Any) -> None:
        payload = _require_dict(data)
        if session.identity.role != ROLE_CITIZEN:
            raise Forbidden("Only citizens can send connection requests")
        row = await self._store(
            send_connection_request,
            citizen_id=session.identity.user_id,
            lawyer_id=payload.get("lawyerId"),
            message=payload.get("message"),
            connection_type=payload.get("connectionType"),
            events=self.event_bus,
        )
        await self._send(
            session,
            "connection_request_sent",
            {"connectionId": str(row.id), "lawyerId": str(row.lawyer_id), "status": row.status},
        )

    async def _on_respond_to_connection_request(self, session: LiveSession, data: Any) -> None:
        payload = _require_dict(data)
        if session.identity.role != ROLE_LAWYER:
            raise Forbidden("Only lawyers can respond to connection requests")
        await self._store(
            respond_connection,
            connection_id=payload.get("connectionId"),
            lawyer_id=session.identity.user_id,
            action=payload.get("action"),
            response_message=payload.get("responseMessage"),
            events=self.event_bus,
        )

    async def _on_direct_message_request(self, session: LiveSession, data: Any) -> None:
        payload = _require_dict(data)
        lawyer_id = str(payload.get("lawyerId") or "").strip()
        channel, _ = await self._store(
            open_direct_channel,
            requester_id=session.identity.user_id,
            requester_role=session.identity.role,
            lawyer_id=lawyer_id,
        )
        await self.emit_to_user(
            lawyer_id,
            "new_direct_message_request",
            {
                "from": _sender_payload(session.identity),
                "channelId": channel.channel_id,
                "message": str(payload.get("message") or "").strip() or "New message request",
            },
        )
        await self._send(
            session,
            "direct_message_request_sent",
            {"channelId": channel.channel_id, "status": channel.status},
        )

    # domain events

    def _on_domain_event(self, event: DomainEvent) -> None:
        """Bus subscriber; may run on any thread."""
        loop, inbox = self._loop, self._inbox
        if loop is None or inbox is None or loop.is_closed():
            _LOG.debug("gateway not started, dropping %s", type(event).__name__)
            return
        loop.call_soon_threadsafe(inbox.put_nowait, event)

    async def _pump_events(self) -> None:
        assert self._inbox is not None
        while True:
            event = await self._inbox.get()
            try:
                await self.dispatch_domain_event(event)
            except Exception:
                _LOG.exception("domain event push failed for %s", type(event).__name__)

    async def _purge_rate_limits(self) -> None:
        interval = max(int(settings.CHAT_RATE_LIMIT_PURGE_SECONDS or 60), 1)
        while True:
            await asyncio.sleep(interval)
            purged = self.rate_limiter.purge_expired()
            if purged:
                _LOG.debug("purged %s rate limit windows", purged)

    async def dispatch_domain_event(self, event: DomainEvent) -> None:
        if isinstance(event, CaseAssigned):
            body = {
                "caseId": event.case_id,
                "caseKind": event.case_kind,
                "channelId": event.channel_id,
                "citizenId": event.citizen_id,
                "lawyerId": event.lawyer_id,
                "proposalId": event.proposal_id,
            }
            await self.emit_to_user(event.lawyer_id, "new_case_assigned", body)
            await self.emit_to_user(event.citizen_id, "case_assignment_update", {**body, "status": "assigned"})
        elif isinstance(event, ProposalSubmitted):
            body = {
                "caseId": event.case_id,
                "caseKind": event.case_kind,
                "proposalId": event.proposal_id,
                "message": event.message,
            }
            if event.kind == PROPOSAL_OFFER:
                await self.emit_to_user(event.citizen_id, "new_lawyer_request", {**body, "lawyerId": event.lawyer_id})
            else:
                await self.emit_to_user(event.lawyer_id, "new_citizen_request", {**body, "citizenId": event.citizen_id})
        elif isinstance(event, ProposalRejected):
            target = event.lawyer_id if event.kind == PROPOSAL_OFFER else event.citizen_id
            await self.emit_to_user(
                target,
                "request_response",
                {
                    "caseId": event.case_id,
                    "caseKind": event.case_kind,
                    "proposalId": event.proposal_id,
                    "action": "reject",
                    "respondedBy": event.responder_id,
                },
            )
        elif isinstance(event, CaseStatusChanged):
            body = {
                "caseId": event.case_id,
                "caseKind": event.case_kind,
                "status": event.to_status,
                "previousStatus": event.from_status,
                "changedBy": event.changed_by,
            }
            await self.emit_to_user(event.citizen_id, "case_status_update", body)
            if event.lawyer_id:
                await self.emit_to_user(event.lawyer_id, "case_status_update", body)
        elif isinstance(event, ConnectionRequested):
            await self.emit_to_user(
                event.lawyer_id,
                "new_connection_request",
                {
                    "connectionId": event.connection_id,
                    "citizenId": event.citizen_id,
                    "message": event.message,
                    "connectionType": event.connection_type,
                },
            )
        elif isinstance(event, ConnectionAccepted):
            body = {
                "connectionId": event.connection_id,
                "channelId": event.channel_id,
                "citizenId": event.citizen_id,
                "lawyerId": event.lawyer_id,
                "responseMessage": event.response_message,
            }
            await self.emit_to_user(event.citizen_id, "connection_request_accepted", body)
            await self.emit_to_user(event.lawyer_id, "connection_response_success", {**body, "action": "accept"})
        elif isinstance(event, ConnectionRejected):
            body = {
                "connectionId": event.connection_id,
                "citizenId": event.citizen_id,
                "lawyerId": event.lawyer_id,
                "responseMessage": event.response_message,
            }
            await self.emit_to_user(event.citizen_id, "connection_request_rejected", body)
            await self.emit_to_user(event.lawyer_id, "connection_response_success", {**body, "action": "reject"})
