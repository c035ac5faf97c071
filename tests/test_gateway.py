import asyncio
import time
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

from sqlalchemy.exc import OperationalError

from tests.base import AsyncDatabaseTestCase
from app.models.channel_message import ChannelMessage, ChannelMessageRead
from app.realtime.gateway import SessionGateway, user_room
from app.services import chat_presence
from app.services.case_matching import respond, submit_offer
from app.services.channel_provisioner import CHANNEL_ACTIVE, ensure_direct_channel
from app.services.chat_service import append_message
from app.services.errors import StoreUnavailable, Unauthenticated
from app.services.identity import verify_credential
from app.services.rate_limit import InMemoryRateLimiter, MessageRateLimiter


class FakeConnection:
    def __init__(self):
        self.frames = []
        self.closed_with = None

    async def send(self, event, data):
        self.frames.append((event, data))

    async def close(self, code=1000):
        self.closed_with = code

    def events(self, name=None):
        return [data for event, data in self.frames if name is None or event == name]

    def names(self):
        return [event for event, _ in self.frames]

    def clear(self):
        self.frames.clear()


class GatewayTestCase(AsyncDatabaseTestCase):
    def setUp(self):
        super().setUp()
        chat_presence.clear_presence_for_tests()
        redis_patch = patch.object(chat_presence, "_get_redis_client", return_value=None)
        redis_patch.start()
        self.addCleanup(redis_patch.stop)

        self.limiter = MessageRateLimiter(InMemoryRateLimiter(), limit=30, window_seconds=60)
        self.gateway = SessionGateway(
            session_factory=self.SessionLocal,
            rate_limiter=self.limiter,
            event_bus=self.events,
        )
        self.citizen_id = self._create_user("citizen", name="Asha")
        self.lawyer_id = self._create_user("lawyer", name="Ravi")
        with self.SessionLocal() as db:
            self.channel_id = ensure_direct_channel(
                db,
                citizen_id=self.citizen_id,
                lawyer_id=self.lawyer_id,
                status=CHANNEL_ACTIVE,
            ).channel_id
            db.commit()

    async def _connect(self, user_id, role):
        connection = FakeConnection()
        session = await self.gateway.connect(connection, self._token(user_id, role))
        return session, connection

    async def _joined_pair(self):
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        lawyer, lawyer_conn = await self._connect(self.lawyer_id, "lawyer")
        await self.gateway.handle(citizen, "join_channel", {"channelId": self.channel_id})
        await self.gateway.handle(lawyer, "join_channel", {"channelId": self.channel_id})
        citizen_conn.clear()
        lawyer_conn.clear()
        return citizen, citizen_conn, lawyer, lawyer_conn


class ConnectTests(GatewayTestCase):
    async def test_valid_credential_registers_session_in_personal_room(self):
        session, connection = await self._connect(self.citizen_id, "citizen")

        self.assertEqual(self.gateway.session_count(), 1)
        self.assertIn(user_room(self.citizen_id), session.rooms)
        self.assertEqual(self.gateway.room_members(user_room(self.citizen_id)), {session.session_id})
        self.assertEqual(
            connection.events("connected"),
            [{"sessionId": session.session_id, "userId": str(self.citizen_id)}],
        )

    async def test_expired_credential_is_refused_without_session(self):
        expired = self._token(self.citizen_id, "citizen", expires_in=timedelta(minutes=-5))
        connection = FakeConnection()
        with self.assertRaises(Unauthenticated):
            await self.gateway.connect(connection, expired)
        self.assertEqual(self.gateway.session_count(), 0)
        self.assertEqual(connection.frames, [])

    async def test_inactive_or_unknown_user_is_refused(self):
        inactive = self._create_user("citizen", active=False)
        for token in (self._token(inactive), self._token(uuid4()), "", "not-a-jwt"):
            with self.assertRaises(Unauthenticated):
                await self.gateway.connect(FakeConnection(), token)
        self.assertEqual(self.gateway.session_count(), 0)

    async def test_disconnect_removes_memberships_and_broadcasts_offline(self):
        citizen, _, lawyer, lawyer_conn = await self._joined_pair()

        await self.gateway.disconnect(citizen)

        self.assertEqual(self.gateway.session_count(), 1)
        self.assertEqual(self.gateway.room_members(self.channel_id), {lawyer.session_id})
        self.assertEqual(self.gateway.room_members(user_room(self.citizen_id)), set())
        self.assertEqual(
            lawyer_conn.events("user_status_update"),
            [{"userId": str(self.citizen_id), "status": "offline"}],
        )

    async def test_offline_broadcast_waits_for_last_session(self):
        first, _ = await self._connect(self.citizen_id, "citizen")
        second, _ = await self._connect(self.citizen_id, "citizen")
        _, lawyer_conn = await self._connect(self.lawyer_id, "lawyer")
        lawyer_conn.clear()

        await self.gateway.disconnect(first)
        self.assertEqual(lawyer_conn.events("user_status_update"), [])
        await self.gateway.disconnect(second)
        self.assertEqual(
            lawyer_conn.events("user_status_update"),
            [{"userId": str(self.citizen_id), "status": "offline"}],
        )

    async def test_gateways_do_not_share_registries(self):
        other = SessionGateway(session_factory=self.SessionLocal, rate_limiter=self.limiter)
        await self._connect(self.citizen_id, "citizen")
        self.assertEqual(self.gateway.session_count(), 1)
        self.assertEqual(other.session_count(), 0)


class ChannelMessagingTests(GatewayTestCase):
    async def test_join_requires_participation(self):
        stranger_id = self._create_user("citizen")
        stranger, connection = await self._connect(stranger_id, "citizen")
        connection.clear()

        await self.gateway.handle(stranger, "join_channel", {"channelId": self.channel_id})

        self.assertEqual(
            connection.events("error"),
            [{"message": "Access denied to chat room", "code": "ACCESS_DENIED", "event": "join_channel"}],
        )
        self.assertNotIn(self.channel_id, stranger.rooms)

    async def test_message_is_relayed_to_room_and_acknowledged_to_sender(self):
        citizen, citizen_conn, lawyer, lawyer_conn = await self._joined_pair()

        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "Hello"})

        relayed = lawyer_conn.events("new_message")
        self.assertEqual(len(relayed), 1)
        self.assertEqual(relayed[0]["content"], "Hello")
        self.assertEqual(relayed[0]["seq"], 1)
        self.assertEqual(relayed[0]["sender"]["id"], str(self.citizen_id))
        self.assertEqual(citizen_conn.names(), ["new_message", "message_sent"])
        ack = citizen_conn.events("message_sent")[0]
        self.assertEqual(ack["messageId"], relayed[0]["id"])
        self.assertEqual(ack["seq"], 1)
        self.assertEqual(lawyer_conn.events("message_sent"), [])

    async def test_messages_arrive_in_the_same_order_for_every_participant(self):
        citizen, citizen_conn, lawyer, lawyer_conn = await self._joined_pair()

        await asyncio.gather(
            *[
                self.gateway.handle(
                    citizen if index % 2 == 0 else lawyer,
                    "send_message",
                    {"channelId": self.channel_id, "content": f"message {index}"},
                )
                for index in range(8)
            ]
        )

        citizen_seen = [(item["seq"], item["content"]) for item in citizen_conn.events("new_message")]
        lawyer_seen = [(item["seq"], item["content"]) for item in lawyer_conn.events("new_message")]
        self.assertEqual(len(citizen_seen), 8)
        self.assertEqual(citizen_seen, lawyer_seen)
        self.assertEqual([seq for seq, _ in citizen_seen], list(range(1, 9)))

    async def test_invalid_messages_are_reported_and_session_survives(self):
        citizen, citizen_conn, _, lawyer_conn = await self._joined_pair()

        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "   "})
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "x" * 1001})
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "type": "file"})
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "type": "system", "content": "hi"})

        codes = [item["code"] for item in citizen_conn.events("error")]
        self.assertEqual(codes, ["INVALID_PAYLOAD"] * 4)
        self.assertEqual(lawyer_conn.events("new_message"), [])

        await self.gateway.handle(
            citizen,
            "send_message",
            {"channelId": self.channel_id, "type": "file", "fileRef": {"hash": "bafy123", "name": "lease.pdf"}},
        )
        relayed = lawyer_conn.events("new_message")
        self.assertEqual(relayed[0]["type"], "file")
        self.assertEqual(relayed[0]["fileRef"], {"hash": "bafy123", "name": "lease.pdf"})
        self.assertEqual(relayed[0]["content"], "File attachment")

    async def test_non_participant_cannot_send(self):
        stranger_id = self._create_user("citizen")
        stranger, connection = await self._connect(stranger_id, "citizen")
        await self.gateway.handle(stranger, "send_message", {"channelId": self.channel_id, "content": "hi"})
        self.assertEqual(connection.events("error")[0]["code"], "ACCESS_DENIED")
        with self.SessionLocal() as db:
            self.assertEqual(db.query(ChannelMessage).count(), 0)

    async def test_thirty_first_message_is_rate_limited(self):
        citizen, citizen_conn, _, _ = await self._joined_pair()
        for index in range(31):
            await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": f"m{index}"})

        self.assertEqual(len(citizen_conn.events("message_sent")), 30)
        errors = citizen_conn.events("error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["code"], "RATE_LIMITED")
        self.assertEqual(errors[0]["event"], "send_message")

    async def test_join_marks_unread_and_notifies_others(self):
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        await self.gateway.handle(citizen, "join_channel", {"channelId": self.channel_id})
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "Are you there?"})
        citizen_conn.clear()

        lawyer, lawyer_conn = await self._connect(self.lawyer_id, "lawyer")
        await self.gateway.handle(lawyer, "join_channel", self.channel_id)

        self.assertEqual(lawyer_conn.events("channel_joined"), [{"channelId": self.channel_id}])
        receipts = citizen_conn.events("messages_read")
        self.assertEqual(len(receipts), 1)
        self.assertEqual(receipts[0]["readBy"], str(self.lawyer_id))
        self.assertEqual(len(receipts[0]["messageIds"]), 1)
        with self.SessionLocal() as db:
            self.assertEqual(db.query(ChannelMessageRead).filter_by(user_id=self.lawyer_id).count(), 1)

    async def test_mark_read_with_explicit_ids(self):
        citizen, citizen_conn, lawyer, lawyer_conn = await self._joined_pair()
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "one"})
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "two"})
        first_id = lawyer_conn.events("new_message")[0]["id"]
        citizen_conn.clear()

        await self.gateway.handle(lawyer, "mark_read", {"channelId": self.channel_id, "messageIds": [first_id]})
        self.assertEqual(
            citizen_conn.events("messages_read"),
            [{"channelId": self.channel_id, "readBy": str(self.lawyer_id), "messageIds": [first_id]}],
        )

        await self.gateway.handle(lawyer, "mark_read", {"channelId": self.channel_id, "messageIds": [first_id]})
        self.assertEqual(len(citizen_conn.events("messages_read")), 1)

    async def test_leave_channel_stops_delivery(self):
        citizen, _, lawyer, lawyer_conn = await self._joined_pair()
        await self.gateway.handle(lawyer, "leave_channel", {"channelId": self.channel_id})
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "hello?"})
        self.assertEqual(lawyer_conn.events("new_message"), [])
        self.assertEqual(lawyer_conn.events("channel_left"), [{"channelId": self.channel_id}])

    async def test_typing_requires_joined_room_and_records_presence(self):
        citizen, citizen_conn, lawyer, lawyer_conn = await self._joined_pair()

        await self.gateway.handle(citizen, "typing_start", {"channelId": self.channel_id})
        self.assertEqual(
            lawyer_conn.events("user_typing"),
            [{"channelId": self.channel_id, "userId": str(self.citizen_id), "name": "Asha"}],
        )
        self.assertEqual(citizen_conn.events("user_typing"), [])
        typing = chat_presence.list_typing(channel_id=self.channel_id)
        self.assertEqual([row["user_id"] for row in typing], [str(self.citizen_id)])

        await self.gateway.handle(citizen, "typing_stop", {"channelId": self.channel_id})
        self.assertEqual(len(lawyer_conn.events("user_stop_typing")), 1)
        self.assertEqual(chat_presence.list_typing(channel_id=self.channel_id), [])

        stranger_id = self._create_user("citizen")
        stranger, stranger_conn = await self._connect(stranger_id, "citizen")
        await self.gateway.handle(stranger, "typing_start", {"channelId": self.channel_id})
        self.assertEqual(stranger_conn.events("error")[0]["code"], "ACCESS_DENIED")

    async def test_unknown_event_and_internal_failure_keep_session_alive(self):
        citizen, citizen_conn, _, _ = await self._joined_pair()

        await self.gateway.handle(citizen, "fly_to_moon", {})
        with patch("app.realtime.gateway.validate_client_message", side_effect=RuntimeError("boom")):
            await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "x"})

        codes = [item["code"] for item in citizen_conn.events("error")]
        self.assertEqual(codes, ["INVALID_PAYLOAD", "INTERNAL"])
        self.assertEqual(self.gateway.session_count(), 2)

        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "still here"})
        self.assertEqual(len(citizen_conn.events("message_sent")), 1)

    async def test_update_status_broadcasts_to_others(self):
        citizen, citizen_conn, _, lawyer_conn = await self._joined_pair()
        await self.gateway.handle(citizen, "update_status", "busy")
        self.assertEqual(lawyer_conn.events("user_status_update"), [{"userId": str(self.citizen_id), "status": "busy"}])
        self.assertEqual(citizen_conn.events("user_status_update"), [])


class SignalingTests(GatewayTestCase):
    async def test_initiate_call_reaches_target_personal_room(self):
        citizen, _, _, lawyer_conn = await self._joined_pair()
        await self.gateway.handle(
            citizen,
            "initiate-call",
            {"targetUserId": str(self.lawyer_id), "channelId": self.channel_id, "callType": "video"},
        )
        calls = lawyer_conn.events("incoming-call")
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["callType"], "video")
        self.assertEqual(calls[0]["from"]["id"], str(self.citizen_id))

    async def test_offline_target_is_silently_dropped(self):
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        citizen_conn.clear()
        await self.gateway.handle(citizen, "initiate-call", {"targetUserId": str(uuid4()), "callType": "audio"})
        self.assertEqual(citizen_conn.frames, [])

    async def test_channel_signals_skip_sender_and_map_names(self):
        citizen, citizen_conn, _, lawyer_conn = await self._joined_pair()
        for inbound in ("accept-call", "reject-call", "end-call", "offer", "answer", "ice-candidate"):
            await self.gateway.handle(citizen, inbound, {"channelId": self.channel_id, "sdp": "v=0"})

        self.assertEqual(
            lawyer_conn.names(),
            ["call-accepted", "call-rejected", "call-ended", "offer", "answer", "ice-candidate"],
        )
        self.assertEqual(citizen_conn.frames, [])

    async def test_channel_signal_requires_joined_room(self):
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        citizen_conn.clear()
        await self.gateway.handle(citizen, "offer", {"channelId": self.channel_id, "sdp": "v=0"})
        self.assertEqual(citizen_conn.events("error")[0]["code"], "ACCESS_DENIED")


class DomainEventPushTests(GatewayTestCase):
    async def asyncSetUp(self):
        await self.gateway.start()

    async def asyncTearDown(self):
        await self.gateway.stop()

    async def _drain(self):
        for _ in range(10):
            await asyncio.sleep(0)

    async def test_case_assignment_is_pushed_to_both_parties(self):
        case_id = self._create_case(self.citizen_id)
        _, citizen_conn = await self._connect(self.citizen_id, "citizen")
        _, lawyer_conn = await self._connect(self.lawyer_id, "lawyer")

        with self.SessionLocal() as db:
            proposal_id = submit_offer(db, case_id=case_id, lawyer_id=self.lawyer_id, events=self.events).id
        await self._drain()
        self.assertEqual(len(citizen_conn.events("new_lawyer_request")), 1)

        with self.SessionLocal() as db:
            respond(
                db,
                case_id=case_id,
                proposal_id=proposal_id,
                actor_id=self.citizen_id,
                action="accept",
                events=self.events,
            )
        await self._drain()

        assigned = lawyer_conn.events("new_case_assigned")
        update = citizen_conn.events("case_assignment_update")
        self.assertEqual(len(assigned), 1)
        self.assertEqual(assigned[0]["channelId"], f"query_{case_id}")
        self.assertEqual(update[0]["status"], "assigned")

    async def test_connection_request_over_the_wire(self):
        other_lawyer = self._create_user("lawyer")
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        lawyer, lawyer_conn = await self._connect(other_lawyer, "lawyer")

        await self.gateway.handle(citizen, "send_connection_request", {"lawyerId": str(other_lawyer), "message": "Hi"})
        await self._drain()
        sent = citizen_conn.events("connection_request_sent")
        self.assertEqual(sent[0]["status"], "pending")
        requests = lawyer_conn.events("new_connection_request")
        self.assertEqual(requests[0]["message"], "Hi")

        await self.gateway.handle(
            lawyer,
            "respond_to_connection_request",
            {"connectionId": sent[0]["connectionId"], "action": "accept", "responseMessage": "Sure"},
        )
        await self._drain()
        accepted = citizen_conn.events("connection_request_accepted")
        self.assertEqual(accepted[0]["responseMessage"], "Sure")
        self.assertTrue(accepted[0]["channelId"].startswith("direct_"))
        self.assertEqual(lawyer_conn.events("connection_response_success")[0]["action"], "accept")

    async def test_lawyer_cannot_send_connection_request(self):
        lawyer, lawyer_conn = await self._connect(self.lawyer_id, "lawyer")
        await self.gateway.handle(lawyer, "send_connection_request", {"lawyerId": str(uuid4()), "message": "Hi"})
        self.assertEqual(lawyer_conn.events("error")[0]["code"], "FORBIDDEN")

    async def test_direct_message_request_notifies_lawyer(self):
        other_lawyer = self._create_user("lawyer")
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        _, lawyer_conn = await self._connect(other_lawyer, "lawyer")

        await self.gateway.handle(citizen, "direct_message_request", {"lawyerId": str(other_lawyer)})

        ready = citizen_conn.events("direct_message_request_sent")
        self.assertEqual(ready[0]["status"], "pending")
        notice = lawyer_conn.events("new_direct_message_request")
        self.assertEqual(notice[0]["channelId"], ready[0]["channelId"])


def _slow(func, delay=0.3):
    def _wrapped(*args, **kwargs):
        time.sleep(delay)
        return func(*args, **kwargs)

    return _wrapped


class StoreFailureTests(GatewayTestCase):
    async def test_slow_write_is_awaited_and_delivered(self):
        citizen, citizen_conn, _, lawyer_conn = await self._joined_pair()
        self.gateway.store_timeout = 0.05

        with patch("app.realtime.gateway.append_message", side_effect=_slow(append_message)):
            await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "hello"})

        self.assertEqual(citizen_conn.events("error"), [])
        self.assertEqual([item["content"] for item in lawyer_conn.events("new_message")], ["hello"])
        self.assertEqual(citizen_conn.events("message_sent")[0]["seq"], 1)
        with self.SessionLocal() as db:
            self.assertEqual(db.query(ChannelMessage).count(), 1)

    async def test_slow_credential_check_refuses_connection(self):
        self.gateway.store_timeout = 0.05
        connection = FakeConnection()
        with patch("app.realtime.gateway.verify_credential", side_effect=_slow(verify_credential)):
            with self.assertRaises(StoreUnavailable):
                await self.gateway.connect(connection, self._token(self.citizen_id))
            await asyncio.sleep(0.4)
        self.assertEqual(self.gateway.session_count(), 0)
        self.assertEqual(connection.frames, [])

    async def test_database_error_is_reported_and_nothing_is_relayed(self):
        citizen, citizen_conn, _, lawyer_conn = await self._joined_pair()
        failure = OperationalError("INSERT INTO channel_messages", {}, Exception("server closed the connection"))

        with patch("app.realtime.gateway.append_message", side_effect=failure):
            await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "hello"})

        self.assertEqual(
            citizen_conn.events("error"),
            [{"message": "Storage is temporarily unavailable", "code": "STORE_UNAVAILABLE", "event": "send_message"}],
        )
        self.assertEqual(lawyer_conn.events("new_message"), [])
        self.assertEqual(self.gateway.session_count(), 2)


class ChannelLockTests(GatewayTestCase):
    async def test_lock_is_released_when_room_empties(self):
        citizen, _, lawyer, _ = await self._joined_pair()
        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "one"})
        self.assertEqual(self.gateway.tracked_locks(), 1)

        await self.gateway.handle(citizen, "leave_channel", {"channelId": self.channel_id})
        self.assertEqual(self.gateway.tracked_locks(), 1)
        await self.gateway.disconnect(lawyer)
        self.assertEqual(self.gateway.tracked_locks(), 0)

    async def test_sending_without_joining_leaves_no_lock(self):
        citizen, citizen_conn = await self._connect(self.citizen_id, "citizen")
        stranger, stranger_conn = await self._connect(self._create_user("citizen"), "citizen")

        await self.gateway.handle(citizen, "send_message", {"channelId": self.channel_id, "content": "hi"})
        await self.gateway.handle(stranger, "send_message", {"channelId": self.channel_id, "content": "hi"})

        self.assertEqual(len(citizen_conn.events("message_sent")), 1)
        self.assertEqual(stranger_conn.events("error")[0]["code"], "ACCESS_DENIED")
        self.assertEqual(self.gateway.tracked_locks(), 0)
