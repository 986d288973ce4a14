"""Tests for the presence and messaging engine.

The engine is pure: each test dispatches events and inspects the returned
outbound events, resolving delivery targets against the room roster the
same way the WebSocket transport does.
"""
import random
from collections import defaultdict
from typing import Dict, List, Tuple

import pytest

from app.chat.engine import ChatEngine
from app.chat.events import (
    DeliveryTarget,
    Disconnect,
    JoinRoom,
    LeaveRoom,
    SendChatMessage,
    SendPrivateMessage,
    StopTyping,
    Typing,
)
from app.chat.manager import ConnectionManager
from app.config import RoomSettings

Inbox = Dict[str, List[Tuple[str, object]]]


def send(engine: ChatEngine, connection_id: str, event) -> Inbox:
    """Dispatch an event and return what each connection receives."""
    resolver = ConnectionManager(engine)
    inbox: Inbox = defaultdict(list)
    for out in engine.dispatch(connection_id, event):
        for cid in resolver.recipients(out):
            inbox[cid].append((out.event, out.data))
    return inbox


def join(engine, cid, username, room="General") -> Inbox:
    return send(engine, cid, JoinRoom(username=username, room=room))


class TestJoin:
    def test_first_join(self, engine):
        inbox = join(engine, "A", "alice")
        assert inbox["A"] == [
            ("joined", {"room": "General", "username": "alice", "users": ["alice"], "history": []}),
            ("users", ["alice"]),
        ]

    def test_second_join_notifies_room(self, engine):
        join(engine, "A", "alice")
        inbox = join(engine, "B", "bob")

        assert inbox["B"] == [
            ("joined", {
                "room": "General",
                "username": "bob",
                "users": ["alice", "bob"],
                "history": [],
            }),
            ("users", ["alice", "bob"]),
        ]
        assert inbox["A"] == [
            ("system", "bob has joined the room"),
            ("users", ["alice", "bob"]),
        ]

    def test_join_outbound_targets(self, engine):
        events = engine.dispatch("A", JoinRoom(username="alice", room="Tech"))
        assert [(e.event, e.target) for e in events] == [
            ("joined", DeliveryTarget.UNICAST),
            ("system", DeliveryTarget.ROOM_EXCEPT_SENDER),
            ("users", DeliveryTarget.ROOM),
        ]

    def test_join_normalises_input(self, engine):
        inbox = join(engine, "A", "   " + "z" * 50, room="   ")
        joined = inbox["A"][0][1]
        assert joined["username"] == "z" * 32
        assert joined["room"] == "General"

    def test_join_defaults_empty_username(self, engine):
        inbox = join(engine, "A", "", room="Tech")
        assert inbox["A"][0][1]["username"] == "Anonymous"
        assert engine.registry.get_session("A").username == "Anonymous"

    def test_join_does_not_touch_history(self, engine):
        join(engine, "A", "alice")
        send(engine, "A", SendChatMessage(text="hi"))
        join(engine, "B", "bob")
        assert len(engine.rooms.get_room("General").history) == 1

    def test_join_replays_last_50_messages(self, engine):
        join(engine, "A", "alice")
        for i in range(60):
            send(engine, "A", SendChatMessage(text=f"m{i}"))

        history = join(engine, "B", "bob")["B"][0][1]["history"]
        assert len(history) == 50
        assert history[0]["text"] == "m10"
        assert history[-1]["text"] == "m59"
        assert set(history[0]) == {"username", "text", "ts"}

    def test_rejoin_same_room_keeps_one_roster_entry(self, engine):
        join(engine, "A", "alice")
        inbox = join(engine, "A", "alicia")
        assert inbox["A"][0][1]["users"] == ["alicia"]

    def test_join_other_room_leaves_ghost_entry(self, engine):
        join(engine, "A", "alice", room="General")
        join(engine, "B", "bob", room="General")
        inbox = join(engine, "A", "alice", room="Tech")

        assert engine.registry.get_session("A").room == "Tech"
        assert engine.rooms.roster_names("General") == ["alice", "bob"]
        assert engine.rooms.roster_names("Tech") == ["alice"]
        # Nothing is announced in the old room
        assert "B" not in inbox

    def test_rooms_are_isolated(self, engine):
        join(engine, "A", "alice", room="General")
        inbox = join(engine, "B", "bob", room="Tech")
        assert "A" not in inbox
        assert inbox["B"][0][1]["users"] == ["bob"]


class TestLeavePreviousOnJoin:
    @pytest.fixture
    def engine(self, clock):
        return ChatEngine.from_settings(RoomSettings(leave_previous_on_join=True), clock=clock)

    def test_switching_rooms_notifies_old_room(self, engine):
        join(engine, "A", "alice", room="General")
        join(engine, "B", "bob", room="General")
        inbox = join(engine, "A", "alice", room="Tech")

        assert engine.rooms.roster_names("General") == ["bob"]
        assert inbox["B"] == [("system", "alice has left the room"), ("users", ["bob"])]
        assert inbox["A"][0][0] == "joined"

    def test_rejoin_same_room_is_not_a_leave(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = join(engine, "A", "alice")
        assert inbox["B"] == [("system", "alice has joined the room"), ("users", ["alice", "bob"])]

    def test_rooms_touched_includes_previous_room(self, engine):
        join(engine, "A", "alice", room="Tech")
        assert engine.rooms_touched("A", JoinRoom(username="a", room="General")) == [
            "General", "Tech"
        ]


class TestLeave:
    def test_leave(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = send(engine, "A", LeaveRoom())

        assert inbox["A"] == [("left", {"room": "General", "username": "alice"})]
        assert inbox["B"] == [("system", "alice has left the room"), ("users", ["bob"])]
        assert engine.registry.get_session("A") is None
        assert engine.rooms.roster_names("General") == ["bob"]

    def test_leave_without_session_is_silent(self, engine):
        join(engine, "B", "bob")
        assert engine.dispatch("A", LeaveRoom()) == []

    def test_leave_twice(self, engine):
        join(engine, "A", "alice")
        send(engine, "A", LeaveRoom())
        assert engine.dispatch("A", LeaveRoom()) == []

    def test_can_rejoin_after_leave(self, engine):
        join(engine, "A", "alice")
        send(engine, "A", LeaveRoom())
        inbox = join(engine, "A", "alice", room="Tech")
        assert inbox["A"][0][1]["users"] == ["alice"]

    def test_messages_after_leave_are_rejected(self, engine):
        join(engine, "A", "alice")
        send(engine, "A", LeaveRoom())
        inbox = send(engine, "A", SendChatMessage(text="hello?"))
        assert inbox["A"] == [("system", "Please join a room first")]


class TestChatMessage:
    def test_broadcast_to_room_including_sender(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = send(engine, "A", SendChatMessage(text="hi"))

        assert inbox["A"] == inbox["B"]
        event, data = inbox["A"][0]
        assert event == "message"
        assert data["username"] == "alice"
        assert data["text"] == "hi"

    def test_message_stored_with_server_timestamp(self, engine, clock):
        join(engine, "A", "alice")
        before = clock.now
        send(engine, "A", SendChatMessage(text="hi"))
        stored = engine.rooms.get_room("General").history[-1]
        assert stored.text == "hi"
        assert stored.ts >= before

    def test_text_truncated(self, engine):
        join(engine, "A", "alice")
        inbox = send(engine, "A", SendChatMessage(text="x" * 1500))
        assert len(inbox["A"][0][1]["text"]) == 1000
        assert len(engine.rooms.get_room("General").history[-1].text) == 1000

    def test_unjoined_sender_gets_notice(self, engine):
        join(engine, "A", "alice")
        send(engine, "A", SendChatMessage(text="first"))
        inbox = send(engine, "C", SendChatMessage(text="x"))

        assert dict(inbox) == {"C": [("system", "Please join a room first")]}
        assert len(engine.rooms.get_room("General").history) == 1

    def test_history_eviction_through_engine(self, engine):
        join(engine, "A", "alice")
        for i in range(201):
            send(engine, "A", SendChatMessage(text=str(i)))
        history = engine.rooms.get_room("General").history
        assert len(history) == 200
        assert history[0].text == "1"

    def test_timestamps_non_decreasing(self, engine):
        join(engine, "A", "alice")
        for i in range(5):
            send(engine, "A", SendChatMessage(text=str(i)))
        stamps = [m.ts for m in engine.rooms.get_room("General").history]
        assert stamps == sorted(stamps)


class TestTyping:
    def test_typing_broadcast_includes_sender(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = send(engine, "A", Typing())
        assert inbox["A"] == [("typing", {"username": "alice"})]
        assert inbox["B"] == [("typing", {"username": "alice"})]

    def test_stop_typing(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = send(engine, "A", StopTyping())
        assert inbox["B"] == [("stopTyping", {})]

    def test_typing_unjoined_is_ignored(self, engine):
        join(engine, "A", "alice")
        assert engine.dispatch("C", Typing()) == []
        assert engine.dispatch("C", StopTyping()) == []


class TestPrivateMessage:
    def test_delivered_to_target_only(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        join(engine, "C", "carol")
        send(engine, "A", SendChatMessage(text="hi"))

        inbox = send(engine, "A", SendPrivateMessage(to="bob", message="secret"))

        assert set(inbox) == {"A", "B"}
        event, data = inbox["B"][0]
        assert event == "privateMessage"
        assert data["from"] == "alice"
        assert data["message"] == "secret"
        assert isinstance(data["ts"], int)
        assert inbox["A"] == [("system", "Private message sent to bob")]
        assert len(engine.rooms.get_room("General").history) == 1

    def test_unknown_target(self, engine):
        join(engine, "A", "alice")
        inbox = send(engine, "A", SendPrivateMessage(to="carol", message="hey"))
        assert dict(inbox) == {"A": [("system", "User not found in room: carol")]}

    def test_target_in_other_room_not_found(self, engine):
        join(engine, "A", "alice", room="General")
        join(engine, "B", "bob", room="Tech")
        inbox = send(engine, "A", SendPrivateMessage(to="bob", message="hey"))
        assert inbox["A"] == [("system", "User not found in room: bob")]

    def test_unjoined_sender(self, engine):
        inbox = send(engine, "A", SendPrivateMessage(to="bob", message="hey"))
        assert dict(inbox) == {"A": [("system", "Join a room first")]}

    def test_room_missing(self, engine):
        # A session pointing at a room that was never created
        engine.registry.set_session("A", "alice", "Ghost Town")
        inbox = send(engine, "A", SendPrivateMessage(to="bob", message="hey"))
        assert inbox["A"] == [("system", "Room not found")]

    def test_duplicate_names_first_match_wins(self, engine):
        join(engine, "A", "alice")
        join(engine, "B1", "sam")
        join(engine, "B2", "sam")
        inbox = send(engine, "A", SendPrivateMessage(to="sam", message="which one?"))
        assert "B1" in inbox
        assert "B2" not in inbox

    def test_message_to_self(self, engine):
        join(engine, "A", "alice")
        inbox = send(engine, "A", SendPrivateMessage(to="alice", message="note"))
        assert [e for e, _ in inbox["A"]] == ["privateMessage", "system"]

    def test_private_text_truncated(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = send(engine, "A", SendPrivateMessage(to="bob", message="y" * 1200))
        assert len(inbox["B"][0][1]["message"]) == 1000


class TestDisconnect:
    def test_disconnect_notifies_room(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = send(engine, "A", Disconnect(reason="transport close"))

        assert "A" not in inbox
        assert inbox["B"] == [("system", "alice disconnected"), ("users", ["bob"])]
        assert engine.registry.get_session("A") is None

    def test_disconnect_unjoined_is_silent(self, engine):
        join(engine, "B", "bob")
        assert engine.dispatch("A", Disconnect()) == []

    def test_disconnect_after_leave_is_silent(self, engine):
        join(engine, "A", "alice")
        send(engine, "A", LeaveRoom())
        assert engine.dispatch("A", Disconnect()) == []

    def test_disconnect_cleans_only_current_room(self, engine):
        join(engine, "A", "alice", room="General")
        join(engine, "A", "alice", room="Tech")
        send(engine, "A", Disconnect())
        assert engine.rooms.roster_names("Tech") == []
        assert engine.rooms.roster_names("General") == ["alice"]


class TestRosterConsistency:
    def test_roster_matches_registry_for_join_leave_sequences(self, engine):
        steps = [
            ("A", JoinRoom(username="alice", room="General")),
            ("B", JoinRoom(username="bob", room="General")),
            ("C", JoinRoom(username="carol", room="Tech")),
            ("B", LeaveRoom()),
            ("D", JoinRoom(username="dave", room="General")),
            ("A", Disconnect()),
            ("B", JoinRoom(username="bob", room="Tech")),
        ]
        for cid, event in steps:
            engine.dispatch(cid, event)
            for room in engine.rooms.rooms():
                expected = [s.username for s in engine.registry.sessions_in_room(room.name)]
                assert sorted(engine.rooms.roster_names(room.name)) == sorted(expected)

    @pytest.mark.parametrize("seed", range(12))
    def test_roster_matches_registry_for_random_sequences(self, engine, seed):
        rng = random.Random(seed)
        names = ["alice", "bob", "alice", "  carol  ", "", "dave"]
        live: List[str] = []
        next_id = 0

        for _ in range(60):
            op = rng.choice(["connect", "join", "join", "leave", "disconnect", "message"])
            if op == "connect" or not live:
                live.append(f"conn-{next_id}")
                next_id += 1
                continue

            cid = rng.choice(live)
            session = engine.registry.get_session(cid)
            if op == "join":
                # re-joins stay in the current room so no ghost entries form
                room = session.room if session else rng.choice(["General", "Tech", " Sports "])
                event = JoinRoom(username=rng.choice(names), room=room)
            elif op == "leave":
                event = LeaveRoom()
            elif op == "disconnect":
                event = Disconnect()
                live.remove(cid)
            else:
                event = SendChatMessage(text=f"{cid} says hi")

            for out in engine.dispatch(cid, event):
                if out.event == "users":
                    assert out.data == engine.rooms.roster_names(out.room)

            for room in engine.rooms.rooms():
                sessions = engine.registry.sessions_in_room(room.name)
                assert sorted(engine.rooms.roster_names(room.name)) == sorted(
                    s.username for s in sessions
                )
                assert sorted(engine.rooms.member_ids(room.name)) == sorted(
                    s.connection_id for s in sessions
                )

    def test_users_broadcast_equals_roster(self, engine):
        join(engine, "A", "alice")
        join(engine, "B", "bob")
        inbox = join(engine, "C", "carol")
        assert inbox["A"][-1] == ("users", engine.rooms.roster_names("General"))


class TestRoomsTouched:
    def test_join_touches_target_room(self, engine):
        assert engine.rooms_touched("A", JoinRoom(username="a", room=" Tech ")) == ["Tech"]
        assert engine.rooms_touched("A", JoinRoom(username="a", room="")) == ["General"]

    def test_unjoined_events_touch_nothing(self, engine):
        assert engine.rooms_touched("A", SendChatMessage(text="x")) == []

    def test_joined_events_touch_session_room(self, engine):
        join(engine, "A", "alice", room="Tech")
        assert engine.rooms_touched("A", SendChatMessage(text="x")) == ["Tech"]
        assert engine.rooms_touched("A", Disconnect()) == ["Tech"]
