"""Tests for room registry membership and admin rules."""
from __future__ import annotations

import random

import pytest

from camlink.schemas import signaling as wire
from camlink.services.rooms import RoomError, RoomRegistry


class Recorder:
    def __init__(self) -> None:
        self.sent: list[tuple[str, object]] = []

    def __call__(self, connection_id: str, message) -> None:
        self.sent.append((connection_id, message))

    def to(self, connection_id: str) -> list:
        return [message for target, message in self.sent if target == connection_id]

    def of_type(self, message_type: type) -> list[tuple[str, object]]:
        return [(target, message) for target, message in self.sent if isinstance(message, message_type)]

    def clear(self) -> None:
        self.sent.clear()


def assert_invariants(registry: RoomRegistry) -> None:
    for room_id in list(registry._rooms):
        room = registry.get(room_id)
        assert room.participants, f"empty room {room_id} still exists"
        admins = [p for p in room.participants.values() if p.is_admin]
        assert len(admins) == 1
        assert admins[0].connection_id == room.admin_connection_id


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder) -> RoomRegistry:
    return RoomRegistry(emit=recorder)


def test_create_room_makes_creator_sole_admin(registry):
    result = registry.create_room("r1", "Garage", "pw12", "ctrl")

    assert result.ok
    assert result.data["is_admin"] is True
    room = registry.get("r1")
    assert list(room.participants) == ["ctrl"]
    assert room.participants["ctrl"].is_admin
    assert room.name == "Garage"
    assert registry.rooms_of("ctrl") == ["r1"]
    assert_invariants(registry)


def test_create_existing_room_fails(registry):
    registry.create_room("r1", "", "pw12", "ctrl")

    result = registry.create_room("r1", "", "other", "someone")

    assert not result.ok
    assert result.error is RoomError.ALREADY_EXISTS
    assert list(registry.get("r1").participants) == ["ctrl"]


def test_join_missing_room_is_not_found(registry):
    result = registry.join_room("nope", "pw12", "a")

    assert result.error is RoomError.NOT_FOUND
    assert len(registry) == 0


def test_join_with_bad_password_does_not_mutate(registry, recorder):
    registry.create_room("r1", "", "pw12", "ctrl")
    recorder.clear()

    result = registry.join_room("r1", "wrong", "a")

    assert result.error is RoomError.BAD_CREDENTIALS
    assert list(registry.get("r1").participants) == ["ctrl"]
    assert recorder.sent == []
    assert registry.rooms_of("a") == []


def test_join_broadcasts_membership(registry, recorder):
    registry.create_room("r1", "", "pw12", "ctrl")

    result = registry.join_room("r1", "pw12", "a")

    assert result.ok
    assert result.data["is_admin"] is False
    assert [p["connection_id"] for p in result.data["participants"]] == ["ctrl", "a"]

    joined = recorder.of_type(wire.UserJoined)
    assert joined == [("ctrl", wire.UserJoined(room_id="r1", connection_id="a", is_admin=False))]
    snapshots = recorder.of_type(wire.ParticipantsUpdated)
    assert {target for target, _ in snapshots} == {"ctrl", "a"}
    assert_invariants(registry)


def test_admin_rejoin_bypasses_password(registry):
    registry.create_room("r1", "", "pw12", "ctrl")

    result = registry.join_room("r1", "not-the-password", "ctrl")

    assert result.ok
    assert result.data["is_admin"] is True
    assert list(registry.get("r1").participants) == ["ctrl"]
    assert_invariants(registry)


def test_status_update_broadcasts_and_unknown_is_noop(registry, recorder):
    registry.create_room("r1", "", "pw12", "ctrl")
    registry.join_room("r1", "pw12", "a")
    recorder.clear()

    assert registry.update_participant_status("r1", "a", True, False).ok
    assert registry.get("r1").participants["a"].has_video is True
    snapshots = recorder.of_type(wire.ParticipantsUpdated)
    assert len(snapshots) == 2
    assert snapshots[0][1].participants[1].has_video is True

    recorder.clear()
    assert registry.update_participant_status("missing", "a", True, True).ok
    assert registry.update_participant_status("r1", "ghost", True, True).ok
    assert recorder.sent == []


def test_stream_settings_merge_and_notify_admin(registry, recorder):
    registry.create_room("r1", "", "pw12", "ctrl")
    registry.join_room("r1", "pw12", "a")
    recorder.clear()

    result = registry.update_stream_settings("r1", "a", wire.StreamSettingsPatch(fps=15))

    assert result.data["settings"] == {"resolution": "720p", "fps": 15, "bitrate": 2000}
    notices = recorder.to("ctrl")
    assert len(notices) == 1
    assert isinstance(notices[0], wire.ParticipantSettingsUpdated)
    assert notices[0].settings.fps == 15

    recorder.clear()
    registry.update_stream_settings("r1", "ctrl", wire.StreamSettingsPatch(bitrate=500))
    assert recorder.sent == []


def test_kick_by_admin(registry, recorder):
    registry.create_room("r1", "", "pw12", "ctrl")
    registry.join_room("r1", "pw12", "a")
    registry.join_room("r1", "pw12", "b")
    recorder.clear()

    result = registry.kick("r1", "ctrl", "a")

    assert result.ok
    assert recorder.to("a") == [wire.Kicked(room_id="r1")]
    snapshot = recorder.to("b")[-1]
    assert isinstance(snapshot, wire.ParticipantsUpdated)
    assert [p.connection_id for p in snapshot.participants] == ["ctrl", "b"]
    assert wire.KickSuccess(room_id="r1", connection_id="a") in recorder.to("ctrl")
    assert registry.rooms_of("a") == []
    assert_invariants(registry)


@pytest.mark.parametrize(
    ("requester", "target", "error"),
    [
        ("a", "b", RoomError.UNAUTHORIZED),
        ("a", "ctrl", RoomError.UNAUTHORIZED),
        ("ctrl", "ctrl", RoomError.UNAUTHORIZED),
        ("ctrl", "ghost", RoomError.NOT_FOUND),
    ],
)
def test_invalid_kick_is_inert(registry, recorder, requester, target, error):
    registry.create_room("r1", "", "pw12", "ctrl")
    registry.join_room("r1", "pw12", "a")
    registry.join_room("r1", "pw12", "b")
    recorder.clear()

    result = registry.kick("r1", requester, target)

    assert result.error is error
    assert recorder.sent == []
    assert list(registry.get("r1").participants) == ["ctrl", "a", "b"]


def test_admin_leave_promotes_earliest_member(registry, recorder):
    registry.create_room("r1", "", "pw12", "ctrl")
    for member in ("a", "b", "c"):
        registry.join_room("r1", "pw12", member)
    recorder.clear()

    registry.leave("r1", "ctrl")

    room = registry.get("r1")
    assert list(room.participants) == ["a", "b", "c"]
    assert room.admin_connection_id == "a"
    assert recorder.of_type(wire.AdminAssigned) == [("a", wire.AdminAssigned(room_id="r1"))]
    assert_invariants(registry)

    final = recorder.to("c")[-1]
    assert [p.is_admin for p in final.participants] == [True, False, False]


def test_last_member_leaving_deletes_room(registry):
    registry.create_room("r1", "", "pw12", "ctrl")
    registry.join_room("r1", "pw12", "a")

    registry.leave("r1", "a")
    registry.leave("r1", "ctrl")

    assert registry.get("r1") is None
    assert len(registry) == 0
    # A new room under the same id is allowed once the old one is gone.
    assert registry.create_room("r1", "", "x", "other").ok


def test_disconnect_leaves_every_room(registry, recorder):
    registry.create_room("r1", "", "pw", "ctrl")
    registry.create_room("r2", "", "pw", "ctrl")
    registry.join_room("r1", "pw", "a")
    registry.join_room("r2", "pw", "b")
    recorder.clear()

    left = registry.disconnect("ctrl")

    assert sorted(left) == ["r1", "r2"]
    assert registry.get("r1").admin_connection_id == "a"
    assert registry.get("r2").admin_connection_id == "b"
    assert {target for target, _ in recorder.of_type(wire.AdminAssigned)} == {"a", "b"}
    assert registry.rooms_of("ctrl") == []
    assert_invariants(registry)


def test_room_info(registry):
    registry.create_room("r1", "Porch", "pw", "ctrl")
    registry.join_room("r1", "pw", "a")

    info = registry.room_info("r1", "a")

    assert info.data["room"]["name"] == "Porch"
    assert info.data["room"]["is_admin"] is False
    assert "password" not in info.data["room"]
    assert registry.room_info("missing", "a").error is RoomError.NOT_FOUND


def test_random_churn_keeps_invariants(registry):
    rng = random.Random(7)
    connections = [f"c{i}" for i in range(8)]
    for step in range(400):
        conn = rng.choice(connections)
        room_id = rng.choice(["r1", "r2"])
        action = rng.randrange(5)
        if action == 0:
            registry.create_room(room_id, "", "pw", conn)
        elif action == 1:
            registry.join_room(room_id, rng.choice(["pw", "bad"]), conn)
        elif action == 2:
            registry.leave(room_id, conn)
        elif action == 3:
            room = registry.get(room_id)
            if room:
                registry.kick(room_id, rng.choice([room.admin_connection_id, conn]), rng.choice(connections))
        else:
            registry.disconnect(conn)
        assert_invariants(registry)
