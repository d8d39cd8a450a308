"""Unit tests for per-connection room membership."""

from __future__ import annotations

from banter.realtime.rooms import RoomMembershipTracker


def test_join_is_additive_and_idempotent():
    rooms = RoomMembershipTracker()

    assert rooms.join(1, 10, "c1") is True
    assert rooms.join(1, 11, "c1") is True
    assert rooms.join(1, 10, "c1") is False

    assert rooms.rooms_for("c1") == {10, 11}
    assert rooms.subscribers(10) == {"c1"}


def test_user_in_room_through_any_connection():
    rooms = RoomMembershipTracker()
    rooms.join(1, 10, "phone")
    rooms.join(1, 20, "laptop")

    assert rooms.is_user_in_room(1, 10)
    assert rooms.is_user_in_room(1, 20)
    assert not rooms.is_user_in_room(2, 10)


def test_drop_connection_only_affects_that_connection():
    rooms = RoomMembershipTracker()
    rooms.join(1, 10, "phone")
    rooms.join(1, 10, "laptop")
    rooms.join(2, 10, "other")

    assert rooms.drop_connection("phone") == {10}

    assert rooms.subscribers(10) == {"laptop", "other"}
    assert rooms.is_user_in_room(1, 10)
    assert rooms.rooms_for("phone") == set()


def test_leave_removes_single_room():
    rooms = RoomMembershipTracker()
    rooms.join(1, 10, "c1")
    rooms.join(1, 11, "c1")

    assert rooms.leave("c1", 10) is True
    assert rooms.leave("c1", 10) is False
    assert not rooms.is_user_in_room(1, 10)
    assert rooms.is_user_in_room(1, 11)


def test_empty_rooms_are_forgotten():
    rooms = RoomMembershipTracker()
    rooms.join(1, 10, "c1")
    rooms.drop_connection("c1")

    assert rooms.subscribers(10) == set()
    assert rooms.users_in_room(10) == set()


def test_connection_cannot_join_for_another_user():
    rooms = RoomMembershipTracker()
    rooms.join(1, 10, "c1")

    assert rooms.join(2, 11, "c1") is False
    assert not rooms.is_user_in_room(2, 11)


def test_remove_user_drops_every_connection_of_that_user():
    tracker = RoomMembershipTracker()
    tracker.join(1, 10, "a")
    tracker.join(1, 10, "b")
    tracker.join(2, 10, "c")

    assert tracker.remove_user(1, 10) == {"a", "b"}
    assert tracker.users_in_room(10) == {2}
    assert tracker.remove_user(1, 10) == set()
