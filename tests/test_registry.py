from __future__ import annotations

from aioaudiobox.server.registry import ConnectionRegistry


def test_join_and_leave() -> None:
    registry = ConnectionRegistry()
    registry.join("a", "demo")
    registry.join("a", "demo")
    registry.join("b", "demo")
    assert registry.members_of("demo") == {"a", "b"}
    assert registry.rooms_of("a") == {"demo"}

    assert registry.leave("a", "demo") is True
    assert registry.leave("a", "demo") is False
    assert registry.members_of("demo") == {"b"}
    assert registry.rooms_of("a") == frozenset()


def test_snapshots_are_detached() -> None:
    registry = ConnectionRegistry()
    registry.join("a", "demo")
    members = registry.members_of("demo")
    registry.join("b", "demo")
    assert members == {"a"}


def test_close_room_returns_members() -> None:
    registry = ConnectionRegistry()
    registry.join("owner", "demo")
    registry.join("listener", "demo")
    registry.join("listener", "other")

    assert registry.close_room("demo") == {"owner", "listener"}
    assert registry.members_of("demo") == frozenset()
    assert registry.rooms_of("listener") == {"other"}
    assert registry.rooms_of("owner") == frozenset()
    assert registry.close_room("demo") == frozenset()


def test_drop_connection_reports_each_room_once() -> None:
    registry = ConnectionRegistry()
    registry.join("x", "demo")
    registry.join("x", "other")
    registry.join("y", "other")

    assert registry.drop_connection("x") == {"demo", "other"}
    assert registry.members_of("other") == {"y"}
    assert registry.members_of("demo") == frozenset()
    assert registry.drop_connection("x") == frozenset()
    assert not registry.is_member("x", "other")
