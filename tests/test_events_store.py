import asyncio
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from polish.errors import SessionClosedError, SessionNotFoundError
from polish.events import Event, EventChannel, EventType
from polish.models import SessionStatus
from polish.store import SessionStore


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SessionStore]:
    with SessionStore(tmp_path / "db" / "sessions.db") as session_store:
        yield session_store


def test_channel_fans_out_to_subscribers_in_order() -> None:
    async def scenario() -> tuple[list[str], list[str]]:
        channel = EventChannel("s1")
        first = channel.subscribe()
        second = channel.subscribe()
        channel.emit(EventType.PHASE, {"phase": "implement"})
        channel.emit(EventType.STATUS, {"message": "working"})
        channel.close()
        return (
            [str(event.type) async for event in first],
            [str(event.type) async for event in second],
        )

    first, second = asyncio.run(scenario())

    assert first == second == ["phase", "status"]


def test_full_subscriber_queue_drops_events_without_blocking() -> None:
    async def scenario() -> tuple[int, list[Any]]:
        channel = EventChannel(max_queue_size=2)
        slow = channel.subscribe()
        for index in range(5):
            channel.emit(EventType.STATUS, {"index": index})
        channel.close()
        return slow.dropped, [event.data["index"] async for event in slow]

    dropped, received = asyncio.run(scenario())

    assert dropped == 4
    assert received == [1]


def test_subscribing_after_close_ends_immediately() -> None:
    async def scenario() -> list[Event]:
        channel = EventChannel()
        channel.emit(EventType.STATUS, {})
        channel.close()
        return [event async for event in channel.subscribe()]

    assert asyncio.run(scenario()) == []


def test_history_keeps_only_the_most_recent_events() -> None:
    channel = EventChannel(max_history=3)
    persisted: list[Event] = []
    channel.add_sink(persisted.append)

    for index in range(5):
        channel.emit(EventType.STATUS, {"index": index})

    assert [event.data["index"] for event in channel.history] == [2, 3, 4]
    assert len(channel.events_of(EventType.STATUS)) == 3
    assert len(persisted) == 5


def test_failing_sink_does_not_break_emit() -> None:
    channel = EventChannel()
    seen: list[Event] = []

    def broken(event: Event) -> None:
        raise RuntimeError("sink down")

    channel.add_sink(broken)
    remove = channel.add_sink(seen.append)
    channel.emit(EventType.COMMIT, {"hash": "abc"})
    remove()
    channel.emit(EventType.COMMIT, {"hash": "def"})

    assert [event.data["hash"] for event in seen] == ["abc"]
    assert len(channel.events_of(EventType.COMMIT)) == 2


def test_event_serializes_to_json() -> None:
    event = Event(EventType.SCORE, {"score": 61.5})

    assert event.to_dict()["type"] == "score"
    assert '"score": 61.5' in event.to_json()


def test_session_lifecycle(store: SessionStore) -> None:
    record = store.create_session("/tmp/project", "Add a flag", session_id="s1")
    assert record.status is SessionStatus.PENDING

    store.update_session("s1", status=SessionStatus.TESTING, initial_score=60.0)
    updated = store.update_session("s1", status=SessionStatus.COMPLETED, final_score=70.0)

    assert updated.status is SessionStatus.COMPLETED
    assert updated.initial_score == 60.0
    assert updated.completed_at is not None
    assert [session.id for session in store.list_sessions()] == ["s1"]


def test_terminal_sessions_cannot_change(store: SessionStore) -> None:
    store.create_session("/tmp/project", session_id="s1")
    store.update_session("s1", status=SessionStatus.FAILED, error="boom")

    assert store.update_session("s1", status=SessionStatus.FAILED).error == "boom"
    with pytest.raises(SessionClosedError):
        store.update_session("s1", status=SessionStatus.TESTING)
    with pytest.raises(SessionClosedError):
        store.update_session("s1", final_score=90.0)


def test_unknown_fields_and_sessions_are_rejected(store: SessionStore) -> None:
    store.create_session("/tmp/project", session_id="s1")

    with pytest.raises(ValueError):
        store.update_session("s1", project_path="/elsewhere")
    with pytest.raises(SessionNotFoundError):
        store.get_session("missing")
    with pytest.raises(SessionNotFoundError):
        store.delete_session("missing")


def test_events_are_persisted_in_order_and_paginated(store: SessionStore) -> None:
    store.create_session("/tmp/project", session_id="s1")
    ids = [
        store.add_event("s1", Event(EventType.PHASE, {"phase": "testing"})),
        store.add_event("s1", Event(EventType.SCORE, {"score": 60.0})),
        store.add_event("s1", Event(EventType.COMMIT, {"hash": "abc"})),
    ]

    events = store.get_events("s1")

    assert [event["id"] for event in events] == ids
    assert [event["type"] for event in events] == ["phase", "score", "commit"]
    assert events[1]["data"] == {"score": 60.0}
    assert [event["type"] for event in store.get_events("s1", after_id=ids[0])] == [
        "score",
        "commit",
    ]


def test_store_subscribers_receive_new_events(store: SessionStore) -> None:
    store.create_session("/tmp/project", session_id="s1")
    received: list[dict[str, Any]] = []
    unsubscribe = store.subscribe("s1", received.append)

    store.add_event("s1", Event(EventType.STATUS, {"message": "hi"}))
    unsubscribe()
    store.add_event("s1", Event(EventType.STATUS, {"message": "bye"}))

    assert [record["data"]["message"] for record in received] == ["hi"]
    assert received[0]["session_id"] == "s1"


def test_delete_removes_events(store: SessionStore) -> None:
    store.create_session("/tmp/project", session_id="s1")
    store.add_event("s1", Event(EventType.STATUS, {}))

    store.delete_session("s1")

    assert store.get_events("s1") == []
    assert store.list_sessions() == []


def test_sessions_survive_reopening(tmp_path: Path) -> None:
    path = tmp_path / "sessions.db"
    with SessionStore(path) as first:
        first.create_session("/tmp/project", "Persist me", session_id="s1")

    with SessionStore(path) as second:
        assert second.get_session("s1").mission == "Persist me"
