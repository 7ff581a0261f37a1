"""Tests for evergreen_consul.state."""

import asyncio

import pytest
from conftest import ACL_RESPONSE, ACL_RESPONSE_UPDATE, FakeBackend

from evergreen_consul.backend import Fetched, WatchEvent
from evergreen_consul.errors import WatchError
from evergreen_consul.parser import parse_expression
from evergreen_consul.state import ABSENT, StateEvent, StateManager


def make_manager(backend, expression="acl.list"):
    return StateManager(backend, parse_expression(expression))


class TestRefresh:
    """Test fetching values once."""

    async def test_success(self):
        backend = FakeBackend([ACL_RESPONSE])
        manager = make_manager(backend)
        changes, results = [], []
        manager.on("change", changes.append)

        assert manager.has_value() is False
        assert manager.current_value() is ABSENT

        await manager.refresh(lambda error, value: results.append((error, value)))

        assert manager.has_value() is True
        assert manager.value == ACL_RESPONSE
        assert changes == [ACL_RESPONSE]
        assert results == [(None, ACL_RESPONSE)]
        assert backend.calls == [
            ("acl.list", {"wan": False, "consistent": False, "stale": False})
        ]

    async def test_failure(self):
        """Test that a failed fetch emits an error and keeps the old value."""
        failure = ConnectionError("agent unavailable")
        backend = FakeBackend([ACL_RESPONSE, failure])
        manager = make_manager(backend)
        changes, errors, results = [], [], []
        manager.on(StateEvent.CHANGE, changes.append)
        manager.on(StateEvent.ERROR, errors.append)

        await manager.refresh()
        await manager.refresh(lambda error, value: results.append((error, value)))

        assert errors == [failure]
        assert changes == [ACL_RESPONSE]
        assert results == [(failure, None)]
        assert manager.value == ACL_RESPONSE
        assert manager.has_value() is True

    async def test_failure_before_any_value(self):
        manager = make_manager(FakeBackend([ConnectionError("refused")]))

        await manager.refresh()

        assert manager.has_value() is False
        assert manager.current_value() is ABSENT

    async def test_error_without_listeners_is_dropped(self):
        manager = make_manager(FakeBackend([RuntimeError("boom")]))

        # Must not raise
        await manager.refresh()

    async def test_method_options_exclude_directive_options(self):
        backend = FakeBackend(["mysql://localhost:3306"])
        manager = make_manager(backend, "kv?key=db&mode=watch&ignoreStartupNodata=true")

        await manager.refresh()

        _, options = backend.calls[0]
        assert options["key"] == "db"
        assert "mode" not in options
        assert "ignoreStartupNodata" not in options
        assert manager.method == "kv.get"
        assert manager.mode == "watch"


class TestListeners:
    """Test subscription handling."""

    async def test_listener_failure_isolated(self):
        """Test that a raising listener doesn't stop the others."""
        manager = make_manager(FakeBackend([ACL_RESPONSE]))
        received = []

        def broken(value):
            raise RuntimeError("listener bug")

        manager.on("change", broken)
        manager.on("change", received.append)

        await manager.refresh()

        assert received == [ACL_RESPONSE]
        assert manager.value == ACL_RESPONSE

    async def test_off(self):
        manager = make_manager(FakeBackend([ACL_RESPONSE]))
        received = []
        manager.on("change", received.append)

        assert manager.off("change", received.append) is True
        assert manager.off("change", received.append) is False

        await manager.refresh()
        assert received == []

    def test_duplicate_subscription(self):
        manager = make_manager(FakeBackend())
        listener = manager.on("error", lambda error: None)
        manager.on("error", listener)

        assert manager.listener_count("error") == 1

    def test_unknown_event(self):
        manager = make_manager(FakeBackend())
        with pytest.raises(ValueError):
            manager.on("update", lambda value: None)


class TestWatch:
    """Test the watch lifecycle."""

    async def test_watch_updates_value(self):
        backend = FakeBackend([ACL_RESPONSE])
        manager = make_manager(backend, "acl.list?mode=watch")
        changes, errors = [], []
        manager.on("change", changes.append)
        manager.on("error", errors.append)

        await manager.refresh()
        assert manager.start_watch() is True
        assert manager.watching is True

        watch = backend.watches[0]
        await watch.emit(WatchEvent.change(ACL_RESPONSE_UPDATE))
        failure = ConnectionError("lost agent")
        await watch.emit(WatchEvent.failure(failure))

        assert changes == [ACL_RESPONSE, ACL_RESPONSE_UPDATE]
        assert errors == [failure]
        assert manager.value == ACL_RESPONSE_UPDATE

        await manager.end_watch()
        assert manager.watching is False
        assert watch.ended is True

    async def test_watch_error_keeps_value(self):
        backend = FakeBackend([ACL_RESPONSE])
        manager = make_manager(backend, "acl.list?mode=watch")

        await manager.refresh()
        manager.start_watch()
        await backend.watches[0].emit(WatchEvent.failure(ConnectionError("lost agent")))

        assert manager.value == ACL_RESPONSE
        await manager.end_watch()

    async def test_watch_provides_first_value(self):
        """Test that a watch can supply the value after a failed startup fetch."""
        backend = FakeBackend([ConnectionError("refused")])
        manager = make_manager(backend, "acl.list?mode=watch&ignoreStartupNodata=true")

        await manager.refresh()
        manager.start_watch()
        await backend.watches[0].emit(WatchEvent.change(ACL_RESPONSE))

        assert manager.has_value() is True
        assert manager.value == ACL_RESPONSE
        await manager.end_watch()

    async def test_single_watch(self):
        backend = FakeBackend()
        manager = make_manager(backend, "acl.list?mode=watch")

        assert manager.start_watch() is True
        assert manager.start_watch() is False
        assert len(backend.watches) == 1

        await manager.end_watch()

    async def test_once_mode_does_not_watch(self):
        backend = FakeBackend()
        manager = make_manager(backend)

        assert manager.start_watch() is False
        assert backend.watches == []
        assert manager.watching is False

    async def test_end_watch_without_watch(self):
        manager = make_manager(FakeBackend(), "acl.list?mode=watch")

        with pytest.raises(WatchError):
            await manager.end_watch()

    async def test_end_watch_twice(self):
        manager = make_manager(FakeBackend(), "acl.list?mode=watch")
        manager.start_watch()

        await manager.end_watch()
        with pytest.raises(WatchError):
            await manager.end_watch()

    async def test_restart_after_end(self):
        backend = FakeBackend()
        manager = make_manager(backend, "acl.list?mode=watch")

        manager.start_watch()
        await manager.end_watch()
        assert manager.start_watch() is True
        assert len(backend.watches) == 2

        await manager.end_watch()

    async def test_end_watch_stops_task(self):
        backend = FakeBackend()
        manager = make_manager(backend, "acl.list?mode=watch")
        manager.start_watch()
        task = manager._watch_task
        await asyncio.sleep(0)

        await manager.end_watch()

        assert task.done()

    async def test_watch_starts_from_refreshed_value(self):
        """Test that the watch continues from the index of the initial fetch."""
        backend = FakeBackend([Fetched("7", ACL_RESPONSE)])
        manager = make_manager(backend, "acl.list?mode=watch")

        await manager.refresh()
        manager.start_watch()

        assert backend.watches[0].since == Fetched("7", ACL_RESPONSE)
        await manager.end_watch()

    async def test_restart_continues_from_last_change(self):
        backend = FakeBackend([Fetched("7", ACL_RESPONSE)])
        manager = make_manager(backend, "acl.list?mode=watch")

        await manager.refresh()
        manager.start_watch()
        await backend.watches[0].emit(WatchEvent.change(ACL_RESPONSE_UPDATE, index="9"))
        await manager.end_watch()
        manager.start_watch()

        assert backend.watches[1].since == Fetched("9", ACL_RESPONSE_UPDATE)
        await manager.end_watch()
