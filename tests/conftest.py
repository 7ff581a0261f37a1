"""
Global pytest configuration and fixtures.

The fakes below stand in for the Consul capability so that no test needs a
running Consul agent.
"""

import asyncio
from collections.abc import Iterable, Mapping
from typing import Any

import pytest

from evergreen_consul.backend import Fetched, WatchEvent
from evergreen_consul.operations import OperationDescriptor

# Real responses from the Consul ACL API documentation
ACL_RESPONSE = [
    {
        "CreateIndex": 2,
        "ModifyIndex": 2,
        "ID": "anonymous",
        "Name": "Anonymous Token",
        "Type": "client",
        "Rules": "",
    },
    {
        "CreateIndex": 3,
        "ModifyIndex": 3,
        "ID": "root",
        "Name": "Master Token",
        "Type": "management",
        "Rules": "",
    },
]

ACL_RESPONSE_UPDATE = [
    {
        "CreateIndex": 4,
        "ModifyIndex": 4,
        "ID": "anonymous",
        "Name": "Pseudo Anonymous Token",
        "Type": "client",
        "Rules": "",
    },
    {
        "CreateIndex": 5,
        "ModifyIndex": 5,
        "ID": "root",
        "Name": "Updated Master Token",
        "Type": "management",
        "Rules": "",
    },
]

KV_RESPONSE = {"db": "mysql://localhost:3306"}


class FakeWatch:
    """Watch whose events are pushed by the test."""

    def __init__(self, since: Fetched | None = None) -> None:
        self.since = since
        self.queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def end(self) -> None:
        self._ended = True
        self.queue.put_nowait(None)

    def __aiter__(self) -> "FakeWatch":
        return self

    async def __anext__(self) -> WatchEvent:
        event = await self.queue.get()
        self.queue.task_done()
        if event is None or self._ended:
            raise StopAsyncIteration
        return event

    async def emit(self, event: WatchEvent) -> None:
        """Push an event and wait until the consumer has handled it."""
        await self.queue.put(event)
        await self.queue.join()


class FakeBackend:
    """Consul capability returning canned responses in order.

    A response that is an exception is raised instead of returned; a
    ``Fetched`` response carries its own index.
    """

    def __init__(self, responses: Iterable[Any] = ()) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.watches: list[FakeWatch] = []

    async def fetch(self, operation: OperationDescriptor, options: Mapping[str, Any]) -> Fetched:
        self.calls.append((operation.name, dict(options)))
        result = self.responses.pop(0) if self.responses else None
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, Fetched):
            return result
        return Fetched(None, result)

    async def call(self, operation: OperationDescriptor, options: Mapping[str, Any]) -> Any:
        return (await self.fetch(operation, options)).value

    def watch(
        self,
        operation: OperationDescriptor,
        options: Mapping[str, Any],
        since: Fetched | None = None,
    ) -> FakeWatch:
        watch = FakeWatch(since)
        self.watches.append(watch)
        return watch


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
