"""Backend capability used by the state manager.

The directive core does not speak HTTP. It needs something that, given an
operation and an option bag, returns a value with the index it was read at
(``fetch``) and can watch that operation for changes from there
(``watch``). ``ConsulCapability`` spells out that contract;
``ConsulBackend`` implements it on top of the ``py-consul`` client.

Which keyword arguments each client method takes, and whether it answers
blocking queries, comes from the operation descriptor rather than from the
method signature: several py-consul methods only declare ``**kwargs``.

The py-consul client is synchronous, so every call runs in a worker thread
to keep the event loop free. Watching uses Consul blocking queries: each
cycle passes the index of the previous response and returns when the index
moves or ``wait`` expires.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

from .config import ConsulConfigModel
from .operations import OperationDescriptor, OperationRegistry, default_registry

logger = logging.getLogger(__name__)

DEFAULT_WATCH_WAIT = "5m"


@dataclass(frozen=True)
class Fetched:
    """Result of one fetch: the value and the Consul index it was read at.

    ``index`` is None for operations without blocking-query support.
    """

    index: Any
    value: Any


@dataclass(frozen=True)
class WatchEvent:
    """One outcome of a watch cycle.

    Attributes:
        kind: ``change`` when a new value arrived, ``error`` when the cycle
            failed
        value: The new value (``change`` only)
        index: Consul index of the new value, if the operation has one
        error: The failure (``error`` only)
    """

    kind: Literal["change", "error"]
    value: Any = None
    index: Any = None
    error: BaseException | None = None

    @classmethod
    def change(cls, value: Any, index: Any = None) -> "WatchEvent":
        return cls("change", value=value, index=index)

    @classmethod
    def failure(cls, error: BaseException) -> "WatchEvent":
        return cls("error", error=error)


@runtime_checkable
class Watch(Protocol):
    """A running watch: an async stream of events that can be ended."""

    def __aiter__(self) -> AsyncIterator[WatchEvent]: ...

    def end(self) -> None:
        """Stop the watch. Iteration finishes after the current cycle."""
        ...

    @property
    def ended(self) -> bool: ...


@runtime_checkable
class ConsulCapability(Protocol):
    """What the state manager needs from a Consul client."""

    async def fetch(self, operation: OperationDescriptor, options: Mapping[str, Any]) -> Fetched:
        """Invoke an operation once and return its value and index."""
        ...

    async def call(self, operation: OperationDescriptor, options: Mapping[str, Any]) -> Any:
        """Invoke an operation once and return its value."""
        ...

    def watch(
        self,
        operation: OperationDescriptor,
        options: Mapping[str, Any],
        since: Fetched | None = None,
    ) -> Watch:
        """Start watching an operation for changes after ``since``."""
        ...


class ConsulBackend:
    """``ConsulCapability`` backed by a py-consul ``Consul`` client.

    The client is created on first use from the connection configuration.
    A ready-made client can be injected instead, which is how tests run
    without a Consul agent.
    """

    def __init__(
        self,
        config: ConsulConfigModel | None = None,
        registry: OperationRegistry | None = None,
        client: Any = None,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
    ):
        self.config = config if config is not None else ConsulConfigModel()
        self.registry = registry if registry is not None else default_registry()
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._init_client()
        return self._client

    def _init_client(self) -> Any:
        """Initialize the py-consul client."""
        try:
            import consul
        except ImportError as e:
            raise ImportError(
                "py-consul package is required for Consul support. Install with: pip install py-consul"
            ) from e

        defaults = self.config.defaults
        if defaults.get("consistent"):
            consistency = "consistent"
        elif defaults.get("stale"):
            consistency = "stale"
        else:
            consistency = "default"

        logger.debug(
            f"Connecting to Consul at {self.config.scheme}://{self.config.host}:{self.config.port}"
        )
        return consul.Consul(
            host=self.config.host,
            port=self.config.port,
            scheme=self.config.scheme,
            verify=self.config.verify,
            token=defaults.get("token"),
            dc=defaults.get("dc"),
            consistency=consistency,
        )

    def build_call(
        self,
        operation: OperationDescriptor,
        options: Mapping[str, Any],
        index: Any = None,
    ) -> tuple[list[Any], dict[str, Any]]:
        """Translate an option bag into client method arguments.

        Options named in ``operation.arguments`` are passed positionally;
        ``consistent``/``stale`` become ``consistency``; keyword options
        outside ``operation.keywords`` are not sent.
        """
        remaining = dict(options)

        args = []
        for name in operation.arguments:
            if name not in remaining:
                break
            args.append(remaining.pop(name))
        for name in operation.arguments:
            remaining.pop(name, None)

        consistent = remaining.pop("consistent", False)
        stale = remaining.pop("stale", False)

        kwargs: dict[str, Any] = dict(operation.fixed)
        if consistent:
            kwargs["consistency"] = "consistent"
        elif stale:
            kwargs["consistency"] = "stale"
        kwargs.update(remaining)
        if index is not None:
            kwargs["index"] = index

        dropped = sorted(k for k, v in kwargs.items() if k not in operation.keywords and v)
        if dropped:
            logger.debug(f"{operation.name} does not support {dropped}, not sending them")
        return args, {k: v for k, v in kwargs.items() if k in operation.keywords}

    def invoke(
        self, operation: OperationDescriptor, options: Mapping[str, Any], index: Any = None
    ) -> tuple[Any, Any]:
        """Call an operation synchronously.

        Returns:
            Tuple of (index, value). The index is ``None`` for operations
            that do not support blocking queries.
        """
        method = self.registry.bind(operation, self.client)
        args, kwargs = self.build_call(operation, options, index)
        result = method(*args, **kwargs)

        if operation.blocking:
            new_index, value = result
            return new_index, value
        return None, result

    async def fetch(self, operation: OperationDescriptor, options: Mapping[str, Any]) -> Fetched:
        index, value = await asyncio.to_thread(self.invoke, operation, options)
        return Fetched(index, value)

    async def call(self, operation: OperationDescriptor, options: Mapping[str, Any]) -> Any:
        return (await self.fetch(operation, options)).value

    def watch(
        self,
        operation: OperationDescriptor,
        options: Mapping[str, Any],
        since: Fetched | None = None,
    ) -> "ConsulWatch":
        return ConsulWatch(
            self,
            operation,
            options,
            since=since,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
        )

    def cleanup(self) -> None:
        """Drop the client. Safe to call multiple times."""
        if self._client is not None:
            session = getattr(getattr(self._client, "http", None), "session", None)
            close = getattr(session, "close", None)
            if callable(close):
                close()
            self._client = None


class ConsulWatch:
    """Long-poll loop over one operation.

    Iterating yields a ``change`` event whenever the Consul index moves
    away from the last one seen. The loop starts from ``since``, usually
    the result of the initial fetch, so that value is not reported again;
    without it the first response is a change. An index that goes
    backwards (e.g. after a snapshot restore) becomes the new baseline.

    Operations without blocking support are polled every ``poll_interval``
    seconds and report a change when the value differs from the previous
    one.

    A failed cycle yields an ``error`` event and the loop keeps going after
    an exponential backoff (``backoff_base`` doubling up to
    ``backoff_max``), which resets after the next success.
    """

    def __init__(
        self,
        backend: ConsulBackend,
        operation: OperationDescriptor,
        options: Mapping[str, Any],
        since: Fetched | None = None,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        poll_interval: float = 30.0,
    ):
        self.backend = backend
        self.operation = operation
        self.options = dict(options)
        if not self.options.get("wait"):
            self.options["wait"] = DEFAULT_WATCH_WAIT
        self.since = since
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.poll_interval = poll_interval
        self._initial_index = self.options.pop("index", None)
        self._stop = asyncio.Event()

    @property
    def ended(self) -> bool:
        return self._stop.is_set()

    def end(self) -> None:
        if not self._stop.is_set():
            logger.debug(f"Ending watch on {self.operation.name}")
            self._stop.set()

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self._cycles()

    async def _cycles(self) -> AsyncIterator[WatchEvent]:
        index = self._initial_index
        last_value: Any = _NOTHING
        if self.since is not None:
            last_value = self.since.value
            if self.since.index is not None:
                index = self.since.index
        failures = 0

        while not self.ended:
            try:
                new_index, value = await asyncio.to_thread(
                    self.backend.invoke, self.operation, self.options, index
                )
            except Exception as e:
                failures += 1
                delay = min(self.backoff_base * 2 ** (failures - 1), self.backoff_max)
                logger.error(
                    f"Watch cycle for {self.operation.name} failed ({failures} in a row), "
                    f"retrying in {delay}s: {e}"
                )
                yield WatchEvent.failure(e)
                await self._sleep(delay)
                continue

            failures = 0
            if self.ended:
                break

            if new_index is None:
                if value != last_value:
                    last_value = value
                    yield WatchEvent.change(value)
                await self._sleep(self.poll_interval)
                continue

            if index is not None and _as_int(new_index) < _as_int(index):
                logger.debug(
                    f"Index of {self.operation.name} went backwards ({index} -> {new_index})"
                )
            changed = index is None or _as_int(new_index) != _as_int(index)
            index = new_index
            last_value = value
            if changed:
                yield WatchEvent.change(value, index=new_index)

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


_NOTHING = object()


def _as_int(index: Any) -> int:
    try:
        return int(index)
    except (TypeError, ValueError):
        return 0
