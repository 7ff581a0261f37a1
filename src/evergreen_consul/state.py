"""State management for a value fetched from Consul.

A ``StateManager`` owns one operation/options pair for the lifetime of a
directive. It fetches the value on demand (``refresh``), optionally keeps
it current through a backend watch (``start_watch``/``end_watch``), and
tells subscribers about new values and failures.

Guarantees:

- ``has_value()`` is true once any fetch (initial or watched) succeeded.
- The current value is the last value successfully received. A failed
  fetch never overwrites it, and an ``error`` event never means the value
  is invalid.
- At most one watch runs per manager.
- Events are delivered in the order the underlying operations completed.
- An error nobody listens to is dropped, never raised.

Threading Model:
    All methods run on the asyncio event loop. The value is mutated only by
    the manager's own refresh and watch handlers, between await points, so
    no locking is needed.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .backend import ConsulCapability, Fetched, Watch
from .errors import WatchError
from .parser import ParsedRequest

logger = logging.getLogger(__name__)


class StateEvent(str, Enum):
    """Events a state manager emits."""

    CHANGE = "change"
    ERROR = "error"


class _Absent:
    """Marker for "no value received yet"."""

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()

Listener = Callable[[Any], None]
RefreshCallback = Callable[[BaseException | None, Any], None]


class StateManager:
    """Holds the latest value of one Consul operation.

    Example:
        ```python
        manager = StateManager(backend, parse_expression("kv?key=db&mode=watch"))
        manager.on("change", lambda value: print("new value", value))
        manager.on("error", lambda error: print("fetch failed", error))

        await manager.refresh()
        manager.start_watch()
        ...
        await manager.end_watch()
        ```
    """

    def __init__(self, backend: ConsulCapability, request: ParsedRequest):
        self.backend = backend
        self.request = request
        self.method_options = request.backend_options
        self.mode = request.mode

        self._value: Any = ABSENT
        self._has_value = False
        self._fetched: Fetched | None = None
        self._watch: Watch | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._listeners: dict[StateEvent, list[Listener]] = {event: [] for event in StateEvent}

    @property
    def method(self) -> str:
        """Canonical name of the watched operation."""
        return self.request.method

    @property
    def value(self) -> Any:
        return self._value

    def has_value(self) -> bool:
        return self._has_value

    def current_value(self) -> Any:
        """Return the latest value, or ``ABSENT`` if none was received."""
        return self._value

    @property
    def watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def on(self, event: StateEvent | str, listener: Listener) -> Listener:
        """Subscribe to ``change`` (new value) or ``error`` (exception) events.

        Listeners are called in subscription order. Returns the listener so
        the method can be used as a decorator.
        """
        listeners = self._listeners[StateEvent(event)]
        if listener not in listeners:
            listeners.append(listener)
        return listener

    def off(self, event: StateEvent | str, listener: Listener) -> bool:
        """Unsubscribe a listener.

        Returns:
            True if the listener was subscribed, False otherwise
        """
        try:
            self._listeners[StateEvent(event)].remove(listener)
            return True
        except ValueError:
            return False

    def listener_count(self, event: StateEvent | str) -> int:
        return len(self._listeners[StateEvent(event)])

    def _emit(self, event: StateEvent, payload: Any) -> None:
        listeners = list(self._listeners[event])
        if not listeners and event is StateEvent.ERROR:
            logger.debug(f"No error listeners for {self.method}, dropping: {payload}")
            return

        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.warning(f"{event.value} listener for {self.method} failed: {e}", exc_info=True)

    def _update(self, value: Any) -> None:
        self._value = value
        self._has_value = True
        self._emit(StateEvent.CHANGE, value)

    def _notify_error(self, error: BaseException) -> None:
        self._emit(StateEvent.ERROR, error)

    async def refresh(self, callback: RefreshCallback | None = None) -> None:
        """Fetch the value once.

        On success the value is updated and one ``change`` event is
        emitted; on failure one ``error`` event is emitted and the value is
        left as it was. Failures are not raised: they reach the ``error``
        listeners and ``callback``.

        Args:
            callback: Optional ``callback(error, value)``; ``error`` is None
                on success and ``value`` is None on failure
        """
        try:
            fetched = await self.backend.fetch(self.request.operation, self.method_options)
        except Exception as e:
            logger.debug(f"Refresh of {self.method} failed: {e}")
            self._notify_error(e)
            if callback is not None:
                callback(e, None)
            return

        self._fetched = fetched
        self._update(fetched.value)
        if callback is not None:
            callback(None, fetched.value)

    def start_watch(self) -> bool:
        """Start watching the operation if the request asked for it.

        Does nothing unless the mode is ``watch``, and does nothing if a
        watch is already running. Must be called from a running event loop.

        Returns:
            True if a watch was started
        """
        if self.mode != "watch":
            return False
        if self.watching:
            logger.debug(f"Already watching {self.method}")
            return False

        loop = asyncio.get_running_loop()
        # Start from the last value received so it is not reported again
        watch = self.backend.watch(
            self.request.operation, self.method_options, since=self._fetched
        )
        self._watch = watch
        self._watch_task = loop.create_task(self._run_watch(watch), name=f"watch:{self.method}")
        logger.info(f"Started watching {self.method}")
        return True

    async def _run_watch(self, watch: Watch) -> None:
        try:
            async for event in watch:
                if event.kind == "change":
                    self._fetched = Fetched(event.index, event.value)
                    self._update(event.value)
                elif event.error is not None:
                    self._notify_error(event.error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Watch on {self.method} stopped unexpectedly: {e}", exc_info=True)
            self._notify_error(e)
        finally:
            logger.debug(f"Watch loop for {self.method} exited")

    async def end_watch(self) -> None:
        """Stop the running watch.

        Raises:
            WatchError: If no watch is running
        """
        if self._watch is None:
            raise WatchError(f"No active watch on {self.method}")

        watch, task = self._watch, self._watch_task
        self._watch = None
        self._watch_task = None

        watch.end()
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.info(f"Stopped watching {self.method}")
