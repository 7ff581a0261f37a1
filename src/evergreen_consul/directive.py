"""The ``$consul:`` configuration directive.

Usage in a template:

    $consul:<operation>?<options>

Where <operation> is a canonical Consul operation or one of its aliases
(see ``evergreen_consul.operations``) and <options> is a query string with
the general options

- dc (string, optional): datacenter (defaults to the agent's datacenter)
- wan (boolean, default: false): return WAN members instead of LAN members
- consistent (boolean, default: false): require strong consistency
- stale (boolean, default: false): allow arbitrarily stale reads
- index (string, optional): blocking query index, used with ``wait``
- wait (string, optional): maximum blocking time (e.g. ``5m``)
- token (string, optional): ACL token, overrides the bootstrap token
- mode (``once`` or ``watch``, default: once): keep the value updated
- ignoreStartupNodata (boolean, default: false): hand the value to the
  host even if the initial fetch fails

plus the operation-specific options of its schema.

Example:

    $consul:kv?key=environments/blue/services/email
    $consul:health.service?service=email&passing=true&mode=watch&wait=30s

Handling an expression goes through

    Parsing -> Fetching -> Ready | StartupFailed

and, for ``mode=watch``, ``Ready -> Watching`` once the host has received
the state manager.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .backend import ConsulBackend, ConsulCapability
from .config import URI_ENV, ConsulConfigModel, load_consul_config
from .errors import ConnectionFailure, ConsulDirectiveError
from .operations import OperationRegistry, default_registry
from .parser import ExpressionParser, ParsedRequest
from .state import StateManager

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^\$([A-Za-z][A-Za-z0-9_-]*):(.*)$", re.DOTALL)


@dataclass(frozen=True)
class DirectiveContext:
    """A directive occurrence in the host's configuration tree.

    Attributes:
        strategy: Directive name, e.g. ``consul``
        expression: The expression after ``$<strategy>:``
        path: Location of the directive in the tree
        value: The resolved value, set by ``resolve``
    """

    strategy: str
    expression: str
    path: tuple[str | int, ...] = field(default_factory=tuple)
    value: Any = None

    def resolve(self, value: Any) -> "DirectiveContext":
        """Return a copy of this context holding ``value``."""
        return replace(self, value=value)


DirectiveCallback = Callable[[BaseException | None, DirectiveContext | None], None]


class Directive(ABC):
    """Base class for configuration directives.

    A directive handles the expressions written as ``$<strategy>:...`` in a
    host configuration. ``handle`` must invoke the callback exactly once,
    either with an error or with the context resolved to its value.
    """

    @property
    @abstractmethod
    def strategy(self) -> str:
        """Directive name, also the reference prefix."""
        pass

    @abstractmethod
    async def handle(self, context: DirectiveContext, callback: DirectiveCallback) -> None:
        """Resolve a directive context."""
        pass

    def cleanup(self) -> None:
        """Release any clients held by the directive. Idempotent."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()


class DirectiveRegistry:
    """Registry mapping directive strategies to directives."""

    def __init__(self):
        self._directives: dict[str, Directive] = {}

    def register(self, directive: Directive) -> None:
        if directive.strategy in self._directives:
            logger.warning(f"Replacing directive for strategy: {directive.strategy}")
        self._directives[directive.strategy] = directive
        logger.debug(f"Registered directive: {directive.strategy}")

    def get(self, strategy: str) -> Directive | None:
        return self._directives.get(strategy)

    def list_strategies(self) -> list[str]:
        return list(self._directives)

    @staticmethod
    def split_reference(reference: str) -> tuple[str, str] | None:
        """Split ``$<strategy>:<expression>``, or return None."""
        match = REFERENCE_PATTERN.match(reference)
        if not match:
            return None
        return match.group(1), match.group(2)

    def context_for(
        self, reference: str, path: tuple[str | int, ...] = ()
    ) -> DirectiveContext | None:
        """Build a context for a reference a registered directive handles."""
        parts = self.split_reference(reference)
        if parts is None or parts[0] not in self._directives:
            return None
        return DirectiveContext(strategy=parts[0], expression=parts[1], path=tuple(path))

    async def handle(
        self, context: DirectiveContext, callback: DirectiveCallback
    ) -> None:
        """Dispatch a context to the directive registered for its strategy.

        Raises:
            ValueError: If no directive handles the context's strategy
        """
        directive = self._directives.get(context.strategy)
        if directive is None:
            raise ValueError(f"No directive registered for strategy: {context.strategy}")
        await directive.handle(context, callback)

    def cleanup_all(self) -> None:
        for directive in self._directives.values():
            try:
                directive.cleanup()
            except Exception as e:
                logger.warning(f"Error cleaning up directive {directive.strategy}: {e}")


class ConsulDirective(Directive):
    """Resolves ``$consul:`` expressions into live ``StateManager`` values.

    Args:
        config: Connection configuration (model or dictionary). If None, it
            is loaded from ``env``: ``EV_CONSUL_CONFIG`` (YAML file), then
            ``EV_CONSUL_URI``, then ``http://localhost:8500``.
        env: Environment to read the bootstrap configuration from, defaults
            to ``os.environ``
        backend: Consul capability; defaults to a ``ConsulBackend`` built
            from the configuration
        registry: Operation registry, defaults to the built-in operations
    """

    EnvironmentKey = URI_ENV

    def __init__(
        self,
        config: ConsulConfigModel | Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
        backend: ConsulCapability | None = None,
        registry: OperationRegistry | None = None,
    ):
        if config is None:
            self.config = load_consul_config(env=env)
        elif isinstance(config, ConsulConfigModel):
            self.config = config
        else:
            self.config = ConsulConfigModel.model_validate(dict(config))

        self.registry = registry if registry is not None else default_registry()
        self.parser = ExpressionParser(self.registry, self.config.defaults)
        self.backend = backend if backend is not None else ConsulBackend(self.config, self.registry)

    @classmethod
    def from_config_file(cls, config_path: str | Path, **kwargs: Any) -> "ConsulDirective":
        """Create a directive from a YAML configuration file."""
        return cls(load_consul_config(Path(config_path)), **kwargs)

    @property
    def strategy(self) -> str:
        return "consul"

    def parse_expression(self, expression: str) -> ParsedRequest:
        """Parse an expression (minus the ``$consul:`` prefix).

        Raises:
            ExpressionError: If the expression can't be parsed
            InvalidOperationError: If the operation is not registered
            ValidationError: If the options violate the operation schema
        """
        return self.parser.parse(expression)

    async def _start(self, expression: str) -> StateManager:
        """Parse, build a state manager and perform the initial fetch."""
        request = self.parse_expression(expression)
        manager = StateManager(self.backend, request)

        failures: list[BaseException] = []

        def on_refresh(error: BaseException | None, _value: Any) -> None:
            if error is not None:
                failures.append(error)

        await manager.refresh(on_refresh)

        if failures:
            error = failures[0]
            if not request.ignore_startup_nodata:
                raise ConnectionFailure(request.method, error) from error
            logger.warning(
                f"Ignoring startup failure of {request.method} "
                f"(ignoreStartupNodata is set): {error}"
            )
        return manager

    async def resolve(self, expression: str) -> StateManager:
        """Resolve an expression to a state manager, watching if requested.

        Raises:
            ConsulDirectiveError: If parsing fails, or the initial fetch
                fails and ``ignoreStartupNodata`` is not set
        """
        manager = await self._start(expression)
        manager.start_watch()
        return manager

    async def handle(self, context: DirectiveContext, callback: DirectiveCallback) -> None:
        try:
            manager = await self._start(context.expression)
        except ConsulDirectiveError as e:
            logger.debug(f"Failed to handle {context.strategy}:{context.expression}: {e}")
            callback(e, None)
            return

        callback(None, context.resolve(manager))
        manager.start_watch()

    def cleanup(self) -> None:
        cleanup = getattr(self.backend, "cleanup", None)
        if callable(cleanup):
            cleanup()


def directives() -> list[Directive]:
    """Module declaration: the directives this package provides."""
    return [ConsulDirective()]
