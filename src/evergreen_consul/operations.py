"""Registry of the Consul operations a directive can invoke.

Each operation is described once by an ``OperationDescriptor``: its dotted
canonical name, the aliases that resolve to it, its options schema, and
where the matching method lives on the Consul client. The registry indexes
every canonical name and alias up front so that resolving a name is a
single dictionary lookup.

Example:
    >>> registry = default_registry()
    >>> registry.get("kv") is registry.get("kv.get")
    True
    >>> registry.get("kv").method
    'kv.get'
"""

import logging
import operator
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .errors import InvalidOperationError
from .schema import (
    AclGetOptions,
    BaseOptions,
    EventListOptions,
    HealthServiceOptions,
    HealthStateOptions,
    KvGetOptions,
    KvKeysOptions,
    NodeListOptions,
    NodeOptions,
    QueryExecuteOptions,
    QueryOptions,
    ServiceNodesOptions,
    ServiceOptions,
    SessionGetOptions,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationDescriptor:
    """Describes one Consul operation.

    Attributes:
        name: Canonical dotted name, e.g. ``kv.get``
        aliases: Alternate names resolving to this operation
        schema: Options model validating the operation's option bag
        method: Dotted attribute path of the method on the Consul client
        arguments: Options passed positionally to the client method
        keywords: Keyword arguments the client method accepts; other
            options are not sent
        blocking: The method supports blocking queries and returns an
            ``(index, data)`` tuple
        fixed: Keyword arguments always passed to the client method
        description: One-line summary for listings
    """

    name: str
    method: str
    schema: type[BaseOptions] = BaseOptions
    aliases: frozenset[str] = frozenset()
    arguments: tuple[str, ...] = ()
    keywords: frozenset[str] = frozenset()
    blocking: bool = False
    fixed: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    @property
    def names(self) -> tuple[str, ...]:
        """Canonical name followed by the aliases in sorted order."""
        return (self.name, *sorted(self.aliases))


def _op(
    name: str,
    method: str,
    schema: type[BaseOptions] = BaseOptions,
    aliases: Iterable[str] = (),
    arguments: tuple[str, ...] = (),
    keywords: Iterable[str] = (),
    fixed: Mapping[str, Any] | None = None,
    description: str = "",
) -> OperationDescriptor:
    keywords = frozenset(keywords)
    return OperationDescriptor(
        name=name,
        method=method,
        schema=schema,
        aliases=frozenset(aliases),
        arguments=arguments,
        keywords=keywords,
        blocking="index" in keywords,
        fixed=MappingProxyType(dict(fixed or {})),
        description=description,
    )


# Keyword arguments of the py-consul client methods
_BLOCKING = ("index", "wait", "dc", "token")
_BLOCKING_READ = (*_BLOCKING, "consistency")

DEFAULT_OPERATIONS: tuple[OperationDescriptor, ...] = (
    # ACL
    _op("acl.get", "acl.token.read", AclGetOptions, ["acl"], ("id",), ["token"],
        description="Read an ACL token"),
    _op("acl.list", "acl.token.list", aliases=["acls"], keywords=["token"],
        description="List ACL tokens"),
    # Agent
    _op("agent.members", "agent.members", aliases=["members"], keywords=["wan"],
        description="Members the agent sees in the cluster gossip pool"),
    _op("agent.self", "agent.self", aliases=["self"],
        description="Agent configuration and member information"),
    _op("agent.check.list", "agent.checks", aliases=["agent.checks"],
        description="Checks registered with the local agent"),
    _op("agent.service.list", "agent.services", aliases=["agent.services"],
        description="Services registered with the local agent"),
    # Catalog
    _op("catalog.datacenters", "catalog.datacenters", aliases=["datacenters"],
        description="Known datacenters"),
    _op("catalog.node.list", "catalog.nodes", NodeListOptions, ["node.list", "nodes"],
        keywords=[*_BLOCKING_READ, "near"], description="Nodes in a datacenter"),
    _op("catalog.node.services", "catalog.node", NodeOptions, ["node.services"], ("node",),
        _BLOCKING_READ, description="Services provided by a node"),
    _op("catalog.service.list", "catalog.services", aliases=["service.list", "services"],
        keywords=_BLOCKING_READ, description="Services in a datacenter"),
    _op("catalog.service.nodes", "catalog.service", ServiceNodesOptions, ["service.nodes"],
        ("service",), [*_BLOCKING_READ, "tag", "near"],
        description="Nodes providing a service"),
    # Events
    _op("event.list", "event.list", EventListOptions, ["events"],
        keywords=["name", "index", "wait"], description="Most recent user events"),
    # Health
    _op("health.node", "health.node", NodeOptions, arguments=("node",), keywords=_BLOCKING,
        description="Health checks of a node"),
    _op("health.checks", "health.checks", ServiceOptions, arguments=("service",),
        keywords=[*_BLOCKING, "near"], description="Health checks of a service"),
    _op("health.service", "health.service", HealthServiceOptions, arguments=("service",),
        keywords=[*_BLOCKING, "passing", "tag", "near"],
        description="Nodes and health info of a service"),
    _op("health.state", "health.state", HealthStateOptions, arguments=("state",),
        keywords=[*_BLOCKING, "near"], description="Checks in a given state"),
    # Key/value
    _op("kv.get", "kv.get", KvGetOptions, ["kv"], ("key",),
        [*_BLOCKING_READ, "recurse", "separator"], description="Key/value pair(s)"),
    _op("kv.keys", "kv.get", KvKeysOptions, ["keys"], ("key",),
        [*_BLOCKING_READ, "keys", "separator"], {"keys": True},
        description="Keys under a prefix"),
    # Prepared queries
    _op("query.list", "query.list", aliases=["queries"], keywords=["dc", "token"],
        description="Prepared queries"),
    _op("query.get", "query.get", QueryOptions, arguments=("query",),
        keywords=["dc", "token"], description="A prepared query definition"),
    _op("query.execute", "query.execute", QueryExecuteOptions, arguments=("query",),
        keywords=["dc", "token", "near", "limit"], description="Execute a prepared query"),
    _op("query.explain", "query.explain", QueryOptions, arguments=("query",),
        keywords=["dc", "token"], description="Explain a prepared query"),
    # Sessions
    _op("session.get", "session.info", SessionGetOptions, ["session"], ("id",),
        _BLOCKING_READ, description="A session"),
    _op("session.node", "session.node", NodeOptions, arguments=("node",),
        keywords=_BLOCKING_READ, description="Active sessions of a node"),
    _op("session.list", "session.list", aliases=["sessions"], keywords=_BLOCKING_READ,
        description="Active sessions"),
    # Status
    _op("status.leader", "status.leader", aliases=["leader"],
        description="Current Raft leader"),
    _op("status.peers", "status.peers", aliases=["peers"],
        description="Raft peers"),
)


class OperationRegistry:
    """Lookup table from operation names and aliases to descriptors.

    The registry is immutable once built. Canonical names and aliases share
    one namespace; a name claimed twice is a construction error.
    """

    def __init__(self, operations: Iterable[OperationDescriptor] = DEFAULT_OPERATIONS):
        self._operations: dict[str, OperationDescriptor] = {}
        self._index: dict[str, OperationDescriptor] = {}

        for descriptor in operations:
            if descriptor.name in self._operations:
                raise ValueError(f"Duplicate operation: {descriptor.name}")
            self._operations[descriptor.name] = descriptor

            for name in descriptor.names:
                claimed = self._index.get(name)
                if claimed is not None:
                    raise ValueError(
                        f"Operation name '{name}' of {descriptor.name} "
                        f"is already used by {claimed.name}"
                    )
                self._index[name] = descriptor

        logger.debug(
            f"Registered {len(self._operations)} operations ({len(self._index)} names)"
        )

    def resolve(self, name: str) -> OperationDescriptor | None:
        """Find the descriptor for a canonical name or alias."""
        return self._index.get(name)

    def get(self, name: str) -> OperationDescriptor:
        """Find the descriptor for a canonical name or alias.

        Raises:
            InvalidOperationError: If no operation answers to ``name``
        """
        descriptor = self._index.get(name)
        if descriptor is None:
            raise InvalidOperationError(name)
        return descriptor

    def names(self) -> list[str]:
        """List all canonical names in registration order."""
        return list(self._operations)

    def bind(self, descriptor: OperationDescriptor, client: Any) -> Callable[..., Any]:
        """Return the client method implementing an operation.

        Raises:
            AttributeError: If the client has no such method
        """
        return operator.attrgetter(descriptor.method)(client)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[OperationDescriptor]:
        return iter(self._operations.values())

    def __len__(self) -> int:
        return len(self._operations)


_default_registry: OperationRegistry | None = None


def default_registry() -> OperationRegistry:
    """Get the shared registry built from ``DEFAULT_OPERATIONS``."""
    global _default_registry
    if _default_registry is None:
        _default_registry = OperationRegistry()
    return _default_registry
