"""Expression parsing for the ``$consul:`` directive.

An expression names an operation and, optionally, its options as a query
string::

    <operation>[?<query>]

    kv.get?key=environments/blue/services/email
    health.service?service=email&passing=true&mode=watch&wait=30s

Parsing never touches the network. It either returns a ``ParsedRequest``
whose option bag satisfies the operation's schema, or raises one of
``ExpressionError``, ``InvalidOperationError`` or ``ValidationError``.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any
from urllib.parse import parse_qsl

from .errors import ExpressionError
from .operations import OperationDescriptor, OperationRegistry, default_registry
from .schema import backend_options, validate_options

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedRequest:
    """A validated request for one Consul operation.

    Attributes:
        operation: Descriptor of the resolved operation
        options: Validated option bag, read-only
    """

    operation: OperationDescriptor
    options: Mapping[str, Any]

    @property
    def method(self) -> str:
        """Canonical name of the operation."""
        return self.operation.name

    @property
    def mode(self) -> str:
        return self.options.get("mode", "once")

    @property
    def watch(self) -> bool:
        return self.mode == "watch"

    @property
    def ignore_startup_nodata(self) -> bool:
        return bool(self.options.get("ignoreStartupNodata", False))

    @property
    def backend_options(self) -> dict[str, Any]:
        """Options to forward to Consul, without directive-only options."""
        return backend_options(self.options)


class ExpressionParser:
    """Turns expressions into validated requests against a registry.

    Args:
        registry: Operations to resolve names against, defaults to the
            built-in operations
        defaults: Request options applied when the expression does not set
            them, e.g. the ``dc`` of the connection configuration
    """

    def __init__(
        self,
        registry: OperationRegistry | None = None,
        defaults: Mapping[str, Any] | None = None,
    ):
        self.registry = registry if registry is not None else default_registry()
        self.defaults = dict(defaults or {})

    def split(self, expression: str) -> tuple[str, str]:
        """Split an expression into operation name and raw query string.

        Only the first ``?`` is a delimiter; a ``?`` at position 0 is not,
        since the operation name must not be empty.

        Raises:
            ExpressionError: If no operation name can be extracted
        """
        if not isinstance(expression, str):
            raise ExpressionError(repr(expression), "expression must be a string")

        expression = expression.strip()
        if not expression:
            raise ExpressionError(expression, "empty expression")

        position = expression.find("?")
        if position == 0:
            raise ExpressionError(expression, "missing operation name")
        if position < 0:
            return expression, ""

        operation = expression[:position].strip()
        if not operation:
            raise ExpressionError(expression, "missing operation name")
        return operation, expression[position + 1 :]

    def parse_query(self, query: str) -> dict[str, str]:
        """Decode a query string into a flat option bag.

        A repeated key keeps its last value.
        """
        if not query:
            return {}
        return dict(parse_qsl(query, keep_blank_values=True))

    def parse(self, expression: str) -> ParsedRequest:
        """Parse and validate an expression.

        Args:
            expression: The directive expression, without the ``$consul:``
                prefix

        Returns:
            ParsedRequest with the resolved operation and validated options

        Raises:
            ExpressionError: If the expression is malformed
            InvalidOperationError: If the operation is not registered
            ValidationError: If the options violate the operation schema
        """
        name, query = self.split(expression)
        descriptor = self.registry.get(name)
        raw = {**self.defaults, **self.parse_query(query)}
        options = validate_options(descriptor.schema, raw, descriptor.name)

        logger.debug(f"Parsed expression {expression!r} as {descriptor.name} {options}")
        return ParsedRequest(operation=descriptor, options=MappingProxyType(options))


def parse_expression(
    expression: str, registry: OperationRegistry | None = None
) -> ParsedRequest:
    """Parse an expression with a throwaway parser."""
    return ExpressionParser(registry).parse(expression)
