"""Option schemas for Consul operations.

Every operation validates its option bag against a Pydantic model. The
common options live on ``BaseOptions``; operations that take extra options
subclass it and add their own fields:

- Required fields have no default and must be present in the expression.
- Optional fields default to ``None`` and are left out of the validated bag
  when absent, so the backend sees only what the expression supplied.
- Enumerated fields are declared with ``Literal``.

Query-string values always arrive as strings. Pydantic's lax mode coerces
``"true"``/``"false"`` (and ``1``/``0``, ``yes``/``no``) into booleans.

Example:
    >>> validate_options(AclGetOptions, {"id": "abc123"}, "acl.get")
    {'wan': False, 'consistent': False, 'stale': False, 'mode': 'once',
     'ignoreStartupNodata': False, 'id': 'abc123'}
"""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import DirectiveBaseModel

logger = logging.getLogger(__name__)

# Options consumed by the directive itself and never sent to Consul.
DIRECTIVE_ONLY_OPTIONS = ("mode", "ignoreStartupNodata")

# Request options a connection configuration may give a default for.
DEFAULTABLE_OPTIONS = ("dc", "wan", "consistent", "stale", "wait", "token")

Mode = Literal["once", "watch"]


class BaseOptions(DirectiveBaseModel):
    """Options shared by every Consul operation.

    Attributes:
        dc: Datacenter (defaults to the agent's datacenter)
        wan: Return WAN members instead of LAN members
        consistent: Require strong consistency
        stale: Allow any server to answer, possibly with stale data
        index: Blocking query index, used with ``wait``
        wait: Maximum blocking time (e.g. ``5m``), used with ``index``
        token: ACL token, overrides the default token
        mode: ``once`` fetches a single value, ``watch`` keeps it updated
        ignore_startup_nodata: Hand the value to the host even if the
            initial fetch fails
    """

    dc: str | None = None
    wan: bool = False
    consistent: bool = False
    stale: bool = False
    index: str | None = None
    wait: str | None = None
    token: str | None = None
    mode: Mode = "once"
    ignore_startup_nodata: bool = Field(default=False, alias="ignoreStartupNodata")


class AclGetOptions(BaseOptions):
    id: str


class NodeOptions(BaseOptions):
    """Options for operations scoped to a single node."""

    node: str


class NodeListOptions(BaseOptions):
    near: str | None = None


class ServiceOptions(BaseOptions):
    """Options for operations scoped to a single service."""

    service: str


class ServiceNodesOptions(ServiceOptions):
    tag: str | None = None
    near: str | None = None


class HealthServiceOptions(ServiceNodesOptions):
    passing: bool | None = None


class HealthStateOptions(BaseOptions):
    state: Literal["any", "passing", "warning", "critical"]


class EventListOptions(BaseOptions):
    name: str | None = None


class KvGetOptions(BaseOptions):
    key: str = ""
    recurse: bool | None = None
    separator: str | None = None


class KvKeysOptions(BaseOptions):
    key: str = ""
    separator: str | None = None


class QueryOptions(BaseOptions):
    """Options for operations on a single prepared query."""

    query: str


class QueryExecuteOptions(QueryOptions):
    near: str | None = None
    limit: int | None = None


class SessionGetOptions(BaseOptions):
    id: str


def validate_options(
    schema: type[BaseOptions], raw: Mapping[str, Any], operation: str
) -> dict[str, Any]:
    """Validate and coerce a raw option bag against an operation schema.

    Args:
        schema: The operation's options model
        raw: Option name/value pairs, usually straight from a query string
        operation: Canonical operation name, used in error messages

    Returns:
        The validated bag keyed by wire names, with defaults applied and
        absent optional fields omitted

    Raises:
        ValidationError: If the bag violates the schema
    """
    try:
        model = schema.model_validate(dict(raw))
    except PydanticValidationError as e:
        errors = [_format_error(error) for error in e.errors()]
        logger.debug(f"Option validation failed for {operation}: {errors}")
        raise ValidationError(operation, errors) from e

    return model.model_dump(by_alias=True, exclude_none=True)


def backend_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Return the option bag without directive-only options."""
    return {k: v for k, v in options.items() if k not in DIRECTIVE_ONLY_OPTIONS}


def schema_fields(schema: type[BaseOptions]) -> dict[str, dict[str, Any]]:
    """Describe the fields of an options model, keyed by wire name."""
    fields = {}
    for name, info in schema.model_fields.items():
        fields[info.alias or name] = {
            "required": info.is_required(),
            "default": None if info.is_required() else info.default,
            "base": name in BaseOptions.model_fields,
        }
    return fields


def _format_error(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "options"
    return f"{location}: {error.get('msg', 'invalid value')}"
