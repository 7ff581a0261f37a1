"""Connection configuration for the Consul directive.

The directive connects to Consul using, in order of preference:

1. An explicit configuration (``ConsulConfigModel`` or a dictionary)
2. A YAML file given as argument or through ``EV_CONSUL_CONFIG``
3. The bootstrap URI in ``EV_CONSUL_URI``
4. ``http://localhost:8500``

The bootstrap URI carries connection parameters in its scheme, host and
port, and default request options in its query string::

    https://consul.example.com:18500?dc=us-east-1&consistent=true&token=abc123

Query-string values are parsed as JSON when possible (``true`` becomes a
boolean, ``10`` an integer) and kept as strings otherwise.

The YAML file uses a ``consul`` section:

```yaml
consul:
  host: consul.example.com
  port: 8501
  secure: true
  defaults:
    dc: us-east-1
    token: abc123
```
"""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import yaml
from pydantic import ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .models import DirectiveBaseModel
from .schema import DEFAULTABLE_OPTIONS

logger = logging.getLogger(__name__)

URI_ENV = "EV_CONSUL_URI"
CONFIG_ENV = "EV_CONSUL_CONFIG"
DEFAULT_URI = "http://localhost:8500"

_STRING_OPTIONS = ("dc", "wait", "token")


class ConsulConfigModel(DirectiveBaseModel):
    """Connection parameters and default request options.

    Attributes:
        host: Consul agent host name
        port: Consul agent HTTP(S) port
        secure: Use HTTPS
        verify: Verify the server certificate when ``secure`` is set
        defaults: Default request options (``dc``, ``wan``, ``consistent``,
            ``stale``, ``wait``, ``token``), overridden by the options of each
            expression

    Example:
        >>> config = ConsulConfigModel.model_validate(
        ...     {"host": "consul.local", "port": 8500, "dc": "us-west-2"}
        ... )
        >>> config.defaults
        {'dc': 'us-west-2'}
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = "localhost"
    port: int = 8500
    secure: bool = False
    verify: bool = True
    defaults: dict[str, Any] = {}

    @model_validator(mode="before")
    @classmethod
    def collect_defaults(cls, values: Any) -> Any:
        """Move request options given at the top level into ``defaults``."""
        if isinstance(values, dict):
            known = set(cls.model_fields)
            extras = {k: v for k, v in values.items() if k not in known}
            if extras:
                values = {k: v for k, v in values.items() if k in known}
                values["defaults"] = {**extras, **values.get("defaults", {})}
        return values

    @field_validator("defaults")
    @classmethod
    def check_defaults(cls, defaults: dict[str, Any]) -> dict[str, Any]:
        unsupported = sorted(set(defaults) - set(DEFAULTABLE_OPTIONS))
        if unsupported:
            raise ValueError(
                f"Unsupported default option(s) {unsupported}, "
                f"expected some of {list(DEFAULTABLE_OPTIONS)}"
            )
        # JSON parsing of URI values turns e.g. token=123 into an integer
        return {
            k: str(v) if k in _STRING_OPTIONS and not isinstance(v, str) else v
            for k, v in defaults.items()
            if v is not None
        }

    @property
    def scheme(self) -> str:
        return "https" if self.secure else "http"


def try_parse(value: str | None) -> Any:
    """Parse a value as JSON, falling back to the raw string."""
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return value


def parse_consul_uri(uri: str) -> ConsulConfigModel:
    """Build a configuration from a bootstrap URI.

    A URI without a port uses HTTP conventions: 443 for ``https``, 80
    otherwise.

    Raises:
        ValueError: If the URI has no host or an invalid port
    """
    parsed = urlsplit(uri)
    if not parsed.hostname:
        raise ValueError(f"Consul URI has no host: {uri}")

    secure = parsed.scheme == "https"
    port = parsed.port or (443 if secure else 80)

    defaults = {key: try_parse(value) for key, value in parse_qsl(parsed.query)}

    return ConsulConfigModel(
        host=parsed.hostname,
        port=port,
        secure=secure,
        defaults=defaults,
    )


def load_consul_config(
    config_path: Path | None = None, env: Mapping[str, str] | None = None
) -> ConsulConfigModel:
    """Load the connection configuration.

    Args:
        config_path: Optional path to a YAML file with a ``consul`` section
        env: Environment to read ``EV_CONSUL_CONFIG`` / ``EV_CONSUL_URI``
            from (defaults to ``os.environ``)

    Returns:
        ConsulConfigModel

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file or URI is invalid
    """
    env = os.environ if env is None else env

    if config_path is None and env.get(CONFIG_ENV):
        config_path = Path(env[CONFIG_ENV])

    if config_path is not None:
        return _load_config_file(config_path)

    uri = env.get(URI_ENV) or DEFAULT_URI
    logger.debug(f"Using Consul bootstrap URI from {URI_ENV if env.get(URI_ENV) else 'default'}")
    return parse_consul_uri(uri)


def _load_config_file(config_path: Path) -> ConsulConfigModel:
    if not config_path.exists():
        raise FileNotFoundError(f"Consul config file not found at {config_path}")

    logger.debug(f"Loading Consul config from: {config_path}")

    try:
        with open(config_path) as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML config file {config_path}: {e}") from e

    if not raw_config:
        logger.info("Empty Consul config file, using default configuration")
        return ConsulConfigModel()

    section = raw_config.get("consul", {}) if isinstance(raw_config, dict) else None
    if not isinstance(section, dict):
        raise ValueError(f"Invalid Consul config in {config_path}: 'consul' must be a mapping")

    try:
        return ConsulConfigModel.model_validate(section)
    except PydanticValidationError as e:
        raise ValueError(f"Invalid Consul config: {e}") from e
