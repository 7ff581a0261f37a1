"""evergreen-consul - the ``$consul:`` configuration directive.

This package resolves configuration expressions such as
``$consul:kv?key=services/email`` into values fetched from Consul, and can
keep those values updated through Consul blocking queries.

## Key Modules

### Parsing (`evergreen_consul.parser`, `evergreen_consul.schema`)
- `ExpressionParser`: splits `<operation>?<query>`, resolves aliases and
  validates options against the operation's schema
- `BaseOptions` and per-operation option models

### Operations (`evergreen_consul.operations`)
- `OperationRegistry`: canonical names and aliases of the Consul operations

### State (`evergreen_consul.state`)
- `StateManager`: the latest value, refresh/watch lifecycle and
  `change`/`error` notifications

### Directive (`evergreen_consul.directive`)
- `ConsulDirective`: parses, fetches, applies the startup-failure policy
  and hands the host a live `StateManager`

## Quick Example

```python
import asyncio
from evergreen_consul import ConsulDirective

async def main():
    with ConsulDirective({"host": "consul.local", "port": 8500}) as directive:
        manager = await directive.resolve("kv?key=services/email&mode=watch")
        manager.on("change", lambda kv: print("updated:", kv))
        print(manager.current_value())
        await asyncio.sleep(300)
        await manager.end_watch()

asyncio.run(main())
```
"""

from .backend import ConsulBackend, ConsulCapability, ConsulWatch, Fetched, Watch, WatchEvent
from .config import ConsulConfigModel, load_consul_config, parse_consul_uri
from .directive import (
    ConsulDirective,
    Directive,
    DirectiveContext,
    DirectiveRegistry,
    directives,
)
from .errors import (
    ConnectionFailure,
    ConsulDirectiveError,
    ExpressionError,
    InvalidOperationError,
    ValidationError,
    WatchError,
)
from .operations import OperationDescriptor, OperationRegistry, default_registry
from .parser import ExpressionParser, ParsedRequest, parse_expression
from .state import ABSENT, StateEvent, StateManager

__all__ = [
    # Directive
    "ConsulDirective",
    "Directive",
    "DirectiveContext",
    "DirectiveRegistry",
    "directives",
    # Parsing
    "ExpressionParser",
    "ParsedRequest",
    "parse_expression",
    "OperationDescriptor",
    "OperationRegistry",
    "default_registry",
    # State
    "StateManager",
    "StateEvent",
    "ABSENT",
    # Backend
    "ConsulBackend",
    "ConsulCapability",
    "ConsulWatch",
    "Watch",
    "WatchEvent",
    "Fetched",
    # Config
    "ConsulConfigModel",
    "load_consul_config",
    "parse_consul_uri",
    # Errors
    "ConsulDirectiveError",
    "ExpressionError",
    "InvalidOperationError",
    "ValidationError",
    "ConnectionFailure",
    "WatchError",
]
