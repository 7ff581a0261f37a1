"""Base Pydantic models for evergreen-consul.

This module provides the base model class that all package Pydantic models
inherit from. It establishes consistent configuration across all models:

- Strict field validation (no extra fields allowed)
- Immutable instances, safe to share between watch tasks
- Consistent serialization behavior

Example:
    >>> from evergreen_consul.models import DirectiveBaseModel
    >>>
    >>> class KeyOptions(DirectiveBaseModel):
    ...     key: str
    ...     recurse: bool = False
    >>>
    >>> KeyOptions(key="services/email").model_dump()
    {'key': 'services/email', 'recurse': False}
"""

from pydantic import BaseModel, ConfigDict


class DirectiveBaseModel(BaseModel):
    """Base model for all evergreen-consul Pydantic models.

    - extra="forbid": Rejects any fields not defined in the model
    - frozen=True: Makes instances immutable

    Models that need a different policy (e.g. accepting aliases) extend the
    configuration with ``model_config = ConfigDict(...)``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)
