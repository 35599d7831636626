"""Service-layer error taxonomy.

Routes translate these into the API envelope; message handlers let them
propagate so the broker retry policy applies, except for the state-conflict and
validation kinds, which handlers log and drop because retrying cannot help.
"""

from __future__ import annotations

import math
from typing import Any, Optional

from models.status import InvalidTransitionError


class ServiceError(Exception):
    """Base class for expected, caller-visible failures."""


class EntityNotFoundError(ServiceError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class StateConflictError(ServiceError):
    """The action is not valid for the record's current state."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class RequestValidationError(ServiceError):
    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.field = field
        self.details = details or ({"field": field} if field else {})
        super().__init__(message)


class ConfigValidationError(RequestValidationError):
    """An AIConfig patch value is outside its declared bounds."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.value = value
        if isinstance(value, float) and not math.isfinite(value):
            # JSON has no NaN or Infinity.
            value = str(value)
        super().__init__(
            message,
            field=field,
            details={"field": field, "value": value},
        )


class BrokerNotConfiguredError(ServiceError):
    """RABBITMQ_URL is unset; publishing is unavailable."""


__all__ = [
    "ServiceError",
    "EntityNotFoundError",
    "StateConflictError",
    "RequestValidationError",
    "ConfigValidationError",
    "BrokerNotConfiguredError",
    "InvalidTransitionError",
]
