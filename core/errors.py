"""
core/errors.py -- Error taxonomy for status lifecycle operations.

Every error carries an error_kind string and a human-readable message so the
HTTP layer (api/main.py) and the MCP server can report it without inspecting
the exception type. All of them are recoverable by the caller:

  InvalidTransitionError     -- show the user the allowed next statuses
  MissingRequiredFieldError  -- prompt for the missing field
  InvalidFieldError          -- a supplied field value is unacceptable
  StaleEntityError           -- re-fetch the entity and retry

InvalidFieldError widens the lifecycle's error set beyond "illegal transition"
and "missing field": a supplied value can be present yet unusable, as with
a risk acceptance whose expires_at is not after the acceptance instant.

StaleEntityError is raised only by the persistence layer (cmdb/store.py); it
is defined here so both layers share one taxonomy without cmdb/ leaking into
the kernel.
"""

from typing import Optional


class LifecycleError(Exception):
    error_kind = "LifecycleError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error_kind": self.error_kind, "message": self.message}


class InvalidTransitionError(LifecycleError):
    """The requested status is not reachable from the current status."""

    error_kind = "InvalidTransition"

    def __init__(self, current: str, requested: str, reason: str) -> None:
        super().__init__(reason)
        self.current = current
        self.requested = requested
        self.reason = reason


class MissingRequiredFieldError(LifecycleError):
    """A kind-specific precondition for the transition was not supplied."""

    error_kind = "MissingRequiredField"

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{field} is required")
        self.field = field


class InvalidFieldError(LifecycleError):
    error_kind = "InvalidField"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class StaleEntityError(LifecycleError):
    """The snapshot a change was computed against is no longer current."""

    error_kind = "StaleEntity"

    def __init__(self, kind: str, entity_id: int, expected_version: int) -> None:
        super().__init__(
            f"{kind} {entity_id} was modified concurrently (expected version {expected_version}); "
            "re-fetch and retry"
        )
        self.kind = kind
        self.entity_id = entity_id
        self.expected_version = expected_version
