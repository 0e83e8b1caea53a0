"""Error taxonomy for the authguard security core.

Each class marks how the failure is handled at the boundary:

- ConfigurationError: a policy or rule is missing or malformed. The single
  operation fails, the service keeps running.
- StoreUnavailable: the counter store or database cannot be reached. Callers
  decide between failing open and failing closed.
- ValidationError: a malformed event payload. Rejected before any detector runs.
- PersistenceError: a durable write failed. In-memory state is left untouched.
"""


class SecurityCoreError(Exception):
    """Base class for all authguard errors."""


class ConfigurationError(SecurityCoreError):
    """Missing rate-limit policy or malformed security rule."""


class StoreUnavailable(SecurityCoreError):
    """Counter store or durable store unreachable."""


class ValidationError(SecurityCoreError):
    """Malformed event payload or illegal request."""


class InvalidTransitionError(ValidationError):
    """Incident or action status change not allowed by the state machine."""

    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(f"{entity} cannot move from {current} to {requested}")


class PersistenceError(SecurityCoreError):
    """Incident, evidence or threat write failed."""


class NotFoundError(SecurityCoreError):
    """Referenced threat, incident, evidence or action does not exist."""
