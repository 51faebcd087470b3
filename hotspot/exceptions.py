"""
Error taxonomy for the hotspot billing core.

Entity operations raise these synchronously. Batch operations (cleanup,
fleet polling, job processing) catch them per item and report them.
"""

from enum import Enum


class FailureKind(str, Enum):
    """Closed classification of device/gateway connectivity failures."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    AUTH_FAILURE = "auth_failure"
    PROTOCOL_ERROR = "protocol_error"

    @property
    def device_status(self) -> str:
        """Device status a failure of this kind leaves behind."""
        if self in (FailureKind.TIMEOUT, FailureKind.UNREACHABLE):
            return "offline"
        return "error"


class HotspotError(Exception):
    """Base class for all hotspot core errors"""


class InvalidStateError(HotspotError):
    """Operation requested on an entity whose state does not permit it"""

    def __init__(self, entity: str, current: str, operation: str, detail: str = ""):
        self.entity = entity
        self.current = current
        self.operation = operation
        message = f"Cannot {operation} {entity} in state '{current}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class EntityNotFound(HotspotError):
    """Entity does not exist within the given tenant"""

    def __init__(self, entity: str, identifier, tenant_id=None):
        self.entity = entity
        self.identifier = identifier
        self.tenant_id = tenant_id
        super().__init__(f"{entity} {identifier} not found for tenant {tenant_id}")


class ConnectivityError(HotspotError):
    """Device or gateway unreachable, timed out or refused the session"""

    def __init__(self, message: str, kind: FailureKind = FailureKind.UNREACHABLE):
        self.kind = FailureKind(kind)
        super().__init__(message)


class ConfigurationError(HotspotError):
    """Malformed or incomplete configuration. Never retried."""


class PersistenceConflict(HotspotError):
    """Concurrent modification or uniqueness violation at the data layer"""
