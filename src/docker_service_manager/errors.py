"""Exception hierarchy for the Docker Service Manager."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import RemoveReport


class ServiceManagerError(Exception):
    """Base exception for service manager errors."""

    pass


class ConflictError(ServiceManagerError):
    """Raised when a name, window or port is already taken."""

    pass


class PortConflictError(ConflictError):
    """Raised when an external port is already in use.

    Attributes:
        port: The requested port
        owner: Service holding the port, or None when an OS listener holds it
        suggestion: Next free port proposed by the allocator
    """

    def __init__(self, port: int, owner: Optional[str] = None, suggestion: Optional[int] = None):
        self.port = port
        self.owner = owner
        self.suggestion = suggestion
        if owner:
            message = f"Port {port} is already used by service: {owner}"
        else:
            message = f"Port {port} is already in use by system"
        super().__init__(message)


class NotFoundError(ServiceManagerError):
    """Raised when a service or unit does not exist."""

    pass


class InvalidInputError(ServiceManagerError, ValueError):
    """Raised for malformed operator input (ports, names, image references)."""

    pass


class CollaboratorError(ServiceManagerError):
    """Raised when udocker or tmux returns a non-success result.

    Attributes:
        action: Short description of what was attempted
        returncode: Process exit status, if the process ran
        detail: Captured stderr/stdout
    """

    def __init__(self, action: str, returncode: Optional[int] = None, detail: str = ""):
        self.action = action
        self.returncode = returncode
        self.detail = detail.strip()
        message = f"{action} failed"
        if returncode is not None:
            message += f" (rc={returncode})"
        if self.detail:
            message += f": {self.detail}"
        super().__init__(message)


class CollaboratorTimeout(CollaboratorError):
    """Raised when a collaborator call exceeds its timeout."""

    def __init__(self, action: str, timeout: float):
        self.timeout = timeout
        super().__init__(action, detail=f"timed out after {timeout:g}s")


class PartialTeardownError(ServiceManagerError):
    """Raised by a strict remove when the record was deleted but teardown was incomplete."""

    def __init__(self, report: "RemoveReport"):
        self.report = report
        failures = "; ".join(str(e) for e in report.errors)
        super().__init__(f"Service '{report.name}' removed with teardown errors: {failures}")


__all__ = [
    "ServiceManagerError",
    "ConflictError",
    "PortConflictError",
    "NotFoundError",
    "InvalidInputError",
    "CollaboratorError",
    "CollaboratorTimeout",
    "PartialTeardownError",
]
