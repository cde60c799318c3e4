# noqa: D401
"""Docker Service Manager - udocker services with port allocation and tmux supervision."""

from .config import Settings, get_settings
from .engine import ContainerEngine, UdockerEngine, exposed_ports
from .errors import (
    CollaboratorError,
    CollaboratorTimeout,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PartialTeardownError,
    PortConflictError,
    ServiceManagerError,
)
from .manager import ServiceManager, get_service_manager
from .models import (
    HostSummary,
    ImageReference,
    InstallPlan,
    RemoveReport,
    RunResult,
    ServiceListing,
    ServiceRecord,
    UnitStatus,
)
from .ports import PortAllocator, validate_port
from .registry import ServiceRegistry
from .session import SessionHost, SessionSupervisor, TmuxHost, build_run_command

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Config
    "Settings",
    "get_settings",
    # Engine
    "ContainerEngine",
    "UdockerEngine",
    "exposed_ports",
    # Errors
    "ServiceManagerError",
    "ConflictError",
    "PortConflictError",
    "NotFoundError",
    "InvalidInputError",
    "CollaboratorError",
    "CollaboratorTimeout",
    "PartialTeardownError",
    # Manager
    "ServiceManager",
    "get_service_manager",
    # Models
    "HostSummary",
    "ImageReference",
    "InstallPlan",
    "RemoveReport",
    "RunResult",
    "ServiceListing",
    "ServiceRecord",
    "UnitStatus",
    # Ports
    "PortAllocator",
    "validate_port",
    # Registry
    "ServiceRegistry",
    # Session
    "SessionHost",
    "SessionSupervisor",
    "TmuxHost",
    "build_run_command",
]
