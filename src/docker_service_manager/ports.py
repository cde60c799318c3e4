"""External port allocation.

A port is free when nothing on the machine listens on it and no installed
service has claimed it. Scans are bounded so an exhausted port space still
returns.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Optional, Set

import psutil

from .errors import InvalidInputError
from .models import MAX_PORT, MIN_PORT

if TYPE_CHECKING:
    from .registry import ServiceRegistry

logger = logging.getLogger(__name__)

DEFAULT_RANGE_START = 3000

ListenerSource = Callable[[], Optional[Set[int]]]


def system_listening_ports() -> Optional[Set[int]]:
    """Return ports with a bound OS listener on any interface.

    TCP sockets count when in LISTEN state, UDP sockets whenever they are
    bound. Returns None when the OS refuses enumeration, so callers can fail
    open instead of treating every port as taken.
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, NotImplementedError, OSError) as e:
        logger.warning(f"Listener enumeration unavailable, skipping OS port check: {e}")
        return None

    ports: Set[int] = set()
    for conn in connections:
        if not conn.laddr:
            continue
        if conn.status == psutil.CONN_LISTEN or conn.status == psutil.CONN_NONE:
            ports.add(conn.laddr.port)
    return ports


def validate_port(value: Any) -> int:
    """Parse an operator-supplied port and check it is in [1, 65535].

    Raises:
        InvalidInputError: If the value is not an integer in range
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid port number: {value!r}")
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidInputError(f"Invalid port number: {value!r} ({MIN_PORT}-{MAX_PORT})")
    if not MIN_PORT <= port <= MAX_PORT:
        raise InvalidInputError(f"Invalid port number: {port} ({MIN_PORT}-{MAX_PORT})")
    return port


class PortAllocator:
    """Finds external ports that are free both system-wide and in the registry."""

    def __init__(
        self,
        registry: "ServiceRegistry",
        range_start: int = DEFAULT_RANGE_START,
        listener_source: Optional[ListenerSource] = None,
    ) -> None:
        """Initialize the allocator.

        Args:
            registry: Registry whose records own external ports
            range_start: Low bound the scan wraps back to
            listener_source: Returns OS listener ports, or None when unavailable
        """
        self.registry = registry
        self.range_start = range_start
        self._listeners = listener_source or system_listening_ports

    def _taken(self, exclude: Optional[str]) -> Set[int]:
        taken = set(self.registry.used_ports(exclude=exclude))
        listeners = self._listeners()
        if listeners is not None:
            taken |= listeners
        return taken

    def is_port_free(self, port: int, exclude: Optional[str] = None) -> bool:
        """Check a single port.

        Args:
            port: Candidate port
            exclude: Service whose own record should not count (reinstall)

        Returns:
            True if no listener and no other record holds the port
        """
        if not MIN_PORT <= port <= MAX_PORT:
            return False
        return port not in self._taken(exclude)

    def conflict_owner(self, port: int, exclude: Optional[str] = None) -> Optional[str]:
        """Name of the service holding ``port``, if a record holds it."""
        return self.registry.port_owner(port, exclude=exclude)

    def normalize_start(self, start: int) -> int:
        """Clamp a scan start into ``[range_start, 65535]``."""
        if not MIN_PORT <= start <= MAX_PORT:
            logger.debug(f"Start port {start} out of range, using {self.range_start}")
            return self.range_start
        return max(start, self.range_start)

    def find_free_port(self, start: int, exclude: Optional[str] = None) -> int:
        """Find the first free port at or after ``start``.

        Scans up to 65535 then wraps to the range start. If the scan comes back
        around without finding anything, ``start`` itself is returned and the
        caller surfaces the conflict.
        """
        start = self.normalize_start(start)
        taken = self._taken(exclude)

        for port in range(start, MAX_PORT + 1):
            if port not in taken:
                return port
        for port in range(self.range_start, start):
            if port not in taken:
                return port

        logger.warning(f"No free port found in {self.range_start}-{MAX_PORT}, returning {start}")
        return start


__all__ = [
    "DEFAULT_RANGE_START",
    "PortAllocator",
    "system_listening_ports",
    "validate_port",
]
