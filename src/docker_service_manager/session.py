"""Session supervision inside one shared tmux session.

Every running service is a named window (a *unit*) inside a single tmux
session (the *host*). Whether a service runs is always asked of tmux, never
cached, so a crashed window or a killed session is reflected immediately.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List

from . import shell
from .engine import ContainerEngine
from .errors import CollaboratorError
from .models import ServiceRecord, UnitStatus

logger = logging.getLogger(__name__)


class SessionHost(ABC):
    """Narrow interface to a terminal multiplexer."""

    @abstractmethod
    def session_exists(self, host_id: str) -> bool:
        ...

    @abstractmethod
    def create_session(self, host_id: str) -> None:
        ...

    @abstractmethod
    def list_units(self, host_id: str) -> List[str]:
        ...

    @abstractmethod
    def create_unit(self, host_id: str, name: str) -> None:
        ...

    @abstractmethod
    def rename_unit(self, host_id: str, old_name: str, new_name: str) -> None:
        ...

    @abstractmethod
    def kill_unit(self, host_id: str, name: str) -> None:
        ...

    @abstractmethod
    def send_command(self, host_id: str, unit_name: str, command_line: str) -> None:
        ...


class TmuxHost(SessionHost):
    """SessionHost backed by the tmux CLI."""

    def __init__(self, binary: str = "tmux", timeout: float = 10.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def _run_tmux(self, args: List[str], check: bool = True):
        return shell.run_command(
            [self.binary] + args,
            timeout=self.timeout,
            action=f"tmux {args[0]}",
            check=check,
        )

    @staticmethod
    def _session(host_id: str) -> str:
        return f"={host_id}"

    @staticmethod
    def _target(host_id: str, name: str) -> str:
        # "=" makes tmux match names exactly instead of as an index or prefix
        return f"={host_id}:={name}"

    def session_exists(self, host_id: str) -> bool:
        result = self._run_tmux(["has-session", "-t", self._session(host_id)], check=False)
        return result.returncode == 0

    def create_session(self, host_id: str) -> None:
        self._run_tmux(["new-session", "-d", "-s", host_id])
        logger.info(f"Created tmux session: {host_id}")

    def list_units(self, host_id: str) -> List[str]:
        result = self._run_tmux(
            ["list-windows", "-t", self._session(host_id), "-F", "#{window_name}"],
            check=False,
        )
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def create_unit(self, host_id: str, name: str) -> None:
        self._run_tmux(["new-window", "-t", f"{self._session(host_id)}:", "-n", name])

    def rename_unit(self, host_id: str, old_name: str, new_name: str) -> None:
        self._run_tmux(["rename-window", "-t", self._target(host_id, old_name), new_name])

    def kill_unit(self, host_id: str, name: str) -> None:
        self._run_tmux(["kill-window", "-t", self._target(host_id, name)])

    def send_command(self, host_id: str, unit_name: str, command_line: str) -> None:
        self._run_tmux(
            ["send-keys", "-t", self._target(host_id, unit_name), command_line, "C-m"]
        )


def build_run_command(
    record: ServiceRecord,
    engine: ContainerEngine,
    volume_target: str = "/app/.sessions",
) -> str:
    """Command line submitted to a service's unit.

    Maps the record's ports and binds its data directory into the container.
    Pure: it only depends on the record and the engine's configuration.
    """
    return engine.run_command(
        record.container_ref,
        (record.external_port, record.internal_port),
        (record.data_dir, volume_target),
    )


class SessionSupervisor:
    """Starts, stops and reports units inside the shared host session."""

    def __init__(self, host: SessionHost, session_name: str = "docker_services") -> None:
        """Initialize the supervisor.

        Args:
            host: Terminal multiplexer adapter
            session_name: Name of the shared session
        """
        self.host = host
        self.session_name = session_name

    def host_exists(self) -> bool:
        return self.host.session_exists(self.session_name)

    def units(self) -> List[str]:
        """Names of all units currently in the host."""
        if not self.host_exists():
            return []
        return self.host.list_units(self.session_name)

    def status(self, unit: str) -> UnitStatus:
        """Live status of a unit; a missing host means every unit is absent."""
        if unit in self.units():
            return UnitStatus.RUNNING
        return UnitStatus.ABSENT

    def start(self, unit: str, command: str) -> bool:
        """Start a unit and submit its command.

        Returns:
            False if the unit was already running, True if it was started
        """
        if not self.host_exists():
            self.host.create_session(self.session_name)
            existing = self.host.list_units(self.session_name)
            if not existing:
                raise CollaboratorError(
                    f"start {unit}", detail=f"session {self.session_name} has no window"
                )
            self.host.rename_unit(self.session_name, existing[0], unit)
        else:
            if unit in self.host.list_units(self.session_name):
                logger.info(f"Unit {unit} is already running")
                return False
            self.host.create_unit(self.session_name, unit)

        self.host.send_command(self.session_name, unit, command)
        logger.info(f"Started unit {unit} in session {self.session_name}")
        return True

    def stop(self, unit: str) -> bool:
        """Destroy a unit.

        Returns:
            True if a unit was killed, False if it was not running
        """
        if self.status(unit) is UnitStatus.ABSENT:
            logger.debug(f"Unit {unit} is not running")
            return False
        self.host.kill_unit(self.session_name, unit)
        logger.info(f"Stopped unit {unit}")
        return True

    def attach_command(self) -> str:
        return f"tmux attach-session -t {self.session_name}"

    def select_command(self, unit: str) -> str:
        return f"tmux select-window -t {self.session_name}:={unit}"


__all__ = [
    "SessionHost",
    "TmuxHost",
    "SessionSupervisor",
    "build_run_command",
]
