"""Container engine adapters.

The engine is a collaborator: the service manager only pulls, creates,
inspects and removes through this narrow interface. ``UdockerEngine`` drives
the udocker CLI, which is what runs containers on Termux.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import shell
from .errors import CollaboratorError

logger = logging.getLogger(__name__)

_TCP_PORT_PATTERN = re.compile(r"\b(\d{1,5})/tcp\b", re.IGNORECASE)
_CONTAINER_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


class ContainerEngine(ABC):
    """Narrow interface to a container runtime."""

    @abstractmethod
    def pull(self, image: str) -> None:
        """Pull an image by reference."""

    @abstractmethod
    def create(self, container_name: str, image: str) -> str:
        """Create a container from an image and return its handle."""

    @abstractmethod
    def setup(self, container_ref: str, mode: str) -> None:
        """Prepare a created container for execution."""

    @abstractmethod
    def inspect(self, ref: str) -> Dict[str, Any]:
        """Return image/container metadata."""

    @abstractmethod
    def remove(self, container_ref: str) -> None:
        """Remove a container."""

    @abstractmethod
    def remove_image(self, image: str) -> None:
        """Remove an image."""

    @abstractmethod
    def run_command(
        self,
        container_ref: str,
        port_map: Tuple[int, int],
        volume_map: Tuple[Path, str],
    ) -> str:
        """Build the foreground command line that runs a container."""


def exposed_ports(metadata: Dict[str, Any]) -> List[int]:
    """Extract declared TCP ports from inspect output, in order of appearance.

    ``ExposedPorts`` mappings are searched anywhere in the document. When none
    are found, the raw text is scanned for ``<port>/tcp``. Missing data yields
    an empty list rather than an error.
    """
    found: List[int] = []

    def _add(value: Any) -> None:
        match = _TCP_PORT_PATTERN.search(str(value))
        if match:
            port = int(match.group(1))
            if 1 <= port <= 65535 and port not in found:
                found.append(port)

    def _walk(node: Any) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                if key.lower() == "exposedports" and isinstance(value, dict):
                    for port_spec in value:
                        _add(port_spec)
                else:
                    _walk(value)
        elif isinstance(node, list):
            for item in node:
                _walk(item)

    _walk(metadata)
    if found:
        return found

    raw = metadata.get("raw") if isinstance(metadata, dict) else None
    text = raw if isinstance(raw, str) else json.dumps(metadata, default=str)
    for match in _TCP_PORT_PATTERN.finditer(text):
        port = int(match.group(1))
        if 1 <= port <= 65535 and port not in found:
            found.append(port)
    return found


class UdockerEngine(ContainerEngine):
    """Container engine backed by the udocker CLI."""

    def __init__(
        self,
        binary: str = "udocker",
        loglevel: int = 3,
        workdir: Optional[Path] = None,
        command_timeout: float = 60.0,
        pull_timeout: float = 1800.0,
    ) -> None:
        """Initialize the udocker engine.

        Args:
            binary: udocker executable
            loglevel: Value for UDOCKER_LOGLEVEL
            workdir: Directory to ``cd`` into before ``udocker run``
            command_timeout: Timeout for short udocker calls
            pull_timeout: Timeout for image pulls
        """
        self.binary = binary
        self.loglevel = loglevel
        self.workdir = workdir
        self.command_timeout = command_timeout
        self.pull_timeout = pull_timeout

    @property
    def _env(self) -> Dict[str, str]:
        return {"UDOCKER_LOGLEVEL": str(self.loglevel)}

    def pull(self, image: str) -> None:
        logger.info(f"Pulling image: {image}")
        shell.run_command(
            [self.binary, "pull", image],
            timeout=self.pull_timeout,
            action=f"udocker pull {image}",
            env=self._env,
        )

    def create(self, container_name: str, image: str) -> str:
        logger.info(f"Creating container {container_name} from {image}")
        result = shell.run_command(
            [self.binary, "create", f"--name={container_name}", image],
            timeout=self.command_timeout,
            action=f"udocker create {container_name}",
            env=self._env,
        )
        # udocker prints the container id on its last output line
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if lines and _CONTAINER_ID_PATTERN.match(lines[-1]):
            return lines[-1]
        return container_name

    def setup(self, container_ref: str, mode: str) -> None:
        logger.info(f"Setting up container {container_ref} (execmode={mode})")
        shell.run_command(
            [self.binary, "setup", f"--execmode={mode}", container_ref],
            timeout=self.command_timeout,
            action=f"udocker setup {container_ref}",
            env=self._env,
        )

    def inspect(self, ref: str) -> Dict[str, Any]:
        result = shell.run_command(
            [self.binary, "inspect", ref],
            timeout=self.command_timeout,
            action=f"udocker inspect {ref}",
            env=self._env,
        )
        try:
            data = json.loads(result.stdout)
        except ValueError:
            return {"raw": result.stdout}
        if isinstance(data, list):
            return data[0] if data and isinstance(data[0], dict) else {"items": data}
        if isinstance(data, dict):
            return data
        return {"raw": result.stdout}

    def remove(self, container_ref: str) -> None:
        logger.info(f"Removing container {container_ref}")
        shell.run_command(
            [self.binary, "rm", container_ref],
            timeout=self.command_timeout,
            action=f"udocker rm {container_ref}",
            env=self._env,
        )

    def remove_image(self, image: str) -> None:
        logger.info(f"Removing image {image}")
        shell.run_command(
            [self.binary, "rmi", image],
            timeout=self.command_timeout,
            action=f"udocker rmi {image}",
            env=self._env,
        )

    def run_command(
        self,
        container_ref: str,
        port_map: Tuple[int, int],
        volume_map: Tuple[Path, str],
    ) -> str:
        external, internal = port_map
        host_path, target = volume_map
        parts = [
            f"UDOCKER_LOGLEVEL={self.loglevel}",
            shlex.quote(self.binary),
            "run",
            "-p",
            f"{external}:{internal}",
            "-v",
            f"{shlex.quote(str(host_path))}:{shlex.quote(target)}",
            shlex.quote(container_ref),
        ]
        command = " ".join(parts)
        if self.workdir:
            command = f"cd {shlex.quote(str(self.workdir))} && {command}"
        return command


def detect_internal_port(engine: ContainerEngine, image: str) -> List[int]:
    """Inspect an image and return its declared ports, ``[]`` when unknown."""
    try:
        metadata = engine.inspect(image)
    except CollaboratorError as e:
        logger.warning(f"Could not inspect {image}: {e}")
        return []
    return exposed_ports(metadata)


__all__ = [
    "ContainerEngine",
    "UdockerEngine",
    "exposed_ports",
    "detect_internal_port",
]
