"""Shared fixtures: in-memory container engine and tmux host fakes."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from docker_service_manager.config import Settings
from docker_service_manager.engine import ContainerEngine
from docker_service_manager.errors import CollaboratorError
from docker_service_manager.manager import ServiceManager
from docker_service_manager.ports import PortAllocator
from docker_service_manager.registry import ServiceRegistry
from docker_service_manager.session import SessionHost, SessionSupervisor


class FakeEngine(ContainerEngine):
    """Records calls and keeps images and containers in memory."""

    def __init__(self, exposed: Optional[Dict[str, List[int]]] = None) -> None:
        self.exposed = exposed or {}
        self.images: Set[str] = set()
        self.containers: Dict[str, str] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.fail: Dict[str, Exception] = {}

    def _call(self, op: str, *args: str) -> None:
        self.calls.append((op,) + args)
        if op in self.fail:
            raise self.fail[op]

    def pull(self, image: str) -> None:
        self._call("pull", image)
        self.images.add(image)

    def create(self, container_name: str, image: str) -> str:
        self._call("create", container_name, image)
        ref = f"{container_name}-id"
        self.containers[ref] = image
        return ref

    def setup(self, container_ref: str, mode: str) -> None:
        self._call("setup", container_ref, mode)

    def inspect(self, ref: str) -> Dict:
        self._call("inspect", ref)
        ports = self.exposed.get(ref, [])
        return {"config": {"ExposedPorts": {f"{p}/tcp": {} for p in ports}}}

    def remove(self, container_ref: str) -> None:
        self._call("remove", container_ref)
        if container_ref not in self.containers:
            raise CollaboratorError(f"udocker rm {container_ref}", 1, "container not found")
        del self.containers[container_ref]

    def remove_image(self, image: str) -> None:
        self._call("remove_image", image)
        self.images.discard(image)

    def run_command(self, container_ref, port_map, volume_map) -> str:
        external, internal = port_map
        host_path, target = volume_map
        return f"run -p {external}:{internal} -v {host_path}:{target} {container_ref}"


class FakeHost(SessionHost):
    """tmux stand-in; a new session starts with one default window."""

    def __init__(self) -> None:
        self.sessions: Dict[str, List[str]] = {}
        self.sent: List[Tuple[str, str, str]] = []

    def session_exists(self, host_id: str) -> bool:
        return host_id in self.sessions

    def create_session(self, host_id: str) -> None:
        self.sessions[host_id] = ["bash"]

    def list_units(self, host_id: str) -> List[str]:
        return list(self.sessions.get(host_id, []))

    def create_unit(self, host_id: str, name: str) -> None:
        self.sessions[host_id].append(name)

    def rename_unit(self, host_id: str, old_name: str, new_name: str) -> None:
        windows = self.sessions[host_id]
        windows[windows.index(old_name)] = new_name

    def kill_unit(self, host_id: str, name: str) -> None:
        windows = self.sessions[host_id]
        windows.remove(name)
        # tmux destroys a session when its last window closes
        if not windows:
            del self.sessions[host_id]

    def send_command(self, host_id: str, unit_name: str, command_line: str) -> None:
        self.sent.append((host_id, unit_name, command_line))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        session_name="test_services",
        _env_file=None,
    )


@pytest.fixture
def registry(settings: Settings) -> ServiceRegistry:
    return ServiceRegistry(settings.services_dir, settings.data_dir)


@pytest.fixture
def listeners() -> Set[int]:
    """Ports the fake OS reports as bound; tests add to it."""
    return set()


@pytest.fixture
def allocator(registry: ServiceRegistry, listeners: Set[int]) -> PortAllocator:
    return PortAllocator(registry, range_start=3000, listener_source=lambda: set(listeners))


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine(
        exposed={
            "library/nginx:latest": [80],
            "nginx:latest": [80],
            "redis:latest": [80],
            "postgres:16": [5432],
        }
    )


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def supervisor(host: FakeHost, settings: Settings) -> SessionSupervisor:
    return SessionSupervisor(host, session_name=settings.session_name)


@pytest.fixture
def manager(
    settings: Settings,
    registry: ServiceRegistry,
    allocator: PortAllocator,
    engine: FakeEngine,
    supervisor: SessionSupervisor,
) -> ServiceManager:
    return ServiceManager(settings, registry, allocator, engine, supervisor)
