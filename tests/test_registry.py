# noqa: D401
"""Unit tests for the file-backed service registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from docker_service_manager.errors import ConflictError, NotFoundError, PortConflictError
from docker_service_manager.models import ServiceRecord
from docker_service_manager.registry import ServiceRegistry, read_record, render_record


def _record(registry: ServiceRegistry, name: str, port: int, **overrides) -> ServiceRecord:
    values = dict(
        name=name,
        image=f"{name}:latest",
        container_name=f"{name}_container",
        container_ref=f"{name}_container",
        external_port=port,
        internal_port=80,
        data_dir=registry.data_dir_for(name),
    )
    values.update(overrides)
    return ServiceRecord(**values)


class TestServiceRegistry:
    """Test registry persistence and invariants."""

    def test_create_persists_record_and_data_dir(self, registry: ServiceRegistry) -> None:
        """Test create writes the record file and the data directory."""
        record = registry.create(_record(registry, "nginx", 3000))

        assert record.data_dir.is_dir()
        path = registry.services_dir / "nginx.conf"
        assert path.exists()
        assert 'SERVICE_NAME="nginx"' in path.read_text()
        assert registry.get("nginx") == record

    def test_records_survive_reload(self, registry: ServiceRegistry) -> None:
        """Test a fresh registry instance reads what another wrote."""
        registry.create(_record(registry, "nginx", 3000, window_name="web"))

        fresh = ServiceRegistry(registry.services_dir, registry.data_root)
        loaded = fresh.get("nginx")
        assert loaded.external_port == 3000
        assert loaded.window_name == "web"

    def test_list_is_sorted(self, registry: ServiceRegistry) -> None:
        """Test records are listed in lexical name order."""
        registry.create(_record(registry, "redis", 3001))
        registry.create(_record(registry, "nginx", 3000))
        registry.create(_record(registry, "adminer", 3002))
        assert [r.name for r in registry.list()] == ["adminer", "nginx", "redis"]
        assert registry.service_names == ["adminer", "nginx", "redis"]

    def test_duplicate_name(self, registry: ServiceRegistry) -> None:
        """Test a second record with the same name is a conflict."""
        registry.create(_record(registry, "nginx", 3000))
        with pytest.raises(ConflictError):
            registry.create(_record(registry, "nginx", 3001))

    def test_overwrite_replaces(self, registry: ServiceRegistry) -> None:
        """Test overwrite replaces a record and may keep its own port."""
        registry.create(_record(registry, "nginx", 3000))
        registry.create(_record(registry, "nginx", 3000, internal_port=8080), overwrite=True)
        assert registry.get("nginx").internal_port == 8080
        assert len(registry.list()) == 1

    def test_port_uniqueness(self, registry: ServiceRegistry) -> None:
        """Test two records can never share an external port."""
        registry.create(_record(registry, "nginx", 3000))
        with pytest.raises(PortConflictError) as exc_info:
            registry.create(_record(registry, "redis", 3000))
        assert exc_info.value.owner == "nginx"
        assert not registry.exists("redis")
        assert not registry.data_dir_for("redis").exists()

    def test_window_uniqueness(self, registry: ServiceRegistry) -> None:
        """Test two records can never share a window name."""
        registry.create(_record(registry, "nginx", 3000, window_name="web"))
        with pytest.raises(ConflictError):
            registry.create(_record(registry, "caddy", 3001, window_name="web"))

    def test_get_missing(self, registry: ServiceRegistry) -> None:
        """Test get raises for an unknown service."""
        with pytest.raises(NotFoundError):
            registry.get("ghost")
        assert registry.find("ghost") is None

    def test_delete_removes_everything(self, registry: ServiceRegistry) -> None:
        """Test delete drops the record file, cache entry and data directory."""
        record = registry.create(_record(registry, "nginx", 3000))
        (record.data_dir / "state.db").write_text("x")

        assert registry.delete("nginx") is True
        assert not record.data_dir.exists()
        assert not (registry.services_dir / "nginx.conf").exists()
        assert not registry.exists("nginx")
        assert registry.port_owner(3000) is None

    def test_delete_is_idempotent(self, registry: ServiceRegistry) -> None:
        """Test deleting twice, or deleting an unknown name, succeeds."""
        registry.create(_record(registry, "nginx", 3000))
        assert registry.delete("nginx") is True
        assert registry.delete("nginx") is False
        assert registry.delete("ghost") is False

    def test_delete_reclaims_orphan_data_dir(self, registry: ServiceRegistry) -> None:
        """Test a data directory without a record is cleaned up."""
        orphan = registry.data_dir_for("nginx")
        orphan.mkdir(parents=True)
        assert registry.delete("nginx") is False
        assert not orphan.exists()

    def test_unreadable_record_is_skipped(self, registry: ServiceRegistry) -> None:
        """Test a corrupt file does not hide its neighbours."""
        registry.create(_record(registry, "nginx", 3000))
        (registry.services_dir / "broken.conf").write_text('SERVICE_NAME="broken"\n')

        fresh = ServiceRegistry(registry.services_dir, registry.data_root)
        assert fresh.service_names == ["nginx"]

    def test_name_must_match_file(self, registry: ServiceRegistry, tmp_path: Path) -> None:
        """Test a record file whose name disagrees with its content is rejected."""
        record = _record(registry, "nginx", 3000)
        path = tmp_path / "other.conf"
        path.write_text(render_record(record))
        with pytest.raises(ValueError):
            read_record(path)

    def test_reads_legacy_shell_record(self, registry: ServiceRegistry) -> None:
        """Test a config written by the shell tool loads."""
        registry.services_dir.mkdir(parents=True)
        (registry.services_dir / "nginx.conf").write_text(
            'SERVICE_NAME="nginx"\n'
            'IMAGE="nginx:latest"\n'
            'CONTAINER_NAME="nginx_container"\n'
            'PORT="3000"\n'
            'INTERNAL_PORT="80"\n'
            'DATA_DIR="/home/u/docker_services_data/nginx"\n'
            'INSTALL_DATE="Mon Jan 15 10:30:00 UTC 2024"\n'
        )
        record = registry.get("nginx")
        assert record.external_port == 3000
        assert record.container_ref == "nginx_container"
        assert record.installed_at.year == 2024

    def test_no_temp_files_left(self, registry: ServiceRegistry) -> None:
        """Test atomic writes leave only the final record file."""
        registry.create(_record(registry, "nginx", 3000))
        assert [p.name for p in registry.services_dir.iterdir()] == ["nginx.conf"]

    def test_values_with_quotes_round_trip(self, registry: ServiceRegistry, tmp_path: Path) -> None:
        """Test quoting survives awkward paths."""
        data_dir = tmp_path / 'data "quoted" dir'
        registry.create(_record(registry, "nginx", 3000, data_dir=data_dir))
        fresh = ServiceRegistry(registry.services_dir, registry.data_root)
        assert fresh.get("nginx").data_dir == data_dir
