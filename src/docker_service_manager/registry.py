"""Persisted catalogue of installed services.

One ``<name>.conf`` file per service holds ``KEY="value"`` lines. Records are
read once into memory and every mutation is written back atomically, so a
crash mid-write never damages a neighbouring record.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values

from .errors import ConflictError, InvalidInputError, NotFoundError, PortConflictError
from .models import ServiceRecord, validate_service_name

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".conf"


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def render_record(record: ServiceRecord) -> str:
    """Render a record in the on-disk ``KEY="value"`` layout."""
    lines = [f"{key}={_quote(value)}" for key, value in record.to_env().items()]
    return "\n".join(lines) + "\n"


def read_record(path: Path) -> ServiceRecord:
    """Parse one record file.

    Raises:
        InvalidInputError: If the file is not a valid record
    """
    values = dotenv_values(path, interpolate=False)
    mtime = datetime.fromtimestamp(path.stat().st_mtime).astimezone()
    record = ServiceRecord.from_env(values, fallback_installed_at=mtime)
    if record.name != path.stem:
        raise InvalidInputError(
            f"Record {path.name} declares SERVICE_NAME={record.name!r}, expected {path.stem!r}"
        )
    return record


def write_atomic(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a synced temp file and rename."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "w") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)


class ServiceRegistry:
    """File-backed registry of installed services keyed by name."""

    def __init__(self, services_dir: Path, data_root: Path) -> None:
        """Initialize the registry.

        Args:
            services_dir: Directory holding the record files
            data_root: Parent of the per-service data directories
        """
        self.services_dir = Path(services_dir)
        self.data_root = Path(data_root)
        self._records: Optional[Dict[str, ServiceRecord]] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read every record file from disk."""
        records: Dict[str, ServiceRecord] = {}
        if self.services_dir.is_dir():
            for path in sorted(self.services_dir.glob(f"*{RECORD_SUFFIX}")):
                try:
                    record = read_record(path)
                except (InvalidInputError, OSError) as e:
                    logger.warning(f"Skipping unreadable record {path}: {e}")
                    continue
                records[record.name] = record
        self._records = records
        logger.debug(f"Loaded {len(records)} service records from {self.services_dir}")

    @property
    def _cache(self) -> Dict[str, ServiceRecord]:
        if self._records is None:
            self.reload()
        assert self._records is not None
        return self._records

    def _record_path(self, name: str) -> Path:
        return self.services_dir / f"{validate_service_name(name)}{RECORD_SUFFIX}"

    def data_dir_for(self, name: str) -> Path:
        """Default data directory for a service."""
        return self.data_root / validate_service_name(name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        return name in self._cache

    def find(self, name: str) -> Optional[ServiceRecord]:
        """Get a record by name, or None."""
        return self._cache.get(name)

    def get(self, name: str) -> ServiceRecord:
        """Get a record by name.

        Raises:
            NotFoundError: If no such service is installed
        """
        record = self.find(name)
        if record is None:
            raise NotFoundError(f"Service configuration not found: {name}")
        return record

    def list(self) -> List[ServiceRecord]:
        """All records in lexical name order."""
        return [self._cache[name] for name in sorted(self._cache)]

    @property
    def service_names(self) -> List[str]:
        return sorted(self._cache)

    def used_ports(self, exclude: Optional[str] = None) -> Dict[int, str]:
        """Map of external port to owning service name."""
        return {
            record.external_port: record.name
            for record in self._cache.values()
            if record.name != exclude
        }

    def port_owner(self, port: int, exclude: Optional[str] = None) -> Optional[str]:
        """Name of the service using ``port`` as its external port."""
        return self.used_ports(exclude=exclude).get(port)

    def window_owner(self, window_name: str, exclude: Optional[str] = None) -> Optional[str]:
        """Name of the service supervised under ``window_name``."""
        for record in self._cache.values():
            if record.name != exclude and record.window_name == window_name:
                return record.name
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, record: ServiceRecord, overwrite: bool = False) -> ServiceRecord:
        """Persist a new record and create its data directory.

        Args:
            record: Record to store
            overwrite: Replace an existing record with the same name

        Returns:
            The stored record

        Raises:
            ConflictError: Name or window already taken
            PortConflictError: External port owned by another record
        """
        if self.exists(record.name) and not overwrite:
            raise ConflictError(f"Service '{record.name}' already exists")

        owner = self.port_owner(record.external_port, exclude=record.name)
        if owner:
            raise PortConflictError(record.external_port, owner=owner)

        window_owner = self.window_owner(record.window_name, exclude=record.name)
        if window_owner:
            raise ConflictError(
                f"Window '{record.window_name}' is already used by service: {window_owner}"
            )

        created_dir = False
        try:
            if not record.data_dir.exists():
                record.data_dir.mkdir(parents=True)
                created_dir = True
            self.services_dir.mkdir(parents=True, exist_ok=True)
            write_atomic(self._record_path(record.name), render_record(record))
        except Exception:
            if created_dir:
                shutil.rmtree(record.data_dir, ignore_errors=True)
            raise

        self._cache[record.name] = record
        logger.info(f"Registered service {record.name} on port {record.external_port}")
        return record

    def delete(self, name: str) -> bool:
        """Remove a record and its data directory.

        Deleting an unknown name is a successful no-op, except that a leftover
        default data directory is still reclaimed.

        Returns:
            True if a record existed

        Raises:
            OSError: If the data directory could not be removed. The record is
                deleted before this is raised.
        """
        record = self.find(name)
        data_dir = record.data_dir if record else self.data_dir_for(name)

        cleanup_error: Optional[OSError] = None
        if data_dir.exists():
            logger.info(f"Removing data directory {data_dir}")
            try:
                shutil.rmtree(data_dir)
            except OSError as e:
                logger.error(f"Failed to remove data directory {data_dir}: {e}")
                cleanup_error = e

        path = self._record_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            pass

        self._cache.pop(name, None)
        if record:
            logger.info(f"Deleted service record {name}")
        if cleanup_error is not None:
            raise cleanup_error
        return record is not None


__all__ = ["ServiceRegistry", "render_record", "read_record", "write_atomic", "RECORD_SUFFIX"]
