# noqa: D401
"""Data models for the Docker Service Manager."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import InvalidInputError

RECORD_VERSION = 1

MIN_PORT = 1
MAX_PORT = 65535

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_SEPARATORS = re.compile(r"[^A-Za-z0-9]+")
_WINDOW_RESERVED = re.compile(r"[:.]")
_LEGACY_DATE_FORMATS = (
    "%a %b %d %H:%M:%S %Z %Y",
    "%a %b %d %H:%M:%S %Y",
    "%a %d %b %Y %I:%M:%S %p %Z",
)


class UnitStatus(Enum):
    """Supervised unit states, derived live from the session host."""

    RUNNING = "running"
    ABSENT = "absent"

    @property
    def label(self) -> str:
        """Operator-facing label."""
        return "Running" if self is UnitStatus.RUNNING else "Stopped"


def validate_service_name(name: str) -> str:
    """Check that a service name is usable as a record file name."""
    if not name or not _NAME_PATTERN.match(name):
        raise InvalidInputError(f"Invalid service name: {name!r}")
    return name


def validate_window_name(name: str) -> str:
    """Check that a name addresses exactly one tmux window.

    tmux reads ``:`` and ``.`` as target separators and an all-digit name as
    a window index.
    """
    if not name or not name.strip() or _WINDOW_RESERVED.search(name) or name.isdigit():
        raise InvalidInputError(f"Invalid window name: {name!r}")
    return name


def default_window_name(service_name: str) -> str:
    """Window name for a service that was given none."""
    window = _WINDOW_RESERVED.sub("_", service_name)
    if window.isdigit():
        window = f"svc_{window}"
    return window


class ImageReference(BaseModel):
    """A parsed container image reference (``repo[:tag][@digest]``)."""

    repository: str
    tag: str = "latest"
    digest: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "ImageReference":
        """Parse an image reference, defaulting the tag to ``latest``.

        A colon only marks a tag when it comes after the last slash, so
        ``registry:5000/app`` keeps its port as part of the repository.
        """
        text = (text or "").strip()
        if not text:
            raise InvalidInputError("Image reference cannot be empty")

        digest = None
        if "@" in text:
            text, digest = text.split("@", 1)

        repository, tag = text, "latest"
        colon = text.rfind(":")
        if colon > text.rfind("/"):
            repository, tag = text[:colon], text[colon + 1 :]

        if not repository or not tag:
            raise InvalidInputError(f"Invalid image reference: {text!r}")

        ref = cls(repository=repository, tag=tag, digest=digest or None)
        # Raises when nothing usable is left for the service name
        _ = ref.service_name
        return ref

    @property
    def full(self) -> str:
        """Fully qualified reference including the tag."""
        ref = f"{self.repository}:{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref

    @property
    def service_name(self) -> str:
        """Stable service identifier derived from the repository."""
        repo = self.repository
        for prefix in ("docker.io/", "index.docker.io/"):
            if repo.startswith(prefix):
                repo = repo[len(prefix) :]
        if repo.startswith("library/"):
            repo = repo[len("library/") :]
        name = _SEPARATORS.sub("_", repo).strip("_")
        if not name:
            raise InvalidInputError(f"Cannot derive a service name from {self.repository!r}")
        return name

    def __str__(self) -> str:
        return self.full


class ServiceRecord(BaseModel):
    """Persisted description of one installed service."""

    name: str
    image: str
    container_name: str
    container_ref: str
    external_port: int = Field(ge=MIN_PORT, le=MAX_PORT)
    internal_port: int = Field(ge=MIN_PORT, le=MAX_PORT)
    data_dir: Path
    window_name: str = ""
    installed_at: datetime = Field(default_factory=lambda: datetime.now().astimezone())
    port_detected: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names double as file names."""
        return validate_service_name(v)

    @field_validator("data_dir", mode="before")
    @classmethod
    def validate_data_dir(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        return v

    @field_validator("window_name")
    @classmethod
    def validate_window(cls, v: str) -> str:
        """Window names become tmux targets; empty means derive from the name."""
        if not v:
            return v
        return validate_window_name(v)

    @model_validator(mode="after")
    def fill_window_name(self) -> "ServiceRecord":
        if not self.window_name:
            self.window_name = default_window_name(self.name)
        return self

    @property
    def port_mapping(self) -> str:
        """``external:internal`` mapping passed to the engine."""
        return f"{self.external_port}:{self.internal_port}"

    @property
    def access_url(self) -> str:
        """Local URL of the published port."""
        return f"http://localhost:{self.external_port}"

    def to_env(self) -> Dict[str, str]:
        """Serialise to the ``KEY=value`` record layout."""
        return {
            "RECORD_VERSION": str(RECORD_VERSION),
            "SERVICE_NAME": self.name,
            "IMAGE": self.image,
            "CONTAINER_NAME": self.container_name,
            "CONTAINER_REF": self.container_ref,
            "EXTERNAL_PORT": str(self.external_port),
            "INTERNAL_PORT": str(self.internal_port),
            "PORT": str(self.external_port),
            "WINDOW_NAME": self.window_name,
            "DATA_DIR": str(self.data_dir),
            "PORT_DETECTED": "1" if self.port_detected else "0",
            "INSTALLED_AT": self.installed_at.isoformat(timespec="seconds"),
            "INSTALL_DATE": self.installed_at.strftime("%a %b %d %H:%M:%S %Y"),
        }

    @classmethod
    def from_env(
        cls,
        values: Dict[str, Optional[str]],
        fallback_installed_at: Optional[datetime] = None,
    ) -> "ServiceRecord":
        """Build a record from parsed ``KEY=value`` pairs.

        Legacy files written by the shell script (no ``RECORD_VERSION``) are
        accepted: the container name doubles as the container handle and the
        ``date(1)`` formatted install date is parsed when possible.
        """
        try:
            version = int(values.get("RECORD_VERSION") or 0)
        except ValueError as e:
            raise InvalidInputError(f"Malformed RECORD_VERSION: {e}") from e
        if version > RECORD_VERSION:
            raise InvalidInputError(f"Unsupported record version {version}")

        def _require(key: str) -> str:
            value = values.get(key)
            if not value:
                raise InvalidInputError(f"Record is missing {key}")
            return value

        container_name = _require("CONTAINER_NAME")
        external = values.get("EXTERNAL_PORT") or values.get("PORT")
        if not external:
            raise InvalidInputError("Record is missing EXTERNAL_PORT")

        window_name = values.get("WINDOW_NAME") or ""
        if version == 0 and window_name:
            # Legacy files kept dots from the image name
            window_name = default_window_name(window_name)

        installed_at = _parse_timestamp(values.get("INSTALLED_AT"), values.get("INSTALL_DATE"))
        if installed_at is None:
            installed_at = fallback_installed_at or datetime.now().astimezone()

        try:
            return cls(
                name=_require("SERVICE_NAME"),
                image=_require("IMAGE"),
                container_name=container_name,
                container_ref=values.get("CONTAINER_REF") or container_name,
                external_port=int(external),
                internal_port=int(_require("INTERNAL_PORT")),
                data_dir=_require("DATA_DIR"),
                window_name=window_name,
                installed_at=installed_at,
                port_detected=(values.get("PORT_DETECTED") or "1") in ("1", "true", "True"),
            )
        except ValueError as e:
            raise InvalidInputError(f"Malformed record: {e}") from e


def _parse_timestamp(iso_value: Optional[str], legacy_value: Optional[str]) -> Optional[datetime]:
    if iso_value:
        try:
            return datetime.fromisoformat(iso_value)
        except ValueError:
            pass
    if legacy_value:
        for fmt in _LEGACY_DATE_FORMATS:
            try:
                return datetime.strptime(legacy_value, fmt)
            except ValueError:
                continue
    return None


class InstallPlan(BaseModel):
    """Everything an install needs, prepared after the image is pulled.

    The operator may adjust ports and names before the plan is committed.
    """

    image: str
    name: str
    container_name: str
    window_name: str
    internal_port: int
    external_port: int
    port_detected: bool = True
    detected_ports: List[int] = Field(default_factory=list)
    overwrite: bool = False
    pulled: bool = False


class ServiceListing(BaseModel):
    """A record together with its live unit status."""

    record: ServiceRecord
    status: UnitStatus

    @property
    def is_running(self) -> bool:
        return self.status is UnitStatus.RUNNING


class RunResult(BaseModel):
    """Outcome of the run workflow."""

    record: ServiceRecord
    started: bool
    command: Optional[str] = None


class HostSummary(BaseModel):
    """State of the shared tmux session."""

    session_name: str
    exists: bool
    units: List[str] = Field(default_factory=list)
    attach_command: str


@dataclass
class RemoveReport:
    """Outcome of the remove workflow.

    ``errors`` collects collaborator failures that did not block deletion.
    """

    name: str
    existed: bool
    stopped: bool = False
    errors: List[Exception] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Whether some collaborator teardown step failed."""
        return bool(self.errors)


__all__ = [
    "RECORD_VERSION",
    "MIN_PORT",
    "MAX_PORT",
    "UnitStatus",
    "ImageReference",
    "ServiceRecord",
    "InstallPlan",
    "ServiceListing",
    "RunResult",
    "HostSummary",
    "RemoveReport",
    "validate_service_name",
    "validate_window_name",
    "default_window_name",
]
