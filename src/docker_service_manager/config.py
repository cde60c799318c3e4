"""Application-wide configuration management using Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration for the service manager.

    Every field can be overridden with a ``DSM_``-prefixed environment variable
    or a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(env_prefix="DSM_", env_file=".env", extra="ignore")

    # Storage
    config_dir: Path = Path.home() / ".docker_service_manager"
    data_dir: Path = Path.home() / "docker_services_data"

    # tmux
    session_name: str = "docker_services"
    tmux_bin: str = "tmux"

    # Ports
    port_range_start: int = 3000
    default_internal_port: int = 80

    # udocker
    udocker_bin: str = "udocker"
    udocker_loglevel: int = 3
    execmode: str = "P1"
    run_workdir: Optional[Path] = None  # e.g. ~/Termux-Udocker
    volume_target: str = "/app/.sessions"

    # Collaborator timeouts (seconds)
    command_timeout: float = 60.0
    pull_timeout: float = 1800.0

    # Logging
    log_level: str = "WARNING"

    @field_validator("config_dir", "data_dir", "run_workdir", mode="before")
    @classmethod
    def expand_user(cls, v: Any) -> Any:
        """Expand ``~`` in configured paths."""
        if isinstance(v, str) and v:
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v

    @field_validator("port_range_start", "default_internal_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Ports must fall inside the TCP range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {v}")
        return v

    @property
    def services_dir(self) -> Path:
        """Directory holding one record file per service."""
        return self.config_dir / "services"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache configuration for the current process."""

    return Settings()  # type: ignore[arg-type]


__all__ = ["Settings", "get_settings"]
