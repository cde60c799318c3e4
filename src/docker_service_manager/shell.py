"""Bounded invocation of collaborator binaries (udocker, tmux)."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import CollaboratorError, CollaboratorTimeout

logger = logging.getLogger(__name__)


def run_command(
    args: Sequence[str],
    timeout: float,
    action: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run a collaborator command and capture its output.

    Args:
        args: Command line, binary first
        timeout: Seconds before the call is abandoned
        action: Description used in error messages (defaults to the command)
        env: Extra environment variables layered over the current environment
        check: Raise CollaboratorError on a non-zero exit status

    Returns:
        The completed process

    Raises:
        CollaboratorTimeout: If the process outlives ``timeout``
        CollaboratorError: If the binary is missing or exits non-zero with ``check``
    """
    action = action or " ".join(args[:2])
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    logger.debug(f"Running: {' '.join(args)}")
    try:
        result = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=full_env,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"{action} timed out after {timeout:g}s")
        raise CollaboratorTimeout(action, timeout)
    except FileNotFoundError:
        raise CollaboratorError(action, detail=f"binary not found: {args[0]}")
    except PermissionError:
        raise CollaboratorError(action, detail=f"permission denied: {args[0]}")

    if check and result.returncode != 0:
        raise CollaboratorError(action, result.returncode, result.stderr or result.stdout or "")
    return result


def missing_binaries(binaries: Iterable[str]) -> List[str]:
    """Return the binaries that cannot be found on PATH."""
    return [name for name in binaries if shutil.which(name) is None]


__all__ = ["run_command", "missing_binaries"]
