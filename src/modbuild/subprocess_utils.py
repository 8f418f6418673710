"""Subprocess helpers for invoking external build steps.

Every compiler invocation goes through safe_run() so the platform flags,
stdin handling and output decoding are applied in exactly one place.
"""

import subprocess
import sys
from pathlib import Path
from typing import Any, Optional


def get_subprocess_creation_flags() -> int:
    """Get platform-specific subprocess creation flags.

    Returns:
        - Windows: subprocess.CREATE_NO_WINDOW (prevents console window)
        - Other platforms: 0 (no special flags)
    """
    if sys.platform == "win32":
        return subprocess.CREATE_NO_WINDOW
    return 0


def safe_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
    """Execute subprocess.run with platform-specific flags.

    Applies CREATE_NO_WINDOW on Windows and redirects stdin to DEVNULL
    unless the caller passes its own ``stdin``. Explicit ``creationflags``
    are OR'd with the platform defaults.

    Args:
        cmd: Command and arguments
        **kwargs: Additional arguments passed to subprocess.run

    Returns:
        CompletedProcess result from subprocess.run
    """
    default_flags = get_subprocess_creation_flags()

    if "creationflags" in kwargs:
        kwargs["creationflags"] = kwargs["creationflags"] | default_flags
    elif default_flags:
        kwargs["creationflags"] = default_flags

    if "stdin" not in kwargs:
        kwargs["stdin"] = subprocess.DEVNULL

    return subprocess.run(cmd, **kwargs)


def run_captured(cmd: list[str], cwd: Optional[Path] = None, timeout: Optional[float] = None) -> tuple[int, str]:
    """Run a command and return its exit code with stdout and stderr merged.

    A missing executable or a timeout is reported as a non-zero exit code with
    the reason as output, so callers can treat every outcome uniformly as a
    diagnostic.

    Args:
        cmd: Command and arguments
        cwd: Working directory for the command
        timeout: Seconds before the command is killed (None = no limit)

    Returns:
        Tuple of (exit code, combined output text)
    """
    try:
        result = safe_run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as e:
        return 127, f"command not found: {e.filename or cmd[0]}"
    except subprocess.TimeoutExpired:
        return 124, f"command timed out after {timeout}s: {' '.join(cmd)}"
    return result.returncode, result.stdout or ""
