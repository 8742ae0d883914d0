"""Version banner for ``amdtop --version``."""

from __future__ import annotations

import subprocess
import time
from importlib import metadata
from pathlib import Path

_PACKAGE_DIR = Path(__file__).resolve().parent
FALLBACK_VERSION = "0.1.0"


def get_version() -> str:
    try:
        return metadata.version("amdtop")
    except metadata.PackageNotFoundError:
        return FALLBACK_VERSION


def get_git_commit() -> str:
    """Short hash of the checkout amdtop runs from, or "unknown"."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=_PACKAGE_DIR,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    return result.stdout.strip() or "unknown"


def get_build_time() -> str:
    # Install time of the package files stands in for a build stamp.
    mtime = Path(__file__).stat().st_mtime
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(mtime))


def version_banner() -> str:
    return (
        f"amdtop version {get_version()}\n"
        f"Git commit: {get_git_commit()}\n"
        f"Build time: {get_build_time()}"
    )
