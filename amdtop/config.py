"""Configuration loading for amdtop.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → ~/.config/amdtop/config.toml → defaults only.
"""

from __future__ import annotations

import sys
import tomllib
from pathlib import Path
from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "interval": 1.0,
    "min_points": 50,
    "max_points": 500,
    "command_timeout": 0,  # 0 = wait for amd-smi indefinitely
    "log_file": "",
    "commands": {
        "monitor": ["amd-smi", "monitor", "--csv"],
        "process": ["amd-smi", "process", "--csv"],
    },
    "table": {
        "name_width": 20,
        "pid_width": 8,
    },
}

_DEFAULT_PATH = Path.home() / ".config" / "amdtop" / "config.toml"


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/amdtop/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"amdtop: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"amdtop: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    # Try default location silently
    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            print(
                f"amdtop: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return dict(DEFAULT_CONFIG)


def _toml_list(items: list[str]) -> str:
    return "[" + ", ".join(f'"{item}"' for item in items) + "]"


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# amdtop configuration",
        "# Place this file at ~/.config/amdtop/config.toml",
        "",
        f"interval = {DEFAULT_CONFIG['interval']}",
        f"min_points = {DEFAULT_CONFIG['min_points']}",
        f"max_points = {DEFAULT_CONFIG['max_points']}",
        f"command_timeout = {DEFAULT_CONFIG['command_timeout']}",
        f'log_file = "{DEFAULT_CONFIG["log_file"]}"',
        "",
        "[commands]",
    ]

    for name, argv in DEFAULT_CONFIG["commands"].items():
        lines.append(f"{name} = {_toml_list(argv)}")
    lines.append("")

    lines.append("[table]")
    for key, value in DEFAULT_CONFIG["table"].items():
        lines.append(f"{key} = {value}")

    return "\n".join(lines) + "\n"
