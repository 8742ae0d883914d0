"""amd-smi invocation and output parsing.

Two commands feed the dashboard:

* ``amd-smi monitor --csv``: one comma-delimited row per device.
* ``amd-smi process --csv``: one row per GPU process. Older amd-smi builds
  ignore ``--csv`` for this subcommand and print an indented labeled-block
  listing instead, so the process parser accepts both shapes and picks one
  by looking at the first non-blank line.

Malformed rows are dropped and malformed numbers read as zero; only a failed
invocation or unrecognisable output is reported to the caller.
"""

from __future__ import annotations

import csv
import logging
import math
import re
import subprocess
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

MONITOR_COMMAND = ["amd-smi", "monitor", "--csv"]
PROCESS_COMMAND = ["amd-smi", "process", "--csv"]

BYTES_PER_MB = 1024 * 1024
NO_PROCESSES_MARKER = "No running processes detected"

# amd-smi monitor --csv column positions
MONITOR_MIN_FIELDS = 17
_COL_DEVICE = 0
_COL_POWER = 1
_COL_GPU_TEMP = 2
_COL_MEM_TEMP = 3
_COL_GFX_UTIL = 4
_COL_GFX_CLOCK = 5
_COL_MEM_UTIL = 6
_COL_MEM_CLOCK = 7
_COL_VRAM_USED = 15
_COL_VRAM_TOTAL = 16

# amd-smi process --csv column positions
_PROC_DEVICE = 0
_PROC_VRAM = 2
_PROC_NAME = 3
_PROC_PID = 4
_PROC_CPU = 5
_PROC_GFX = 6
_PROC_GTT = 7
_PROC_TOTAL = 8
PROCESS_MIN_FIELDS = _PROC_TOTAL + 1

_BLOCK_LINE = re.compile(r"^\s*([A-Z][A-Z0-9_]*):\s*(.*?)\s*$")
_LEADING_NUMBER = re.compile(r"^[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


# ── Errors ──────────────────────────────────────────────────────────────────


class SmiError(Exception):
    """Base class for amd-smi failures."""


class CommandError(SmiError):
    """amd-smi could not be run, exited non-zero or produced unreadable output."""

    def __init__(self, argv: list[str], reason: str) -> None:
        self.argv = list(argv)
        self.reason = reason
        super().__init__(f"{' '.join(argv)}: {reason}")


class ParseError(SmiError):
    """Output did not match any known amd-smi format."""


# ── Data types ──────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class DeviceMetricSample:
    """One device's readings from a single ``amd-smi monitor`` run."""

    device: int
    power: float  # W
    gpu_temp: float  # °C
    mem_temp: float  # °C
    gfx_util: float  # %
    gfx_clock: float  # MHz
    mem_util: float  # %
    mem_clock: float  # MHz
    vram_used: float  # MB
    vram_total: float  # MB


@dataclass(slots=True, frozen=True)
class ProcessUsageRecord:
    """One process's GPU usage. Memory figures are in MB."""

    device: int
    name: str
    pid: str
    gtt_mem: float
    cpu_mem: float
    vram_mem: float
    total_mem: float
    gfx_usage: str  # e.g. "50.0%"


# ── Field helpers ───────────────────────────────────────────────────────────


def _to_float(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        return 0.0
    return value if math.isfinite(value) else 0.0


def _to_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):  # N/A, nan, inf
        return 0


def _leading_float(text: str) -> float:
    """Parse the number at the start of e.g. ``"512 MB"``; 0.0 if there is none."""
    match = _LEADING_NUMBER.match(text.strip())
    return float(match.group(0)) if match else 0.0


def format_percent(value: float) -> str:
    return f"{value:.1f}%"


def gfx_percent_from_ns(text: str) -> str:
    """Turn the block format's GFX busy time (ns per 1 s sample) into a percent."""
    match = _LEADING_NUMBER.match(text.strip())
    if not match:
        return format_percent(0.0)
    ns = float(match.group(0))
    if ns <= 0:
        return format_percent(0.0)
    return format_percent(ns / 1e9 * 100)


def bytes_to_mb(text: str) -> float:
    return _to_float(text) / BYTES_PER_MB


def _resolve_name(name: str, pid: str) -> str:
    """Fill in a blank or N/A process name from the live process table."""
    if name.strip() and name.strip() != "N/A":
        return name
    if not pid.strip().isdigit():
        return name
    try:
        return psutil.Process(int(pid)).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return name


# ── Command invocation ──────────────────────────────────────────────────────


def run_smi(argv: list[str], timeout: float | None = None) -> str:
    """Run an amd-smi command and return its stdout.

    Raises:
        CommandError: if the binary is missing, times out, exits non-zero or
            writes something that is not UTF-8.
    """
    try:
        result = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            encoding="utf-8",
            timeout=timeout or None,
            check=False,
        )
    except FileNotFoundError as e:
        raise CommandError(argv, "command not found") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(argv, f"timed out after {timeout}s") from e
    except UnicodeDecodeError as e:
        raise CommandError(argv, f"output is not valid UTF-8: {e}") from e
    except OSError as e:
        raise CommandError(argv, str(e)) from e

    if result.returncode != 0:
        detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
        raise CommandError(argv, detail)
    return result.stdout


# ── Device metrics ──────────────────────────────────────────────────────────


def parse_device_metrics(raw: str) -> list[DeviceMetricSample]:
    """Parse ``amd-smi monitor --csv`` output, one sample per device row."""
    lines = raw.splitlines()
    samples: list[DeviceMetricSample] = []

    for line in lines[1:]:  # skip header
        if not line.strip():
            continue
        fields = line.split(",")
        if len(fields) < MONITOR_MIN_FIELDS:
            logger.debug("skipping short monitor row (%d fields)", len(fields))
            continue
        samples.append(DeviceMetricSample(
            device=_to_int(fields[_COL_DEVICE]),
            power=_to_float(fields[_COL_POWER]),
            gpu_temp=_to_float(fields[_COL_GPU_TEMP]),
            mem_temp=_to_float(fields[_COL_MEM_TEMP]),
            gfx_util=_to_float(fields[_COL_GFX_UTIL]),
            gfx_clock=_to_float(fields[_COL_GFX_CLOCK]),
            mem_util=_to_float(fields[_COL_MEM_UTIL]),
            mem_clock=_to_float(fields[_COL_MEM_CLOCK]),
            vram_used=_to_float(fields[_COL_VRAM_USED]),
            vram_total=_to_float(fields[_COL_VRAM_TOTAL]),
        ))

    return samples


# ── Process usage ───────────────────────────────────────────────────────────


def _first_meaningful_line(raw: str) -> str | None:
    for line in raw.splitlines():
        if line.strip():
            return line
    return None


def parse_process_usage(raw: str) -> list[ProcessUsageRecord]:
    """Parse ``amd-smi process`` output in either the CSV or labeled-block shape.

    Raises:
        ParseError: if the first non-blank line looks like neither format.
    """
    first = _first_meaningful_line(raw)
    if first is None:
        return []
    if "," in first:
        return _parse_process_rows(raw)
    if _BLOCK_LINE.match(first):
        return _parse_process_blocks(raw)
    raise ParseError(f"unrecognised amd-smi process output: {first.strip()!r}")


def _parse_process_rows(raw: str) -> list[ProcessUsageRecord]:
    reader = csv.reader(line for line in raw.splitlines() if line.strip())
    next(reader, None)  # header

    records: list[ProcessUsageRecord] = []
    for row in reader:
        # process_list column
        if len(row) > 1 and NO_PROCESSES_MARKER in row[1]:
            continue
        if len(row) < PROCESS_MIN_FIELDS:
            logger.debug("skipping short process row (%d fields)", len(row))
            continue
        try:
            device = int(row[_PROC_DEVICE])
        except ValueError:
            continue

        gfx_usage = format_percent(_to_float(row[_PROC_GFX].strip().rstrip("%")))

        pid = row[_PROC_PID]
        records.append(ProcessUsageRecord(
            device=device,
            name=_resolve_name(row[_PROC_NAME], pid),
            pid=pid,
            gtt_mem=bytes_to_mb(row[_PROC_GTT]),
            cpu_mem=bytes_to_mb(row[_PROC_CPU]),
            vram_mem=bytes_to_mb(row[_PROC_VRAM]),
            total_mem=bytes_to_mb(row[_PROC_TOTAL]),
            gfx_usage=gfx_usage,
        ))

    return records


def _new_block_record(device: int) -> dict[str, object]:
    return {
        "device": device,
        "name": "",
        "pid": "",
        "gtt_mem": 0.0,
        "cpu_mem": 0.0,
        "vram_mem": 0.0,
        "total_mem": 0.0,
        "gfx_usage": format_percent(0.0),
    }


_BLOCK_MEMORY_KEYS = {
    "GTT_MEM": "gtt_mem",
    "CPU_MEM": "cpu_mem",
    "VRAM_MEM": "vram_mem",
    "MEM_USAGE": "total_mem",
}


def _parse_process_blocks(raw: str) -> list[ProcessUsageRecord]:
    records: list[ProcessUsageRecord] = []
    device = 0
    current: dict[str, object] | None = None

    def flush() -> None:
        if current is not None and current["name"]:
            records.append(ProcessUsageRecord(**current))  # type: ignore[arg-type]

    for line in raw.splitlines():
        match = _BLOCK_LINE.match(line)
        if not match:
            continue
        key, value = match.groups()

        if key == "GPU":
            try:
                device = int(value)
            except ValueError:
                logger.debug("unparsable GPU marker %r", value)
        elif key == "NAME":
            flush()
            current = _new_block_record(device)
            current["name"] = value
        elif current is None:
            continue
        elif key == "PID":
            current["pid"] = value
        elif key in _BLOCK_MEMORY_KEYS:
            current[_BLOCK_MEMORY_KEYS[key]] = _leading_float(value)
        elif key == "GFX":
            current["gfx_usage"] = gfx_percent_from_ns(value)

    flush()
    return records


# ── Collectors ──────────────────────────────────────────────────────────────


def collect_device_metrics(
    argv: list[str] | None = None,
    timeout: float | None = None,
) -> list[DeviceMetricSample]:
    """Run the monitor command and parse it. Raises CommandError on failure."""
    return parse_device_metrics(run_smi(argv or MONITOR_COMMAND, timeout))


def collect_process_usage(
    argv: list[str] | None = None,
    timeout: float | None = None,
) -> list[ProcessUsageRecord]:
    """Run the process command and parse it. Raises SmiError on failure."""
    return parse_process_usage(run_smi(argv or PROCESS_COMMAND, timeout))
