"""Tests for amdtop.smi."""

import subprocess
from unittest.mock import MagicMock, patch

import psutil
import pytest

from amdtop.smi import (
    BYTES_PER_MB,
    CommandError,
    DeviceMetricSample,
    ParseError,
    bytes_to_mb,
    collect_device_metrics,
    collect_process_usage,
    gfx_percent_from_ns,
    parse_device_metrics,
    parse_process_usage,
    run_smi,
)

MONITOR_HEADER = (
    "gpu,power_usage,hotspot_temperature,memory_temperature,gfx_util,gfx_clock,"
    "mem_util,mem_clock,encoder_util,decoder_util,vclock,dclock,single_bit_ecc,"
    "double_bit_ecc,pcie_replay,vram_used,vram_total"
)

MONITOR_CSV = "\n".join([
    MONITOR_HEADER,
    "0,120,55,60,42,2100,30,1200,0,0,0,0,0,0,0,4096,16384",
    "1,95.5,48,52,7.5,1800,12,1000,0,0,0,0,0,0,0,1024,16384",
]) + "\n"

PROCESS_HEADER = "gpu,process_list,vram_mem,name,pid,cpu_mem,gfx,gtt_mem,mem_usage"

PROCESS_CSV = "\n".join([
    PROCESS_HEADER,
    "0,,1048576,python3,1234,2097152,25,0,3145728",
    "1,,5242880,ollama,99,0,80,1048576,6291456",
    "1,No running processes detected",
]) + "\n"

PROCESS_BLOCKS = """\
GPU: 0
    PROCESS_INFO:
        NAME: python3
        PID: 1234
        MEMORY_USAGE:
            GTT_MEM: 2 MB
            CPU_MEM: 10 MB
            VRAM_MEM: 500 MB
        MEM_USAGE: 512 MB
        USAGE:
            GFX: 500000000 ns
            ENC: 0 ns
    PROCESS_INFO:
        NAME: llama-server
        PID: 4321
        MEMORY_USAGE:
            GTT_MEM: 0 MB
            CPU_MEM: 4 MB
            VRAM_MEM: 8000 MB
        MEM_USAGE: 8004 MB
        USAGE:
            GFX: 0 ns
GPU: 1
    PROCESS_INFO:
        NAME: blender
        PID: 77
        MEMORY_USAGE:
            GTT_MEM: 1 MB
            CPU_MEM: 1 MB
            VRAM_MEM: 300 MB
        MEM_USAGE: 302 MB
        USAGE:
            GFX: 250000000 ns
"""


# ── parse_device_metrics ───────────────────────────────────────────────────


class TestParseDeviceMetrics:
    def test_one_sample_per_row(self) -> None:
        samples = parse_device_metrics(MONITOR_CSV)
        assert len(samples) == 2
        assert samples[0] == DeviceMetricSample(
            device=0,
            power=120.0,
            gpu_temp=55.0,
            mem_temp=60.0,
            gfx_util=42.0,
            gfx_clock=2100.0,
            mem_util=30.0,
            mem_clock=1200.0,
            vram_used=4096.0,
            vram_total=16384.0,
        )
        assert samples[1].device == 1
        assert samples[1].power == 95.5
        assert samples[1].gfx_util == 7.5

    def test_header_only(self) -> None:
        assert parse_device_metrics(MONITOR_HEADER + "\n") == []

    def test_empty_output(self) -> None:
        assert parse_device_metrics("") == []

    def test_short_row_skipped_without_affecting_siblings(self) -> None:
        raw = "\n".join([
            MONITOR_HEADER,
            "0,120,55,60,42,2100,30,1200,0,0,0,0,0,0,0,4096,16384",
            "1,95,48,52",
            "2,80,40,45,10,1500,5,900,0,0,0,0,0,0,0,512,8192",
        ])
        samples = parse_device_metrics(raw)
        assert [s.device for s in samples] == [0, 2]
        assert samples[1].vram_total == 8192.0

    def test_unparsable_fields_read_as_zero(self) -> None:
        raw = MONITOR_HEADER + "\n0,N/A,55,N/A,,2100,30,1200,0,0,0,0,0,0,0,N/A,16384\n"
        (sample,) = parse_device_metrics(raw)
        assert sample.power == 0.0
        assert sample.mem_temp == 0.0
        assert sample.gfx_util == 0.0
        assert sample.vram_used == 0.0
        assert sample.gpu_temp == 55.0
        assert sample.vram_total == 16384.0

    def test_blank_lines_ignored(self) -> None:
        raw = MONITOR_CSV.replace("\n1,", "\n\n1,")
        assert len(parse_device_metrics(raw)) == 2

    def test_used_above_total_kept(self) -> None:
        raw = MONITOR_HEADER + "\n0,1,1,1,1,1,1,1,0,0,0,0,0,0,0,9000,100\n"
        (sample,) = parse_device_metrics(raw)
        assert sample.vram_used > sample.vram_total

    @pytest.mark.parametrize("cell", ["nan", "inf", "-inf", "1e400"])
    def test_non_finite_device_reads_as_zero(self, cell: str) -> None:
        raw = MONITOR_HEADER + f"\n{cell},1,1,1,42,1,1,1,0,0,0,0,0,0,0,1,2\n"
        (sample,) = parse_device_metrics(raw)
        assert sample.device == 0
        assert sample.gfx_util == 42.0

    def test_non_finite_value_reads_as_zero(self) -> None:
        raw = MONITOR_HEADER + "\n0,nan,inf,1,-inf,1,1,1,0,0,0,0,0,0,0,1,2\n"
        (sample,) = parse_device_metrics(raw)
        assert sample.power == 0.0
        assert sample.gpu_temp == 0.0
        assert sample.gfx_util == 0.0


# ── parse_process_usage: delimited rows ────────────────────────────────────


class TestParseProcessRows:
    def test_no_processes_marker_dropped(self) -> None:
        records = parse_process_usage(PROCESS_CSV)
        assert len(records) == 2
        assert [r.name for r in records] == ["python3", "ollama"]

    def test_field_mapping_and_byte_conversion(self) -> None:
        rec = parse_process_usage(PROCESS_CSV)[0]
        assert rec.device == 0
        assert rec.pid == "1234"
        assert rec.vram_mem == 1.0
        assert rec.cpu_mem == 2.0
        assert rec.gtt_mem == 0.0
        assert rec.total_mem == 3.0
        assert rec.gfx_usage == "25.0%"

    def test_bad_device_index_dropped(self) -> None:
        raw = PROCESS_HEADER + "\nx,,0,ghost,1,0,0,0,0\n0,,0,real,2,0,0,0,0\n"
        records = parse_process_usage(raw)
        assert [r.name for r in records] == ["real"]

    def test_short_row_dropped(self) -> None:
        raw = PROCESS_HEADER + "\n0,,0,truncated\n"
        assert parse_process_usage(raw) == []

    def test_unparsable_usage_is_zero_percent(self) -> None:
        raw = PROCESS_HEADER + "\n0,,0,proc,1,0,N/A,0,0\n"
        assert parse_process_usage(raw)[0].gfx_usage == "0.0%"

    @pytest.mark.parametrize("cell", ["nan", "inf", "-inf", "NaN%"])
    def test_non_finite_usage_is_zero_percent(self, cell: str) -> None:
        raw = PROCESS_HEADER + f"\n0,,0,proc,1,0,{cell},0,0\n"
        assert parse_process_usage(raw)[0].gfx_usage == "0.0%"

    def test_marker_in_name_column_kept(self) -> None:
        raw = PROCESS_HEADER + "\n0,,0,No running processes detected,7,0,5,0,0\n"
        (rec,) = parse_process_usage(raw)
        assert rec.name == "No running processes detected"
        assert rec.pid == "7"

    def test_quoted_name_with_comma(self) -> None:
        raw = PROCESS_HEADER + '\n0,,0,"worker, main",5,0,10,0,0\n'
        rec = parse_process_usage(raw)[0]
        assert rec.name == "worker, main"
        assert rec.pid == "5"

    @patch("amdtop.smi.psutil.Process")
    def test_blank_name_resolved_from_pid(self, mock_process: MagicMock) -> None:
        mock_process.return_value.name.return_value = "resolved"
        raw = PROCESS_HEADER + "\n0,,0,N/A,4242,0,0,0,0\n"
        assert parse_process_usage(raw)[0].name == "resolved"
        mock_process.assert_called_once_with(4242)

    @patch("amdtop.smi.psutil.Process", side_effect=psutil.NoSuchProcess(4242))
    def test_blank_name_kept_when_process_gone(self, mock_process: MagicMock) -> None:
        raw = PROCESS_HEADER + "\n0,,0,,4242,0,0,0,0\n"
        assert parse_process_usage(raw)[0].name == ""

    @patch("amdtop.smi.psutil.Process")
    def test_non_numeric_pid_not_looked_up(self, mock_process: MagicMock) -> None:
        raw = PROCESS_HEADER + "\n0,,0,,N/A,0,0,0,0\n"
        parse_process_usage(raw)
        mock_process.assert_not_called()


# ── parse_process_usage: labeled blocks ────────────────────────────────────


class TestParseProcessBlocks:
    def test_all_named_records_including_trailing(self) -> None:
        records = parse_process_usage(PROCESS_BLOCKS)
        assert [r.name for r in records] == ["python3", "llama-server", "blender"]

    def test_device_context_inherited(self) -> None:
        records = parse_process_usage(PROCESS_BLOCKS)
        assert [r.device for r in records] == [0, 0, 1]

    def test_memory_already_in_mb(self) -> None:
        rec = parse_process_usage(PROCESS_BLOCKS)[0]
        assert rec.pid == "1234"
        assert rec.gtt_mem == 2.0
        assert rec.cpu_mem == 10.0
        assert rec.vram_mem == 500.0
        assert rec.total_mem == 512.0

    def test_gfx_nanoseconds_normalized(self) -> None:
        records = parse_process_usage(PROCESS_BLOCKS)
        assert [r.gfx_usage for r in records] == ["50.0%", "0.0%", "25.0%"]

    def test_empty_name_not_flushed(self) -> None:
        raw = "GPU: 0\n    NAME: \n    PID: 1\n    NAME: real\n    PID: 2\n"
        records = parse_process_usage(raw)
        assert [r.pid for r in records] == ["2"]

    def test_no_running_processes(self) -> None:
        raw = "GPU: 0\n    PROCESS_INFO: No running processes detected\n"
        assert parse_process_usage(raw) == []

    def test_fields_before_first_name_ignored(self) -> None:
        raw = "GPU: 3\n    PID: 10\n    NAME: late\n"
        (rec,) = parse_process_usage(raw)
        assert rec.device == 3
        assert rec.pid == ""


# ── parse_process_usage: format detection ──────────────────────────────────


class TestFormatDetection:
    def test_blank_output_is_empty(self) -> None:
        assert parse_process_usage("\n  \n") == []

    def test_leading_blank_lines_skipped(self) -> None:
        assert len(parse_process_usage("\n\n" + PROCESS_CSV)) == 2

    def test_unrecognised_output(self) -> None:
        with pytest.raises(ParseError):
            parse_process_usage("something went wrong\n")


# ── unit helpers ───────────────────────────────────────────────────────────


class TestUnits:
    def test_one_mebibyte(self) -> None:
        assert bytes_to_mb("1048576") == 1.0
        assert BYTES_PER_MB == 1048576

    def test_bad_bytes(self) -> None:
        assert bytes_to_mb("N/A") == 0.0

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("500000000", "50.0%"),
            ("5e8", "50.0%"),
            ("500000000 ns", "50.0%"),
            ("1000000000", "100.0%"),
            ("0", "0.0%"),
            ("-5", "0.0%"),
            ("N/A", "0.0%"),
            ("", "0.0%"),
        ],
    )
    def test_gfx_percent_from_ns(self, raw: str, expected: str) -> None:
        assert gfx_percent_from_ns(raw) == expected


# ── run_smi / collectors (mocked) ──────────────────────────────────────────


class TestRunSmi:
    @patch("amdtop.smi.subprocess.run")
    def test_returns_stdout(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="out", stderr="")
        assert run_smi(["amd-smi", "monitor", "--csv"]) == "out"
        assert mock_run.call_args[0][0] == ["amd-smi", "monitor", "--csv"]
        assert mock_run.call_args[1]["timeout"] is None

    @patch("amdtop.smi.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_binary(self, mock_run: MagicMock) -> None:
        with pytest.raises(CommandError, match="command not found"):
            run_smi(["amd-smi"])

    @patch("amdtop.smi.subprocess.run")
    def test_nonzero_exit(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=2, stdout="", stderr="no device\n")
        with pytest.raises(CommandError) as excinfo:
            run_smi(["amd-smi", "monitor"])
        assert excinfo.value.reason == "no device"
        assert excinfo.value.argv == ["amd-smi", "monitor"]

    @patch("amdtop.smi.subprocess.run")
    def test_nonzero_exit_without_stderr(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="")
        with pytest.raises(CommandError, match="exit status 1"):
            run_smi(["amd-smi"])

    @patch(
        "amdtop.smi.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="amd-smi", timeout=2),
    )
    def test_timeout(self, mock_run: MagicMock) -> None:
        with pytest.raises(CommandError, match="timed out"):
            run_smi(["amd-smi"], timeout=2)


class TestCollectors:
    @patch("amdtop.smi.run_smi", return_value=MONITOR_CSV)
    def test_collect_device_metrics_default_command(self, mock_run: MagicMock) -> None:
        samples = collect_device_metrics()
        assert len(samples) == 2
        mock_run.assert_called_once_with(["amd-smi", "monitor", "--csv"], None)

    @patch("amdtop.smi.run_smi", return_value=PROCESS_BLOCKS)
    def test_collect_process_usage_custom_command(self, mock_run: MagicMock) -> None:
        records = collect_process_usage(["amd-smi", "process"], 5.0)
        assert len(records) == 3
        mock_run.assert_called_once_with(["amd-smi", "process"], 5.0)
