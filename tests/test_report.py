"""Tests for console report rendering."""

import io
from datetime import datetime
from pathlib import Path

from ifspeedtest.config import Settings
from ifspeedtest.models import (
    Direction,
    EgressBinding,
    LatencyMetrics,
    RunResult,
    ThroughputResult,
)
from ifspeedtest.report import (
    UNAVAILABLE,
    ConsoleReport,
    banner,
    fmt_loss,
    fmt_ms,
    fmt_speed,
    message_lines,
    run_block,
    scorecard_block,
    settings_block,
    target_header,
)
from ifspeedtest.scorecard import ScorecardAggregator

from conftest import make_binding, make_target


def metrics(avg, jitter, hops=3):
    return LatencyMetrics(
        best_ms=avg - 0.5,
        avg_ms=avg,
        worst_ms=avg + 0.9,
        jitter_ms=jitter,
        hops=hops,
        loss_pct=0.0,
        sent=10,
        destination_reached=True,
    )


def full_result(address="192.0.2.10", up=941.0, down=937.0, avg=12.0, note=""):
    result = RunResult(target=make_target(address, note), binding=make_binding())
    result.baseline = metrics(avg, 0.4)
    result.upload = ThroughputResult(Direction.UPLOAD, mbps=up)
    result.download = ThroughputResult(Direction.DOWNLOAD, mbps=down)
    result.upload_load = metrics(avg + 33.5, 12.4)
    result.download_load = metrics(avg + 20.0, 8.0)
    return result


class TestFormatting:
    """Test value formatting."""

    def test_unavailable_values(self):
        assert fmt_ms(None) == UNAVAILABLE
        assert fmt_loss(None) == UNAVAILABLE
        assert fmt_speed(None) == UNAVAILABLE

    def test_numbers(self):
        assert fmt_ms(12.0) == "12.000"
        assert fmt_speed(941.0) == "941.00 Mbits/sec"

    def test_banner(self):
        line = banner("Started", datetime(2026, 10, 17, 9, 30, 5))

        assert line.startswith("============= Started: 2026-10-17 09:30:05 ")
        assert len(line) == 59


class TestTargetHeader:
    """Test the three header shapes."""

    def test_no_egress(self):
        assert target_header("192.0.2.10", "# lab", None, False) == "Target:  192.0.2.10 # lab"

    def test_single_egress(self):
        binding = EgressBinding("eth0", "eth0", "10.0.0.2", "eth0")

        assert target_header("192.0.2.10", "", binding, False) == "Target:  192.0.2.10  | Egress: eth0"

    def test_multi_egress(self):
        assert target_header("192.0.2.10", "", "wlan0", True) == "Target:  wlan0 => 192.0.2.10"

    def test_default_binding_not_shown(self):
        assert target_header("192.0.2.10", "", make_binding(), True) == "Target:  192.0.2.10"


class TestRunBlock:
    """Test per-run rows."""

    def test_full_run_rows(self):
        lines = run_block(full_result(), Settings(), multi_egress=False)

        assert lines[0] == "Target:  192.0.2.10"
        idle, upload, download = lines[2:5]
        assert idle.startswith("Idle:")
        assert "Ping: 12.000" in idle
        assert "Hops: 3" in idle
        assert upload.startswith("Upload:   941.00 Mbits/sec")
        assert "ΔPing: 33.500" in upload
        assert "ΔJitter: 12.000" in upload
        assert download.startswith("Download: 937.00 Mbits/sec")

    def test_failed_probe_shows_error_marker(self):
        result = full_result()
        result.upload = ThroughputResult(Direction.UPLOAD)
        result.baseline = LatencyMetrics.unavailable()
        result.errors = ["mtr: no route to host", "mtr: no route to host"]
        result.notices = ["iperf3 upload: unable to connect"]

        lines = run_block(result, Settings(), multi_egress=False)

        assert "Ping: ERROR" in lines[2]
        assert lines[3].startswith("Upload:   ERROR")
        assert "ΔPing: ERROR" in lines[3]
        assert lines[5:8] == [
            "Errors:",
            " - mtr: no route to host",
            "Note: iperf3 upload: unable to connect",
        ]

    def test_throughput_only_rows(self):
        lines = run_block(full_result(), Settings(run_latency=False), multi_egress=False)

        assert lines[2:4] == ["Upload:   941.00 Mbits/sec", "Download: 937.00 Mbits/sec"]

    def test_message_lines_empty(self):
        assert message_lines([], []) == []


class TestSettingsBlock:
    """Test the settings summary."""

    def test_custom_port_range(self):
        settings = Settings(iperf_port_spec="5201-5203", interfaces=["eth0", "wlan0"])

        lines = settings_block(settings, Path("targets.txt"))

        assert "IPs:     targets.txt" in lines
        assert "Egress:  eth0, wlan0" in lines
        assert "          ↳ using custom port-range 5201-5203" in lines
        assert "mtr:     ICMP mode with interval of 1 sec" in lines

    def test_skipped_tools(self):
        lines = settings_block(Settings(run_throughput=False))

        assert "iperf3:  (skipped)" in lines


class TestScorecardBlock:
    """Test scorecard rendering."""

    def test_ties_all_listed(self):
        scorecard = ScorecardAggregator()
        scorecard.fold(full_result("192.0.2.10", note="# a"))
        scorecard.fold(full_result("198.51.100.20"))

        lines = scorecard_block(scorecard)

        assert lines[0] == "Scorecard"
        ping = [line for line in lines if line.startswith("Best Ping:")]
        assert len(ping) == 2
        assert ping[0].endswith("# a")
        assert ping[1].endswith("default => 198.51.100.20")

    def test_not_rendered_for_single_run(self):
        scorecard = ScorecardAggregator()
        scorecard.fold(full_result())

        assert scorecard_block(scorecard) == []


class TestConsoleReport:
    def test_writes_lines(self):
        stream = io.StringIO()
        ConsoleReport(stream).write(["a", "b"])

        assert stream.getvalue() == "a\nb\n"
