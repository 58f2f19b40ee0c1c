"""Tests for the mtr and iperf3 collectors, without spawning probes."""

import subprocess

import pytest

from ifspeedtest.collector_iperf import IperfCollector
from ifspeedtest.collector_mtr import MtrCollector
from ifspeedtest.config import Settings
from ifspeedtest.errors import FailureKind
from ifspeedtest.fake_collector import FakeProbe
from ifspeedtest.models import Direction, EgressBinding
from ifspeedtest.privilege import PrivilegeController, PrivilegeState, SudoMode
from ifspeedtest.process import ProbeOutcome

from conftest import MTR_TABLE, make_binding, make_target

PERMISSION_DENIED = "mtr: Failure to open raw socket: Operation not permitted\n"


class StubSupervisor:
    """Hands out scripted foreground outputs and records every command."""

    def __init__(self, outputs=()):
        self.outputs = list(outputs)
        self.foreground: list[list[str]] = []
        self.background: list[list[str]] = []

    def run_foreground(self, cmd, message, name=None):
        self.foreground.append(cmd)
        return ProbeOutcome(output=self.outputs.pop(0), returncode=0)

    def run_background(self, cmd, name):
        self.background.append(cmd)
        return FakeProbe(cmd, "")


class StubSudo:
    def __init__(self, rc):
        self.rc = rc
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, self.rc)


def make_privilege(mode=SudoMode.AUTO, sudo_rc=0):
    return PrivilegeController(
        mode=mode,
        runner=StubSudo(sudo_rc),
        is_root=False,
        interactive=False,
        sudo_path="/usr/bin/sudo",
        keepalive_interval=3600.0,
    )


def bound_binding():
    return EgressBinding(
        requested="eth0", device="eth0", source_address="10.0.0.2", label="eth0"
    )


class TestMtrCommand:
    """Test mtr invocation building."""

    def test_default_icmp_report(self, run_log):
        collector = MtrCollector(StubSupervisor(), Settings(), make_privilege(), run_log)

        cmd = collector.build_command(make_target(), make_binding(), 10)

        assert cmd == ["mtr", "-r", "-w", "-n", "-i", "1", "-c", "10", "192.0.2.10"]

    def test_tcp_probe_bound_to_device(self, run_log):
        settings = Settings(mtr_probe="tcp", mtr_interval=0.5)
        collector = MtrCollector(StubSupervisor(), settings, make_privilege(), run_log)

        cmd = collector.build_command(make_target(), bound_binding(), 5)

        assert cmd == [
            "mtr", "-r", "-w", "-n", "-i", "0.5", "-c", "5",
            "-T", "-P", "443", "-I", "eth0", "192.0.2.10",
        ]

    def test_xml_mode_and_udp_port(self, run_log):
        settings = Settings(mtr_output_mode="xml", mtr_probe="udp", mtr_port=33434)
        collector = MtrCollector(StubSupervisor(), settings, make_privilege(), run_log)

        cmd = collector.build_command(make_target(), make_binding(), 3)

        assert cmd[:3] == ["mtr", "-rwxb", "-n"]
        assert cmd[-4:] == ["-u", "-P", "33434", "192.0.2.10"]

    def test_load_timeout_adds_grace(self, run_log):
        collector = MtrCollector(StubSupervisor(), Settings(mtr_interval=0.5), make_privilege(), run_log)

        assert collector.load_timeout(20) == 20.0


class TestMtrEscalation:
    """Test the single elevated retry of the idle probe."""

    def test_permission_failure_retried_with_sudo(self, run_log):
        supervisor = StubSupervisor([PERMISSION_DENIED, MTR_TABLE])
        privilege = make_privilege(sudo_rc=0)
        collector = MtrCollector(supervisor, Settings(), privilege, run_log)

        metrics = collector.measure(make_target(), make_binding())
        privilege.stop()

        assert metrics.is_valid
        assert metrics.avg_ms == 12.0
        assert len(supervisor.foreground) == 2
        assert supervisor.foreground[1][:3] == ["/usr/bin/sudo", "-n", "mtr"]
        assert privilege.state is PrivilegeState.ESCALATED

    def test_load_probe_reuses_sudo_prefix(self, run_log):
        supervisor = StubSupervisor([PERMISSION_DENIED, MTR_TABLE])
        privilege = make_privilege(sudo_rc=0)
        collector = MtrCollector(supervisor, Settings(), privilege, run_log)

        collector.measure(make_target(), make_binding())
        collector.start_load(make_target(), make_binding(), 10)
        privilege.stop()

        assert supervisor.background[0][:2] == ["/usr/bin/sudo", "-n"]

    def test_denied_sudo_reports_privilege_failure(self, run_log):
        """Test a refused escalation is reported once and not retried."""
        supervisor = StubSupervisor([PERMISSION_DENIED])
        privilege = make_privilege(sudo_rc=1)
        collector = MtrCollector(supervisor, Settings(), privilege, run_log)

        metrics = collector.measure(make_target(), make_binding())

        assert not metrics.is_valid
        assert metrics.failure.kind is FailureKind.PRIVILEGE_REQUIRED
        assert "sudo was not granted" in metrics.failure.reason
        assert len(supervisor.foreground) == 1

    def test_never_mode_does_not_escalate(self, run_log):
        supervisor = StubSupervisor([PERMISSION_DENIED])
        privilege = make_privilege(mode=SudoMode.NEVER)
        collector = MtrCollector(supervisor, Settings(), privilege, run_log)

        metrics = collector.measure(make_target(), make_binding())

        assert metrics.failure.kind is FailureKind.PRIVILEGE_REQUIRED
        assert privilege.state is PrivilegeState.UNPRIVILEGED
        assert len(supervisor.foreground) == 1

    def test_idle_run_recorded_in_log(self, file_run_log):
        supervisor = StubSupervisor([MTR_TABLE])
        collector = MtrCollector(supervisor, Settings(), make_privilege(), file_run_log)

        collector.measure(make_target(), make_binding())

        text = file_run_log.path.read_text()
        assert "# mtr idle" in text
        assert "192.0.2.10" in text


class TestIperfCommand:
    """Test iperf3 invocation building."""

    @staticmethod
    def help_runner(text):
        def run(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 0, stdout=text, stderr="")

        return run

    def test_download_on_port_with_source_binding(self):
        collector = IperfCollector(
            StubSupervisor(), Settings(), runner=self.help_runner("  --connect-timeout #")
        )

        cmd = collector.build_command(make_target(), bound_binding(), Direction.DOWNLOAD, 5202)

        assert cmd == [
            "iperf3", "-c", "192.0.2.10", "-f", "m", "-t", "10", "-P", "10",
            "--connect-timeout", "5000", "-B", "10.0.0.2", "-R", "-p", "5202",
        ]

    def test_connect_timeout_skipped_when_unsupported(self):
        collector = IperfCollector(StubSupervisor(), Settings(), runner=self.help_runner("usage"))

        cmd = collector.build_command(make_target(), make_binding(), Direction.UPLOAD, None)

        assert "--connect-timeout" not in cmd
        assert "-R" not in cmd
        assert "-p" not in cmd

    def test_help_probe_runs_once(self):
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, stdout="--connect-timeout", stderr="")

        collector = IperfCollector(StubSupervisor(), Settings(), runner=run)
        collector.supports_connect_timeout()
        collector.supports_connect_timeout()

        assert calls == [["iperf3", "-h"]]

    def test_missing_binary_means_unsupported(self):
        def run(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        collector = IperfCollector(StubSupervisor(), Settings(), runner=run)

        assert collector.supports_connect_timeout() is False

    @pytest.mark.parametrize("timeout_ms, expected", [(5000, 25.0), (0, 20.0)])
    def test_attempt_timeout(self, timeout_ms, expected):
        settings = Settings(connect_timeout_ms=timeout_ms)

        assert IperfCollector(StubSupervisor(), settings).timeout == expected

    def test_start_names_process_by_direction(self):
        supervisor = StubSupervisor()
        collector = IperfCollector(supervisor, Settings(connect_timeout_ms=0))

        collector.start(make_target(), make_binding(), Direction.UPLOAD, None)

        assert supervisor.background[0][:3] == ["iperf3", "-c", "192.0.2.10"]
