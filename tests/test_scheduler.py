"""End-to-end tests for the batch scheduler."""

import io
import socket

import pytest

from ifspeedtest.config import Settings
from ifspeedtest.errors import InvalidTarget
from ifspeedtest.interfaces import InterfaceResolver
from ifspeedtest.orchestrator import RunOrchestrator
from ifspeedtest.report import ConsoleReport
from ifspeedtest.scheduler import BatchScheduler
from ifspeedtest.scorecard import MetricKind, ScorecardAggregator
from ifspeedtest.targets import TargetResolver

from conftest import ScriptedLatency, ScriptedThroughput

ADDRESSES = {"one.example": "192.0.2.10", "three.example": "198.51.100.20"}


def fake_getaddrinfo(host, port, family=0, type=0):
    if host not in ADDRESSES:
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (ADDRESSES[host], 0))]


class PerTargetLatency(ScriptedLatency):
    """Baseline output whose last hop is the probed target."""

    def measure(self, target, binding):
        return self.parse(self.baseline_output.replace("192.0.2.10", target.address), target)

    def start_load(self, target, binding, count):
        handle = super().start_load(target, binding, count)
        handle.output = handle.output.replace("192.0.2.10", target.address)
        return handle


@pytest.fixture
def batch(run_log):
    stream = io.StringIO()
    scorecard = ScorecardAggregator()
    orchestrator = RunOrchestrator(
        Settings(),
        PerTargetLatency(),
        ScriptedThroughput({}),
        run_log,
        InterfaceResolver(net_if_addrs=dict),
    )
    scheduler = BatchScheduler(
        orchestrator,
        TargetResolver(resolver=fake_getaddrinfo, reverse=None),
        scorecard,
        ConsoleReport(stream),
    )
    return scheduler, scorecard, stream


class TestBatchScheduler:
    """Test skip-and-continue batches."""

    def test_dns_failure_does_not_abort_batch(self, batch):
        """Test target #2 failing DNS still yields results for #1 and #3."""
        scheduler, scorecard, stream = batch
        entries = [("one.example", "# first"), ("bad.invalid", ""), ("three.example", "")]

        runs = scheduler.run(entries)

        assert runs == 2
        output = stream.getvalue()
        assert "Target:  one.example (192.0.2.10) # first" in output
        assert "Target:  bad.invalid" in output
        assert "Error: Unable to resolve domain to IP: bad.invalid" in output
        assert "Target:  three.example (198.51.100.20)" in output
        assert "Scorecard" in output

        latency = scorecard.snapshot()[MetricKind.MIN_LATENCY]
        assert latency.ties == (("default", "192.0.2.10"), ("default", "198.51.100.20"))

    def test_every_target_gets_a_block_in_order(self, batch):
        scheduler, _, stream = batch
        scheduler.run([("one.example", ""), ("bad.invalid", ""), ("three.example", "")])

        headers = [line for line in stream.getvalue().splitlines() if line.startswith("Target:")]
        assert [h.split()[1] for h in headers] == ["one.example", "bad.invalid", "three.example"]

    def test_single_target_invalid_is_fatal(self, batch):
        """Test fail_fast re-raises after printing the failure block."""
        scheduler, scorecard, stream = batch

        with pytest.raises(InvalidTarget):
            scheduler.run([("bad.invalid", "")], fail_fast=True)

        assert "Target:  bad.invalid" in stream.getvalue()
        assert scorecard.run_count == 0

    def test_single_run_has_no_scorecard(self, batch):
        scheduler, _, stream = batch
        scheduler.run([("one.example", "")])

        assert "Scorecard" not in stream.getvalue()

    def test_multiple_interfaces_multiply_runs(self, run_log):
        """Test every target is measured on every interface."""
        stream = io.StringIO()
        orchestrator = RunOrchestrator(
            Settings(run_throughput=False),
            PerTargetLatency(),
            None,
            run_log,
            InterfaceResolver(net_if_addrs=dict),
        )
        scheduler = BatchScheduler(
            orchestrator,
            TargetResolver(resolver=fake_getaddrinfo, reverse=None),
            ScorecardAggregator(),
            ConsoleReport(stream),
            interfaces=["eth0", "wlan0"],
        )

        runs = scheduler.run([("one.example", "")])

        assert runs == 2
        assert "Target:  eth0 (unbound) => one.example (192.0.2.10)" in stream.getvalue()
