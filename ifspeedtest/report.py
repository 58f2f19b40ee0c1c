"""Plain-text rendering of settings, per-run blocks and the scorecard.

Any metric that could not be determined renders as the fixed marker
``ERROR``. Columns are fixed width so the ``|`` separators line up.
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, TextIO

from ifspeedtest.config import Settings
from ifspeedtest.models import Direction, EgressBinding, LatencyMetrics, RunResult
from ifspeedtest.scorecard import MetricKind, ScorecardAggregator

UNAVAILABLE = "ERROR"
SEP_SMALL = "-" * 59
SEP_BIG = "=" * 59
LABEL_W = 9
SPEED_W = 18
SCORE_LABEL_W = 14
SCORE_VALUE_W = 22
SCORE_ADDRESS_W = 39  # longest IPv6 literal


def fmt_ms(value: float | None) -> str:
    """Format milliseconds with three decimals.

    Examples:
        >>> fmt_ms(12.0)
        '12.000'
        >>> fmt_ms(None)
        'ERROR'
    """
    return UNAVAILABLE if value is None else f"{value:.3f}"


def fmt_loss(value: float | None) -> str:
    """Format a loss percentage, e.g. ``"0.0 %"``."""
    return UNAVAILABLE if value is None else f"{value:.1f} %"


def fmt_hops(value: int | None) -> str:
    # Zero hops means the path was never traced.
    return UNAVAILABLE if not value else str(value)


def fmt_speed(mbps: float | None) -> str:
    """Format throughput with two decimals, the precision the scorecard compares at.

    Examples:
        >>> fmt_speed(941.0)
        '941.00 Mbits/sec'
    """
    return UNAVAILABLE if mbps is None else f"{mbps:.2f} Mbits/sec"


def banner(title: str, when: datetime) -> str:
    """Started/Ended line padded with ``=`` to the width of the result blocks.

    Args:
        title: e.g. ``"Started"``
        when: local timestamp to show

    Returns:
        A 59 character line such as
        ``============= Started: 2026-10-17 09:30:05 ================``
    """
    base = f"============= {title}: {when:%Y-%m-%d %H:%M:%S}"
    return f"{base} {'=' * max(0, 59 - len(base) - 1)}"


def settings_block(
    settings: Settings,
    ips_file: Path | None = None,
    log_path: Path | None = None,
) -> list[str]:
    """Summary of the effective configuration printed once before the first run.

    Args:
        settings: validated settings
        ips_file: targets file, shown by name when targets came from a file
        log_path: run log path, shown when logging is enabled
    """
    lines = ["Settings", SEP_SMALL]
    if ips_file is not None:
        lines.append(f"IPs:     {ips_file.name}")
    lines.append(f"Egress:  {', '.join(settings.interfaces) or '(default)'}")
    if settings.address_family == "4":
        lines.append("Family:  IPv4 only (domains resolve A)")
    elif settings.address_family == "6":
        lines.append("Family:  IPv6 only (domains resolve AAAA)")
    if log_path is not None:
        lines.append(f"Log:     {log_path}")

    if settings.run_throughput:
        lines.append(
            f"iperf3:  load for {settings.iperf_time} sec with "
            f"{settings.iperf_parallel} parallel streams per Target"
        )
        if settings.iperf_port_spec:
            kind = "port-range" if len(settings.iperf_ports) > 1 else "port"
            lines.append(f"          ↳ using custom {kind} {settings.iperf_port_spec}")
    else:
        lines.append("iperf3:  (skipped)")

    if settings.run_latency:
        probe = settings.mtr_probe.upper()
        interval = f"{settings.mtr_interval:g}"
        if settings.mtr_probe == "icmp":
            lines.append(f"mtr:     {probe} mode with interval of {interval} sec")
        else:
            port = settings.effective_mtr_port
            lines.append(
                f"mtr:     {probe} mode on port {port if port else '(default)'} "
                f"with interval of {interval} sec"
            )
        lines.append(f"          ↳ {settings.mtr_count} test cycles for Idle")
    else:
        lines.append("mtr:     (skipped)")

    lines.append(SEP_SMALL)
    return lines


def target_header(
    label: str,
    note: str,
    egress: EgressBinding | str | None,
    multi_egress: bool,
) -> str:
    """``Target:`` line; the egress is shown when one was requested."""
    if isinstance(egress, EgressBinding):
        egress_label = egress.label if egress.requested else None
    else:
        egress_label = egress
    shown = f"{label} {note}".rstrip()
    if egress_label and multi_egress:
        return f"Target:  {egress_label} => {shown}"
    if egress_label:
        return f"Target:  {shown}  | Egress: {egress_label}"
    return f"Target:  {shown}"


def _latency_columns(metrics: LatencyMetrics | None) -> str:
    metrics = metrics or LatencyMetrics.unavailable()
    return (
        f"Ping: {fmt_ms(metrics.avg_ms):<8} ms  "
        f"Loss: {fmt_loss(metrics.loss_pct):<9}  "
        f"Jitter: {fmt_ms(metrics.jitter_ms):<8} ms"
    )


def run_rows(result: RunResult, settings: Settings) -> list[str]:
    """Idle/Upload/Download rows for one run."""
    rows = []
    baseline = result.baseline
    if settings.run_latency:
        metrics = baseline or LatencyMetrics.unavailable()
        rows.append(
            f"{'Idle:':<{LABEL_W}} {'':<{SPEED_W}} | {_latency_columns(metrics)}  "
            f"[ Hops: {fmt_hops(metrics.hops):<3}; Best: {fmt_ms(metrics.best_ms):<8} ms; "
            f"Wrst: {fmt_ms(metrics.worst_ms):<8} ms ]"
        )

    if not settings.run_throughput:
        return rows

    for direction, label in ((Direction.UPLOAD, "Upload:"), (Direction.DOWNLOAD, "Download:")):
        throughput = result.throughput(direction)
        speed = fmt_speed(throughput.mbps if throughput else None)
        if settings.run_latency:
            rows.append(
                f"{label:<{LABEL_W}} {speed:<{SPEED_W}} | "
                f"{_latency_columns(result.load_metrics(direction))}  "
                f"[ ΔPing: {fmt_ms(result.delta_latency(direction)):<8} ms; "
                f"ΔJitter: {fmt_ms(result.delta_jitter(direction)):<8} ms ]"
            )
        else:
            rows.append(f"{label:<{LABEL_W}} {speed}")
    return rows


def message_lines(errors: Iterable[str], notices: Iterable[str]) -> list[str]:
    """Errors (de-duplicated) followed by notices."""
    lines = []
    unique = list(dict.fromkeys(e for e in errors if e))
    if unique:
        lines.append("Errors:")
        lines.extend(f" - {error}" for error in unique)
    lines.extend(f"Note: {notice}" for notice in notices if notice)
    return lines


def run_block(result: RunResult, settings: Settings, multi_egress: bool) -> list[str]:
    """Header, separator, metric rows and messages for one run, then a blank line.

    Args:
        result: finished run
        settings: decides which rows exist (mtr and/or iperf3)
        multi_egress: more than one interface was requested, so the
            interface leads the header
    """
    lines = [
        target_header(result.target.label, result.target.note, result.binding, multi_egress),
        SEP_BIG,
    ]
    lines.extend(run_rows(result, settings))
    lines.extend(message_lines(result.errors, result.notices))
    lines.append("")
    return lines


def failed_target_block(
    raw: str,
    note: str,
    interface: str | None,
    error: str,
    multi_egress: bool,
) -> list[str]:
    """Block for a target that never got measured (e.g. DNS failure)."""
    lines = [target_header(raw, note, interface, multi_egress), SEP_BIG]
    lines.extend(message_lines([error], []))
    lines.append("")
    return lines


_SCORE_ROWS = (
    (MetricKind.MAX_UPLOAD, "Best Upload:"),
    (MetricKind.MAX_DOWNLOAD, "Best Download:"),
    (MetricKind.MIN_LATENCY, "Best Ping:"),
    (MetricKind.MIN_HOPS, "Min hops:"),
)


def _score_value(kind: MetricKind, value: float) -> str:
    # Same precision the tie comparison uses.
    if kind is MetricKind.MIN_LATENCY:
        return f"{value:.3f} ms"
    if kind is MetricKind.MIN_HOPS:
        return str(int(value))
    return fmt_speed(value)


def scorecard_block(scorecard: ScorecardAggregator) -> list[str]:
    """Scorecard lines; empty when there is nothing to compare."""
    if not scorecard.should_render():
        return []
    entries = scorecard.snapshot()
    lines = ["Scorecard", SEP_SMALL]
    for kind, label in _SCORE_ROWS:
        entry = entries.get(kind)
        if entry is None:
            continue
        value = _score_value(kind, entry.best_value)
        for interface, address in entry.ties:
            row = f"{label:<{SCORE_LABEL_W}} {value:<{SCORE_VALUE_W}} | {interface} => "
            note = scorecard.note_for(address)
            row += f"{address:<{SCORE_ADDRESS_W}}  {note}" if note else address
            lines.append(row.rstrip())
    lines.append(SEP_SMALL)
    return lines


class ConsoleReport:
    """Writes report blocks to a text stream (stdout by default).

    Blocks are flushed as soon as they are written so results appear while
    the next target is still being measured.
    """

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream if stream is not None else sys.stdout

    def write(self, lines: Iterable[str]) -> None:
        """Write each line followed by a newline."""
        for line in lines:
            self.stream.write(line + "\n")
        self.stream.flush()
