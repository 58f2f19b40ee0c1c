"""Normalization of raw mtr and iperf3 output into typed records.

Everything here is a pure function over text so it can be tested without
spawning probes. mtr output comes in two shapes: an XML document (``mtr -x``)
and the plain report table (``mtr -r``), with or without a StDev column. The
shape is detected once per run (detect_schema) and handed to a
schema-specific extractor.
"""

import logging
import math
import platform
import re
import xml.etree.ElementTree as ET
from enum import Enum

from ifspeedtest.errors import FailureKind, ParseFailure
from ifspeedtest.models import Direction, LatencyMetrics, ProbeFailure

logger = logging.getLogger(__name__)


class ReportSchema(Enum):
    """Shape of an mtr report."""

    XML = "xml"
    TABLE = "table"
    TABLE_WITH_STDEV = "table_stdev"


_HOP_ROW = re.compile(r"^\s*\d+\.")
_STDEV_COLUMN = re.compile(r"\bstd?dev\b", re.IGNORECASE)
_XML_START = re.compile(r"<\?xml|<\s*mtr[\s>]", re.IGNORECASE)
# mtr writes tags like <Loss%>, which is not well-formed XML.
_XML_PERCENT_TAG = re.compile(r"(</?)([A-Za-z_][\w.-]*)%>")

PERMISSION_PATTERN = re.compile(
    r"permission denied|operation not permitted|not permitted|must be root"
    r"|raw socket|cannot open raw socket|failure to open raw socket|cap_net_raw"
    r"|setcap|cannot create socket|can.t create socket",
    re.IGNORECASE,
)
_MTR_PACKET_FAILURE = "failure to start mtr-packet"

_LATENCY_FAILURES = (
    ("unknown host", FailureKind.INVALID_TARGET, "unknown host"),
    ("name or service not known", FailureKind.INVALID_TARGET, "name/service not known"),
    ("nodename nor servname provided", FailureKind.INVALID_TARGET, "DNS failure"),
    ("temporary failure in name resolution", FailureKind.INVALID_TARGET, "temporary DNS failure"),
    ("no route to host", FailureKind.PROBE_UNREACHABLE, "no route to host"),
    ("network is unreachable", FailureKind.PROBE_UNREACHABLE, "network is unreachable"),
    ("host is down", FailureKind.PROBE_UNREACHABLE, "host is down"),
)
_LATENCY_ERROR_LINE = re.compile(
    r"(^mtr:|\berror\b|\bfailed\b|cannot|permission denied|operation not permitted)",
    re.IGNORECASE,
)

_THROUGHPUT_FAILURES = (
    ("unable to connect to server", "unable to connect"),
    ("connection refused", "connection refused"),
    ("no route to host", "no route to host"),
    ("network is unreachable", "network is unreachable"),
)
_THROUGHPUT_ERROR_LINE = re.compile(r"iperf3: error|\berror\b|\bfailed\b", re.IGNORECASE)
_MBITS_VALUE = re.compile(r"(\S+)\s+Mbits/sec")


def _number(token: str | None) -> float | None:
    """Parse a numeric token, tolerating a trailing '%'. Non-finite -> None."""
    if token is None:
        return None
    token = token.strip().rstrip("%").strip()
    if not token:
        return None
    try:
        value = float(token)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _count(token: str | None) -> int:
    value = _number(token)
    if value is None or value < 0 or value != int(value):
        return 0
    return int(value)


def _ms(value: float | None) -> float | None:
    return None if value is None else round(value, 3)


def _jitter(stdev: float | None, best: float | None, worst: float | None) -> float | None:
    """Prefer the reported StDev; otherwise estimate as |worst - best|."""
    if stdev is not None:
        return _ms(stdev)
    if best is not None and worst is not None:
        return _ms(abs(worst - best))
    return None


def detect_schema(text: str) -> ReportSchema:
    """Detect the mtr report shape once for a probe run."""
    if text and _XML_START.search(text):
        return ReportSchema.XML
    for line in (text or "").splitlines():
        if "loss%" in line.lower() and _STDEV_COLUMN.search(line):
            return ReportSchema.TABLE_WITH_STDEV
    return ReportSchema.TABLE


def parse_mtr_table(text: str, target: str, schema: ReportSchema) -> LatencyMetrics:
    """Extract metrics from an ``mtr -r`` table.

    Columns are ``Host Loss% Snt Last Avg Best Wrst [StDev]``. The row whose
    host equals ``target`` is used; when none matches, the last hop row is
    used and the record is marked as not having reached the destination.

    Raises:
        ParseFailure: if the text contains no hop rows
    """
    rows = [line.split() for line in text.splitlines() if _HOP_ROW.match(line)]
    if not rows:
        raise ParseFailure("no hop rows in mtr report")

    matched = next((cols for cols in rows if _row_matches(cols, target)), None)
    row = matched if matched is not None else rows[-1]

    # Host may be followed by "(address)" when mtr resolves names; the loss
    # column is the first token after the host that ends with '%'.
    loss_at = next((i for i in range(2, len(row)) if row[i].endswith("%")), 2)
    cols = row[loss_at:] + [None] * 7

    loss = _number(cols[0])
    sent = _count(cols[1])
    avg = _number(cols[3])
    best = _number(cols[4])
    worst = _number(cols[5])
    stdev = _number(cols[6]) if schema is ReportSchema.TABLE_WITH_STDEV else None

    return LatencyMetrics(
        best_ms=_ms(best),
        avg_ms=_ms(avg),
        worst_ms=_ms(worst),
        jitter_ms=_jitter(stdev, best, worst),
        hops=len(rows),
        loss_pct=_ms(loss),
        sent=sent,
        destination_reached=matched is not None,
    )


def _row_matches(cols: list[str], target: str) -> bool:
    return any(tok == target or tok == f"({target})" for tok in cols[1:3])


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def _attribute(element: ET.Element, *names: str) -> str | None:
    wanted = {n.lower() for n in names}
    for key, value in element.attrib.items():
        if _local_name(key) in wanted:
            return value
    return None


def _metric(element: ET.Element, *names: str) -> str | None:
    """Read a hop metric from a child element or, failing that, an attribute."""
    wanted = {n.lower() for n in names}
    for child in element:
        if _local_name(child.tag) in wanted and child.text and child.text.strip():
            return child.text.strip()
    return _attribute(element, *names)


_XML_METRICS = ("best", "avg", "wrst", "loss", "stdev", "stddev")


def parse_mtr_xml(text: str, target: str) -> LatencyMetrics:
    """Extract metrics from ``mtr -x`` output.

    Hop nodes are HUB/HOST elements; older builds only mark hops by an ip
    attribute next to metric children or attributes. Probes sent are read
    from the root TESTS/CNT attribute, falling back to the hop's Snt.

    Raises:
        ParseFailure: if the document is malformed or has no hop nodes
    """
    start = text.find("<")
    if start < 0:
        raise ParseFailure("no XML document in mtr output")
    document = _XML_PERCENT_TAG.sub(r"\1\2>", text[start:])
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise ParseFailure(f"malformed mtr XML: {exc}") from exc

    hubs = [el for el in root.iter() if _local_name(el.tag) in ("hub", "host")]
    if not hubs:
        hubs = [
            el
            for el in root.iter()
            if _attribute(el, "ip") is not None and _metric(el, *_XML_METRICS) is not None
        ]
    if not hubs:
        raise ParseFailure("no hop nodes in mtr XML")

    matched = next((el for el in hubs if _attribute(el, "host", "ip") == target), None)
    hub = matched if matched is not None else hubs[-1]

    sent = 0
    for el in root.iter():
        if _local_name(el.tag) in ("mtr", "mtrdata"):
            sent = _count(_attribute(el, "tests", "cnt"))
            if sent:
                break
    if not sent:
        sent = _count(_metric(hub, "snt"))

    best = _number(_metric(hub, "best"))
    avg = _number(_metric(hub, "avg"))
    worst = _number(_metric(hub, "wrst"))
    stdev = _number(_metric(hub, "stdev", "stddev"))

    return LatencyMetrics(
        best_ms=_ms(best),
        avg_ms=_ms(avg),
        worst_ms=_ms(worst),
        jitter_ms=_jitter(stdev, best, worst),
        hops=len(hubs),
        loss_pct=_ms(_number(_metric(hub, "loss"))),
        sent=sent,
        destination_reached=matched is not None,
    )


def is_permission_failure(text: str, system: str | None = None) -> bool:
    """Return True if probe output shows a privilege (raw socket) failure."""
    if not text:
        return False
    if PERMISSION_PATTERN.search(text):
        return True
    system = system or platform.system()
    # Homebrew mtr on macOS fails this way when not run as root.
    return system == "Darwin" and _MTR_PACKET_FAILURE in text.lower()


def classify_latency_failure(text: str, system: str | None = None) -> ProbeFailure | None:
    """Classify a latency probe failure from its raw output.

    Independent of the numeric parse, so a reason is available even when
    every metric is unavailable.
    """
    if not text or not text.strip():
        return None
    system = system or platform.system()
    lowered = text.lower()

    if system == "Darwin" and _MTR_PACKET_FAILURE in lowered:
        return ProbeFailure(
            FailureKind.PRIVILEGE_REQUIRED,
            "failed to start mtr-packet (macOS). Re-run with --sudo or run via sudo.",
        )
    if PERMISSION_PATTERN.search(text):
        return ProbeFailure(
            FailureKind.PRIVILEGE_REQUIRED, "needs elevated privileges for ICMP (raw socket)"
        )
    for needle, kind, reason in _LATENCY_FAILURES:
        if needle in lowered:
            return ProbeFailure(kind, reason)

    for line in text.splitlines():
        line = line.strip()
        if line and _LATENCY_ERROR_LINE.search(line):
            return ProbeFailure(FailureKind.PARSE_FAILURE, " ".join(line.split()))
    return None


def parse_latency(text: str, target: str, system: str | None = None) -> LatencyMetrics:
    """Normalize mtr output for ``target`` into a LatencyMetrics record.

    Never raises: unexpected shapes produce an unavailable record carrying a
    generic reason. A classified failure is attached whenever the RTT
    metrics are unavailable.
    """
    text = text or ""
    schema = detect_schema(text)
    try:
        if schema is ReportSchema.XML:
            metrics = parse_mtr_xml(text, target)
        else:
            metrics = parse_mtr_table(text, target, schema)
    except ParseFailure as exc:
        logger.debug("mtr output not parseable: target=%s, error=%s", target, exc)
        metrics = LatencyMetrics.unavailable()

    if metrics.is_valid:
        return metrics

    failure = classify_latency_failure(text, system)
    if failure is None:
        failure = _explain_invalid(text, metrics)
    metrics.failure = failure
    return metrics


def _explain_invalid(text: str, metrics: LatencyMetrics) -> ProbeFailure:
    if not text.strip():
        return ProbeFailure(FailureKind.PARSE_FAILURE, "no output")
    if metrics.loss_pct is not None and metrics.loss_pct >= 100:
        return ProbeFailure(FailureKind.PROBE_UNREACHABLE, "destination unreachable (100% loss)")
    if metrics.hops and not metrics.destination_reached:
        return ProbeFailure(
            FailureKind.PROBE_UNREACHABLE,
            f"destination not reached (path ended after {metrics.hops} hops)",
        )
    return ProbeFailure(FailureKind.PARSE_FAILURE, "unparseable output (see logs)")


def parse_throughput_mbps(text: str, direction: Direction) -> float | None:
    """Average throughput in Mbit/s for the role matching ``direction``.

    Uses the last ``[SUM]`` line for the role (parallel streams); single
    stream output has no aggregate, so the last role line is used instead.
    """
    if not text:
        return None
    role = re.compile(rf"\s{direction.role}(\s|$)")
    aggregate = None
    single = None
    for line in text.splitlines():
        if "Mbits/sec" not in line or not role.search(line):
            continue
        values = _MBITS_VALUE.findall(line)
        if not values:
            continue
        value = _number(values[-1])
        if "[SUM]" in line:
            aggregate = value
        single = value
    value = aggregate if aggregate is not None else single
    if value is None or value <= 0:
        return None
    return value


def classify_throughput_failure(text: str) -> ProbeFailure | None:
    """Classify an iperf3 failure from its output; None when no failure shows."""
    if not text or not text.strip():
        return ProbeFailure(FailureKind.CONNECTION_FAILURE, "unable to connect")
    lowered = text.lower()
    for needle, reason in _THROUGHPUT_FAILURES:
        if needle in lowered:
            return ProbeFailure(FailureKind.CONNECTION_FAILURE, reason)
    for line in text.splitlines():
        line = line.strip()
        if line and _THROUGHPUT_ERROR_LINE.search(line):
            return ProbeFailure(FailureKind.CONNECTION_FAILURE, " ".join(line.split()))
    return None
