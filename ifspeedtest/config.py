"""Run configuration for ifspeedtest.

Defaults can be overridden through environment variables (the same names the
tool has always used, e.g. ``MTR_COUNT`` or ``IPERF3_TIME``) and then by CLI
flags. validate() runs before any probing so bad values fail fast.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from ifspeedtest.ports import expand_port_spec
from ifspeedtest.privilege import SudoMode

logger = logging.getLogger(__name__)

MTR_PROBES = ("icmp", "udp", "tcp")
MTR_OUTPUT_MODES = ("report", "xml")
DEFAULT_TCP_PROBE_PORT = 443

_FAMILY_ALIASES = {
    "": "auto",
    "auto": "auto",
    "4": "4",
    "ipv4": "4",
    "v4": "4",
    "6": "6",
    "ipv6": "6",
    "v6": "6",
}


def normalize_family(value: str | None) -> str:
    """Map an address family preference to 'auto', '4' or '6'.

    Raises:
        ValueError: for an unknown family
    """
    key = (value or "").strip().lower()
    if key not in _FAMILY_ALIASES:
        raise ValueError(f"ADDR_FAMILY must be auto, 4 or 6 (got: {value})")
    return _FAMILY_ALIASES[key]


def _int_env(environ: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got: {raw})") from None


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got: {raw})") from None


@dataclass
class Settings:
    """Everything that shapes probe invocations for one program run."""

    run_latency: bool = True
    run_throughput: bool = True

    mtr_count: int = 10
    mtr_probe: str = "icmp"
    mtr_interval: float = 1.0
    mtr_load_count: int | None = None  # None derives it from iperf_time
    mtr_port: int | None = None
    mtr_output_mode: str = "report"

    iperf_port_spec: str = ""
    iperf_time: int = 10
    iperf_parallel: int = 10
    connect_timeout_ms: int = 5000  # 0 disables --connect-timeout

    address_family: str = "auto"
    sudo_mode: SudoMode = SudoMode.AUTO
    interfaces: list[str] = field(default_factory=list)
    log_dir: Path | None = None
    collector: str = "real"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ValueError: if a numeric variable is not a number
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            mtr_count=_int_env(env, "MTR_COUNT", defaults.mtr_count),
            mtr_probe=env.get("MTR_PROBE", defaults.mtr_probe).strip().lower() or "icmp",
            mtr_interval=_float_env(env, "MTR_INTERVAL", defaults.mtr_interval),
            mtr_load_count=_int_env(env, "MTR_LOAD_COUNT", None),
            mtr_port=_int_env(env, "MTR_PORT", None),
            mtr_output_mode=env.get("MTR_OUTPUT_MODE", "report").strip().lower() or "report",
            iperf_port_spec=env.get("IPERF3_PORTS", "").strip(),
            iperf_time=_int_env(env, "IPERF3_TIME", defaults.iperf_time),
            iperf_parallel=_int_env(env, "IPERF3_PARALLEL", defaults.iperf_parallel),
            connect_timeout_ms=_int_env(env, "CONNECT_TIMEOUT", defaults.connect_timeout_ms),
            address_family=normalize_family(env.get("ADDR_FAMILY", "auto")),
            collector=env.get("IFSPEEDTEST_COLLECTOR", "real").strip().lower() or "real",
        )

    def add_interfaces(self, raw: str) -> None:
        """Append interfaces from a comma/space separated list, skipping duplicates."""
        for name in raw.replace(",", " ").split():
            if name not in self.interfaces:
                self.interfaces.append(name)

    @property
    def iperf_ports(self) -> list[int]:
        """Expanded candidate ports; empty means the iperf3 default."""
        return expand_port_spec(self.iperf_port_spec)

    @property
    def effective_mtr_port(self) -> int | None:
        """Destination port for tcp/udp probes (tcp defaults to 443)."""
        if self.mtr_probe == "icmp":
            return None
        if self.mtr_port is None and self.mtr_probe == "tcp":
            return DEFAULT_TCP_PROBE_PORT
        return self.mtr_port

    @property
    def load_probe_count(self) -> int:
        """Latency probe cycles to run while a throughput test is in flight."""
        if self.mtr_load_count is not None:
            return self.mtr_load_count
        return max(1, math.floor(self.iperf_time / self.mtr_interval))

    def validate(self) -> None:
        """Reject invalid settings before any probing starts.

        Raises:
            ValueError: describing the first invalid setting
        """
        if not self.run_latency and not self.run_throughput:
            raise ValueError("at least one of mtr or iperf3 must be enabled")

        if self.run_throughput:
            if self.iperf_time < 1:
                raise ValueError(f"IPERF3_TIME must be >= 1 (got: {self.iperf_time})")
            if self.iperf_parallel < 1:
                raise ValueError(f"IPERF3_PARALLEL must be >= 1 (got: {self.iperf_parallel})")
            if self.connect_timeout_ms < 0:
                raise ValueError(f"CONNECT_TIMEOUT must be >= 0 (got: {self.connect_timeout_ms})")
            # Raises on bad specs.
            self.iperf_ports

        if self.run_latency:
            if self.mtr_count < 1:
                raise ValueError(f"mtr count must be >= 1 (got: {self.mtr_count})")
            if self.mtr_probe not in MTR_PROBES:
                raise ValueError(f"invalid mtr probe '{self.mtr_probe}' (use icmp|udp|tcp)")
            if not math.isfinite(self.mtr_interval) or self.mtr_interval <= 0:
                raise ValueError(f"invalid mtr interval '{self.mtr_interval}' (use a number > 0)")
            if self.mtr_output_mode not in MTR_OUTPUT_MODES:
                raise ValueError(f"MTR_OUTPUT_MODE must be report or xml (got: {self.mtr_output_mode})")
            if self.mtr_port is not None and not 1 <= self.mtr_port <= 65535:
                raise ValueError(f"mtr port out of range (1-65535): {self.mtr_port}")
            if self.run_throughput and self.mtr_load_count is not None and self.mtr_load_count < 1:
                raise ValueError(f"MTR_LOAD_COUNT must be >= 1 (got: {self.mtr_load_count})")

        normalize_family(self.address_family)
        logger.debug("Settings validated: %s", self)
