"""Entry point for ifspeedtest."""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from ifspeedtest.collector import LatencyCollector, ThroughputCollector
from ifspeedtest.collector_iperf import IperfCollector
from ifspeedtest.collector_mtr import MtrCollector
from ifspeedtest.config import Settings
from ifspeedtest.errors import InvalidTarget, PrivilegeRequired, ToolNotFound
from ifspeedtest.fake_collector import FakeCollector
from ifspeedtest.interfaces import InterfaceResolver
from ifspeedtest.logging_config import configure_logging
from ifspeedtest.orchestrator import RunOrchestrator
from ifspeedtest.privilege import PrivilegeController, SudoMode
from ifspeedtest.process import ProcessSupervisor
from ifspeedtest.report import ConsoleReport, banner, settings_block
from ifspeedtest.runlog import RunLog
from ifspeedtest.scheduler import BatchScheduler
from ifspeedtest.scorecard import ScorecardAggregator
from ifspeedtest.targets import TargetResolver, parse_targets_file

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ifspeedtest",
        description="Compare link quality (mtr latency + iperf3 throughput) across targets and egress interfaces.",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("-i", "--ip", help="single target (IPv4, IPv6 or domain)")
    source.add_argument("--ips", metavar="FILE", help="file with one target per line ('# note' allowed)")

    family = parser.add_mutually_exclusive_group()
    family.add_argument("--ipv4", action="store_true", help="resolve domains to IPv4 only")
    family.add_argument("--ipv6", action="store_true", help="resolve domains to IPv6 only")

    parser.add_argument(
        "-I", "--interface", action="append", default=[], metavar="IFACE[,IFACE]",
        help="egress interface(s); repeatable",
    )
    parser.add_argument(
        "--mtr", nargs="?", type=int, const=0, default=None, metavar="COUNT",
        help="run mtr (optionally with COUNT idle cycles)",
    )
    parser.add_argument(
        "--iperf3", nargs="?", type=int, const=0, default=None, metavar="TIME",
        help="run iperf3 (optionally for TIME seconds)",
    )
    parser.add_argument("-P", "--parallel", type=int, help="iperf3 parallel streams")
    parser.add_argument("-p", "--port", help="iperf3 port, range or list, e.g. 5201-5205,5300")
    parser.add_argument("--mtr-probe", choices=("icmp", "udp", "tcp"), help="mtr probe transport")
    parser.add_argument("--mtr-port", type=int, help="destination port for tcp/udp probes")
    parser.add_argument("--mtr-interval", type=float, help="seconds between mtr probes")
    parser.add_argument(
        "--log", nargs="?", const=".", default=None, metavar="DIR",
        help="write commands and raw probe output to a log file in DIR",
    )

    sudo = parser.add_mutually_exclusive_group()
    sudo.add_argument("--sudo", action="store_true", help="always run mtr with sudo")
    sudo.add_argument("--no-sudo", action="store_true", help="never escalate privileges")
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Overlay CLI flags on environment-derived settings."""
    if args.mtr is not None or args.iperf3 is not None:
        settings.run_latency = args.mtr is not None
        settings.run_throughput = args.iperf3 is not None
    if args.mtr:
        settings.mtr_count = args.mtr
    if args.iperf3:
        settings.iperf_time = args.iperf3
    if args.parallel is not None:
        settings.iperf_parallel = args.parallel
    if args.port is not None:
        settings.iperf_port_spec = args.port.strip()
    if args.mtr_probe is not None:
        settings.mtr_probe = args.mtr_probe
    if args.mtr_port is not None:
        settings.mtr_port = args.mtr_port
    if args.mtr_interval is not None:
        settings.mtr_interval = args.mtr_interval
    if args.ipv4:
        settings.address_family = "4"
    elif args.ipv6:
        settings.address_family = "6"
    if args.sudo:
        settings.sudo_mode = SudoMode.FORCE
    elif args.no_sudo:
        settings.sudo_mode = SudoMode.NEVER
    for raw in args.interface:
        settings.add_interfaces(raw)
    if args.log is not None:
        settings.log_dir = Path(args.log)
    return settings


def build_collectors(
    settings: Settings,
    supervisor: ProcessSupervisor,
    privilege: PrivilegeController,
    run_log: RunLog,
) -> tuple[LatencyCollector, ThroughputCollector]:
    """Real probe collectors, or the simulated one for IFSPEEDTEST_COLLECTOR=fake."""
    if settings.collector == "fake":
        logger.info("Fake collector explicitly requested via environment variable")
        fake = FakeCollector(settings=settings)
        return fake, fake
    return (
        MtrCollector(supervisor, settings, privilege, run_log),
        IperfCollector(supervisor, settings),
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the ifspeedtest CLI."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = apply_args(Settings.from_env(), args)
        settings.validate()
    except ValueError as e:
        parser.error(str(e))

    if args.ip is not None:
        entries = [(args.ip, "")]
        ips_file = None
    else:
        ips_file = Path(args.ips)
        try:
            entries = parse_targets_file(ips_file)
        except OSError as e:
            logger.debug("Cannot read targets file: %s", e)
            print(f"Error: IPs file '{ips_file}' not found.", file=sys.stderr)
            return EXIT_FAILURE

    run_log = RunLog.create(settings.log_dir) if settings.log_dir is not None else RunLog()
    report = ConsoleReport()
    privilege = PrivilegeController(settings.sudo_mode, probe_name="mtr")

    with ProcessSupervisor() as supervisor:
        supervisor.install_signal_handlers()
        try:
            if settings.run_latency and settings.collector != "fake":
                privilege.prepare()

            latency, throughput = build_collectors(settings, supervisor, privilege, run_log)
            orchestrator = RunOrchestrator(
                settings, latency, throughput, run_log, InterfaceResolver()
            )
            scheduler = BatchScheduler(
                orchestrator,
                TargetResolver(settings.address_family),
                ScorecardAggregator(),
                report,
                settings.interfaces,
            )

            report.write(["", banner("Started", datetime.now()), ""])
            report.write(settings_block(settings, ips_file, run_log.path) + [""])
            scheduler.run(entries, fail_fast=args.ip is not None)
        except InvalidTarget:
            return EXIT_FAILURE
        except (ToolNotFound, PrivilegeRequired) as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        finally:
            privilege.stop()

    report.write(["", banner("Ended", datetime.now()), ""])
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
