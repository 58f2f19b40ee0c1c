"""Batch scheduler over targets x egress interfaces."""

import logging

from ifspeedtest.errors import InvalidTarget
from ifspeedtest.orchestrator import RunOrchestrator
from ifspeedtest.report import ConsoleReport, failed_target_block, run_block, scorecard_block
from ifspeedtest.scorecard import ScorecardAggregator
from ifspeedtest.targets import TargetResolver

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Runs every (target, interface) pair sequentially.

    Key features:
    - Targets are resolved once; an unresolvable target gets a failure block
      and the batch moves on (or stops, for a single-target run)
    - Each RunResult is folded into the scorecard and reported right away,
      then dropped
    - The scorecard is rendered after the last pair
    """

    def __init__(
        self,
        orchestrator: RunOrchestrator,
        resolver: TargetResolver,
        scorecard: ScorecardAggregator,
        report: ConsoleReport,
        interfaces: list[str] | None = None,
    ):
        """Initialize batch scheduler.

        Args:
            orchestrator: measures one pair
            resolver: turns raw target input into Targets
            scorecard: aggregator receiving every finished run
            report: output sink for result blocks
            interfaces: egress interfaces; empty means the default route only
        """
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.scorecard = scorecard
        self.report = report
        self.interfaces: list[str | None] = list(interfaces or []) or [None]

    @property
    def multi_egress(self) -> bool:
        return len(self.interfaces) > 1

    def run(self, entries: list[tuple[str, str]], fail_fast: bool = False) -> int:
        """Measure every ``(raw target, note)`` entry on every interface.

        Args:
            entries: targets in input order
            fail_fast: re-raise InvalidTarget instead of skipping the target

        Returns:
            Number of runs folded into the scorecard

        Raises:
            InvalidTarget: only when ``fail_fast`` is set
            ToolNotFound: if a probe binary is missing
        """
        logger.info(
            "Batch started: %d target(s), %d interface(s)", len(entries), len(self.interfaces)
        )
        for raw, note in entries:
            try:
                target = self.resolver.resolve(raw, note)
            except InvalidTarget as exc:
                logger.info("Skipping target %s: %s", raw, exc)
                for interface in self.interfaces:
                    self.report.write(
                        failed_target_block(raw, note, interface, f"Error: {exc}", self.multi_egress)
                    )
                if fail_fast:
                    raise
                continue

            for interface in self.interfaces:
                result = self.orchestrator.run(target, interface)
                self.scorecard.fold(result)
                self.report.write(run_block(result, self.orchestrator.settings, self.multi_egress))

        self.report.write(scorecard_block(self.scorecard))
        logger.info("Batch finished: %d run(s) folded", self.scorecard.run_count)
        return self.scorecard.run_count
