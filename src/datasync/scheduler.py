import logging
import time
from collections.abc import Callable
from datetime import datetime

from core.settings import MIN_SCAN_SLACK_SECONDS
from datasync.alerting import Alerter
from datasync.datehour import Chunking, chunk_end, chunk_start, format_date_hour
from datasync.orchestrator import LoadOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Re-runs the orchestrator every `interval_seconds` over a sliding window
    of `lookback_units` chunks back from the current one.

    Scans start on a fixed cadence: the sleep after a pass is whatever is
    left of the interval, not the full interval.
    """

    def __init__(
        self,
        orchestrator: LoadOrchestrator,
        *,
        alerter: Alerter | None = None,
        now: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.alerter = alerter or orchestrator.alerter
        self.now = now or orchestrator.clock
        self.monotonic = monotonic
        self.sleep = sleep

    def run(
        self,
        interval_seconds: float,
        lookback_units: int,
        chunking: Chunking,
        replace_all_with_latest: bool = False,
        max_iterations: int | None = None,
    ) -> int:
        """Returns the number of passes made. interval_seconds <= 0 makes a single pass."""
        logger.info(
            "Scan and import new data files every %s s with a lookback of %s units, chunking=%s",
            interval_seconds, lookback_units, chunking.value,
        )

        passes = 0
        while True:
            started = self.monotonic()
            next_start = started + interval_seconds

            now = self.now()
            start = chunk_start(now, lookback_units, chunking)
            end = chunk_end(now, chunking)

            if replace_all_with_latest:
                self.orchestrator.replace_all_with_latest_with_retry(start, end)
            else:
                self.orchestrator.load_with_retry(start, end, chunking)

            passes += 1
            logger.info(
                "Scan of %s - %s done (%.1f s)",
                format_date_hour(start), format_date_hour(end), self.monotonic() - started,
            )

            if interval_seconds <= 0 or (max_iterations is not None and passes >= max_iterations):
                return passes

            remaining = next_start - self.monotonic()
            if remaining < MIN_SCAN_SLACK_SECONDS:
                self.alerter.alert(
                    f"Scan took too long: {remaining:.0f} s left of the {interval_seconds} s scan interval"
                )

            if remaining > 0:
                logger.info("Wait %.0f s for next scan", remaining)
                self.sleep(remaining)
