"""Fixed-interval, single-flight cycle scheduler."""
import logging
import threading
import time
from enum import Enum
from typing import Callable

from .config import SchedulerConfig
from .metrics import TICKS_SKIPPED

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class Scheduler:
    """Runs one ingestion cycle immediately, then one per interval.

    At most one cycle runs at a time. A tick that finds a cycle in progress
    is skipped rather than queued, and ticks that fall inside a long cycle
    are dropped, so the next cycle starts on the following grid point.
    """

    def __init__(
        self,
        run_cycle: Callable[[threading.Event], object],
        config: SchedulerConfig,
    ):
        """Initialize scheduler.

        Args:
            run_cycle: Callable running one cycle; receives the stop event
            config: Interval and initial delay
        """
        self.run_cycle = run_cycle
        self.interval_seconds = config.interval_minutes * 60
        self.initial_delay_seconds = config.initial_delay_seconds

        self.state = SchedulerState.IDLE
        self.cycles_run = 0
        self.skipped_ticks = 0

        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self):
        """Request shutdown; an in-flight file still finishes its transaction."""
        if not self._stop_event.is_set():
            logger.info("Stop requested, finishing current file")
        self._stop_event.set()

    def _skip(self, count: int = 1):
        self.skipped_ticks += count
        TICKS_SKIPPED.inc(count)

    def tick(self) -> bool:
        """Run a cycle unless one is already running.

        Returns:
            True if a cycle ran, False if the tick was skipped
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous cycle still running, skipping tick")
            self._skip()
            return False

        try:
            self.state = SchedulerState.RUNNING
            self.run_cycle(self._stop_event)
        except Exception as e:
            # The next tick retries; per-file state lives in the ledger
            logger.error(f"Ingestion cycle failed: {e}", exc_info=True)
        finally:
            self.cycles_run += 1
            self.state = SchedulerState.IDLE
            self._lock.release()
        return True

    def run_forever(self):
        """Loop until ``stop()`` is called."""
        if self.initial_delay_seconds > 0:
            logger.info(f"Waiting {self.initial_delay_seconds}s before first cycle")
            if self._stop_event.wait(self.initial_delay_seconds):
                logger.info("Scheduler stopped before first cycle")
                return

        logger.info(f"Scheduler started, interval {self.interval_seconds:.0f}s")
        next_run = time.monotonic()

        while not self._stop_event.is_set():
            self.tick()

            next_run += self.interval_seconds
            now = time.monotonic()
            if now >= next_run:
                missed = int((now - next_run) // self.interval_seconds) + 1
                logger.warning(f"Cycle overran the interval, skipping {missed} tick(s)")
                self._skip(missed)
                next_run += missed * self.interval_seconds

            if self._stop_event.wait(next_run - now):
                break

        logger.info(f"Scheduler stopped after {self.cycles_run} cycle(s)")
