"""Ingestion cycle runner and service entry point."""
import argparse
import logging
import signal
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .config import IngestConfig, load_config
from .errors import (
    ConfigError, FetchError, ListingError, ParseRejectedError, PersistenceError,
    UntrustedOriginError,
)
from .fetcher import Fetcher, fingerprint
from .metrics import record_cycle, start_metrics_server
from .models import ProcessingStatus
from .parser import ParseOutcome, parse
from .repository import COMMITTED_STATUSES, FileStats, Repository
from .scheduler import Scheduler
from .source import FileDescriptor, SourceLister, matches, matches_station

logger = logging.getLogger(__name__)


class FileOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    REJECTED = "rejected"  # empty, or over the parse failure threshold


@dataclass
class FileResult:
    outcome: FileOutcome
    stats: Optional[FileStats] = None
    parse_failures: int = 0


@dataclass
class CycleSummary:
    """Per-cycle totals. ``attempted`` counts files that reached download."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    rejected: int = 0
    listing_errors: int = 0
    parse_failures: int = 0
    observations_inserted: int = 0
    observations_updated: int = 0
    stopped: bool = False

    def add(self, result: FileResult):
        if result.outcome is FileOutcome.SUCCEEDED:
            self.succeeded += 1
        elif result.outcome is FileOutcome.FAILED:
            self.failed += 1
        elif result.outcome is FileOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.rejected += 1

        self.parse_failures += result.parse_failures
        if result.stats is not None:
            self.observations_inserted += result.stats.observations_inserted
            self.observations_updated += result.stats.observations_updated


class IngestionOrchestrator:
    """Orchestrates one pass over the remote archive into the database."""

    def __init__(
        self,
        config: IngestConfig,
        repository: Optional[Repository] = None,
        fetcher: Optional[Fetcher] = None,
    ):
        """Initialize orchestrator.

        Args:
            config: Validated configuration
            repository: Repository to write to (built from config if omitted)
            fetcher: HTTP fetcher (built from config if omitted)
        """
        self.config = config
        self.fetcher = fetcher or Fetcher(config.source)
        self.lister = SourceLister(self.fetcher, config.source.base_url)
        self.repository = repository or Repository.from_config(config.database)

        # URLs refused by origin policy; their outcome cannot change while running
        self.rejected_urls: Set[str] = set()

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> CycleSummary:
        """Run one ingestion cycle.

        Args:
            stop_event: Checked before each file; when set the cycle ends
                after the file in progress

        Returns:
            CycleSummary for this cycle
        """
        stop_event = stop_event or threading.Event()
        summary = CycleSummary()
        started = time.monotonic()
        workers = self.config.source.download_workers
        committed_by_year: Dict[int, Dict[str, dict]] = {}

        logger.info(f"Starting ingestion cycle (years={self.config.source.years})")

        def on_listing_error(year: int, error: ListingError):
            summary.listing_errors += 1
            logger.error(f"Skipping year {year}: {error}")

        descriptors = self.lister.enumerate(self.config.source.years, on_error=on_listing_error)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="download") as executor:
            window: List[FileDescriptor] = []
            for descriptor in descriptors:
                if stop_event.is_set():
                    break
                if not matches(descriptor, self.config.locations):
                    continue
                if self._should_skip(descriptor, committed_by_year):
                    summary.skipped += 1
                    continue

                window.append(descriptor)
                if len(window) >= workers:
                    self._process_window(executor, window, summary, stop_event)
                    window = []

            if window and not stop_event.is_set():
                self._process_window(executor, window, summary, stop_event)

        summary.stopped = stop_event.is_set()
        duration = time.monotonic() - started
        record_cycle(summary, duration)

        logger.info(
            f"Cycle finished in {duration:.1f}s: attempted={summary.attempted}, "
            f"succeeded={summary.succeeded}, failed={summary.failed}, "
            f"skipped={summary.skipped}, rejected={summary.rejected}, "
            f"inserted={summary.observations_inserted}, updated={summary.observations_updated}"
            + (" (stopped early)" if summary.stopped else "")
        )
        return summary

    def _should_skip(
        self,
        descriptor: FileDescriptor,
        committed_by_year: Dict[int, Dict[str, dict]],
    ) -> bool:
        """Whether a listed file needs no download this cycle."""
        if descriptor.url in self.rejected_urls:
            logger.debug(f"Skipping {descriptor.filename}: refused by origin policy earlier")
            return True

        if descriptor.year not in committed_by_year:
            committed_by_year[descriptor.year] = self.repository.committed_files(descriptor.year)

        entry = committed_by_year[descriptor.year].get(descriptor.filename)
        if entry is None:
            return False

        if descriptor.last_modified is not None:
            stored = entry["last_modified"]
            if stored is None or descriptor.last_modified > stored:
                logger.info(f"{descriptor.filename} changed upstream since last import")
                return False
            return True

        # Current-year files grow every hour
        return descriptor.year != datetime.now(timezone.utc).year

    def _process_window(
        self,
        executor: ThreadPoolExecutor,
        window: List[FileDescriptor],
        summary: CycleSummary,
        stop_event: threading.Event,
    ):
        """Download a window of files concurrently, then process them in order."""
        delay = self.config.source.request_delay_seconds
        downloads: List[Tuple[FileDescriptor, Future]] = []
        for idx, descriptor in enumerate(window):
            if idx and delay > 0 and stop_event.wait(delay):
                break
            downloads.append((descriptor, executor.submit(self.fetcher.download, descriptor.url)))

        for descriptor, future in downloads:
            if stop_event.is_set():
                future.cancel()
                continue

            summary.attempted += 1
            try:
                content = future.result()
            except UntrustedOriginError as e:
                self.rejected_urls.add(descriptor.url)
                logger.error(f"SECURITY: refused to fetch {descriptor.filename}: {e}")
                summary.add(FileResult(FileOutcome.FAILED))
                continue
            except FetchError as e:
                logger.warning(f"Download of {descriptor.filename} failed, retrying next cycle: {e}")
                summary.add(FileResult(FileOutcome.FAILED))
                continue

            summary.add(self.process_file(descriptor, content))

    def process_file(self, descriptor: FileDescriptor, content: bytes) -> FileResult:
        """Parse and persist one downloaded file.

        Args:
            descriptor: File being processed
            content: Raw downloaded bytes

        Returns:
            FileResult describing what happened
        """
        file_hash = fingerprint(content)
        previous = self.repository.get_processed_file(descriptor.filename)
        previous_status = previous["processing_status"] if previous else None

        if previous_status in COMMITTED_STATUSES and previous["file_hash"] == file_hash:
            if descriptor.last_modified is not None and descriptor.last_modified != previous["last_modified"]:
                self.repository.touch_last_modified(descriptor.filename, descriptor.last_modified)
                logger.info(f"{descriptor.filename} relisted at {descriptor.last_modified} with identical content")
            logger.info(f"{descriptor.filename} unchanged since last import, skipping")
            return FileResult(FileOutcome.SKIPPED)

        result = parse(content.decode("utf-8", errors="replace"), self.config.parser.failure_threshold)
        parse_failures = result.stats.parse_failures

        if not result.accepted:
            if result.outcome is ParseOutcome.EMPTY:
                logger.warning(f"{descriptor.filename} contains no data lines")
            else:
                error = ParseRejectedError(descriptor.filename, result.stats.failure_rate, result.threshold)
                logger.warning(f"Rejected {descriptor.filename}: {error}")
            if previous_status == ProcessingStatus.FAILED.value:
                logger.warning(
                    f"{descriptor.filename} failed again after a failed previous attempt; "
                    f"operator attention may be needed"
                )
            self._record_failure(
                descriptor,
                FileStats(
                    status=ProcessingStatus.FAILED,
                    parse_failures=parse_failures,
                    file_hash=file_hash,
                ),
            )
            return FileResult(FileOutcome.REJECTED, parse_failures=parse_failures)

        records = [
            record for record in result.records
            if matches_station(descriptor, record.station_id, self.config.locations)
        ]
        if not records:
            logger.info(f"No records in {descriptor.filename} match the station filter")
            self._record_failure(
                descriptor,
                FileStats(status=ProcessingStatus.FAILED, parse_failures=parse_failures, file_hash=file_hash),
            )
            return FileResult(FileOutcome.SKIPPED, parse_failures=parse_failures)

        try:
            stats = self.repository.ingest_file(descriptor, records, parse_failures, file_hash)
        except PersistenceError as e:
            logger.error(f"Failed to persist {descriptor.filename}, retrying next cycle: {e}")
            self._record_failure(
                descriptor,
                FileStats(
                    status=ProcessingStatus.FAILED,
                    rows_processed=len(records),
                    parse_failures=parse_failures,
                    file_hash=file_hash,
                ),
            )
            return FileResult(FileOutcome.FAILED, parse_failures=parse_failures)

        return FileResult(FileOutcome.SUCCEEDED, stats=stats, parse_failures=parse_failures)

    def _record_failure(self, descriptor: FileDescriptor, stats: FileStats):
        try:
            self.repository.record_failure(descriptor, stats)
        except SQLAlchemyError as e:
            # Without a ledger row the file is simply retried next cycle
            logger.error(f"Could not record failure for {descriptor.filename}: {e}")

    def close(self):
        """Close all connections."""
        self.fetcher.close()
        self.repository.close()


def main():
    """CLI entry point for the ingestion service."""
    parser = argparse.ArgumentParser(
        description="USCRN hourly observation ingestion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Poll the current year forever using environment configuration
  uscrn-ingest

  # Run a single cycle with a config file
  uscrn-ingest --config config/config.yaml --once
        """
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(2)

    logging.getLogger().setLevel(config.log_level.upper())

    orchestrator = IngestionOrchestrator(config)
    try:
        orchestrator.repository.check_connection()
        orchestrator.repository.init_schema()
    except SQLAlchemyError as e:
        logger.error(f"Database unreachable at {config.database.host}:{config.database.port}: {e}")
        orchestrator.close()
        sys.exit(1)

    if config.metrics_port:
        start_metrics_server(config.metrics_port)

    try:
        if args.once:
            summary = orchestrator.run_cycle()
            sys.exit(0 if summary.failed == 0 else 1)

        scheduler = Scheduler(orchestrator.run_cycle, config.scheduler)

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}")
            scheduler.stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        scheduler.run_forever()
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
