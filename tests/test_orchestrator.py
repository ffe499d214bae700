"""Cycle runner tests against a fake archive and an in-memory database."""
import logging
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_file
from uscrn_ingest.config import IngestConfig
from uscrn_ingest.errors import TransportError, UntrustedOriginError
from uscrn_ingest.models import Observation, ProcessedFile
from uscrn_ingest.orchestrator import CycleSummary, FileOutcome, FileResult, IngestionOrchestrator

ASHEVILLE = "CRNH0203-2024-NC_Asheville_8_SSW.txt"
BODEGA = "CRNH0203-2024-CA_Bodega_6_WSW.txt"


class FakeArchive:
    """Serves a year listing and file contents keyed by filename."""

    def __init__(self, files, modified=None):
        self.files = dict(files)
        self.modified = dict(modified or {})
        self.downloads = []

    def fetch_text(self, url):
        rows = []
        for name in self.files:
            stamp = self.modified.get(name)
            suffix = f"   {stamp:%Y-%m-%d %H:%M}  1.2M" if stamp else ""
            rows.append(f'<a href="{name}">{name}</a>{suffix}')
        return "<html><pre>\n" + "\n".join(rows) + "\n</pre></html>"

    def download(self, url):
        name = url.rsplit("/", 1)[-1]
        self.downloads.append(name)
        content = self.files[name]
        if isinstance(content, Exception):
            raise content
        return content.encode()

    def close(self):
        pass


def count(repository, model):
    with repository.transaction() as session:
        return session.query(model).count()


def status_of(repository, filename):
    entry = repository.get_processed_file(filename)
    return entry["processing_status"] if entry else None


@pytest.fixture
def archive():
    return FakeArchive({
        ASHEVILLE: make_file(good=24, station_id=53104),
        BODEGA: make_file(good=24, station_id=93245),
    })


@pytest.fixture
def orchestrator(config, repository, archive):
    return IngestionOrchestrator(config, repository=repository, fetcher=archive)


class TestRunCycle:
    """Test complete cycles."""

    def test_first_cycle_ingests_everything(self, orchestrator, repository):
        summary = orchestrator.run_cycle()

        assert summary.attempted == 2
        assert summary.succeeded == 2
        assert summary.failed == 0
        assert summary.observations_inserted == 48
        assert count(repository, Observation) == 48
        assert status_of(repository, ASHEVILLE) == "completed"

    def test_completed_files_are_not_downloaded_again(self, orchestrator, archive):
        orchestrator.run_cycle()
        summary = orchestrator.run_cycle()

        assert summary.skipped == 2
        assert summary.attempted == 0
        assert sorted(archive.downloads) == sorted([ASHEVILLE, BODEGA])

    def test_rerun_is_idempotent(self, config, repository, archive):
        IngestionOrchestrator(config, repository=repository, fetcher=archive).run_cycle()
        # Forget completion so every file is imported again
        with repository.transaction() as session:
            session.query(ProcessedFile).update({"processing_status": "failed"})

        summary = IngestionOrchestrator(config, repository=repository, fetcher=archive).run_cycle()

        assert summary.observations_inserted == 0
        assert summary.observations_updated == 48
        assert count(repository, Observation) == 48

    def test_newer_upstream_copy_is_refetched(self, config, repository):
        archive = FakeArchive({ASHEVILLE: make_file(good=24)}, modified={ASHEVILLE: datetime(2024, 3, 1, 10, 0)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)
        orchestrator.run_cycle()

        archive.files[ASHEVILLE] = make_file(good=48)
        archive.modified[ASHEVILLE] = datetime(2024, 3, 2, 10, 0)
        summary = orchestrator.run_cycle()

        assert summary.succeeded == 1
        assert summary.observations_inserted == 24
        assert summary.observations_updated == 24

    def test_relisted_identical_content_is_recorded(self, config, repository):
        archive = FakeArchive({ASHEVILLE: make_file(good=24)}, modified={ASHEVILLE: datetime(2024, 3, 1, 10, 0)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)
        orchestrator.run_cycle()

        archive.modified[ASHEVILLE] = datetime(2024, 3, 2, 10, 0)
        relisted = orchestrator.run_cycle()
        third = orchestrator.run_cycle()

        assert archive.downloads == [ASHEVILLE, ASHEVILLE]
        assert relisted.skipped == 1
        assert third.attempted == 0
        assert repository.get_processed_file(ASHEVILLE)["last_modified"] == datetime(2024, 3, 2, 10, 0)

    def test_current_year_is_refetched_but_unchanged_content_skipped(self, repository):
        year = datetime.now(timezone.utc).year
        filename = f"CRNH0203-{year}-NC_Asheville_8_SSW.txt"
        archive = FakeArchive({filename: make_file(good=5, start=datetime(year, 1, 1))})
        config = IngestConfig(source={"years": "current", "request_delay_seconds": 0})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        orchestrator.run_cycle()
        summary = orchestrator.run_cycle()

        assert archive.downloads == [filename, filename]
        assert summary.attempted == 1
        assert summary.skipped == 1
        assert summary.succeeded == 0

    def test_location_filter_limits_downloads(self, repository, archive):
        config = IngestConfig(
            source={"years": [2024], "request_delay_seconds": 0},
            locations={"states": ["NC"]},
        )
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()

        assert archive.downloads == [ASHEVILLE]
        assert summary.attempted == 1

    def test_station_filter_applies_to_records(self, repository, archive):
        config = IngestConfig(
            source={"years": [2024], "request_delay_seconds": 0},
            locations={"stations": ["93245"]},
        )
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()

        assert sorted(archive.downloads) == sorted([ASHEVILLE, BODEGA])
        assert summary.succeeded == 1
        assert summary.skipped == 1
        with repository.transaction() as session:
            assert {o.station_id for o in session.query(Observation).all()} == {93245}

    def test_listing_error_for_one_year(self, repository, archive):
        config = IngestConfig(source={"years": [2023, 2024], "request_delay_seconds": 0})
        listing = archive.fetch_text

        def flaky_listing(url):
            if url.endswith("/2023/"):
                raise TransportError(url, "service unavailable")
            return listing(url)

        archive.fetch_text = flaky_listing
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()

        assert summary.listing_errors == 1
        assert summary.succeeded == 2


class TestFailureHandling:
    """Test per-file failure propagation."""

    def test_nine_percent_malformed_accepted(self, config, repository):
        archive = FakeArchive({ASHEVILLE: make_file(good=91, bad=9)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()

        assert summary.succeeded == 1
        assert summary.parse_failures == 9
        assert count(repository, Observation) == 91
        assert status_of(repository, ASHEVILLE) == "partial"

    def test_eleven_percent_malformed_rejected(self, config, repository):
        archive = FakeArchive({ASHEVILLE: make_file(good=89, bad=11)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()

        assert summary.rejected == 1
        assert count(repository, Observation) == 0
        assert status_of(repository, ASHEVILLE) == "failed"

    def test_unchanged_partial_file_downloaded_once(self, config, repository):
        archive = FakeArchive({ASHEVILLE: make_file(good=91, bad=9)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        for _ in range(4):
            orchestrator.run_cycle()

        assert archive.downloads == [ASHEVILLE]
        assert count(repository, Observation) == 91
        assert status_of(repository, ASHEVILLE) == "partial"

    def test_partial_file_heals_when_upstream_changes(self, config, repository):
        archive = FakeArchive(
            {ASHEVILLE: make_file(good=91, bad=9)}, modified={ASHEVILLE: datetime(2024, 3, 1, 10, 0)}
        )
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        orchestrator.run_cycle()
        archive.files[ASHEVILLE] = make_file(good=100)
        archive.modified[ASHEVILLE] = datetime(2024, 3, 2, 10, 0)
        orchestrator.run_cycle()

        assert archive.downloads == [ASHEVILLE, ASHEVILLE]
        assert status_of(repository, ASHEVILLE) == "completed"
        assert count(repository, Observation) == 100

    def test_empty_file(self, config, repository):
        archive = FakeArchive({ASHEVILLE: "\n\n"})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()

        assert summary.rejected == 1
        assert status_of(repository, ASHEVILLE) == "failed"

    def test_repeated_rejection_is_surfaced(self, config, repository, caplog):
        archive = FakeArchive({ASHEVILLE: make_file(good=10, bad=10)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        orchestrator.run_cycle()
        with caplog.at_level(logging.WARNING):
            orchestrator.run_cycle()

        assert archive.downloads == [ASHEVILLE, ASHEVILLE]
        assert "failed again" in caplog.text

    def test_fetch_failure_leaves_no_ledger_row(self, config, repository):
        archive = FakeArchive({ASHEVILLE: TransportError(ASHEVILLE, "connection reset")})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        summary = orchestrator.run_cycle()
        orchestrator.run_cycle()

        assert summary.failed == 1
        assert repository.get_processed_file(ASHEVILLE) is None
        assert archive.downloads == [ASHEVILLE, ASHEVILLE]

    def test_policy_rejection_is_never_retried(self, config, repository, caplog):
        archive = FakeArchive({
            ASHEVILLE: UntrustedOriginError(ASHEVILLE, "Host not allowed"),
            BODEGA: make_file(good=3, station_id=93245),
        })
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        with caplog.at_level(logging.ERROR):
            first = orchestrator.run_cycle()
        second = orchestrator.run_cycle()

        assert first.failed == 1
        assert first.succeeded == 1
        assert "SECURITY" in caplog.text
        assert archive.downloads.count(ASHEVILLE) == 1
        assert second.skipped == 2
        assert repository.get_processed_file(ASHEVILLE) is None

    def test_persistence_failure_is_retried(self, config, repository):
        archive = FakeArchive({ASHEVILLE: make_file(good=24)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        with patch.object(
            repository, "upsert_observations_batch",
            side_effect=OperationalError("INSERT", {}, Exception("connection lost")),
        ):
            first = orchestrator.run_cycle()

        assert first.failed == 1
        assert status_of(repository, ASHEVILLE) == "failed"
        assert count(repository, Observation) == 0

        second = orchestrator.run_cycle()

        assert second.succeeded == 1
        assert count(repository, Observation) == 24

    def test_crash_before_commit_resumes_without_duplicates(self, config, repository):
        """A run interrupted before its commit is retried and matches a clean run."""
        archive = FakeArchive({ASHEVILLE: make_file(good=24)})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)

        original = repository.mark_file_processed
        calls = []

        def crash_on_finalize(session, descriptor, stats):
            calls.append(stats.status)
            if len(calls) == 2:
                raise OperationalError("UPDATE", {}, Exception("server closed the connection"))
            return original(session, descriptor, stats)

        with patch.object(repository, "mark_file_processed", side_effect=crash_on_finalize):
            orchestrator.run_cycle()

        assert count(repository, Observation) == 0

        summary = orchestrator.run_cycle()

        assert summary.succeeded == 1
        assert count(repository, Observation) == 24
        assert status_of(repository, ASHEVILLE) == "completed"


class TestStop:
    """Test cooperative shutdown."""

    def test_stop_before_cycle(self, orchestrator, archive):
        stop_event = threading.Event()
        stop_event.set()

        summary = orchestrator.run_cycle(stop_event)

        assert summary.stopped
        assert summary.attempted == 0
        assert archive.downloads == []

    def test_stop_between_files(self, repository, archive):
        config = IngestConfig(source={"years": [2024], "request_delay_seconds": 0, "download_workers": 1})
        orchestrator = IngestionOrchestrator(config, repository=repository, fetcher=archive)
        stop_event = threading.Event()
        original = repository.ingest_file

        def ingest_then_stop(*args, **kwargs):
            stats = original(*args, **kwargs)
            stop_event.set()
            return stats

        with patch.object(repository, "ingest_file", side_effect=ingest_then_stop):
            summary = orchestrator.run_cycle(stop_event)

        assert summary.stopped
        assert summary.succeeded == 1
        assert archive.downloads == [ASHEVILLE]
        assert status_of(repository, ASHEVILLE) == "completed"


class TestCycleSummary:

    def test_add_counts_outcomes(self):
        summary = CycleSummary()
        summary.add(FileResult(FileOutcome.SUCCEEDED, parse_failures=2))
        summary.add(FileResult(FileOutcome.REJECTED))
        summary.add(FileResult(FileOutcome.SKIPPED))

        assert (summary.succeeded, summary.rejected, summary.skipped) == (1, 1, 1)
        assert summary.parse_failures == 2
