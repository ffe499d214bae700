"""Persistence for stations, observations and the processed-file ledger."""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from .config import DatabaseConfig
from .errors import PersistenceError
from .models import (
    OBSERVATION_VALUE_COLUMNS, Base, Observation, ProcessedFile, ProcessingStatus, Station, utc_now,
)
from .parser import ObservationRecord
from .source import FileDescriptor

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bound parameters under SQLite's limit
BATCH_SIZE = 500

# Ledger statuses whose batch reached the database
COMMITTED_STATUSES = (ProcessingStatus.COMPLETED.value, ProcessingStatus.PARTIAL.value)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class StationRecord:
    """Station metadata gathered from a file and its first observation."""
    station_id: int
    state: str
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass
class FileStats:
    """Counters and status written to the ledger for one attempt."""
    status: ProcessingStatus
    rows_processed: int = 0
    observations_inserted: int = 0
    observations_updated: int = 0
    parse_failures: int = 0
    file_hash: Optional[str] = None


def stations_from_records(
    descriptor: FileDescriptor,
    records: Iterable[ObservationRecord],
) -> List[StationRecord]:
    """One StationRecord per distinct station, taken from its first record."""
    stations: Dict[int, StationRecord] = {}
    for record in records:
        if record.station_id not in stations:
            stations[record.station_id] = StationRecord(
                station_id=record.station_id,
                state=descriptor.state,
                name=descriptor.station_label,
                latitude=record.latitude,
                longitude=record.longitude,
            )
    return list(stations.values())


class Repository:
    """Sole writer of stations, observations and processed_files."""

    def __init__(self, engine: Engine):
        """Initialize repository.

        Args:
            engine: SQLAlchemy engine; its pool is shared for the process lifetime
        """
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "Repository":
        """Create a repository with a pooled PostgreSQL engine."""
        engine = create_engine(
            config.url,
            poolclass=QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,  # Verify connections before using
        )
        return cls(engine)

    def check_connection(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def init_schema(self) -> None:
        """Create tables if they don't exist."""
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables initialized")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize tables: {e}")
            raise

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session scope: commit on success, roll back and re-raise on error."""
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Stations
    # ------------------------------------------------------------------

    def upsert_station(self, session: Session, record: StationRecord) -> None:
        """Insert an unseen station or refresh a known one.

        Present incoming values replace stored ones; absent values never
        erase what is stored. ``first_seen`` is set once on insert.
        """
        now = utc_now()
        station = session.get(Station, record.station_id)
        if station is None:
            session.add(
                Station(
                    station_id=record.station_id,
                    name=record.name,
                    state=record.state,
                    latitude=record.latitude,
                    longitude=record.longitude,
                    first_seen=now,
                    last_seen=now,
                )
            )
            logger.info(f"New station {record.station_id} ({record.name}, {record.state})")
            return

        if record.name is not None:
            station.name = record.name
        if record.state:
            station.state = record.state
        if record.latitude is not None:
            station.latitude = record.latitude
        if record.longitude is not None:
            station.longitude = record.longitude
        station.last_seen = now

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def _existing_keys(
        self,
        session: Session,
        keys: Iterable[Tuple[int, datetime]],
    ) -> Set[Tuple[int, datetime]]:
        keys = set(keys)
        if not keys:
            return set()

        station_ids = {station_id for station_id, _ in keys}
        timestamps = [ts for _, ts in keys]
        rows = (
            session.query(Observation.station_id, Observation.utc_datetime)
            .filter(
                Observation.station_id.in_(sorted(station_ids)),
                Observation.utc_datetime >= min(timestamps),
                Observation.utc_datetime <= max(timestamps),
            )
            .all()
        )
        return {(station_id, ts) for station_id, ts in rows} & keys

    def upsert_observations_batch(
        self,
        session: Session,
        records: List[ObservationRecord],
        source_file_id: int,
    ) -> UpsertResult:
        """Insert new (station, UTC hour) rows and overwrite existing ones.

        Runs inside the caller's transaction so the whole batch commits or
        rolls back together. Duplicate keys within the batch collapse to the
        last occurrence.

        Args:
            session: Open session from ``transaction()``
            records: Parsed observations
            source_file_id: Ledger row the observations came from

        Returns:
            UpsertResult counting new and overwritten rows
        """
        if not records:
            return UpsertResult()

        unique: Dict[Tuple[int, datetime], ObservationRecord] = {}
        for record in records:
            unique[record.key] = record

        dialect = session.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise PersistenceError(f"Unsupported database dialect: {dialect}")

        existing = self._existing_keys(session, unique.keys())
        result = UpsertResult(inserted=len(unique) - len(existing), updated=len(existing))

        now = utc_now()
        rows = []
        for record in unique.values():
            row = record.to_row()
            row["source_file_id"] = source_file_id
            row["created_at"] = now
            row["updated_at"] = now
            rows.append(row)

        table = Observation.__table__
        total_batches = (len(rows) + BATCH_SIZE - 1) // BATCH_SIZE
        for batch_idx, start in enumerate(range(0, len(rows), BATCH_SIZE)):
            chunk = rows[start:start + BATCH_SIZE]
            logger.debug(f"Upserting batch {batch_idx + 1}/{total_batches} ({len(chunk)} observations)")

            stmt = insert(table).values(chunk)
            update_columns = {name: stmt.excluded[name] for name in OBSERVATION_VALUE_COLUMNS}
            update_columns["source_file_id"] = stmt.excluded["source_file_id"]
            update_columns["updated_at"] = stmt.excluded["updated_at"]
            stmt = stmt.on_conflict_do_update(
                index_elements=["station_id", "utc_datetime"],
                set_=update_columns,
            )
            session.execute(stmt)

        return result

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def mark_file_processed(
        self,
        session: Session,
        descriptor: FileDescriptor,
        stats: FileStats,
    ) -> ProcessedFile:
        """Write the ledger row for this attempt inside the caller's transaction.

        Returns:
            The flushed ledger row (its ``id`` is assigned)
        """
        entry = session.query(ProcessedFile).filter_by(file_name=descriptor.filename).one_or_none()
        if entry is None:
            entry = ProcessedFile(file_name=descriptor.filename)
            session.add(entry)

        entry.file_url = descriptor.url
        entry.year = descriptor.year
        entry.state = descriptor.state
        entry.station_name = descriptor.station_label[:100]
        entry.last_modified = descriptor.last_modified
        entry.file_hash = stats.file_hash
        entry.rows_processed = stats.rows_processed
        entry.observations_inserted = stats.observations_inserted
        entry.observations_updated = stats.observations_updated
        entry.parse_failures = stats.parse_failures
        entry.processing_status = stats.status.value
        entry.processed_at = utc_now()

        session.flush()
        return entry

    def is_already_completed(self, filename: str) -> bool:
        """Whether a file was last imported without any line failures.

        Single-file form of the ledger check; a cycle uses the batched
        ``committed_files`` read instead.
        """
        with self.transaction() as session:
            status = (
                session.query(ProcessedFile.processing_status)
                .filter_by(file_name=filename)
                .scalar()
            )
        return status == ProcessingStatus.COMPLETED.value

    def get_processed_file(self, filename: str) -> Optional[dict]:
        """Get ledger details.

        Args:
            filename: Remote filename

        Returns:
            Ledger entry as dictionary or None if never attempted
        """
        with self.transaction() as session:
            entry = session.query(ProcessedFile).filter_by(file_name=filename).one_or_none()
            if entry is None:
                return None

            return {
                "id": entry.id,
                "file_name": entry.file_name,
                "file_url": entry.file_url,
                "year": entry.year,
                "state": entry.state,
                "station_name": entry.station_name,
                "last_modified": entry.last_modified,
                "file_hash": entry.file_hash,
                "rows_processed": entry.rows_processed,
                "observations_inserted": entry.observations_inserted,
                "observations_updated": entry.observations_updated,
                "parse_failures": entry.parse_failures,
                "processing_status": entry.processing_status,
                "processed_at": entry.processed_at,
            }

    def committed_files(self, year: int) -> Dict[str, dict]:
        """Ledger entries for one year whose batch committed, keyed by filename.

        Covers both ``completed`` and ``partial`` entries. The cycle runner
        reads this once per year instead of calling ``is_already_completed``
        for every listed file.
        """
        with self.transaction() as session:
            rows = (
                session.query(
                    ProcessedFile.file_name,
                    ProcessedFile.last_modified,
                    ProcessedFile.file_hash,
                    ProcessedFile.processing_status,
                )
                .filter(
                    ProcessedFile.year == year,
                    ProcessedFile.processing_status.in_(COMMITTED_STATUSES),
                )
                .all()
            )
        return {
            file_name: {
                "last_modified": last_modified,
                "file_hash": file_hash,
                "processing_status": processing_status,
            }
            for file_name, last_modified, file_hash, processing_status in rows
        }

    def touch_last_modified(self, filename: str, last_modified: datetime) -> None:
        """Record a newer listing time for a file whose content did not change."""
        with self.transaction() as session:
            entry = session.query(ProcessedFile).filter_by(file_name=filename).one_or_none()
            if entry is not None:
                entry.last_modified = last_modified

    # ------------------------------------------------------------------
    # Per-file units of work
    # ------------------------------------------------------------------

    def ingest_file(
        self,
        descriptor: FileDescriptor,
        records: List[ObservationRecord],
        parse_failures: int = 0,
        file_hash: Optional[str] = None,
    ) -> FileStats:
        """Persist one file atomically.

        Ledger row, stations and observations are written in a single
        transaction, so the ledger never says ``completed`` for a batch that
        did not commit and no observation references an uncommitted ledger row.

        Returns:
            Final ledger statistics

        Raises:
            PersistenceError: If the transaction was rolled back
        """
        status = ProcessingStatus.PARTIAL if parse_failures else ProcessingStatus.COMPLETED

        try:
            with self.transaction() as session:
                entry = self.mark_file_processed(
                    session,
                    descriptor,
                    FileStats(
                        status=ProcessingStatus.FAILED,
                        rows_processed=len(records),
                        parse_failures=parse_failures,
                        file_hash=file_hash,
                    ),
                )

                for station in stations_from_records(descriptor, records):
                    self.upsert_station(session, station)
                session.flush()

                result = self.upsert_observations_batch(session, records, entry.id)

                stats = FileStats(
                    status=status,
                    rows_processed=len(records),
                    observations_inserted=result.inserted,
                    observations_updated=result.updated,
                    parse_failures=parse_failures,
                    file_hash=file_hash,
                )
                self.mark_file_processed(session, descriptor, stats)
        except SQLAlchemyError as e:
            logger.error(f"Rolled back {descriptor.filename}: {e}")
            raise PersistenceError(f"Failed to persist {descriptor.filename}: {e}") from e

        logger.info(
            f"Persisted {descriptor.filename}: {stats.observations_inserted} inserted, "
            f"{stats.observations_updated} updated, status={stats.status.value}"
        )
        return stats

    def record_failure(self, descriptor: FileDescriptor, stats: FileStats) -> None:
        """Write a non-terminal ledger row in its own transaction."""
        with self.transaction() as session:
            self.mark_file_processed(session, descriptor, stats)
        logger.info(f"Recorded {descriptor.filename} as {stats.status.value}")

    def close(self):
        """Close database connections."""
        self.engine.dispose()
