"""SQLAlchemy ORM models for stations, observations and the file ledger."""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    BigInteger, Column, DateTime, Float, ForeignKey, Index, Integer, String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProcessingStatus(str, Enum):
    """Ledger status. COMPLETED and PARTIAL entries are only fetched again when upstream changes."""
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class Station(Base):
    """Station directory."""
    __tablename__ = "stations"

    station_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255))
    state = Column(String(2), nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    first_seen = Column(DateTime, nullable=False, default=utc_now)
    last_seen = Column(DateTime, nullable=False, default=utc_now)


class ProcessedFile(Base):
    """One row per remote file; overwritten by every ingestion attempt."""
    __tablename__ = "processed_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_name = Column(String(255), nullable=False, unique=True)
    file_url = Column(String(1024), nullable=False)
    year = Column(Integer, nullable=False, index=True)
    state = Column(String(2), nullable=False)
    station_name = Column(String(100), nullable=False)
    last_modified = Column(DateTime)
    file_hash = Column(String(64))

    rows_processed = Column(Integer, nullable=False, default=0)
    observations_inserted = Column(Integer, nullable=False, default=0)
    observations_updated = Column(Integer, nullable=False, default=0)
    parse_failures = Column(Integer, nullable=False, default=0)
    processing_status = Column(String(20), nullable=False, index=True)  # completed, partial, failed
    processed_at = Column(DateTime, nullable=False, default=utc_now)


class Observation(Base):
    """Hourly observation facts, unique per (station, UTC hour)."""
    __tablename__ = "observations"
    __table_args__ = (
        UniqueConstraint("station_id", "utc_datetime", name="uq_observations_station_utc"),
        Index("idx_observations_datetime", "utc_datetime"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    station_id = Column(Integer, ForeignKey("stations.station_id"), nullable=False)
    utc_datetime = Column(DateTime, nullable=False)
    lst_datetime = Column(DateTime, nullable=False)
    crx_version = Column(String(10))

    # Air temperature (Celsius)
    t_calc = Column(Float)
    t_hr_avg = Column(Float)
    t_max = Column(Float)
    t_min = Column(Float)

    # Precipitation (mm)
    p_calc = Column(Float)

    # Solar radiation (W/m^2)
    solarad = Column(Float)
    solarad_flag = Column(Integer)
    solarad_max = Column(Float)
    solarad_max_flag = Column(Integer)
    solarad_min = Column(Float)
    solarad_min_flag = Column(Integer)

    # Surface temperature (Celsius)
    sur_temp_type = Column(String(1))
    sur_temp = Column(Float)
    sur_temp_flag = Column(Integer)
    sur_temp_max = Column(Float)
    sur_temp_max_flag = Column(Integer)
    sur_temp_min = Column(Float)
    sur_temp_min_flag = Column(Integer)

    # Relative humidity (%)
    rh_hr_avg = Column(Float)
    rh_hr_avg_flag = Column(Integer)

    # Soil moisture (fractional volumetric water content) by depth in cm
    soil_moisture_5 = Column(Float)
    soil_moisture_10 = Column(Float)
    soil_moisture_20 = Column(Float)
    soil_moisture_50 = Column(Float)
    soil_moisture_100 = Column(Float)

    # Soil temperature (Celsius) by depth in cm
    soil_temp_5 = Column(Float)
    soil_temp_10 = Column(Float)
    soil_temp_20 = Column(Float)
    soil_temp_50 = Column(Float)
    soil_temp_100 = Column(Float)

    source_file_id = Column(Integer, ForeignKey("processed_files.id"))
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)


# Columns overwritten when a (station, UTC hour) row is imported again
OBSERVATION_VALUE_COLUMNS = [
    "lst_datetime", "crx_version",
    "t_calc", "t_hr_avg", "t_max", "t_min",
    "p_calc",
    "solarad", "solarad_flag", "solarad_max", "solarad_max_flag",
    "solarad_min", "solarad_min_flag",
    "sur_temp_type", "sur_temp", "sur_temp_flag", "sur_temp_max",
    "sur_temp_max_flag", "sur_temp_min", "sur_temp_min_flag",
    "rh_hr_avg", "rh_hr_avg_flag",
    "soil_moisture_5", "soil_moisture_10", "soil_moisture_20",
    "soil_moisture_50", "soil_moisture_100",
    "soil_temp_5", "soil_temp_10", "soil_temp_20", "soil_temp_50", "soil_temp_100",
]
