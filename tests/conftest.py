"""Test configuration and fixtures."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from uscrn_ingest.config import IngestConfig
from uscrn_ingest.models import Base
from uscrn_ingest.repository import Repository
from uscrn_ingest.source import parse_filename

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite:///:memory:"

BASE_URL = "https://www.ncei.noaa.gov/pub/data/uscrn/products/hourly02"


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires running services)"
    )


def make_line(station_id=53104, utc=datetime(2024, 1, 15, 14, 0), t_calc="-9999.0", soil=True):
    """Build one hourly02 line; local standard time is UTC-8."""
    lst = utc - timedelta(hours=8)
    fields = [
        str(station_id),
        utc.strftime("%Y%m%d"), utc.strftime("%H%M"),
        lst.strftime("%Y%m%d"), lst.strftime("%H%M"),
        "3", "-81.74", "36.53",
        t_calc, "4.1", "4.9", "3.4", "0.0",
        "45.5", "0", "58.6", "0", "35.9", "0",
        "C", "1.1", "0", "2.1", "0", "-0.5", "0",
        "81.9", "0",
    ]
    if soil:
        fields += ["-9999.0"] * 10
    return " ".join(fields)


def make_file(good=24, bad=0, station_id=53104, start=datetime(2024, 1, 1), t_calc="-9999.0"):
    """Build file content with ``good`` consecutive hours followed by ``bad`` malformed lines."""
    lines = [make_line(station_id, start + timedelta(hours=i), t_calc=t_calc) for i in range(good)]
    lines += [f"{station_id} garbage line {i}" for i in range(bad)]
    return "\n".join(lines) + "\n"


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def repository(engine):
    """Repository backed by the in-memory database."""
    return Repository(engine)


@pytest.fixture
def config():
    """Configuration for one explicit year without request pacing."""
    return IngestConfig(
        source={"years": [2024], "request_delay_seconds": 0, "download_workers": 2},
    )


@pytest.fixture
def descriptor():
    """Descriptor for a 2024 North Carolina file."""
    return parse_filename("CRNH0203-2024-NC_Asheville_8_SSW.txt", BASE_URL)
