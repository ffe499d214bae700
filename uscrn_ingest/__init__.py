"""
USCRN Ingestion Service

Polls the NOAA USCRN hourly02 archive, parses fixed-position observation
files and upserts them into PostgreSQL, tracking every file in a ledger.
"""

__version__ = "0.1.0"
