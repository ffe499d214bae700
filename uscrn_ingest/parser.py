"""
USCRN hourly02 file parser

Splits whitespace-separated fixed-position lines into observation records,
converts "no data" sentinels to None and rejects files whose share of
malformed lines exceeds a threshold.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 0.10

# Lowest value for the field width; -9999.0 for most columns, -99999 for solar
MISSING_VALUES = (-9999.0, -99999.0)

MIN_FIELDS = 28  # through the humidity flag; soil columns may be absent
MAX_FIELDS = 38


def _float(token: str) -> Optional[float]:
    value = float(token)
    if any(abs(value - missing) < 0.1 for missing in MISSING_VALUES):
        return None
    return value


def _int(token: str) -> Optional[int]:
    value = int(token)
    if value in MISSING_VALUES:
        return None
    return value


def _text(token: str) -> Optional[str]:
    return None if token in ("-9999", "-9999.0") else token


# Positional layout of fields 9-38 (1-based), in file order
MEASUREMENT_FIELDS: List[Tuple[str, Callable[[str], object]]] = [
    ("t_calc", _float),
    ("t_hr_avg", _float),
    ("t_max", _float),
    ("t_min", _float),
    ("p_calc", _float),
    ("solarad", _float),
    ("solarad_flag", _int),
    ("solarad_max", _float),
    ("solarad_max_flag", _int),
    ("solarad_min", _float),
    ("solarad_min_flag", _int),
    ("sur_temp_type", _text),
    ("sur_temp", _float),
    ("sur_temp_flag", _int),
    ("sur_temp_max", _float),
    ("sur_temp_max_flag", _int),
    ("sur_temp_min", _float),
    ("sur_temp_min_flag", _int),
    ("rh_hr_avg", _float),
    ("rh_hr_avg_flag", _int),
    ("soil_moisture_5", _float),
    ("soil_moisture_10", _float),
    ("soil_moisture_20", _float),
    ("soil_moisture_50", _float),
    ("soil_moisture_100", _float),
    ("soil_temp_5", _float),
    ("soil_temp_10", _float),
    ("soil_temp_20", _float),
    ("soil_temp_50", _float),
    ("soil_temp_100", _float),
]


@dataclass
class ObservationRecord:
    """One parsed line. Timestamps are naive: UTC and local standard time."""
    station_id: int
    utc_datetime: datetime
    lst_datetime: datetime
    crx_version: Optional[str] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    t_calc: Optional[float] = None
    t_hr_avg: Optional[float] = None
    t_max: Optional[float] = None
    t_min: Optional[float] = None
    p_calc: Optional[float] = None
    solarad: Optional[float] = None
    solarad_flag: Optional[int] = None
    solarad_max: Optional[float] = None
    solarad_max_flag: Optional[int] = None
    solarad_min: Optional[float] = None
    solarad_min_flag: Optional[int] = None
    sur_temp_type: Optional[str] = None
    sur_temp: Optional[float] = None
    sur_temp_flag: Optional[int] = None
    sur_temp_max: Optional[float] = None
    sur_temp_max_flag: Optional[int] = None
    sur_temp_min: Optional[float] = None
    sur_temp_min_flag: Optional[int] = None
    rh_hr_avg: Optional[float] = None
    rh_hr_avg_flag: Optional[int] = None
    soil_moisture_5: Optional[float] = None
    soil_moisture_10: Optional[float] = None
    soil_moisture_20: Optional[float] = None
    soil_moisture_50: Optional[float] = None
    soil_moisture_100: Optional[float] = None
    soil_temp_5: Optional[float] = None
    soil_temp_10: Optional[float] = None
    soil_temp_20: Optional[float] = None
    soil_temp_50: Optional[float] = None
    soil_temp_100: Optional[float] = None

    @property
    def key(self) -> Tuple[int, datetime]:
        return (self.station_id, self.utc_datetime)

    def to_row(self) -> Dict[str, object]:
        """Column values for the observations table."""
        row = asdict(self)
        row.pop("longitude")
        row.pop("latitude")
        return row


@dataclass
class LineFailure:
    """Diagnostic for a line that could not be decoded."""
    line_number: int
    reason: str
    line: str


class ParseOutcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EMPTY = "empty"


@dataclass
class ParseStats:
    total_lines: int = 0
    empty_lines: int = 0
    parsed_successfully: int = 0
    parse_failures: int = 0

    @property
    def non_empty_lines(self) -> int:
        return self.total_lines - self.empty_lines

    @property
    def failure_rate(self) -> float:
        if self.non_empty_lines == 0:
            return 0.0
        return self.parse_failures / self.non_empty_lines


@dataclass
class ParseResult:
    """Records in source line order plus per-line diagnostics."""
    records: List[ObservationRecord] = field(default_factory=list)
    failures: List[LineFailure] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)
    outcome: ParseOutcome = ParseOutcome.ACCEPTED
    threshold: float = DEFAULT_FAILURE_THRESHOLD

    @property
    def accepted(self) -> bool:
        return self.outcome is ParseOutcome.ACCEPTED


def parse_timestamp(date_token: str, time_token: str) -> datetime:
    """Combine ``YYYYMMDD`` and ``HHMM`` tokens into a naive datetime.

    Raises:
        ValueError: If either token is not numeric or out of range
    """
    if len(date_token) != 8 or not date_token.isdigit():
        raise ValueError(f"Invalid date '{date_token}'")
    if not time_token.isdigit() or len(time_token) > 4:
        raise ValueError(f"Invalid time '{time_token}'")

    year = int(date_token[:4])
    if year < 1900 or year > 2100:
        raise ValueError(f"Year {year} out of valid range (1900-2100) from date {date_token}")

    time_value = int(time_token)
    # datetime() validates month, day, hour and minute ranges
    return datetime(
        year,
        int(date_token[4:6]),
        int(date_token[6:8]),
        time_value // 100,
        time_value % 100,
    )


def parse_line(line: str) -> ObservationRecord:
    """Decode one line by field position.

    Raises:
        ValueError: On wrong field count or a non-numeric numeric column
    """
    fields = line.split()
    if not MIN_FIELDS <= len(fields) <= MAX_FIELDS:
        raise ValueError(f"Expected {MIN_FIELDS}-{MAX_FIELDS} fields, got {len(fields)}")

    station_token = fields[0]
    if not station_token.isdigit():
        raise ValueError(f"Invalid station identifier '{station_token}'")

    values = {}
    for (name, convert), token in zip(MEASUREMENT_FIELDS, fields[8:]):
        try:
            values[name] = convert(token)
        except ValueError:
            raise ValueError(f"Non-numeric value '{token}' in column {name}")

    return ObservationRecord(
        station_id=int(station_token),
        utc_datetime=parse_timestamp(fields[1], fields[2]),
        lst_datetime=parse_timestamp(fields[3], fields[4]),
        crx_version=fields[5],
        longitude=_float(fields[6]),
        latitude=_float(fields[7]),
        **values,
    )


def parse(content: str, threshold: float = DEFAULT_FAILURE_THRESHOLD) -> ParseResult:
    """
    Parse a whole file.

    A bad line never aborts the file; it is recorded and parsing moves on.
    Once every line is consumed the failure rate over non-blank lines decides
    the outcome: EMPTY when there were no data lines, REJECTED when the rate
    exceeds ``threshold`` or nothing decoded, ACCEPTED otherwise.

    Args:
        content: Decoded file text
        threshold: Maximum tolerated fraction of malformed lines

    Returns:
        ParseResult with records in source order
    """
    result = ParseResult(threshold=threshold)
    stats = result.stats

    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        stats.total_lines += 1
        line = raw_line.strip()
        if not line:
            stats.empty_lines += 1
            continue

        try:
            record = parse_line(line)
        except ValueError as e:
            stats.parse_failures += 1
            result.failures.append(LineFailure(line_number, str(e), line))
            logger.debug(f"Failed to parse line {line_number}: {e}")
            continue

        result.records.append(record)
        stats.parsed_successfully += 1

    if stats.non_empty_lines == 0:
        result.outcome = ParseOutcome.EMPTY
    elif stats.failure_rate > threshold or not result.records:
        result.outcome = ParseOutcome.REJECTED

    if result.failures:
        logger.warning(
            f"{stats.parse_failures} of {stats.non_empty_lines} lines failed to parse "
            f"({stats.failure_rate:.1%}, threshold {threshold:.1%}); "
            f"first failure at line {result.failures[0].line_number}: {result.failures[0].reason}"
        )

    return result
