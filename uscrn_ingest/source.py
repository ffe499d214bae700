"""Remote file discovery and location filtering."""
import fnmatch
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from .config import LocationFilter, YearSelector
from .errors import FetchError, ListingError

logger = logging.getLogger(__name__)

# <prefix>-<year>-<state>_<location>_<distance>_<direction>.txt
FILENAME_PATTERN = re.compile(
    r"^(?P<prefix>[A-Za-z0-9]+)-(?P<year>\d{4})-(?P<state>[A-Za-z]{2})_(?P<label>[^/]+)\.txt$"
)
HREF_PATTERN = re.compile(r'href="([^"]+)"')
MODIFIED_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2} \d{2}:\d{2})")

FIRST_ARCHIVE_YEAR = 2000
LAST_ARCHIVE_YEAR = 2100


@dataclass(frozen=True)
class FileDescriptor:
    """A remote observation file."""
    filename: str
    url: str
    year: int
    state: str
    station_label: str
    last_modified: Optional[datetime] = None


def parse_filename(filename: str, base_url: str) -> Optional[FileDescriptor]:
    """Build a descriptor from a filename, or None if it does not fit the grammar.

    Example:
        CRNH0203-2024-CA_Bodega_6_WSW.txt -> state CA, label Bodega_6_WSW
    """
    match = FILENAME_PATTERN.match(filename)
    if not match:
        return None

    year = int(match.group("year"))
    return FileDescriptor(
        filename=filename,
        url=f"{base_url.rstrip('/')}/{year}/{filename}",
        year=year,
        state=match.group("state").upper(),
        station_label=match.group("label"),
    )


def matches_location(descriptor: FileDescriptor, location_filter: LocationFilter) -> bool:
    """Whether a file-level axis (state or filename pattern) selects this file."""
    if descriptor.state in location_filter.states:
        return True
    return any(fnmatch.fnmatchcase(descriptor.filename, pattern) for pattern in location_filter.patterns)


def matches(descriptor: FileDescriptor, location_filter: LocationFilter) -> bool:
    """Pre-download filter.

    Axes are OR-ed and an empty filter allows everything. Station
    identifiers are only known after parsing, so when the station axis is the
    only one set every file passes here and the check happens per record.
    """
    if location_filter.is_empty():
        return True
    if matches_location(descriptor, location_filter):
        return True
    return not location_filter.states and not location_filter.patterns


def matches_station(
    descriptor: FileDescriptor,
    station_id: int,
    location_filter: LocationFilter,
) -> bool:
    """Post-parse filter for one record's station."""
    if not location_filter.stations:
        return True
    if matches_location(descriptor, location_filter):
        return True
    return station_id in location_filter.stations


class SourceLister:
    """Enumerates observation files in the remote archive."""

    def __init__(self, fetcher, base_url: str):
        """Initialize lister.

        Args:
            fetcher: Fetcher used for every listing request
            base_url: Archive root containing one directory per year
        """
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")

    def list_years(self) -> List[int]:
        """List year directories available at the archive root.

        Raises:
            ListingError: If the listing cannot be retrieved
        """
        url = f"{self.base_url}/"
        html = self._fetch_listing(url)

        years = set()
        for href in HREF_PATTERN.findall(html):
            name = href.rstrip("/").rsplit("/", 1)[-1]
            if name.isdigit() and FIRST_ARCHIVE_YEAR <= int(name) <= LAST_ARCHIVE_YEAR:
                years.add(int(name))

        logger.info(f"Found {len(years)} years available")
        return sorted(years)

    def list_year(self, year: int) -> List[FileDescriptor]:
        """List observation files for one year.

        Raises:
            ListingError: If the listing cannot be retrieved
        """
        url = f"{self.base_url}/{year}/"
        html = self._fetch_listing(url)
        descriptors = self._parse_file_listing(html, year)
        logger.info(f"Found {len(descriptors)} files for year {year}")
        return descriptors

    def resolve_years(self, selector: YearSelector) -> List[int]:
        """Turn a year selector into concrete years."""
        if selector == "current":
            return [datetime.now(timezone.utc).year]
        if selector == "all":
            return self.list_years()
        return sorted(set(selector))

    def enumerate(
        self,
        selector: YearSelector,
        on_error: Optional[Callable[[int, ListingError], None]] = None,
    ) -> Iterator[FileDescriptor]:
        """Lazily yield descriptors year by year.

        Every call starts a fresh listing. Without ``on_error`` a listing
        failure ends the enumeration by raising; with it the failed year is
        reported and the next year is listed.

        Args:
            selector: "current", "all" or explicit years
            on_error: Optional callback receiving (year, error)

        Yields:
            FileDescriptor for each file in the selected years
        """
        for year in self.resolve_years(selector):
            try:
                descriptors = self.list_year(year)
            except ListingError as e:
                if on_error is None:
                    raise
                on_error(year, e)
                continue
            yield from descriptors

    def _fetch_listing(self, url: str) -> str:
        try:
            return self.fetcher.fetch_text(url)
        except FetchError as e:
            raise ListingError(url, str(e)) from e

    def _parse_file_listing(self, html: str, year: int) -> List[FileDescriptor]:
        """Parse an HTML directory listing into descriptors.

        Args:
            html: Directory listing page
            year: Year the listing belongs to

        Returns:
            Descriptors in listing order, without duplicates
        """
        descriptors = []
        seen = set()

        # Apache listings put one entry per line with the date after the link
        for line in html.split("\n"):
            href_match = HREF_PATTERN.search(line)
            if not href_match:
                continue

            filename = href_match.group(1).rsplit("/", 1)[-1]
            if filename in seen:
                continue

            descriptor = parse_filename(filename, self.base_url)
            if descriptor is None or descriptor.year != year:
                continue

            last_modified = None
            modified_match = MODIFIED_PATTERN.search(line, href_match.end())
            if modified_match:
                try:
                    last_modified = datetime.strptime(modified_match.group(1), "%Y-%m-%d %H:%M")
                except ValueError:
                    logger.warning(f"Could not parse date for {filename}: {modified_match.group(1)}")

            seen.add(filename)
            descriptors.append(replace(descriptor, last_modified=last_modified))

        return descriptors
