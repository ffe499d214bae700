"""HTTPS client for the USCRN archive."""
import hashlib
import logging
import time
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import ReadTimeoutError
from urllib3.util.retry import Retry

from .config import SourceConfig
from .errors import FetchTimeoutError, HTTPStatusError, TransportError, UntrustedOriginError

logger = logging.getLogger(__name__)

REQUIRED_SCHEME = "https"
CHUNK_SIZE = 8192


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of downloaded content."""
    return hashlib.sha256(content).hexdigest()


def _is_timeout(error: requests.RequestException) -> bool:
    if isinstance(error, requests.Timeout):
        return True
    # requests re-raises read timeouts during body streaming as ConnectionError
    return any(isinstance(arg, ReadTimeoutError) for arg in error.args)


class Fetcher:
    """Downloads files from one allow-listed origin."""

    def __init__(self, config: SourceConfig):
        """Initialize fetcher.

        Args:
            config: Source configuration (timeouts, retries, allowed hosts)
        """
        self.config = config
        self.allowed_hosts = frozenset(host.lower() for host in config.allowed_hosts)
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create requests session with retry logic."""
        session = requests.Session()
        retry_strategy = Retry(
            total=self.config.max_retries,
            backoff_factor=self.config.retry_backoff,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_maxsize=max(10, self.config.download_workers),
        )
        session.mount("https://", adapter)
        session.headers["User-Agent"] = self.config.user_agent
        return session

    def validate_url(self, url: str) -> None:
        """Check scheme and host against the allow-list.

        Raises:
            UntrustedOriginError: If the URL must not be requested
        """
        parsed = urlparse(url)
        if parsed.scheme != REQUIRED_SCHEME:
            raise UntrustedOriginError(url, f"Scheme '{parsed.scheme}' is not allowed")
        host = (parsed.hostname or "").lower()
        if host not in self.allowed_hosts:
            raise UntrustedOriginError(url, f"Host '{host}' is not in the allow-list")

    def download(self, url: str) -> bytes:
        """Download a file.

        Args:
            url: File URL

        Returns:
            Raw file content

        Raises:
            UntrustedOriginError: URL failed validation; no request was made
            FetchTimeoutError: Connect, read or total transfer timeout
            HTTPStatusError: Non-success response status
            TransportError: Any other transport failure
        """
        self.validate_url(url)
        logger.debug(f"Downloading {url}")

        timeout = (self.config.connect_timeout, self.config.read_timeout)
        deadline = time.monotonic() + self.config.connect_timeout + self.config.read_timeout

        try:
            # Redirects could leave the allow-listed origin
            with self.session.get(url, timeout=timeout, stream=True, allow_redirects=False) as response:
                if not 200 <= response.status_code < 300:
                    raise HTTPStatusError(url, response.status_code)

                chunks = []
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if time.monotonic() > deadline:
                        raise FetchTimeoutError(
                            url, f"Transfer exceeded {self.config.read_timeout:.0f}s"
                        )
                    chunks.append(chunk)

        except requests.RequestException as e:
            if _is_timeout(e):
                raise FetchTimeoutError(url, f"Request timed out: {e}") from e
            raise TransportError(url, f"Request failed: {e}") from e

        content = b"".join(chunks)
        logger.debug(f"Downloaded {len(content)} bytes from {url}")
        return content

    def fetch_text(self, url: str) -> str:
        """Download and decode a text resource such as a directory listing."""
        return self.download(url).decode("utf-8", errors="replace")

    def close(self):
        """Close the HTTP session."""
        self.session.close()
