"""
Fetch module for the Course Watcher pipeline.

This module handles fetching the course availability page with proper
error handling, retries, and exponential backoff.
"""

from typing import Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from course_watcher.utils import get_logger


# Module logger
logger = get_logger("fetch")

# Default configuration
DEFAULT_URL = "https://www.uio.no/studier/emner/ledige-plasser/"
DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 1.0  # exponential backoff multiplier
DEFAULT_USER_AGENT = "CourseWatcher/1.0 (Course Availability Monitor)"


class FetchError(Exception):
    """Raised when the course page cannot be retrieved."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def create_session(
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
) -> requests.Session:
    """
    Create a requests session with retry configuration.

    Configures automatic retries with exponential backoff for
    transient failures (429 and 5xx responses, connection errors).

    Args:
        max_retries: Maximum number of retry attempts.
        backoff_factor: Multiplier for exponential backoff between retries.

    Returns:
        Configured requests.Session instance.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.headers.update({
        "User-Agent": DEFAULT_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    })

    return session


def validate_url(url: str) -> bool:
    """
    Validate that a URL is well-formed and uses HTTP/HTTPS.

    Args:
        url: URL string to validate.

    Returns:
        True if URL is valid, False otherwise.
    """
    try:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)
    except ValueError:
        return False


def fetch_courses_page(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: int = DEFAULT_TIMEOUT
) -> str:
    """
    Fetch the course availability page body.

    Only 2xx responses count as success. Redirects are followed by the
    session, so a 3xx reaching this point is treated as an error.

    Args:
        url: Page URL.
        session: Configured requests session. A new one is created and
                 closed if omitted.
        timeout: Request timeout in seconds.

    Returns:
        Page body as text.

    Raises:
        FetchError: If the URL is invalid, the request failed or the
                    server answered with a non-2xx status.
    """
    if not validate_url(url):
        raise FetchError(f"Invalid URL format: {url}")

    own_session = session is None
    if own_session:
        session = create_session()

    logger.debug(f"Fetching URL: {url}")
    try:
        response = session.get(url, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise FetchError(f"Timeout fetching {url} after {timeout}s") from e
    except requests.exceptions.ConnectionError as e:
        raise FetchError(f"Connection error for {url}: {e}") from e
    except requests.exceptions.RequestException as e:
        raise FetchError(f"Request failed for {url}: {e}") from e
    finally:
        if own_session:
            session.close()

    status = response.status_code
    if not 200 <= status < 300:
        raise FetchError(f"HTTP {status} for {url}", status_code=status)

    logger.info(f"Fetched {url}: HTTP {status}, {len(response.text)} bytes")
    return response.text
