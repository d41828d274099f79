"""Client utilities for the Google Places (v1) Text Search API."""

import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from leadpipe.core.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
_FIELD_MASK = ",".join(
    [
        "places.id",
        "places.displayName",
        "places.formattedAddress",
        "places.addressComponents",
        "places.nationalPhoneNumber",
        "places.websiteUri",
        "places.rating",
        "places.userRatingCount",
        "places.primaryTypeDisplayName",
        "nextPageToken",
    ]
)
# Places v1 caps a single page at 20 results.
MAX_PAGE_SIZE = 20
REQUEST_TIMEOUT = 10


class GooglePlacesError(PermanentError):
    """Raised when the Places API rejects a request in a way retries won't fix."""


class GooglePlacesTransientError(TransientError):
    """Rate limiting, timeouts and 5xx responses from the Places API."""


class RateLimiter:
    """Minimum spacing between calls, shared by all threads in the process."""

    def __init__(self, requests_per_second: float) -> None:
        self._min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._lock = threading.Lock()
        self._last = 0.0

    def wait(self) -> None:
        if not self._min_interval:
            return
        with self._lock:
            now = time.monotonic()
            delay = self._last + self._min_interval - now
            if delay > 0:
                time.sleep(delay)
            self._last = time.monotonic()


def _classify_error(response: requests.Response) -> Exception:
    try:
        error = response.json().get("error", {})
    except ValueError:
        error = {}
    message = error.get("message") or response.text[:300]
    status = error.get("status") or str(response.status_code)
    if response.status_code == 429 or response.status_code >= 500 or status == "RESOURCE_EXHAUSTED":
        return GooglePlacesTransientError(f"{response.status_code} {status}: {message}")
    return GooglePlacesError(f"{response.status_code} {status}: {message}")


def text_search(
    query: str,
    api_key: str,
    *,
    included_type: Optional[str] = None,
    page_size: int = MAX_PAGE_SIZE,
    page_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Fetch one page of Text Search results.

    Returns the decoded payload (``places`` and optionally ``nextPageToken``).
    Raises GooglePlacesTransientError for retryable failures and
    GooglePlacesError otherwise.
    """
    body: Dict[str, Any] = {"textQuery": query, "pageSize": max(1, min(page_size, MAX_PAGE_SIZE))}
    if included_type:
        body["includedType"] = included_type
    if page_token:
        body["pageToken"] = page_token
    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": api_key,
        "X-Goog-FieldMask": _FIELD_MASK,
    }
    try:
        response = _SESSION.post(_SEARCH_URL, json=body, headers=headers, timeout=REQUEST_TIMEOUT)
    except (requests.Timeout, requests.ConnectionError) as exc:
        raise GooglePlacesTransientError(f"Places request failed: {exc}") from exc

    if response.status_code >= 400:
        error = _classify_error(response)
        logger.error("text_search failed for query=%s: %s", query, error)
        raise error
    return response.json()
