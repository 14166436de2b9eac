"""
Authenticated HTTP fetch of the usage export.

Credentials come from the session store; the captured browser session is
replayed as a Cookie header. Failures are classified for the caller:
rejected credentials need a human re-login, timeouts and server errors are
worth retrying, anything else is unexpected.
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

import requests

from usage_ingest.errors import AuthExpiredError, TransientError, UnexpectedError
from usage_ingest.logging_config import get_logger
from usage_ingest.core.ports import FetchResult
from usage_ingest.session.store import SessionStore

logger = get_logger(__name__)

AUTH_STATUSES = {401, 403}
RETRYABLE_STATUSES = {408, 425, 429}
DEFAULT_CONTENT_TYPE = "text/csv"
CHUNK_SIZE = 1024


def build_auth_headers(payload: Dict[str, Any]) -> Dict[str, str]:
    """Derive request headers from a stored session payload.

    Supports an explicit "headers" mapping and a "cookies" entry given
    either as a list of {"name", "value"} objects or as a name -> value
    mapping.
    """
    headers = {str(k): str(v) for k, v in (payload.get("headers") or {}).items()}

    cookies = payload.get("cookies")
    pairs = []
    if isinstance(cookies, dict):
        pairs = [(str(name), str(value)) for name, value in cookies.items()]
    elif isinstance(cookies, list):
        pairs = [
            (str(c["name"]), str(c.get("value", "")))
            for c in cookies
            if isinstance(c, dict) and c.get("name")
        ]
    if pairs:
        headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in pairs)
    return headers


class HttpUsageFetcher:
    """Fetcher backed by requests and the stored session credential."""

    def __init__(
        self,
        session_store: SessionStore,
        http: Optional[requests.Session] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.session_store = session_store
        self.http = http or requests.Session()
        self._monotonic = monotonic

    def fetch(self, target_url: str, timeout: float) -> FetchResult:
        """GET the export with the stored credential.

        The timeout bounds the whole request: connecting, waiting for the
        response and reading the streamed body.

        Raises:
            AuthExpiredError: No stored session, or the upstream rejected it
            TransientError: Timeout, connection failure, 408/425/429 or 5xx
            UnexpectedError: Any other non-200 response or request failure
        """
        record = self.session_store.read()
        if record is None:
            raise AuthExpiredError("No stored session; log in again")

        headers = build_auth_headers(record.payload)
        if not headers:
            raise AuthExpiredError("Stored session carries no credentials")

        deadline = self._monotonic() + timeout
        with _classify_request_errors(target_url, timeout):
            response = self.http.get(target_url, headers=headers, timeout=timeout, stream=True)
        try:
            status = response.status_code
            if status in AUTH_STATUSES:
                logger.warning("fetch.auth_rejected", status=status)
                raise AuthExpiredError("Upstream rejected the stored session", details={"status": status})
            if status in RETRYABLE_STATUSES or status >= 500:
                raise TransientError(f"Upstream returned {status}", details={"status": status})
            if status != 200:
                raise UnexpectedError(f"Upstream returned unexpected status {status}", details={"status": status})

            with _classify_request_errors(target_url, timeout):
                body = self._read_body(response, deadline, target_url, timeout)
            response_headers = {k.lower(): v for k, v in response.headers.items()}
        finally:
            response.close()

        content_type = response_headers.get("content-type") or DEFAULT_CONTENT_TYPE
        logger.info("fetch.completed", status=status, size_bytes=len(body))
        return FetchResult(
            body=body,
            content_type=content_type,
            source_url=target_url,
            headers=response_headers,
        )

    def _read_body(self, response: Any, deadline: float, target_url: str, timeout: float) -> bytes:
        chunks = []
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if self._monotonic() > deadline:
                raise TransientError(f"Fetch timed out after {timeout}s", details={"url": target_url})
            chunks.append(chunk)
        return b"".join(chunks)


@contextmanager
def _classify_request_errors(target_url: str, timeout: float) -> Iterator[None]:
    try:
        yield
    except requests.Timeout as e:
        raise TransientError(f"Fetch timed out after {timeout}s", details={"url": target_url}) from e
    except requests.ConnectionError as e:
        raise TransientError("Connection to upstream failed", details={"url": target_url}) from e
    except requests.RequestException as e:
        raise UnexpectedError(f"Fetch failed: {e}", details={"url": target_url}) from e
