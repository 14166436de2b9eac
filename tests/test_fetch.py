"""
Tests for the fetch adapters.
"""

from unittest.mock import MagicMock

import pytest
import requests

from usage_ingest.errors import AuthExpiredError, TransientError, UnexpectedError
from usage_ingest.fetch.http import HttpUsageFetcher, build_auth_headers
from usage_ingest.fetch.local import LocalFileFetcher
from usage_ingest.session.store import SessionStore

URL = "https://cursor.com/api/dashboard/export-usage-events-csv?strategy=tokens"
SESSION = {"cookies": [{"name": "WorkosCursorSessionToken", "value": "tok"}, {"name": "theme", "value": "dark"}]}


def _response(status_code=200, content=b"Model\ngpt-5\n", headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.iter_content.return_value = [content[:6], content[6:]]
    response.headers = headers if headers is not None else {"Content-Type": "text/csv; charset=utf-8"}
    return response


@pytest.fixture
def session_store(tmp_path):
    store = SessionStore(str(tmp_path / "sessions"), key_loader=lambda: bytes(32))
    store.save(SESSION, encrypt=False)
    return store


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session)


class TestBuildAuthHeaders:
    def test_cookie_list(self):
        assert build_auth_headers(SESSION) == {"Cookie": "WorkosCursorSessionToken=tok; theme=dark"}

    def test_cookie_mapping_and_headers(self):
        headers = build_auth_headers({"cookies": {"a": "1"}, "headers": {"User-Agent": "ingest"}})
        assert headers == {"Cookie": "a=1", "User-Agent": "ingest"}

    def test_no_credentials(self):
        assert build_auth_headers({"createdAt": "2025-02-10"}) == {}


class TestHttpUsageFetcher:
    """Test request outcome classification."""

    def test_success(self, session_store, http):
        http.get.return_value = _response()

        result = HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=12.5)

        assert result.body == b"Model\ngpt-5\n"
        assert result.content_type == "text/csv; charset=utf-8"
        assert result.source_url == URL
        http.get.assert_called_once_with(
            URL,
            headers={"Cookie": "WorkosCursorSessionToken=tok; theme=dark"},
            timeout=12.5,
            stream=True,
        )
        http.get.return_value.close.assert_called_once_with()

    def test_missing_content_type_defaults_to_csv(self, session_store, http):
        http.get.return_value = _response(headers={})
        assert HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1).content_type == "text/csv"

    def test_no_session_is_auth_expired(self, tmp_path, http):
        store = SessionStore(str(tmp_path / "empty"), key_loader=lambda: bytes(32))

        with pytest.raises(AuthExpiredError):
            HttpUsageFetcher(store, http=http).fetch(URL, timeout=1)
        http.get.assert_not_called()

    def test_session_without_credentials_is_auth_expired(self, tmp_path, http):
        store = SessionStore(str(tmp_path), key_loader=lambda: bytes(32))
        store.save({"user": "dev"}, encrypt=False)

        with pytest.raises(AuthExpiredError):
            HttpUsageFetcher(store, http=http).fetch(URL, timeout=1)

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejected_credentials(self, session_store, http, status):
        http.get.return_value = _response(status_code=status)
        with pytest.raises(AuthExpiredError):
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_retryable_statuses(self, session_store, http, status):
        http.get.return_value = _response(status_code=status)
        with pytest.raises(TransientError) as exc_info:
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)
        assert exc_info.value.retryable

    @pytest.mark.parametrize("status", [204, 302, 404])
    def test_other_statuses_are_unexpected(self, session_store, http, status):
        http.get.return_value = _response(status_code=status)
        with pytest.raises(UnexpectedError):
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)

    @pytest.mark.parametrize("exc", [requests.Timeout("slow"), requests.ConnectionError("reset")])
    def test_network_failures_are_transient(self, session_store, http, exc):
        http.get.side_effect = exc
        with pytest.raises(TransientError):
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)

    def test_other_request_failures_are_unexpected(self, session_store, http):
        http.get.side_effect = requests.TooManyRedirects("loop")
        with pytest.raises(UnexpectedError):
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)

    def test_slow_body_exceeds_total_deadline(self, session_store, http):
        """A body trickling in past the deadline is a retryable timeout."""
        response = _response()
        response.iter_content.return_value = [b"Model\n", b"gpt-5\n", b"claude\n"]
        http.get.return_value = response
        ticks = iter([0.0, 1.0, 4.0, 11.0])

        fetcher = HttpUsageFetcher(session_store, http=http, monotonic=lambda: next(ticks))

        with pytest.raises(TransientError, match="timed out"):
            fetcher.fetch(URL, timeout=10)
        response.close.assert_called_once_with()

    def test_body_within_deadline(self, session_store, http):
        http.get.return_value = _response()
        ticks = iter([0.0, 9.0, 9.5])

        result = HttpUsageFetcher(session_store, http=http, monotonic=lambda: next(ticks)).fetch(URL, timeout=10)

        assert result.body == b"Model\ngpt-5\n"

    def test_connection_drop_while_reading_is_transient(self, session_store, http):
        response = _response()
        response.iter_content.side_effect = requests.ConnectionError("reset mid-body")
        http.get.return_value = response

        with pytest.raises(TransientError):
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)
        response.close.assert_called_once_with()

    def test_error_status_closes_response(self, session_store, http):
        http.get.return_value = _response(status_code=503)
        with pytest.raises(TransientError):
            HttpUsageFetcher(session_store, http=http).fetch(URL, timeout=1)
        http.get.return_value.close.assert_called_once_with()


class TestLocalFileFetcher:
    def test_reads_path(self, tmp_path):
        export = tmp_path / "usage.csv"
        export.write_bytes(b"Model\ngpt-5\n")

        result = LocalFileFetcher(str(export)).fetch("https://ignored", timeout=1)

        assert result.body == b"Model\ngpt-5\n"
        assert result.content_type == "text/csv"
        assert result.source_url == export.resolve().as_uri()

    def test_reads_file_url(self, tmp_path):
        export = tmp_path / "usage.json"
        export.write_bytes(b"[]")

        result = LocalFileFetcher().fetch(export.resolve().as_uri(), timeout=1)

        assert result.body == b"[]"
        assert result.content_type == "application/json"

    def test_missing_file_is_unexpected(self, tmp_path):
        with pytest.raises(UnexpectedError):
            LocalFileFetcher(str(tmp_path / "missing.csv")).fetch("", timeout=1)
