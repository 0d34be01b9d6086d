"""Tests for request helpers: retries, redirects and session setup."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from unit_fetch import (
    USER_AGENT,
    ThreadSessions,
    build_session,
    fetch_response,
    is_transient,
    parse_header_args,
)
from unit_models import ConfigError

from conftest import make_response

URL = "https://mlu.test/Unit/Card/1"


class TestFetchResponse:
    def test_returns_response(self) -> None:
        session = MagicMock()
        session.get.return_value = make_response(URL, text="ok")
        assert fetch_response(session, URL).text == "ok"
        session.get.assert_called_once_with(URL, timeout=30.0, allow_redirects=True)

    def test_redirect_returned_without_following(self) -> None:
        session = MagicMock()
        session.get.return_value = make_response(URL, status=302, headers={"Location": "/login"})
        response = fetch_response(session, URL, allow_redirects=False)
        assert response.is_redirect

    def test_retries_transient_errors(self) -> None:
        session = MagicMock()
        session.get.side_effect = [
            requests.ConnectionError("reset"),
            make_response(URL, status=503),
            make_response(URL, text="ok"),
        ]
        assert fetch_response(session, URL, retries=2, backoff=0).text == "ok"
        assert session.get.call_count == 3

    def test_gives_up_after_retries(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(requests.Timeout):
            fetch_response(session, URL, retries=1, backoff=0)
        assert session.get.call_count == 2

    def test_client_errors_not_retried(self) -> None:
        session = MagicMock()
        session.get.return_value = make_response(URL, status=404)
        with pytest.raises(requests.HTTPError):
            fetch_response(session, URL, retries=3, backoff=0)
        assert session.get.call_count == 1


class TestIsTransient:
    def test_server_error(self) -> None:
        exc = requests.HTTPError(response=make_response(URL, status=500))
        assert is_transient(exc)

    def test_client_error(self) -> None:
        exc = requests.HTTPError(response=make_response(URL, status=403))
        assert not is_transient(exc)


class TestSessions:
    def test_build_session_headers(self) -> None:
        session = build_session({"X-Test": "1"})
        assert session.headers["User-Agent"] == USER_AGENT
        assert session.headers["X-Test"] == "1"

    def test_missing_cookie_file_is_config_error(self, tmp_path) -> None:
        with pytest.raises(ConfigError):
            build_session(cookie_file=str(tmp_path / "cookies.txt"))

    def test_parse_header_args(self) -> None:
        assert parse_header_args(["Referer: https://mlu.test/", "X-A:b"]) == {
            "Referer": "https://mlu.test/",
            "X-A": "b",
        }

    def test_parse_header_args_rejects_garbage(self) -> None:
        with pytest.raises(ConfigError):
            parse_header_args(["no-colon"])

    def test_one_session_per_thread(self) -> None:
        created = []

        def factory() -> MagicMock:
            session = MagicMock()
            created.append(session)
            return session

        sessions = ThreadSessions(factory)
        assert sessions.get() is sessions.get()
        sessions.close()
        assert len(created) == 1
        created[0].close.assert_called_once()
