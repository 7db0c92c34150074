from __future__ import annotations

import socket
import threading
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError

from syllabus_sync.auth import (
    DENIED_MESSAGE,
    SUCCESS_MESSAGE,
    AuthorizationSession,
    SessionState,
    grant_from_credentials,
)
from syllabus_sync.config import SCOPES
from syllabus_sync.errors import AuthorizationError, CallbackTimeout, TokenExchangeFailure, UserDenied

STATE = "state-123"


def make_flow(refresh_token="refresh-1") -> MagicMock:
    flow = MagicMock()
    flow.authorization_url.return_value = ("https://accounts.example.com/o/oauth2/auth?client_id=x", STATE)
    flow.credentials = SimpleNamespace(
        token="access-1",
        refresh_token=refresh_token,
        expiry=datetime(2030, 1, 1, 12, 0),
        scopes=SCOPES,
        granted_scopes=None,
    )
    return flow


def scope_changed(new_scope) -> Warning:
    """The ``Warning`` oauthlib raises when the token response changes the scope."""
    warning = Warning(f'Scope has changed from "{" ".join(SCOPES)}" to "{" ".join(new_scope)}".')
    warning.token = {
        "access_token": "access-9",
        "refresh_token": "refresh-9",
        "token_type": "Bearer",
        "scope": list(new_scope),
        "expires_at": datetime(2030, 1, 1, tzinfo=timezone.utc).timestamp(),
    }
    warning.old_scope = list(SCOPES)
    warning.new_scope = list(new_scope)
    return warning


def make_session(store, flow=None, **kwargs) -> AuthorizationSession:
    kwargs.setdefault("timeout", 5)
    return AuthorizationSession(flow or make_flow(), store, host="127.0.0.1", port=0, **kwargs)


def visit(urls):
    """Issue GETs one after another from a background thread."""
    responses = []

    def worker():
        with requests.Session() as http:
            http.trust_env = False
            for url in urls:
                responses.append(http.get(url, timeout=5))

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    return thread, responses


def port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        # TIME_WAIT from the answered callback must not count as "in use"
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


class TestConsentUrl:
    def test_begin_binds_listener_and_builds_offline_consent_url(self, store):
        flow = make_flow()
        session = make_session(store, flow)

        url = session.begin()
        try:
            assert url.startswith("https://accounts.example.com/")
            assert session.state is SessionState.AWAITING_USER_CONSENT
            assert flow.redirect_uri == session.redirect_uri
            assert session.redirect_uri.startswith("http://127.0.0.1:")
            assert session.redirect_uri.endswith("/oauth2callback")
            flow.authorization_url.assert_called_once_with(access_type="offline", prompt="consent")
        finally:
            session.close()

    def test_port_in_use_fails_the_session(self, store):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]
            session = AuthorizationSession(make_flow(), store, host="127.0.0.1", port=port)

            with pytest.raises(AuthorizationError):
                session.begin()

        assert session.state is SessionState.FAILED
        assert session.failure_reason

    def test_consent_url_error_fails_the_session_and_frees_the_port(self, store):
        flow = make_flow()
        flow.authorization_url.side_effect = ValueError("Client secrets must be for a web or installed app")
        session = make_session(store, flow)

        with pytest.raises(ValueError):
            session.begin()

        assert session.state is SessionState.FAILED
        assert "installed app" in session.failure_reason
        assert session.redirect_uri is None

    def test_wait_before_begin_is_rejected(self, store):
        with pytest.raises(RuntimeError):
            make_session(store).wait_for_callback()


class TestCallback:
    def test_only_the_real_callback_is_accepted(self, store):
        session = make_session(store)
        session.begin()
        base = session.redirect_uri
        root = base.rsplit("/", 1)[0]
        thread, responses = visit(
            [
                f"{root}/favicon.ico",
                f"{base}?code=forged&state=wrong",
                f"{base}",
                f"{base}?code=abc&state={STATE}",
            ]
        )

        code = session.wait_for_callback()
        thread.join(5)

        assert code == "abc"
        assert [r.status_code for r in responses] == [404, 404, 404, 200]
        assert responses[-1].text == SUCCESS_MESSAGE

    def test_listener_is_released_after_callback(self, store):
        session = make_session(store)
        session.begin()
        port = int(session.redirect_uri.split(":")[2].split("/")[0])
        thread, _ = visit([f"{session.redirect_uri}?code=abc&state={STATE}"])

        session.wait_for_callback()
        thread.join(5)

        assert session.redirect_uri is None
        assert port_is_free(port)

    def test_denied_consent(self, store):
        session = make_session(store)
        session.begin()
        thread, responses = visit([f"{session.redirect_uri}?error=access_denied&state={STATE}"])

        with pytest.raises(UserDenied):
            session.wait_for_callback()
        thread.join(5)

        assert responses[0].text == DENIED_MESSAGE
        assert session.state is SessionState.FAILED
        assert "access_denied" in session.failure_reason
        assert store.load() is None

    def test_timeout_fails_and_releases_the_port(self, store):
        session = make_session(store)
        session.begin()
        port = int(session.redirect_uri.split(":")[2].split("/")[0])

        with pytest.raises(CallbackTimeout):
            session.wait_for_callback(timeout=0.2)

        assert session.state is SessionState.FAILED
        assert port_is_free(port)

    def test_failed_session_is_not_reusable(self, store):
        session = make_session(store)
        session.begin()
        with pytest.raises(CallbackTimeout):
            session.wait_for_callback(timeout=0.1)

        with pytest.raises(RuntimeError):
            session.begin()


class TestExchange:
    def test_run_completes_and_persists_the_grant(self, store):
        flow = make_flow()
        session = make_session(store, flow)
        url = session.begin()
        thread, _ = visit([f"{session.redirect_uri}?code=abc&state={STATE}"])
        code = session.wait_for_callback()
        thread.join(5)

        grant = session.exchange(code)

        flow.fetch_token.assert_called_once_with(code="abc")
        assert url
        assert session.state is SessionState.COMPLETE
        assert grant.access_token == "access-1"
        assert grant.refresh_token == "refresh-1"
        assert grant.expiry == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert grant.scope == frozenset(SCOPES)
        assert store.load() == grant

    def test_run_drives_the_whole_flow(self, store, monkeypatch):
        session = make_session(store)
        opened = []

        def fake_open(url, new=0, autoraise=True):
            opened.append(url)
            visit([f"{session.redirect_uri}?code=abc&state={STATE}"])
            return True

        monkeypatch.setattr("syllabus_sync.auth.webbrowser.open", fake_open)

        grant = session.run()

        assert opened
        assert session.state is SessionState.COMPLETE
        assert store.load() == grant

    def test_exchange_error(self, store):
        flow = make_flow()
        flow.fetch_token.side_effect = InvalidGrantError(description="Bad Request")
        session = make_session(store, flow)
        session.begin()
        thread, _ = visit([f"{session.redirect_uri}?code=abc&state={STATE}"])
        code = session.wait_for_callback()
        thread.join(5)

        with pytest.raises(TokenExchangeFailure):
            session.exchange(code)

        assert session.state is SessionState.FAILED
        assert store.load() is None

    def test_added_scopes_are_accepted(self, store):
        flow = make_flow()
        flow.fetch_token.side_effect = scope_changed(["openid", *SCOPES])
        session = make_session(store, flow)
        session.begin()
        thread, _ = visit([f"{session.redirect_uri}?code=abc&state={STATE}"])
        code = session.wait_for_callback()
        thread.join(5)

        grant = session.exchange(code)

        assert session.state is SessionState.COMPLETE
        assert grant.access_token == "access-9"
        assert grant.refresh_token == "refresh-9"
        assert grant.scope == frozenset(["openid", *SCOPES])
        assert grant.expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert store.load() == grant

    def test_narrowed_scope_fails_the_session(self, store):
        flow = make_flow()
        flow.fetch_token.side_effect = scope_changed(["openid"])
        session = make_session(store, flow)
        session.begin()
        thread, _ = visit([f"{session.redirect_uri}?code=abc&state={STATE}"])
        code = session.wait_for_callback()
        thread.join(5)

        with pytest.raises(TokenExchangeFailure, match="Scope has changed"):
            session.exchange(code)

        assert session.state is SessionState.FAILED
        assert "Scope has changed" in session.failure_reason
        assert store.load() is None

    def test_missing_refresh_token_is_a_failure(self, store):
        session = make_session(store, make_flow(refresh_token=None))
        session.begin()
        thread, _ = visit([f"{session.redirect_uri}?code=abc&state={STATE}"])
        code = session.wait_for_callback()
        thread.join(5)

        with pytest.raises(TokenExchangeFailure):
            session.exchange(code)

        assert store.load() is None


class TestGrantFromCredentials:
    def test_previous_refresh_token_is_kept(self):
        previous = grant_from_credentials(make_flow().credentials)
        creds = SimpleNamespace(
            token="access-2", refresh_token=None, expiry=None, scopes=None, granted_scopes=None
        )

        grant = grant_from_credentials(creds, previous=previous)

        assert grant.refresh_token == "refresh-1"
        assert grant.is_expired()
        assert grant.scope == frozenset(SCOPES)
