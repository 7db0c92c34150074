from __future__ import annotations

import enum
import logging
import time
import urllib.parse
import webbrowser
import wsgiref.simple_server
from datetime import datetime, timezone
from typing import Optional

from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests.exceptions import RequestException

from .config import SCOPES, Settings
from .errors import AuthorizationError, CallbackTimeout, TokenExchangeFailure, UserDenied
from .models import OAuthGrant
from .store import CredentialStore

SUCCESS_MESSAGE = "Authorization complete. You can close this window."
DENIED_MESSAGE = "Authorization was not granted. You can close this window."


class SessionState(enum.Enum):
    IDLE = "idle"
    AWAITING_USER_CONSENT = "awaiting_user_consent"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"


def grant_from_credentials(credentials, scopes=SCOPES, previous: Optional[OAuthGrant] = None) -> OAuthGrant:
    """Build a grant from google-auth ``Credentials``.

    A missing refresh token falls back to ``previous``; a missing expiry is
    treated as already expired.
    """
    refresh_token = credentials.refresh_token or (previous.refresh_token if previous else None)
    if not credentials.token or not refresh_token:
        raise TokenExchangeFailure("Token endpoint did not return both an access and a refresh token")
    granted = getattr(credentials, "granted_scopes", None) or credentials.scopes or scopes
    return OAuthGrant(
        access_token=credentials.token,
        refresh_token=refresh_token,
        expiry=credentials.expiry or datetime.now(timezone.utc),
        scope=frozenset(granted),
    )


def grant_from_token(token: dict, scopes) -> OAuthGrant:
    """Build a grant from a raw oauthlib token response."""
    if not token.get("access_token") or not token.get("refresh_token"):
        raise TokenExchangeFailure("Token endpoint did not return both an access and a refresh token")
    expires_at = token.get("expires_at")
    expiry = datetime.fromtimestamp(expires_at, timezone.utc) if expires_at else datetime.now(timezone.utc)
    return OAuthGrant(
        access_token=token["access_token"],
        refresh_token=token["refresh_token"],
        expiry=expiry,
        scope=frozenset(scopes),
    )


class _CallbackRequestHandler(wsgiref.simple_server.WSGIRequestHandler):
    timeout = 10

    def log_message(self, format, *args):
        logging.debug(format, *args)


class _CallbackApp:
    """Answers the single redirect carrying ``code`` or ``error``; 404 for anything else."""

    def __init__(self, path: str):
        self.path = path
        self.expected_state: Optional[str] = None
        self.params: Optional[dict[str, str]] = None

    def _matches(self, environ, params: dict[str, str]) -> bool:
        if self.params is not None or environ.get("PATH_INFO") != self.path:
            return False
        if "code" not in params and "error" not in params:
            return False
        return self.expected_state is None or params.get("state") == self.expected_state

    def __call__(self, environ, start_response):
        query = urllib.parse.parse_qs(environ.get("QUERY_STRING", ""))
        params = {key: values[0] for key, values in query.items()}
        if not self._matches(environ, params):
            logging.debug("Ignoring request to %s", environ.get("PATH_INFO"))
            start_response("404 Not Found", [("Content-type", "text/plain; charset=utf-8")])
            return [b"Not found"]
        self.params = params
        message = SUCCESS_MESSAGE if "code" in params else DENIED_MESSAGE
        start_response("200 OK", [("Content-type", "text/plain; charset=utf-8")])
        return [message.encode("utf-8")]


class AuthorizationSession:
    """One interactive consent attempt.

    ``begin`` binds the redirect listener and returns the consent URL,
    ``wait_for_callback`` blocks until the browser is redirected back (or the
    timeout passes) and ``exchange`` trades the code for a grant, which is
    saved to the store. A failed session stays failed; start a new one to
    retry.
    """

    def __init__(
        self,
        flow,
        store: CredentialStore,
        host: str = "localhost",
        port: int = 3000,
        path: str = "/oauth2callback",
        timeout: float = 300.0,
        scopes=SCOPES,
    ):
        self.flow = flow
        self.store = store
        self.host = host
        self.port = port
        self.path = path
        self.timeout = timeout
        self.scopes = list(scopes)
        self.state = SessionState.IDLE
        self.failure_reason: Optional[str] = None
        self.grant: Optional[OAuthGrant] = None
        self._server: Optional[wsgiref.simple_server.WSGIServer] = None
        self._app: Optional[_CallbackApp] = None

    @classmethod
    def from_settings(cls, settings: Settings, store: CredentialStore) -> "AuthorizationSession":
        flow = Flow.from_client_secrets_file(settings.google_client_secrets, scopes=SCOPES)
        return cls(
            flow,
            store,
            host=settings.redirect_host,
            port=settings.redirect_port,
            path=settings.redirect_path,
            timeout=settings.callback_timeout,
        )

    @property
    def redirect_uri(self) -> Optional[str]:
        if self._server is None:
            return None
        return f"http://{self.host}:{self._server.server_port}{self.path}"

    def _require(self, expected: SessionState) -> None:
        if self.state is not expected:
            raise RuntimeError(f"Session is {self.state.value}, expected {expected.value}")

    def _fail(self, exc: Exception) -> None:
        self.state = SessionState.FAILED
        self.failure_reason = str(exc)
        logging.error("Authorization failed: %s", exc)

    def begin(self) -> str:
        self._require(SessionState.IDLE)
        self._app = _CallbackApp(self.path)
        try:
            self._server = wsgiref.simple_server.make_server(
                self.host, self.port, self._app, handler_class=_CallbackRequestHandler
            )
        except OSError as exc:
            error = AuthorizationError(f"Cannot listen on {self.host}:{self.port}: {exc}")
            self._fail(error)
            raise error from exc

        try:
            self.flow.redirect_uri = self.redirect_uri
            url, state = self.flow.authorization_url(access_type="offline", prompt="consent")
        except Exception as exc:
            self.close()
            self._fail(exc)
            raise
        self._app.expected_state = state
        self.state = SessionState.AWAITING_USER_CONSENT
        logging.debug("Listening for the OAuth redirect on %s", self.redirect_uri)
        return url

    def wait_for_callback(self, timeout: Optional[float] = None) -> str:
        self._require(SessionState.AWAITING_USER_CONSENT)
        self.state = SessionState.AWAITING_CALLBACK
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        try:
            while self._app.params is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise CallbackTimeout(f"No authorization callback within {timeout:g} seconds")
                self._server.timeout = remaining
                self._server.handle_request()
            params = self._app.params
            if "error" in params:
                raise UserDenied(f"Consent was refused: {params['error']}")
        except AuthorizationError as exc:
            self._fail(exc)
            raise
        finally:
            self.close()
        return params["code"]

    def _fetch_grant(self, code: str) -> OAuthGrant:
        try:
            self.flow.fetch_token(code=code)
        except (OAuth2Error, RequestException, ValueError) as exc:
            raise TokenExchangeFailure(f"Code exchange failed: {exc}") from exc
        except Warning as exc:
            # oauthlib raises when the granted scope differs from the requested one
            granted = getattr(exc, "new_scope", None) or []
            if isinstance(granted, str):
                granted = granted.split()
            token = getattr(exc, "token", None)
            if not token or not set(self.scopes) <= set(granted):
                raise TokenExchangeFailure(f"Code exchange failed: {exc}") from exc
            logging.info("Token response added scopes: %s", " ".join(sorted(set(granted) - set(self.scopes))))
            return grant_from_token(token, granted)
        return grant_from_credentials(self.flow.credentials, self.scopes)

    def exchange(self, code: str) -> OAuthGrant:
        self._require(SessionState.AWAITING_CALLBACK)
        self.state = SessionState.EXCHANGING
        try:
            grant = self._fetch_grant(code)
        except TokenExchangeFailure as exc:
            self._fail(exc)
            raise
        try:
            self.store.save(grant)
        except OSError as exc:
            self._fail(exc)
            raise
        self.grant = grant
        self.state = SessionState.COMPLETE
        logging.info("Authorization complete, grant expires %s", grant.expiry)
        return grant

    def run(self, open_browser: bool = True, timeout: Optional[float] = None) -> OAuthGrant:
        url = self.begin()
        try:
            logging.info("Please visit this URL to authorize calendar access: %s", url)
            if open_browser:
                webbrowser.open(url, new=1, autoraise=True)
            code = self.wait_for_callback(timeout)
        finally:
            self.close()
        return self.exchange(code)

    def close(self) -> None:
        if self._server is not None:
            self._server.server_close()
            self._server = None
