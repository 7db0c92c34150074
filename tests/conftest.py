from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from syllabus_sync.config import SCOPES
from syllabus_sync.models import OAuthGrant
from syllabus_sync.store import CredentialStore

CLIENT_CONFIG = {
    "client_id": "client-id.apps.googleusercontent.com",
    "client_secret": "client-secret",
    "token_uri": "https://oauth2.googleapis.com/token",
    "auth_uri": "https://accounts.google.com/o/oauth2/auth",
}


def make_grant(
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: timedelta = timedelta(hours=1),
    scope=SCOPES,
) -> OAuthGrant:
    return OAuthGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=datetime.now(timezone.utc).replace(microsecond=0) + expires_in,
        scope=frozenset(scope),
    )


@pytest.fixture
def tz() -> ZoneInfo:
    return ZoneInfo("America/New_York")


@pytest.fixture
def client_config() -> dict:
    return dict(CLIENT_CONFIG)


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "token.json")


@pytest.fixture
def fresh_grant(store) -> OAuthGrant:
    grant = make_grant()
    store.save(grant)
    return grant


@pytest.fixture
def service() -> MagicMock:
    """Calendar service double; ``insert().execute`` returns created events."""
    service = MagicMock()
    service.events.return_value.insert.return_value.execute.return_value = {"id": "evt-1"}
    return service
