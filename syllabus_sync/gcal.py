from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import grant_from_credentials
from .config import SCOPES
from .errors import SyncAborted, TokenExchangeFailure
from .models import OAuthGrant, SyncResult, SyncStatus, ValidatedEvent
from .store import CredentialStore


def grant_to_credentials(grant: OAuthGrant, client_config: dict) -> Credentials:
    return Credentials(
        token=grant.access_token,
        refresh_token=grant.refresh_token,
        token_uri=client_config["token_uri"],
        client_id=client_config["client_id"],
        client_secret=client_config["client_secret"],
        scopes=sorted(grant.scope) or SCOPES,
        # google-auth compares against naive UTC
        expiry=grant.expiry.astimezone(timezone.utc).replace(tzinfo=None),
    )


def refresh_grant(grant: OAuthGrant, client_config: dict, request=None) -> OAuthGrant:
    creds = grant_to_credentials(grant, client_config)
    try:
        creds.refresh(request or Request())
    except GoogleAuthError as exc:
        raise TokenExchangeFailure(f"Token refresh failed: {exc}") from exc
    return grant_from_credentials(creds, sorted(grant.scope) or SCOPES, previous=grant)


def build_service(grant: OAuthGrant, client_config: dict):
    creds = grant_to_credentials(grant, client_config)
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


class CalendarSyncer:
    def __init__(
        self,
        store: CredentialStore,
        client_config: dict,
        calendar_id: str = "primary",
        refresher: Callable[[OAuthGrant, dict], OAuthGrant] = refresh_grant,
        service_factory: Callable = build_service,
        dry_run: bool = False,
    ):
        self.store = store
        self.client_config = client_config
        self.calendar_id = calendar_id
        self.refresher = refresher
        self.service_factory = service_factory
        self.dry_run = dry_run

    def authenticate(self):
        grant = self.store.load()
        if grant is None:
            raise TokenExchangeFailure("No stored grant; run the authorization flow first")
        if grant.is_expired() or grant_to_credentials(grant, self.client_config).expired:
            logging.info("Access token expired at %s, refreshing", grant.expiry)
            grant = self.refresher(grant, self.client_config)
            self.store.save(grant)
        return self.service_factory(grant, self.client_config)

    def insert_one(self, service, event: ValidatedEvent) -> SyncResult:
        candidate = event.candidate
        if self.dry_run:
            logging.info("CREATE (dry run) %s %s-%s", event.title, event.start, event.end)
            return SyncResult.skipped(candidate, "dry run", event.warnings)

        logging.info("CREATE %s %s-%s", event.title, event.start, event.end)
        try:
            created = (
                service.events()
                .insert(calendarId=self.calendar_id, body=event.to_gcal_body())
                .execute()
            )
        except GoogleAuthError as exc:
            # the transport refreshed on its own and the grant was refused
            raise TokenExchangeFailure(f"Token refresh failed: {exc}") from exc
        except HttpError as exc:
            reason = f"HTTP {exc.resp.status}: {exc.reason}"
        except (OSError, httplib2.HttpLib2Error) as exc:
            reason = f"Network error: {exc}"
        else:
            return SyncResult.inserted(candidate, (created or {}).get("id"), event.warnings)

        logging.warning("Failed to insert %s: %s", event.title, reason)
        return SyncResult.failed(candidate, reason, event.warnings)

    def sync_all(self, events: Sequence[ValidatedEvent]) -> List[SyncResult]:
        if not events:
            return []
        service = None
        if not self.dry_run:
            try:
                service = self.authenticate()
            except (TokenExchangeFailure, OSError) as exc:
                self._abort([], events, exc)

        results: List[SyncResult] = []
        for idx, event in enumerate(events):
            try:
                results.append(self.insert_one(service, event))
            except TokenExchangeFailure as exc:
                self._abort(results, events[idx:], exc)
        failed = sum(1 for r in results if r.status is SyncStatus.FAILED)
        logging.info("Sync complete. %d events, %d failed", len(results), failed)
        return results

    def _abort(self, done: List[SyncResult], remaining: Sequence[ValidatedEvent], exc: Exception):
        logging.error("Aborting sync of %d events: %s", len(remaining), exc)
        reason = f"Authentication failed: {exc}"
        failed = [SyncResult.failed(e.candidate, reason, e.warnings) for e in remaining]
        raise SyncAborted(str(exc), list(done) + failed) from exc

    def list_upcoming(self, max_results: int = 10, now: Optional[datetime] = None) -> list[tuple[str, str]]:
        service = self.authenticate()
        now = now or datetime.now(timezone.utc)
        try:
            events_result = (
                service.events()
                .list(
                    calendarId=self.calendar_id,
                    timeMin=now.isoformat(),
                    maxResults=max_results,
                    singleEvents=True,
                    orderBy="startTime",
                )
                .execute()
            )
        except GoogleAuthError as exc:
            raise TokenExchangeFailure(f"Token refresh failed: {exc}") from exc
        upcoming = []
        for item in events_result.get("items", []):
            start = item.get("start", {})
            upcoming.append((start.get("dateTime") or start.get("date", ""), item.get("summary", "")))
        logging.info("Found %d upcoming events", len(upcoming))
        return upcoming
