from __future__ import annotations

import json
import logging
from datetime import time, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from .auth import AuthorizationSession
from .config import DEFAULT_START_TIME, SCOPES, Settings, load_client_config
from .errors import MalformedExtractionOutput, SyncAborted
from .gcal import CalendarSyncer
from .models import CandidateEvent, OAuthGrant, Rejected, SyncReport, SyncResult, ValidatedEvent
from .store import CredentialStore
from .validator import EVENT_DURATION, validate


def parse_extraction_output(raw) -> List[CandidateEvent]:
    if not isinstance(raw, str):
        raise MalformedExtractionOutput(f"Expected a JSON string, got {type(raw).__name__}")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise MalformedExtractionOutput(f"Extraction output is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedExtractionOutput("Extraction output must be a JSON object")
    items = payload.get("events")
    if not isinstance(items, list):
        raise MalformedExtractionOutput("Extraction output has no 'events' list")
    return [CandidateEvent.from_raw(item) for item in items]


def ensure_grant(
    store: CredentialStore,
    session_factory: Callable[[], AuthorizationSession],
    scopes=SCOPES,
    open_browser: bool = True,
) -> OAuthGrant:
    """Return the stored grant, running the consent flow when there is none.

    Blocks until the user completes (or abandons) consent. Authorization
    errors propagate to the caller.
    """
    grant = store.load()
    if grant is not None and grant.covers(scopes):
        return grant
    if grant is None:
        logging.info("No stored grant, starting authorization")
    else:
        logging.warning("Stored grant lacks %s, re-authorizing", ", ".join(sorted(set(scopes) - grant.scope)))
    session = session_factory()
    return session.run(open_browser=open_browser)


class Pipeline:
    def __init__(
        self,
        syncer: CalendarSyncer,
        tz: ZoneInfo,
        start_time: time = DEFAULT_START_TIME,
        duration: timedelta = EVENT_DURATION,
    ):
        self.syncer = syncer
        self.tz = tz
        self.start_time = start_time
        self.duration = duration

    @classmethod
    def from_settings(cls, settings: Settings, dry_run: bool = False) -> "Pipeline":
        # a dry run makes no remote calls and needs no client secrets
        client_config = {} if dry_run else load_client_config(settings.google_client_secrets)
        syncer = CalendarSyncer(
            CredentialStore(settings.google_token_file),
            client_config,
            calendar_id=settings.calendar_id,
            dry_run=dry_run,
        )
        return cls(syncer, settings.timezone, settings.event_start_time)

    def process(self, raw_extraction_output) -> SyncReport:
        try:
            candidates = parse_extraction_output(raw_extraction_output)
        except MalformedExtractionOutput as exc:
            logging.error("Rejecting extraction output: %s", exc)
            return SyncReport(error=exc)

        report = SyncReport(events=candidates)
        slots: List[Optional[SyncResult]] = [None] * len(candidates)
        pending: list[tuple[int, ValidatedEvent]] = []
        for idx, candidate in enumerate(candidates):
            outcome = validate(candidate, self.tz, self.start_time, self.duration)
            if isinstance(outcome, Rejected):
                logging.info("SKIP %r (%s): %s", candidate.title, candidate.date, outcome.reason)
                slots[idx] = SyncResult.skipped(candidate, outcome.reason)
            else:
                pending.append((idx, outcome))

        try:
            synced = self.syncer.sync_all([event for _, event in pending])
        except SyncAborted as exc:
            report.error = exc
            synced = exc.results

        for (idx, _), result in zip(pending, synced):
            slots[idx] = result
        report.results = slots
        logging.info("Processed %d events: %s", len(candidates), report.summary())
        return report
