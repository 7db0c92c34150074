from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .errors import MalformedExtractionOutput, SyncAborted

# google-auth treats a token as stale 3m45s before expiry; refresh ahead of it
EXPIRY_SKEW = timedelta(minutes=5)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class OAuthGrant:
    access_token: str
    refresh_token: str
    expiry: datetime
    scope: frozenset[str] = frozenset()

    def __post_init__(self):
        if not self.access_token or not self.refresh_token:
            raise ValueError("Grant requires both an access token and a refresh token")
        object.__setattr__(self, "expiry", _as_utc(self.expiry))
        object.__setattr__(self, "scope", frozenset(self.scope))

    def __repr__(self) -> str:
        return f"OAuthGrant(expiry={self.expiry.isoformat()}, scope={sorted(self.scope)})"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = _as_utc(now) if now else datetime.now(timezone.utc)
        return now >= self.expiry - EXPIRY_SKEW

    def covers(self, scopes) -> bool:
        return set(scopes) <= self.scope

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": self.expiry.isoformat(),
            "scope": sorted(self.scope),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "OAuthGrant":
        if not isinstance(data, dict):
            raise ValueError("Grant record must be a JSON object")
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ValueError("Grant record has missing tokens")
        expiry_raw = data.get("expiry")
        if not isinstance(expiry_raw, str):
            raise ValueError("Grant record has no expiry")
        expiry = datetime.fromisoformat(expiry_raw.replace("Z", "+00:00"))
        scope_raw = data.get("scope", [])
        if isinstance(scope_raw, str):
            scope_raw = scope_raw.split()
        if not isinstance(scope_raw, list) or not all(isinstance(s, str) for s in scope_raw):
            raise ValueError("Grant record has an invalid scope")
        return cls(access_token, refresh_token, expiry, frozenset(scope_raw))


@dataclass
class CandidateEvent:
    title: str
    description: str
    date: Any
    raw: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_raw(cls, item: Any) -> "CandidateEvent":
        if not isinstance(item, dict):
            return cls(title="", description="", date=None, raw=item)
        return cls(
            title=_text(item.get("title")),
            description=_text(item.get("description")),
            date=item.get("date"),
            raw=item,
        )


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


@dataclass(frozen=True)
class ValidatedEvent:
    title: str
    description: str
    start: datetime
    end: datetime
    warnings: tuple[str, ...] = ()
    source: Optional[CandidateEvent] = field(default=None, repr=False, compare=False)

    @property
    def candidate(self) -> CandidateEvent:
        if self.source is not None:
            return self.source
        return CandidateEvent(self.title, self.description, self.start.date().isoformat())

    @property
    def time_zone(self) -> str:
        return getattr(self.start.tzinfo, "key", None) or "UTC"

    def to_gcal_body(self) -> dict:
        return {
            "summary": self.title,
            "description": self.description,
            "start": {"dateTime": self.start.isoformat(), "timeZone": self.time_zone},
            "end": {"dateTime": self.end.isoformat(), "timeZone": self.time_zone},
        }


@dataclass(frozen=True)
class Rejected:
    reason: str


class SyncStatus(enum.Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncResult:
    event: CandidateEvent
    status: SyncStatus
    reason: Optional[str] = None
    remote_id: Optional[str] = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def inserted(cls, event: CandidateEvent, remote_id: Optional[str] = None, warnings=()) -> "SyncResult":
        return cls(event, SyncStatus.INSERTED, remote_id=remote_id, warnings=tuple(warnings))

    @classmethod
    def skipped(cls, event: CandidateEvent, reason: str, warnings=()) -> "SyncResult":
        return cls(event, SyncStatus.SKIPPED, reason=reason, warnings=tuple(warnings))

    @classmethod
    def failed(cls, event: CandidateEvent, reason: str, warnings=()) -> "SyncResult":
        return cls(event, SyncStatus.FAILED, reason=reason, warnings=tuple(warnings))


@dataclass
class SyncReport:
    events: list[CandidateEvent] = field(default_factory=list)
    results: list[SyncResult] = field(default_factory=list)
    error: Optional[Exception] = None

    def _count(self, status: SyncStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def inserted(self) -> int:
        return self._count(SyncStatus.INSERTED)

    @property
    def skipped(self) -> int:
        return self._count(SyncStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(SyncStatus.FAILED)

    @property
    def malformed(self) -> bool:
        return isinstance(self.error, MalformedExtractionOutput)

    @property
    def aborted(self) -> bool:
        return isinstance(self.error, SyncAborted)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0

    def summary(self) -> str:
        if self.malformed:
            return f"Extraction output rejected: {self.error}"
        text = f"{self.inserted} inserted, {self.skipped} skipped, {self.failed} failed"
        if self.aborted:
            text += f" (aborted: {self.error})"
        return text

    def describe(self) -> list[str]:
        lines = []
        for result in self.results:
            label = result.event.title or "<untitled>"
            line = f"{result.status.value.upper():<8} {label} ({result.event.date})"
            if result.reason:
                line += f": {result.reason}"
            if result.warnings:
                line += f" [{', '.join(result.warnings)}]"
            lines.append(line)
        return lines
