from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Union
from zoneinfo import ZoneInfo

from .config import DEFAULT_START_TIME
from .models import CandidateEvent, Rejected, ValidatedEvent

EVENT_DURATION = timedelta(hours=1)
ISO_DATE_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")

INVALID_DATE = "invalid date"
EMPTY_TITLE = "empty title"


def parse_event_date(value) -> date:
    if not isinstance(value, str):
        raise ValueError(f"Expected a date string, got {type(value).__name__}")
    text = value.strip()
    if not ISO_DATE_REGEX.match(text):
        raise ValueError(f"Cannot parse date from '{value}'")
    return date.fromisoformat(text)


def validate(
    candidate: CandidateEvent,
    tz: ZoneInfo,
    start_time: time = DEFAULT_START_TIME,
    duration: timedelta = EVENT_DURATION,
) -> Union[ValidatedEvent, Rejected]:
    try:
        day = parse_event_date(candidate.date)
    except ValueError as exc:
        logging.debug("Rejecting %r: %s", candidate.title, exc)
        return Rejected(INVALID_DATE)

    warnings: list[str] = []
    if not candidate.title.strip():
        logging.warning("Event on %s has an empty title; keeping it", day)
        warnings.append(EMPTY_TITLE)

    start = datetime.combine(day, start_time, tzinfo=tz)
    return ValidatedEvent(
        title=candidate.title,
        description=candidate.description,
        start=start,
        end=start + duration,
        warnings=tuple(warnings),
        source=candidate,
    )
