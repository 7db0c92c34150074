from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import time
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

SCOPES = ["https://www.googleapis.com/auth/calendar"]

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_START_TIME = time(10, 0)


@dataclass
class Settings:
    calendar_id: str
    timezone: ZoneInfo
    google_client_secrets: str
    google_token_file: str
    redirect_host: str = "localhost"
    redirect_port: int = 3000
    redirect_path: str = "/oauth2callback"
    callback_timeout: float = 300.0
    event_start_time: time = DEFAULT_START_TIME


def get_timezone() -> ZoneInfo:
    tz_name = os.getenv("TIMEZONE", DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(tz_name)
    except Exception:
        logging.warning("Invalid TIMEZONE %s, falling back to %s", tz_name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def get_start_time() -> time:
    raw = os.getenv("EVENT_START_TIME", "")
    if not raw:
        return DEFAULT_START_TIME
    try:
        return time.fromisoformat(raw)
    except ValueError:
        logging.warning("Invalid EVENT_START_TIME %s, falling back to %s", raw, DEFAULT_START_TIME)
        return DEFAULT_START_TIME


def _get_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logging.warning("Invalid %s %s, falling back to %s", name, raw, default)
        return default


def get_settings() -> Settings:
    path = os.getenv("OAUTH_REDIRECT_PATH", "/oauth2callback")
    if not path.startswith("/"):
        path = "/" + path
    settings = Settings(
        calendar_id=os.getenv("CALENDAR_ID", "primary"),
        timezone=get_timezone(),
        google_client_secrets=os.getenv("GOOGLE_CLIENT_SECRETS", "credentials.json"),
        google_token_file=os.getenv("GOOGLE_TOKEN_FILE", "token.json"),
        redirect_host=os.getenv("OAUTH_REDIRECT_HOST", "localhost"),
        redirect_port=_get_number("OAUTH_REDIRECT_PORT", 3000, int),
        redirect_path=path,
        callback_timeout=_get_number("OAUTH_CALLBACK_TIMEOUT", 300.0, float),
        event_start_time=get_start_time(),
    )
    if not os.path.exists(settings.google_client_secrets):
        logging.warning("Client secrets file %s not found", settings.google_client_secrets)
    return settings


def load_client_config(path: str) -> dict:
    """Return the ``installed`` or ``web`` section of a Google client secrets file."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    for client_type in ("installed", "web"):
        section = data.get(client_type) if isinstance(data, dict) else None
        if isinstance(section, dict):
            missing = [k for k in ("client_id", "client_secret", "token_uri") if not section.get(k)]
            if missing:
                raise ValueError(f"Client secrets {path} missing {', '.join(missing)}")
            return section
    raise ValueError(f"Client secrets {path} must contain an 'installed' or 'web' client")
