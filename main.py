from __future__ import annotations

import argparse
import functools
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from googleapiclient.errors import HttpError

from syllabus_sync.auth import AuthorizationSession
from syllabus_sync.config import get_settings
from syllabus_sync.errors import AuthorizationError
from syllabus_sync.pipeline import Pipeline, ensure_grant
from syllabus_sync.store import CredentialStore


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync extracted syllabus events to Google Calendar")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    authorize = sub.add_parser("authorize", help="Run the consent flow and store a new grant")
    authorize.add_argument("--no-browser", action="store_true", help="Only print the consent URL")

    sync = sub.add_parser("sync", help="Insert events from extraction output JSON")
    sync.add_argument("source", help="Path to the extraction output, or - for stdin")
    sync.add_argument("--dry-run", action="store_true", help="Validate and show actions without modifying calendar")
    sync.add_argument("--no-browser", action="store_true", help="Only print the consent URL if one is needed")

    upcoming = sub.add_parser("upcoming", help="List upcoming calendar events")
    upcoming.add_argument("--max", type=int, default=10, help="Number of events to list")
    upcoming.add_argument("--no-browser", action="store_true", help="Only print the consent URL if one is needed")
    return parser.parse_args(argv)


def read_source(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    settings = get_settings()
    store = CredentialStore(settings.google_token_file)
    session_factory = functools.partial(AuthorizationSession.from_settings, settings, store)
    open_browser = not args.no_browser

    try:
        if args.command == "authorize":
            session_factory().run(open_browser=open_browser)
            logging.info("Done")
            return 0

        if args.command == "upcoming":
            ensure_grant(store, session_factory, open_browser=open_browser)
            upcoming = Pipeline.from_settings(settings).syncer.list_upcoming(args.max)
            if not upcoming:
                print("No upcoming events found.")
            for start, summary in upcoming:
                print(f"{start} - {summary}")
            return 0

        raw = read_source(args.source)
        if not args.dry_run:
            ensure_grant(store, session_factory, open_browser=open_browser)
        report = Pipeline.from_settings(settings, dry_run=args.dry_run).process(raw)
    except AuthorizationError as exc:
        logging.error("Authorization failed: %s", exc)
        return 1
    except HttpError as exc:
        logging.error("Calendar request failed: %s", exc)
        return 1
    except (OSError, ValueError) as exc:
        logging.error("%s", exc)
        return 1

    for line in report.describe():
        print(line)
    print(report.summary())
    if report.malformed:
        return 2
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
