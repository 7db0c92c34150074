from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from .models import OAuthGrant

_LOCK = threading.Lock()


class CredentialStore:
    """Keeps the single OAuth grant in a JSON file.

    Writes go through a temporary file and ``os.replace`` under a
    process-wide lock, so a reader sees either the old grant or the new one.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def load(self) -> Optional[OAuthGrant]:
        if not self.path.exists():
            logging.debug("No stored grant at %s", self.path)
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            grant = OAuthGrant.from_dict(data)
        except (OSError, ValueError) as exc:
            logging.warning("Ignoring unusable grant in %s: %s", self.path, exc)
            return None
        logging.debug("Loaded grant from %s, expires %s", self.path, grant.expiry)
        return grant

    def save(self, grant: OAuthGrant) -> None:
        payload = json.dumps(grant.to_dict(), indent=2)
        with _LOCK:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        logging.info("Grant stored at %s", self.path)
