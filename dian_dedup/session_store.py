"""File-backed store of portal sessions keyed by credential fingerprint."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from .errors import AuthenticationError, ValidationError
from .logging import get_logger
from .models import Credential, PortalSession
from .portal import PortalClient

logger = get_logger(__name__)

FINGERPRINT_PATTERN = re.compile(r"[0-9a-f]{64}")


class SessionStore:
    def __init__(self, directory: Path, portal: PortalClient) -> None:
        self.directory = Path(directory)
        self.portal = portal

    def path_for(self, fingerprint: str) -> Path:
        return self.directory / f"{fingerprint}.json"

    def get_or_create(self, credential: Credential) -> PortalSession:
        """Return the stored session, authenticating only when none exists."""
        existing = self.load(credential.fingerprint)
        if existing is not None:
            logger.info("session_reused", fingerprint=credential.fingerprint)
            return existing
        return self._authenticate(credential)

    def refresh(self, credential: Credential) -> PortalSession:
        """Discard the stored session and run the handshake again."""
        self.invalidate(credential)
        return self._authenticate(credential)

    def load(self, fingerprint: str) -> Optional[PortalSession]:
        if not FINGERPRINT_PATTERN.fullmatch(fingerprint or ""):
            raise ValidationError("session id is not a valid fingerprint")
        path = self.path_for(fingerprint)
        if not path.exists():
            return None
        try:
            session = PortalSession.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("session_unreadable", path=str(path), error=str(exc))
            return None
        if session.fingerprint != fingerprint:
            logger.warning("session_fingerprint_mismatch", path=str(path))
            return None
        return session

    def save(self, session: PortalSession) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(session.fingerprint)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(session.to_dict(), handle)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def invalidate(self, credential: Credential) -> None:
        path = self.path_for(credential.fingerprint)
        path.unlink(missing_ok=True)
        logger.info("session_invalidated", fingerprint=credential.fingerprint)

    def _authenticate(self, credential: Credential) -> PortalSession:
        result = self.portal.authenticate(credential)
        if not result.success:
            raise AuthenticationError(
                f"Portal authentication failed: {result.error or 'unknown error'}",
                status_code=result.status_code,
            )
        session = PortalSession(fingerprint=credential.fingerprint, cookies=result.cookies)
        self.save(session)
        logger.info("session_created", fingerprint=credential.fingerprint)
        return session
