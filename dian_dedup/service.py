"""Request validation and run orchestration behind the HTTP and CLI entrypoints."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .bundle import extract
from .engine import ReconciliationEngine
from .errors import AuthenticationError, ValidationError
from .grouper import DuplicateGrouper
from .logging import get_logger
from .models import Credential, ReconciliationReport, ReconciliationRequest
from .portal import PortalClient
from .session_store import SessionStore
from .stats import StatsAggregator

logger = get_logger(__name__)

DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
OWNER_PATTERN = re.compile(r"\d+")


def parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"Field '{field_name}' is required")
    if not DATE_PATTERN.fullmatch(text):
        raise ValidationError(f"Field '{field_name}' must use the YYYY-MM-DD format")
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError(f"Field '{field_name}' is not a calendar date") from exc


def parse_limit(value: Any) -> Optional[int]:
    """Positive integer, or None for anything that means "no limit"."""
    if value is None or value == "":
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Field 'limit' must be an integer") from exc
    return limit if limit > 0 else None


def build_request(
    owner: Any,
    date_from: Any,
    date_to: Any,
    credential_url: Any,
    limit: Any = None,
) -> ReconciliationRequest:
    owner_text = str(owner or "").strip()
    if not owner_text:
        raise ValidationError("Field 'owner' is required")
    if not OWNER_PATTERN.fullmatch(owner_text):
        raise ValidationError("Field 'owner' must be a numeric identification number")

    start = parse_date(date_from, "fromDate")
    end = parse_date(date_to, "toDate")
    if start > end:
        raise ValidationError("'fromDate' must not be after 'toDate'")

    return ReconciliationRequest(
        owner=owner_text,
        date_from=start,
        date_to=end,
        credential=Credential.from_url(credential_url),
        limit=parse_limit(limit),
    )


class ReconciliationService:
    def __init__(
        self,
        grouper: DuplicateGrouper,
        engine: ReconciliationEngine,
        session_store: SessionStore,
        portal: PortalClient,
        auth_base_url: str,
    ) -> None:
        self.grouper = grouper
        self.engine = engine
        self.session_store = session_store
        self.portal = portal
        self.portal_host = urlparse(auth_base_url).netloc.lower()

    def check_credential(self, credential: Credential) -> Credential:
        if credential.host != self.portal_host:
            raise ValidationError(f"Credential URL must point to {self.portal_host}")
        return credential

    def reconcile(self, request: ReconciliationRequest) -> ReconciliationReport:
        self.check_credential(request.credential)
        stats = StatsAggregator()

        scan = self.grouper.find_duplicates(request.owner, request.date_from, request.date_to, request.limit)
        stats.add_scanned(scan.total_documents, len(scan.groups))

        if not scan.groups:
            return ReconciliationReport(
                stats=stats.snapshot(),
                truncated=scan.truncated,
                limit=scan.limit,
                message="No duplicate documents found",
            )

        outcomes = self.engine.reconcile(scan.groups, request.credential, stats)
        snapshot = stats.snapshot()

        message = "Validation completed"
        if scan.truncated:
            message += f" (TEST MODE - limited to {scan.limit} records, results are not representative)"

        logger.info("reconciliation_done", owner=request.owner, truncated=scan.truncated, **snapshot.to_dict())
        return ReconciliationReport(
            stats=snapshot,
            groups=outcomes,
            truncated=scan.truncated,
            limit=scan.limit,
            message=message,
        )

    def authenticate(self, credential: Credential) -> Dict[str, Any]:
        """Run a fresh handshake and persist the session."""
        self.check_credential(credential)
        session = self.session_store.refresh(credential)
        return {
            "success": True,
            "session_id": session.fingerprint,
            "message": "Authentication succeeded",
        }

    def fetch_document(self, track_id: str, session_id: str) -> Dict[str, Any]:
        """Download and summarise one bundle using a previously established session."""
        track_id = (track_id or "").strip()
        if not track_id:
            raise ValidationError("Field 'trackId' is required")
        if not (session_id or "").strip():
            raise AuthenticationError("A session id is required; authenticate first", status_code=401)

        session = self.session_store.load(session_id.strip())
        if session is None:
            raise AuthenticationError("Session not found or expired; authenticate again", status_code=401)

        payload = self.portal.fetch_document(track_id, session)
        self.session_store.save(session)
        return _bundle_response(track_id, payload)

    def process(self, credential: Credential, track_id: str) -> Dict[str, Any]:
        """Authenticate and download in one call."""
        if not (track_id or "").strip():
            raise ValidationError("Field 'trackId' is required")
        auth = self.authenticate(credential)
        return self.fetch_document(track_id, auth["session_id"])


def _bundle_response(track_id: str, payload: bytes) -> Dict[str, Any]:
    summary = extract(payload)
    return {
        "success": True,
        "track_id": track_id,
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "size": len(payload),
        **summary.to_dict(),
    }
