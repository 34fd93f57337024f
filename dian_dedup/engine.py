"""Reconciliation of CUFE duplicate groups against the portal's canonical invoice."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .bundle import canonical_record, extract
from .errors import AuthenticationError, ExtractionError, FetchError, PersistenceError, ReconciliationError
from .ledger import LedgerDatabase
from .logging import get_logger
from .matching import DEFAULT_TOLERANCE, compare_member, elect_authoritative
from .models import (
    Credential,
    DuplicateGroup,
    GroupStatus,
    MemberComparison,
    PortalSession,
    ReconciliationOutcome,
)
from .portal import PortalClient
from .session_store import SessionStore
from .stats import StatsAggregator

logger = get_logger(__name__)


class ReconciliationEngine:
    """Decides, group by group, which duplicate stays active.

    Groups run sequentially on one portal session. A member is only ever
    deactivated after another member of its group matched the canonical
    amounts; without a match nothing is written.
    """

    def __init__(
        self,
        session_store: SessionStore,
        portal: PortalClient,
        ledger: LedgerDatabase,
        tolerance: Decimal = DEFAULT_TOLERANCE,
    ) -> None:
        self.session_store = session_store
        self.portal = portal
        self.ledger = ledger
        self.tolerance = tolerance

    def reconcile(
        self,
        groups: Sequence[DuplicateGroup],
        credential: Credential,
        stats: Optional[StatsAggregator] = None,
    ) -> List[ReconciliationOutcome]:
        """Reconcile every group. Raises AuthenticationError before touching any group."""
        stats = stats or StatsAggregator()
        session = self.session_store.get_or_create(credential)

        outcomes: List[ReconciliationOutcome] = []
        pending = list(groups)
        while pending:
            group = pending.pop(0)
            outcome, error = self._reconcile_group(group, session, stats)
            outcomes.append(outcome)

            if isinstance(error, FetchError) and error.is_unauthorized:
                try:
                    session = self.session_store.refresh(credential)
                except AuthenticationError as exc:
                    logger.error(
                        "session_refresh_failed",
                        fingerprint=credential.fingerprint,
                        remaining=len(pending),
                        error=str(exc),
                    )
                    for remaining in pending:
                        outcomes.append(self._failed(remaining, exc, stats))
                    break

        return outcomes

    def _reconcile_group(
        self,
        group: DuplicateGroup,
        session: PortalSession,
        stats: StatsAggregator,
    ) -> Tuple[ReconciliationOutcome, Optional[ReconciliationError]]:
        try:
            payload = self.portal.fetch_document(group.cufe, session)
        except FetchError as exc:
            return self._failed(group, exc, stats), exc
        self._save_session(session)

        try:
            canonical = canonical_record(extract(payload))
        except ExtractionError as exc:
            return self._failed(group, exc, stats), exc

        outcome = ReconciliationOutcome(cufe=group.cufe, canonical=canonical)
        outcome.members = [compare_member(document, canonical, self.tolerance) for document in group.members]
        for member in outcome.members:
            logger.debug(
                "member_compared",
                cufe=group.cufe,
                document_id=member.document.id,
                subtotal_diff=str(member.subtotal_diff),
                total_diff=str(member.total_diff),
                match=member.matched,
            )

        elected = elect_authoritative(outcome.members)
        if elected is None:
            outcome.status = GroupStatus.UNCHANGED
            logger.info("group_unmatched", cufe=group.cufe, members=len(group))
            return outcome, None

        elected.authoritative = True
        outcome.authoritative_id = elected.document.id
        for member in outcome.members:
            if member is not elected:
                self._deactivate(member, stats)

        outcome.status = GroupStatus.CORRECTED if outcome.deactivated_ids else GroupStatus.UNCHANGED
        logger.info(
            "group_reconciled",
            cufe=group.cufe,
            status=outcome.status.value,
            authoritative_id=outcome.authoritative_id,
            deactivated=outcome.deactivated_ids,
        )
        return outcome, None

    def _save_session(self, session: PortalSession) -> None:
        try:
            self.session_store.save(session)
        except OSError as exc:
            logger.error("session_save_failed", fingerprint=session.fingerprint, error=str(exc))

    def _deactivate(self, member: MemberComparison, stats: StatsAggregator) -> None:
        try:
            changed = self.ledger.deactivate(member.document.id)
        except PersistenceError as exc:
            member.error = str(exc)
            stats.record_error()
            return
        member.deactivated = True
        member.state_after = self.ledger.inactive_state
        if changed:
            stats.record_correction()

    def _failed(
        self,
        group: DuplicateGroup,
        error: ReconciliationError,
        stats: StatsAggregator,
    ) -> ReconciliationOutcome:
        stats.record_error()
        logger.warning("group_failed", cufe=group.cufe, code=error.code, error=str(error))
        return ReconciliationOutcome(
            cufe=group.cufe,
            members=[MemberComparison(document=document) for document in group.members],
            status=GroupStatus.UNCHANGED,
            error=error.to_dict(),
        )
