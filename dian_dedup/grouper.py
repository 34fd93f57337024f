"""Collect active ledger documents into CUFE duplicate groups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

from .ledger import LedgerDatabase
from .logging import get_logger
from .models import DuplicateGroup, LedgerDocument

logger = get_logger(__name__)


@dataclass(slots=True)
class DuplicateScan:
    """Groups found for one owner and window.

    When ``limit`` truncated the query the scan is not representative: the
    last group may be missing members and whole groups may be absent.
    """

    groups: List[DuplicateGroup] = field(default_factory=list)
    total_documents: int = 0
    limit: Optional[int] = None

    @property
    def truncated(self) -> bool:
        return self.limit is not None


def group_by_cufe(documents: Iterable[LedgerDocument]) -> List[DuplicateGroup]:
    """Group documents by CUFE, keeping first-seen group order and member order."""
    grouped: Dict[str, DuplicateGroup] = {}
    for document in documents:
        group = grouped.get(document.cufe)
        if group is None:
            group = grouped[document.cufe] = DuplicateGroup(cufe=document.cufe)
        group.members.append(document)
    return list(grouped.values())


class DuplicateGrouper:
    def __init__(self, ledger: LedgerDatabase) -> None:
        self.ledger = ledger

    def find_duplicates(
        self,
        owner: str,
        date_from: date,
        date_to: date,
        limit: Optional[int] = None,
    ) -> DuplicateScan:
        limit = limit if limit and limit > 0 else None
        documents = self.ledger.find_duplicate_documents(owner, date_from, date_to, limit)
        groups = group_by_cufe(documents)
        logger.info(
            "duplicates_found",
            owner=owner,
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat(),
            documents=len(documents),
            groups=len(groups),
            limit=limit,
        )
        return DuplicateScan(groups=groups, total_documents=len(documents), limit=limit)
