"""Domain models for ledger documents, portal sessions and reconciliation outcomes."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from .errors import ValidationError


@dataclass(frozen=True, slots=True)
class Credential:
    """Portal authentication URL carrying the ``pk`` and ``token`` parameters."""

    url: str

    @classmethod
    def from_url(cls, url: str) -> "Credential":
        value = (url or "").strip()
        if not value:
            raise ValidationError("credential URL is required")
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError("credential URL is not a valid http(s) URL")
        params = parse_qs(parsed.query)
        if not params.get("pk") or not params.get("token"):
            raise ValidationError("credential URL must contain the pk and token parameters")
        return cls(url=value)

    @property
    def fingerprint(self) -> str:
        """Stable session key derived from the URL contents."""
        return hashlib.sha256(self.url.encode("utf-8")).hexdigest()

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc.lower()


@dataclass(slots=True)
class PortalSession:
    """Cookie state obtained from a successful portal handshake."""

    fingerprint: str
    cookies: List[Dict[str, str]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "cookies": self.cookies,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortalSession":
        return cls(
            fingerprint=data["fingerprint"],
            cookies=list(data.get("cookies") or []),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(slots=True)
class AuthResult:
    success: bool
    status_code: int
    cookies: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(slots=True)
class LedgerDocument:
    """A row of the ``documents`` table. Amounts are kept as stored."""

    id: int
    identification_number: str
    state_document_id: int
    prefix: Optional[str]
    number: Optional[str]
    cufe: str
    subtotal: Any
    total_tax: Any
    total: Any
    created_at: Any


@dataclass(slots=True)
class BundleEntry:
    name: str
    size_bytes: int
    extension: str
    fields: Optional[Dict[str, Any]] = None
    preview: Optional[str] = None

    @property
    def has_fields(self) -> bool:
        return self.fields is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "size_bytes": self.size_bytes,
            "extension": self.extension,
        }
        if self.fields is not None:
            data["fields"] = self.fields
        if self.preview is not None:
            data["preview"] = self.preview
        return data


@dataclass(slots=True)
class BundleSummary:
    entries: List[BundleEntry] = field(default_factory=list)
    total_entries: int = 0
    counts_by_extension: Dict[str, int] = field(default_factory=dict)

    def invoice_entries(self) -> List[BundleEntry]:
        return [entry for entry in self.entries if entry.has_fields]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "total_entries": self.total_entries,
            "counts_by_extension": dict(self.counts_by_extension),
        }


@dataclass(frozen=True, slots=True)
class CanonicalRecord:
    """Authoritative amounts for one invoice, as published by the portal."""

    subtotal: Decimal
    total_with_tax: Optional[Decimal]
    total_payable: Optional[Decimal]
    cufe: Optional[str] = None
    line_item_count: Optional[int] = None
    issue_date: Optional[str] = None
    issue_time: Optional[str] = None

    @property
    def total(self) -> Decimal:
        """Payable total, falling back to the tax-inclusive total."""
        if self.total_payable is not None:
            return self.total_payable
        if self.total_with_tax is None:
            raise ValueError("canonical record carries neither a payable nor a tax-inclusive total")
        return self.total_with_tax

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": str(self.subtotal),
            "total": str(self.total),
            "total_with_tax": str(self.total_with_tax) if self.total_with_tax is not None else None,
            "total_payable": str(self.total_payable) if self.total_payable is not None else None,
            "cufe": self.cufe,
            "line_item_count": self.line_item_count,
            "issue_date": self.issue_date,
            "issue_time": self.issue_time,
        }


@dataclass(slots=True)
class DuplicateGroup:
    """Active ledger documents sharing one CUFE, oldest first."""

    cufe: str
    members: List[LedgerDocument] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.members)


class GroupStatus(str, Enum):
    PENDING = "pending"
    CORRECTED = "corrected"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class MemberComparison:
    """Audit record for one member of a duplicate group."""

    document: LedgerDocument
    local_subtotal: Optional[Decimal] = None
    local_total: Optional[Decimal] = None
    canonical_subtotal: Optional[Decimal] = None
    canonical_total: Optional[Decimal] = None
    subtotal_diff: Optional[Decimal] = None
    total_diff: Optional[Decimal] = None
    subtotal_match: bool = False
    total_match: bool = False
    authoritative: bool = False
    deactivated: bool = False
    state_after: Optional[int] = None
    error: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.subtotal_match and self.total_match

    def to_dict(self) -> Dict[str, Any]:
        doc = self.document
        return {
            "id": doc.id,
            "prefix": doc.prefix,
            "number": doc.number,
            "subtotal": _as_text(doc.subtotal),
            "total_tax": _as_text(doc.total_tax),
            "total": _as_text(doc.total),
            "created_at": _as_text(doc.created_at),
            "state_before": doc.state_document_id,
            "state_after": self.state_after if self.state_after is not None else doc.state_document_id,
            "match": self.matched,
            "authoritative": self.authoritative,
            "deactivated": self.deactivated,
            "comparison": None if self.canonical_total is None else {
                "subtotal_local": _as_text(self.local_subtotal),
                "subtotal_canonical": _as_text(self.canonical_subtotal),
                "subtotal_diff": _as_text(self.subtotal_diff),
                "subtotal_match": self.subtotal_match,
                "total_local": _as_text(self.local_total),
                "total_canonical": _as_text(self.canonical_total),
                "total_diff": _as_text(self.total_diff),
                "total_match": self.total_match,
            },
            "error": self.error,
        }


@dataclass(slots=True)
class ReconciliationOutcome:
    cufe: str
    members: List[MemberComparison] = field(default_factory=list)
    status: GroupStatus = GroupStatus.PENDING
    authoritative_id: Optional[int] = None
    canonical: Optional[CanonicalRecord] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def deactivated_ids(self) -> List[int]:
        return [member.document.id for member in self.members if member.deactivated]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cufe": self.cufe,
            "status": self.status.value,
            "authoritative_id": self.authoritative_id,
            "canonical": self.canonical.to_dict() if self.canonical else None,
            "members": [member.to_dict() for member in self.members],
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class ReconciliationRequest:
    owner: str
    date_from: date
    date_to: date
    credential: Credential
    limit: Optional[int] = None


@dataclass(frozen=True, slots=True)
class RunStats:
    total_documents: int = 0
    duplicate_groups: int = 0
    corrected_documents: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_documents": self.total_documents,
            "duplicate_groups": self.duplicate_groups,
            "corrected_documents": self.corrected_documents,
            "errors": self.errors,
        }


@dataclass(slots=True)
class ReconciliationReport:
    stats: RunStats
    groups: List[ReconciliationOutcome] = field(default_factory=list)
    truncated: bool = False
    limit: Optional[int] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": True,
            "message": self.message,
            "totalDocuments": self.stats.total_documents,
            "duplicateGroupCount": self.stats.duplicate_groups,
            "correctedCount": self.stats.corrected_documents,
            "errorCount": self.stats.errors,
            "truncated": self.truncated,
            "groups": [group.to_dict() for group in self.groups],
        }
        if self.truncated:
            data["limit"] = self.limit
        return data


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return str(value)
