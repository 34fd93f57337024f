"""Zip bundle extraction and UBL field lookup for portal downloads."""

from __future__ import annotations

import io
import zipfile
from collections import Counter
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

from lxml import etree

from .errors import ExtractionError
from .logging import get_logger
from .models import BundleEntry, BundleSummary, CanonicalRecord
from .numeral import to_amount

logger = get_logger(__name__)

STRUCTURED_EXTENSION = "xml"
PREVIEW_CHARS = 500

NAMESPACES = {
    "inv": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
    "sts": "urn:dian:gov:co:facturaelectronica:Structures-2-1",
}

FIELD_PATHS: Dict[str, str] = {
    "invoice_number": "//cbc:ID",
    "issue_date": "//cbc:IssueDate",
    "issue_time": "//cbc:IssueTime",
    "currency": "//cbc:DocumentCurrencyCode",
    "document_type": "//cbc:InvoiceTypeCode",
    "supplier_name": "//cac:AccountingSupplierParty/cac:Party/cac:PartyName/cbc:Name",
    "supplier_tax_id": "//cac:AccountingSupplierParty/cac:Party/cac:PartyTaxScheme/cbc:CompanyID",
    "customer_name": "//cac:AccountingCustomerParty/cac:Party/cac:PartyName/cbc:Name",
    "customer_tax_id": "//cac:AccountingCustomerParty/cac:Party/cac:PartyTaxScheme/cbc:CompanyID",
    "subtotal": "//cac:LegalMonetaryTotal/cbc:TaxExclusiveAmount",
    "total_with_tax": "//cac:LegalMonetaryTotal/cbc:TaxInclusiveAmount",
    "total_payable": "//cac:LegalMonetaryTotal/cbc:PayableAmount",
    "tax_total": "//cac:TaxTotal/cbc:TaxAmount",
    "cufe": "//cbc:UUID",
}
LINE_ITEM_PATH = "//cac:InvoiceLine"
EMBEDDED_DOCUMENT_PATH = "//cac:Attachment/cac:ExternalReference/cbc:Description"
MONETARY_TOTAL_PATH = "//cac:LegalMonetaryTotal"

_XPATHS = {key: etree.XPath(path, namespaces=NAMESPACES) for key, path in FIELD_PATHS.items()}
_LINE_ITEMS = etree.XPath(LINE_ITEM_PATH, namespaces=NAMESPACES)
_EMBEDDED = etree.XPath(EMBEDDED_DOCUMENT_PATH, namespaces=NAMESPACES)
_MONETARY_TOTAL = etree.XPath(MONETARY_TOTAL_PATH, namespaces=NAMESPACES)


def _parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def extract(payload: bytes) -> BundleSummary:
    """List every entry of the bundle and pull invoice fields from its XML files."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(payload))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise ExtractionError(f"Unreadable zip bundle: {exc}") from exc

    summary = BundleSummary()
    counts: Counter[str] = Counter()
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            extension = PurePosixPath(info.filename).suffix.lstrip(".").lower()
            counts[extension] += 1
            entry = BundleEntry(name=info.filename, size_bytes=info.file_size, extension=extension)

            if extension == STRUCTURED_EXTENSION:
                try:
                    content = archive.read(info)
                except (zipfile.BadZipFile, OSError, RuntimeError, NotImplementedError) as exc:
                    raise ExtractionError(f"Unreadable bundle entry {info.filename}: {exc}") from exc
                entry.size_bytes = len(content)
                entry.fields = extract_fields(content) or None
                entry.preview = content[:PREVIEW_CHARS].decode("utf-8", errors="replace")

            summary.entries.append(entry)

    summary.total_entries = len(summary.entries)
    summary.counts_by_extension = dict(counts)
    logger.info(
        "bundle_extracted",
        entries=summary.total_entries,
        invoices=len(summary.invoice_entries()),
        counts=summary.counts_by_extension,
    )
    return summary


def extract_fields(content: bytes) -> Dict[str, Any]:
    """Return the fixed field table for one UBL document; ``{}`` when it does not parse."""
    root = _parse(content)
    if root is None:
        return {}

    embedded = _embedded_invoice(root)
    if embedded is not None:
        root = embedded

    fields: Dict[str, Any] = {}
    for key, xpath in _XPATHS.items():
        value = _first_text(xpath(root))
        if value is not None:
            fields[key] = value

    line_items = _LINE_ITEMS(root)
    if line_items:
        fields["line_item_count"] = len(line_items)
    return fields


def canonical_record(summary: BundleSummary) -> CanonicalRecord:
    """Build the authoritative amounts from the first invoice in the bundle that carries them.

    Bundles may also hold application responses or other UBL documents
    without monetary totals; those are skipped.
    """
    for entry in summary.invoice_entries():
        if _has_amounts(entry.fields):
            return _record_from_fields(entry.fields, entry.name)
    raise ExtractionError("Bundle does not contain a structured invoice with subtotal and total")


def _has_amounts(fields: Dict[str, Any]) -> bool:
    return "subtotal" in fields and ("total_payable" in fields or "total_with_tax" in fields)


def _record_from_fields(fields: Dict[str, Any], source: str) -> CanonicalRecord:
    try:
        subtotal = to_amount(fields["subtotal"])
        total_with_tax = _optional_amount(fields.get("total_with_tax"))
        total_payable = _optional_amount(fields.get("total_payable"))
    except ValueError as exc:
        raise ExtractionError(f"{source}: {exc}") from exc

    return CanonicalRecord(
        subtotal=subtotal,
        total_with_tax=total_with_tax,
        total_payable=total_payable,
        cufe=fields.get("cufe"),
        line_item_count=fields.get("line_item_count"),
        issue_date=fields.get("issue_date"),
        issue_time=fields.get("issue_time"),
    )


def _optional_amount(raw: Optional[str]):
    if raw is None:
        return None
    return to_amount(raw)


def _parse(content: bytes) -> Optional[etree._Element]:
    try:
        return etree.fromstring(content, parser=_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        logger.warning("xml_parse_failed", error=str(exc))
        return None


def _embedded_invoice(root: etree._Element) -> Optional[etree._Element]:
    # AttachedDocument envelopes carry the signed invoice as escaped text.
    if _MONETARY_TOTAL(root):
        return None
    for node in _EMBEDDED(root):
        text = (node.text or "").strip()
        if not text.startswith("<"):
            continue
        embedded = _parse(text.encode("utf-8"))
        if embedded is not None and _MONETARY_TOTAL(embedded):
            return embedded
    return None


def _first_text(nodes) -> Optional[str]:
    if not nodes:
        return None
    text = nodes[0].text
    return text.strip() if text is not None else ""
