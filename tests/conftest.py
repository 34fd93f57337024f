import io
import zipfile
from decimal import Decimal
from typing import Dict, Optional

import httpx
import pytest
from sqlalchemy import text

from dian_dedup.config import AppConfig
from dian_dedup.ledger import LedgerDatabase
from dian_dedup.models import Credential
from dian_dedup.portal import PortalClient
from dian_dedup.runtime import build_runtime
from dian_dedup.session_store import SessionStore

AUTH_BASE_URL = "https://portal.test/User/AuthToken"
DOWNLOAD_BASE_URL = "https://portal.test/Document/DownloadZipFiles"
CREDENTIAL_URL = f"{AUTH_BASE_URL}?pk=10910094&rk=900123456&token=abc123"

INVOICE_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<Invoice xmlns="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
         xmlns:cbc="urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
         xmlns:cac="urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2">
  <cbc:ID>{number}</cbc:ID>
  <cbc:UUID schemeName="CUFE-SHA384">{cufe}</cbc:UUID>
  <cbc:IssueDate>2024-03-01</cbc:IssueDate>
  <cbc:IssueTime>10:15:00-05:00</cbc:IssueTime>
  <cbc:InvoiceTypeCode>01</cbc:InvoiceTypeCode>
  <cbc:DocumentCurrencyCode>COP</cbc:DocumentCurrencyCode>
  <cac:AccountingSupplierParty>
    <cac:Party>
      <cac:PartyName><cbc:Name>Proveedor Andino SAS</cbc:Name></cac:PartyName>
      <cac:PartyTaxScheme><cbc:CompanyID>900123456</cbc:CompanyID></cac:PartyTaxScheme>
    </cac:Party>
  </cac:AccountingSupplierParty>
  <cac:AccountingCustomerParty>
    <cac:Party>
      <cac:PartyName><cbc:Name>Cliente Caribe Ltda</cbc:Name></cac:PartyName>
      <cac:PartyTaxScheme><cbc:CompanyID>800987654</cbc:CompanyID></cac:PartyTaxScheme>
    </cac:Party>
  </cac:AccountingCustomerParty>
  <cac:TaxTotal><cbc:TaxAmount currencyID="COP">19.00</cbc:TaxAmount></cac:TaxTotal>
  <cac:LegalMonetaryTotal>
    <cbc:LineExtensionAmount currencyID="COP">{subtotal}</cbc:LineExtensionAmount>
    <cbc:TaxExclusiveAmount currencyID="COP">{subtotal}</cbc:TaxExclusiveAmount>
    {with_tax_element}
    {payable_element}
  </cac:LegalMonetaryTotal>
  {lines}
</Invoice>
"""

DOCUMENTS_DDL = """
CREATE TABLE documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identification_number TEXT NOT NULL,
    state_document_id INTEGER NOT NULL,
    prefix TEXT,
    number TEXT,
    cufe TEXT NOT NULL,
    subtotal TEXT,
    total_tax TEXT,
    total TEXT,
    created_at TEXT NOT NULL
)
"""


def build_invoice_xml(
    cufe: str = "CUFE-X",
    subtotal: str = "100.00",
    with_tax: Optional[str] = "119.00",
    payable: Optional[str] = "119.00",
    lines: int = 2,
    number: str = "SETP990000001",
) -> bytes:
    with_tax_element = (
        f'<cbc:TaxInclusiveAmount currencyID="COP">{with_tax}</cbc:TaxInclusiveAmount>' if with_tax else ""
    )
    payable_element = f'<cbc:PayableAmount currencyID="COP">{payable}</cbc:PayableAmount>' if payable else ""
    line_elements = "\n  ".join(
        f"<cac:InvoiceLine><cbc:ID>{index}</cbc:ID></cac:InvoiceLine>" for index in range(1, lines + 1)
    )
    return INVOICE_TEMPLATE.format(
        number=number,
        cufe=cufe,
        subtotal=subtotal,
        with_tax_element=with_tax_element,
        payable_element=payable_element,
        lines=line_elements,
    ).encode("utf-8")


def build_zip(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def create_documents_table(database: LedgerDatabase) -> None:
    with database.engine.begin() as conn:
        conn.execute(text(DOCUMENTS_DDL))


def add_document(database: LedgerDatabase, **values) -> int:
    row = {
        "identification_number": "900123456",
        "state_document_id": 1,
        "prefix": "SETP",
        "number": "990000001",
        "cufe": "CUFE-X",
        "subtotal": "100.00",
        "total_tax": "19.00",
        "total": "119.00",
        "created_at": "2024-03-01 10:00:00",
    }
    row.update(values)
    columns = ", ".join(row)
    placeholders = ", ".join(f":{key}" for key in row)
    with database.engine.begin() as conn:
        result = conn.execute(text(f"INSERT INTO documents ({columns}) VALUES ({placeholders})"), row)
        return result.lastrowid


def document_state(database: LedgerDatabase, document_id: int) -> int:
    with database.engine.connect() as conn:
        return conn.execute(
            text("SELECT state_document_id FROM documents WHERE id = :id"),
            {"id": document_id},
        ).scalar_one()


class FakePortal:
    """In-process stand-in for the portal's auth and download endpoints."""

    def __init__(self) -> None:
        self.auth_status = 200
        self.auth_statuses = []
        self.documents: Dict[str, tuple] = {}
        self.failures: Dict[str, Exception] = {}
        self.requests = []
        self.auth_calls = 0
        self.fetched = []
        self.stale_cookies = set()

    def add_invoice(self, cufe: str, **invoice) -> None:
        bundle = build_zip({
            f"{cufe}.xml": build_invoice_xml(cufe=cufe, **invoice),
            f"{cufe}.pdf": b"%PDF-1.4 representation",
        })
        self.documents[cufe] = (200, bundle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/User/AuthToken":
            self.auth_calls += 1
            status = self.auth_statuses.pop(0) if self.auth_statuses else self.auth_status
            if status != 200:
                return httpx.Response(status, text="denied")
            return httpx.Response(
                200,
                headers={"set-cookie": f"ASP.NET_SessionId=session{self.auth_calls}; Path=/"},
                text="<html>ok</html>",
            )
        if request.url.path == "/User/Login":
            return httpx.Response(200, html="<html><form id=\"login\"></form></html>")
        if request.url.path == "/Document/DownloadZipFiles":
            key = request.url.params.get("trackId")
            self.fetched.append(key)
            if request.headers.get("cookie") in self.stale_cookies:
                return httpx.Response(302, headers={"location": "https://portal.test/User/Login"})
            if key in self.failures:
                raise self.failures[key]
            status, body = self.documents.get(key, (404, b"Not found"))
            return httpx.Response(status, content=body)
        return httpx.Response(404)


@pytest.fixture()
def fake_portal():
    return FakePortal()


@pytest.fixture()
def portal(fake_portal):
    client = PortalClient(
        download_base_url=DOWNLOAD_BASE_URL,
        user_agent="dian-dedup-tests",
        transport=httpx.MockTransport(fake_portal.handle),
    )
    yield client
    client.close()


@pytest.fixture()
def session_store(tmp_path, portal):
    return SessionStore(tmp_path / "sessions", portal)


@pytest.fixture()
def credential():
    return Credential.from_url(CREDENTIAL_URL)


@pytest.fixture()
def ledger(tmp_path):
    database = LedgerDatabase(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_documents_table(database)
    yield database
    database.dispose()


@pytest.fixture()
def app_config(tmp_path):
    return AppConfig(
        database_url=f"sqlite:///{tmp_path / 'runtime.db'}",
        auth_base_url=AUTH_BASE_URL,
        download_base_url=DOWNLOAD_BASE_URL,
        session_dir=tmp_path / "runtime-sessions",
        connect_timeout=5.0,
        http_timeout=10.0,
        auth_timeout=5.0,
        amount_tolerance=Decimal("0.10"),
        active_state=1,
        inactive_state=0,
        http_user_agent="dian-dedup-tests",
        log_level="WARNING",
        cors_allowed_origins="http://localhost:3000",
    )


@pytest.fixture()
def runtime(app_config, fake_portal):
    rt = build_runtime(app_config, transport=httpx.MockTransport(fake_portal.handle))
    create_documents_table(rt.ledger)
    yield rt
    rt.close()
