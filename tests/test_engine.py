from datetime import date
from decimal import Decimal

import pytest

from conftest import add_document, document_state
from dian_dedup.engine import ReconciliationEngine
from dian_dedup.errors import AuthenticationError
from dian_dedup.grouper import DuplicateGrouper
from dian_dedup.models import DuplicateGroup, GroupStatus, LedgerDocument
from dian_dedup.stats import StatsAggregator

WINDOW = (date(2024, 3, 1), date(2024, 3, 31))


@pytest.fixture()
def engine(session_store, portal, ledger):
    return ReconciliationEngine(session_store, portal, ledger, tolerance=Decimal("0.10"))


def _groups(ledger):
    return DuplicateGrouper(ledger).find_duplicates("900123456", *WINDOW).groups


def test_both_matching_keeps_oldest_and_deactivates_the_rest(engine, ledger, fake_portal, credential):
    a = add_document(ledger, cufe="X", created_at="2024-03-01 10:00:00")
    b = add_document(ledger, cufe="X", created_at="2024-03-01 11:00:00")
    fake_portal.add_invoice("X", subtotal="100.00", payable="119.00")
    stats = StatsAggregator()

    [outcome] = engine.reconcile(_groups(ledger), credential, stats)

    assert outcome.status is GroupStatus.CORRECTED
    assert outcome.authoritative_id == a
    assert outcome.deactivated_ids == [b]
    assert document_state(ledger, a) == 1
    assert document_state(ledger, b) == 0
    assert stats.snapshot().corrected_documents == 1
    assert stats.snapshot().errors == 0


def test_no_match_leaves_group_untouched(engine, ledger, fake_portal, credential):
    a = add_document(ledger, cufe="X")
    b = add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    fake_portal.add_invoice("X", subtotal="100.00", payable="150.00")
    stats = StatsAggregator()

    [outcome] = engine.reconcile(_groups(ledger), credential, stats)

    assert outcome.status is GroupStatus.UNCHANGED
    assert outcome.authoritative_id is None
    assert outcome.deactivated_ids == []
    assert all(not member.matched for member in outcome.members)
    assert document_state(ledger, a) == 1
    assert document_state(ledger, b) == 1
    assert stats.snapshot().corrected_documents == 0


def test_later_member_can_be_authoritative(engine, ledger, fake_portal, credential):
    wrong = add_document(ledger, cufe="X", total="120.50")
    right = add_document(ledger, cufe="X", total="119,05", created_at="2024-03-02 10:00:00")
    fake_portal.add_invoice("X")

    [outcome] = engine.reconcile(_groups(ledger), credential)

    assert outcome.authoritative_id == right
    assert document_state(ledger, wrong) == 0
    assert document_state(ledger, right) == 1
    audit = outcome.to_dict()["members"]
    assert audit[0]["comparison"]["total_diff"] == "1.50"
    assert audit[0]["state_after"] == 0
    assert audit[1]["authoritative"] is True


def test_fetch_failure_is_local_to_group(engine, ledger, fake_portal, credential):
    x1 = add_document(ledger, cufe="X")
    x2 = add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    add_document(ledger, cufe="Y")
    y2 = add_document(ledger, cufe="Y", created_at="2024-03-02 10:00:00")
    fake_portal.documents["X"] = (500, b"server error")
    fake_portal.add_invoice("Y")
    stats = StatsAggregator()

    outcomes = engine.reconcile(_groups(ledger), credential, stats)

    assert [outcome.status for outcome in outcomes] == [GroupStatus.UNCHANGED, GroupStatus.CORRECTED]
    assert outcomes[0].error["code"] == "FETCH_FAILED"
    assert outcomes[0].error["status_code"] == 500
    assert document_state(ledger, x1) == document_state(ledger, x2) == 1
    assert document_state(ledger, y2) == 0
    assert stats.snapshot().errors == 1
    assert stats.snapshot().corrected_documents == 1


def test_extraction_failure_is_local_to_group(engine, ledger, fake_portal, credential):
    add_document(ledger, cufe="X")
    add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    fake_portal.documents["X"] = (200, b"PK\x03\x04 truncated")
    stats = StatsAggregator()

    [outcome] = engine.reconcile(_groups(ledger), credential, stats)

    assert outcome.status is GroupStatus.UNCHANGED
    assert outcome.error["code"] == "EXTRACTION_FAILED"
    assert stats.snapshot().errors == 1


def test_authentication_failure_aborts_before_any_group(engine, ledger, fake_portal, credential):
    add_document(ledger, cufe="X")
    add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    fake_portal.auth_status = 403

    with pytest.raises(AuthenticationError):
        engine.reconcile(_groups(ledger), credential)

    assert fake_portal.fetched == []


def test_existing_session_is_reused(engine, session_store, ledger, fake_portal, credential):
    session_store.get_or_create(credential)
    add_document(ledger, cufe="X")
    add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    fake_portal.add_invoice("X")

    engine.reconcile(_groups(ledger), credential)

    assert fake_portal.auth_calls == 1


def test_unauthorized_fetch_refreshes_session_without_retry(engine, ledger, fake_portal, credential):
    add_document(ledger, cufe="X")
    add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    add_document(ledger, cufe="Y")
    add_document(ledger, cufe="Y", created_at="2024-03-02 10:00:00")
    fake_portal.documents["X"] = (401, b"")
    fake_portal.add_invoice("Y")
    stats = StatsAggregator()

    outcomes = engine.reconcile(_groups(ledger), credential, stats)

    assert fake_portal.fetched == ["X", "Y"]
    assert fake_portal.auth_calls == 2
    assert outcomes[0].error["kind"] == "unauthorized"
    assert outcomes[1].status is GroupStatus.CORRECTED
    assert fake_portal.requests[-1].headers["cookie"] == "ASP.NET_SessionId=session2"
    assert stats.snapshot().errors == 1


def test_failed_refresh_stops_remaining_groups(engine, ledger, fake_portal, credential):
    for cufe in ("X", "Y", "Z"):
        add_document(ledger, cufe=cufe)
        add_document(ledger, cufe=cufe, created_at="2024-03-02 10:00:00")
    fake_portal.auth_statuses = [200, 500]
    fake_portal.documents["X"] = (403, b"")
    fake_portal.add_invoice("Y")
    fake_portal.add_invoice("Z")
    stats = StatsAggregator()

    outcomes = engine.reconcile(_groups(ledger), credential, stats)

    assert fake_portal.fetched == ["X"]
    assert [outcome.cufe for outcome in outcomes] == ["X", "Y", "Z"]
    assert all(outcome.status is GroupStatus.UNCHANGED for outcome in outcomes)
    assert outcomes[1].error["code"] == "AUTH_FAILED"
    assert stats.snapshot().errors == 3


def test_persistence_failure_is_reported_per_member(engine, ledger, fake_portal, credential):
    kept = add_document(ledger, cufe="X")
    duplicate = add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    ghost = LedgerDocument(
        id=999,
        identification_number="900123456",
        state_document_id=1,
        prefix="SETP",
        number="990000001",
        cufe="X",
        subtotal="100.00",
        total_tax="19.00",
        total="119.00",
        created_at="2024-03-03 10:00:00",
    )
    group = _groups(ledger)[0]
    group = DuplicateGroup(cufe="X", members=group.members + [ghost])
    fake_portal.add_invoice("X")
    stats = StatsAggregator()

    [outcome] = engine.reconcile([group], credential, stats)

    assert outcome.status is GroupStatus.CORRECTED
    assert outcome.authoritative_id == kept
    assert outcome.deactivated_ids == [duplicate]
    assert outcome.members[2].error
    assert outcome.members[2].deactivated is False
    assert stats.snapshot().errors == 1
    assert stats.snapshot().corrected_documents == 1


def test_already_inactive_member_is_not_counted(engine, ledger, fake_portal, credential):
    kept = add_document(ledger, cufe="X")
    stale = add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    groups = _groups(ledger)
    ledger.deactivate(stale)
    fake_portal.add_invoice("X")
    stats = StatsAggregator()

    [outcome] = engine.reconcile(groups, credential, stats)

    assert outcome.authoritative_id == kept
    assert outcome.deactivated_ids == [stale]
    assert stats.snapshot().corrected_documents == 0


def test_login_redirect_refreshes_stale_session(engine, session_store, ledger, fake_portal, credential):
    session_store.get_or_create(credential)
    fake_portal.stale_cookies.add("ASP.NET_SessionId=session1")
    add_document(ledger, cufe="X")
    add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    add_document(ledger, cufe="Y")
    y2 = add_document(ledger, cufe="Y", created_at="2024-03-02 10:00:00")
    fake_portal.add_invoice("X")
    fake_portal.add_invoice("Y")
    stats = StatsAggregator()

    outcomes = engine.reconcile(_groups(ledger), credential, stats)

    assert fake_portal.auth_calls == 2
    assert outcomes[0].status is GroupStatus.UNCHANGED
    assert outcomes[0].error["kind"] == "unauthorized"
    assert outcomes[1].status is GroupStatus.CORRECTED
    assert document_state(ledger, y2) == 0
    assert session_store.load(credential.fingerprint).cookies[0]["value"] == "session2"


def test_session_save_failure_does_not_abort_run(engine, session_store, ledger, fake_portal, credential, monkeypatch):
    session_store.get_or_create(credential)
    add_document(ledger, cufe="X")
    duplicate = add_document(ledger, cufe="X", created_at="2024-03-02 10:00:00")
    fake_portal.add_invoice("X")

    def fail_save(session):
        raise OSError("No space left on device")

    monkeypatch.setattr(session_store, "save", fail_save)
    stats = StatsAggregator()

    [outcome] = engine.reconcile(_groups(ledger), credential, stats)

    assert outcome.status is GroupStatus.CORRECTED
    assert document_state(ledger, duplicate) == 0
    assert stats.snapshot().errors == 0
