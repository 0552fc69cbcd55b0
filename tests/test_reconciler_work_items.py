"""
Tests for IdentityReconciler and CaseAlertFactory against the SQL store.
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from conftest import TENANT_ID, build_background_check, build_enrollment_data
from database.models import AuditLog, KycAlert
from verification.decoder import PayloadDecoder
from verification.exceptions import DuplicateWorkItemError, IdentityConflictError, StoreError
from verification.models import (
    AccountRecord,
    AlertRecord,
    AuditEntry,
    Finding,
    Verdict,
)
from verification.reconciler import IdentityReconciler, extract_identity_data, select_identity_key
from verification.watchlist import WatchlistMatcher
from verification.work_items import CaseAlertFactory, alert_priority

APPROVED = Verdict(status="approved")
REJECTED = Verdict(status="rejected", issues=[Finding("MRZ_CHECKSUM", "high", "MRZ checksum validation failed")])


def payload_of(**kwargs):
    return PayloadDecoder(allow_unsigned_data=True).decode_data(build_enrollment_data(**kwargs))


def count(db_provider, model, *criteria):
    with db_provider.session_scope() as session:
        return session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


@pytest.fixture
def reconciler(store):
    return IdentityReconciler(store)


@pytest.fixture
def factory(store):
    return CaseAlertFactory(store)


@pytest.fixture
def account(reconciler):
    return reconciler.reconcile(TENANT_ID, payload_of(), APPROVED, []).account


# ============================================
# IDENTITY DATA
# ============================================

class TestIdentityData:
    """Identity fields come from the chip reading, else the front scan."""

    def test_chip_reading_first(self):
        identity = extract_identity_data(payload_of())
        assert identity['id_number'] == "784-1990-1234567-1"
        assert identity['email'] == "ahmed@example.com"
        assert identity['gender'] == "M"
        assert identity['nfc_verified'] is True

    def test_front_scan_fallback(self):
        identity = extract_identity_data(payload_of(nfc=False))
        assert identity['id_number'] == "784-1990-1234567-1"
        assert identity['date_of_birth'] == "1990-01-15"
        assert identity['nfc_verified'] is False

    def test_non_object_sections_ignored(self):
        data = build_enrollment_data()
        data['documents'][0]['reading'] = True
        data['documents'][0]['scan'] = "front-only"
        payload = PayloadDecoder(allow_unsigned_data=True).decode_data(data)
        assert extract_identity_data(payload) == {}

    def test_no_documents(self):
        assert extract_identity_data(PayloadDecoder(allow_unsigned_data=True).decode_data({})) == {}


class TestIdentityKey:
    """Key preference: government id, session id, synthetic."""

    def test_government_id(self):
        assert select_identity_key(payload_of()) == ("784-1990-1234567-1", "government_id")

    def test_session_fallback(self):
        key = select_identity_key(payload_of(id_number=None, session_id="abc"))
        assert key == ("SESSION-abc", "session_id")

    def test_synthetic_fallback(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        key = select_identity_key(payload_of(id_number=None, session_id=None), now=now)
        assert key == (f"SELFIE-{int(now.timestamp() * 1000)}", "synthetic")


# ============================================
# RECONCILIATION
# ============================================

class TestReconcile:
    """Find-or-create with merge."""

    def test_creates_account(self, reconciler):
        result = reconciler.reconcile(TENANT_ID, payload_of(), APPROVED, [])
        account = result.account

        assert result.created is True
        assert account.id is not None
        assert account.user_id == "SDK_784-1990-1234567-1"
        assert account.first_name == "Ahmed"
        assert account.last_name == "Hassan Ali"
        assert account.account_status == "pending_review"
        assert account.kyc_verification_status == "verified"
        assert account.aml_status == "pending"
        assert account.gender == "m"
        assert account.sdk_source['sdkType'] == "KYC_MOBILE"

    def test_rejected_account_suspended(self, reconciler):
        account = reconciler.reconcile(TENANT_ID, payload_of(), REJECTED, []).account
        assert account.account_status == "suspended"

    def test_second_sighting_merges(self, reconciler, db_provider):
        from database.models import Account

        first = reconciler.reconcile(TENANT_ID, payload_of(), APPROVED, [])
        second = reconciler.reconcile(TENANT_ID, payload_of(session_id="sess-002"), REJECTED, [])

        assert second.created is False
        assert second.account.id == first.account.id
        assert second.account.sdk_source['sessionId'] == "sess-002"
        assert second.account.account_status == "pending_review"
        assert count(db_provider, Account) == 1

    def test_tenants_are_separate(self, reconciler):
        other_tenant = str(uuid.uuid4())
        first = reconciler.reconcile(TENANT_ID, payload_of(), APPROVED, [])
        second = reconciler.reconcile(other_tenant, payload_of(), APPROVED, [])
        assert second.created is True
        assert second.account.id != first.account.id

    def test_verified_never_downgraded(self, reconciler):
        reconciler.reconcile(TENANT_ID, payload_of(nfc=True), APPROVED, [])
        merged = reconciler.reconcile(TENANT_ID, payload_of(nfc=False), APPROVED, []).account
        assert merged.kyc_verification_status == "verified"

    def test_empty_fields_do_not_erase(self, reconciler):
        reconciler.reconcile(TENANT_ID, payload_of(nfc=True), APPROVED, [])
        merged = reconciler.reconcile(TENANT_ID, payload_of(nfc=False), APPROVED, []).account
        assert merged.email == "ahmed@example.com"
        assert merged.occupation == "Engineer"

    def test_conflict_becomes_merge(self):
        existing = AccountRecord(tenant_id=TENANT_ID, identity_key="784-1990-1234567-1",
                                 identity_key_type="government_id", id=uuid.uuid4(),
                                 kyc_verification_status="verified")
        store = MagicMock()
        store.find_account_by_identity_key.side_effect = [None, existing]
        store.upsert_account.side_effect = [IdentityConflictError("taken"), existing]

        result = IdentityReconciler(store).reconcile(TENANT_ID, payload_of(), APPROVED, [])

        assert result.created is False
        assert result.account is existing
        merged = store.upsert_account.call_args_list[1].args[0]
        assert merged.id == existing.id

    def test_conflict_without_row_raises(self):
        store = MagicMock()
        store.find_account_by_identity_key.return_value = None
        store.upsert_account.side_effect = IdentityConflictError("taken")
        with pytest.raises(IdentityConflictError):
            IdentityReconciler(store).reconcile(TENANT_ID, payload_of(), APPROVED, [])

    def test_trace_stored_as_analytics(self, reconciler):
        from verification.trace import TraceNormalizer

        trace = TraceNormalizer().normalize([{'name': "SCAN", 'timestamp': 0}])
        account = reconciler.reconcile(TENANT_ID, payload_of(), APPROVED, trace).account
        assert account.sdk_analytics[0]['name'] == "SCAN"


class TestAmlStatus:
    """AML status follows whether an unsolved case exists."""

    def test_clean_pass_clears_pending(self, reconciler, account):
        assert reconciler.update_aml_status(account, case_open=False).aml_status == "aml_clear"

    def test_open_case_sets_match(self, reconciler, account):
        assert reconciler.update_aml_status(account, case_open=True).aml_status == "aml_match_found"

    def test_match_kept_while_case_open(self, reconciler, account, store):
        matched = reconciler.update_aml_status(account, case_open=True)
        after = reconciler.update_aml_status(matched, case_open=True)
        assert after.aml_status == "aml_match_found"
        stored = store.find_account_by_identity_key(TENANT_ID, account.identity_key)
        assert stored.aml_status == "aml_match_found"

    def test_match_cleared_after_case_resolved(self, reconciler, account, store):
        matched = reconciler.update_aml_status(account, case_open=True)
        after = reconciler.update_aml_status(matched, case_open=False)
        assert after.aml_status == "aml_clear"
        stored = store.find_account_by_identity_key(TENANT_ID, account.identity_key)
        assert stored.aml_status == "aml_clear"

    def test_unchanged_skips_write(self, account):
        store = MagicMock()
        cleared = IdentityReconciler(store).update_aml_status(
            AccountRecord(**{**account.__dict__, 'aml_status': "aml_clear"}), case_open=False
        )
        assert cleared.aml_status == "aml_clear"
        store.upsert_account.assert_not_called()

    def test_apply_images(self, reconciler, account):
        updated = reconciler.apply_images(account, "https://img.example.com/face.jpg", None)
        assert updated.face_image_url == "https://img.example.com/face.jpg"
        assert updated.images_fetched_at is not None


# ============================================
# WORK ITEMS
# ============================================

class TestIssueAlerts:
    """One open alert per (account, issue type)."""

    def test_alert_per_distinct_type(self, factory, account, db_provider):
        issues = [
            Finding("ID_SCREEN_DETECTION", "high", "screen"),
            Finding("ID_PHOTO_TAMPERING", "critical", "tampering"),
            Finding("ID_SCREEN_DETECTION", "high", "again"),
        ]
        outcome = factory.create_issue_alerts(account, issues)

        assert outcome.alert_created is True
        assert [a.alert_type for a in outcome.created_alerts] == ["id_screen_detection", "id_photo_tampering"]
        assert [a.priority for a in outcome.created_alerts] == ["high", "critical"]
        assert count(db_provider, KycAlert) == 2
        assert count(db_provider, AuditLog, AuditLog.action == "ALERT_CREATED") == 2

    def test_existing_open_alert_reused(self, factory, account, db_provider):
        issues = [Finding("MRZ_CHECKSUM", "high", "mrz")]
        first = factory.create_issue_alerts(account, issues)
        second = factory.create_issue_alerts(account, issues)

        assert second.alert_created is False
        assert second.alerts[0].id == first.alerts[0].id
        assert count(db_provider, KycAlert) == 1

    def test_duplicate_insert_falls_back(self, account):
        existing = AlertRecord(tenant_id=TENANT_ID, account_id=account.id,
                               alert_type="mrz_checksum", priority="high", id=uuid.uuid4())
        store = MagicMock()
        store.find_open_alert.side_effect = [None, existing]
        store.insert_alert.side_effect = DuplicateWorkItemError("exists")

        outcome = CaseAlertFactory(store).create_issue_alerts(account, [Finding("MRZ_CHECKSUM", "high", "m")])
        assert outcome.alerts == [existing]
        assert outcome.alert_created is False
        store.append_audit_entry.assert_not_called()

    def test_priority_mapping(self):
        assert alert_priority(Finding("X", "critical", "")) == "critical"
        assert alert_priority(Finding("X", "high", "")) == "high"
        assert alert_priority(Finding("X", "medium", "")) == "high"


class TestWatchlistCase:
    """One unsolved case per (account, kind)."""

    def _result(self, account, scores=(95,)):
        return WatchlistMatcher().match(build_background_check(list(scores)), account.id)

    def test_case_and_alert_created(self, factory, account, db_provider):
        outcome = factory.open_watchlist_case(account, self._result(account))

        assert outcome.case_created is True
        assert outcome.alert_created is True
        case = outcome.case
        assert case.case_kind == "background_check_match"
        assert case.priority == "critical"
        assert case.resolution_status == "unsolved"
        assert case.match_count == 1
        assert case.alert_ids == [str(outcome.alerts[0].id)]
        assert case.matched_entities[0]['name'] == "Ahmed Hassan Ali"

        actions = ["ALERT_CREATED", "CASE_CREATED", "BACKGROUND_CHECK_MATCH"]
        for action in actions:
            assert count(db_provider, AuditLog, AuditLog.action == action) == 1

    def test_open_case_suppresses_new_items(self, factory, account, db_provider):
        first = factory.open_watchlist_case(account, self._result(account))
        second = factory.open_watchlist_case(account, self._result(account, (70,)))

        assert second.case_created is False
        assert second.alert_created is False
        assert second.case.case_id == first.case.case_id
        assert count(db_provider, KycAlert) == 1

    def test_no_entities_no_case(self, factory, account):
        result = WatchlistMatcher().match(build_background_check([]), account.id)
        outcome = factory.open_watchlist_case(account, result)
        assert outcome.case is None
        assert outcome.alerts == []

    def test_duplicate_case_insert_falls_back(self, account):
        open_case = MagicMock(case_id="BGC-1-X")
        store = MagicMock()
        store.find_open_case.side_effect = [None, open_case]
        store.find_open_alert.return_value = None
        store.insert_alert.side_effect = lambda alert: alert
        store.insert_case.side_effect = DuplicateWorkItemError("exists")

        outcome = CaseAlertFactory(store).open_watchlist_case(account, self._result(account))
        assert outcome.case is open_case
        assert outcome.case_created is False


class TestAudit:
    """Audit failures are logged, never raised."""

    def test_audit_failure_swallowed(self, account):
        store = MagicMock()
        store.append_audit_entry.side_effect = StoreError("audit sink down")
        factory = CaseAlertFactory(store)

        assert factory.record_audit(AuditEntry(TENANT_ID, "ALERT_CREATED", "x")) is False

    def test_alert_survives_audit_failure(self, account):
        store = MagicMock()
        store.find_open_alert.return_value = None
        store.insert_alert.side_effect = lambda alert: alert
        store.append_audit_entry.side_effect = StoreError("audit sink down")

        outcome = CaseAlertFactory(store).create_issue_alerts(account, [Finding("MRZ_CHECKSUM", "high", "m")])
        assert outcome.alert_created is True
