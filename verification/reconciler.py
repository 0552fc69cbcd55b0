"""
IdentityReconciler - find-or-create the subject's account and merge the
latest SDK artifacts into it.

Identity key preference:
    1. government ID number (chip reading, then front scan)
    2. producer session id
    3. synthetic key from submission time (selfie-only flows; a weaker
       guarantee, every such submission becomes its own account)

Lookup-then-insert races are settled by the store's uniqueness constraint:
an IdentityConflictError on insert is retried as fetch-and-merge.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from security_logger import sanitize_for_logging
from verification.exceptions import IdentityConflictError
from verification.models import (
    AccountRecord,
    AccountStatus,
    AmlStatus,
    IdentityKeyType,
    KycStatus,
    TraceEvent,
    Verdict,
    VerdictStatus,
    VerificationPayload,
)
from verification.store import VerificationStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    account: AccountRecord
    created: bool


def _first(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value not in (None, ''):
            return str(value)
    return ''


def _section(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_identity_data(payload: VerificationPayload) -> Dict[str, Any]:
    """Identity fields from the chip reading, else from the front scan"""
    document = payload.first_document
    if not document:
        return {}

    reading = _section(document.get('reading')).get('data')
    front = _section(document.get('scan')).get('front')
    document_type = document.get('documentType') or 'UAE_ID'

    if isinstance(reading, dict) and reading:
        return {
            'full_name': _first(reading, 'fullName', 'arabicFullName'),
            'id_number': _first(reading, 'idNumber'),
            'date_of_birth': _first(reading, 'dateOfBirth'),
            'nationality': _first(reading, 'nationality'),
            'document_type': document_type,
            'card_number': _first(reading, 'cardNumber'),
            'gender': _first(reading, 'sex'),
            'passport_number': _first(reading, 'passportNumber'),
            'email': _first(reading, 'homeAddressEmail', 'workAddressEmail'),
            'phone_number': _first(reading, 'homeAddressMobilePhoneNo', 'workAddressMobilePhoneNo'),
            'occupation': _first(reading, 'occupation'),
            'employer': _first(reading, 'companyName', 'sponsorName'),
            'nfc_verified': True,
        }

    if isinstance(front, dict) and front:
        return {
            'full_name': _first(front, 'fullName', 'arabicFullName'),
            'id_number': _first(front, 'identityNumber'),
            'date_of_birth': _first(front, 'dateOfBirthFormatted', 'dateOfBirth'),
            'nationality': _first(front, 'nationality', 'nationalityArabic'),
            'document_type': document_type,
            'gender': _first(front, 'gender', 'genderArabic'),
            'nfc_verified': False,
        }

    return {}


def select_identity_key(
    payload: VerificationPayload,
    identity: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None
) -> Tuple[str, str]:
    """Return (identity_key, key_type) for the submission"""
    identity = identity if identity is not None else extract_identity_data(payload)
    government_id = (identity.get('id_number') or '').strip()
    if government_id:
        return government_id, IdentityKeyType.GOVERNMENT_ID.value

    if payload.session_id:
        return f"SESSION-{payload.session_id}", IdentityKeyType.SESSION_ID.value

    moment = now or datetime.now(timezone.utc)
    return f"SELFIE-{int(moment.timestamp() * 1000)}", IdentityKeyType.SYNTHETIC.value


class IdentityReconciler:
    """Creates or merges one account per identity key within a tenant"""

    def __init__(self, store: VerificationStore):
        self.store = store

    def reconcile(
        self,
        tenant_id: str,
        payload: VerificationPayload,
        verdict: Verdict,
        trace: List[TraceEvent],
        now: Optional[datetime] = None
    ) -> ReconcileResult:
        identity = extract_identity_data(payload)
        key, key_type = select_identity_key(payload, identity, now)
        analytics = [e.to_dict() for e in trace]

        existing = self.store.find_account_by_identity_key(tenant_id, key)
        if existing is not None:
            merged = self.merge(existing, payload, identity, analytics)
            logger.info("Merging submission into account %s", existing.id)
            return ReconcileResult(self.store.upsert_account(merged), created=False)

        candidate = self.build_account(tenant_id, key, key_type, payload, identity, verdict, analytics)
        try:
            account = self.store.upsert_account(candidate)
        except IdentityConflictError:
            logger.info(
                "Concurrent insert for identity %s; merging instead",
                sanitize_for_logging(key)[:12]
            )
            existing = self.store.find_account_by_identity_key(tenant_id, key)
            if existing is None:
                raise
            merged = self.merge(existing, payload, identity, analytics)
            return ReconcileResult(self.store.upsert_account(merged), created=False)

        logger.info("Created account %s (key type %s)", account.id, key_type)
        return ReconcileResult(account, created=True)

    @staticmethod
    def build_account(
        tenant_id: str,
        key: str,
        key_type: str,
        payload: VerificationPayload,
        identity: Dict[str, Any],
        verdict: Verdict,
        analytics: List[Dict[str, Any]]
    ) -> AccountRecord:
        name_parts = (identity.get('full_name') or '').split()
        approved = verdict.status == VerdictStatus.APPROVED.value
        return AccountRecord(
            tenant_id=tenant_id,
            identity_key=key,
            identity_key_type=key_type,
            user_id=f"SDK_{key}",
            first_name=name_parts[0] if name_parts else 'Unknown',
            last_name=' '.join(name_parts[1:]),
            email=identity.get('email') or None,
            phone_number=identity.get('phone_number') or None,
            id_type=(identity.get('document_type') or 'eid').lower(),
            id_number=identity.get('id_number') or None,
            date_of_birth=identity.get('date_of_birth') or None,
            nationality=identity.get('nationality') or None,
            gender=(identity.get('gender') or '').lower() or None,
            occupation=identity.get('occupation') or None,
            employer=identity.get('employer') or None,
            account_status=(AccountStatus.PENDING_REVIEW.value if approved
                             else AccountStatus.SUSPENDED.value),
            kyc_verification_status=(KycStatus.VERIFIED.value if identity.get('nfc_verified')
                                     else KycStatus.PENDING.value),
            aml_status=AmlStatus.PENDING.value,
            sdk_source=payload.source,
            sdk_documents=payload.documents,
            sdk_verifications=payload.verifications,
            sdk_analytics=analytics,
        )

    @staticmethod
    def merge(
        existing: AccountRecord,
        payload: VerificationPayload,
        identity: Dict[str, Any],
        analytics: List[Dict[str, Any]]
    ) -> AccountRecord:
        """Overwrite SDK artifacts; never weaken identity status"""
        updates: Dict[str, Any] = {
            'sdk_source': payload.source,
            'sdk_documents': payload.documents,
            'sdk_verifications': payload.verifications,
            'sdk_analytics': analytics,
        }

        fresh = {
            'email': identity.get('email'),
            'phone_number': identity.get('phone_number'),
            'date_of_birth': identity.get('date_of_birth'),
            'nationality': identity.get('nationality'),
            'occupation': identity.get('occupation'),
            'employer': identity.get('employer'),
        }
        for field_name, value in fresh.items():
            if value:
                updates[field_name] = value

        if identity.get('nfc_verified'):
            updates['kyc_verification_status'] = KycStatus.VERIFIED.value
        elif existing.kyc_verification_status != KycStatus.VERIFIED.value:
            updates['kyc_verification_status'] = KycStatus.PENDING.value

        return replace(existing, **updates)

    def update_aml_status(self, account: AccountRecord, case_open: bool) -> AccountRecord:
        """aml_match_found while a case is unsolved, aml_clear otherwise"""
        target = AmlStatus.MATCH_FOUND.value if case_open else AmlStatus.CLEAR.value
        if account.aml_status == target:
            return account
        return self.store.upsert_account(replace(account, aml_status=target))

    def apply_images(
        self,
        account: AccountRecord,
        face_image_url: Optional[str],
        face_image_base64: Optional[str],
        fetched_at: Optional[datetime] = None
    ) -> AccountRecord:
        updated = replace(
            account,
            face_image_url=face_image_url or account.face_image_url,
            face_image_base64=face_image_base64 or account.face_image_base64,
            images_fetched_at=fetched_at or datetime.now(timezone.utc),
        )
        return self.store.upsert_account(updated)
