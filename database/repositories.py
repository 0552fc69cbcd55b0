"""
SQL implementations of the verification storage interfaces.

Every operation runs in its own short transaction through
DatabaseSessionProvider.session_scope(). Unique-constraint violations are
translated into the domain errors the pipeline recovers from
(IdentityConflictError, DuplicateWorkItemError); any other SQLAlchemy error
surfaces as RepositoryError, a StoreError.
"""

import logging
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from database.connection import DatabaseSessionProvider
from database.models import (
    Account,
    AmlCase,
    AuditLog,
    KycAlert,
    QrVerificationSession,
)
from verification.exceptions import (
    DuplicateWorkItemError,
    IdentityConflictError,
    StoreError,
)
from verification.models import (
    AccountRecord,
    AlertRecord,
    AlertStatus,
    AuditEntry,
    CaseRecord,
    QrSessionRecord,
    QrSessionStatus,
    ResolutionStatus,
)
from verification.store import QrSessionStore, VerificationStore

logger = logging.getLogger(__name__)


class RepositoryError(StoreError):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when a row to update is not found."""
    pass


ACCOUNT_FIELDS = (
    'tenant_id', 'identity_key', 'identity_key_type', 'user_id', 'first_name',
    'last_name', 'email', 'phone_number', 'id_type', 'id_number', 'date_of_birth',
    'nationality', 'gender', 'occupation', 'employer', 'account_status',
    'kyc_verification_status', 'aml_status', 'sdk_source', 'sdk_documents',
    'sdk_verifications', 'sdk_analytics', 'face_image_url', 'face_image_base64',
    'images_fetched_at',
)


def _value(value: Any) -> Any:
    """Enum columns come back as members; records carry plain values"""
    return value.value if isinstance(value, PyEnum) else value


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC"""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ============================================
# ROW <-> RECORD CONVERSION
# ============================================

def account_to_record(row: Account) -> AccountRecord:
    record = AccountRecord(
        tenant_id=row.tenant_id,
        identity_key=row.identity_key,
        identity_key_type=row.identity_key_type,
        id=row.id,
        created_at=_as_utc(row.created_at),
    )
    for name in ACCOUNT_FIELDS[3:]:
        setattr(record, name, _value(getattr(row, name)))
    record.images_fetched_at = _as_utc(row.images_fetched_at)
    return record


def alert_to_record(row: KycAlert) -> AlertRecord:
    return AlertRecord(
        tenant_id=row.tenant_id,
        account_id=row.account_id,
        alert_type=row.alert_type,
        priority=_value(row.priority),
        id=row.id,
        status=_value(row.status),
        resolution_notes=row.resolution_notes,
        created_at=_as_utc(row.created_at),
    )


def case_to_record(row: AmlCase) -> CaseRecord:
    return CaseRecord(
        tenant_id=row.tenant_id,
        account_id=row.account_id,
        case_id=row.case_id,
        case_kind=row.case_kind,
        priority=_value(row.priority),
        id=row.id,
        resolution_status=_value(row.resolution_status),
        match_count=row.match_count,
        highest_risk_score=row.highest_risk_score,
        recommended_action=row.recommended_action,
        external_case_url=row.external_case_url,
        alert_ids=list(row.alert_ids or []),
        matched_entities=list(row.matched_entities or []),
        created_at=_as_utc(row.created_at),
    )


def session_to_record(row: QrVerificationSession) -> QrSessionRecord:
    return QrSessionRecord(
        session_id=row.session_id,
        token_hash=row.token_hash,
        expires_at=_as_utc(row.expires_at),
        customer_id=row.customer_id,
        customer_name=row.customer_name,
        journey_id=row.journey_id,
        reference_id=row.reference_id,
        metadata=dict(row.session_metadata or {}),
        deep_link=row.deep_link,
        status=_value(row.status),
        used=row.used,
        device_info=row.device_info,
        verification_result=row.verification_result,
        created_at=_as_utc(row.created_at),
        initialized_at=_as_utc(row.initialized_at),
        completed_at=_as_utc(row.completed_at),
    )


# ============================================
# VERIFICATION STORE
# ============================================

class SqlVerificationStore(VerificationStore):
    """Accounts, alerts, cases and audit entries on SQLAlchemy."""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    def find_account_by_identity_key(
        self, tenant_id: str, identity_key: str
    ) -> Optional[AccountRecord]:
        query = select(Account).where(
            Account.tenant_id == tenant_id,
            Account.identity_key == identity_key
        )
        try:
            with self.provider.session_scope() as session:
                row = session.execute(query).scalar_one_or_none()
                return account_to_record(row) if row else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Account lookup failed: {e}") from e

    def upsert_account(self, account: AccountRecord) -> AccountRecord:
        """
        Insert when account.id is None, update otherwise.

        Raises:
            IdentityConflictError: (tenant_id, identity_key) already taken
            EntityNotFoundError: update target vanished
        """
        try:
            with self.provider.session_scope() as session:
                if account.id is None:
                    row = Account(**{name: getattr(account, name) for name in ACCOUNT_FIELDS})
                    session.add(row)
                else:
                    row = session.get(Account, account.id)
                    if row is None:
                        raise EntityNotFoundError(f"Account not found: {account.id}")
                    for name in ACCOUNT_FIELDS[3:]:
                        setattr(row, name, getattr(account, name))
                session.flush()
                session.refresh(row)
                record = account_to_record(row)
        except IntegrityError as e:
            logger.info("Identity key already registered for tenant %s", account.tenant_id)
            raise IdentityConflictError("Account already exists for identity key") from e
        except SQLAlchemyError as e:
            raise RepositoryError(f"Account upsert failed: {e}") from e

        logger.debug(f"Upserted account: {record.id}")
        return record

    def find_open_alert(self, account_id: UUID, kind: str) -> Optional[AlertRecord]:
        query = select(KycAlert).where(
            KycAlert.account_id == account_id,
            KycAlert.alert_type == kind,
            KycAlert.status == AlertStatus.OPEN
        )
        try:
            with self.provider.session_scope() as session:
                row = session.execute(query).scalars().first()
                return alert_to_record(row) if row else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Alert lookup failed: {e}") from e

    def insert_alert(self, alert: AlertRecord) -> AlertRecord:
        try:
            with self.provider.session_scope() as session:
                row = KycAlert(
                    tenant_id=alert.tenant_id,
                    account_id=alert.account_id,
                    alert_type=alert.alert_type,
                    priority=alert.priority,
                    status=alert.status,
                    resolution_notes=alert.resolution_notes,
                )
                session.add(row)
                session.flush()
                session.refresh(row)
                record = alert_to_record(row)
        except IntegrityError as e:
            raise DuplicateWorkItemError(
                f"Open {alert.alert_type} alert already exists for account {alert.account_id}"
            ) from e
        except SQLAlchemyError as e:
            raise RepositoryError(f"Alert insert failed: {e}") from e

        logger.info(f"Created alert {record.id} ({record.alert_type}, {record.priority})")
        return record

    def find_open_case(self, account_id: UUID, kind: str) -> Optional[CaseRecord]:
        query = select(AmlCase).where(
            AmlCase.account_id == account_id,
            AmlCase.case_kind == kind,
            AmlCase.resolution_status == ResolutionStatus.UNSOLVED
        )
        try:
            with self.provider.session_scope() as session:
                row = session.execute(query).scalars().first()
                return case_to_record(row) if row else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Case lookup failed: {e}") from e

    def insert_case(self, case: CaseRecord) -> CaseRecord:
        try:
            with self.provider.session_scope() as session:
                row = AmlCase(
                    tenant_id=case.tenant_id,
                    account_id=case.account_id,
                    case_id=case.case_id,
                    case_kind=case.case_kind,
                    priority=case.priority,
                    resolution_status=case.resolution_status,
                    match_count=case.match_count,
                    highest_risk_score=case.highest_risk_score,
                    recommended_action=case.recommended_action,
                    external_case_url=case.external_case_url,
                    alert_ids=case.alert_ids,
                    matched_entities=case.matched_entities,
                )
                session.add(row)
                session.flush()
                session.refresh(row)
                record = case_to_record(row)
        except IntegrityError as e:
            raise DuplicateWorkItemError(
                f"Unsolved {case.case_kind} case already exists for account {case.account_id}"
            ) from e
        except SQLAlchemyError as e:
            raise RepositoryError(f"Case insert failed: {e}") from e

        logger.info(f"Created case {record.case_id} ({record.priority})")
        return record

    def append_audit_entry(self, entry: AuditEntry) -> None:
        try:
            with self.provider.session_scope() as session:
                session.add(AuditLog(
                    tenant_id=entry.tenant_id,
                    action=entry.action,
                    description=entry.description,
                    account_id=entry.account_id,
                    case_id=entry.case_id,
                    details=entry.details,
                ))
        except SQLAlchemyError as e:
            raise RepositoryError(f"Audit insert failed: {e}") from e


# ============================================
# QR SESSION STORE
# ============================================

class SqlQrSessionStore(QrSessionStore):
    """QR sessions with TTL and single use enforced in SQL."""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    def insert_session(self, session_record: QrSessionRecord) -> QrSessionRecord:
        values: Dict[str, Any] = dict(
            session_id=session_record.session_id,
            token_hash=session_record.token_hash,
            customer_id=session_record.customer_id,
            customer_name=session_record.customer_name,
            journey_id=session_record.journey_id,
            reference_id=session_record.reference_id,
            session_metadata=session_record.metadata,
            deep_link=session_record.deep_link,
            status=session_record.status,
            used=session_record.used,
            expires_at=session_record.expires_at,
        )
        if session_record.created_at is not None:
            values['created_at'] = session_record.created_at
        try:
            with self.provider.session_scope() as session:
                row = QrVerificationSession(**values)
                session.add(row)
                session.flush()
                session.refresh(row)
                return session_to_record(row)
        except SQLAlchemyError as e:
            raise RepositoryError(f"QR session insert failed: {e}") from e

    def _find_one(self, *criteria) -> Optional[QrSessionRecord]:
        try:
            with self.provider.session_scope() as session:
                row = session.execute(select(QrVerificationSession).where(*criteria)).scalar_one_or_none()
                return session_to_record(row) if row else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"QR session lookup failed: {e}") from e

    def find_by_token_hash(self, token_hash: str) -> Optional[QrSessionRecord]:
        return self._find_one(QrVerificationSession.token_hash == token_hash)

    def find_by_session_id(self, session_id: str) -> Optional[QrSessionRecord]:
        return self._find_one(QrVerificationSession.session_id == session_id)

    def _update(self, statement) -> int:
        try:
            with self.provider.session_scope() as session:
                result = session.execute(
                    statement.execution_options(synchronize_session=False)
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise RepositoryError(f"QR session update failed: {e}") from e

    def claim(
        self,
        token_hash: str,
        now: datetime,
        device_info: Optional[Dict[str, Any]] = None
    ) -> bool:
        statement = (
            update(QrVerificationSession)
            .where(
                QrVerificationSession.token_hash == token_hash,
                QrVerificationSession.used.is_(False),
                QrVerificationSession.status == QrSessionStatus.PENDING,
                QrVerificationSession.expires_at > now,
            )
            .values(
                used=True,
                status=QrSessionStatus.INITIALIZED,
                initialized_at=now,
                device_info=device_info or {},
            )
        )
        return self._update(statement) == 1

    def release(self, token_hash: str) -> None:
        statement = (
            update(QrVerificationSession)
            .where(
                QrVerificationSession.token_hash == token_hash,
                QrVerificationSession.status == QrSessionStatus.INITIALIZED,
            )
            .values(used=False, status=QrSessionStatus.PENDING, initialized_at=None)
        )
        self._update(statement)

    def complete(
        self,
        session_id: str,
        status: str,
        now: datetime,
        verification_result: Optional[Dict[str, Any]] = None
    ) -> bool:
        statement = (
            update(QrVerificationSession)
            .where(QrVerificationSession.session_id == session_id)
            .values(status=status, completed_at=now, verification_result=verification_result)
        )
        return self._update(statement) == 1
