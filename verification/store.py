"""
Storage interfaces the pipeline depends on.

The SQL implementations live in database/repositories.py. Implementations
must enforce uniqueness at the storage level: one account per
(tenant_id, identity_key), one open alert per (account, alert_type) and one
unsolved case per (account, case_kind).
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from verification.models import (
    AccountRecord,
    AlertRecord,
    CaseRecord,
    AuditEntry,
    QrSessionRecord,
)


class VerificationStore(ABC):
    """Accounts, work items and audit entries"""

    @abstractmethod
    def find_account_by_identity_key(
        self, tenant_id: str, identity_key: str
    ) -> Optional[AccountRecord]:
        ...

    @abstractmethod
    def upsert_account(self, account: AccountRecord) -> AccountRecord:
        """Insert when account.id is None, update otherwise.

        Raises:
            IdentityConflictError: insert hit the identity uniqueness constraint
        """

    @abstractmethod
    def find_open_alert(self, account_id: uuid.UUID, kind: str) -> Optional[AlertRecord]:
        ...

    @abstractmethod
    def insert_alert(self, alert: AlertRecord) -> AlertRecord:
        """Raises DuplicateWorkItemError when an open alert of the kind exists."""

    @abstractmethod
    def find_open_case(self, account_id: uuid.UUID, kind: str) -> Optional[CaseRecord]:
        ...

    @abstractmethod
    def insert_case(self, case: CaseRecord) -> CaseRecord:
        """Raises DuplicateWorkItemError when an unsolved case of the kind exists."""

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> None:
        ...


class QrSessionStore(ABC):
    """Time-limited single-use QR session tokens"""

    @abstractmethod
    def insert_session(self, session: QrSessionRecord) -> QrSessionRecord:
        ...

    @abstractmethod
    def find_by_token_hash(self, token_hash: str) -> Optional[QrSessionRecord]:
        ...

    @abstractmethod
    def find_by_session_id(self, session_id: str) -> Optional[QrSessionRecord]:
        ...

    @abstractmethod
    def claim(
        self,
        token_hash: str,
        now: datetime,
        device_info: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Atomically mark an unused, unexpired, pending session as initialized.

        Returns False when another caller claimed it first or it expired.
        """

    @abstractmethod
    def release(self, token_hash: str) -> None:
        """Undo a claim whose follow-up step failed."""

    @abstractmethod
    def complete(
        self,
        session_id: str,
        status: str,
        now: datetime,
        verification_result: Optional[Dict[str, Any]] = None
    ) -> bool:
        ...
