"""
SQLAlchemy ORM Models for the Verification Decisioning Service

Tables:
1. accounts - One row per verified subject, unique per (tenant_id, identity_key)
2. kyc_alerts - Review alerts; at most one open alert per (account, alert_type)
3. aml_cases - Watchlist investigation cases; at most one unsolved case per (account, case_kind)
4. audit_logs - Append-only business audit trail
5. qr_verification_sessions - One-time QR session tokens (hash only) with expiry

Uniqueness is enforced here, at the storage level, so that concurrent or
duplicate webhook deliveries cannot create duplicate rows regardless of how
many service instances run. The partial unique indexes are declared for
both PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, Enum, JSON, Uuid, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

from verification.models import (
    AccountStatus,
    AlertStatus,
    AmlStatus,
    AuditAction,
    KycStatus,
    Priority,
    QrSessionStatus,
    ResolutionStatus,
)

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type, name: str) -> Enum:
    """Enum column storing the member values ('pending_review', not 'PENDING_REVIEW')"""
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


def _where(clause: str) -> dict:
    """Partial index predicate for both supported dialects"""
    return {'postgresql_where': text(clause), 'sqlite_where': text(clause)}


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# ACCOUNT
# ============================================

class Account(Base, TimestampMixin):
    """
    The subject's durable identity record.

    identity_key is the government ID number when one was read, else the
    producer session id, else a synthetic selfie-flow key. identity_key_type
    records which, since the three carry very different guarantees.
    """
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    identity_key: Mapped[str] = mapped_column(String(255), nullable=False)
    identity_key_type: Mapped[str] = mapped_column(String(20), nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    id_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    id_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    date_of_birth: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    nationality: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    occupation: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    employer: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    account_status: Mapped[AccountStatus] = mapped_column(
        _enum(AccountStatus, "account_status"),
        nullable=False,
        default=AccountStatus.PENDING_REVIEW,
        index=True
    )
    kyc_verification_status: Mapped[KycStatus] = mapped_column(
        _enum(KycStatus, "kyc_status"),
        nullable=False,
        default=KycStatus.PENDING
    )
    aml_status: Mapped[AmlStatus] = mapped_column(
        _enum(AmlStatus, "aml_status"),
        nullable=False,
        default=AmlStatus.PENDING,
        index=True
    )

    # Latest SDK artifacts, overwritten on every merge
    sdk_source: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    sdk_documents: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)
    sdk_verifications: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)
    sdk_analytics: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)

    face_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    face_image_base64: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    images_fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    alerts: Mapped[List["KycAlert"]] = relationship(
        "KycAlert",
        back_populates="account",
        cascade="all, delete-orphan",
        lazy="select"
    )
    cases: Mapped[List["AmlCase"]] = relationship(
        "AmlCase",
        back_populates="account",
        cascade="all, delete-orphan",
        lazy="select"
    )

    __table_args__ = (
        UniqueConstraint('tenant_id', 'identity_key', name='uq_account_tenant_identity'),
        Index('ix_account_tenant_status', 'tenant_id', 'account_status'),
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, key_type={self.identity_key_type}, status={self.account_status})>"


# ============================================
# WORK ITEMS
# ============================================

class KycAlert(Base, TimestampMixin):
    """
    Short-lived actionable flag raised by a rejected verification or a
    watchlist match.
    """
    __tablename__ = "kyc_alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False
    )
    alert_type: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[Priority] = mapped_column(_enum(Priority, "priority"), nullable=False)
    status: Mapped[AlertStatus] = mapped_column(
        _enum(AlertStatus, "alert_status"),
        nullable=False,
        default=AlertStatus.OPEN
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    account: Mapped["Account"] = relationship("Account", back_populates="alerts")

    __table_args__ = (
        Index('uq_alert_open_per_kind', 'account_id', 'alert_type', unique=True,
              **_where("status = 'open'")),
        Index('ix_alert_tenant_status', 'tenant_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<KycAlert(id={self.id}, type='{self.alert_type}', status={self.status})>"


class AmlCase(Base, TimestampMixin):
    """
    Investigation record for a watchlist match batch. Stays open
    (resolution_status 'unsolved') until an analyst resolves it.
    """
    __tablename__ = "aml_cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False
    )
    case_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    case_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[Priority] = mapped_column(_enum(Priority, "priority"), nullable=False)
    resolution_status: Mapped[ResolutionStatus] = mapped_column(
        _enum(ResolutionStatus, "resolution_status"),
        nullable=False,
        default=ResolutionStatus.UNSOLVED
    )

    match_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    highest_risk_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    recommended_action: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    external_case_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    alert_ids: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)
    matched_entities: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)

    account: Mapped["Account"] = relationship("Account", back_populates="cases")

    __table_args__ = (
        Index('uq_case_unsolved_per_kind', 'account_id', 'case_kind', unique=True,
              **_where("resolution_status = 'unsolved'")),
        Index('ix_case_tenant_priority', 'tenant_id', 'priority'),
    )

    def __repr__(self) -> str:
        return f"<AmlCase(case_id='{self.case_id}', priority={self.priority})>"


# ============================================
# AUDIT
# ============================================

class AuditLog(Base):
    """
    Business audit trail written alongside every work item.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Timestamp (no updated_at - audit logs are immutable)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )
    action: Mapped[AuditAction] = mapped_column(
        _enum(AuditAction, "audit_action"),
        nullable=False,
        index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    case_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)

    __table_args__ = (
        Index('ix_audit_timestamp_action', 'timestamp', 'action'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action})>"


# ============================================
# QR SESSIONS
# ============================================

class QrVerificationSession(Base, TimestampMixin):
    """
    One-time QR verification session. Only the SHA-256 of the token is
    stored; expiry is checked against expires_at and single use is enforced
    by a conditional update on (used, status, expires_at).
    """
    __tablename__ = "qr_verification_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    journey_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    # 'metadata' is reserved on declarative classes
    session_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JsonType, nullable=True)
    deep_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[QrSessionStatus] = mapped_column(
        _enum(QrSessionStatus, "qr_session_status"),
        nullable=False,
        default=QrSessionStatus.PENDING
    )
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_info: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    verification_result: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    initialized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<QrVerificationSession(session_id='{self.session_id}', status={self.status})>"
