"""
Domain records for the verification decisioning pipeline.

These are plain dataclasses shared by the pipeline components and the
storage layer. The ORM models in database/models.py mirror the persistent
ones (accounts, alerts, cases, audit entries, QR sessions).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================
# ENUMS
# ============================================

class VerdictStatus(str, Enum):
    """Outcome of one classification pass"""
    APPROVED = "approved"
    MANUAL_REVIEW = "manual_review"
    REJECTED = "rejected"


class Severity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventStatus(str, Enum):
    """Normalized trace event status"""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class TraceVariant(str, Enum):
    """Producer of a raw trace"""
    WEB_SDK = "webSdk"
    MOBILE_SDK = "mobileSdk"
    SYNTHETIC = "synthetic"


class IdentityKeyType(str, Enum):
    """Strength of the key an account was matched on"""
    GOVERNMENT_ID = "government_id"
    SESSION_ID = "session_id"
    SYNTHETIC = "synthetic"


class AccountStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class KycStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AmlStatus(str, Enum):
    PENDING = "pending"
    CLEAR = "aml_clear"
    MATCH_FOUND = "aml_match_found"


class Priority(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    CLOSED = "closed"


class ResolutionStatus(str, Enum):
    """Case resolution; 'false' and 'positive' close the case"""
    UNSOLVED = "unsolved"
    FALSE = "false"
    POSITIVE = "positive"


class RecommendedAction(str, Enum):
    ESCALATE = "ESCALATE"
    REVIEW = "REVIEW"


class AuditAction(str, Enum):
    """Audit trail actions written by the pipeline"""
    SDK_ENROLLMENT_PROCESSED = "SDK_ENROLLMENT_PROCESSED"
    ALERT_CREATED = "ALERT_CREATED"
    CASE_CREATED = "CASE_CREATED"
    BACKGROUND_CHECK_MATCH = "BACKGROUND_CHECK_MATCH"


class QrSessionStatus(str, Enum):
    PENDING = "pending"
    INITIALIZED = "initialized"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


BACKGROUND_CHECK_KIND = "background_check_match"


# ============================================
# PAYLOAD AND PIPELINE VALUES
# ============================================

@dataclass(frozen=True)
class VerificationPayload:
    """Decoded enrollment submission. Immutable once decoded."""
    source: Dict[str, Any] = field(default_factory=dict)
    documents: List[Dict[str, Any]] = field(default_factory=list)
    verifications: List[Dict[str, Any]] = field(default_factory=list)
    trace: Any = None
    background_check: Optional[Dict[str, Any]] = None
    header: Dict[str, Any] = field(default_factory=dict)
    signature_verified: bool = False

    @property
    def first_document(self) -> Optional[Dict[str, Any]]:
        return self.documents[0] if self.documents else None

    @property
    def first_verification(self) -> Optional[Dict[str, Any]]:
        return self.verifications[0] if self.verifications else None

    @property
    def session_id(self) -> Optional[str]:
        value = self.source.get('sessionId')
        return str(value) if value else None


@dataclass
class TraceEvent:
    """One normalized step of a verification session"""
    name: str
    category: str
    status: str
    duration_ms: int
    timestamp: datetime
    variant: str
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'category': self.category,
            'status': self.status,
            'durationMs': self.duration_ms,
            'timestamp': self.timestamp.isoformat(),
            'variant': self.variant,
            'raw': self.raw,
        }


@dataclass
class Signal:
    """A named measurement pulled from the verification object"""
    name: str
    value: Any
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'value': self.value, 'enabled': self.enabled}


@dataclass
class Finding:
    """One issue (reject tier) or warning (warn tier)"""
    type: str
    severity: str
    message: str
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {'type': self.type, 'severity': self.severity}
        result.update(self.evidence)
        result['message'] = self.message
        return result


@dataclass
class Verdict:
    """Classification outcome with complete evidence"""
    status: str = VerdictStatus.APPROVED.value
    issues: List[Finding] = field(default_factory=list)
    warnings: List[Finding] = field(default_factory=list)
    trace_summary: Optional[Dict[str, Any]] = None

    @property
    def passed_checks(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'status': self.status,
            'issues': [i.to_dict() for i in self.issues],
            'warnings': [w.to_dict() for w in self.warnings],
            'passed_checks': self.passed_checks,
        }
        if self.trace_summary is not None:
            result['trace_summary'] = self.trace_summary
        return result


@dataclass
class MatchedEntity:
    """A single watchlist hit with its supporting evidence"""
    sys_id: Optional[str] = None
    entity_id: Optional[str] = None
    name: Optional[str] = None
    entity_type: Optional[str] = None
    match_score: float = 0
    risk_score: float = 0
    rdc_url: Optional[str] = None
    pep_types: List[Any] = field(default_factory=list)
    events: List[Any] = field(default_factory=list)
    sources: List[Any] = field(default_factory=list)
    relationships: List[Any] = field(default_factory=list)
    addresses: List[Any] = field(default_factory=list)
    birth_dates: List[Any] = field(default_factory=list)
    identifications: List[Any] = field(default_factory=list)
    attributes: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sys_id': self.sys_id,
            'entity_id': self.entity_id,
            'name': self.name,
            'entity_type': self.entity_type,
            'match_score': self.match_score,
            'risk_score': self.risk_score,
            'rdc_url': self.rdc_url,
            'pep_types': self.pep_types,
            'events': self.events,
            'sources': self.sources,
            'relationships': self.relationships,
            'addresses': self.addresses,
            'birth_dates': self.birth_dates,
            'identifications': self.identifications,
            'attributes': self.attributes,
        }


@dataclass
class WatchlistResult:
    """Severity assessment of one background-check block"""
    match: bool = False
    entities: List[MatchedEntity] = field(default_factory=list)
    priority: Optional[str] = None
    recommended_action: Optional[str] = None
    highest_risk_score: Optional[float] = None
    case_id: Optional[str] = None
    monitoring_id: Optional[str] = None
    alert_date: Optional[str] = None

    @property
    def has_case(self) -> bool:
        """A case is only warranted by at least one matched entity"""
        return bool(self.match and self.entities)

    def to_case_data(self) -> Optional[Dict[str, Any]]:
        if not self.has_case:
            return None
        return {
            'case_type': BACKGROUND_CHECK_KIND,
            'case_id': self.case_id,
            'priority': self.priority,
            'matched_entities': [e.to_dict() for e in self.entities],
            'match_count': len(self.entities),
            'highest_risk_score': self.highest_risk_score,
            'recommended_action': self.recommended_action,
            'monitoring_id': self.monitoring_id,
            'alert_date': self.alert_date,
        }


# ============================================
# PERSISTENT RECORDS
# ============================================

@dataclass
class AccountRecord:
    """The subject's durable identity record"""
    tenant_id: str
    identity_key: str
    identity_key_type: str
    id: Optional[uuid.UUID] = None
    user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    nationality: Optional[str] = None
    gender: Optional[str] = None
    occupation: Optional[str] = None
    employer: Optional[str] = None
    account_status: str = AccountStatus.PENDING_REVIEW.value
    kyc_verification_status: str = KycStatus.PENDING.value
    aml_status: str = AmlStatus.PENDING.value
    sdk_source: Optional[Dict[str, Any]] = None
    sdk_documents: Optional[List[Any]] = None
    sdk_verifications: Optional[List[Any]] = None
    sdk_analytics: Optional[List[Dict[str, Any]]] = None
    face_image_url: Optional[str] = None
    face_image_base64: Optional[str] = None
    images_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class AlertRecord:
    """Short-lived actionable flag for one account"""
    tenant_id: str
    account_id: uuid.UUID
    alert_type: str
    priority: str
    id: Optional[uuid.UUID] = None
    status: str = AlertStatus.OPEN.value
    resolution_notes: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': str(self.id) if self.id else None,
            'account_id': str(self.account_id),
            'alert_type': self.alert_type,
            'priority': self.priority,
            'status': self.status,
            'resolution_notes': self.resolution_notes,
        }


@dataclass
class CaseRecord:
    """Investigation record aggregating alerts for one account"""
    tenant_id: str
    account_id: uuid.UUID
    case_id: str
    case_kind: str
    priority: str
    id: Optional[uuid.UUID] = None
    resolution_status: str = ResolutionStatus.UNSOLVED.value
    match_count: int = 0
    highest_risk_score: Optional[float] = None
    recommended_action: Optional[str] = None
    external_case_url: Optional[str] = None
    alert_ids: List[str] = field(default_factory=list)
    matched_entities: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None


@dataclass
class AuditEntry:
    """Business audit record appended alongside every work item"""
    tenant_id: str
    action: str
    description: str
    account_id: Optional[uuid.UUID] = None
    case_id: Optional[uuid.UUID] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class QrSessionRecord:
    """One-time QR verification session; the raw token is never stored"""
    session_id: str
    token_hash: str
    expires_at: datetime
    customer_id: str = "default"
    customer_name: Optional[str] = None
    journey_id: Optional[str] = None
    reference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    deep_link: Optional[str] = None
    status: str = QrSessionStatus.PENDING.value
    used: bool = False
    device_info: Optional[Dict[str, Any]] = None
    verification_result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    initialized_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
