"""
CaseAlertFactory - opens review work items for rejected verifications and
watchlist matches, with one open item per (account, kind).

Deduplication is check-then-insert backed by the store's partial unique
indexes; a DuplicateWorkItemError on insert means another delivery won the
race, and the open item it created is returned instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from verification.exceptions import DuplicateWorkItemError, StoreError
from verification.models import (
    BACKGROUND_CHECK_KIND,
    AccountRecord,
    AlertRecord,
    AuditAction,
    AuditEntry,
    CaseRecord,
    Finding,
    Priority,
    Severity,
    WatchlistResult,
)
from verification.store import VerificationStore

logger = logging.getLogger(__name__)


@dataclass
class WorkItemOutcome:
    """Alerts and case touched while processing one submission"""
    alerts: List[AlertRecord] = field(default_factory=list)
    created_alerts: List[AlertRecord] = field(default_factory=list)
    case: Optional[CaseRecord] = None
    case_created: bool = False

    @property
    def alert_created(self) -> bool:
        return bool(self.created_alerts)


def alert_priority(finding: Finding) -> str:
    if finding.severity == Severity.CRITICAL.value:
        return Priority.CRITICAL.value
    return Priority.HIGH.value


class CaseAlertFactory:
    """Creates alerts and cases, appending an audit entry for each"""

    def __init__(self, store: VerificationStore):
        self.store = store

    def create_issue_alerts(self, account: AccountRecord, issues: List[Finding]) -> WorkItemOutcome:
        """One alert per distinct reject-tier issue type"""
        outcome = WorkItemOutcome()
        seen = set()
        for finding in issues:
            kind = finding.type.lower()
            if kind in seen:
                continue
            seen.add(kind)

            alert, created = self._open_alert(account, kind, alert_priority(finding))
            outcome.alerts.append(alert)
            if created:
                outcome.created_alerts.append(alert)
                self.record_audit(AuditEntry(
                    tenant_id=account.tenant_id,
                    action=AuditAction.ALERT_CREATED.value,
                    description=f"Alert created for verification issue {finding.type}",
                    account_id=account.id,
                    details={
                        'alert_id': str(alert.id),
                        'alert_type': kind,
                        'severity': finding.severity,
                        'message': finding.message,
                    },
                ))
        return outcome

    def open_watchlist_case(self, account: AccountRecord, result: WatchlistResult) -> WorkItemOutcome:
        """Alert plus case for a non-empty match batch; reuses an unsolved case"""
        outcome = WorkItemOutcome()
        if not result.has_case:
            return outcome

        existing = self.store.find_open_case(account.id, BACKGROUND_CHECK_KIND)
        if existing is not None:
            logger.info("Account %s already has unsolved case %s", account.id, existing.case_id)
            outcome.case = existing
            return outcome

        alert, created = self._open_alert(account, BACKGROUND_CHECK_KIND, result.priority)
        outcome.alerts.append(alert)
        if created:
            outcome.created_alerts.append(alert)
            self.record_audit(AuditEntry(
                tenant_id=account.tenant_id,
                action=AuditAction.ALERT_CREATED.value,
                description="Alert created for background check match",
                account_id=account.id,
                details={'alert_id': str(alert.id), 'alert_type': BACKGROUND_CHECK_KIND,
                         'priority': result.priority},
            ))

        case = CaseRecord(
            tenant_id=account.tenant_id,
            account_id=account.id,
            case_id=result.case_id,
            case_kind=BACKGROUND_CHECK_KIND,
            priority=result.priority,
            match_count=len(result.entities),
            highest_risk_score=result.highest_risk_score,
            recommended_action=result.recommended_action,
            alert_ids=[str(alert.id)],
            matched_entities=[e.to_dict() for e in result.entities],
        )
        try:
            outcome.case = self.store.insert_case(case)
            outcome.case_created = True
        except DuplicateWorkItemError:
            logger.info("Concurrent case insert for account %s; using the open case", account.id)
            outcome.case = self.store.find_open_case(account.id, BACKGROUND_CHECK_KIND)
            if outcome.case is None:
                raise
            return outcome

        self.record_audit(AuditEntry(
            tenant_id=account.tenant_id,
            action=AuditAction.CASE_CREATED.value,
            description=f"Case {outcome.case.case_id} opened for background check match",
            account_id=account.id,
            case_id=outcome.case.id,
            details=self._case_details(outcome.case),
        ))
        self.record_audit(AuditEntry(
            tenant_id=account.tenant_id,
            action=AuditAction.BACKGROUND_CHECK_MATCH.value,
            description=f"Background check matched {len(result.entities)} entities",
            account_id=account.id,
            case_id=outcome.case.id,
            details={
                'monitoring_id': result.monitoring_id,
                'alert_date': result.alert_date,
                'entity_names': [e.name for e in result.entities],
            },
        ))
        return outcome

    def record_audit(self, entry: AuditEntry) -> bool:
        """Append an audit entry; failures are logged, never raised"""
        try:
            self.store.append_audit_entry(entry)
            return True
        except StoreError as e:
            logger.error("Failed to write audit entry %s: %s", entry.action, e)
            return False

    def _open_alert(self, account: AccountRecord, kind: str, priority: str):
        existing = self.store.find_open_alert(account.id, kind)
        if existing is not None:
            logger.debug("Open %s alert already exists for account %s", kind, account.id)
            return existing, False

        alert = AlertRecord(
            tenant_id=account.tenant_id,
            account_id=account.id,
            alert_type=kind,
            priority=priority,
        )
        try:
            return self.store.insert_alert(alert), True
        except DuplicateWorkItemError:
            existing = self.store.find_open_alert(account.id, kind)
            if existing is None:
                raise
            logger.info("Concurrent %s alert insert for account %s; using the open alert",
                        kind, account.id)
            return existing, False

    @staticmethod
    def _case_details(case: CaseRecord) -> Dict[str, Any]:
        return {
            'case_id': case.case_id,
            'priority': case.priority,
            'match_count': case.match_count,
            'highest_risk_score': case.highest_risk_score,
            'recommended_action': case.recommended_action,
        }
