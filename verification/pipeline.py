"""
VerificationPipeline - runs one enrollment submission end to end.

Order of steps (each depends on the previous one's output):
    decode -> normalize trace -> extract signals -> classify
    -> reconcile account -> enrich images -> issue alerts
    -> watchlist case -> AML status -> enrollment audit

Decoding and classification errors abort the request. Everything after
classification is persisted step by step; a StoreError or
ExternalProviderError in one step is logged and the remaining steps still
run, so the verdict always reaches the caller.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config_manager import ConfigManager
from security_logger import SecurityLogger, sanitize_for_logging
from verification.classifier import RiskClassifier
from verification.decoder import HmacSignatureVerifier, PayloadDecoder
from verification.exceptions import ClassificationError, ExternalProviderError, StoreError
from verification.models import (
    BACKGROUND_CHECK_KIND,
    AccountRecord,
    AuditAction,
    AuditEntry,
    Signal,
    TraceEvent,
    Verdict,
    VerificationPayload,
    WatchlistResult,
)
from verification.provider_client import ProviderClient
from verification.reconciler import IdentityReconciler, extract_identity_data
from verification.signals import PASSIVE_AUTH, SignalExtractor
from verification.store import VerificationStore
from verification.trace import TraceNormalizer
from verification.watchlist import WatchlistMatcher
from verification.work_items import CaseAlertFactory, WorkItemOutcome

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one pass produced, persisted or not"""
    payload: VerificationPayload
    trace: List[TraceEvent]
    signals: Dict[str, Signal]
    verdict: Verdict
    watchlist: WatchlistResult
    identity: Dict[str, Any] = field(default_factory=dict)
    account: Optional[AccountRecord] = None
    account_created: bool = False
    issue_alerts: WorkItemOutcome = field(default_factory=WorkItemOutcome)
    watchlist_items: WorkItemOutcome = field(default_factory=WorkItemOutcome)
    images_fetched: bool = False
    step_errors: List[str] = field(default_factory=list)

    @property
    def case_created(self) -> bool:
        return self.watchlist_items.case_created

    @property
    def alert_created(self) -> bool:
        return self.issue_alerts.alert_created or self.watchlist_items.alert_created

    @property
    def case_data(self) -> Optional[Dict[str, Any]]:
        if not self.case_created:
            return None
        data = self.watchlist.to_case_data()
        data['case_id'] = self.watchlist_items.case.case_id
        return data

    @property
    def message(self) -> str:
        if self.case_created:
            return (f"Verification {self.verdict.status}. Background check match found - "
                    f"case {self.watchlist_items.case.case_id} created.")
        return f"Verification {self.verdict.status}. No background check matches."


class VerificationPipeline:
    """Wires the decisioning components around a storage collaborator"""

    def __init__(
        self,
        store: VerificationStore,
        decoder: Optional[PayloadDecoder] = None,
        normalizer: Optional[TraceNormalizer] = None,
        extractor: Optional[SignalExtractor] = None,
        classifier: Optional[RiskClassifier] = None,
        matcher: Optional[WatchlistMatcher] = None,
        provider: Optional[ProviderClient] = None,
        fetch_images: bool = True
    ):
        self.store = store
        self.decoder = decoder or PayloadDecoder(require_signature=False)
        self.normalizer = normalizer or TraceNormalizer()
        self.extractor = extractor or SignalExtractor()
        self.classifier = classifier or RiskClassifier()
        self.matcher = matcher or WatchlistMatcher()
        self.provider = provider
        self.fetch_images = fetch_images
        self.reconciler = IdentityReconciler(store)
        self.work_items = CaseAlertFactory(store)

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        store: VerificationStore,
        provider: Optional[ProviderClient] = None,
        security_logger: Optional[SecurityLogger] = None
    ) -> 'VerificationPipeline':
        security = config.security
        verifier = None
        if security.signing_key:
            verifier = HmacSignatureVerifier(security.signing_key, security.allowed_algorithms)
        decoder = PayloadDecoder(
            verifier=verifier,
            require_signature=security.require_signature_verification,
            allow_unsigned_data=security.allow_unsigned_enrollment,
            security_logger=security_logger,
        )
        return cls(
            store=store,
            decoder=decoder,
            classifier=RiskClassifier(config.thresholds),
            matcher=WatchlistMatcher(config.watchlist),
            provider=provider or ProviderClient(config.provider),
            fetch_images=config.provider.fetch_images,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process_token(self, token: str, tenant_id: str) -> PipelineResult:
        return self.process_payload(self.decoder.decode(token), tenant_id)

    def process_data(self, data: Any, tenant_id: str) -> PipelineResult:
        return self.process_payload(self.decoder.decode_data(data), tenant_id)

    def analyze_verification(self, verification: Dict[str, Any]) -> Dict[str, Any]:
        """Classify a bare verification object without persisting anything"""
        signals = self.extractor.extract(verification)
        verdict = self.classifier.classify(signals)
        return {
            'verification': verdict.to_dict(),
            'signals': [s.to_dict() for s in signals.values()],
            'thresholds': self.classifier.thresholds.to_dict(),
        }

    def process_payload(self, payload: VerificationPayload, tenant_id: str) -> PipelineResult:
        trace = self.normalizer.normalize(payload.trace, payload.source)
        signals = self.extractor.extract(payload.first_verification)
        try:
            verdict = self.classifier.classify(signals, trace)
        except ClassificationError:
            logger.error(
                "Classification failed for payload: %s",
                sanitize_for_logging(json.dumps(
                    {'source': payload.source, 'verifications': payload.verifications},
                    default=str
                ))
            )
            raise

        if not trace:
            trace = self.normalizer.build_synthetic_events(
                payload, verdict.status,
                minimum_match_level=self.classifier.thresholds.minimum_match_level
            )

        result = PipelineResult(
            payload=payload,
            trace=trace,
            signals=signals,
            verdict=verdict,
            watchlist=WatchlistResult(),
            identity=extract_identity_data(payload),
        )

        self._reconcile(result, tenant_id)
        account = result.account
        result.watchlist = self.matcher.match(
            payload.background_check, account.id if account else None
        )
        if account is None:
            return result

        self._enrich_images(result)
        self._open_issue_alerts(result)
        self._open_watchlist_case(result)
        self._update_aml_status(result)
        self._audit_enrollment(result)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _reconcile(self, result: PipelineResult, tenant_id: str) -> None:
        try:
            reconciled = self.reconciler.reconcile(
                tenant_id, result.payload, result.verdict, result.trace
            )
        except StoreError as e:
            self._step_failed(result, 'account', e)
            return
        result.account = reconciled.account
        result.account_created = reconciled.created

    def _enrich_images(self, result: PipelineResult) -> None:
        session_id = result.payload.session_id
        if not (self.fetch_images and self.provider and self.provider.configured and session_id):
            return
        try:
            images = self.provider.fetch_session_images(session_id)
            if images.found:
                result.account = self.reconciler.apply_images(
                    result.account, images.face_image_url, images.face_image_base64
                )
                result.images_fetched = True
        except (ExternalProviderError, StoreError) as e:
            logger.warning("Image retrieval skipped for session %s: %s",
                           sanitize_for_logging(session_id), e)

    def _open_issue_alerts(self, result: PipelineResult) -> None:
        if not result.verdict.issues:
            return
        try:
            result.issue_alerts = self.work_items.create_issue_alerts(
                result.account, result.verdict.issues
            )
        except StoreError as e:
            self._step_failed(result, 'issue_alerts', e)

    def _open_watchlist_case(self, result: PipelineResult) -> None:
        if not result.watchlist.has_case:
            return
        try:
            result.watchlist_items = self.work_items.open_watchlist_case(
                result.account, result.watchlist
            )
        except StoreError as e:
            self._step_failed(result, 'watchlist_case', e)

    def _update_aml_status(self, result: PipelineResult) -> None:
        try:
            case_open = result.watchlist_items.case is not None or (
                self.store.find_open_case(result.account.id, BACKGROUND_CHECK_KIND) is not None
            )
            result.account = self.reconciler.update_aml_status(result.account, case_open)
        except StoreError as e:
            self._step_failed(result, 'aml_status', e)

    def _audit_enrollment(self, result: PipelineResult) -> None:
        source = result.payload.source
        self.work_items.record_audit(AuditEntry(
            tenant_id=result.account.tenant_id,
            action=AuditAction.SDK_ENROLLMENT_PROCESSED.value,
            description=(f"SDK enrollment processed: {result.verdict.status}"
                         f"{' (new account)' if result.account_created else ''}"),
            account_id=result.account.id,
            case_id=result.watchlist_items.case.id if result.watchlist_items.case else None,
            details={
                'verification_status': result.verdict.status,
                'issues': len(result.verdict.issues),
                'warnings': len(result.verdict.warnings),
                'sdk_type': source.get('sdkType'),
                'session_id': source.get('sessionId'),
                'signature_verified': result.payload.signature_verified,
                'background_check_match': result.watchlist.match,
            },
        ))

    @staticmethod
    def _step_failed(result: PipelineResult, step: str, error: Exception) -> None:
        logger.error("Pipeline step %s failed: %s", step, sanitize_for_logging(str(error)))
        result.step_errors.append(step)

    # ------------------------------------------------------------------

    @staticmethod
    def build_response(result: PipelineResult) -> Dict[str, Any]:
        identity = result.identity
        account = result.account
        source = result.payload.source
        verification = result.verdict.to_dict()
        verification['nfc_verified'] = bool(identity.get('nfc_verified'))
        passive = result.signals.get(PASSIVE_AUTH)
        verification['passive_authentication'] = passive is not None and passive.value is True

        account_block = {
            'account_id': str(account.id) if account else None,
            'account_created': result.account_created,
            'aml_status': account.aml_status if account else 'pending',
        }
        if account:
            account_block.update({
                'identity_key_type': account.identity_key_type,
                'account_status': account.account_status,
                'kyc_verification_status': account.kyc_verification_status,
                'images_fetched': result.images_fetched,
            })
        account_block.update(identity)

        return {
            'success': True,
            'data': {
                'verification': verification,
                'backgroundCheck': {
                    'match': result.watchlist.match,
                    'case_created': result.case_created,
                    'alert_created': result.alert_created,
                    'case_data': result.case_data,
                },
                'account': account_block,
                'source': {
                    'sdk_type': source.get('sdkType'),
                    'sdk_version': source.get('sdkVersion'),
                    'device_model': source.get('deviceModel'),
                    'device_platform': source.get('devicePlatform'),
                    'source_ip': source.get('sourceIp'),
                },
            },
            'message': result.message,
        }
