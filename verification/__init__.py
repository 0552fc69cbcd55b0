"""
Verification decisioning pipeline.

This package provides:
- PayloadDecoder: signed submission -> VerificationPayload
- TraceNormalizer: web/mobile SDK traces -> ordered TraceEvent lists
- SignalExtractor and RiskClassifier: threshold-based verdicts
- WatchlistMatcher: background-check severity and case ids
- IdentityReconciler and CaseAlertFactory: idempotent account/work-item state
- VerificationPipeline: the orchestrator
- QrSessionService: one-time QR verification sessions
"""

from verification.classifier import RiskClassifier
from verification.decoder import HmacSignatureVerifier, PayloadDecoder
from verification.exceptions import (
    VerificationError,
    MalformedTokenError,
    MissingPayloadDataError,
    SignatureVerificationError,
    ClassificationError,
    StoreError,
    IdentityConflictError,
    DuplicateWorkItemError,
    ExternalProviderError,
    QrSessionError,
    SessionNotFoundError,
)
from verification.pipeline import PipelineResult, VerificationPipeline
from verification.provider_client import ProviderClient
from verification.qr_sessions import QrSessionService
from verification.reconciler import IdentityReconciler
from verification.signals import SignalExtractor
from verification.store import QrSessionStore, VerificationStore
from verification.trace import TraceNormalizer
from verification.watchlist import WatchlistMatcher
from verification.work_items import CaseAlertFactory

__all__ = [
    # Components
    'PayloadDecoder',
    'HmacSignatureVerifier',
    'TraceNormalizer',
    'SignalExtractor',
    'RiskClassifier',
    'WatchlistMatcher',
    'IdentityReconciler',
    'CaseAlertFactory',
    'VerificationPipeline',
    'PipelineResult',
    'ProviderClient',
    'QrSessionService',
    # Storage interfaces
    'VerificationStore',
    'QrSessionStore',
    # Errors
    'VerificationError',
    'MalformedTokenError',
    'MissingPayloadDataError',
    'SignatureVerificationError',
    'ClassificationError',
    'StoreError',
    'IdentityConflictError',
    'DuplicateWorkItemError',
    'ExternalProviderError',
    'QrSessionError',
    'SessionNotFoundError',
]
