"""
QR verification sessions - one-time links that let a mobile app start a
verification journey on behalf of a B2B customer.

Flow:
    1. generate: issue a one-time token and session id, store only the
       token's SHA-256 with an expiry
    2. init: the app exchanges the token for a provider SDK access token
       (single use, claimed atomically in the store)
    3. status: poll the session lifecycle
    4. complete: the app or webhook reports the outcome

The store is the only source of truth; expiry is enforced by comparing
``expires_at`` at read/claim time.
"""

import hashlib
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from config_manager import QrSessionConfig
from security_logger import SecurityLogger, get_security_logger
from verification.exceptions import (
    ExternalProviderError,
    QrSessionError,
    SessionNotFoundError,
)
from verification.models import QrSessionRecord, QrSessionStatus
from verification.provider_client import ProviderClient
from verification.store import QrSessionStore

logger = logging.getLogger(__name__)

BASE36_DIGITS = '0123456789abcdefghijklmnopqrstuvwxyz'


def _base36(number: int) -> str:
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_DIGITS[remainder])
    return ''.join(reversed(digits))


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def generate_session_id(now_ms: Optional[int] = None) -> str:
    millis = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"QR-{_base36(millis)}-{secrets.token_hex(8)}".upper()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


class QrSessionService:
    """Lifecycle of QR-initiated verification sessions"""

    def __init__(
        self,
        store: QrSessionStore,
        provider: Optional[ProviderClient] = None,
        config: Optional[QrSessionConfig] = None,
        security_logger: Optional[SecurityLogger] = None
    ):
        self.store = store
        self.provider = provider or ProviderClient()
        self.config = config or QrSessionConfig()
        self._security_logger = security_logger

    @property
    def security_logger(self) -> SecurityLogger:
        if self._security_logger is None:
            self._security_logger = get_security_logger()
        return self._security_logger

    def build_deep_link(self, token: str, session_id: str,
                        customer_id: Optional[str] = None,
                        journey_id: Optional[str] = None) -> str:
        params = {'token': token, 'session': session_id}
        if customer_id:
            params['customer'] = customer_id
        if journey_id:
            params['journey'] = journey_id
        return f"{self.config.deep_link_scheme}://verify?{urlencode(params)}"

    def generate(
        self,
        customer_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        journey_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        expiry_minutes: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        minutes = expiry_minutes or self.config.token_expiry_minutes
        token = generate_token()
        session_id = generate_session_id(int(now.timestamp() * 1000))
        journey = journey_id or self.config.default_journey_id or None
        deep_link = self.build_deep_link(token, session_id, customer_id, journey)

        record = self.store.insert_session(QrSessionRecord(
            session_id=session_id,
            token_hash=hash_token(token),
            expires_at=now + timedelta(minutes=minutes),
            customer_id=customer_id or 'default',
            customer_name=customer_name or 'Uqudo',
            journey_id=journey,
            reference_id=reference_id,
            metadata=metadata or {},
            deep_link=deep_link,
            created_at=now,
        ))
        logger.info("Generated QR session %s (expires in %d min)", session_id, minutes)

        web_link = (f"{self.config.app_url.rstrip('/')}/pages/verify?"
                    f"{urlencode({'token': token, 'session': session_id})}")
        return {
            'token': token,
            'session_id': session_id,
            'deep_link': deep_link,
            'universal_link': web_link,
            'qr_data': web_link,
            'expires_at': _iso(record.expires_at),
            'expires_in_seconds': minutes * 60,
            'customer': {'id': record.customer_id, 'name': record.customer_name},
        }

    def init(
        self,
        token: str,
        device_info: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Claim the token and hand out a provider access token"""
        now = now or datetime.now(timezone.utc)
        token_hash = hash_token(token)
        session = self.store.find_by_token_hash(token_hash)
        if session is None:
            self._reject('unknown', '', "Invalid or expired token", 'INVALID_QR_TOKEN')
        if session.status == QrSessionStatus.COMPLETED.value:
            self._reject('completed', session.session_id,
                         "This verification session has already been completed",
                         'QR_SESSION_COMPLETED')
        if _as_utc(session.expires_at) <= now:
            self._reject('expired', session.session_id,
                         "Verification link has expired", 'QR_TOKEN_EXPIRED')
        if session.used:
            self._reject('reused', session.session_id,
                         "This verification link has already been used", 'QR_TOKEN_USED')

        if not self.store.claim(token_hash, now, device_info or {}):
            # Lost the race to a concurrent init, or expired in between
            self._reject('reused', session.session_id,
                         "This verification link has already been used", 'QR_TOKEN_USED')

        try:
            access = self.provider.get_access_token()
        except ExternalProviderError:
            logger.error("Provider token exchange failed for QR session %s; releasing claim",
                         session.session_id)
            self.store.release(token_hash)
            raise

        return {
            'session_id': session.session_id,
            'access_token': access.access_token,
            'token_expires_in': access.expires_in,
            'journey_id': session.journey_id,
            'customer': {'id': session.customer_id, 'name': session.customer_name},
            'reference_id': session.reference_id,
            'metadata': session.metadata,
        }

    def status(self, session_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        session = self.store.find_by_session_id(session_id)
        if session is None:
            raise SessionNotFoundError("Session not found", field="session_id")

        status = session.status
        if status == QrSessionStatus.PENDING.value and _as_utc(session.expires_at) <= now:
            status = QrSessionStatus.EXPIRED.value

        return {
            'session_id': session.session_id,
            'status': status,
            'created_at': _iso(session.created_at),
            'expires_at': _iso(session.expires_at),
            'initialized_at': _iso(session.initialized_at),
            'completed_at': _iso(session.completed_at),
        }

    def complete(
        self,
        session_id: str,
        status: Optional[str],
        verification_result: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> str:
        """Record the journey outcome; returns the stored session status"""
        now = now or datetime.now(timezone.utc)
        final = (QrSessionStatus.COMPLETED.value if status == 'success'
                 else QrSessionStatus.FAILED.value)
        if not self.store.complete(session_id, final, now, verification_result):
            raise SessionNotFoundError("Session not found", field="session_id")
        logger.info("QR session %s marked %s", session_id, final)
        return final

    def _reject(self, reason: str, session_id: str, message: str, code: str) -> None:
        self.security_logger.log_qr_token_rejected(reason, session_id)
        raise QrSessionError(message, field="token", code=code)
