"""
Verification provider HTTP client.

Two calls, both outside the decisioning critical path:
    - OAuth client-credentials token exchange (also used to hand an SDK
      access token to QR-initiated sessions)
    - session "info" lookup used to enrich accounts with face images

Transient network failures (connection errors, timeouts) are retried
with tenacity; anything still failing surfaces as ExternalProviderError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import ProviderConfig
from security_logger import sanitize_for_logging
from verification.exceptions import ExternalProviderError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)

# Refresh a cached token this many seconds before the provider says it expires
TOKEN_EXPIRY_MARGIN = 30


@dataclass
class AccessToken:
    access_token: str
    expires_in: int = 3600
    token_type: str = "Bearer"
    obtained_at: float = 0.0

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = now if now is not None else time.time()
        return now < self.obtained_at + self.expires_in - TOKEN_EXPIRY_MARGIN


@dataclass
class SessionImages:
    face_image_url: Optional[str] = None
    face_image_base64: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.face_image_url or self.face_image_base64)


def extract_face_image(info: Dict[str, Any]) -> SessionImages:
    """Locate the face image in an info response (URL or inline base64)"""
    candidates = [
        info.get('faceImage'),
        info.get('face_image'),
        (info.get('images') or {}).get('face') if isinstance(info.get('images'), dict) else None,
        (info.get('biometric') or {}).get('faceImage') if isinstance(info.get('biometric'), dict) else None,
    ]
    for candidate in candidates:
        if isinstance(candidate, dict):
            url = candidate.get('url')
            data = candidate.get('base64') or candidate.get('data')
            if url or data:
                return SessionImages(face_image_url=url, face_image_base64=data)
        elif isinstance(candidate, str) and candidate:
            if candidate.startswith(('http://', 'https://')):
                return SessionImages(face_image_url=candidate)
            return SessionImages(face_image_base64=candidate)
    return SessionImages()


class ProviderClient:
    """Thin requests-based client for the verification provider API"""

    def __init__(self, config: Optional[ProviderConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or ProviderConfig()
        self.session = session or requests.Session()
        self._token: Optional[AccessToken] = None

    @property
    def configured(self) -> bool:
        return self.config.has_credentials

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.config.timeout_seconds)
        try:
            response = self._retrying()(self.session.request, method, url, **kwargs)
        except requests.RequestException as e:
            raise ExternalProviderError(
                f"Provider request failed: {sanitize_for_logging(str(e))}"
            ) from e

        if response.status_code >= 400:
            raise ExternalProviderError(
                f"Provider returned HTTP {response.status_code} for {method} {url}"
            )
        return response

    def get_access_token(self, force_refresh: bool = False) -> AccessToken:
        """Client-credentials exchange, cached until shortly before expiry"""
        if not self.configured:
            raise ExternalProviderError(
                "Provider credentials are not configured",
                suggestion="Set PROVIDER_CLIENT_ID and PROVIDER_CLIENT_SECRET"
            )
        if self._token is not None and not force_refresh and self._token.is_valid():
            return self._token

        logger.info("Requesting provider OAuth token (client %s...)", self.config.client_id[:8])
        response = self._request(
            'POST',
            self.config.auth_url,
            data={'grant_type': 'client_credentials'},
            auth=(self.config.client_id, self.config.client_secret),
        )
        try:
            body = response.json()
        except ValueError as e:
            raise ExternalProviderError("Provider token response is not JSON") from e

        if not isinstance(body, dict) or not body.get('access_token'):
            raise ExternalProviderError("Provider token response carries no access_token")

        self._token = AccessToken(
            access_token=body['access_token'],
            expires_in=int(body.get('expires_in') or 3600),
            token_type=body.get('token_type') or 'Bearer',
            obtained_at=time.time(),
        )
        return self._token

    def get_session_info(self, session_id: str) -> Dict[str, Any]:
        token = self.get_access_token()
        url = f"{self.config.info_url.rstrip('/')}/{session_id}"
        response = self._request(
            'GET', url, headers={'Authorization': f"{token.token_type} {token.access_token}"}
        )
        try:
            info = response.json()
        except ValueError as e:
            raise ExternalProviderError("Provider info response is not JSON") from e
        return info if isinstance(info, dict) else {}

    def fetch_session_images(self, session_id: str) -> SessionImages:
        images = extract_face_image(self.get_session_info(session_id))
        if not images.found:
            logger.info("No face image in provider info for session %s",
                        sanitize_for_logging(session_id))
        return images
