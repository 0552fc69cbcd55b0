"""
PayloadDecoder - turns a signed SDK submission into a VerificationPayload.

The submission is a compact JWS (header.payload.signature, base64url).
Enrollment data is only trusted after the signature verifier accepts the
token, unless verification is switched off in the security config.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from security_logger import SecurityLogger, get_security_logger
from verification.exceptions import (
    MalformedTokenError,
    MissingPayloadDataError,
    SignatureVerificationError,
)
from verification.models import VerificationPayload

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS = {
    'HS256': hashlib.sha256,
    'HS384': hashlib.sha384,
    'HS512': hashlib.sha512,
}


@dataclass
class DecodedToken:
    """Parsed but not yet trusted JWS parts"""
    header: Dict[str, Any]
    payload: Dict[str, Any]
    signature: bytes
    signing_input: bytes

    @property
    def algorithm(self) -> str:
        return str(self.header.get('alg', ''))


def _b64url_decode(segment: str) -> bytes:
    padding = '=' * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def split_token(token: str) -> DecodedToken:
    """Split and decode a compact JWS without checking its signature

    Raises:
        MalformedTokenError: if any part cannot be decoded
    """
    if not isinstance(token, str) or not token.strip():
        raise MalformedTokenError("Token is empty", field="token")

    parts = token.strip().split('.')
    if len(parts) != 3:
        raise MalformedTokenError(
            f"Token must have 3 dot-separated parts, found {len(parts)}",
            field="token",
            suggestion="Submit the compact JWS exactly as returned by the SDK"
        )

    header_b64, payload_b64, signature_b64 = parts
    try:
        header = json.loads(_b64url_decode(header_b64))
        payload = json.loads(_b64url_decode(payload_b64))
        signature = _b64url_decode(signature_b64)
    except (binascii.Error, ValueError) as e:
        raise MalformedTokenError(f"Failed to decode token: {e}", field="token")

    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise MalformedTokenError("Token header and payload must be JSON objects", field="token")

    return DecodedToken(
        header=header,
        payload=payload,
        signature=signature,
        signing_input=f"{header_b64}.{payload_b64}".encode('ascii'),
    )


class HmacSignatureVerifier:
    """Verifies HS256/384/512 signatures with a shared secret"""

    def __init__(self, secret: str, algorithms: Iterable[str] = ('HS256',)):
        self._secret = secret.encode('utf-8') if secret else b''
        self.algorithms = [a for a in algorithms if a in HMAC_ALGORITHMS]

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def verify(self, token: DecodedToken) -> None:
        """Raise SignatureVerificationError unless the token signature is valid"""
        if not self.configured:
            raise SignatureVerificationError(
                "Signature verification is required but no signing key is configured"
            )
        alg = token.algorithm
        if alg not in self.algorithms:
            raise SignatureVerificationError(
                f"Algorithm '{alg or 'none'}' is not accepted",
                field="token",
                suggestion=f"Accepted algorithms: {', '.join(self.algorithms)}"
            )
        expected = hmac.new(self._secret, token.signing_input, HMAC_ALGORITHMS[alg]).digest()
        if not hmac.compare_digest(expected, token.signature):
            raise SignatureVerificationError("Token signature does not match", field="token")


class PayloadDecoder:
    """Decodes signed submissions into VerificationPayload

    Args:
        verifier: Signature verifier, required when require_signature is set
        require_signature: Refuse any token the verifier does not accept
        allow_unsigned_data: Accept already-decoded data (direct enrollment)
        security_logger: Sink for refused tokens
    """

    def __init__(
        self,
        verifier: Optional[HmacSignatureVerifier] = None,
        require_signature: bool = True,
        allow_unsigned_data: bool = False,
        security_logger: Optional[SecurityLogger] = None
    ):
        self.verifier = verifier
        self.require_signature = require_signature
        self.allow_unsigned_data = allow_unsigned_data
        self._security_logger = security_logger

    @property
    def security_logger(self) -> SecurityLogger:
        if self._security_logger is None:
            self._security_logger = get_security_logger()
        return self._security_logger

    def decode(self, token: str) -> VerificationPayload:
        """Decode a signed token into a VerificationPayload

        Raises:
            MalformedTokenError: structure cannot be parsed
            SignatureVerificationError: signature refused
            MissingPayloadDataError: no 'data' field in the payload
        """
        try:
            decoded = split_token(token)
        except MalformedTokenError as e:
            self.security_logger.log_validation_failure(
                field="token",
                error_code=e.code,
                input_value=token if isinstance(token, str) else repr(token),
                source="PayloadDecoder.decode"
            )
            raise

        verified = False
        if self.require_signature:
            if self.verifier is None:
                self.security_logger.log_signature_failure("no verifier configured", decoded.algorithm)
                raise SignatureVerificationError(
                    "Signature verification is required but no verifier is configured"
                )
            try:
                self.verifier.verify(decoded)
            except SignatureVerificationError as e:
                self.security_logger.log_signature_failure(str(e), decoded.algorithm)
                raise
            verified = True
        else:
            logger.warning("Signature verification disabled; trusting token payload as-is")

        data = decoded.payload.get('data')
        if data is None:
            raise MissingPayloadDataError(
                "Missing enrollment data in token payload",
                field="data"
            )
        return self._build_payload(data, decoded.header, verified)

    def decode_data(self, data: Any) -> VerificationPayload:
        """Build a payload from already-decoded enrollment data

        Raises:
            SignatureVerificationError: unsigned data is not accepted
            MissingPayloadDataError: data is empty
        """
        if not self.allow_unsigned_data:
            self.security_logger.log_security_event(
                event_type="UNSIGNED_ENROLLMENT_REFUSED",
                severity="WARNING",
                field="data",
                error_code=SignatureVerificationError.code,
                source="PayloadDecoder.decode_data"
            )
            raise SignatureVerificationError(
                "Unsigned enrollment data is not accepted",
                field="data",
                suggestion="Submit the signed token instead"
            )
        if data is None:
            raise MissingPayloadDataError("Missing enrollment data or token", field="data")
        return self._build_payload(data, {}, False)

    def _build_payload(
        self,
        data: Any,
        header: Dict[str, Any],
        verified: bool
    ) -> VerificationPayload:
        if not isinstance(data, dict):
            raise MalformedTokenError("Enrollment data must be a JSON object", field="data")

        source = data.get('source') or {}
        documents = data.get('documents') or []
        verifications = data.get('verifications') or []
        background_check = data.get('backgroundCheck')

        if not isinstance(source, dict):
            raise MalformedTokenError("'source' must be an object", field="data.source")
        if not isinstance(documents, list):
            raise MalformedTokenError("'documents' must be a list", field="data.documents")
        if not isinstance(verifications, list):
            raise MalformedTokenError("'verifications' must be a list", field="data.verifications")
        if background_check is not None and not isinstance(background_check, dict):
            raise MalformedTokenError("'backgroundCheck' must be an object", field="data.backgroundCheck")

        trace = data.get('trace')
        if trace is None:
            trace = data.get('analytics')

        logger.info(
            "Decoded enrollment: sdk_type=%s documents=%d verifications=%d background_check=%s",
            source.get('sdkType'),
            len(documents),
            len(verifications),
            background_check is not None,
        )

        return VerificationPayload(
            source=source,
            documents=[d for d in documents if isinstance(d, dict)],
            verifications=[v for v in verifications if isinstance(v, dict)],
            trace=trace,
            background_check=background_check,
            header=header,
            signature_verified=verified,
        )
