"""
Exception taxonomy for the verification decisioning pipeline.

Every error carries a machine-readable code and the HTTP status the API
layer maps it to, so handlers never need to inspect messages.
"""

from typing import Optional


class VerificationError(Exception):
    """Base class for pipeline errors

    Attributes:
        code: Error code for programmatic handling
        http_status: Status code the API responds with
        field: The input field at fault, if any
        suggestion: Optional hint for fixing the request
    """
    code: str = "VERIFICATION_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        suggestion: Optional[str] = None
    ):
        self.field = field
        self.suggestion = suggestion
        if code:
            self.code = code
        super().__init__(message)


class MalformedTokenError(VerificationError):
    """Submitted token cannot be parsed into header, payload and signature"""
    code = "MALFORMED_TOKEN"
    http_status = 400


class MissingPayloadDataError(MalformedTokenError):
    """Token (or direct submission) carries no enrollment data"""
    code = "MISSING_PAYLOAD_DATA"
    http_status = 400


class SignatureVerificationError(VerificationError):
    """Token signature is missing, invalid or uses a refused algorithm"""
    code = "INVALID_SIGNATURE"
    http_status = 400


class ClassificationError(VerificationError):
    """A signal violated the extractor contract"""
    code = "CLASSIFICATION_ERROR"
    http_status = 500


class StoreError(VerificationError):
    """Storage collaborator failed"""
    code = "STORE_ERROR"
    http_status = 500


class IdentityConflictError(StoreError):
    """Another delivery inserted the same identity first"""
    code = "IDENTITY_CONFLICT"
    http_status = 409


class DuplicateWorkItemError(StoreError):
    """An open alert or case of the same kind already exists for the account"""
    code = "DUPLICATE_WORK_ITEM"
    http_status = 409


class ExternalProviderError(VerificationError):
    """Verification provider API call failed"""
    code = "EXTERNAL_PROVIDER_ERROR"
    http_status = 502


class QrSessionError(VerificationError):
    """QR token cannot be used"""
    code = "INVALID_QR_TOKEN"
    http_status = 400


class SessionNotFoundError(VerificationError):
    """QR session id is unknown"""
    code = "SESSION_NOT_FOUND"
    http_status = 404
