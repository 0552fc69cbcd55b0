"""
Shared fixtures for the verification decisioning test suite.

Storage tests run the real SQL stores against a file-backed SQLite
database created per test. The security logger is replaced with a mock so
no security.log file is written.
"""

import base64
import hashlib
import hmac
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine

sys.path.insert(0, str(Path(__file__).parent.parent))

import security_logger
from config_manager import ConfigManager
from database.connection import create_test_provider
from database.repositories import SqlQrSessionStore, SqlVerificationStore

TEST_SIGNING_KEY = "test-signing-key"
TENANT_ID = "00000000-0000-0000-0000-000000000001"


# ============================================
# TOKEN / PAYLOAD BUILDERS
# ============================================

def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def build_token(
    payload: Dict[str, Any],
    secret: str = TEST_SIGNING_KEY,
    alg: str = "HS256",
    signature: Optional[bytes] = None
) -> str:
    """Compact JWS signed with HMAC-SHA256 unless a signature is given"""
    header_b64 = _b64(json.dumps({'alg': alg, 'typ': 'JWT'}).encode('utf-8'))
    payload_b64 = _b64(json.dumps(payload).encode('utf-8'))
    if signature is None:
        signing_input = f"{header_b64}.{payload_b64}".encode('ascii')
        signature = hmac.new(secret.encode('utf-8'), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{_b64(signature)}"


def clean_verification() -> Dict[str, Any]:
    """A verification object with every check enabled and passing"""
    return {
        'idScreenDetection': {'enabled': True, 'score': 5},
        'idPrintDetection': {'enabled': True, 'score': 3},
        'idPhotoTamperingDetection': {'enabled': True, 'score': 2},
        'biometric': {'enabled': True, 'type': 'FACIAL_RECOGNITION', 'matchLevel': 5},
        'mrzChecksum': {'enabled': True, 'valid': True},
        'dataConsistencyCheck': {
            'enabled': True,
            'fields': [{'name': 'fullName', 'match': 'MATCH'}],
        },
        'reading': {
            'enabled': True,
            'passiveAuthentication': {'documentDataSignatureValid': True},
        },
    }


def build_background_check(risk_scores: List[float] = (95,), match: bool = True) -> Dict[str, Any]:
    entities = [
        {
            'sysId': f"SYS-{i}",
            'entityId': f"ENT-{i}",
            'entityName': "Ahmed Hassan Ali",
            'entityTyp': "P",
            'matchScore': 88,
            'riskScore': score,
            'rdcURL': f"https://rdc.example.com/entity/{i}",
            'pepTypes': {'pepType': ["HOS"]},
            'event': {'category': "PEP", 'date': "2020-01-01"},
            'sources': {'source': [{'name': "Gov list"}]},
        }
        for i, score in enumerate(risk_scores)
    ]
    return {
        'match': match,
        'monitoringId': "MON-1",
        'content': {'alertDt': "2024-01-01", 'nonReviewedAlertEntity': entities},
    }


def build_enrollment_data(
    id_number: Optional[str] = "784-1990-1234567-1",
    full_name: str = "Ahmed Hassan Ali",
    nfc: bool = True,
    verification: Optional[Dict[str, Any]] = None,
    background_check: Optional[Dict[str, Any]] = None,
    trace: Any = None,
    session_id: Optional[str] = "sess-001",
) -> Dict[str, Any]:
    source = {
        'sdkType': "KYC_MOBILE",
        'sdkVersion': "3.1.0",
        'deviceModel': "Pixel 8",
        'devicePlatform': "Android",
    }
    if session_id:
        source['sessionId'] = session_id

    document: Dict[str, Any] = {
        'documentType': "UAE_ID",
        'scan': {'front': {
            'fullName': full_name,
            'identityNumber': id_number or "",
            'dateOfBirthFormatted': "1990-01-15",
            'nationality': "ARE",
            'gender': "M",
        }},
    }
    if nfc:
        document['reading'] = {'data': {
            'fullName': full_name,
            'idNumber': id_number or "",
            'dateOfBirth': "1990-01-15",
            'nationality': "ARE",
            'sex': "M",
            'homeAddressEmail': "ahmed@example.com",
            'occupation': "Engineer",
        }}

    data: Dict[str, Any] = {
        'source': source,
        'documents': [document],
        'verifications': [verification if verification is not None else clean_verification()],
    }
    if background_check is not None:
        data['backgroundCheck'] = background_check
    if trace is not None:
        data['trace'] = trace
    return data


# ============================================
# FIXTURES
# ============================================

@pytest.fixture(autouse=True)
def security_events():
    """Mock the global security logger for every test."""
    mock_logger = MagicMock()
    with patch.object(security_logger, '_security_logger', mock_logger):
        yield mock_logger


@pytest.fixture(autouse=True)
def reset_config():
    yield
    ConfigManager.reset_instance()


@pytest.fixture
def config(tmp_path):
    """Configuration with defaults only."""
    return ConfigManager(str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def db_provider(tmp_path):
    """SQLite-backed provider with all tables created."""
    engine = create_engine(f"sqlite:///{tmp_path / 'verification.db'}")
    provider = create_test_provider(engine=engine)
    provider.create_tables()
    yield provider
    provider.close()


@pytest.fixture
def store(db_provider):
    return SqlVerificationStore(db_provider)


@pytest.fixture
def qr_store(db_provider):
    return SqlQrSessionStore(db_provider)
