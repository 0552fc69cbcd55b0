"""
Database Package for the Verification Decisioning Service

This package provides:
- SQLAlchemy ORM models (accounts, alerts, cases, audit logs, QR sessions)
- Session provider with pooling, retry and health checks
- SQL implementations of the verification storage interfaces
"""

from database.models import (
    Base,
    Account,
    KycAlert,
    AmlCase,
    AuditLog,
    QrVerificationSession,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    EntityNotFoundError,
    SqlVerificationStore,
    SqlQrSessionStore,
)

__all__ = [
    # Base
    'Base',
    # Models
    'Account',
    'KycAlert',
    'AmlCase',
    'AuditLog',
    'QrVerificationSession',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Stores
    'RepositoryError',
    'EntityNotFoundError',
    'SqlVerificationStore',
    'SqlQrSessionStore',
]
