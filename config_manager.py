"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class ThresholdConfig:
    """Risk classification thresholds (single source of truth)"""
    screen_reject: float = 50
    screen_warn: float = 30
    print_reject: float = 50
    print_warn: float = 30
    tampering_reject: float = 70
    tampering_warn: float = 40
    minimum_match_level: int = 3

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        """Render thresholds in the provider's naming"""
        return {
            'idScreenDetection': {
                'rejectThreshold': self.screen_reject,
                'warningThreshold': self.screen_warn,
            },
            'idPrintDetection': {
                'rejectThreshold': self.print_reject,
                'warningThreshold': self.print_warn,
            },
            'idPhotoTamperingDetection': {
                'rejectThreshold': self.tampering_reject,
                'warningThreshold': self.tampering_warn,
            },
            'faceMatch': {
                'minimumMatchLevel': self.minimum_match_level,
            },
        }


@dataclass
class WatchlistConfig:
    """Background check priority bands"""
    critical_risk_score: int = 90
    high_risk_score: int = 70
    case_id_prefix: str = "BGC"


@dataclass
class SecurityConfig:
    """Token signature verification settings"""
    require_signature_verification: bool = True
    allowed_algorithms: List[str] = field(default_factory=lambda: ['HS256'])
    allow_unsigned_enrollment: bool = False
    signing_key: str = ""


@dataclass
class ProviderConfig:
    """Verification provider API (OAuth + session info)"""
    auth_url: str = "https://auth.uqudo.io/api/oauth/token"
    info_url: str = "https://id.uqudo.io/api/v2/info"
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 10
    retry_attempts: int = 2
    fetch_images: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class QrSessionConfig:
    """QR / deep link verification sessions"""
    token_expiry_minutes: int = 5
    deep_link_scheme: str = "uqudo"
    app_url: str = "http://localhost:3000"
    default_journey_id: str = ""


@dataclass
class ApiConfig:
    """HTTP API defaults"""
    default_tenant_id: str = "00000000-0000-0000-0000-000000000001"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: str = "logs"
    security_log_console: bool = False


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.thresholds: ThresholdConfig = ThresholdConfig()
        self.watchlist: WatchlistConfig = WatchlistConfig()
        self.security: SecurityConfig = SecurityConfig()
        self.provider: ProviderConfig = ProviderConfig()
        self.qr_sessions: QrSessionConfig = QrSessionConfig()
        self.api: ApiConfig = ApiConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._apply_environment()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_thresholds()
        self._parse_watchlist()
        self._parse_security()
        self._parse_provider()
        self._parse_qr_sessions()
        self._parse_api()
        self._parse_logging()
        self._apply_environment()
        self._validate()

    def _parse_thresholds(self) -> None:
        """Parse risk thresholds"""
        cfg = self._raw_config.get('thresholds', {})
        defaults = ThresholdConfig()
        self.thresholds = ThresholdConfig(
            screen_reject=cfg.get('screen_reject', defaults.screen_reject),
            screen_warn=cfg.get('screen_warn', defaults.screen_warn),
            print_reject=cfg.get('print_reject', defaults.print_reject),
            print_warn=cfg.get('print_warn', defaults.print_warn),
            tampering_reject=cfg.get('tampering_reject', defaults.tampering_reject),
            tampering_warn=cfg.get('tampering_warn', defaults.tampering_warn),
            minimum_match_level=cfg.get('minimum_match_level', defaults.minimum_match_level)
        )

    def _parse_watchlist(self) -> None:
        """Parse watchlist configuration"""
        cfg = self._raw_config.get('watchlist', {})
        self.watchlist = WatchlistConfig(
            critical_risk_score=cfg.get('critical_risk_score', 90),
            high_risk_score=cfg.get('high_risk_score', 70),
            case_id_prefix=cfg.get('case_id_prefix', 'BGC')
        )

    def _parse_security(self) -> None:
        """Parse signature verification settings"""
        cfg = self._raw_config.get('security', {})
        self.security = SecurityConfig(
            require_signature_verification=cfg.get('require_signature_verification', True),
            allowed_algorithms=cfg.get('allowed_algorithms', ['HS256']),
            allow_unsigned_enrollment=cfg.get('allow_unsigned_enrollment', False)
        )

    def _parse_provider(self) -> None:
        """Parse provider API configuration"""
        cfg = self._raw_config.get('provider', {})
        defaults = ProviderConfig()
        self.provider = ProviderConfig(
            auth_url=cfg.get('auth_url', defaults.auth_url),
            info_url=cfg.get('info_url', defaults.info_url),
            timeout_seconds=cfg.get('timeout_seconds', 10),
            retry_attempts=cfg.get('retry_attempts', 2),
            fetch_images=cfg.get('fetch_images', True)
        )

    def _parse_qr_sessions(self) -> None:
        """Parse QR session configuration"""
        cfg = self._raw_config.get('qr_sessions', {})
        defaults = QrSessionConfig()
        self.qr_sessions = QrSessionConfig(
            token_expiry_minutes=cfg.get('token_expiry_minutes', 5),
            deep_link_scheme=cfg.get('deep_link_scheme', defaults.deep_link_scheme),
            app_url=cfg.get('app_url', defaults.app_url),
            default_journey_id=cfg.get('default_journey_id', '')
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            default_tenant_id=cfg.get('default_tenant_id', ApiConfig.default_tenant_id)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            format=cfg.get('format', self.logging.format),
            security_log_dir=cfg.get('security_log_dir', 'logs'),
            security_log_console=cfg.get('security_log_console', False)
        )

    def _apply_environment(self) -> None:
        """Pull secrets from the environment (never stored in YAML)"""
        self.security.signing_key = os.getenv("SDK_SIGNING_KEY", self.security.signing_key)
        self.provider.client_id = os.getenv("PROVIDER_CLIENT_ID", self.provider.client_id)
        self.provider.client_secret = os.getenv("PROVIDER_CLIENT_SECRET", self.provider.client_secret)

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'thresholds': self.thresholds.to_dict(),
            'watchlist': {
                'critical_risk_score': self.watchlist.critical_risk_score,
                'high_risk_score': self.watchlist.high_risk_score,
                'case_id_prefix': self.watchlist.case_id_prefix
            },
            'security': {
                'require_signature_verification': self.security.require_signature_verification,
                'allowed_algorithms': self.security.allowed_algorithms,
                'allow_unsigned_enrollment': self.security.allow_unsigned_enrollment,
                'signing_key_configured': bool(self.security.signing_key)
            },
            'provider': {
                'auth_url': self.provider.auth_url,
                'info_url': self.provider.info_url,
                'timeout_seconds': self.provider.timeout_seconds,
                'retry_attempts': self.provider.retry_attempts,
                'fetch_images': self.provider.fetch_images,
                'credentials_configured': self.provider.has_credentials
            },
            'qr_sessions': {
                'token_expiry_minutes': self.qr_sessions.token_expiry_minutes,
                'deep_link_scheme': self.qr_sessions.deep_link_scheme,
                'app_url': self.qr_sessions.app_url
            },
            'api': {
                'default_tenant_id': self.api.default_tenant_id
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        t = self.thresholds
        for name, warn, reject in (
            ('screen', t.screen_warn, t.screen_reject),
            ('print', t.print_warn, t.print_reject),
            ('tampering', t.tampering_warn, t.tampering_reject),
        ):
            if warn >= reject:
                raise ConfigurationError(
                    f"thresholds.{name}_warn ({warn}) must be below {name}_reject ({reject})"
                )
        if not 0 <= t.minimum_match_level <= 5:
            raise ConfigurationError(
                f"thresholds.minimum_match_level must be between 0 and 5, got {t.minimum_match_level}"
            )
        if self.watchlist.high_risk_score >= self.watchlist.critical_risk_score:
            raise ConfigurationError("watchlist.high_risk_score must be below critical_risk_score")
        if self.provider.retry_attempts < 1:
            raise ConfigurationError("provider.retry_attempts must be at least 1")
        if self.qr_sessions.token_expiry_minutes <= 0:
            raise ConfigurationError("qr_sessions.token_expiry_minutes must be positive")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
