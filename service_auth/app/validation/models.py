"""
Result and payload types shared by the validation, exchange and session layers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced to callers."""
    MALFORMED_STRUCTURE = "MalformedStructure"
    MALFORMED_ENCODING = "MalformedEncoding"
    UNSUPPORTED_ALGORITHM = "UnsupportedAlgorithm"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    MISSING_FIELDS = "MissingFields"
    EXPIRED = "Expired"
    NOT_YET_VALID = "NotYetValid"
    MALFORMED_TIMESTAMP = "MalformedTimestamp"
    AUDIENCE_MISMATCH = "AudienceMismatch"
    TENANT_MISMATCH = "TenantMismatch"
    EXCHANGE_CHALLENGE_BLOCKED = "ExchangeChallengeBlocked"
    EXCHANGE_RATE_LIMITED = "ExchangeRateLimited"
    EXCHANGE_CONFIGURATION_ERROR = "ExchangeConfigurationError"
    EXCHANGE_REJECTED = "ExchangeRejected"
    EXCHANGE_INVALID_RESPONSE = "ExchangeInvalidResponse"
    EXHAUSTED_RETRIES = "ExhaustedRetries"
    AUTOMATED_CLIENT = "AutomatedClient"

    @property
    def is_network(self) -> bool:
        """Failures caused by the upstream endpoint rather than the token."""
        return self in NETWORK_ERROR_KINDS


NETWORK_ERROR_KINDS = frozenset({
    ErrorKind.EXCHANGE_CHALLENGE_BLOCKED,
    ErrorKind.EXCHANGE_RATE_LIMITED,
    ErrorKind.EXHAUSTED_RETRIES,
})


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(str, Enum):
    ALLOW = "allow"
    TOKEN_EXCHANGE = "token_exchange"
    SESSION_BOUNCE = "session_bounce"
    FORCE_REFRESH = "force_refresh"
    WAIT = "wait"


class DeviceClass(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    MOBILE_EXTENSION = "mobile_extension"
    HIGH_SKEW = "high_skew"


class ChallengeType(str, Enum):
    BROWSER_CHECK = "browser_check"
    JS_CHALLENGE = "js_challenge"
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    BOT_FIGHT = "bot_fight"
    WAF_BLOCK = "waf_block"
    UNKNOWN = "unknown"


REQUIRED_CLAIMS = ("iss", "dest", "aud", "sub", "exp", "nbf", "iat")


@dataclass(frozen=True)
class SessionTokenPayload:
    """Decoded claims of a session token."""
    issuer: str
    destination: str
    audience: str
    subject: str
    expires_at: float
    not_before: float
    issued_at: float
    token_id: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "SessionTokenPayload":
        return cls(
            issuer=str(claims["iss"]),
            destination=str(claims["dest"]),
            audience=str(claims["aud"]),
            subject=str(claims["sub"]),
            expires_at=float(claims["exp"]),
            not_before=float(claims["nbf"]),
            issued_at=float(claims["iat"]),
            token_id=claims.get("jti"),
            session_id=claims.get("sid"),
        )


@dataclass(frozen=True)
class TimestampDecision:
    valid: bool
    severity: Severity
    recovery_action: RecoveryAction
    should_refresh_soon: bool
    time_until_expiry: float
    tolerance: float
    error_kind: Optional[ErrorKind] = None
    wait_seconds: Optional[float] = None
    message: str = ""


@dataclass(frozen=True)
class ValidationMetadata:
    tenant_origin: str
    device_class: DeviceClass
    should_refresh_soon: bool
    time_until_expiry: float
    signature_verified: bool = True


@dataclass(frozen=True)
class Valid:
    payload: SessionTokenPayload
    metadata: ValidationMetadata


@dataclass(frozen=True)
class Invalid:
    """A rejected token. ``diagnostic`` is for logs only."""
    error_kind: ErrorKind
    message: str
    diagnostic: Dict[str, Any]
    recovery_action: Optional[RecoveryAction] = None
    wait_seconds: Optional[float] = None


ValidationResult = Union[Valid, Invalid]
