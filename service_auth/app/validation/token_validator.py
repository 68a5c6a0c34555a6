"""
Token validation service for Auth service.
"""

import math
import time
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger
from .codec import TokenEncodingError, TokenFormatError, decode_json_segment, split_token, strip_bearer
from .models import (
    REQUIRED_CLAIMS,
    DeviceClass,
    ErrorKind,
    Invalid,
    SessionTokenPayload,
    Valid,
    ValidationMetadata,
    ValidationResult,
)
from .signature import SignatureVerifier
from .timestamps import TimestampPolicy

TEMPORAL_CLAIMS = ("exp", "nbf", "iat")


def canonical_host(value: str, domain_suffix: str) -> str:
    """Reduce a URL or bare tenant name to a lower-case host."""
    host = value.strip().lower()
    if "://" in host:
        host = host.split("://", 1)[1]
    host = host.split("/", 1)[0].split("?", 1)[0].split(":", 1)[0]
    if host and "." not in host:
        host = f"{host}{domain_suffix}"
    return host


def tenant_key(host: str, domain_suffix: str) -> str:
    """Tenant identity of a canonical host, ignoring the ``-admin`` variant."""
    key = host
    if domain_suffix and key.endswith(domain_suffix):
        key = key[: -len(domain_suffix)]
    if key.endswith("-admin"):
        key = key[: -len("-admin")]
    return key


class TokenValidator:
    """Strict session token validator.

    Checks run in a fixed order and the first failure is returned; the
    signature is always verified before any claim is trusted.
    """

    def __init__(self,
                 shared_secret: str,
                 expected_audience: str,
                 tenant_domain_suffix: str = ".myshopify.com",
                 timestamp_policy: Optional[TimestampPolicy] = None,
                 clock: Callable[[], float] = time.time):
        self.verifier = SignatureVerifier(shared_secret)
        self.expected_audience = expected_audience
        self.tenant_domain_suffix = tenant_domain_suffix
        self._clock = clock
        self.timestamp_policy = timestamp_policy or TimestampPolicy(clock=clock)
        self.logger = get_logger("auth.validator")

    def _invalid(self, kind: ErrorKind, message: str, **diagnostic: Any) -> Invalid:
        self.logger.info("Token rejected", error_kind=kind.value, **diagnostic)
        return Invalid(error_kind=kind, message=message, diagnostic=diagnostic)

    def validate(self, raw_token: str, device_class: Optional[DeviceClass] = None) -> ValidationResult:
        """Verify a session token and extract its identity."""
        device_class = device_class or DeviceClass.DESKTOP

        token = strip_bearer(raw_token or "")
        try:
            header_segment, payload_segment, _ = split_token(token)
        except TokenFormatError as exc:
            return self._invalid(ErrorKind.MALFORMED_STRUCTURE, "Token is not a three-part token", reason=str(exc))

        try:
            header = decode_json_segment(header_segment)
            claims = decode_json_segment(payload_segment)
        except TokenEncodingError as exc:
            return self._invalid(ErrorKind.MALFORMED_ENCODING, "Token segments could not be decoded", reason=str(exc))

        algorithm = header.get("alg")
        if algorithm != SignatureVerifier.algorithm:
            return self._invalid(ErrorKind.UNSUPPORTED_ALGORITHM, "Token algorithm is not supported",
                                 algorithm=str(algorithm))

        failure = self.verifier.verify(token)
        if failure == ErrorKind.UNSUPPORTED_ALGORITHM:
            return self._invalid(failure, "Token algorithm is not supported", algorithm=str(algorithm))
        if failure is not None:
            return self._invalid(ErrorKind.SIGNATURE_MISMATCH, "Token signature is invalid")

        missing = [name for name in REQUIRED_CLAIMS if claims.get(name) in (None, "")]
        if missing:
            return self._invalid(ErrorKind.MISSING_FIELDS, "Token is missing required claims", missing=missing)

        malformed = [name for name in TEMPORAL_CLAIMS if not _is_number(claims[name])]
        if malformed:
            return self._invalid(ErrorKind.MALFORMED_TIMESTAMP, "Token timestamps are not finite numbers", fields=malformed)

        payload = SessionTokenPayload.from_claims(claims)

        decision = self.timestamp_policy.evaluate(
            payload.expires_at, payload.not_before, payload.issued_at, device_class, now=self._clock()
        )
        if not decision.valid:
            self.logger.info(
                "Token rejected",
                error_kind=decision.error_kind.value,
                severity=decision.severity.value,
                recovery_action=decision.recovery_action.value,
                time_until_expiry=round(decision.time_until_expiry, 1),
                tolerance=decision.tolerance,
                device_class=device_class.value
            )
            return Invalid(
                error_kind=decision.error_kind,
                message=decision.message,
                diagnostic={"severity": decision.severity.value, "tolerance": decision.tolerance},
                recovery_action=decision.recovery_action,
                wait_seconds=decision.wait_seconds,
            )

        if payload.audience != self.expected_audience:
            return self._invalid(ErrorKind.AUDIENCE_MISMATCH, "Token audience does not match this app",
                                 audience=payload.audience)

        destination = canonical_host(payload.destination, self.tenant_domain_suffix)
        issuer = canonical_host(payload.issuer, self.tenant_domain_suffix)
        tenant_origin = destination or issuer
        if not tenant_origin or (
            destination and issuer
            and tenant_key(destination, self.tenant_domain_suffix) != tenant_key(issuer, self.tenant_domain_suffix)
        ):
            return self._invalid(ErrorKind.TENANT_MISMATCH, "Token issuer and destination disagree",
                                 destination=destination, issuer=issuer)

        return Valid(
            payload=payload,
            metadata=ValidationMetadata(
                tenant_origin=tenant_origin,
                device_class=device_class,
                should_refresh_soon=decision.should_refresh_soon,
                time_until_expiry=decision.time_until_expiry,
            ),
        )

    def claims_for_logging(self, result: ValidationResult) -> Dict[str, Any]:
        """Loggable summary of a result that never includes the token."""
        if isinstance(result, Valid):
            return {
                "valid": True,
                "tenant": result.metadata.tenant_origin,
                "subject_id": result.payload.subject,
                "time_until_expiry": round(result.metadata.time_until_expiry, 1),
            }
        return {"valid": False, "error_kind": result.error_kind.value}


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False
