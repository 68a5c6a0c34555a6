"""
Expiry and not-before checks with device-aware clock skew tolerance.

Embedded clients frequently run on devices whose clocks drift by minutes,
so a strict ``exp``/``nbf`` comparison rejects legitimate sessions. The
policy widens the accepted window based on the device class, then grades
every rejection with a severity and the recovery step the caller should
take (exchange the token again, bounce the session, force a refresh, or
simply wait until the token becomes valid).
"""

import math
import time
from typing import Callable, List, Optional

from shared.logging import get_logger
from .models import DeviceClass, ErrorKind, RecoveryAction, Severity, TimestampDecision


BASE_TOLERANCE = 300
MOBILE_TOLERANCE = 900
EXTENDED_TOLERANCE = 3600

ONE_HOUR = 3600
ONE_DAY = 24 * ONE_HOUR
ONE_YEAR = 365 * ONE_DAY

RECOVERABLE_WINDOW = 300
REFRESH_SOON_WINDOW = 300

RECOVERY_RECOMMENDATIONS = {
    RecoveryAction.ALLOW: [],
    RecoveryAction.TOKEN_EXCHANGE: [
        "Request a new session token",
        "Exchange the new token for an access token",
    ],
    RecoveryAction.SESSION_BOUNCE: [
        "Request a new session token",
        "Use session token bounce page",
        "Ensure clock synchronization",
    ],
    RecoveryAction.FORCE_REFRESH: [
        "Discard the cached session token",
        "Reload the embedded app to obtain a fresh token",
        "Check device clock settings",
    ],
    RecoveryAction.WAIT: [
        "Wait a few moments and retry",
        "Check device clock settings",
        "Sync device time with network",
    ],
}


def recovery_recommendations(action: RecoveryAction) -> List[str]:
    """Human-readable steps for a recovery action, for diagnostics."""
    return list(RECOVERY_RECOMMENDATIONS.get(action, []))


class TimestampPolicy:
    """Grades token timestamps against the current time."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.logger = get_logger("auth.timestamps")

    def tolerance_for(self, device_class: DeviceClass, observed_skew: float = 0.0) -> int:
        if device_class == DeviceClass.MOBILE_EXTENSION:
            if observed_skew > MOBILE_TOLERANCE:
                self.logger.warning(
                    "Extended clock skew tolerance applied",
                    device_class=device_class.value,
                    observed_skew=round(observed_skew, 1),
                    tolerance=EXTENDED_TOLERANCE
                )
                return EXTENDED_TOLERANCE
            return MOBILE_TOLERANCE
        if device_class in (DeviceClass.MOBILE, DeviceClass.HIGH_SKEW):
            return MOBILE_TOLERANCE
        return BASE_TOLERANCE

    def evaluate(self,
                 expires_at: float,
                 not_before: float,
                 issued_at: float,
                 device_class: DeviceClass = DeviceClass.DESKTOP,
                 now: Optional[float] = None) -> TimestampDecision:
        """Classify token timestamps; the first matching rule wins."""
        now = self._clock() if now is None else now
        observed_skew = max(now - expires_at, not_before - now, issued_at - now, 0.0)
        tolerance = self.tolerance_for(device_class, observed_skew)
        time_until_expiry = expires_at - now

        def reject(severity: Severity, action: RecoveryAction, kind: ErrorKind, message: str,
                   wait_seconds: Optional[float] = None) -> TimestampDecision:
            return TimestampDecision(
                valid=False,
                severity=severity,
                recovery_action=action,
                should_refresh_soon=False,
                time_until_expiry=time_until_expiry,
                tolerance=tolerance,
                error_kind=kind,
                wait_seconds=wait_seconds,
                message=message,
            )

        if not all(math.isfinite(value) for value in (expires_at, not_before, issued_at)):
            return reject(Severity.CRITICAL, RecoveryAction.FORCE_REFRESH, ErrorKind.MALFORMED_TIMESTAMP,
                          "Token timestamps are not finite")

        if abs(not_before - now) > ONE_YEAR:
            return reject(Severity.CRITICAL, RecoveryAction.FORCE_REFRESH, ErrorKind.MALFORMED_TIMESTAMP,
                          "Token not-before time is more than a year away")

        if expires_at < now - ONE_HOUR:
            return reject(Severity.CRITICAL, RecoveryAction.FORCE_REFRESH, ErrorKind.EXPIRED,
                          "Token expired more than an hour ago")

        if expires_at <= now - tolerance:
            overrun = (now - tolerance) - expires_at
            if overrun < RECOVERABLE_WINDOW:
                return reject(Severity.MEDIUM, RecoveryAction.TOKEN_EXCHANGE, ErrorKind.EXPIRED,
                              "Token recently expired")
            return reject(Severity.HIGH, RecoveryAction.SESSION_BOUNCE, ErrorKind.EXPIRED,
                          "Token expired")

        if not_before > now + tolerance:
            if not_before - now > ONE_DAY:
                return reject(Severity.CRITICAL, RecoveryAction.FORCE_REFRESH, ErrorKind.MALFORMED_TIMESTAMP,
                              "Token not-before time is more than a day away")
            wait = not_before - tolerance - now
            if wait < RECOVERABLE_WINDOW:
                return reject(Severity.MEDIUM, RecoveryAction.WAIT, ErrorKind.NOT_YET_VALID,
                              "Token is not valid yet", wait_seconds=wait)
            return reject(Severity.HIGH, RecoveryAction.SESSION_BOUNCE, ErrorKind.NOT_YET_VALID,
                          "Token is not valid yet")

        if time_until_expiry > ONE_DAY:
            return reject(Severity.CRITICAL, RecoveryAction.FORCE_REFRESH, ErrorKind.MALFORMED_TIMESTAMP,
                          "Token lifetime exceeds one day")

        should_refresh_soon = time_until_expiry < REFRESH_SOON_WINDOW
        return TimestampDecision(
            valid=True,
            severity=Severity.LOW if should_refresh_soon else Severity.NONE,
            recovery_action=RecoveryAction.ALLOW,
            should_refresh_soon=should_refresh_soon,
            time_until_expiry=time_until_expiry,
            tolerance=tolerance,
        )
