"""
Client for exchanging session tokens for API access tokens.
"""

import asyncio
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

import httpx

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, calculate_delay
from ..validation.models import ChallengeType, ErrorKind
from .challenge import (
    CHALLENGE_DELAY_MULTIPLIERS,
    CHALLENGE_GROWTH,
    TERMINAL_CHALLENGES,
    HeaderProfiles,
    detect_challenge,
    is_configuration_error,
)

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
ID_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:id_token"
ONLINE_ACCESS_TOKEN_TYPE = "urn:shopify:params:oauth:token-type:online-access-token"

DEFAULT_USER_AGENT = "embedded-session-auth/1.0 (+httpx)"


@dataclass
class ExchangeResult:
    """Outcome of one exchange, retries included."""
    success: bool
    attempts: int
    access_token: Optional[str] = None
    scope: Optional[str] = None
    expires_in_seconds: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    challenge_type: Optional[ChallengeType] = None
    retry_after: Optional[float] = None
    last_failure: Optional[str] = None
    status_code: Optional[int] = None

    def __repr__(self) -> str:
        return (
            f"ExchangeResult(success={self.success}, attempts={self.attempts}, "
            f"error_kind={self.error_kind}, status_code={self.status_code})"
        )


@dataclass
class _Failure:
    """Classification of a failed attempt."""
    description: str
    retryable: bool
    delay: float = 0.0
    error_kind: Optional[ErrorKind] = None
    challenge_type: Optional[ChallengeType] = None
    retry_after: Optional[float] = None
    status_code: Optional[int] = None


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    now = time.time() if now is None else now
    return max(0.0, when.timestamp() - now)


class ExchangeClient:
    """Exchanges a verified session token at the tenant's token endpoint.

    Every attempt is classified before deciding whether and how long to
    wait: rate limiting honours ``Retry-After``, edge proxy challenges back
    off per challenge type and rotate the header profile, transport errors
    and 5xx back off exponentially. Firewall block pages and anything
    pointing at our own credentials or request stop immediately.
    """

    def __init__(self,
                 client_id: str,
                 client_secret: str,
                 endpoint_template: str,
                 scopes: str = "",
                 retry_config: Optional[RetryConfig] = None,
                 attempt_timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 metrics: Optional[MetricsCollector] = None,
                 header_profiles: Optional[HeaderProfiles] = None):
        self.client_id = client_id
        self._client_secret = client_secret
        self.endpoint_template = endpoint_template
        self.scopes = scopes
        self.retry_config = retry_config or RetryConfig(
            max_attempts=6, base_delay=0.5, max_delay=15.0, max_total_wait=60.0
        )
        self.attempt_timeout = attempt_timeout
        self._transport = transport
        self._sleep = sleep
        self.metrics = metrics
        self.header_profiles = header_profiles or HeaderProfiles(DEFAULT_USER_AGENT)
        self.logger = get_logger("auth.exchange")

    def endpoint_for(self, tenant_origin: str) -> str:
        return self.endpoint_template.format(tenant=tenant_origin)

    def _request_body(self, raw_token: str) -> dict:
        body = {
            "grant_type": TOKEN_EXCHANGE_GRANT,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "subject_token": raw_token,
            "subject_token_type": ID_TOKEN_TYPE,
            "requested_token_type": ONLINE_ACCESS_TOKEN_TYPE,
        }
        if self.scopes:
            body["scope"] = self.scopes
        return body

    def _record(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("token_exchange_attempts_total", outcome=outcome)

    async def exchange(self, raw_token: str, tenant_origin: str) -> ExchangeResult:
        """Exchange ``raw_token`` for an access token of ``tenant_origin``."""
        config = self.retry_config
        url = self.endpoint_for(tenant_origin)
        body = self._request_body(raw_token)
        started = time.monotonic()

        total_wait = 0.0
        profile_index = 0
        last_challenge: Optional[ChallengeType] = None
        failure: Optional[_Failure] = None
        attempt = 0

        async with httpx.AsyncClient(transport=self._transport, timeout=self.attempt_timeout) as client:
            for attempt in range(1, config.max_attempts + 1):
                headers = self.header_profiles.for_index(profile_index, tenant_origin, attempt)
                try:
                    response = await client.post(url, data=body, headers=headers)
                except httpx.HTTPError as exc:
                    failure = _Failure(
                        description=f"transport error: {type(exc).__name__}",
                        retryable=True,
                        delay=calculate_delay(attempt, config),
                    )
                    self._record("transport_error")
                else:
                    if response.is_success:
                        result = self._parse_success(response, attempt)
                        self._record("success" if result.success else "invalid_response")
                        self._observe_duration(started)
                        return result
                    failure = self._classify(response, attempt)

                if failure.challenge_type is not None:
                    last_challenge = failure.challenge_type
                    profile_index += 1

                self.logger.warning(
                    "Token exchange attempt failed",
                    tenant=tenant_origin,
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    status_code=failure.status_code,
                    failure=failure.description,
                    retryable=failure.retryable,
                    delay=round(failure.delay, 3)
                )

                if not failure.retryable:
                    self._observe_duration(started)
                    return self._failed(failure, failure.error_kind, attempt)

                if attempt == config.max_attempts:
                    break

                if config.max_total_wait is not None and total_wait + failure.delay > config.max_total_wait:
                    self.logger.warning(
                        "Token exchange wait budget exhausted",
                        tenant=tenant_origin,
                        attempt=attempt,
                        total_wait=round(total_wait, 3),
                        max_total_wait=config.max_total_wait
                    )
                    break

                total_wait += failure.delay
                await self._sleep(failure.delay)

        self._observe_duration(started)
        self.logger.error(
            "Token exchange failed after retries",
            tenant=tenant_origin,
            attempts=attempt,
            last_challenge=last_challenge.value if last_challenge else None,
            total_wait=round(total_wait, 3)
        )
        return self._failed(failure, ErrorKind.EXHAUSTED_RETRIES, attempt, challenge_type=last_challenge)

    def _observe_duration(self, started: float):
        if self.metrics:
            self.metrics.observe_histogram("token_exchange_duration_seconds", time.monotonic() - started)

    def _failed(self, failure: Optional[_Failure], kind: ErrorKind, attempts: int,
                challenge_type: Optional[ChallengeType] = None) -> ExchangeResult:
        if challenge_type is None and failure is not None:
            challenge_type = failure.challenge_type
        return ExchangeResult(
            success=False,
            attempts=attempts,
            error_kind=kind,
            challenge_type=challenge_type,
            retry_after=failure.retry_after if failure else None,
            last_failure=failure.description if failure else None,
            status_code=failure.status_code if failure else None,
        )

    def _parse_success(self, response: httpx.Response, attempt: int) -> ExchangeResult:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("access_token"):
            self.logger.error(
                "Token exchange returned no access token",
                status_code=response.status_code,
                content_type=response.headers.get("content-type")
            )
            return ExchangeResult(
                success=False,
                attempts=attempt,
                error_kind=ErrorKind.EXCHANGE_INVALID_RESPONSE,
                last_failure="response without access token",
                status_code=response.status_code,
            )

        expires_in = data.get("expires_in")
        return ExchangeResult(
            success=True,
            attempts=attempt,
            access_token=data["access_token"],
            scope=data.get("scope"),
            expires_in_seconds=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            status_code=response.status_code,
        )

    def _classify(self, response: httpx.Response, attempt: int) -> _Failure:
        config = self.retry_config
        status = response.status_code
        text = response.text

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            self._record("rate_limited")
            if retry_after is not None and retry_after > config.max_delay:
                return _Failure(
                    description="rate limited beyond retry window",
                    retryable=False,
                    error_kind=ErrorKind.EXCHANGE_RATE_LIMITED,
                    retry_after=retry_after,
                    status_code=status,
                )
            delay = retry_after if retry_after is not None else calculate_delay(attempt, config, strategy="linear")
            return _Failure(
                description="rate limited",
                retryable=True,
                delay=delay,
                retry_after=retry_after,
                status_code=status,
            )

        challenge = detect_challenge(status, text, response.headers)
        if challenge is not None:
            self._record("challenge")
            if self.metrics:
                self.metrics.increment_counter("edge_challenges_total", challenge_type=challenge.value)
            if challenge in TERMINAL_CHALLENGES:
                return _Failure(
                    description=f"edge block: {challenge.value}",
                    retryable=False,
                    error_kind=ErrorKind.EXCHANGE_CHALLENGE_BLOCKED,
                    challenge_type=challenge,
                    status_code=status,
                )
            return _Failure(
                description=f"edge challenge: {challenge.value}",
                retryable=True,
                delay=calculate_delay(
                    attempt,
                    config,
                    multiplier=CHALLENGE_DELAY_MULTIPLIERS[challenge],
                    exponential_base=CHALLENGE_GROWTH,
                ),
                challenge_type=challenge,
                status_code=status,
            )

        if 400 <= status < 500 and is_configuration_error(text):
            self._record("configuration_error")
            return _Failure(
                description="upstream rejected app credentials",
                retryable=False,
                error_kind=ErrorKind.EXCHANGE_CONFIGURATION_ERROR,
                status_code=status,
            )

        if status == 408 or status >= 500:
            self._record("server_error")
            return _Failure(
                description=f"upstream error {status}",
                retryable=True,
                delay=calculate_delay(attempt, config),
                status_code=status,
            )

        self._record("rejected")
        return _Failure(
            description=f"upstream rejected request with {status}",
            retryable=False,
            error_kind=ErrorKind.EXCHANGE_REJECTED,
            status_code=status,
        )
