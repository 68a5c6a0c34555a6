"""
Authentication pipeline: cache, validation, exchange, degraded mode.
"""

import asyncio
import time
from typing import Callable, Optional, Set

from pydantic import BaseModel

from shared.circuit_breaker import CircuitBreakerManager
from shared.logging import get_logger, set_session_context
from shared.metrics import MetricsCollector
from .exchange.client import ExchangeClient, ExchangeResult
from .sessions.cache import CachedSession, SessionCache, fingerprint
from .validation.codec import strip_bearer
from .validation.device import classify_device
from .validation.models import DeviceClass, ErrorKind, Invalid, RecoveryAction, Valid
from .validation.token_validator import TokenValidator, canonical_host

# Exchange failures that tell the client to fetch a fresh session token.
_BOUNCING_EXCHANGE_KINDS = frozenset({ErrorKind.EXCHANGE_REJECTED})

# Minimum retry suggestion, in seconds, after an upstream outage.
NETWORK_RETRY_AFTER = 5.0


class AuthHints(BaseModel):
    """Caller-supplied context; never trusted for identity."""
    user_agent: Optional[str] = None
    referer_tenant_hint: Optional[str] = None
    is_automated_client: bool = False
    device_class: Optional[DeviceClass] = None


class AuthResult(BaseModel):
    success: bool
    tenant_origin: Optional[str] = None
    subject_id: Optional[str] = None
    session_id: Optional[str] = None
    access_token: Optional[str] = None
    scope: Optional[str] = None
    degraded: bool = False
    from_cache: bool = False
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    requires_bounce: bool = False
    retry_after: Optional[float] = None
    recovery_action: Optional[RecoveryAction] = None


class AuthOrchestrator:
    """Runs the ordered authentication strategies for one token."""

    def __init__(self,
                 validator: TokenValidator,
                 exchange_client: ExchangeClient,
                 cache: SessionCache,
                 failure_tracker: Optional[CircuitBreakerManager] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.time):
        self.validator = validator
        self.exchange_client = exchange_client
        self.cache = cache
        self.failure_tracker = failure_tracker or CircuitBreakerManager(clock=clock)
        self.metrics = metrics
        self._clock = clock
        self._refresh_tasks: Set[asyncio.Task] = set()
        self.logger = get_logger("auth.orchestrator")

    def _outcome(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("auth_results_total", outcome=outcome)

    async def authenticate(self, raw_token: str, hints: Optional[AuthHints] = None) -> AuthResult:
        hints = hints or AuthHints()

        if hints.is_automated_client:
            self._outcome("automated")
            return AuthResult(
                success=False,
                error_kind=ErrorKind.AUTOMATED_CLIENT,
                message="Automated clients are not authenticated",
            )

        token = strip_bearer(raw_token or "")
        fp = fingerprint(token)

        cached = self.cache.lookup(fp)
        if cached is not None:
            self._maybe_refresh(fp, token, cached)
            self._outcome("cache_hit")
            set_session_context(subject_id=cached.payload.subject, tenant=cached.tenant_origin)
            return AuthResult(
                success=True,
                tenant_origin=cached.tenant_origin,
                subject_id=cached.payload.subject,
                session_id=cached.payload.session_id,
                access_token=cached.access_token,
                scope=cached.scope,
                from_cache=True,
            )

        validation = self._validate(fp, token, hints)
        if isinstance(validation, Invalid):
            return self._validation_failure(validation)
        if self.metrics:
            self.metrics.increment_counter("token_validations_total", status="valid")

        payload = validation.payload
        tenant = validation.metadata.tenant_origin
        set_session_context(subject_id=payload.subject, tenant=tenant)
        self._check_referer_hint(hints, tenant)

        if self.failure_tracker.is_open(tenant):
            self.logger.warning("Tenant circuit open, skipping token exchange", tenant=tenant)
            return self._degraded(validation)

        exchange = await self.exchange_client.exchange(token, tenant)
        if exchange.success:
            self.failure_tracker.get_circuit_breaker(tenant).record_success()
            self.cache.store(fp, CachedSession(
                fingerprint=fp,
                payload=payload,
                tenant_origin=tenant,
                expires_at=payload.expires_at,
                cached_at=self._clock(),
                access_token=exchange.access_token,
                scope=exchange.scope,
            ))
            self._outcome("success")
            return AuthResult(
                success=True,
                tenant_origin=tenant,
                subject_id=payload.subject,
                session_id=payload.session_id,
                access_token=exchange.access_token,
                scope=exchange.scope,
            )

        return self._exchange_failure(validation, exchange)

    def _validate(self, fp: str, token: str, hints: AuthHints):
        memo = self.cache.get_validation(fp)
        if memo is not None and self._clock() < memo.payload.expires_at:
            return memo

        device_class = hints.device_class or classify_device(hints.user_agent)
        result = self.validator.validate(token, device_class)
        self.logger.debug("Session token checked", device_class=device_class.value,
                          **self.validator.claims_for_logging(result))
        if isinstance(result, Valid):
            self.cache.store_validation(fp, result)
        return result

    def _validation_failure(self, result: Invalid) -> AuthResult:
        if self.metrics:
            self.metrics.increment_counter("token_validations_total", status=result.error_kind.value)
        self._outcome("invalid")
        waiting = result.recovery_action == RecoveryAction.WAIT
        return AuthResult(
            success=False,
            error_kind=result.error_kind,
            message=result.message,
            requires_bounce=not waiting,
            retry_after=result.wait_seconds if waiting else None,
            recovery_action=result.recovery_action,
        )

    def _exchange_failure(self, validation: Valid, exchange: ExchangeResult) -> AuthResult:
        tenant = validation.metadata.tenant_origin
        kind = exchange.error_kind

        if kind is not None and kind.is_network:
            self.failure_tracker.get_circuit_breaker(tenant).record_failure()
            if self.failure_tracker.is_open(tenant):
                return self._degraded(validation)

        self.logger.warning(
            "Token exchange failed",
            tenant=tenant,
            error_kind=kind.value if kind else None,
            attempts=exchange.attempts,
            challenge_type=exchange.challenge_type.value if exchange.challenge_type else None,
            last_failure=exchange.last_failure
        )
        self._outcome("exchange_failed")
        retry_after = exchange.retry_after
        if kind is not None and kind.is_network:
            retry_after = max(retry_after or 0.0, NETWORK_RETRY_AFTER)
        return AuthResult(
            success=False,
            tenant_origin=tenant,
            error_kind=kind,
            message="Token exchange failed",
            requires_bounce=kind in _BOUNCING_EXCHANGE_KINDS,
            retry_after=retry_after,
        )

    def _degraded(self, validation: Valid) -> AuthResult:
        self.logger.warning(
            "Serving degraded session without access token",
            tenant=validation.metadata.tenant_origin
        )
        self._outcome("degraded")
        return AuthResult(
            success=True,
            tenant_origin=validation.metadata.tenant_origin,
            subject_id=validation.payload.subject,
            session_id=validation.payload.session_id,
            degraded=True,
            message="Access token unavailable; identity verified",
        )

    def _check_referer_hint(self, hints: AuthHints, tenant: str):
        if not hints.referer_tenant_hint:
            return
        hinted = canonical_host(hints.referer_tenant_hint, self.validator.tenant_domain_suffix)
        if hinted != tenant:
            self.logger.warning("Referer tenant hint does not match token", hinted_tenant=hinted, tenant=tenant)

    def _maybe_refresh(self, fp: str, token: str, session: CachedSession):
        if not self.cache.should_proactively_refresh(session):
            return
        if not self.cache.begin_refresh(fp):
            return
        task = asyncio.create_task(self._refresh(fp, token, session.tenant_origin))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh(self, fp: str, token: str, tenant: str):
        access_token = None
        scope = None
        try:
            result = await self.exchange_client.exchange(token, tenant)
            if result.success:
                access_token, scope = result.access_token, result.scope
                self.logger.info("Proactive refresh completed", tenant=tenant)
            else:
                self.logger.warning(
                    "Proactive refresh failed",
                    tenant=tenant,
                    error_kind=result.error_kind.value if result.error_kind else None
                )
        except Exception as e:
            self.logger.error("Proactive refresh error", tenant=tenant, error=str(e))
        finally:
            self.cache.finish_refresh(fp, access_token, scope)

    async def shutdown(self):
        """Wait for in-flight proactive refreshes."""
        if self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)
