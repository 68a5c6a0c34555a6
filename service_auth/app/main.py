"""
Auth service for the session auth engine.
"""

from typing import Optional

import httpx
from fastapi import Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerManager
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, ValidationError
from shared.logging import set_session_context
from shared.retry import RetryConfig
from .exchange.client import ExchangeClient
from .orchestrator import AuthHints, AuthOrchestrator, AuthResult
from .sessions.cache import SessionCache
from .validation.models import DeviceClass, ErrorKind
from .validation.token_validator import TokenValidator

BOUNCE_HEADER = "X-Session-Token-Bounce"

# Failures caused by our own setup or the upstream response, not the token.
_UPSTREAM_FAULTS = frozenset({ErrorKind.EXCHANGE_CONFIGURATION_ERROR, ErrorKind.EXCHANGE_INVALID_RESPONSE})


class ValidateRequest(BaseModel):
    """Body of ``POST /auth/validate``; the token may come from the header instead."""
    token: Optional[str] = None
    user_agent: Optional[str] = None
    referer_tenant_hint: Optional[str] = None
    is_automated_client: bool = False
    device_class: Optional[DeviceClass] = None


def _public(result: AuthResult) -> dict:
    return result.model_dump(mode="json", exclude={"access_token"})


class AuthService(BaseService):
    """Auth service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__("auth", 8010, config=config)
        config = self.config

        self.cache = SessionCache(
            ttl_seconds=config.cache_ttl_seconds,
            max_size=config.cache_max_size,
            validation_ttl_seconds=config.validation_cache_ttl_seconds,
            refresh_threshold_seconds=config.refresh_threshold_seconds,
            cleanup_interval_seconds=config.cleanup_interval_seconds,
            enable_proactive_refresh=config.enable_proactive_refresh,
            metrics=self.metrics,
        )
        self.token_validator = TokenValidator(
            config.shared_secret.get_secret_value(),
            config.expected_audience,
            tenant_domain_suffix=config.tenant_domain_suffix,
        )
        self.exchange_client = ExchangeClient(
            client_id=config.expected_audience,
            client_secret=config.shared_secret.get_secret_value(),
            endpoint_template=config.exchange_endpoint_template,
            scopes=config.scopes,
            retry_config=RetryConfig(
                max_attempts=config.exchange_max_attempts,
                base_delay=config.exchange_base_delay,
                max_delay=config.exchange_max_delay,
                max_total_wait=config.exchange_max_total_wait,
                jitter=config.exchange_jitter,
            ),
            attempt_timeout=config.exchange_attempt_timeout,
            transport=transport,
            metrics=self.metrics,
        )
        self.orchestrator = AuthOrchestrator(
            self.token_validator,
            self.exchange_client,
            self.cache,
            failure_tracker=CircuitBreakerManager(
                failure_threshold=config.degraded_failure_threshold,
                window_seconds=config.degraded_window_seconds,
            ),
            metrics=self.metrics,
        )

        self._setup_auth_routes()

    async def on_startup(self):
        await self.cache.start()

    async def on_shutdown(self):
        await self.cache.stop()
        await self.orchestrator.shutdown()

    def _setup_auth_routes(self):
        """Set up auth-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "auth",
                "message": "Session auth engine - Auth Service",
                "version": "1.0.0"
            }

        @self.app.post("/auth/validate")
        async def validate(request: Request,
                           body: Optional[ValidateRequest] = None,
                           authorization: Optional[str] = Header(default=None)):
            """Validate a session token and return the authenticated session."""
            body = body or ValidateRequest()
            token = authorization or body.token
            if not token:
                raise ValidationError("Session token is required", details={"field": "token"})

            hints = AuthHints(
                user_agent=body.user_agent or request.headers.get("user-agent"),
                referer_tenant_hint=body.referer_tenant_hint,
                is_automated_client=body.is_automated_client,
                device_class=body.device_class,
            )
            result = await self.orchestrator.authenticate(token, hints)
            return self._to_response(result)

        @self.app.get("/auth/session")
        async def current_session(session: AuthResult = self.require_session()):
            """Identity of the session presenting the request."""
            return _public(session)

        @self.app.get("/auth/cache/stats")
        async def cache_stats():
            """Session cache statistics."""
            return {
                "cache": self.cache.stats(),
                "circuits": self.orchestrator.failure_tracker.get_all_states(),
            }

    def _to_response(self, result: AuthResult) -> JSONResponse:
        if result.success or result.error_kind == ErrorKind.AUTOMATED_CLIENT:
            return JSONResponse(status_code=200, content=_public(result))

        headers = {}
        if result.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(round(result.retry_after))))

        if result.error_kind is not None and result.error_kind.is_network:
            status_code = 503
        elif result.error_kind in _UPSTREAM_FAULTS:
            status_code = 502
        else:
            status_code = 401
            if result.requires_bounce:
                headers[BOUNCE_HEADER] = "1"

        return JSONResponse(status_code=status_code, content=_public(result), headers=headers)

    def require_session(self):
        """FastAPI dependency that rejects requests without a usable session."""

        async def dependency(request: Request, authorization: Optional[str] = Header(default=None)) -> AuthResult:
            if not authorization:
                raise AuthenticationError("Missing session token")
            result = await self.orchestrator.authenticate(
                authorization, AuthHints(user_agent=request.headers.get("user-agent"))
            )
            if not result.success:
                raise AuthenticationError(
                    result.message or "Authentication failed",
                    details={"error_kind": result.error_kind.value if result.error_kind else None}
                )
            set_session_context(subject_id=result.subject_id, tenant=result.tenant_origin)
            return result

        return Depends(dependency)


def create_app(config: Optional[ServiceConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create FastAPI application."""
    service = AuthService(config=config, transport=transport)
    return service.app


if __name__ == "__main__":
    service = AuthService()
    service.run()
