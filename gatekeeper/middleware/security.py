"""Security pipeline combining headers, rate limiting and CSRF checks."""
import logging
import time
from typing import Any, Callable, Mapping, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from gatekeeper.http import GuardRequest, GuardResponse
from gatekeeper.middleware.csrf import CSRFConfig, CSRFGuard
from gatekeeper.middleware.headers import HeaderPolicy
from gatekeeper.middleware.rate_limit import RateLimiter, RateLimiterConfig
from gatekeeper.sessions import SessionStore

logger = logging.getLogger("gatekeeper.security")


class SecurityPipeline:
    """
    Decide whether a request may reach the application.

    Order: security headers (always), rate limiting, CSRF. The first check
    that denies writes its error into the response and stops the pipeline.
    """

    def __init__(
        self,
        header_policy: HeaderPolicy,
        rate_limiter: RateLimiter,
        csrf_guard: CSRFGuard,
        transport_encrypted: bool = False,
        rate_limit_enabled: bool = True
    ):
        self.header_policy = header_policy
        self.rate_limiter = rate_limiter
        self.csrf_guard = csrf_guard
        self.transport_encrypted = transport_encrypted
        self.rate_limit_enabled = rate_limit_enabled

    @classmethod
    def from_config(
        cls,
        config: Optional[Mapping[str, Any]],
        session_store: SessionStore,
        transport_encrypted: bool = False,
        rate_limit_enabled: bool = True,
        clock: Optional[Callable[[], float]] = None
    ) -> "SecurityPipeline":
        """
        Build the pipeline from a config mapping.

        Recognised sections are ``rateLimiter``, ``csrfProtection`` and
        ``securityHeaders``; absent sections fall back to defaults.
        """
        config = config or {}
        limiter_config = RateLimiterConfig.from_mapping(config.get("rateLimiter"))
        rate_limiter = RateLimiter(limiter_config, clock=clock or time.time)

        pipeline = cls(
            header_policy=HeaderPolicy.from_mapping(config.get("securityHeaders")),
            rate_limiter=rate_limiter,
            csrf_guard=CSRFGuard(session_store, CSRFConfig.from_mapping(config.get("csrfProtection"))),
            transport_encrypted=transport_encrypted,
            rate_limit_enabled=rate_limit_enabled,
        )
        logger.info(
            "Security pipeline created",
            extra={'extra_fields': {
                'transport_encrypted': transport_encrypted,
                'rate_limit_enabled': rate_limit_enabled,
            }}
        )
        return pipeline

    @staticmethod
    def is_authenticated(request: GuardRequest) -> bool:
        """A request counts as authenticated when it names both a user and a session."""
        return bool(request.param("user_id")) and bool(request.param("session_id"))

    def validate(self, request: Optional[GuardRequest], response: Optional[GuardResponse]) -> bool:
        """
        Run every check against one request.

        Returns:
            True if the request may proceed; on False the response already
            holds the error to send back.
        """
        if request is None or response is None:
            logger.error("Security validation called without a request or response")
            return False

        self.header_policy.apply_to(response, self.transport_encrypted)

        extra = {
            'request_id': request.request_id,
            'extra_fields': {
                'client_ip': request.client_host,
                'method': request.method,
                'path': request.path,
            }
        }

        if self.rate_limit_enabled and not self.rate_limiter.check(
            request.client_host, response, request_id=request.request_id
        ):
            logger.warning(
                f"Request from {request.client_host} to {request.path} blocked by rate limiter",
                extra=extra
            )
            return False

        authenticated = self.is_authenticated(request)
        if self.csrf_guard.should_protect(request.method, authenticated):
            if not self.csrf_guard.validate(request, response, authenticated):
                logger.warning(
                    f"CSRF validation failed for {request.method} {request.path} "
                    f"from {request.client_host}",
                    extra=extra
                )
                return False

        logger.debug(f"Request {request.method} {request.path} passed security checks", extra=extra)
        return True

    def start(self) -> None:
        self.rate_limiter.start()

    def stop(self, timeout: float = 5.0) -> bool:
        """Stop background work; returns once the sweeper has exited."""
        return self.rate_limiter.stop(timeout)

    def __enter__(self) -> "SecurityPipeline":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class SecurityMiddleware(BaseHTTPMiddleware):
    """Run the security pipeline in front of every request."""

    def __init__(self, app: ASGIApp, pipeline: SecurityPipeline, rotate_tokens: bool = False):
        super().__init__(app)
        self.pipeline = pipeline
        self.rotate_tokens = rotate_tokens

    async def dispatch(self, request: Request, call_next) -> Response:
        """Validate the request, then pass it on or return the denial."""
        guard_request = await GuardRequest.from_starlette(request)
        guard_response = GuardResponse()

        if not self.pipeline.validate(guard_request, guard_response):
            return guard_response.to_response()

        response = await call_next(request)

        csrf_guard = self.pipeline.csrf_guard
        if (
            self.rotate_tokens
            and response.status_code < 400
            and csrf_guard.config.token_header_name not in response.headers
            and csrf_guard.should_protect(
                guard_request.method,
                self.pipeline.is_authenticated(guard_request)
            )
        ):
            csrf_guard.refresh_token(guard_request, guard_response)

        guard_response.copy_headers_to(response)
        return response
