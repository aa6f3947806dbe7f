"""FastAPI application entrypoint wired with the security pipeline."""
from contextlib import asynccontextmanager
import hmac
import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from gatekeeper import __version__
from gatekeeper.http import GuardRequest, GuardResponse
from gatekeeper.middleware import (
    RequestLoggingMiddleware,
    SecurityMiddleware,
    SecurityPipeline,
    setup_logging
)
from gatekeeper.sessions import InMemorySessionStore
from gatekeeper.settings import Settings, settings as default_settings
from gatekeeper.startup import validate_settings

logger = logging.getLogger(__name__)


class SessionCreate(BaseModel):
    user_id: str = Field(min_length=1)


def create_app(
    config: Optional[Settings] = None,
    session_store: Optional[InMemorySessionStore] = None
) -> FastAPI:
    """
    Build the application.

    The security pipeline and session store are created here and shared
    through ``app.state``; their background workers run for the lifetime of
    the app.
    """
    config = config or default_settings
    session_store = session_store or InMemorySessionStore(config.SESSION_TIMEOUT_MINUTES)
    pipeline = SecurityPipeline.from_config(
        config.security_config(),
        session_store,
        transport_encrypted=config.SSL_ENABLED,
        rate_limit_enabled=config.RATE_LIMIT_ENABLED,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Validate settings, then run background cleanup until shutdown."""
        logger.info(f"Starting application in {config.ENV} environment")

        try:
            validate_settings(config)
        except Exception as e:
            logger.error(f"Startup validation failed: {e}")
            logger.error("Application will not start")
            raise

        pipeline.start()
        session_store.start()

        yield

        logger.info("Shutting down application")
        session_store.stop()
        pipeline.stop()

    app = FastAPI(
        title="Gatekeeper",
        description="Request validation: security headers, rate limiting and CSRF protection",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = config
    app.state.pipeline = pipeline
    app.state.session_store = session_store

    # Add middleware (order matters - last added is executed first)
    # 1. Security pipeline
    app.add_middleware(
        SecurityMiddleware,
        pipeline=pipeline,
        rotate_tokens=config.CSRF_ROTATE_ON_USE
    )

    # 2. Logging (outermost - logs everything, including denials)
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/health")
    async def health():
        """Basic health check - process is alive."""
        return {"status": "healthy"}

    @app.post("/sessions", status_code=status.HTTP_201_CREATED)
    async def create_session(payload: SessionCreate, response: Response):
        """Open a session and issue its first CSRF token."""
        session = session_store.create_session()
        session.set_value("user_id", payload.user_id)
        token = pipeline.csrf_guard.issue_token(session)

        response.headers[pipeline.csrf_guard.config.token_header_name] = token
        return {
            "session_id": session.id,
            "user_id": payload.user_id,
            "csrf_token": token,
        }

    @app.post("/csrf/refresh")
    async def refresh_csrf_token(request: Request, response: Response):
        """
        Rotate the CSRF token of the calling session.

        The request passes through CSRF validation first, so the current
        token must be presented.
        """
        guard_request = await GuardRequest.from_starlette(request)
        guard_response = GuardResponse()

        # Without both identifiers the middleware skipped CSRF validation
        if not pipeline.is_authenticated(guard_request):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated"
            )

        token = pipeline.csrf_guard.refresh_token(guard_request, guard_response)
        if token is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found"
            )

        guard_response.copy_headers_to(response)
        return {"success": True, "csrf_token": token}

    @app.delete("/admin/rate-limits/{client_id}")
    async def reset_rate_limit(
        client_id: str,
        x_admin_key: Optional[str] = Header(None)
    ):
        """Clear rate limit tracking (and any block) for one client."""
        if not config.ADMIN_API_KEY:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

        # compare_digest rejects non-ASCII str, so compare bytes
        if not x_admin_key or not hmac.compare_digest(
            x_admin_key.encode("utf-8"),
            config.ADMIN_API_KEY.encode("utf-8")
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin access required"
            )

        pipeline.rate_limiter.reset(client_id)
        return {"success": True, "client_id": client_id}

    return app


# Configure logging before the module-level app is built
setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on {default_settings.API_HOST}:{default_settings.API_PORT}")
    uvicorn.run(
        "gatekeeper.main:app",
        host=default_settings.API_HOST,
        port=default_settings.API_PORT,
        log_level=default_settings.LOG_LEVEL.lower()
    )
