"""CSRF protection bound to server-side sessions."""
import hmac
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Mapping, Optional

from fastapi import status

from gatekeeper.errors import ConfigurationError
from gatekeeper.http import GuardRequest, GuardResponse
from gatekeeper.sessions import SessionData, SessionStore

logger = logging.getLogger("gatekeeper.csrf")

DEFAULT_PROTECTED_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})

SESSION_NOT_FOUND_ERROR = "Session not found for CSRF validation."
INVALID_SESSION_ERROR = "Invalid or expired session for CSRF validation."
INVALID_TOKEN_ERROR = "Invalid or missing CSRF token."


def normalize_methods(methods: Iterable[str]) -> FrozenSet[str]:
    """Uppercase and trim method names, dropping empty entries."""
    return frozenset(m.strip().upper() for m in methods if m and m.strip())


@dataclass(frozen=True)
class CSRFConfig:
    """Where tokens travel and which methods need them."""
    token_header_name: str = "X-CSRF-Token"
    token_form_field_name: str = "__CSRFToken__"
    token_session_key: str = "csrf_token"
    protected_methods: FrozenSet[str] = DEFAULT_PROTECTED_METHODS

    def __post_init__(self):
        object.__setattr__(self, "protected_methods", normalize_methods(self.protected_methods))

    @classmethod
    def from_mapping(cls, config: Optional[Mapping[str, Any]]) -> "CSRFConfig":
        """Build a config from a csrfProtection section."""
        if not config:
            logger.warning("No CSRF configuration provided, using default values.")
            return cls()

        defaults = cls()
        methods = config.get("protectedMethods")
        if methods is not None and (
            not isinstance(methods, (list, tuple))
            or not all(isinstance(m, str) for m in methods)
        ):
            raise ValueError(
                f"protectedMethods must be a list of HTTP method names, got {methods!r}"
            )

        return cls(
            token_header_name=config.get("tokenHeaderName") or defaults.token_header_name,
            token_form_field_name=config.get("tokenFormFieldName") or defaults.token_form_field_name,
            token_session_key=config.get("tokenSessionKey") or defaults.token_session_key,
            protected_methods=(
                frozenset(methods)
                if methods is not None
                else DEFAULT_PROTECTED_METHODS
            ),
        )


class CSRFGuard:
    """Issues and checks per-session anti-forgery tokens."""

    def __init__(self, session_store: SessionStore, config: Optional[CSRFConfig] = None):
        if session_store is None:
            raise ConfigurationError("CSRFGuard requires a session store")

        self.session_store = session_store
        self.config = config or CSRFConfig()
        logger.info(
            "CSRF protection created",
            extra={'extra_fields': {
                'header': self.config.token_header_name,
                'form_field': self.config.token_form_field_name,
                'session_key': self.config.token_session_key,
                'protected_methods': sorted(self.config.protected_methods),
            }}
        )

    def method_requires_protection(self, method: str) -> bool:
        return (method or "").upper() in self.config.protected_methods

    def should_protect(self, method: str, authenticated: bool) -> bool:
        """Only authenticated, state-changing requests carry a token."""
        return authenticated and self.method_requires_protection(method)

    @staticmethod
    def generate_token(session_id: str) -> str:
        """
        Generate a new CSRF token for a session.

        The token is a SHA-256 digest over a fresh UUID, the session ID and
        independent random bytes, so it differs on every call and does not
        reveal the session ID.
        """
        material = (
            str(uuid.uuid4()).encode("utf-8")
            + session_id.encode("utf-8")
            + secrets.token_bytes(16)
        )
        return hashlib.sha256(material).hexdigest()

    def get_token_from_request(self, request: GuardRequest) -> str:
        """Extract CSRF token from the header, falling back to a url-encoded form field."""
        token = request.headers.get(self.config.token_header_name, "")
        if token:
            return token

        if request.is_form_urlencoded:
            return request.param(self.config.token_form_field_name)
        return ""

    def validate(self, request: GuardRequest, response: GuardResponse, authenticated: bool) -> bool:
        """
        Validate the CSRF token of a request.

        Denials are written to ``response`` as a 403 JSON payload.

        Returns:
            True if the request may proceed
        """
        if not self.method_requires_protection(request.method):
            return True

        if not authenticated:
            logger.debug(f"CSRF check skipped for unauthenticated {request.method} {request.path}")
            return True

        extra = {
            'request_id': request.request_id,
            'extra_fields': {'path': request.path, 'method': request.method},
        }

        session_id = request.param("session_id")
        if not session_id:
            logger.warning(f"CSRF: no session_id on {request.path}", extra=extra)
            response.deny(status.HTTP_403_FORBIDDEN, SESSION_NOT_FOUND_ERROR)
            return False

        session = self.session_store.get_session_by_id(session_id)
        if session is None:
            logger.warning(f"CSRF: session not found or expired on {request.path}", extra=extra)
            response.deny(status.HTTP_403_FORBIDDEN, INVALID_SESSION_ERROR)
            return False

        expected = session.get_value(self.config.token_session_key)
        received = self.get_token_from_request(request)

        if not expected or not received or not self._tokens_match(expected, received):
            logger.warning(
                f"CSRF token missing or invalid for {request.path}",
                extra={
                    'request_id': request.request_id,
                    'extra_fields': {
                        **extra['extra_fields'],
                        'has_expected': bool(expected),
                        'has_received': bool(received),
                    }
                }
            )
            response.deny(status.HTTP_403_FORBIDDEN, INVALID_TOKEN_ERROR)
            return False

        logger.debug(f"CSRF token validated for {request.method} {request.path}")
        return True

    def issue_token(self, session: SessionData) -> str:
        """Store a fresh token on an already resolved session."""
        token = self.generate_token(session.id)
        session.set_value(self.config.token_session_key, token)
        return token

    def refresh_token(self, request: GuardRequest, response: GuardResponse) -> Optional[str]:
        """
        Rotate the token of the request's session and expose it in a response header.

        Returns:
            The new token, or None when no session could be resolved
        """
        session_id = request.param("session_id")
        if not session_id:
            return None

        session = self.session_store.get_session_by_id(session_id)
        if session is None:
            return None

        token = self.issue_token(session)
        response.headers[self.config.token_header_name] = token
        logger.debug(f"CSRF token refreshed, header {self.config.token_header_name}")
        return token

    @staticmethod
    def _tokens_match(expected: str, received: str) -> bool:
        # compare_digest is constant time and treats differing lengths as unequal
        return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
