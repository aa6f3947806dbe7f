"""Application settings for the security middleware."""
import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


# Maps HEADER_* settings onto the keys of the securityHeaders config section
HEADER_SETTING_KEYS = {
    "HEADER_CONTENT_SECURITY_POLICY": "contentSecurityPolicy",
    "HEADER_X_FRAME_OPTIONS": "xFrameOptions",
    "HEADER_X_XSS_PROTECTION": "xXSSProtection",
    "HEADER_STRICT_TRANSPORT_SECURITY": "strictTransportSecurity",
    "HEADER_X_CONTENT_TYPE_OPTIONS": "xContentTypeOptions",
    "HEADER_REFERRER_POLICY": "referrerPolicy",
    "HEADER_PERMISSIONS_POLICY": "permissionsPolicy",
    "HEADER_X_DOWNLOAD_OPTIONS": "xDownloadOptions",
    "HEADER_X_DNS_PREFETCH_CONTROL": "xDNSPrefetchControl",
}


class Settings(BaseSettings):
    """Application configuration from environment variables."""

    # Environment
    ENV: Literal["dev", "staging", "prod"] = "dev"
    SSL_ENABLED: bool = False  # HSTS is only sent when the endpoint serves TLS

    # Server
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MAX_REQUESTS: int = 60  # soft limit per window
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_BURST_LIMIT: Optional[int] = None  # defaults to 1.5x max requests
    RATE_LIMIT_BLOCK_MINUTES: int = 5
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: int = 300

    # CSRF Protection
    CSRF_TOKEN_HEADER_NAME: str = "X-CSRF-Token"
    CSRF_TOKEN_FORM_FIELD: str = "__CSRFToken__"
    CSRF_TOKEN_SESSION_KEY: str = "csrf_token"
    CSRF_PROTECTED_METHODS: str = '["POST", "PUT", "DELETE", "PATCH"]'
    CSRF_ROTATE_ON_USE: bool = False

    # Security headers (None keeps the built-in default, "" disables the header)
    HEADER_CONTENT_SECURITY_POLICY: Optional[str] = None
    HEADER_X_FRAME_OPTIONS: Optional[str] = None
    HEADER_X_XSS_PROTECTION: Optional[str] = None
    HEADER_STRICT_TRANSPORT_SECURITY: Optional[str] = None
    HEADER_X_CONTENT_TYPE_OPTIONS: Optional[str] = None
    HEADER_REFERRER_POLICY: Optional[str] = None
    HEADER_PERMISSIONS_POLICY: Optional[str] = None
    HEADER_X_DOWNLOAD_OPTIONS: Optional[str] = None
    HEADER_X_DNS_PREFETCH_CONTROL: Optional[str] = None

    # Optional JSON file with rateLimiter / csrfProtection / securityHeaders sections
    SECURITY_CONFIG_FILE: Optional[str] = None

    # Sessions
    SESSION_TIMEOUT_MINUTES: int = 30

    # Admin endpoints are disabled unless a key is set
    ADMIN_API_KEY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "text"] = "json"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"

    @model_validator(mode='after')
    def validate_rate_limits(self):
        """Reject rate limit values the limiter cannot work with."""
        if self.RATE_LIMIT_MAX_REQUESTS < 1:
            raise ValueError("RATE_LIMIT_MAX_REQUESTS must be at least 1")
        if self.RATE_LIMIT_WINDOW_SECONDS < 1:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be at least 1")
        if (
            self.RATE_LIMIT_BURST_LIMIT is not None
            and self.RATE_LIMIT_BURST_LIMIT < self.RATE_LIMIT_MAX_REQUESTS
        ):
            raise ValueError(
                "RATE_LIMIT_BURST_LIMIT must be greater than or equal to "
                "RATE_LIMIT_MAX_REQUESTS"
            )
        return self

    @field_validator('CSRF_PROTECTED_METHODS')
    @classmethod
    def validate_csrf_methods(cls, v: str) -> str:
        """Validate CSRF_PROTECTED_METHODS is a JSON list of method names."""
        try:
            methods = json.loads(v)
        except json.JSONDecodeError:
            methods = None

        if not isinstance(methods, list) or not all(isinstance(m, str) for m in methods):
            raise ValueError(
                "CSRF_PROTECTED_METHODS must be a JSON list of HTTP methods. "
                'Example: ["POST", "PUT", "DELETE", "PATCH"]'
            )
        return v

    @property
    def csrf_protected_methods_list(self) -> List[str]:
        """Parse CSRF protected methods from JSON string."""
        return json.loads(self.CSRF_PROTECTED_METHODS)

    def load_config_file(self) -> Dict[str, Any]:
        """
        Read SECURITY_CONFIG_FILE if one is configured.

        Raises:
            ValueError: If the file is missing or is not a JSON object
        """
        if not self.SECURITY_CONFIG_FILE:
            return {}

        path = Path(self.SECURITY_CONFIG_FILE)
        if not path.is_file():
            raise ValueError(f"SECURITY_CONFIG_FILE not found: {path}")

        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"SECURITY_CONFIG_FILE must contain a JSON object: {path}")
        return data

    def security_config(self) -> Dict[str, Any]:
        """
        Build the security pipeline configuration.

        Environment values form the base; sections from SECURITY_CONFIG_FILE
        are overlaid key by key.
        """
        rate_limiter: Dict[str, Any] = {
            "maxRequests": self.RATE_LIMIT_MAX_REQUESTS,
            "windowSeconds": self.RATE_LIMIT_WINDOW_SECONDS,
            "blockMinutes": self.RATE_LIMIT_BLOCK_MINUTES,
            "sweepIntervalSeconds": self.RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
        }
        if self.RATE_LIMIT_BURST_LIMIT is not None:
            rate_limiter["burstLimit"] = self.RATE_LIMIT_BURST_LIMIT

        csrf = {
            "tokenHeaderName": self.CSRF_TOKEN_HEADER_NAME,
            "tokenFormFieldName": self.CSRF_TOKEN_FORM_FIELD,
            "tokenSessionKey": self.CSRF_TOKEN_SESSION_KEY,
            "protectedMethods": self.csrf_protected_methods_list,
        }

        headers = {
            key: getattr(self, setting)
            for setting, key in HEADER_SETTING_KEYS.items()
            if getattr(self, setting) is not None
        }

        config = {
            "rateLimiter": rate_limiter,
            "csrfProtection": csrf,
            "securityHeaders": headers,
        }
        for section, values in self.load_config_file().items():
            if isinstance(values, dict) and section in config:
                config[section].update(values)
        return config


# Singleton settings instance
settings = Settings()
