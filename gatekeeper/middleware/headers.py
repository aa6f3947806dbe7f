"""Security response headers."""
import logging
import threading
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

from gatekeeper.http import GuardResponse

logger = logging.getLogger("gatekeeper.headers")


@dataclass(frozen=True)
class SecurityHeaderSet:
    """Header values to emit. An empty string disables that header."""
    content_security_policy: str = (
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; object-src 'none'; frame-ancestors 'none';"
    )
    x_frame_options: str = "SAMEORIGIN"
    x_xss_protection: str = "1; mode=block"
    strict_transport_security: str = "max-age=31536000; includeSubDomains"
    x_content_type_options: str = "nosniff"
    referrer_policy: str = "strict-origin-when-cross-origin"
    permissions_policy: str = "geolocation=(), microphone=(), camera=()"
    x_download_options: str = "noopen"
    x_dns_prefetch_control: str = "off"


# Field name -> (config key, response header name), in emission order
HEADER_SLOTS = {
    "content_security_policy": ("contentSecurityPolicy", "Content-Security-Policy"),
    "x_frame_options": ("xFrameOptions", "X-Frame-Options"),
    "x_xss_protection": ("xXSSProtection", "X-XSS-Protection"),
    "strict_transport_security": ("strictTransportSecurity", "Strict-Transport-Security"),
    "x_content_type_options": ("xContentTypeOptions", "X-Content-Type-Options"),
    "referrer_policy": ("referrerPolicy", "Referrer-Policy"),
    "permissions_policy": ("permissionsPolicy", "Permissions-Policy"),
    "x_download_options": ("xDownloadOptions", "X-Download-Options"),
    "x_dns_prefetch_control": ("xDNSPrefetchControl", "X-DNS-Prefetch-Control"),
}

HSTS_FIELD = "strict_transport_security"


class HeaderPolicy:
    """Applies a fixed set of security headers to every response."""

    def __init__(self, headers: Optional[SecurityHeaderSet] = None):
        self.headers = headers or SecurityHeaderSet()
        self._hsts_withheld_logged = False
        self._lock = threading.Lock()

    @classmethod
    def from_mapping(cls, config: Optional[Mapping[str, Any]]) -> "HeaderPolicy":
        """
        Build a policy from a securityHeaders config section.

        Keys use the camelCase names (``xFrameOptions`` and so on); missing
        keys keep their defaults.
        """
        if not config:
            return cls()

        overrides = {
            field_name: str(config[key])
            for field_name, (key, _) in HEADER_SLOTS.items()
            if config.get(key) is not None
        }
        logger.debug(
            "Security headers loaded from config",
            extra={'extra_fields': {'overridden': sorted(overrides)}}
        )
        return cls(replace(SecurityHeaderSet(), **overrides))

    def apply_to(self, response: GuardResponse, transport_encrypted: bool) -> None:
        """Set every configured header on the response."""
        for slot in fields(self.headers):
            value = getattr(self.headers, slot.name)
            if not value:
                continue

            if slot.name == HSTS_FIELD and not transport_encrypted:
                self._log_hsts_withheld()
                continue

            response.headers[HEADER_SLOTS[slot.name][1]] = value

    def _log_hsts_withheld(self) -> None:
        with self._lock:
            first = not self._hsts_withheld_logged
            self._hsts_withheld_logged = True

        if not first:
            logger.debug("HSTS withheld: transport is not encrypted")
            return
        logger.warning(
            "HSTS is configured but TLS is disabled for this endpoint. "
            "Strict-Transport-Security will NOT be sent."
        )
