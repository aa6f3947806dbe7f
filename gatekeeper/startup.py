"""Application startup validation."""
import logging
from typing import Optional

from gatekeeper.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def validate_settings(config: Optional[Settings] = None) -> None:
    """
    Validate settings at startup.

    Raises:
        ValueError: If the security configuration cannot be built
    """
    config = config or default_settings
    logger.info(f"Validating settings for ENV={config.ENV}")

    # Reads SECURITY_CONFIG_FILE and fails fast if it is missing or malformed
    config.security_config()

    if config.ENV == "prod":
        if not config.SSL_ENABLED:
            logger.warning(
                "SSL_ENABLED is false in production; Strict-Transport-Security will not be sent"
            )
        if not config.ADMIN_API_KEY:
            logger.info("ADMIN_API_KEY not set; admin endpoints are disabled")

    logger.info("✓ Settings validation passed")
