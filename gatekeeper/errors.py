"""Errors raised while wiring the security middleware."""


class ConfigurationError(Exception):
    """A required collaborator or setting is missing at construction time."""
