"""Request-validation middleware: security headers, rate limiting and CSRF."""
__version__ = "0.1.0"
