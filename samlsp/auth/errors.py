# samlsp/auth/errors.py
"""Error types raised by the SAML service provider."""


class ConfigurationError(Exception):
    """Invalid configuration detected while the application is being built."""


class ValidationError(Exception):
    """
    A SAML response was rejected.

    `reasons` holds the toolkit's error codes for logging; they are never
    shown to the user.
    """

    def __init__(self, message: str, reasons: list[str] | None = None):
        super().__init__(message)
        self.reasons = reasons or []


class AuthorizationDenied(Exception):
    """Assertions did not satisfy the condition guarding a route."""

    def __init__(self, condition):
        super().__init__(f"Failed auth: {condition}")
        self.condition = condition
