"""
Domain errors raised by the authorization and credential-issuance core.

Every error carries the HTTP status it maps to, a short machine-readable
``code`` and, for validation failures, the offending ``field``. The
``AuthHubError`` handler in ``main.py`` renders them; messages must never
contain plaintext secrets, signing keys, passwords or tokens.
"""

from typing import Any, Optional


class AuthHubError(Exception):
    """Base class for all domain errors."""

    status_code = 400
    code = "error"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}


class NotFound(AuthHubError):
    status_code = 404
    code = "not_found"


class Conflict(AuthHubError):
    """Uniqueness violation: role triple, service-model binding, config-method pair."""

    status_code = 409
    code = "conflict"


class InvalidReference(AuthHubError):
    """Cross-model edge or unknown foreign key."""

    status_code = 422
    code = "invalid_reference"


class InvalidDefault(AuthHubError):
    """A login page default method that is not both enabled and implemented."""

    status_code = 422
    code = "invalid_default"

    def __init__(self, message: str, field: Optional[str] = "default_method", **kwargs):
        super().__init__(message, field=field, **kwargs)


class ServiceNotConfigured(AuthHubError):
    """The service has no usable signing secret."""

    status_code = 503
    code = "service_not_configured"


class SystemServiceProtected(AuthHubError):
    status_code = 403
    code = "system_service"


class InvalidCredentials(AuthHubError):
    status_code = 401
    code = "invalid_credentials"


class InvalidServiceCredentials(AuthHubError):
    """A calling service presented an unknown service ID or the wrong secret."""

    status_code = 401
    code = "invalid_service_credentials"


class MethodNotImplemented(AuthHubError):
    status_code = 501
    code = "method_not_implemented"


class SecretDecryptionError(AuthHubError):
    """
    Stored secret could not be decrypted (tampered ciphertext, wrong master
    key, malformed envelope). Fatal configuration error for that service.
    """

    status_code = 500
    code = "secret_unavailable"


class TokenInvalid(AuthHubError):
    """A bearer token was rejected. ``reason`` distinguishes the cause."""

    status_code = 401
    code = "token_invalid"
    reason = "invalid"


class TokenExpired(TokenInvalid):
    reason = "expired"


class TokenMalformed(TokenInvalid):
    reason = "malformed"


class TokenWrongAudience(TokenInvalid):
    reason = "wrong_audience"
