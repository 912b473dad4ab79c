"""
OIDC Error Taxonomy
===================

Every failure raised by the OIDC core derives from ``OidcError``. Each class
carries the HTTP status the boundary layer should answer with and a short
machine-readable ``error_code``; the FastAPI exception handler registered in
``oidc_bridge.main`` renders both.

Errors are raised where they are detected and propagate unchanged. The only
local recoveries are the single ``iss``-missing fallback grant
(``IssuerMissingError``) and the duplicate-insert race during provisioning
(``DuplicateUserError``).
"""

from typing import Optional


class OidcError(Exception):
    """Base class for all OIDC bridge errors."""

    status_code: int = 500
    error_code: str = "oidc_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(OidcError):
    """OIDC is disabled, missing, or its configuration cannot be used."""

    status_code = 400
    error_code = "configuration_error"


class InvalidRequestError(OidcError):
    """The request is missing parameters the operation needs."""

    status_code = 400
    error_code = "invalid_request"


class DiscoveryError(OidcError):
    """The issuer metadata could not be fetched or is invalid."""

    status_code = 502
    error_code = "discovery_error"


class ExchangeError(OidcError):
    """
    Token endpoint or userinfo call failed.

    When the provider answered with an OAuth error body, ``error`` holds the
    provider's error code (e.g. ``invalid_grant``) and the status is 400.
    Transport failures keep the default 502.
    """

    status_code = 502
    error_code = "exchange_error"

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        if status_code is None and error:
            status_code = 400
        super().__init__(message, status_code=status_code)
        self.error = error
        self.error_description = error_description


class IssuerMissingError(ExchangeError):
    """The authorization response lacked the ``iss`` parameter the provider advertises."""

    error_code = "iss_missing"


class AuthError(OidcError):
    """The login attempt was rejected (nonce, code, provisioning policy)."""

    status_code = 401
    error_code = "auth_error"


class ClaimsError(OidcError):
    """The provider did not return usable identity claims."""

    status_code = 400
    error_code = "claims_error"


class DuplicateUserError(OidcError):
    """A user with the same normalized email already exists."""

    status_code = 409
    error_code = "duplicate_user"


__all__ = [
    "OidcError",
    "ConfigurationError",
    "InvalidRequestError",
    "DiscoveryError",
    "ExchangeError",
    "IssuerMissingError",
    "AuthError",
    "ClaimsError",
    "DuplicateUserError",
]
