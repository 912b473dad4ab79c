"""
Data Models Module

This module defines Pydantic models for request/response validation
and the domain records the OIDC core reads and writes.

Models are organized by functional area:
- Configuration models (stored OIDC configuration, public view, settings row)
- Identity models (claims returned by the provider, local users and auth records)
- Flow models (PKCE flow state, authorize/callback payloads, session tokens)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Lowercase and trim an email address for matching and storage."""
    return email.strip().lower()


# ============================================================================
# Configuration Models
# ============================================================================

OIDC_SETTING_ID = "oidc-config"

REQUIRED_WHEN_ENABLED = ("issuer_url", "client_id", "client_secret", "redirect_uri")


class OidcConfiguration(BaseModel):
    """
    The single active OIDC provider configuration.

    When ``enabled`` is true, ``issuer_url``, ``client_id``, ``client_secret``
    and ``redirect_uri`` must be non-empty; callers check this with
    ``missing_required_fields()`` before persisting.
    """
    enabled: bool = Field(default=False, description="Whether OIDC login is offered")
    issuer_url: str = Field(default="", description="Issuer URL used for metadata discovery")
    client_id: str = Field(default="", description="Client ID registered at the provider")
    client_secret: str = Field(default="", description="Client secret registered at the provider")
    redirect_uri: str = Field(default="", description="Redirect URI registered at the provider")
    scope: str = Field(default="openid email profile", description="Requested scopes")
    auto_provision: bool = Field(default=False, description="Create unknown users on first login")
    default_role: str = Field(default="user", description="Role given to provisioned users")
    provider_name: str = Field(default="oidc", description="Provider label stored on auth records")
    button_text: Optional[str] = Field(None, description="Login button caption")

    def missing_required_fields(self) -> List[str]:
        """Return the names of required connection fields that are blank."""
        return [name for name in REQUIRED_WHEN_ENABLED if not getattr(self, name).strip()]

    def public_view(self) -> "PublicOidcConfig":
        if not self.enabled:
            return PublicOidcConfig(enabled=False)
        return PublicOidcConfig(
            enabled=True,
            provider_name=self.provider_name or "OIDC",
            button_text=self.button_text or "Sign in with OIDC",
        )

    def masked(self) -> Dict[str, Any]:
        """Serialize for admin responses with the client secret hidden."""
        data = self.model_dump()
        data["client_secret"] = "********" if self.client_secret else ""
        return data


class PublicOidcConfig(BaseModel):
    """Configuration subset that is safe to show on the login page."""
    enabled: bool
    provider_name: Optional[str] = None
    button_text: Optional[str] = None


class SettingRecord(BaseModel):
    """Settings row holding the OIDC configuration under a fixed identifier."""
    id: str = OIDC_SETTING_ID
    name: str = "OIDC Configuration"
    description: str = "OpenID Connect authentication configuration"
    meta: OidcConfiguration
    modified_on: datetime = Field(default_factory=utcnow)


class DiscoveryResult(BaseModel):
    """Endpoints discovered for an issuer, returned by the configuration test."""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    end_session_endpoint: Optional[str] = None


# ============================================================================
# Identity Models
# ============================================================================

class IdentityClaims(BaseModel):
    """
    Identity claims resolved from an ID token or a userinfo response.

    ``nickname`` is taken from ``preferred_username`` first, then from the
    ``nickname`` claim.
    """
    sub: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "IdentityClaims":
        def text(key: str) -> Optional[str]:
            value = claims.get(key)
            if value is None or value == "":
                return None
            return str(value)

        return cls(
            sub=text("sub"),
            email=text("email"),
            name=text("name"),
            nickname=text("preferred_username") or text("nickname"),
            picture=text("picture"),
        )

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email or "")


class User(BaseModel):
    """Local user record."""
    id: int
    email: str
    name: str
    nickname: str = ""
    avatar: str = ""
    roles: List[str] = Field(default_factory=list)
    is_disabled: bool = False
    is_deleted: bool = False
    is_oidc: bool = False
    created_on: datetime = Field(default_factory=utcnow)
    modified_on: datetime = Field(default_factory=utcnow)


class AuthRecord(BaseModel):
    """Credential record for one (user, auth type) pair."""
    id: int
    user_id: int
    type: str
    secret: str = ""
    meta: Dict[str, Any] = Field(default_factory=dict)
    oidc_provider: Optional[str] = None
    oidc_sub: Optional[str] = None
    created_on: datetime = Field(default_factory=utcnow)
    modified_on: datetime = Field(default_factory=utcnow)


class ReconcileOutcome(BaseModel):
    """Result of mapping claims onto local records."""
    kind: Literal["updated", "provisioned"]
    user: User
    auth: AuthRecord


# ============================================================================
# Flow Models
# ============================================================================

class FlowState(BaseModel):
    """Per-attempt PKCE artifacts. Never stored server-side."""
    state: str
    nonce: str
    code_verifier: str
    code_challenge: str


class AuthorizationRequest(BaseModel):
    """Response of ``GET /authorize``; the caller keeps state/nonce/verifier."""
    url: str
    state: str
    nonce: str
    code_verifier: str


class CallbackRequest(BaseModel):
    """Body of ``POST /callback`` as echoed back by the browser."""
    code: Optional[str] = None
    state: Optional[str] = None
    code_verifier: Optional[str] = None
    redirect_uri: Optional[str] = None
    nonce: Optional[str] = None
    iss: Optional[str] = Field(None, description="Issuer from the authorization response, if the provider sent one")


class SessionToken(BaseModel):
    """Application session token issued after a successful login."""
    token: str
    expires: datetime


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
