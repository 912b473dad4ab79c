"""
Authorization flow initiation.

Generates the per-attempt PKCE artifacts and the provider authorization URL.
The server keeps none of it: the caller stores ``state``, ``nonce`` and
``code_verifier`` (e.g. in session storage) and echoes them on callback.
"""

import base64
import hashlib
import logging
import secrets

from ..errors import ConfigurationError, DiscoveryError
from ..models import AuthorizationRequest, FlowState
from .cache import ClientCache

logger = logging.getLogger(__name__)

# 32 random bytes = 256 bits per token
TOKEN_BYTES = 32


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_token() -> str:
    """Return a URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def new_flow_state() -> FlowState:
    code_verifier = generate_token()
    return FlowState(
        state=generate_token(),
        nonce=generate_token(),
        code_verifier=code_verifier,
        code_challenge=generate_code_challenge(code_verifier),
    )


# =============================================================================
# Authorization Flow
# =============================================================================

class AuthorizationFlow:
    def __init__(self, client_cache: ClientCache):
        self._client_cache = client_cache

    async def begin(self) -> AuthorizationRequest:
        """
        Start a PKCE authorization-code flow.

        Returns:
            The authorization URL plus the state, nonce and code verifier the
            caller must keep for the callback

        Raises:
            ConfigurationError: If no usable provider client is available
        """
        try:
            client = await self._client_cache.get_client()
        except (ConfigurationError, DiscoveryError) as e:
            logger.error(f"Failed to get OIDC authorization URL: {e}")
            raise ConfigurationError("OIDC is not properly configured") from e

        flow = new_flow_state()
        url = client.authorization_url({
            "response_type": "code",
            "scope": client.config.scope or "openid email profile",
            "code_challenge": flow.code_challenge,
            "code_challenge_method": "S256",
            "state": flow.state,
            "nonce": flow.nonce,
            "redirect_uri": client.config.redirect_uri,
        })

        return AuthorizationRequest(
            url=url,
            state=flow.state,
            nonce=flow.nonce,
            code_verifier=flow.code_verifier,
        )
