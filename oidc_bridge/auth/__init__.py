"""
Authentication Package

This package implements the OpenID Connect relying party:

- provider: issuer discovery, token endpoint, ID token verification, userinfo
- cache: single-slot provider client cache keyed by configuration fingerprint
- flow: PKCE authorization URL generation
- reconciler: code exchange and mapping of claims onto local users
- session: application session JWTs and admin capability checks
- routes: public and admin OIDC endpoints

The login flow:
1. Client calls /oidc/authorize and keeps state, nonce and code_verifier
2. User authenticates with the identity provider
3. Client posts the code and the kept values to /oidc/callback
4. The service exchanges the code, reconciles the user and issues a session JWT
"""

from .routes import OidcService, oidc_router

__all__ = [
    "OidcService",
    "oidc_router",
]
