"""
OIDC Bridge
===========

OpenID Connect relying party for an existing application: discovers the
identity provider, runs the PKCE authorization-code flow, reconciles the
returned claims with local users and issues the application's own session
token.

Packages:
    - auth: provider client, client cache, authorization flow, callback
      reconciliation, session tokens and routes
    - storage: configuration and identity persistence seams
"""

__version__ = "1.0.0"
