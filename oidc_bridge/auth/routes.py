"""
OIDC routes.

Public endpoints start and complete a login; admin endpoints edit and test
the provider configuration:

- GET  /oidc/config     : public subset of the configuration
- PUT  /oidc/config     : replace the configuration (settings:update)
- POST /oidc/test       : discover a candidate configuration without saving it (settings:update)
- GET  /oidc/authorize  : authorization URL plus state/nonce/code_verifier
- POST /oidc/callback   : exchange the code and return a session token
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..errors import ConfigurationError, DiscoveryError, InvalidRequestError
from ..models import (
    AuthorizationRequest,
    CallbackRequest,
    DiscoveryResult,
    OidcConfiguration,
    PublicOidcConfig,
    SessionToken,
)
from ..storage.config_store import ConfigStore
from .cache import ClientCache
from .flow import AuthorizationFlow
from .reconciler import CallbackReconciler
from .session import require_capability

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

oidc_router = APIRouter(
    prefix="/oidc",
    tags=["oidc"],
)


class OidcService:
    """The OIDC components one application instance shares across requests."""

    def __init__(
        self,
        config_store: ConfigStore,
        client_cache: ClientCache,
        flow: AuthorizationFlow,
        reconciler: CallbackReconciler,
    ):
        self.config_store = config_store
        self.client_cache = client_cache
        self.flow = flow
        self.reconciler = reconciler


def get_oidc_service(request: Request) -> OidcService:
    service = getattr(request.app.state, "oidc", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="OIDC service not initialized",
        )
    return service


# =============================================================================
# Configuration Endpoints
# =============================================================================

@oidc_router.get("/config", response_model=PublicOidcConfig, response_model_exclude_none=True)
async def get_config(service: OidcService = Depends(get_oidc_service)) -> PublicOidcConfig:
    """Public view of the configuration; never includes secrets."""
    config = await service.config_store.load()
    if config is None:
        return PublicOidcConfig(enabled=False)
    return config.public_view()


@oidc_router.put("/config")
async def update_config(
    config: OidcConfiguration,
    user: Dict[str, Any] = Depends(require_capability("settings:update")),
    service: OidcService = Depends(get_oidc_service),
) -> Dict[str, Any]:
    """
    Replace the OIDC configuration and drop the cached provider client.

    Returns:
        The stored settings record with the client secret masked
    """
    if config.enabled and config.missing_required_fields():
        raise ConfigurationError("Missing required OIDC configuration fields")

    record = await service.config_store.save(config)
    service.client_cache.invalidate()

    logger.info(
        "OIDC configuration updated",
        extra={"user_id": user.get("sub"), "enabled": config.enabled},
    )
    return {
        "id": record.id,
        "name": record.name,
        "description": record.description,
        "meta": record.meta.masked(),
        "modified_on": record.modified_on,
    }


@oidc_router.post("/test", response_model=DiscoveryResult)
async def test_config(
    candidate: OidcConfiguration,
    user: Dict[str, Any] = Depends(require_capability("settings:update")),
    service: OidcService = Depends(get_oidc_service),
) -> DiscoveryResult:
    """
    Discover a candidate configuration without persisting it.

    Returns:
        The endpoints the issuer advertises

    Raises:
        ConfigurationError: 400 with the failure reason
    """
    missing = candidate.missing_required_fields()
    if missing:
        raise ConfigurationError(f"Missing required OIDC configuration fields: {', '.join(missing)}")

    try:
        client = await service.client_cache.probe(candidate)
    except DiscoveryError as e:
        logger.warning(f"OIDC configuration test failed: {e}")
        raise ConfigurationError(f"OIDC configuration test failed: {e.message}") from e

    return client.describe()


# =============================================================================
# Login Endpoints
# =============================================================================

@oidc_router.get("/authorize", response_model=AuthorizationRequest)
async def authorize(service: OidcService = Depends(get_oidc_service)) -> AuthorizationRequest:
    """
    Start an authorization-code flow.

    The caller must keep state, nonce and code_verifier until the callback.
    """
    return await service.flow.begin()


@oidc_router.post("/callback", response_model=SessionToken)
async def callback(
    body: CallbackRequest,
    service: OidcService = Depends(get_oidc_service),
) -> SessionToken:
    """Exchange the authorization code and return an application session token."""
    if not body.code or not body.code_verifier or not body.redirect_uri:
        raise InvalidRequestError("Missing required callback parameters")

    return await service.reconciler.handle_callback(
        code=body.code,
        code_verifier=body.code_verifier,
        redirect_uri=body.redirect_uri,
        nonce=body.nonce,
        iss=body.iss,
    )
