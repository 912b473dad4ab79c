"""
OIDC callback handling.

A callback moves through these stages::

    RECEIVED -> EXCHANGED -> CLAIMS_RESOLVED -> RECONCILED -> TOKENIZED

and any stage may fail with one of the errors in ``oidc_bridge.errors``.

Reconciliation maps the provider's claims onto local records by normalized
email. An existing user is updated in place (``reconcile_existing_user``);
an unknown one is created only when auto-provisioning is enabled
(``provision_new_user``). Both paths upsert the user's single OIDC auth
record, and all writes of one callback share a repository transaction.
"""

import hashlib
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import (
    AuthError,
    ClaimsError,
    DuplicateUserError,
    ExchangeError,
    IssuerMissingError,
    OidcError,
)
from ..models import (
    AuthRecord,
    IdentityClaims,
    OidcConfiguration,
    ReconcileOutcome,
    SessionToken,
    User,
)
from ..storage.repository import IdentityRepository
from .cache import ClientCache
from .provider import ProviderClient, TokenSet
from .session import SessionMinter

logger = logging.getLogger(__name__)

OIDC_AUTH_TYPE = "oidc"

GRAVATAR_URL = "https://www.gravatar.com/avatar/"


class CallbackStage(str, Enum):
    RECEIVED = "received"
    EXCHANGED = "exchanged"
    CLAIMS_RESOLVED = "claims_resolved"
    RECONCILED = "reconciled"
    TOKENIZED = "tokenized"


def default_avatar(email: str) -> str:
    """Gravatar URL for an email, falling back to the mystery-person image."""
    digest = hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()
    return f"{GRAVATAR_URL}{digest}?default=mm"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class CallbackReconciler:
    def __init__(
        self,
        client_cache: ClientCache,
        repository: IdentityRepository,
        session_minter: SessionMinter,
    ):
        self._client_cache = client_cache
        self._repository = repository
        self._session_minter = session_minter

    async def handle_callback(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        nonce: Optional[str] = None,
        iss: Optional[str] = None,
    ) -> SessionToken:
        """
        Complete a login: exchange the code, resolve claims, reconcile the
        local user and mint an application session token.

        Args:
            code: Authorization code from the provider
            code_verifier: PKCE verifier issued by ``AuthorizationFlow.begin``
            redirect_uri: Redirect URI used for the authorization request
            nonce: Nonce issued by ``begin``; checked against the ID token when given
            iss: Issuer parameter from the authorization response, if any

        Returns:
            Session token for the resolved user

        Raises:
            ConfigurationError, DiscoveryError: If no provider client is available
            AuthError: Invalid nonce, invalid/expired code, or provisioning refused
            ExchangeError: Token or userinfo call failed
            ClaimsError: The provider did not supply an email
        """
        stage = CallbackStage.RECEIVED
        try:
            client = await self._client_cache.get_client()

            token_set = await self.exchange(client, code, code_verifier, redirect_uri, iss)
            stage = CallbackStage.EXCHANGED

            claims = await self.resolve_claims(client, token_set, nonce)
            stage = CallbackStage.CLAIMS_RESOLVED

            outcome = await self.reconcile(claims, client.config)
            stage = CallbackStage.RECONCILED

            session = self._session_minter.mint_token(outcome.user)
            stage = CallbackStage.TOKENIZED
        except OidcError as e:
            logger.error(
                f"OIDC callback error: {e}",
                extra={"stage": stage.value, "error_code": e.error_code},
            )
            raise

        logger.info(
            "OIDC login completed",
            extra={"user_id": outcome.user.id, "outcome": outcome.kind, "stage": stage.value},
        )
        return session

    # =========================================================================
    # RECEIVED -> EXCHANGED
    # =========================================================================

    async def exchange(
        self,
        client: ProviderClient,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        iss: Optional[str] = None,
    ) -> TokenSet:
        """
        Redeem the authorization code.

        Raises:
            AuthError: If the provider reports ``invalid_grant``
            ExchangeError: For any other exchange failure
        """
        try:
            return await self._redeem(client, code, code_verifier, redirect_uri, iss)
        except ExchangeError as e:
            if e.error == "invalid_grant":
                raise AuthError("invalid or expired code") from e
            raise

    async def _redeem(
        self,
        client: ProviderClient,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        iss: Optional[str],
    ) -> TokenSet:
        try:
            return await client.callback(
                redirect_uri, {"code": code, "iss": iss}, code_verifier=code_verifier
            )
        except IssuerMissingError:
            logger.warning("iss missing from authorization response, attempting direct token exchange")

        return await client.grant({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        })

    # =========================================================================
    # EXCHANGED -> CLAIMS_RESOLVED
    # =========================================================================

    async def resolve_claims(
        self,
        client: ProviderClient,
        token_set: TokenSet,
        nonce: Optional[str] = None,
    ) -> IdentityClaims:
        """
        Check the nonce and pick the claims to reconcile.

        ID token claims are used when they carry an email; otherwise the
        userinfo endpoint is asked with the access token.

        Raises:
            AuthError: If ``nonce`` does not match the ID token
            ClaimsError: If no email can be obtained
        """
        id_claims = token_set.claims()
        if nonce and id_claims.get("nonce") != nonce:
            raise AuthError("invalid nonce")

        if id_claims.get("email"):
            raw: Dict[str, Any] = id_claims
        else:
            if not token_set.access_token:
                raise ClaimsError("OIDC provider returned no email claim and no access token")
            raw = dict(await client.userinfo(token_set.access_token))
            id_sub = id_claims.get("sub")
            if id_sub and raw.get("sub") and raw["sub"] != id_sub:
                raise ClaimsError("userinfo subject does not match the ID token subject")
            raw.setdefault("sub", id_sub)

        claims = IdentityClaims.from_claims(raw)
        if not claims.normalized_email:
            raise ClaimsError("OIDC provider did not supply an email address")

        logger.info(
            "OIDC user authenticated",
            extra={"sub": claims.sub, "email": claims.normalized_email},
        )
        return claims

    # =========================================================================
    # CLAIMS_RESOLVED -> RECONCILED
    # =========================================================================

    async def reconcile(self, claims: IdentityClaims, config: OidcConfiguration) -> ReconcileOutcome:
        """
        Update or create the local user for ``claims`` in one transaction.

        A duplicate-email failure on insert means a concurrent login created
        the user first; the update path is then run against that user.
        """
        email = claims.normalized_email
        try:
            async with self._repository.transaction():
                user = await self._repository.find_user_by_email(email)
                if user is not None:
                    return await self.reconcile_existing_user(user, claims, config)
                return await self.provision_new_user(claims, config)
        except DuplicateUserError as race:
            logger.info(f"User {email} was created concurrently, updating instead")
            async with self._repository.transaction():
                user = await self._repository.find_user_by_email(email)
                if user is None:
                    raise race
                return await self.reconcile_existing_user(user, claims, config)

    async def reconcile_existing_user(
        self,
        user: User,
        claims: IdentityClaims,
        config: OidcConfiguration,
    ) -> ReconcileOutcome:
        if user.is_disabled:
            raise AuthError("user is disabled")

        logger.info(f"Updating existing user for OIDC login: {user.id}")
        user = await self._repository.patch_user(user.id, {
            "is_oidc": True,
            "name": claims.name or user.name,
            "nickname": claims.nickname or user.nickname,
            "avatar": claims.picture or default_avatar(claims.normalized_email),
        })

        auth = await self._repository.find_auth_by_user_and_type(user.id, OIDC_AUTH_TYPE)
        if auth is not None:
            auth = await self._repository.patch_auth(auth.id, {
                "oidc_provider": config.provider_name or "oidc",
                "oidc_sub": claims.sub,
                "meta": {
                    "email": claims.email,
                    "name": claims.name,
                    "updated_at": _timestamp(),
                },
            })
        else:
            auth = await self._insert_auth(user, claims, config)

        return ReconcileOutcome(kind="updated", user=user, auth=auth)

    async def provision_new_user(
        self,
        claims: IdentityClaims,
        config: OidcConfiguration,
    ) -> ReconcileOutcome:
        """
        Raises:
            AuthError: If auto-provisioning is disabled
            DuplicateUserError: If the email was taken concurrently
        """
        if not config.auto_provision:
            raise AuthError("user does not exist and auto-provisioning is disabled")

        email = claims.normalized_email
        logger.info(f"Creating new user from OIDC login: {email}")

        user = await self._repository.insert_user({
            "email": email,
            "name": claims.name or email,
            "nickname": claims.nickname or email.split("@")[0],
            "avatar": claims.picture or default_avatar(email),
            "is_disabled": False,
            "is_oidc": True,
            "roles": [config.default_role or "user"],
        })
        auth = await self._insert_auth(user, claims, config)

        logger.info(f"Created new user: {user.id}")
        return ReconcileOutcome(kind="provisioned", user=user, auth=auth)

    async def _insert_auth(
        self,
        user: User,
        claims: IdentityClaims,
        config: OidcConfiguration,
    ) -> AuthRecord:
        return await self._repository.insert_auth({
            "user_id": user.id,
            "type": OIDC_AUTH_TYPE,
            "oidc_provider": config.provider_name or "oidc",
            "oidc_sub": claims.sub,
            "secret": "",
            "meta": {
                "email": claims.email,
                "name": claims.name,
                "created_at": _timestamp(),
            },
        })
