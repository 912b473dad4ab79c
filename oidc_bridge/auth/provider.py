"""
Identity provider client.

This module handles:
- Discovering provider metadata and JWKS from an issuer URL
- Building authorization URLs
- Exchanging authorization codes at the token endpoint
- Verifying ID tokens against the provider's JWKS
- Fetching userinfo

A ``ProviderClient`` is bound to one ``OidcConfiguration`` snapshot and does
not change after construction; ``ClientCache`` decides when to build a new one.
"""

import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx
from jose import JWTError, jwk, jwt
from pydantic import BaseModel, Field

from ..errors import DiscoveryError, ExchangeError, IssuerMissingError
from ..models import DiscoveryResult, OidcConfiguration

logger = logging.getLogger(__name__)

REQUIRED_METADATA = ("issuer", "authorization_endpoint", "token_endpoint")

ID_TOKEN_LEEWAY_SECONDS = 10

# httpx.InvalidURL is not an HTTPError; a malformed issuer or endpoint raises it
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


# =============================================================================
# Token Set
# =============================================================================

class TokenSet(BaseModel):
    """Token endpoint response with the verified ID token claims attached."""
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    id_token_claims: Dict[str, Any] = Field(default_factory=dict)

    def claims(self) -> Dict[str, Any]:
        return dict(self.id_token_claims)


# =============================================================================
# Discovery Helpers
# =============================================================================

def discovery_url(issuer_url: str) -> str:
    """
    Resolve the metadata document URL for an issuer.

    A URL whose path already contains ``/.well-known/`` is used as-is, a path
    ending in ``/.well-known`` gets ``/openid-configuration`` appended, and
    anything else gets ``/.well-known/openid-configuration``.
    """
    url = issuer_url.strip()
    path = urlsplit(url).path
    if "/.well-known/" in path:
        return url
    url = url.rstrip("/")
    if path.rstrip("/").endswith("/.well-known"):
        return f"{url}/openid-configuration"
    return f"{url}/.well-known/openid-configuration"


def _find_jwk(jwks: Optional[Dict[str, Any]], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Pick the key from a JWKS that matches the token's kid.

    A token without a kid may use the set's only key.
    """
    keys = (jwks or {}).get("keys", [])
    if kid is None:
        return keys[0] if len(keys) == 1 else None
    for key in keys:
        if key.get("kid") == kid:
            return key
    return None


def _response_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# =============================================================================
# Provider Client
# =============================================================================

class ProviderClient:
    """OIDC client for one configuration snapshot."""

    def __init__(
        self,
        config: OidcConfiguration,
        metadata: Dict[str, Any],
        jwks: Optional[Dict[str, Any]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.metadata = metadata
        self._jwks = jwks
        self._timeout = timeout
        self._transport = transport

    @classmethod
    async def discover(
        cls,
        config: OidcConfiguration,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderClient":
        """
        Fetch the issuer's metadata (and JWKS, when advertised) and build a client.

        Args:
            config: Configuration snapshot the client is bound to
            timeout: Timeout in seconds for every request the client makes
            transport: Optional httpx transport (used to stub the provider)

        Returns:
            A ready ProviderClient

        Raises:
            DiscoveryError: If the metadata or JWKS cannot be fetched or are invalid
        """
        if not config.issuer_url.strip():
            raise DiscoveryError("OIDC issuer URL is not configured")

        url = discovery_url(config.issuer_url)
        logger.info(f"Discovering OIDC provider metadata from {url}")

        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            try:
                response = await client.get(url, headers={"Accept": "application/json"})
            except REQUEST_ERRORS as e:
                raise DiscoveryError(f"Failed to fetch OIDC discovery from {url}: {e}") from e

            if response.status_code != 200:
                raise DiscoveryError(
                    f"Failed to fetch OIDC discovery from {url}: HTTP {response.status_code}"
                )

            metadata = _response_json(response)
            for key in REQUIRED_METADATA:
                if not metadata.get(key):
                    raise DiscoveryError(f"OIDC discovery document missing required key: {key}")

            jwks = None
            jwks_uri = metadata.get("jwks_uri")
            if jwks_uri:
                jwks = await cls._get_jwks(client, jwks_uri)

        logger.info(f"Discovered issuer: {metadata['issuer']}")
        return cls(config, metadata, jwks=jwks, timeout=timeout, transport=transport)

    @staticmethod
    async def _get_jwks(client: httpx.AsyncClient, jwks_uri: str) -> Dict[str, Any]:
        try:
            response = await client.get(jwks_uri)
            response.raise_for_status()
        except REQUEST_ERRORS as e:
            raise DiscoveryError(f"Failed to fetch JWKS from {jwks_uri}: {e}") from e

        jwks = _response_json(response)
        if "keys" not in jwks:
            raise DiscoveryError("Invalid JWKS response: missing 'keys' field")
        return jwks

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # =========================================================================
    # Metadata
    # =========================================================================

    @property
    def issuer(self) -> str:
        return self.metadata["issuer"]

    def describe(self) -> DiscoveryResult:
        """Summarize the discovered endpoints."""
        return DiscoveryResult(
            issuer=self.metadata["issuer"],
            authorization_endpoint=self.metadata["authorization_endpoint"],
            token_endpoint=self.metadata["token_endpoint"],
            userinfo_endpoint=self.metadata.get("userinfo_endpoint"),
            jwks_uri=self.metadata.get("jwks_uri"),
            end_session_endpoint=self.metadata.get("end_session_endpoint"),
        )

    # =========================================================================
    # Authorization
    # =========================================================================

    def authorization_url(self, params: Mapping[str, Optional[str]]) -> str:
        """
        Build the provider authorization URL.

        ``client_id``, ``redirect_uri`` and ``response_type=code`` are filled
        in from the configuration unless ``params`` overrides them. Existing
        query parameters on the authorization endpoint are preserved.
        """
        endpoint = urlsplit(self.metadata["authorization_endpoint"])
        query = dict(parse_qsl(endpoint.query))
        query.update({
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
        })
        query.update({k: v for k, v in params.items() if v is not None})
        return urlunsplit(endpoint._replace(query=urlencode(query)))

    # =========================================================================
    # Token Exchange
    # =========================================================================

    async def callback(
        self,
        redirect_uri: str,
        params: Mapping[str, Optional[str]],
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        """
        Validate the authorization response parameters and redeem the code.

        Args:
            redirect_uri: Redirect URI used for the authorization request
            params: Authorization response parameters (``code``, ``iss``, ``error``...)
            code_verifier: PKCE verifier for the code

        Returns:
            TokenSet with verified ID token claims

        Raises:
            IssuerMissingError: If the provider advertises the ``iss`` response
                parameter and it is absent
            ExchangeError: On any other validation or token endpoint failure
        """
        if params.get("error"):
            raise ExchangeError(
                f"Authorization failed: {params.get('error_description') or params['error']}",
                error=params["error"],
                error_description=params.get("error_description"),
            )

        iss = params.get("iss")
        if iss:
            if iss != self.issuer:
                raise ExchangeError(f"iss mismatch, expected {self.issuer}, got: {iss}")
        elif self.metadata.get("authorization_response_iss_parameter_supported"):
            raise IssuerMissingError("iss missing from the response")

        if not params.get("code"):
            raise ExchangeError("code missing from the response")

        token_set = await self.grant({
            "grant_type": "authorization_code",
            "code": params["code"],
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        })
        if not token_set.id_token:
            raise ExchangeError("id_token not present in token response")
        return token_set

    async def grant(self, body: Mapping[str, Optional[str]]) -> TokenSet:
        """
        Call the token endpoint directly.

        Raises:
            ExchangeError: If the request fails, the provider returns an OAuth
                error, or the returned ID token does not verify
        """
        data = {k: v for k, v in body.items() if v is not None}
        auth = None
        if self._token_auth_method() == "client_secret_basic":
            # RFC 6749 2.3.1: credentials are form-encoded before Basic encoding
            auth = httpx.BasicAuth(
                quote(self.config.client_id, safe=""),
                quote(self.config.client_secret, safe=""),
            )
        else:
            data["client_id"] = self.config.client_id
            data["client_secret"] = self.config.client_secret

        token_endpoint = self.metadata["token_endpoint"]
        async with self._http() as client:
            try:
                response = await client.post(
                    token_endpoint,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
            except REQUEST_ERRORS as e:
                raise ExchangeError(f"Token request failed: {e}") from e

        payload = _response_json(response)
        if payload.get("error"):
            description = payload.get("error_description")
            raise ExchangeError(
                f"Token exchange failed: {description or payload['error']}",
                error=payload["error"],
                error_description=description,
            )
        if response.is_error:
            raise ExchangeError(f"Token exchange failed: HTTP {response.status_code}")

        token_set = TokenSet(
            access_token=payload.get("access_token"),
            token_type=payload.get("token_type"),
            id_token=payload.get("id_token"),
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            scope=payload.get("scope"),
        )
        if token_set.id_token:
            token_set.id_token_claims = await self.verify_id_token(token_set.id_token)
        return token_set

    def _token_auth_method(self) -> str:
        supported = self.metadata.get("token_endpoint_auth_methods_supported")
        if not supported or "client_secret_basic" in supported:
            return "client_secret_basic"
        if "client_secret_post" in supported:
            return "client_secret_post"
        return "client_secret_basic"

    # =========================================================================
    # ID Token Verification
    # =========================================================================

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Checks the signature (JWKS for asymmetric algorithms, the client
        secret for HS*), audience, issuer and expiry. An unknown ``kid``
        triggers one JWKS refetch in case the provider rotated keys.

        Raises:
            ExchangeError: If the token does not verify
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise ExchangeError(f"Failed to decode ID token header: {e}") from e

        algorithm = header.get("alg") or "RS256"
        if algorithm == "none":
            raise ExchangeError("Unsigned ID tokens are not accepted")

        if algorithm.startswith("HS"):
            key: Any = self.config.client_secret
        else:
            key = await self._signing_key(header.get("kid"), algorithm)

        try:
            return jwt.decode(
                id_token,
                key,
                algorithms=[algorithm],
                audience=self.config.client_id,
                issuer=self.issuer,
                options={
                    "verify_at_hash": False,
                    "leeway": ID_TOKEN_LEEWAY_SECONDS,
                },
            )
        except JWTError as e:
            raise ExchangeError(f"ID token verification failed: {e}") from e

    async def _signing_key(self, kid: Optional[str], algorithm: str) -> str:
        key_data = _find_jwk(self._jwks, kid)
        if key_data is None and self.metadata.get("jwks_uri"):
            # Keys may have rotated since discovery
            async with self._http() as client:
                try:
                    fresh = await self._get_jwks(client, self.metadata["jwks_uri"])
                except DiscoveryError as e:
                    raise ExchangeError(str(e)) from e
            key_data = _find_jwk(fresh, kid)

        if key_data is None:
            raise ExchangeError(
                "Unable to find matching signing key in JWKS. "
                "Keys may have rotated or the token is from another issuer."
            )

        try:
            return jwk.construct(key_data, algorithm=algorithm).to_pem().decode("utf-8")
        except Exception as e:
            raise ExchangeError(f"Failed to construct public key from JWK: {e}") from e

    # =========================================================================
    # Userinfo
    # =========================================================================

    async def userinfo(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch claims from the userinfo endpoint.

        Raises:
            ExchangeError: If the endpoint is missing, unreachable or rejects the token
        """
        endpoint = self.metadata.get("userinfo_endpoint")
        if not endpoint:
            raise ExchangeError("Provider does not expose a userinfo endpoint")

        async with self._http() as client:
            try:
                response = await client.get(
                    endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
            except REQUEST_ERRORS as e:
                raise ExchangeError(f"Userinfo request failed: {e}") from e

        if response.is_error:
            payload = _response_json(response)
            raise ExchangeError(
                f"Userinfo request failed: HTTP {response.status_code}",
                error=payload.get("error"),
                error_description=payload.get("error_description"),
                status_code=502,
            )
        return _response_json(response)
