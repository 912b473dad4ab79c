"""
Provider client cache.

Holds at most one ``ProviderClient``, keyed by a fingerprint of the
configuration it was built from. A stored client is reused only while the
current configuration has the same fingerprint; any difference forces a new
discovery. There is no TTL.

The slot is the service's only shared mutable state. Reads and swaps happen
under a lock that is never held across network I/O: discovery runs first,
then the finished ``(fingerprint, client)`` pair is published in one
assignment. Concurrent misses may both discover; the last writer wins.
"""

import hashlib
import json
import logging
import threading
from typing import NamedTuple, Optional

import httpx

from ..errors import ConfigurationError, DiscoveryError
from ..models import OidcConfiguration
from ..storage.config_store import ConfigStore
from .provider import ProviderClient

logger = logging.getLogger(__name__)


def config_fingerprint(config: OidcConfiguration) -> str:
    """SHA-256 over the canonical JSON form of a configuration."""
    canonical = json.dumps(config.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CachedClient(NamedTuple):
    fingerprint: str
    client: ProviderClient


class ClientCache:
    """Single-slot cache of the provider client for the active configuration."""

    def __init__(
        self,
        config_store: ConfigStore,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config_store = config_store
        self._timeout = timeout
        self._transport = transport
        self._lock = threading.Lock()
        self._entry: Optional[CachedClient] = None

    async def get_client(self) -> ProviderClient:
        """
        Return the provider client for the current configuration.

        Raises:
            ConfigurationError: If OIDC is not configured or not enabled
            DiscoveryError: If the issuer metadata cannot be discovered
        """
        config = await self._config_store.load()
        if config is None or not config.enabled:
            raise ConfigurationError("OIDC is not configured or enabled")

        fingerprint = config_fingerprint(config)
        with self._lock:
            entry = self._entry
        if entry is not None and entry.fingerprint == fingerprint:
            return entry.client

        logger.info(f"Initializing OIDC client for issuer: {config.issuer_url}")
        try:
            client = await ProviderClient.discover(
                config, timeout=self._timeout, transport=self._transport
            )
        except DiscoveryError:
            with self._lock:
                if self._entry is not None and self._entry.fingerprint != fingerprint:
                    self._entry = None
            logger.error(f"Failed to initialize OIDC client for issuer: {config.issuer_url}")
            raise

        with self._lock:
            self._entry = CachedClient(fingerprint, client)
        return client

    def invalidate(self) -> None:
        """Drop the cached client; the next ``get_client`` rediscovers."""
        with self._lock:
            self._entry = None
        logger.info("OIDC client cache cleared")

    async def probe(self, candidate: OidcConfiguration) -> ProviderClient:
        """
        Discover a candidate configuration without caching it.

        Raises:
            DiscoveryError: If discovery fails
        """
        return await ProviderClient.discover(
            candidate, timeout=self._timeout, transport=self._transport
        )
