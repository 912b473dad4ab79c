"""
OIDC configuration persistence.

``ConfigStore`` is the seam to wherever the application keeps its settings
table. The configuration lives in a single settings row keyed by
``OIDC_SETTING_ID``; ``InMemoryConfigStore`` keeps that row in process memory
and is what the service uses out of the box and in tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..models import OIDC_SETTING_ID, OidcConfiguration, SettingRecord, utcnow

logger = logging.getLogger(__name__)


class ConfigStore(ABC):
    """Abstract store for the single OIDC configuration record."""

    @abstractmethod
    async def load(self) -> Optional[OidcConfiguration]:
        """Return the stored configuration, or None if none was ever saved."""

    @abstractmethod
    async def save(self, config: OidcConfiguration) -> SettingRecord:
        """Insert or replace the configuration record."""


class InMemoryConfigStore(ConfigStore):
    def __init__(self, initial: Optional[OidcConfiguration] = None):
        self._lock = asyncio.Lock()
        self._record: Optional[SettingRecord] = None
        if initial is not None:
            self._record = SettingRecord(id=OIDC_SETTING_ID, meta=initial)

    async def load(self) -> Optional[OidcConfiguration]:
        record = self._record
        if record is None:
            return None
        # Hand out a copy so callers cannot mutate the stored row
        return record.meta.model_copy(deep=True)

    async def save(self, config: OidcConfiguration) -> SettingRecord:
        async with self._lock:
            if self._record is None:
                self._record = SettingRecord(id=OIDC_SETTING_ID, meta=config.model_copy(deep=True))
                logger.info("Created OIDC configuration record")
            else:
                self._record = self._record.model_copy(
                    update={"meta": config.model_copy(deep=True), "modified_on": utcnow()}
                )
                logger.info("Updated OIDC configuration record")
            return self._record
