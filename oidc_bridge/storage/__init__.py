"""
Storage Package

Persistence seams used by the OIDC core:

- config_store: the single OIDC configuration record
- repository: users and per-type auth records
"""

from .config_store import ConfigStore, InMemoryConfigStore
from .repository import IdentityRepository, InMemoryIdentityRepository

__all__ = [
    "ConfigStore",
    "InMemoryConfigStore",
    "IdentityRepository",
    "InMemoryIdentityRepository",
]
