"""
Identity persistence.

``IdentityRepository`` is the contract the callback reconciler writes
through: users keyed by normalized email and per-type auth records.
Implementations must enforce uniqueness of the normalized email among
non-deleted users by raising ``DuplicateUserError`` from ``insert_user``;
the reconciler relies on that to settle concurrent first logins.

``InMemoryIdentityRepository`` is a process-local implementation with
transactional rollback, used by the default application wiring and tests.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from ..errors import DuplicateUserError
from ..models import AuthRecord, User, normalize_email, utcnow

logger = logging.getLogger(__name__)


class IdentityRepository(ABC):
    """Abstract persistence for users and their auth records."""

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[User]:
        """Return the non-deleted user with this normalized email, if any."""

    @abstractmethod
    async def patch_user(self, user_id: int, changes: Mapping[str, Any]) -> User:
        """Apply ``changes`` to a user and return the updated record."""

    @abstractmethod
    async def insert_user(self, values: Mapping[str, Any]) -> User:
        """
        Create a user.

        Raises:
            DuplicateUserError: If a non-deleted user already has this email
        """

    @abstractmethod
    async def find_auth_by_user_and_type(self, user_id: int, auth_type: str) -> Optional[AuthRecord]:
        """Return the user's auth record of the given type, if any."""

    @abstractmethod
    async def patch_auth(self, auth_id: int, changes: Mapping[str, Any]) -> AuthRecord:
        """Apply ``changes`` to an auth record and return the updated record."""

    @abstractmethod
    async def insert_auth(self, values: Mapping[str, Any]) -> AuthRecord:
        """Create an auth record."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Group the writes of one login into a single unit.

        The default does nothing; backends with transactions override it.
        """
        yield


class InMemoryIdentityRepository(IdentityRepository):
    def __init__(self):
        self._users: Dict[int, User] = {}
        self._auths: Dict[int, AuthRecord] = {}
        self._next_user_id = 1
        self._next_auth_id = 1
        self._tx_lock = asyncio.Lock()

    # =========================================================================
    # Users
    # =========================================================================

    async def find_user_by_email(self, email: str) -> Optional[User]:
        wanted = normalize_email(email)
        for user in self._users.values():
            if not user.is_deleted and user.email == wanted:
                return user.model_copy(deep=True)
        return None

    async def get_user(self, user_id: int) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def patch_user(self, user_id: int, changes: Mapping[str, Any]) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise KeyError(f"User {user_id} not found")
        updated = user.model_copy(update={**changes, "modified_on": utcnow()}, deep=True)
        self._users[user_id] = updated
        return updated.model_copy(deep=True)

    async def insert_user(self, values: Mapping[str, Any]) -> User:
        email = normalize_email(values["email"])
        if await self.find_user_by_email(email) is not None:
            raise DuplicateUserError(f"User with email {email} already exists")

        user = User(**{**values, "email": email, "id": self._next_user_id})
        self._users[user.id] = user
        self._next_user_id += 1
        return user.model_copy(deep=True)

    async def delete_user(self, user_id: int) -> None:
        """Soft-delete a user; its auth records go with it."""
        user = self._users.get(user_id)
        if user is None:
            raise KeyError(f"User {user_id} not found")
        self._users[user_id] = user.model_copy(update={"is_deleted": True, "modified_on": utcnow()})
        for auth_id in [a.id for a in self._auths.values() if a.user_id == user_id]:
            del self._auths[auth_id]

    # =========================================================================
    # Auth records
    # =========================================================================

    async def find_auth_by_user_and_type(self, user_id: int, auth_type: str) -> Optional[AuthRecord]:
        for auth in self._auths.values():
            if auth.user_id == user_id and auth.type == auth_type:
                return auth.model_copy(deep=True)
        return None

    async def list_auth_for_user(self, user_id: int) -> List[AuthRecord]:
        return [a.model_copy(deep=True) for a in self._auths.values() if a.user_id == user_id]

    async def patch_auth(self, auth_id: int, changes: Mapping[str, Any]) -> AuthRecord:
        auth = self._auths.get(auth_id)
        if auth is None:
            raise KeyError(f"Auth record {auth_id} not found")
        updated = auth.model_copy(update={**changes, "modified_on": utcnow()}, deep=True)
        self._auths[auth_id] = updated
        return updated.model_copy(deep=True)

    async def insert_auth(self, values: Mapping[str, Any]) -> AuthRecord:
        user_id = values["user_id"]
        if user_id not in self._users:
            raise KeyError(f"User {user_id} not found")
        if await self.find_auth_by_user_and_type(user_id, values["type"]) is not None:
            raise ValueError(f"User {user_id} already has a {values['type']} auth record")

        auth = AuthRecord(**{**values, "id": self._next_auth_id})
        self._auths[auth.id] = auth
        self._next_auth_id += 1
        return auth.model_copy(deep=True)

    # =========================================================================
    # Transactions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._tx_lock:
            snapshot = (
                copy.deepcopy(self._users),
                copy.deepcopy(self._auths),
                self._next_user_id,
                self._next_auth_id,
            )
            try:
                yield
            except BaseException:
                self._users, self._auths, self._next_user_id, self._next_auth_id = snapshot
                logger.debug("Rolled back identity transaction")
                raise
