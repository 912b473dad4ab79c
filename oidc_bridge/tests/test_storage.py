"""
Tests for the in-memory configuration store and identity repository
"""

import pytest

from oidc_bridge.errors import DuplicateUserError
from oidc_bridge.models import OIDC_SETTING_ID
from oidc_bridge.storage import InMemoryConfigStore, InMemoryIdentityRepository


def user_values(**overrides):
    values = {"email": "jane@example.com", "name": "Jane", "roles": ["user"]}
    values.update(overrides)
    return values


class TestInMemoryConfigStore:
    @pytest.mark.asyncio
    async def test_empty(self):
        assert await InMemoryConfigStore().load() is None

    @pytest.mark.asyncio
    async def test_save_then_update(self, oidc_config):
        store = InMemoryConfigStore()

        created = await store.save(oidc_config)
        updated = await store.save(oidc_config.model_copy(update={"button_text": "Go"}))

        assert created.id == updated.id == OIDC_SETTING_ID
        assert updated.modified_on >= created.modified_on
        assert (await store.load()).button_text == "Go"

    @pytest.mark.asyncio
    async def test_load_returns_copy(self, oidc_config):
        store = InMemoryConfigStore(oidc_config)

        loaded = await store.load()
        loaded.client_id = "tampered"

        assert (await store.load()).client_id == oidc_config.client_id


class TestInMemoryIdentityRepository:
    @pytest.mark.asyncio
    async def test_insert_normalizes_email(self):
        repository = InMemoryIdentityRepository()

        user = await repository.insert_user(user_values(email="  Jane@Example.COM "))

        assert user.email == "jane@example.com"
        assert (await repository.find_user_by_email("JANE@example.com")).id == user.id

    @pytest.mark.asyncio
    async def test_duplicate_email(self):
        repository = InMemoryIdentityRepository()
        await repository.insert_user(user_values())

        with pytest.raises(DuplicateUserError):
            await repository.insert_user(user_values(email="Jane@example.com"))

    @pytest.mark.asyncio
    async def test_deleted_user_frees_email(self):
        repository = InMemoryIdentityRepository()
        user = await repository.insert_user(user_values())
        await repository.insert_auth({"user_id": user.id, "type": "oidc", "oidc_sub": "u1"})

        await repository.delete_user(user.id)

        assert await repository.find_user_by_email("jane@example.com") is None
        assert await repository.list_auth_for_user(user.id) == []
        replacement = await repository.insert_user(user_values())
        assert replacement.id != user.id

    @pytest.mark.asyncio
    async def test_patch_user(self):
        repository = InMemoryIdentityRepository()
        user = await repository.insert_user(user_values())

        patched = await repository.patch_user(user.id, {"is_oidc": True, "name": "Jane D"})

        assert patched.is_oidc is True
        assert (await repository.get_user(user.id)).name == "Jane D"

    @pytest.mark.asyncio
    async def test_patch_unknown_user(self):
        with pytest.raises(KeyError):
            await InMemoryIdentityRepository().patch_user(404, {"name": "x"})

    @pytest.mark.asyncio
    async def test_one_auth_record_per_type(self):
        repository = InMemoryIdentityRepository()
        user = await repository.insert_user(user_values())
        await repository.insert_auth({"user_id": user.id, "type": "oidc"})

        with pytest.raises(ValueError):
            await repository.insert_auth({"user_id": user.id, "type": "oidc"})

        await repository.insert_auth({"user_id": user.id, "type": "password", "secret": "hash"})
        assert len(await repository.list_auth_for_user(user.id)) == 2

    @pytest.mark.asyncio
    async def test_transaction_commits(self):
        repository = InMemoryIdentityRepository()

        async with repository.transaction():
            await repository.insert_user(user_values())

        assert await repository.find_user_by_email("jane@example.com") is not None

    @pytest.mark.asyncio
    async def test_transaction_rolls_back(self):
        repository = InMemoryIdentityRepository()

        with pytest.raises(RuntimeError):
            async with repository.transaction():
                user = await repository.insert_user(user_values())
                await repository.insert_auth({"user_id": user.id, "type": "oidc"})
                raise RuntimeError("boom")

        assert await repository.find_user_by_email("jane@example.com") is None
        # Identifiers are reused after rollback
        again = await repository.insert_user(user_values())
        assert again.id == 1

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        repository = InMemoryIdentityRepository()
        user = await repository.insert_user(user_values())

        found = await repository.find_user_by_email("jane@example.com")
        found.roles.append("admin")

        assert (await repository.get_user(user.id)).roles == ["user"]
