import sys
from pathlib import Path
from typing import Iterable, Optional

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from roll.domain.social.models import USERS
from roll.domain.social.service import RelationshipManager
from roll.settings import settings
from roll.store.memory import MemoryDocumentStore
from roll.store.objects import MemoryObjectStore


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from roll.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep tests independent of the developer's environment."""
	original_env = settings.environment
	original_attempts = settings.transaction_max_attempts
	settings.environment = "test"
	settings.transaction_max_attempts = 5
	try:
		yield
	finally:
		settings.environment = original_env
		settings.transaction_max_attempts = original_attempts


@pytest_asyncio.fixture
async def store():
	backend = MemoryDocumentStore()
	try:
		yield backend
	finally:
		await backend.close()


@pytest.fixture
def object_store():
	return MemoryObjectStore(base_url="http://objects.test")


@pytest.fixture
def manager(store):
	rm = RelationshipManager(store)
	try:
		yield rm
	finally:
		rm.close()


@pytest.fixture
def seed_user(store):
	async def _seed(
		user_id: str,
		display_name: Optional[str] = None,
		*,
		friends: Iterable[str] = (),
		blocked: Iterable[str] = (),
		blocked_by: Iterable[str] = (),
	) -> str:
		await store.set(
			USERS,
			user_id,
			{
				"displayName": display_name if display_name is not None else user_id.title(),
				"profileImage": f"http://img.test/{user_id}.jpg",
				"friends": list(friends),
				"blocked": list(blocked),
				"blockedBy": list(blocked_by),
			},
		)
		return user_id

	return _seed


@pytest_asyncio.fixture
async def trio(seed_user):
	"""Three unrelated users: alice, bob and carol."""
	for user_id in ("alice", "bob", "carol"):
		await seed_user(user_id)
	return "alice", "bob", "carol"
