import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Settings are read at import time; these must be in place first.
os.environ.setdefault("SECRET_KEY", "firebird-test-secret-key-0123456789abcdef")
os.environ.setdefault("CHAT_STORE", "memory")

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from firebird.domain.chat.realtime import InMemoryRealtimeChannel
from firebird.domain.chat.repo import InMemoryChatRepository
from firebird.infra import postgres
from firebird.infra.redis import redis_client, set_redis_client
from firebird.main import app
from firebird.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Dev mode so tests can authenticate with X-User-Id / X-User-Role headers."""
	original_env = settings.environment
	original_store = settings.chat_store
	settings.environment = "dev"
	settings.chat_store = "memory"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.chat_store = original_store


@pytest.fixture
def channel():
	return InMemoryRealtimeChannel()


@pytest.fixture
def repository(channel):
	return InMemoryChatRepository(publisher=channel)


@pytest_asyncio.fixture
async def api_client(repository):
	original = app.state.chat_repository
	app.state.chat_repository = repository
	transport = ASGITransport(app=app)
	try:
		async with AsyncClient(transport=transport, base_url="http://testserver") as client:
			yield client
	finally:
		app.state.chat_repository = original
