"""Shared pytest fixtures for Lumina tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from lumina.conversations.router import (
    get_conversation_service,
    get_generation_service,
    get_tree_store,
)
from lumina.conversations.service import ConversationService
from lumina.db.connection import Database
from lumina.generation.service import GenerationService
from lumina.generation.titles import TitleSummarizer
from lumina.main import app
from lumina.persistence.sqlite import SQLiteGateway
from lumina.providers.registry import clear_providers, register_provider
from lumina.tree.store import ConversationTreeStore
from tests.fixtures import FailingGateway, FakeProvider


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def gateway(db):
    """Gateway over the in-memory database that can be told to fail."""
    return FailingGateway(db)


@pytest.fixture
def store():
    return ConversationTreeStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def gen_service(store, gateway, provider):
    """GenerationService wired to the fake provider and a title summarizer."""
    service = GenerationService(
        store,
        gateway,
        provider,
        summarizer=TitleSummarizer(provider),
        default_model="fake-model",
    )
    yield service
    await service.wait_for_background()


@pytest.fixture
def conv_service(store, gateway):
    return ConversationService(store, gateway)


@pytest.fixture
async def client(store, conv_service, gen_service, provider):
    """Async test client with in-memory DB and fake provider wired into the app."""
    register_provider(provider)
    app.dependency_overrides[get_tree_store] = lambda: store
    app.dependency_overrides[get_conversation_service] = lambda: conv_service
    app.dependency_overrides[get_generation_service] = lambda: gen_service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
    clear_providers()
