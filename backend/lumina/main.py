"""Lumina FastAPI application entry point."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lumina.conversations.router import (
    get_conversation_service,
    get_generation_service,
    get_tree_store,
)
from lumina.conversations.router import router as conversations_router
from lumina.conversations.service import ConversationService
from lumina.db.connection import Database
from lumina.generation.service import GenerationService
from lumina.generation.titles import TitleSummarizer
from lumina.persistence.sqlite import SQLiteGateway
from lumina.providers.anthropic import AnthropicProvider
from lumina.providers.openai import OpenAIProvider
from lumina.providers.openrouter import OpenRouterProvider
from lumina.providers.registry import (
    ProviderNotFoundError,
    clear_providers,
    get_all_providers,
    get_provider,
    register_provider,
)
from lumina.sync.reconciler import Reconciler
from lumina.tree.store import ConversationTreeStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    # Load .env from backend/ directory
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

    db = await Database.connect(os.environ.get("LUMINA_DB_PATH", "lumina.db"))
    gateway = SQLiteGateway(db)

    # Provider setup, auto-discovered from env vars
    if os.environ.get("OPENROUTER_API_KEY"):
        register_provider(OpenRouterProvider(api_key=os.environ["OPENROUTER_API_KEY"]))

    if os.environ.get("OPENAI_API_KEY"):
        register_provider(OpenAIProvider(api_key=os.environ["OPENAI_API_KEY"]))

    if os.environ.get("ANTHROPIC_API_KEY"):
        register_provider(AnthropicProvider(AsyncAnthropic()))

    provider = None
    default_name = os.environ.get("LUMINA_DEFAULT_PROVIDER")
    if default_name:
        try:
            provider = get_provider(default_name)
        except ProviderNotFoundError:
            provider = None
    if provider is None and get_all_providers():
        provider = get_all_providers()[0]

    summarizer = None
    if provider is not None:
        summarizer = TitleSummarizer(provider, model=os.environ.get("LUMINA_TITLE_MODEL"))

    # One workspace tree shared by the conversation and generation services
    store = ConversationTreeStore()
    app.dependency_overrides[get_tree_store] = lambda: store

    conversation_service = ConversationService(store, gateway)
    app.dependency_overrides[get_conversation_service] = lambda: conversation_service

    gen_service = GenerationService(
        store,
        gateway,
        provider,
        reconciler=Reconciler(store),
        summarizer=summarizer,
        default_model=os.environ.get("LUMINA_DEFAULT_MODEL"),
    )
    app.dependency_overrides[get_generation_service] = lambda: gen_service

    app.state.db = db
    yield

    await gen_service.wait_for_background()
    clear_providers()
    await db.close()


app = FastAPI(
    title="Lumina",
    description="Branching LLM chat workspace with a navigable conversation tree",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/providers")
async def providers() -> list[dict]:
    return [
        {
            "name": p.name,
            "available": True,
            "models": p.suggested_models,
            "default_model": p.default_model,
        }
        for p in get_all_providers()
    ]
