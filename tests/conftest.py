"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from agentstack.config import Settings
from agentstack.db import Database
from agentstack.providers import ChatMessage, ChatOptions, ChatResponse, ProviderRegistry
from agentstack.runtime import AgentStack

SQLITE_MEMORY_URL = "sqlite+aiosqlite://"


class FakeChatProvider:
    """Replays canned responses; an ``Exception`` in the script is raised instead."""

    name = "fake"

    def __init__(self, responses: list | None = None, default: str = "ok") -> None:
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[tuple[list[ChatMessage], ChatOptions | None]] = []

    async def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> ChatResponse:
        self.calls.append((messages, options))
        content = self.responses.pop(0) if self.responses else self.default
        if isinstance(content, Exception):
            raise content
        return ChatResponse(content=content, model="fake-model", usage={"input_tokens": 10, "output_tokens": 5})


class FakeEmbeddingProvider:
    model = "fake-embedding"
    dimensions = 3

    def __init__(self, vectors: dict[str, list[float]] | None = None, default: list[float] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.default = default or [1.0, 0.0, 0.0]
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vectors.get(text, self.default)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(text) for text in texts]


@pytest.fixture
def settings() -> Settings:
    return Settings(default_provider="fake", database_url_override=SQLITE_MEMORY_URL)


@pytest.fixture
def chat_provider() -> FakeChatProvider:
    return FakeChatProvider()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def providers(settings: Settings, chat_provider: FakeChatProvider) -> ProviderRegistry:
    registry = ProviderRegistry(settings)
    registry.register("fake", chat_provider)
    return registry


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[Database]:
    database = Database(SQLITE_MEMORY_URL)
    await database.init_db()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def stack(
    settings: Settings,
    db: Database,
    providers: ProviderRegistry,
    chat_provider: FakeChatProvider,
    embedding_provider: FakeEmbeddingProvider,
) -> AsyncGenerator[AgentStack]:
    runtime = AgentStack(
        settings,
        db=db,
        providers=providers,
        embedding_provider=embedding_provider,
        dispatch_provider=chat_provider,
    )
    await runtime.start()
    yield runtime
    await runtime.stop()
