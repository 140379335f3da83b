import pytest

from agentstack.config import Settings
from agentstack.embeddings import (
    OllamaEmbeddings,
    OpenAIEmbeddings,
    cosine_similarity,
    create_embedding_provider,
    normalize_vector,
)
from agentstack.providers import (
    AnthropicProvider,
    ChatMessage,
    OllamaProvider,
    ProviderRegistry,
    codex_provider,
    format_messages,
    is_provider_available,
)
from tests.conftest import FakeChatProvider


def test_registry_builds_configured_providers() -> None:
    registry = ProviderRegistry(Settings(anthropic_api_key="sk-test", openai_api_key=None))

    assert isinstance(registry.get("anthropic"), AnthropicProvider)
    assert registry.get("anthropic") is registry.get("anthropic")
    assert registry.get("openai") is None
    assert isinstance(registry.get("ollama"), OllamaProvider)
    assert registry.get("nope") is None


def test_custom_provider_takes_precedence() -> None:
    registry = ProviderRegistry(Settings(default_provider="anthropic", anthropic_api_key="sk-test"))
    fake = FakeChatProvider()

    registry.register("anthropic", fake)

    assert registry.get_default() is fake
    assert "anthropic" in registry.names()
    registry.unregister("anthropic")
    assert isinstance(registry.get_default(), AnthropicProvider)


def test_format_messages_labels_roles() -> None:
    prompt = format_messages([ChatMessage("system", "be brief"), ChatMessage("user", "hi")])

    assert prompt == "System: be brief\n\nUser: hi"


def test_cli_provider_argv() -> None:
    codex = codex_provider("codex")

    assert codex.build_argv("o3") == ["codex", "exec", "-"]
    assert not is_provider_available(codex_provider("definitely-not-installed-xyz"))
    assert is_provider_available(FakeChatProvider())


def test_create_embedding_provider() -> None:
    assert create_embedding_provider(Settings(embedding_provider=None)) is None
    assert create_embedding_provider(Settings(embedding_provider="openai", openai_api_key=None)) is None
    assert create_embedding_provider(Settings(embedding_provider="bogus")) is None

    openai = create_embedding_provider(
        Settings(embedding_provider="openai", openai_api_key="sk-test", embedding_model="text-embedding-3-large")
    )
    assert isinstance(openai, OpenAIEmbeddings)
    assert openai.dimensions == 3072
    assert isinstance(create_embedding_provider(Settings(embedding_provider="ollama")), OllamaEmbeddings)


def test_cosine_similarity() -> None:
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 1], [-1, -1]) == pytest.approx(-1.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])


def test_normalize_vector() -> None:
    assert normalize_vector([3, 4]) == pytest.approx([0.6, 0.8])
    assert normalize_vector([0, 0]) == [0, 0]
