"""Embedding providers and vector helpers for drift detection."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from math import sqrt
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import Settings
from .errors import ProviderError

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    model: str
    dimensions: int

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


async def _post_json(base_url: str, path: str, body: dict[str, Any], headers: dict[str, str] | None = None) -> Any:
    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(60.0)) as client:
            resp = await client.post(path, json=body, headers=headers or {})
            resp.raise_for_status()
            return resp.json()
    except httpx.HTTPStatusError as e:
        raise ProviderError(f"Embedding API error {e.response.status_code}: {e.response.text}") from e
    except httpx.RequestError as e:
        raise ProviderError(f"Embedding request failed: {e}") from e


class OpenAIEmbeddings:
    def __init__(
        self, api_key: str, model: str = "text-embedding-3-small", base_url: str = "https://api.openai.com/v1"
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.model = model
        self.dimensions = 3072 if model == "text-embedding-3-large" else 1536

    async def embed(self, text: str) -> list[float]:
        result = await self.embed_batch([text])
        if not result:
            raise ProviderError("Failed to generate embedding")
        return result[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        data = await _post_json(
            self._base_url,
            "/embeddings",
            {"model": self.model, "input": texts},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        return [item["embedding"] for item in data.get("data", [])]


class OllamaEmbeddings:
    def __init__(self, base_url: str = "http://localhost:11434", model: str = "nomic-embed-text") -> None:
        self._base_url = base_url.rstrip("/")
        self.model = model
        self.dimensions = 768

    async def embed(self, text: str) -> list[float]:
        data = await _post_json(self._base_url, "/api/embeddings", {"model": self.model, "prompt": text})
        return data["embedding"]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        # No batch endpoint; embed sequentially
        return [await self.embed(text) for text in texts]


def create_embedding_provider(settings: Settings) -> EmbeddingProvider | None:
    """Build the configured provider, or None when embeddings are not set up."""
    provider = settings.embedding_provider
    if not provider:
        logger.debug("Embeddings disabled")
        return None
    if provider == "openai":
        if not settings.openai_api_key:
            logger.warning("OpenAI API key not configured for embeddings")
            return None
        return OpenAIEmbeddings(
            settings.openai_api_key,
            settings.embedding_model or "text-embedding-3-small",
            settings.openai_base_url,
        )
    if provider == "ollama":
        return OllamaEmbeddings(settings.ollama_base_url, settings.embedding_model or "nomic-embed-text")
    logger.warning("Unknown embedding provider: %s", provider)
    return None


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if len(vec_a) != len(vec_b):
        raise ValueError(f"Vector dimensions must match: {len(vec_a)} vs {len(vec_b)}")
    dot = sum(a * b for a, b in zip(vec_a, vec_b, strict=True))
    norm_a = sqrt(sum(a * a for a in vec_a))
    norm_b = sqrt(sum(b * b for b in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize_vector(vector: Sequence[float]) -> list[float]:
    norm = sqrt(sum(v * v for v in vector))
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]
