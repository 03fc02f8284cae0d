from __future__ import annotations

import hashlib
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from ctxpipe.core.config import Settings

logger = logging.getLogger(__name__)


class EmbeddingUnavailable(RuntimeError):
    """Raised when an embedding cannot be produced for a text."""


class Embedder(ABC):
    """Opaque text -> vector function supplied to the knowledge index."""

    provider: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input."""

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingUnavailable("Embedder returned an unexpected vector count")
        return vectors[0]


class DeterministicEmbedder(Embedder):
    """Offline hashed bag-of-tokens embedder for tests and local runs."""

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise EmbeddingUnavailable("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> list[float]:
        cleaned = text.strip().lower()
        vector = [0.0] * self.dimension
        if not cleaned:
            vector[0] = 1.0
            return vector

        for token in self._tokenize(cleaned):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=16).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dimension
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            magnitude = 1.0 + (digest[5] / 255.0)
            vector[index] += sign * magnitude
        return normalize_vector(vector)

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        # Punctuation is noise for catalog lookups; only word tokens count.
        tokens: list[str] = []
        buffer: list[str] = []
        for ch in text:
            if ch.isalnum() or ch in {"_", "-"}:
                buffer.append(ch)
                continue
            if buffer:
                tokens.append("".join(buffer))
                buffer.clear()
        if buffer:
            tokens.append("".join(buffer))
        return tokens


class OpenAIEmbedder(Embedder):
    """OpenAI-compatible `/v1/embeddings` client."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        timeout_sec: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if dimension <= 0:
            raise EmbeddingUnavailable("Embedding dimension must be > 0")
        if not api_key.strip():
            raise EmbeddingUnavailable("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._timeout_sec = timeout_sec
        self._api_key = api_key
        self._client = http_client
        normalized = base_url.rstrip("/")
        self._endpoint = f"{normalized}/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts)}
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            if self._client:
                response = await self._client.post(
                    self._endpoint, json=payload, headers=headers, timeout=self._timeout_sec
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                    response = await client.post(self._endpoint, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingUnavailable("OpenAI embedding request failed") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingUnavailable("OpenAI embedding response is not JSON") from exc
        vectors = self._parse_embeddings(data, len(texts))
        return [normalize_vector(vector) for vector in vectors]

    def _parse_embeddings(self, payload: Any, expected_size: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected_size:
            raise EmbeddingUnavailable("Embedding response shape is invalid")

        # The API may return rows out of order; `index` restores input order.
        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in rows):
            rows = sorted(rows, key=lambda row: row["index"])

        vectors: list[list[float]] = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list):
                raise EmbeddingUnavailable("Embedding row is missing vector data")
            if len(embedding) != self.dimension:
                raise EmbeddingUnavailable("Embedding dimension mismatch")
            try:
                vector = [float(value) for value in embedding]
            except (TypeError, ValueError) as exc:
                raise EmbeddingUnavailable("Embedding contains non-numeric values") from exc
            vectors.append(vector)
        return vectors


def create_embedder(settings: Settings) -> Embedder:
    """Factory for the configured embedding collaborator."""

    provider = settings.embed_provider.strip().lower()
    if provider == "deterministic":
        model_name = settings.embed_model.strip() or "deterministic-v1"
        return DeterministicEmbedder(dimension=settings.embed_dim, model_name=model_name)

    if provider == "openai":
        api_key = settings.embed_openai_api_key.strip()
        if not api_key:
            logger.warning(
                "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
            )
            return DeterministicEmbedder(dimension=settings.embed_dim)
        model_name = settings.embed_model.strip() or "text-embedding-3-small"
        return OpenAIEmbedder(
            base_url=settings.openai_base_url,
            api_key=api_key,
            model_name=model_name,
            dimension=settings.embed_dim,
        )

    logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
    return DeterministicEmbedder(dimension=settings.embed_dim)


def normalize_vector(vector: list[float]) -> list[float]:
    norm = vector_norm(vector)
    if norm <= 0:
        return vector
    return [item / norm for item in vector]


def vector_norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(item * item for item in vector))
