"""Text embeddings for similarity retrieval.

Provider is chosen by MASTERY_EMBEDDING_PROVIDER:
- ``hashing`` (default): deterministic token hashing, no model download.
- ``sentence_transformers``: local model, needs the ``semantic`` extra.
- ``openai``: embeddings API, needs OPENAI_API_KEY.

When the configured model backend cannot be used the provider logs once
and keeps serving hashing embeddings so retrieval degrades instead of
failing the assessment.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import os
import re
from collections import Counter
from collections.abc import Sequence

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")

DEFAULT_DIMENSIONS = 384


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a <= 0.0 or norm_b <= 0.0:
        return 0.0
    return dot / math.sqrt(norm_a * norm_b)


def _normalize(vec: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm <= 0:
        return vec
    return [v / norm for v in vec]


def hashing_embedding(text: str, dimensions: int = DEFAULT_DIMENSIONS) -> list[float]:
    vec = [0.0] * dimensions
    tokens = [m.group(0).lower() for m in _TOKEN_RE.finditer(text)]
    for token, count in Counter(tokens).items():
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimensions
        sign = -1.0 if digest[4] % 2 else 1.0
        vec[bucket] += sign * float(count)
    return _normalize(vec)


def fold_dimensions(vec: Sequence[float], dimensions: int) -> list[float]:
    """Fold a model vector onto the store's dimension count."""
    if len(vec) == dimensions:
        return [float(v) for v in vec]
    out = [0.0] * dimensions
    for i, val in enumerate(vec):
        out[i % dimensions] += float(val)
    return _normalize(out)


class EmbeddingProvider:
    def __init__(
        self,
        provider: str = "hashing",
        model: str = "all-MiniLM-L6-v2",
        dimensions: int = DEFAULT_DIMENSIONS,
        api_key: str = "",
    ) -> None:
        self.provider = provider.strip().lower()
        self.model = model.strip()
        self.dimensions = dimensions
        self.api_key = api_key.strip()
        self._sentence_model = None
        self._backend_failed = False

    @classmethod
    def from_env(cls) -> "EmbeddingProvider":
        return cls(
            provider=os.environ.get("MASTERY_EMBEDDING_PROVIDER", "hashing"),
            model=os.environ.get("MASTERY_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            dimensions=int(
                os.environ.get("MASTERY_EMBEDDING_DIMENSIONS", str(DEFAULT_DIMENSIONS))
            ),
            api_key=os.environ.get("OPENAI_API_KEY", ""),
        )

    def descriptor(self) -> dict[str, str | int]:
        return {"provider": self.provider, "model": self.model, "dimensions": self.dimensions}

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vecs: list[list[float]] | None = None
        if not self._backend_failed:
            if self.provider == "sentence_transformers":
                vecs = self._embed_sentence_transformers(texts)
            elif self.provider == "openai":
                vecs = self._embed_openai(texts)
        if vecs is not None:
            return vecs
        return [hashing_embedding(t, self.dimensions) for t in texts]

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    async def aembed(self, text: str) -> list[float]:
        """Embed off the event loop; model backends block."""
        if self.provider == "hashing" or self._backend_failed:
            return hashing_embedding(text, self.dimensions)
        return await asyncio.to_thread(self.embed, text)

    def _embed_sentence_transformers(self, texts: list[str]) -> list[list[float]] | None:
        try:
            if self._sentence_model is None:
                from sentence_transformers import SentenceTransformer

                self._sentence_model = SentenceTransformer(self.model)
            raw = self._sentence_model.encode(texts, normalize_embeddings=True)  # type: ignore[union-attr]
            return [fold_dimensions(row, self.dimensions) for row in raw]
        except Exception as exc:
            self._backend_failed = True
            logger.warning(
                "sentence-transformers unavailable (%s); using hashing embeddings", exc
            )
            return None

    def _embed_openai(self, texts: list[str]) -> list[list[float]] | None:
        if not self.api_key:
            self._backend_failed = True
            logger.warning("OPENAI_API_KEY missing; using hashing embeddings")
            return None
        try:
            from openai import OpenAI

            client = OpenAI(api_key=self.api_key)
            response = client.embeddings.create(
                model=self.model,
                input=texts,
                dimensions=self.dimensions,
            )
            return [fold_dimensions(item.embedding, self.dimensions) for item in response.data]
        except Exception as exc:
            # Transient API failures should not pin the provider to hashing.
            logger.warning("OpenAI embeddings failed (%s); using hashing for this call", exc)
            return None


_PROVIDER: EmbeddingProvider | None = None


def get_embedding_provider() -> EmbeddingProvider:
    global _PROVIDER  # noqa: PLW0603
    if _PROVIDER is None:
        _PROVIDER = EmbeddingProvider.from_env()
    return _PROVIDER
