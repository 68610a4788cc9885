"""
Transcript and query embeddings via the OpenAI embeddings API.

Chunks are embedded in batches at index-build time; queries one at a
time on every cache miss.  Output rows are unit length, matching the
inner-product index in FaissChunkStore.

Transient API failures (rate limits, timeouts, 5xx, dropped
connections) are retried by tenacity; anything else propagates.
"""
from __future__ import annotations

import os
import time
from typing import Sequence

import numpy as np
import openai
from langsmith import traceable
from loguru import logger
from openai import OpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from chronos_rag.sessions.costs import DEFAULT_EMBEDDING_MODEL, embedding_rate

DEFAULT_DIMENSIONS = 1536
DEFAULT_BATCH_SIZE = 512      # API maximum is 2048 inputs per request

_NATIVE_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class Embedder:
    """
    Args:
        model:      OpenAI embedding model id.
        dimensions: Output width.  text-embedding-3 models are asked to
                    shorten their vectors when this is below the native width.
        batch_size: Texts per API request during index builds.
        client:     Pre-built OpenAI client (tests pass a mock).
    """

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimensions: int = DEFAULT_DIMENSIONS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self._client = client or OpenAI(api_key=os.getenv("OPENAI_API_KEY"))
        self.total_tokens_used = 0
        self.total_api_calls = 0

    @property
    def _request_dimensions(self) -> int | None:
        native = _NATIVE_DIMENSIONS.get(self.model)
        if self.model.startswith("text-embedding-3") and native and self.dimensions < native:
            return self.dimensions
        return None

    @traceable(name="embed_chunks", run_type="embedding")
    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        """Embed texts in order; returns a unit-normalised (N, dimensions) float32 matrix."""
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        rows: list[list[float]] = []
        for offset in range(0, len(texts), self.batch_size):
            batch = list(texts[offset: offset + self.batch_size])
            vectors, tokens = self._request(batch)
            rows.extend(vectors)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

        matrix = np.asarray(rows, dtype=np.float32)
        if matrix.shape[1] != self.dimensions:
            raise ValueError(
                f"{self.model} returned {matrix.shape[1]}-d vectors, expected {self.dimensions}"
            )
        lengths = np.linalg.norm(matrix, axis=1, keepdims=True)
        lengths[lengths == 0] = 1.0
        return matrix / lengths

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _request(self, batch: list[str]) -> tuple[list[list[float]], int]:
        kwargs = {"model": self.model, "input": [t if t.strip() else " " for t in batch]}
        if self._request_dimensions:
            kwargs["dimensions"] = self._request_dimensions

        started = time.perf_counter()
        response = self._client.embeddings.create(**kwargs)
        took_ms = (time.perf_counter() - started) * 1000

        ordered = sorted(response.data, key=lambda item: item.index)
        tokens = response.usage.total_tokens
        logger.debug(
            f"[Embedder] {len(batch)} inputs | {tokens} tokens | {took_ms:.0f}ms "
            f"| session total {self.total_tokens_used + tokens}"
        )
        return [item.embedding for item in ordered], tokens

    @traceable(name="embed_query", run_type="embedding")
    def embed_query(self, text: str) -> np.ndarray:
        """One search query -> (dimensions,) unit vector."""
        return self.embed_texts([text])[0]

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            "estimated_cost_usd": round(self.total_tokens_used * embedding_rate(self.model) / 1_000_000, 6),
        }
