"""
Vector Store Adapter
---------------------
Thin adapter over a vector index: translates search constraints into an
index query and normalises hits into SearchCandidates.

FaissChunkStore wraps faiss.IndexFlatIP (inner product == cosine similarity
after L2 normalisation) with:
  - A parallel list of Chunk objects (same ordering as FAISS row IDs)
  - A SourceInfo map used to denormalise title / URL / owner / created_at
    onto every candidate

Persistence:
  - FAISS index     -> <index_dir>/faiss.index
  - Chunk metadata  -> <index_dir>/chunks.json
  - Source metadata -> <index_dir>/sources.json
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

import faiss
import numpy as np
from loguru import logger

from chronos_rag.errors import InvalidQuery, StoreUnavailable
from chronos_rag.schemas import Chunk, SearchCandidate, SourceInfo
from chronos_rag.utils.helpers import ensure_dirs, load_json, save_json

INDEX_DIR = Path("data/index")
DEFAULT_DIMENSIONS = 1536


@dataclass
class SearchConstraints:
    """What the store is allowed to return for one query."""

    limit: int = 5
    similarity_threshold: float = 0.7
    source_ids: Optional[list[str]] = None       # None = unrestricted

    def validate(self) -> None:
        if self.limit <= 0:
            raise InvalidQuery(f"limit must be positive, got {self.limit}")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise InvalidQuery(
                f"similarity_threshold must be within [0, 1], got {self.similarity_threshold}"
            )


class VectorStore(Protocol):
    """Anything that can answer a top-k cosine query with an allow-list."""

    def search(
        self,
        query_embedding: Sequence[float],
        constraints: SearchConstraints,
    ) -> list[SearchCandidate]: ...


class FaissChunkStore:
    """
    Chunk index backed by FAISS.

    Add chunks via build_from_chunks(), then call save().
    Load a persisted index via FaissChunkStore.load().
    """

    def __init__(self, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.faiss_index: faiss.IndexFlatIP = faiss.IndexFlatIP(dimensions)
        self.chunks: list[Chunk] = []
        self.sources: dict[str, SourceInfo] = {}

    # --- Build ----------------------------------------------------------------

    def build_from_chunks(
        self,
        chunks: list[Chunk],
        embeddings: np.ndarray,
        sources: Iterable[SourceInfo] = (),
    ) -> None:
        """
        Populate the index from chunks and their pre-computed embeddings.

        Args:
            chunks:     List of Chunk objects.
            embeddings: Float32 array of shape (len(chunks), dimensions).
            sources:    Parent-source metadata to denormalise onto results.
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks vs {len(embeddings)} embeddings"
            )

        matrix = np.ascontiguousarray(embeddings, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimensions:
            raise ValueError(
                f"Embeddings must have shape (N, {self.dimensions}), got {matrix.shape}"
            )

        logger.info(f"[VectorStore] Building index from {len(chunks)} chunks...")

        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)
        self.faiss_index.add((matrix / norms).astype(np.float32))
        self.chunks.extend(chunks)
        for source in sources:
            self.sources[source.source_id] = source

        logger.info(
            f"[VectorStore] Index size: {self.faiss_index.ntotal} vectors | "
            f"{len(self.sources)} sources"
        )

    # --- Search ---------------------------------------------------------------

    def search(
        self,
        query_embedding: Sequence[float],
        constraints: SearchConstraints | None = None,
    ) -> list[SearchCandidate]:
        """
        Return up to `limit` candidates at or above the similarity threshold,
        optionally restricted to an allow-list of sources.

        Results are sorted by similarity descending.
        """
        constraints = constraints or SearchConstraints()
        constraints.validate()

        query = np.asarray(query_embedding, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dimensions:
            raise InvalidQuery(
                f"Query embedding has {query.shape[0]} dimensions, index expects {self.dimensions}"
            )
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            raise InvalidQuery("Query embedding is a zero vector")

        allowed = set(constraints.source_ids) if constraints.source_ids is not None else None
        if allowed is not None and not allowed:
            return []

        total = self.faiss_index.ntotal
        if total == 0:
            return []

        qv = np.ascontiguousarray((query / norm).reshape(1, -1), dtype=np.float32)
        limit = constraints.limit
        threshold = constraints.similarity_threshold

        # With an allow-list, widen k until enough allowed hits are found
        k = min(total, limit if allowed is None else limit * 4)
        while True:
            try:
                scores, indices = self.faiss_index.search(qv, k)
            except RuntimeError as exc:
                raise StoreUnavailable(f"FAISS search failed: {exc}") from exc

            results: list[SearchCandidate] = []
            below_threshold = False
            for score, idx in zip(scores[0], indices[0]):
                if idx < 0:
                    continue
                if score < threshold:
                    below_threshold = True
                    break
                chunk = self.chunks[idx]
                if allowed is not None and chunk.source_id not in allowed:
                    continue
                results.append(self._to_candidate(int(idx), float(score)))
                if len(results) >= limit:
                    break

            if len(results) >= limit or below_threshold or k >= total:
                break
            k = min(total, k * 2)

        logger.debug(
            f"[VectorStore] {len(results)} candidates | k={k} | "
            f"threshold={threshold} | filter={'all' if allowed is None else len(allowed)}"
        )
        return results

    def _to_candidate(self, idx: int, score: float) -> SearchCandidate:
        chunk = self.chunks[idx]
        candidate = SearchCandidate.from_chunk(
            chunk,
            similarity=max(0.0, min(1.0, score)),
            source=self.sources.get(chunk.source_id),
        )
        candidate.embedding = self.faiss_index.reconstruct(idx).tolist()
        return candidate

    def source_ids(self) -> list[str]:
        return sorted({c.source_id for c in self.chunks})

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path = INDEX_DIR) -> None:
        """Persist FAISS index + chunk metadata + source metadata to disk."""
        index_dir = Path(index_dir)
        ensure_dirs(index_dir)

        faiss.write_index(self.faiss_index, str(index_dir / "faiss.index"))
        save_json([c.model_dump(mode="json") for c in self.chunks], index_dir / "chunks.json")
        save_json(
            [s.model_dump(mode="json") for s in self.sources.values()],
            index_dir / "sources.json",
        )
        save_json(
            {
                "total_vectors": self.faiss_index.ntotal,
                "dimensions": self.dimensions,
                "total_chunks": len(self.chunks),
                "total_sources": len(self.sources),
            },
            index_dir / "index_manifest.json",
        )
        logger.info(
            f"[VectorStore] Saved {self.faiss_index.ntotal} vectors, "
            f"{len(self.chunks)} chunks -> {index_dir}"
        )

    @classmethod
    def load(cls, index_dir: Path = INDEX_DIR) -> "FaissChunkStore":
        """Load a persisted index from disk."""
        index_dir = Path(index_dir)
        try:
            faiss_index = faiss.read_index(str(index_dir / "faiss.index"))
            raw_chunks = load_json(index_dir / "chunks.json")
            sources_path = index_dir / "sources.json"
            raw_sources = load_json(sources_path) if sources_path.exists() else []
        except (OSError, RuntimeError) as exc:
            raise StoreUnavailable(f"Cannot load vector index from {index_dir}: {exc}") from exc

        instance = cls(dimensions=faiss_index.d)
        instance.faiss_index = faiss_index
        instance.chunks = [Chunk(**c) for c in raw_chunks]
        instance.sources = {s["source_id"]: SourceInfo(**s) for s in raw_sources}

        logger.info(
            f"[VectorStore] Loaded: {instance.faiss_index.ntotal} vectors, "
            f"{len(instance.chunks)} chunks"
        )
        return instance

    @property
    def is_built(self) -> bool:
        return self.faiss_index.ntotal > 0
