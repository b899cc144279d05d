"""Knowledge grounding: per-account chunk index and similarity search.

Documents are split into overlapping word windows, embedded through the
configured ``EmbeddingProvider`` and compared to the query by cosine
similarity. Only the best chunk of each source competes; a source is
accepted when that chunk clears the quality threshold.
"""

from __future__ import annotations

import hashlib
import logging
import math
import sqlite3
import threading
from dataclasses import dataclass, field

from replygate.ai.base import EmbeddingProvider
from replygate.config import GroundingConfig
from replygate.errors import CollaboratorError, GroundingUnavailable
from replygate.store import Store

logger = logging.getLogger(__name__)

THRESHOLDS = {
    "high": 0.75,
    "balanced": 0.70,
    "exploratory": 0.65,
}


@dataclass(frozen=True)
class GroundedSource:
    source: str
    chunk: str
    similarity: float


@dataclass
class GroundingResult:
    sources: list[GroundedSource] = field(default_factory=list)
    has_grounded_knowledge: bool = False
    threshold: float = THRESHOLDS["balanced"]
    total_sources: int = 0


def chunk_content(
    content: str,
    chunk_size: int = 512,
    overlap: int = 50,
    min_document_chars: int = 1000,
    min_chunk_chars: int = 50,
) -> list[str]:
    """Split a document into word windows of ``chunk_size`` with ``overlap``.

    Short documents stay whole. Chunks shorter than ``min_chunk_chars`` are
    dropped.
    """
    content = (content or "").strip()
    if len(content) <= min_document_chars:
        chunks = [content]
    else:
        words = content.split()
        step = max(1, chunk_size - overlap)
        chunks = []
        for start in range(0, len(words), step):
            chunks.append(" ".join(words[start:start + chunk_size]))
            if start + chunk_size >= len(words):
                break
    return [c for c in chunks if len(c) > min_chunk_chars]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingCache:
    """In-process embedding cache keyed by a SHA-256 of model and text.

    Unbounded. Concurrent writers for the same key may both compute; the
    last one wins, which is harmless since embeddings are deterministic.
    """

    def __init__(self):
        self._entries: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def fingerprint(text: str, model: str) -> str:
        return hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()

    def get(self, text: str, model: str) -> list[float] | None:
        key = self.fingerprint(text, model)
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self._misses += 1
            else:
                self._hits += 1
            return vector

    def put(self, text: str, model: str, vector: list[float]) -> None:
        with self._lock:
            self._entries[self.fingerprint(text, model)] = vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict:
        with self._lock:
            return {"entries": len(self._entries), "hits": self._hits, "misses": self._misses}


class GroundingEngine:
    def __init__(
        self,
        store: Store,
        embedder: EmbeddingProvider,
        model: str,
        config: GroundingConfig | None = None,
        cache: EmbeddingCache | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.model = model
        self.config = config or GroundingConfig()
        self.cache = cache or EmbeddingCache()

    def _embed(self, text: str) -> list[float]:
        cached = self.cache.get(text, self.model)
        if cached is not None:
            return cached
        try:
            vector = self.embedder.embed(text, self.model)
        except (CollaboratorError, ValueError) as e:
            raise GroundingUnavailable(f"Embedding failed: {e}") from e
        self.cache.put(text, self.model, vector)
        return vector

    def threshold_for(self, quality: str | None) -> float:
        quality = quality or self.config.quality
        if quality not in THRESHOLDS:
            raise ValueError(f"Unknown grounding quality {quality!r}; use one of {sorted(THRESHOLDS)}")
        return THRESHOLDS[quality]

    def index_document(self, account_id: str, source: str, content: str) -> int:
        """Replace a source's chunks and embed them. Returns the chunk count.

        Chunks are stored before embedding, so a failed embedding call leaves
        them to be embedded lazily on the next search.
        """
        chunks = chunk_content(
            content,
            chunk_size=self.config.chunk_size,
            overlap=self.config.chunk_overlap,
            min_document_chars=self.config.chunk_min_document_chars,
            min_chunk_chars=self.config.min_chunk_chars,
        )
        count = self.store.replace_chunks(account_id, source, chunks)
        for row in self.store.list_chunks(account_id):
            if row["source"] == source and row["embedding"] is None:
                self.store.set_chunk_embedding(row["id"], self._embed(row["content"]), self.model)
        logger.info("Indexed %d chunks from %s for account %s", count, source, account_id)
        return count

    def search(self, account_id: str, query: str, quality: str | None = None) -> GroundingResult:
        """Return up to ``top_k`` sources whose best chunk clears the threshold.

        Raises GroundingUnavailable when embeddings cannot be computed or the
        index cannot be read.
        """
        threshold = self.threshold_for(quality)
        try:
            return self._search(account_id, query, threshold)
        except (ValueError, sqlite3.Error) as e:
            raise GroundingUnavailable(f"Knowledge search failed: {e}") from e

    def _chunk_vector(self, row: dict) -> list[float]:
        """Stored vector, re-embedded when missing or made by another model."""
        vector = row["embedding"]
        if vector is None or row.get("embedding_model") != self.model:
            vector = self._embed(row["content"])
            self.store.set_chunk_embedding(row["id"], vector, self.model)
        return vector

    def _search(self, account_id: str, query: str, threshold: float) -> GroundingResult:
        rows = self.store.list_chunks(account_id)
        if not rows:
            return GroundingResult(threshold=threshold)

        query_vector = self._embed(query)
        best: dict[str, GroundedSource] = {}
        for row in rows:
            similarity = cosine_similarity(query_vector, self._chunk_vector(row))
            current = best.get(row["source"])
            if current is None or similarity > current.similarity:
                best[row["source"]] = GroundedSource(row["source"], row["content"], similarity)

        accepted = sorted(
            (s for s in best.values() if s.similarity >= threshold),
            key=lambda s: s.similarity,
            reverse=True,
        )[: self.config.top_k]
        return GroundingResult(
            sources=accepted,
            has_grounded_knowledge=bool(accepted),
            threshold=threshold,
            total_sources=len(best),
        )
