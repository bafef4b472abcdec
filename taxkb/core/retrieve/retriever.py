import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from taxkb.config.settings import settings
from taxkb.core.errors import RetrievalUnavailable
from taxkb.models.chunk import ScoredChunk
from taxkb.storage.base import ChunkStore, VectorIndex

logger = logging.getLogger(__name__)

_CONFIGURED = object()


class Retriever(ABC):
    """Returns the top-k chunks in a tenant's scope, most similar first."""

    @abstractmethod
    def search(self, query_vector: List[float], org_id: Optional[str], k: Optional[int] = None) -> List[ScoredChunk]:
        pass


class IndexedRetriever(Retriever):
    """Delegates to the server-side similarity index."""

    def __init__(self, index: VectorIndex, threshold: Optional[float] = None):
        self.index = index
        self.config = settings.retrieval
        self.threshold = self.config.match_threshold if threshold is None else threshold

    def search(self, query_vector, org_id, k=None):
        k = k or self.config.match_count
        return self.index.search(query_vector, org_id, top_k=k, score_threshold=self.threshold)


class BruteForceRetriever(Retriever):
    """
    In-process cosine similarity over a bounded candidate set.
    O(n) per query: meant for small corpora or when the index is down.
    Applies the same threshold as the index so both paths rank identically.
    """

    def __init__(self,
                 chunk_store: ChunkStore,
                 threshold: Optional[float] = None,
                 candidate_limit=_CONFIGURED):
        self.chunk_store = chunk_store
        self.config = settings.retrieval
        self.threshold = self.config.match_threshold if threshold is None else threshold
        # None means unbounded
        self.candidate_limit = self.config.fallback_candidate_limit if candidate_limit is _CONFIGURED else candidate_limit

    def search(self, query_vector, org_id, k=None):
        k = k or self.config.match_count
        candidates = self.chunk_store.load_candidates(org_id, self.candidate_limit)
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        matrix = np.asarray([c.embedding for c, _ in candidates], dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            raise ValueError(
                f"Query vector has {query.shape[0]} dimensions but stored chunks have {matrix.shape[-1]}"
            )

        scores = cosine_similarity(query, matrix)

        scored = []
        for (chunk, title), score in zip(candidates, scores):
            if self.threshold is not None and score < self.threshold:
                continue
            scored.append(ScoredChunk(
                document_id=chunk.document_id,
                doc_title=title or "Unknown Document",
                chunk_index=chunk.index,
                text=chunk.text,
                score=float(score)
            ))

        scored.sort(key=lambda c: (-c.score, c.document_id, c.chunk_index))
        return scored[:k]


class FallbackRetriever(Retriever):
    """Uses the primary retriever, switching transparently to the fallback when it is unavailable."""

    def __init__(self, primary: Retriever, fallback: Retriever):
        self.primary = primary
        self.fallback = fallback

    def search(self, query_vector, org_id, k=None):
        try:
            return self.primary.search(query_vector, org_id, k)
        except RetrievalUnavailable as e:
            logger.warning(f"Similarity index unavailable, using brute-force fallback: {e}")
            return self.fallback.search(query_vector, org_id, k)


def cosine_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one vector against each row; zero vectors score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(scores, -1.0, 1.0)


def build_retriever(index: Optional[VectorIndex], chunk_store: ChunkStore) -> Retriever:
    """Capability probe: use the index when it answers, otherwise brute force only."""
    brute_force = BruteForceRetriever(chunk_store)
    if index is None or not index.is_available():
        logger.warning("No similarity index available; retrieval will use brute-force search")
        return brute_force
    return FallbackRetriever(IndexedRetriever(index), brute_force)
