import logging
import uuid
from typing import List, Optional
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest
from taxkb.config.settings import settings
from taxkb.core.errors import RetrievalUnavailable, StoreError
from taxkb.models.chunk import ScoredChunk, StoredChunk
from taxkb.models.document import DocumentRecord
from taxkb.storage.base import VectorIndex

logger = logging.getLogger(__name__)

# Payload scope value for documents shared across all tenants
GLOBAL_SCOPE = "__global__"

UPSERT_BATCH_SIZE = 256


def point_id(document_id: str, job_id: str, chunk_index: int) -> str:
    """Deterministic Qdrant point ID for a (document, job, index) chunk."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"taxkb:{document_id}:{job_id}:{chunk_index}"))


def build_client() -> QdrantClient:
    config = settings.qdrant
    if config.mode == "memory":
        return QdrantClient(location=":memory:")
    if config.mode == "cloud":
        return QdrantClient(url=config.cloud_url, api_key=settings.qdrant_api_key or None)
    return QdrantClient(path=config.local_path)


class QdrantVectorIndex(VectorIndex):
    """
    Server-side similarity index over the chunks of each document's active job.
    Payload carries everything a search result needs, so no join is required.
    """

    def __init__(self,
                 client: Optional[QdrantClient] = None,
                 collection_name: Optional[str] = None,
                 vector_dim: Optional[int] = None):
        self.config = settings.qdrant
        self.client = client or build_client()
        self.collection_name = collection_name or self.config.collection_name
        self.vector_dim = vector_dim or settings.embedding.vector_dim
        self._ensure_collection()

    def _ensure_collection(self):
        if not self.collection_exists():
            logger.info(f"Creating Qdrant collection: {self.collection_name}")
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=rest.VectorParams(
                    size=self.vector_dim,
                    distance=rest.Distance.COSINE
                ),
                hnsw_config=rest.HnswConfigDiff(
                    m=self.config.hnsw_m,
                    ef_construct=self.config.hnsw_ef_construct
                )
            )
            # Create payload indexes for faster filtering
            for field in ["document_id", "job_id", "scope"]:
                self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field,
                    field_schema=rest.PayloadSchemaType.KEYWORD
                )

    def collection_exists(self) -> bool:
        collections = self.client.get_collections().collections
        return any(c.name == self.collection_name for c in collections)

    def is_available(self) -> bool:
        try:
            return self.collection_exists()
        except Exception as e:
            logger.warning(f"Qdrant index unavailable: {e}")
            return False

    def replace_document(self, document: DocumentRecord, chunks: List[StoredChunk]) -> None:
        job_ids = {c.job_id for c in chunks}
        if len(job_ids) > 1:
            raise StoreError(f"Cannot publish chunks from several jobs at once: {sorted(job_ids)}")

        points = [
            rest.PointStruct(
                id=point_id(c.document_id, c.job_id, c.index),
                vector=c.embedding,
                payload={
                    "document_id": c.document_id,
                    "job_id": c.job_id,
                    "chunk_index": c.index,
                    "title": document.title,
                    "text": c.text,
                    "scope": document.org_id or GLOBAL_SCOPE
                }
            )
            for c in chunks
        ]

        try:
            for start in range(0, len(points), UPSERT_BATCH_SIZE):
                self.client.upsert(
                    collection_name=self.collection_name,
                    points=points[start:start + UPSERT_BATCH_SIZE]
                )

            # Upsert first, then drop other generations, so the document never disappears
            stale_filter = [rest.FieldCondition(key="document_id", match=rest.MatchValue(value=document.document_id))]
            must_not = [rest.FieldCondition(key="job_id", match=rest.MatchValue(value=j)) for j in job_ids]
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=rest.FilterSelector(
                    filter=rest.Filter(must=stale_filter, must_not=must_not or None)
                )
            )
        except Exception as e:
            raise StoreError(f"Failed to index chunks for {document.document_id}: {e}") from e

    def search(self,
               vector: List[float],
               org_id: Optional[str],
               top_k: int,
               score_threshold: Optional[float] = None) -> List[ScoredChunk]:
        scopes = [GLOBAL_SCOPE] if org_id is None else [org_id, GLOBAL_SCOPE]
        query_filter = rest.Filter(must=[
            rest.FieldCondition(key="scope", match=rest.MatchAny(any=scopes))
        ])

        try:
            results = self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                limit=top_k,
                query_filter=query_filter,
                score_threshold=score_threshold,
                with_payload=True,
                search_params=rest.SearchParams(
                    hnsw_ef=self.config.hnsw_ef
                )
            ).points
        except Exception as e:
            raise RetrievalUnavailable(f"Qdrant query failed: {e}") from e

        return [
            ScoredChunk(
                document_id=r.payload["document_id"],
                doc_title=r.payload.get("title") or "Unknown Document",
                chunk_index=r.payload["chunk_index"],
                text=r.payload.get("text", ""),
                score=r.score
            )
            for r in results
        ]

    def delete_document(self, document_id: str) -> None:
        try:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=rest.FilterSelector(
                    filter=rest.Filter(
                        must=[
                            rest.FieldCondition(
                                key="document_id",
                                match=rest.MatchValue(value=document_id)
                            )
                        ]
                    )
                )
            )
        except Exception as e:
            raise StoreError(f"Failed to delete vectors for {document_id}: {e}") from e
