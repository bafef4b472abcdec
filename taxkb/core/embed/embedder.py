import logging
from typing import List, Optional
import httpx
from taxkb.config.settings import settings
from taxkb.core.errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

class EmbeddingClient:
    """
    Client for an OpenAI-compatible /embeddings endpoint.
    - One HTTP call per batch; output[i] is the embedding of input[i].
    - A batch either succeeds as a whole or raises EmbeddingServiceError.
    - No retries: ingestion treats an embedding failure as fatal for the run.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.config = settings.embedding
        self.api_key = api_key if api_key is not None else settings.embedding_api_key
        self.url = f"{self.config.base_url.rstrip('/')}/embeddings"
        self.headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "Content-Type": "application/json"
        }

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        if not self.api_key:
            logger.warning("EMBEDDING_API_KEY is not set. Embedding calls will fail.")

        payload = {"model": self.config.model_name, "input": list(texts)}

        try:
            with httpx.Client(timeout=self.config.timeout_seconds) as client:
                response = client.post(self.url, headers=self.headers, json=payload)
        except httpx.TimeoutException as e:
            raise EmbeddingServiceError(f"Embedding request timed out after {self.config.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            raise EmbeddingServiceError(f"Embedding request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"Batch embedding API error: {response.status_code} {response.text}")
            raise EmbeddingServiceError(
                f"Failed to generate embeddings: {response.status_code} - {response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingServiceError("Invalid response from embedding API: body is not JSON") from e

        return self._parse_vectors(data, expected=len(texts))

    def embed_query(self, query: str) -> List[float]:
        """Generates an embedding for a single question."""
        return self.embed_batch([query])[0]

    def _parse_vectors(self, data, expected: int) -> List[List[float]]:
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise EmbeddingServiceError("Invalid response from embedding API: missing 'data' list")
        if len(items) != expected:
            raise EmbeddingServiceError(
                f"Invalid response from embedding API: expected {expected} embeddings, got {len(items)}"
            )

        # The service may return items out of order; 'index' is authoritative when present
        if all(isinstance(item, dict) and isinstance(item.get("index"), int) for item in items):
            items = sorted(items, key=lambda item: item["index"])
            if [item["index"] for item in items] != list(range(expected)):
                raise EmbeddingServiceError("Invalid response from embedding API: indices do not match input")

        vectors = []
        for position, item in enumerate(items):
            vector = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(vector, list) or not vector or not all(
                isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector
            ):
                raise EmbeddingServiceError(
                    f"Invalid response from embedding API: item {position} has no numeric embedding"
                )
            vectors.append([float(v) for v in vector])

        dims = {len(v) for v in vectors}
        if len(dims) != 1:
            raise EmbeddingServiceError(f"Invalid response from embedding API: inconsistent dimensions {sorted(dims)}")

        return vectors
