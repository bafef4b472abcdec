from pydantic import BaseModel

class TextChunk(BaseModel):
    index: int                       # zero-based position in the document
    text: str
    token_count: int

class StoredChunk(BaseModel):
    document_id: str
    job_id: str
    index: int
    text: str
    embedding: list[float]
    token_count: int = 0
    created_at: str | None = None

class ScoredChunk(BaseModel):
    document_id: str
    doc_title: str
    chunk_index: int
    text: str
    score: float                     # cosine similarity in [-1, 1]
