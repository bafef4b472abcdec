from pydantic import BaseModel, Field

class QueryRequest(BaseModel):
    question: str = Field(min_length=1)
    org_id: str | None = None               # None = only globally shared documents
    session_id: str | None = None
    top_k: int | None = None

class Citation(BaseModel):
    title: str
    ref: str                         # "§4"
    chunk_index: int
    resolved: bool = False
    document_id: str | None = None
    text: str | None = None          # full chunk text, preview only
    score: float | None = None

class ChunkPreview(BaseModel):
    text: str
    score: float
    doc_title: str
    chunk_index: int

class QueryResponse(BaseModel):
    question: str
    answer: str
    citations: list[Citation]
    chunks: list[ChunkPreview]
    grounded: bool
    model_used: str | None = None
    session_record_id: str | None = None

class QASessionRecord(BaseModel):
    record_id: str
    session_id: str | None = None
    user_id: str
    org_id: str | None = None
    question: str
    answer: str
    citations: list[Citation]
    created_at: str

class ChatMessage(BaseModel):
    role: str
    content: str

class AdvisorChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
