from pydantic import BaseModel
from enum import Enum

class IngestionStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

TERMINAL_STATUSES = (IngestionStatus.completed, IngestionStatus.failed)

class IngestJob(BaseModel):
    job_id: str
    document_id: str
    status: IngestionStatus
    progress: int                    # 0–100
    error_message: str | None = None
    chunks_total: int = 0
    chunks_processed: int = 0
    started_at: str
    finished_at: str | None = None

class IngestAck(BaseModel):
    job_id: str
    document_id: str
    status: IngestionStatus
    message: str = "Document ingestion started"

class DocumentRecord(BaseModel):
    document_id: str
    title: str
    source_url: str | None = None
    file_location: str
    org_id: str | None = None        # None = globally shared
    uploaded_by: str | None = None
    created_at: str
    active_job_id: str | None = None

class UploadResponse(BaseModel):
    document: DocumentRecord
    job: IngestAck

class IngestRequest(BaseModel):
    document_id: str
