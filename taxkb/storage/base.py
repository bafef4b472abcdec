from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from taxkb.models.chunk import StoredChunk, ScoredChunk
from taxkb.models.document import DocumentRecord, IngestJob
from taxkb.models.query import Citation, QASessionRecord

class DocumentStore(ABC):
    @abstractmethod
    def create_document(self,
                        title: str,
                        file_location: str,
                        org_id: Optional[str] = None,
                        uploaded_by: Optional[str] = None,
                        source_url: Optional[str] = None,
                        document_id: Optional[str] = None) -> DocumentRecord:
        pass

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        pass

    @abstractmethod
    def list_documents(self, org_id: Optional[str] = None) -> List[DocumentRecord]:
        """Documents owned by the tenant plus globally shared ones."""
        pass

    @abstractmethod
    def set_active_job(self, document_id: str, job_id: str) -> None:
        pass

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        """Deletes the document with its chunks and jobs. Returns False if it did not exist."""
        pass

class JobStore(ABC):
    @abstractmethod
    def create_job(self, document_id: str) -> IngestJob:
        """Creates a `processing` job; raises JobConflictError if one is already active."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[IngestJob]:
        pass

    @abstractmethod
    def list_jobs(self, document_id: str) -> List[IngestJob]:
        pass

    @abstractmethod
    def update_progress(self, job_id: str, processed: int, total: int) -> IngestJob:
        pass

    @abstractmethod
    def mark_completed(self, job_id: str) -> IngestJob:
        pass

    @abstractmethod
    def mark_failed(self, job_id: str, message: str) -> IngestJob:
        pass

    @abstractmethod
    def fail_interrupted(self, message: str) -> int:
        """Fails every job left pending or processing by a previous process. Returns how many."""
        pass

class ChunkStore(ABC):
    @abstractmethod
    def insert_batch(self, chunks: List[StoredChunk]) -> None:
        """Persists one batch atomically: all rows or none."""
        pass

    @abstractmethod
    def list_chunks(self, document_id: str, job_id: Optional[str] = None) -> List[StoredChunk]:
        pass

    @abstractmethod
    def count(self, document_id: str, job_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def load_candidates(self, org_id: Optional[str], limit: Optional[int]) -> List[Tuple[StoredChunk, str]]:
        """Retrievable chunks in scope, paired with their document title."""
        pass

    @abstractmethod
    def purge_inactive(self, document_id: str) -> int:
        """Deletes chunks left behind by failed or superseded runs."""
        pass

class VectorIndex(ABC):
    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def replace_document(self, document: DocumentRecord, chunks: List[StoredChunk]) -> None:
        """Publishes a document's chunk generation, removing points of other generations."""
        pass

    @abstractmethod
    def search(self,
               vector: List[float],
               org_id: Optional[str],
               top_k: int,
               score_threshold: Optional[float] = None) -> List[ScoredChunk]:
        pass

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        pass

class SessionLog(ABC):
    @abstractmethod
    def record(self,
               question: str,
               answer: str,
               citations: List[Citation],
               user_id: str,
               session_id: Optional[str] = None,
               org_id: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def history(self, session_id: str) -> List[QASessionRecord]:
        pass

class FileStore(ABC):
    @abstractmethod
    def save_pdf(self, document_id: str, file_bytes: bytes) -> str:
        pass

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        pass
