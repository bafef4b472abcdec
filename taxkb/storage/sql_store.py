import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from taxkb.core.errors import JobConflictError, StoreError
from taxkb.models.chunk import StoredChunk
from taxkb.models.document import DocumentRecord, IngestJob, IngestionStatus
from taxkb.models.query import Citation, QASessionRecord
from taxkb.storage.base import ChunkStore, DocumentStore, JobStore, SessionLog
from taxkb.storage.database import (ChunkRow, Database, DocumentRow, IngestJobRow,
                                    QASessionRow, utcnow)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (IngestionStatus.pending.value, IngestionStatus.processing.value)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_document(row: DocumentRow) -> DocumentRecord:
    return DocumentRecord(
        document_id=row.id,
        title=row.title,
        source_url=row.source_url,
        file_location=row.file_location,
        org_id=row.org_id,
        uploaded_by=row.uploaded_by,
        created_at=_iso(row.created_at),
        active_job_id=row.active_job_id
    )


def _to_job(row: IngestJobRow) -> IngestJob:
    return IngestJob(
        job_id=row.id,
        document_id=row.document_id,
        status=IngestionStatus(row.status),
        progress=row.progress,
        error_message=row.error_message,
        chunks_total=row.chunks_total,
        chunks_processed=row.chunks_processed,
        started_at=_iso(row.started_at),
        finished_at=_iso(row.finished_at)
    )


def _to_chunk(row: ChunkRow) -> StoredChunk:
    return StoredChunk(
        document_id=row.document_id,
        job_id=row.job_id,
        index=row.chunk_index,
        text=row.text,
        embedding=row.embedding,
        token_count=row.token_count,
        created_at=_iso(row.created_at)
    )


class SQLDocumentStore(DocumentStore):
    def __init__(self, db: Database):
        self.db = db

    def create_document(self, title, file_location, org_id=None, uploaded_by=None,
                        source_url=None, document_id=None) -> DocumentRecord:
        try:
            with self.db.session_scope() as session:
                row = DocumentRow(
                    id=document_id or str(uuid.uuid4()),
                    title=title,
                    file_location=file_location,
                    org_id=org_id,
                    uploaded_by=uploaded_by,
                    source_url=source_url,
                    created_at=utcnow()
                )
                session.add(row)
                session.flush()
                return _to_document(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create document: {e}") from e

    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        with self.db.session_scope() as session:
            row = session.get(DocumentRow, document_id)
            return _to_document(row) if row else None

    def list_documents(self, org_id: Optional[str] = None) -> List[DocumentRecord]:
        with self.db.session_scope() as session:
            stmt = select(DocumentRow).where(_scope_clause(org_id)).order_by(DocumentRow.created_at.desc())
            return [_to_document(r) for r in session.scalars(stmt)]

    def set_active_job(self, document_id: str, job_id: str) -> None:
        try:
            with self.db.session_scope() as session:
                row = session.get(DocumentRow, document_id)
                if row is None:
                    raise StoreError(f"Document {document_id} no longer exists")
                row.active_job_id = job_id
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to publish job {job_id} for document {document_id}: {e}") from e

    def delete_document(self, document_id: str) -> bool:
        try:
            with self.db.session_scope() as session:
                row = session.get(DocumentRow, document_id)
                if row is None:
                    return False
                session.delete(row)
                return True
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete document {document_id}: {e}") from e


class SQLJobStore(JobStore):
    """
    Job rows keyed by job id. Creation is serialised per document with an
    in-process lock; the partial unique index covers other processes.
    """

    def __init__(self, db: Database):
        self.db = db
        # document_id -> [lock, holders]; an entry lives only while someone holds or waits on it
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _document_lock(self, document_id: str):
        with self._locks_guard:
            entry = self._locks.setdefault(document_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[document_id]

    def create_job(self, document_id: str) -> IngestJob:
        with self._document_lock(document_id):
            try:
                with self.db.session_scope() as session:
                    active = session.scalars(
                        select(IngestJobRow.id)
                        .where(IngestJobRow.document_id == document_id)
                        .where(IngestJobRow.status.in_(ACTIVE_STATUSES))
                    ).first()
                    if active is not None:
                        raise JobConflictError(
                            f"Document {document_id} already has an active ingest job ({active})"
                        )

                    row = IngestJobRow(
                        id=str(uuid.uuid4()),
                        document_id=document_id,
                        status=IngestionStatus.processing.value,
                        progress=0,
                        started_at=utcnow()
                    )
                    session.add(row)
                    session.flush()
                    return _to_job(row)
            except IntegrityError as e:
                raise JobConflictError(f"Document {document_id} already has an active ingest job") from e
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to create ingest job: {e}") from e

    def get_job(self, job_id: str) -> Optional[IngestJob]:
        with self.db.session_scope() as session:
            row = session.get(IngestJobRow, job_id)
            return _to_job(row) if row else None

    def list_jobs(self, document_id: str) -> List[IngestJob]:
        with self.db.session_scope() as session:
            stmt = (select(IngestJobRow)
                    .where(IngestJobRow.document_id == document_id)
                    .order_by(IngestJobRow.started_at.desc()))
            return [_to_job(r) for r in session.scalars(stmt)]

    def _update(self, job_id: str, **fields) -> IngestJob:
        try:
            with self.db.session_scope() as session:
                row = session.get(IngestJobRow, job_id)
                if row is None:
                    raise StoreError(f"Ingest job {job_id} not found")
                # completed and failed are final
                if row.status not in ACTIVE_STATUSES:
                    raise StoreError(f"Ingest job {job_id} is already {row.status}")
                for key, value in fields.items():
                    setattr(row, key, value)
                session.flush()
                return _to_job(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update ingest job {job_id}: {e}") from e

    def update_progress(self, job_id: str, processed: int, total: int) -> IngestJob:
        # 100 is reserved for the completed state
        progress = min(99, int(processed * 100 / total)) if total else 0
        return self._update(job_id, chunks_processed=processed, chunks_total=total, progress=progress)

    def mark_completed(self, job_id: str) -> IngestJob:
        return self._update(
            job_id,
            status=IngestionStatus.completed.value,
            progress=100,
            error_message=None,
            finished_at=utcnow()
        )

    def mark_failed(self, job_id: str, message: str) -> IngestJob:
        return self._update(
            job_id,
            status=IngestionStatus.failed.value,
            error_message=message,
            finished_at=utcnow()
        )

    def fail_interrupted(self, message: str) -> int:
        try:
            with self.db.session_scope() as session:
                rows = session.scalars(
                    select(IngestJobRow).where(IngestJobRow.status.in_(ACTIVE_STATUSES))
                ).all()
                for row in rows:
                    row.status = IngestionStatus.failed.value
                    row.error_message = message
                    row.finished_at = utcnow()
                return len(rows)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to close interrupted ingest jobs: {e}") from e



class SQLChunkStore(ChunkStore):
    def __init__(self, db: Database):
        self.db = db

    def insert_batch(self, chunks: List[StoredChunk]) -> None:
        if not chunks:
            return
        try:
            with self.db.session_scope() as session:
                session.add_all([
                    ChunkRow(
                        document_id=c.document_id,
                        job_id=c.job_id,
                        chunk_index=c.index,
                        text=c.text,
                        embedding=c.embedding,
                        token_count=c.token_count,
                        created_at=utcnow()
                    )
                    for c in chunks
                ])
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert chunks: {e}") from e

    def list_chunks(self, document_id: str, job_id: Optional[str] = None) -> List[StoredChunk]:
        with self.db.session_scope() as session:
            stmt = select(ChunkRow).where(ChunkRow.document_id == document_id)
            if job_id is not None:
                stmt = stmt.where(ChunkRow.job_id == job_id)
            stmt = stmt.order_by(ChunkRow.job_id, ChunkRow.chunk_index)
            return [_to_chunk(r) for r in session.scalars(stmt)]

    def count(self, document_id: str, job_id: Optional[str] = None) -> int:
        with self.db.session_scope() as session:
            stmt = select(func.count(ChunkRow.id)).where(ChunkRow.document_id == document_id)
            if job_id is not None:
                stmt = stmt.where(ChunkRow.job_id == job_id)
            return session.scalar(stmt) or 0

    def load_candidates(self, org_id: Optional[str], limit: Optional[int]) -> List[Tuple[StoredChunk, str]]:
        try:
            with self.db.session_scope() as session:
                stmt = (select(ChunkRow, DocumentRow.title)
                        .join(DocumentRow, ChunkRow.document_id == DocumentRow.id)
                        .where(ChunkRow.job_id == DocumentRow.active_job_id)
                        .where(_scope_clause(org_id))
                        .order_by(ChunkRow.document_id, ChunkRow.chunk_index))
                if limit is not None:
                    stmt = stmt.limit(limit)
                return [(_to_chunk(row), title) for row, title in session.execute(stmt)]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load candidate chunks: {e}") from e

    def purge_inactive(self, document_id: str) -> int:
        try:
            with self.db.session_scope() as session:
                document = session.get(DocumentRow, document_id)
                if document is None:
                    return 0
                keep = set(session.scalars(
                    select(IngestJobRow.id)
                    .where(IngestJobRow.document_id == document_id)
                    .where(IngestJobRow.status.in_(ACTIVE_STATUSES))
                ))
                if document.active_job_id:
                    keep.add(document.active_job_id)

                stmt = delete(ChunkRow).where(ChunkRow.document_id == document_id)
                if keep:
                    stmt = stmt.where(ChunkRow.job_id.not_in(keep))
                result = session.execute(stmt)
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to purge stale chunks for {document_id}: {e}") from e


class SQLSessionLog(SessionLog):
    """Append-only audit log of question/answer exchanges."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, question, answer, citations, user_id, session_id=None, org_id=None) -> Optional[str]:
        """Never raises: a logging failure must not withhold an answer already computed."""
        record_id = str(uuid.uuid4())
        try:
            with self.db.session_scope() as session:
                session.add(QASessionRow(
                    id=record_id,
                    session_id=session_id,
                    user_id=user_id,
                    org_id=org_id,
                    question=question,
                    answer=answer,
                    # Preview text is transient; only the reference is persisted
                    citations=[c.model_dump(exclude={"text", "score"}) for c in citations],
                    created_at=utcnow()
                ))
            return record_id
        except Exception:
            logger.exception(f"Error saving QA session record for session {session_id}")
            return None

    def history(self, session_id: str) -> List[QASessionRecord]:
        with self.db.session_scope() as session:
            stmt = (select(QASessionRow)
                    .where(QASessionRow.session_id == session_id)
                    .order_by(QASessionRow.created_at))
            return [
                QASessionRecord(
                    record_id=r.id,
                    session_id=r.session_id,
                    user_id=r.user_id,
                    org_id=r.org_id,
                    question=r.question,
                    answer=r.answer,
                    citations=[Citation(**c) for c in (r.citations or [])],
                    created_at=_iso(r.created_at)
                )
                for r in session.scalars(stmt)
            ]


def _scope_clause(org_id: Optional[str]):
    """Tenant-owned documents plus globally shared ones (org_id NULL)."""
    if org_id is None:
        return DocumentRow.org_id.is_(None)
    return or_(DocumentRow.org_id == org_id, DocumentRow.org_id.is_(None))
