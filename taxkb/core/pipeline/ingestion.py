import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from taxkb.config.settings import settings
from taxkb.core.chunk.chunker import Chunker
from taxkb.core.embed.embedder import EmbeddingClient
from taxkb.core.errors import (DocumentNotFoundError, ExtractionError, IngestTimeout,
                               StoreError, TaxKBError)
from taxkb.core.parse.pdf_extractor import PDFTextExtractor
from taxkb.models.chunk import StoredChunk
from taxkb.models.document import DocumentRecord, IngestAck, IngestJob
from taxkb.storage.base import ChunkStore, DocumentStore, JobStore, VectorIndex

logger = logging.getLogger(__name__)


class Deadline:
    """Wall-clock budget of one ingest run, checked cooperatively between batches."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self.clock = clock
        self.started = clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def expired(self) -> bool:
        return self.elapsed() > self.budget_seconds

    def check(self) -> None:
        if self.expired():
            raise IngestTimeout(
                f"Processing timeout after {int(self.elapsed())}s. "
                "Try uploading a smaller document or splitting it into parts."
            )


class IngestWorkerPool:
    """Background executor for ingest runs; the triggering request never waits on it."""

    def __init__(self, max_workers: Optional[int] = None):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.ingestion.max_workers,
            thread_name_prefix="ingest"
        )

    def submit(self, fn: Callable, *args) -> Future:
        return self.executor.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


class IngestJobController:
    """
    Orchestrates one document's ingestion:
    extract -> chunk -> (embed -> store -> progress) per batch -> publish
    Every failure ends in a terminal `failed` job; nothing is raised to the uploader.
    """

    def __init__(self,
                 documents: DocumentStore,
                 jobs: JobStore,
                 chunks: ChunkStore,
                 index: Optional[VectorIndex] = None,
                 extractor: Optional[PDFTextExtractor] = None,
                 chunker: Optional[Chunker] = None,
                 embedder: Optional[EmbeddingClient] = None,
                 worker_pool: Optional[IngestWorkerPool] = None,
                 batch_size: Optional[int] = None,
                 timeout_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.documents = documents
        self.jobs = jobs
        self.chunks = chunks
        self.index = index
        self.extractor = extractor or PDFTextExtractor()
        self.chunker = chunker or Chunker()
        self.embedder = embedder or EmbeddingClient()
        self.worker_pool = worker_pool or IngestWorkerPool()
        self.batch_size = batch_size or settings.ingestion.batch_size
        self.timeout_seconds = timeout_seconds or settings.ingestion.timeout_seconds
        self.clock = clock

        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    def start(self, document_id: str) -> IngestAck:
        """
        Creates the `processing` job and hands the run to the worker pool.
        Raises DocumentNotFoundError / JobConflictError synchronously; everything
        after the acknowledgement is reported through the job record only.
        """
        if self.documents.get_document(document_id) is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        job = self.jobs.create_job(document_id)
        logger.info(f"[{job.job_id}] Received ingestion request for document: {document_id}")

        future = self.worker_pool.submit(self.run, job.job_id)
        with self._futures_lock:
            self._futures[job.job_id] = future
        future.add_done_callback(lambda _: self._forget(job.job_id))

        return IngestAck(job_id=job.job_id, document_id=document_id, status=job.status)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[IngestJob]:
        """Blocks until a background run finishes; returns the final job record."""
        with self._futures_lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.jobs.get_job(job_id)

    def _forget(self, job_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(job_id, None)

    def run(self, job_id: str) -> Optional[IngestJob]:
        # The budget covers the run itself, not time spent queued behind other jobs
        deadline = Deadline(self.timeout_seconds, self.clock)
        job = self.jobs.get_job(job_id)
        if job is None:
            logger.error(f"[{job_id}] Ingest job vanished before processing started")
            return None

        try:
            document = self.documents.get_document(job.document_id)
            if document is None:
                raise DocumentNotFoundError(f"Document {job.document_id} not found")
            return self._process(job, document, deadline)
        except TaxKBError as e:
            logger.error(f"[{job_id}] Processing failed after {int(deadline.elapsed())}s: {e}")
            return self._fail(job_id, str(e))
        except Exception as e:
            logger.exception(f"[{job_id}] Unexpected error in background processing")
            return self._fail(job_id, f"Unexpected error occurred during processing: {e}")

    def _fail(self, job_id: str, message: str) -> Optional[IngestJob]:
        try:
            return self.jobs.mark_failed(job_id, message)
        except StoreError:
            logger.exception(f"[{job_id}] Could not record failure: {message}")
            return None

    def _restore_index(self, document: DocumentRecord, previous_job_id: Optional[str]) -> None:
        """Puts the index back on the generation SQL still points at."""
        if self.index is None:
            return
        try:
            if previous_job_id:
                self.index.replace_document(document, self.chunks.list_chunks(document.document_id, previous_job_id))
            else:
                self.index.delete_document(document.document_id)
        except StoreError:
            logger.exception(f"Could not restore index for document {document.document_id}")

    def _process(self, job: IngestJob, document: DocumentRecord, deadline: Deadline) -> IngestJob:
        job_id = job.job_id
        logger.info(f"[{job_id}] Processing document: {document.title}, location: {document.file_location}")

        # 1. Extraction
        text = self.extractor.extract(document.file_location)
        logger.info(f"[{job_id}] Successfully extracted {len(text)} characters from PDF")

        # 2. Chunking
        text_chunks = self.chunker.chunk(text)
        if not text_chunks:
            raise ExtractionError("No text chunks created from document")
        total = len(text_chunks)
        total_batches = (total + self.batch_size - 1) // self.batch_size
        logger.info(f"[{job_id}] Created {total} chunks to process in {total_batches} batches")

        # 3. Embed + store, one batch at a time so progress stays monotonic
        processed = 0
        for batch_number, start in enumerate(range(0, total, self.batch_size), 1):
            deadline.check()

            batch = text_chunks[start:start + self.batch_size]
            logger.info(
                f"[{job_id}] Processing batch {batch_number}/{total_batches} "
                f"(chunks {start + 1}-{start + len(batch)})"
            )

            embeddings = self.embedder.embed_batch([c.text for c in batch])
            self.chunks.insert_batch([
                StoredChunk(
                    document_id=document.document_id,
                    job_id=job_id,
                    index=c.index,
                    text=c.text,
                    embedding=vector,
                    token_count=c.token_count
                )
                for c, vector in zip(batch, embeddings)
            ])

            processed += len(batch)
            updated = self.jobs.update_progress(job_id, processed, total)
            logger.info(f"[{job_id}] Batch complete: {processed}/{total} chunks processed ({updated.progress}%)")

        # 4. Publish the new generation, then retire older ones
        previous_job_id = document.active_job_id
        if self.index is not None:
            self.index.replace_document(document, self.chunks.list_chunks(document.document_id, job_id))
        try:
            self.documents.set_active_job(document.document_id, job_id)
        except StoreError:
            self._restore_index(document, previous_job_id)
            raise
        completed = self.jobs.mark_completed(job_id)

        # The job is already completed; leftover generations are invisible and go with the next purge
        try:
            purged = self.chunks.purge_inactive(document.document_id)
            if purged:
                logger.info(f"[{job_id}] Removed {purged} chunks from superseded or failed runs")
        except StoreError as e:
            logger.warning(f"[{job_id}] Could not purge stale chunks for {document.document_id}: {e}")

        logger.info(
            f"[{job_id}] Ingestion completed for document: {document.document_id} "
            f"in {int(deadline.elapsed())}s ({processed} chunks)"
        )
        return completed
