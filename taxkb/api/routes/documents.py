import logging
import os
import uuid
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile

from taxkb.core.errors import StoreError
from taxkb.core.pipeline.ingestion import IngestJobController
from taxkb.models.document import DocumentRecord, IngestJob, UploadResponse
from taxkb.storage.base import DocumentStore, FileStore, JobStore

router = APIRouter()
logger = logging.getLogger(__name__)

# Dependencies for stores (from app.state)
def get_document_store(request: Request) -> DocumentStore:
    return request.app.state.document_store

def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store

def get_file_store(request: Request) -> FileStore:
    return request.app.state.file_store

def get_vector_index(request: Request):
    return getattr(request.app.state, "vector_index", None)

def get_ingest_controller(request: Request) -> IngestJobController:
    return request.app.state.ingest_controller

@router.post("/documents", response_model=UploadResponse, status_code=202,
             summary="Upload a PDF regulation and start ingesting it")
async def upload_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    org_id: Optional[str] = Form(None),
    source_url: Optional[str] = Form(None),
    uploaded_by: Optional[str] = Form(None),
    document_store: DocumentStore = Depends(get_document_store),
    file_store: FileStore = Depends(get_file_store),
    controller: IngestJobController = Depends(get_ingest_controller)
):
    """
    1. Saves the PDF via FileStore.
    2. Creates the document record.
    3. Starts ingestion; the response does not wait for it.
    """
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files are supported.")

    try:
        file_bytes = await file.read()
        document_id = str(uuid.uuid4())
        logger.info(f"Uploading file '{file.filename}' as document {document_id}")

        location = file_store.save_pdf(document_id, file_bytes)
        document = document_store.create_document(
            title=title or os.path.splitext(file.filename)[0],
            file_location=location,
            org_id=org_id,
            uploaded_by=uploaded_by,
            source_url=source_url,
            document_id=document_id
        )
        ack = controller.start(document.document_id)
        return UploadResponse(document=document, job=ack)

    except StoreError as e:
        logger.exception(f"Upload failed for {file.filename}")
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        await file.close()

@router.get("/documents", response_model=List[DocumentRecord], summary="List documents visible to a tenant")
def list_documents(org_id: Optional[str] = None,
                   document_store: DocumentStore = Depends(get_document_store)):
    try:
        return document_store.list_documents(org_id)
    except Exception:
        logger.exception("Failed to list documents.")
        raise HTTPException(status_code=500, detail="Could not retrieve documents from storage.")

@router.get("/documents/{document_id}/jobs", response_model=List[IngestJob],
            summary="Ingest jobs of a document, newest first")
def list_document_jobs(document_id: str,
                       document_store: DocumentStore = Depends(get_document_store),
                       job_store: JobStore = Depends(get_job_store)):
    if document_store.get_document(document_id) is None:
        raise HTTPException(status_code=404, detail="Document not found.")
    return job_store.list_jobs(document_id)

@router.delete("/documents/{document_id}", summary="Delete a document with its jobs, chunks, vectors and file")
def delete_document(
    document_id: str,
    document_store: DocumentStore = Depends(get_document_store),
    file_store: FileStore = Depends(get_file_store),
    vector_index=Depends(get_vector_index)
):
    """
    DELETION SEQUENCE:
    1. Vectors in the similarity index.
    2. Document row; jobs and chunks cascade.
    3. Original PDF via FileStore.
    """
    logger.info(f"Triggering deletion for document: {document_id}")
    if document_store.get_document(document_id) is None:
        raise HTTPException(status_code=404, detail="Document not found.")

    try:
        if vector_index is not None:
            vector_index.delete_document(document_id)
            logger.info(f"Step 1: Deleted vectors for {document_id}.")

        document_store.delete_document(document_id)
        logger.info(f"Step 2: Deleted document record, jobs and chunks for {document_id}.")

        file_store.delete_document(document_id)
        logger.info(f"Step 3: Deleted stored PDF for {document_id}.")

        return {"document_id": document_id, "success": True, "message": "Document deleted."}

    except (StoreError, OSError):
        logger.exception(f"Deletion failed for {document_id}.")
        raise HTTPException(status_code=500, detail=f"Partial deletion failure for {document_id}. Logs captured.")
