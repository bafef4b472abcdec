import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from taxkb.core.errors import DocumentNotFoundError, JobConflictError, StoreError
from taxkb.core.pipeline.ingestion import IngestJobController
from taxkb.models.document import IngestAck, IngestJob, IngestRequest
from taxkb.storage.base import JobStore

router = APIRouter()
logger = logging.getLogger(__name__)

# Dependencies to get components from app state
def get_ingest_controller(request: Request) -> IngestJobController:
    return request.app.state.ingest_controller

def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store

@router.post("/ingest", response_model=IngestAck, status_code=202,
             summary="Start (or restart) ingestion of an uploaded document")
def trigger_ingestion(
    request_data: IngestRequest,
    controller: IngestJobController = Depends(get_ingest_controller)
):
    """
    Acknowledges immediately; extraction, chunking and embedding run in the
    worker pool and are reported through the job record.
    """
    try:
        return controller.start(request_data.document_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except JobConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        logger.exception(f"Could not start ingestion for {request_data.document_id}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/ingest/status/{job_id}", response_model=IngestJob, summary="Get the status of an ingest job")
def get_ingest_status(job_id: str, job_store: JobStore = Depends(get_job_store)):
    job = job_store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job ID not found.")
    return job
