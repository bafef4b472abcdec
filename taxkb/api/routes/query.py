import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from taxkb.core.errors import CompletionServiceError, EmbeddingServiceError
from taxkb.core.pipeline.retrieval import QuestionAnswerer
from taxkb.models.query import QASessionRecord, QueryRequest, QueryResponse
from taxkb.storage.base import SessionLog

router = APIRouter()
logger = logging.getLogger(__name__)

# Dependencies to get components from app state
def get_question_answerer(request: Request) -> QuestionAnswerer:
    return request.app.state.question_answerer

def get_session_log(request: Request) -> SessionLog:
    return request.app.state.session_log

@router.post("/query", response_model=QueryResponse, summary="Answer a question with citations to the knowledge base")
def query_knowledge_base(
    request_data: QueryRequest,
    x_user_id: Optional[str] = Header(None),
    answerer: QuestionAnswerer = Depends(get_question_answerer)
):
    """
    Embeds the question, retrieves matching chunks within the caller's tenant
    scope and returns a cited answer. Synchronous def for blocking I/O.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        return answerer.ask(request_data, user_id=x_user_id)
    except (EmbeddingServiceError, CompletionServiceError):
        logger.exception("AI service failed while answering question.")
        raise HTTPException(status_code=502, detail="AI service unavailable. Please try again later.")
    except Exception:
        logger.exception("Query pipeline execution failed.")
        raise HTTPException(status_code=500, detail="Internal processing error while answering question.")

@router.get("/sessions/{session_id}", response_model=List[QASessionRecord], summary="Question/answer history of a session")
def get_session_history(session_id: str, session_log: SessionLog = Depends(get_session_log)):
    return session_log.history(session_id)
