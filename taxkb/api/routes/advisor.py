import json
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from taxkb.core.errors import CompletionServiceError
from taxkb.core.pipeline.retrieval import AdvisoryChat
from taxkb.models.query import AdvisorChatRequest

router = APIRouter()
logger = logging.getLogger(__name__)

def get_advisory_chat(request: Request) -> AdvisoryChat:
    return request.app.state.advisory_chat

@router.post("/advisor/chat", summary="Stream a free-form tax advisory conversation")
def advisor_chat(
    request_data: AdvisorChatRequest,
    chat: AdvisoryChat = Depends(get_advisory_chat)
):
    messages = [m.model_dump() for m in request_data.messages]

    def event_stream():
        try:
            for token in chat.stream(messages):
                yield f"data: {json.dumps({'content': token})}\n\n"
        except CompletionServiceError:
            logger.exception("Advisory chat stream failed.")
            yield f"data: {json.dumps({'error': 'AI service unavailable. Please try again later.'})}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")
