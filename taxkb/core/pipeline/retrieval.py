import logging
from typing import Dict, Generator, List, Optional

from taxkb.core.embed.embedder import EmbeddingClient
from taxkb.core.generate.llm_client import LLMClient
from taxkb.core.generate.prompt_builder import PromptBuilder
from taxkb.core.generate.synthesizer import AnswerSynthesizer
from taxkb.core.retrieve.retriever import Retriever
from taxkb.models.query import ChunkPreview, QueryRequest, QueryResponse
from taxkb.storage.base import SessionLog

logger = logging.getLogger(__name__)


class QuestionAnswerer:
    """
    Orchestrates retrieval -> generation for one question.
    Sequence: embed question -> retrieve -> synthesize -> log session
    """

    def __init__(self,
                 embedder: EmbeddingClient,
                 retriever: Retriever,
                 synthesizer: AnswerSynthesizer,
                 session_log: SessionLog):
        self.embedder = embedder
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.session_log = session_log

    def ask(self, request: QueryRequest, user_id: str) -> QueryResponse:
        logger.info(f"Processing question: '{request.question}' (org: {request.org_id or 'global'})")

        # 1. Embed the question; a failure here aborts the request
        query_vector = self.embedder.embed_query(request.question)

        # 2. Retrieve within the caller's scope
        chunks = self.retriever.search(query_vector, request.org_id, request.top_k)
        logger.info(f"Found {len(chunks)} relevant chunks")

        # 3. Synthesize (refuses without a model call when nothing matched)
        result = self.synthesizer.answer(request.question, chunks)

        # 4. Log the exchange; never blocks the answer
        record_id = self.session_log.record(
            question=request.question,
            answer=result.answer,
            citations=result.citations,
            user_id=user_id,
            session_id=request.session_id,
            org_id=request.org_id
        )

        return QueryResponse(
            question=request.question,
            answer=result.answer,
            citations=result.citations,
            chunks=[
                ChunkPreview(
                    text=c.text,
                    score=c.score,
                    doc_title=c.doc_title,
                    chunk_index=c.chunk_index
                )
                for c in chunks
            ],
            grounded=result.grounded,
            model_used=result.model_used,
            session_record_id=record_id
        )


class AdvisoryChat:
    """Free-form streamed chat with the advisory system prompt; no retrieval, no citations."""

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self.llm_client = llm_client or LLMClient()

    def stream(self, messages: List[Dict[str, str]]) -> Generator[str, None, None]:
        logger.info(f"Advisory chat with {len(messages)} messages")
        yield from self.llm_client.stream(PromptBuilder.build_advisor_messages(messages))
