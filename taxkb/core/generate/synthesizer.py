import logging
from typing import List, Optional
from pydantic import BaseModel
from taxkb.core.generate.citations import extract_citations
from taxkb.core.generate.llm_client import LLMClient
from taxkb.core.generate.prompt_builder import PromptBuilder, REFUSAL_SENTENCE
from taxkb.models.chunk import ScoredChunk
from taxkb.models.query import Citation

logger = logging.getLogger(__name__)

class SynthesizedAnswer(BaseModel):
    answer: str
    citations: List[Citation]
    model_used: Optional[str] = None

    @property
    def is_refusal(self) -> bool:
        return self.answer.strip() == REFUSAL_SENTENCE

    @property
    def grounded(self) -> bool:
        """True for refusals and for answers with at least one resolved citation."""
        return self.is_refusal or any(c.resolved for c in self.citations)


class AnswerSynthesizer:
    """
    Builds a grounded prompt from retrieved chunks, calls the completion
    service and re-binds the inline citation markers to their source chunks.
    """

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self.llm_client = llm_client or LLMClient()

    def answer(self, question: str, chunks: List[ScoredChunk]) -> SynthesizedAnswer:
        # Nothing retrieved: the model could only refuse, so don't ask it
        if not chunks:
            logger.info("No snippets retrieved; returning refusal without a model call")
            return SynthesizedAnswer(answer=REFUSAL_SENTENCE, citations=[])

        messages = PromptBuilder.build_messages(question, chunks)
        logger.info(f"Calling AI for answer generation with {len(chunks)} snippets")
        answer = str(self.llm_client.generate(messages))

        citations = extract_citations(answer, chunks)
        result = SynthesizedAnswer(answer=answer, citations=citations, model_used=self.llm_client.model)

        if not result.grounded:
            logger.warning(
                f"Answer carries no resolvable citation ({len(citations)} markers found); "
                "returning it flagged as ungrounded"
            )
        else:
            logger.info(f"Generated answer with {len(citations)} citations")
        return result
