from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from taxkb.core.errors import CompletionServiceError
from taxkb.core.generate.prompt_builder import REFUSAL_SENTENCE
from taxkb.core.generate.synthesizer import AnswerSynthesizer
from taxkb.core.pipeline.retrieval import AdvisoryChat, QuestionAnswerer
from taxkb.core.retrieve.retriever import BruteForceRetriever
from taxkb.models.chunk import StoredChunk
from taxkb.models.query import QueryRequest
from taxkb.storage.sql_store import SQLSessionLog


def _llm(answer="Small companies are exempt [Tax Act §0]."):
    llm = MagicMock()
    llm.generate.return_value = answer
    llm.model = "test-model"
    return llm


def _seed(stores):
    document = stores["documents"].create_document(title="Tax Act", file_location="/act.pdf")
    job = stores["jobs"].create_job(document.document_id)
    stores["chunks"].insert_batch([
        StoredChunk(document_id=document.document_id, job_id=job.job_id, index=0,
                    text="Small companies are exempt from CIT.", embedding=[1.0, 0.0, 0.0]),
        StoredChunk(document_id=document.document_id, job_id=job.job_id, index=1,
                    text="VAT is charged at 7.5 percent.", embedding=[0.0, 1.0, 0.0]),
    ])
    stores["documents"].set_active_job(document.document_id, job.job_id)
    stores["jobs"].mark_completed(job.job_id)
    return document


def _answerer(stores, llm, fake_embedder, session_log=None):
    return QuestionAnswerer(
        embedder=fake_embedder,
        retriever=BruteForceRetriever(stores["chunks"]),
        synthesizer=AnswerSynthesizer(llm),
        session_log=session_log or stores["sessions"]
    )


def test_empty_corpus_refuses_and_logs(stores, fake_embedder):
    print("--- Testing question against an empty knowledge base ---")
    llm = _llm()

    response = _answerer(stores, llm, fake_embedder).ask(
        QueryRequest(question="What is the VAT rate?", session_id="s-1"), user_id="user-1"
    )

    assert response.answer == REFUSAL_SENTENCE
    assert response.citations == []
    assert response.chunks == []
    llm.generate.assert_not_called()
    history = stores["sessions"].history("s-1")
    assert len(history) == 1
    assert history[0].answer == REFUSAL_SENTENCE
    assert response.session_record_id == history[0].record_id


def test_answer_carries_resolved_citations(stores, fake_embedder):
    document = _seed(stores)

    response = _answerer(stores, _llm(), fake_embedder).ask(
        QueryRequest(question="Are small companies exempt?"), user_id="user-1"
    )

    assert response.grounded
    assert response.model_used == "test-model"
    assert [(c.title, c.chunk_index, c.resolved) for c in response.citations] == [("Tax Act", 0, True)]
    assert response.citations[0].document_id == document.document_id
    # Only the chunk above the similarity threshold is offered to the model
    assert [c.chunk_index for c in response.chunks] == [0]


def test_session_log_failure_does_not_block_answer(stores, fake_embedder):
    _seed(stores)
    broken_db = MagicMock()
    broken_db.session_scope.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))

    response = _answerer(stores, _llm(), fake_embedder, session_log=SQLSessionLog(broken_db)).ask(
        QueryRequest(question="Are small companies exempt?"), user_id="user-1"
    )

    assert response.answer.startswith("Small companies are exempt")
    assert response.session_record_id is None


def test_completion_failure_propagates_without_log(stores, fake_embedder):
    _seed(stores)
    llm = _llm()
    llm.generate.side_effect = CompletionServiceError("Failed to generate answer: 500")

    with pytest.raises(CompletionServiceError):
        _answerer(stores, llm, fake_embedder).ask(
            QueryRequest(question="Are small companies exempt?", session_id="s-2"), user_id="user-1"
        )

    assert stores["sessions"].history("s-2") == []


def test_advisory_chat_streams_with_system_prompt():
    llm = MagicMock()
    llm.stream.return_value = iter(["PAYE ", "is progressive."])

    tokens = list(AdvisoryChat(llm).stream([{"role": "user", "content": "How is PAYE taxed?"}]))

    assert "".join(tokens) == "PAYE is progressive."
    sent = llm.stream.call_args.args[0]
    assert sent[0]["role"] == "system"
    assert sent[-1]["content"] == "How is PAYE taxed?"
