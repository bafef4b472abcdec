from unittest.mock import MagicMock, patch

import httpx
import pytest

from taxkb.core.errors import CompletionServiceError
from taxkb.core.generate.citations import extract_citations, find_markers
from taxkb.core.generate.llm_client import LLMClient
from taxkb.core.generate.prompt_builder import ADVISOR_SYSTEM_PROMPT, REFUSAL_SENTENCE, PromptBuilder
from taxkb.core.generate.synthesizer import AnswerSynthesizer
from taxkb.models.chunk import ScoredChunk


def _chunk(title="Nigeria Tax Act 2025", index=4, text="Small companies are exempt from CIT.", score=0.91):
    return ScoredChunk(document_id=f"doc-{title}", doc_title=title, chunk_index=index, text=text, score=score)


def _sync_client(mock_client_class, content="This is a mocked response.", status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = {"choices": [{"message": {"content": content}}]}
    mock_client.post.return_value = mock_response
    return mock_client


def test_prompt_builder():
    print("Testing PromptBuilder...")
    chunks = [_chunk(), _chunk(title="VAT Guide", index=0, text="VAT is 7.5%.")]

    messages = PromptBuilder.build_messages("Are small companies exempt?", chunks)

    assert len(messages) == 1
    assert messages[0]["role"] == "user"
    content = messages[0]["content"]
    assert "using ONLY" in content
    assert "[Nigeria Tax Act 2025 §4]\nSmall companies are exempt from CIT." in content
    assert "[VAT Guide §0]\nVAT is 7.5%." in content
    assert REFUSAL_SENTENCE in content
    assert "Are small companies exempt?" in content
    print("PromptBuilder tests PASSED")


def test_prompt_builder_without_chunks():
    assert PromptBuilder.build_messages("Anything?", []) == []


def test_advisor_messages_prefixed_with_system_prompt():
    messages = PromptBuilder.build_advisor_messages([{"role": "user", "content": "How is PAYE computed?"}])
    assert messages[0] == {"role": "system", "content": ADVISOR_SYSTEM_PROMPT}
    assert messages[1]["content"] == "How is PAYE computed?"


def test_duplicate_markers_collapse_to_one_citation():
    answer = "Small companies are exempt [Nigeria Tax Act 2025 §4]. Again [Nigeria Tax Act 2025 §4]."

    citations = extract_citations(answer, [_chunk()])

    assert len(citations) == 1
    assert citations[0].resolved
    assert citations[0].ref == "§4"
    assert citations[0].document_id == "doc-Nigeria Tax Act 2025"
    assert citations[0].text == "Small companies are exempt from CIT."


def test_citations_keep_first_seen_order():
    answer = "VAT [VAT Guide §0]. CIT [Nigeria Tax Act 2025 §4]. VAT again [VAT Guide §0]."
    chunks = [_chunk(), _chunk(title="VAT Guide", index=0, text="VAT is 7.5%.")]

    citations = extract_citations(answer, chunks)

    assert [(c.title, c.chunk_index) for c in citations] == [("VAT Guide", 0), ("Nigeria Tax Act 2025", 4)]


def test_unknown_marker_flagged_unresolved():
    citations = extract_citations("Per [Finance Act 2019 §2], rates changed.", [_chunk()])

    assert len(citations) == 1
    assert citations[0].resolved is False
    assert citations[0].document_id is None
    assert citations[0].title == "Finance Act 2019"


def test_marker_title_matched_loosely():
    citations = extract_citations("See [nigeria  tax act 2025 §4].", [_chunk()])
    assert citations[0].resolved


def test_find_markers_ignores_other_brackets():
    assert find_markers("A [note] and [Act §x] and [Act §3]") == [("Act", 3)]


def test_synthesizer_refuses_without_calling_model():
    llm = MagicMock()

    result = AnswerSynthesizer(llm).answer("What is the VAT rate?", [])

    assert result.answer == REFUSAL_SENTENCE
    assert result.citations == []
    assert result.grounded
    llm.generate.assert_not_called()


def test_synthesizer_binds_citations():
    llm = MagicMock()
    llm.generate.return_value = "They are exempt [Nigeria Tax Act 2025 §4]."
    llm.model = "test-model"

    result = AnswerSynthesizer(llm).answer("Are small companies exempt?", [_chunk()])

    assert result.grounded
    assert result.model_used == "test-model"
    assert [c.resolved for c in result.citations] == [True]


def test_synthesizer_flags_uncited_answer():
    llm = MagicMock()
    llm.generate.return_value = "They are exempt."
    llm.model = "test-model"

    result = AnswerSynthesizer(llm).answer("Are small companies exempt?", [_chunk()])

    assert result.answer == "They are exempt."
    assert result.citations == []
    assert result.grounded is False


def test_llm_client_sync():
    print("Testing LLMClient sync call (MOCKED)...")

    with patch("httpx.Client") as mock_client_class:
        mock_client = _sync_client(mock_client_class)

        client = LLMClient(api_key="test-key")
        response = client.generate([{"role": "user", "content": "hello"}])

        assert response == "This is a mocked response."
        _, kwargs = mock_client.post.call_args
        assert kwargs["json"]["stream"] is False

    print("LLMClient sync tests PASSED")


def test_llm_client_retries_rate_limit():
    with patch("httpx.Client") as mock_client_class, patch("time.sleep") as mock_sleep:
        mock_client = _sync_client(mock_client_class)
        limited = MagicMock()
        limited.status_code = 429
        mock_client.post.side_effect = [limited, mock_client.post.return_value]

        response = LLMClient(api_key="test-key").generate([{"role": "user", "content": "hello"}])

        assert response == "This is a mocked response."
        assert mock_client.post.call_count == 2
        assert mock_sleep.call_count == 1


def test_llm_client_uses_fallback_model():
    with patch("httpx.Client") as mock_client_class:
        mock_client = _sync_client(mock_client_class)
        failing = MagicMock()
        failing.status_code = 500
        failing.text = "boom"
        mock_client.post.side_effect = [failing, mock_client.post.return_value]

        client = LLMClient(api_key="test-key")
        client.config = client.config.model_copy(update={"fallback_model": "backup-model"})
        response = client.generate([{"role": "user", "content": "hello"}])

        assert response == "This is a mocked response."
        models = [call.kwargs["json"]["model"] for call in mock_client.post.call_args_list]
        assert models == [client.config.model, "backup-model"]


def test_llm_client_error_without_fallback():
    with patch("httpx.Client") as mock_client_class:
        _sync_client(mock_client_class, status_code=503)

        client = LLMClient(api_key="test-key")
        client.config = client.config.model_copy(update={"fallback_model": ""})
        with pytest.raises(CompletionServiceError):
            client.generate([{"role": "user", "content": "hello"}])


def test_llm_client_transport_errors_exhaust_retries():
    with patch("httpx.Client") as mock_client_class, patch("time.sleep"):
        mock_client = _sync_client(mock_client_class)
        mock_client.post.side_effect = httpx.ConnectError("refused")

        client = LLMClient(api_key="test-key")
        client.config = client.config.model_copy(update={"fallback_model": ""})
        with pytest.raises(CompletionServiceError):
            client.generate([{"role": "user", "content": "hello"}])

        assert mock_client.post.call_count == client.max_retries


def test_llm_client_streaming():
    print("Testing LLMClient streaming (MOCKED)...")

    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client

        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.iter_lines.return_value = [
            'data: {"choices": [{"delta": {"content": "Hello"}}]}',
            '',
            'data: {"choices": [{"delta": {"content": " world"}}]}',
            'data: [DONE]'
        ]
        mock_client.stream.return_value.__enter__.return_value = mock_response

        client = LLMClient(api_key="test-key")
        tokens = list(client.stream([{"role": "user", "content": "hello"}]))

        assert "".join(tokens) == "Hello world"
        assert mock_client.stream.called

    print("LLMClient streaming tests PASSED")

if __name__ == "__main__":
    test_prompt_builder()
    test_llm_client_sync()
    test_llm_client_streaming()
    print("\nAll Generation Component Unit Tests PASSED (Logic only)")
