from unittest.mock import MagicMock, patch

import httpx
import pytest

from taxkb.core.embed.embedder import EmbeddingClient
from taxkb.core.errors import EmbeddingServiceError


def _mock_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = "error body"
    response.json.return_value = payload
    return response


def test_embeddings_returned_in_input_order():
    print("--- Testing embedding batch ordering (MOCKED) ---")
    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        # Service answers out of order; 'index' decides the position
        mock_client.post.return_value = _mock_response(payload={"data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
            {"index": 2, "embedding": [0.5, 0.5]},
        ]})

        client = EmbeddingClient(api_key="test-key")
        vectors = client.embed_batch(["first", "second", "third"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]]
        _, kwargs = mock_client.post.call_args
        assert kwargs["json"]["input"] == ["first", "second", "third"]
        assert kwargs["json"]["model"] == client.model_name
    print("Embedding order test PASSED")


def test_one_call_per_batch():
    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _mock_response(payload={"data": [
            {"embedding": [0.1, 0.2]} for _ in range(10)
        ]})

        vectors = EmbeddingClient(api_key="test-key").embed_batch([f"chunk {i}" for i in range(10)])

        assert len(vectors) == 10
        assert mock_client.post.call_count == 1


def test_empty_batch_makes_no_call():
    with patch("httpx.Client") as mock_client_class:
        assert EmbeddingClient(api_key="test-key").embed_batch([]) == []
        assert not mock_client_class.called


@pytest.mark.parametrize("payload", [
    {"data": [{"index": 0, "embedding": [1.0]}, {"index": 1}]},
    {"data": [{"index": 0, "embedding": [1.0]}, {"index": 1, "embedding": ["a"]}]},
    {"data": [{"index": 0, "embedding": [1.0]}]},
    {"data": [{"index": 0, "embedding": [1.0]}, {"index": 1, "embedding": [1.0, 2.0]}]},
    {"data": [{"index": 0, "embedding": [1.0]}, {"index": 0, "embedding": [2.0]}]},
    {"error": "unexpected"},
])
def test_malformed_batch_fails_as_a_whole(payload):
    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _mock_response(payload=payload)

        with pytest.raises(EmbeddingServiceError):
            EmbeddingClient(api_key="test-key").embed_batch(["a", "b"])


def test_non_success_status_raises():
    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _mock_response(status_code=500)

        with pytest.raises(EmbeddingServiceError) as exc:
            EmbeddingClient(api_key="test-key").embed_batch(["a"])

    assert "500" in str(exc.value)
    assert mock_client.post.call_count == 1


def test_timeout_raises_without_retry():
    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(EmbeddingServiceError):
            EmbeddingClient(api_key="test-key").embed_batch(["a"])

    assert mock_client.post.call_count == 1


def test_embed_query_returns_single_vector():
    with patch("httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _mock_response(payload={"data": [{"index": 0, "embedding": [0.3, 0.4]}]})

        assert EmbeddingClient(api_key="test-key").embed_query("What is VAT?") == [0.3, 0.4]

if __name__ == "__main__":
    test_embeddings_returned_in_input_order()
