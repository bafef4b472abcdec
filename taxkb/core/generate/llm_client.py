import json
import logging
import httpx
import time
import random
from typing import Generator, List, Dict, Any, Optional
from taxkb.config.settings import settings
from taxkb.core.errors import CompletionServiceError

logger = logging.getLogger(__name__)

class LLMClient:
    """
    OpenAI-compatible chat-completions client.
    Non-streaming calls serve the citation path; streaming serves advisory chat.
    Retries rate limits and transport errors, then tries the fallback model.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        self.config = settings.llm
        self.base_url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        self.headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "Content-Type": "application/json"
        }
        self.max_retries = self.config.max_retries
        self.base_delay = 2.0

    @property
    def model(self) -> str:
        return self.config.model

    def generate(self, messages: List[Dict[str, str]]) -> str:
        """Calls the completion service and returns the full response text."""
        payload = self._payload(messages, stream=False)

        try:
            return self._sync_response(payload)
        except CompletionServiceError as e:
            if self.config.fallback_model and self.config.fallback_model != payload["model"]:
                logger.warning(f"Primary model {payload['model']} failed: {e}. Trying fallback.")
                payload["model"] = self.config.fallback_model
                return self._sync_response(payload)
            raise

    def stream(self, messages: List[Dict[str, str]]) -> Generator[str, None, None]:
        """Yields content tokens; falls back to the secondary model if the primary stream fails."""
        payload = self._payload(messages, stream=True)
        original_model = payload["model"]
        try:
            yield from self._stream_response(payload)
        except CompletionServiceError as e:
            if self.config.fallback_model and original_model != self.config.fallback_model:
                logger.warning(f"Streaming failed for {original_model}: {e}. Trying fallback.")
                payload["model"] = self.config.fallback_model
                yield from self._stream_response(payload)
            else:
                raise

    def _payload(self, messages: List[Dict[str, str]], stream: bool) -> Dict[str, Any]:
        if not self.api_key:
            logger.warning("LLM_API_KEY is not set. LLM calls will fail.")
        return {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": stream
        }

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, 1)

    def _sync_response(self, payload: Dict[str, Any]) -> str:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.config.timeout_seconds) as client:
                    response = client.post(self.base_url, headers=self.headers, json=payload)

                    if response.status_code == 429:
                        delay = self._backoff(attempt)
                        logger.warning(f"Rate limited (429). Retrying in {delay:.2f}s... (Attempt {attempt+1}/{self.max_retries})")
                        last_error = CompletionServiceError("Rate limit exceeded")
                        time.sleep(delay)
                        continue

                    if response.status_code >= 400:
                        logger.error(f"AI API error: {response.status_code} {response.text}")
                        raise CompletionServiceError(f"Failed to generate answer: {response.status_code}")

                    data = response.json()
                    return data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise CompletionServiceError(f"Malformed completion response: {e}") from e
            except httpx.HTTPError as e:
                last_error = e
                if attempt == self.max_retries - 1:
                    break
                delay = self._backoff(attempt)
                logger.warning(f"Request failed: {e}. Retrying in {delay:.2f}s...")
                time.sleep(delay)

        raise CompletionServiceError(f"Failed after maximum retries: {last_error}")

    def _stream_response(self, payload: Dict[str, Any]) -> Generator[str, None, None]:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.config.timeout_seconds) as client:
                    with client.stream("POST", self.base_url, headers=self.headers, json=payload) as response:
                        if response.status_code == 429:
                            delay = self._backoff(attempt)
                            logger.warning(f"Rate limited (429) during stream initiation. Retrying in {delay:.2f}s...")
                            last_error = CompletionServiceError("Rate limit exceeded")
                            time.sleep(delay)
                            continue

                        if response.status_code >= 400:
                            raise CompletionServiceError(f"AI service error: {response.status_code}")

                        for line in response.iter_lines():
                            if not line:
                                continue
                            if line.startswith("data: "):
                                line = line[6:]

                            if line.strip() == "[DONE]":
                                break

                            try:
                                chunk = json.loads(line)
                                if "choices" in chunk and chunk["choices"]:
                                    delta = chunk["choices"][0].get("delta", {})
                                    content = delta.get("content", "")
                                    if content:
                                        yield content
                            except json.JSONDecodeError:
                                continue
                        return # Successfully finished stream
            except httpx.HTTPError as e:
                last_error = e
                if attempt == self.max_retries - 1:
                    break
                delay = self._backoff(attempt)
                logger.warning(f"Stream failed: {e}. Retrying in {delay:.2f}s...")
                time.sleep(delay)

        raise CompletionServiceError(f"Stream failed after maximum retries: {last_error}")
