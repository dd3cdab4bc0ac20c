from typing import List, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from supportbot.logging_config import get_logger
from supportbot.services.llm.base import LLMProvider, LLMProviderError, LLMResponse, RetryableLLMError

logger = get_logger("llm.openai")

RETRYABLE_STATUS = {408, 409, 429}


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (chat completions and embeddings)."""

    retry_wait = wait_exponential(multiplier=1, min=1, max=10)

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.embedding_model = embedding_model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)

    def _post_once(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning(f"OpenAI transport error on {path}: {exc}")
            raise RetryableLLMError(str(exc)) from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code in RETRYABLE_STATUS or response.status_code >= 500:
            logger.warning(f"OpenAI transient error: {response.status_code}")
            raise RetryableLLMError(f"OpenAI API error: {response.status_code} - {response.text}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMProviderError(f"OpenAI API error: {response.status_code} - {response.text}")

        try:
            return response.json()
        except ValueError as exc:
            raise LLMProviderError(f"OpenAI returned invalid JSON: {exc}") from exc

    def _post(self, path: str, payload: dict) -> dict:
        """POST with bounded exponential-backoff retries on transient errors."""
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(RetryableLLMError),
            reraise=True,
        )
        return retryer(self._post_once, path, payload)

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        model = model or self.default_model
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        data = self._post(
            "/chat/completions",
            {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        if not content.strip():
            raise LLMProviderError("OpenAI returned an empty answer")

        return LLMResponse(
            content=content.strip(),
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        if not texts:
            return []
        data = self._post("/embeddings", {"model": model or self.embedding_model, "input": texts})
        rows = sorted(data.get("data", []), key=lambda row: row.get("index", 0))
        if len(rows) != len(texts):
            raise LLMProviderError(f"Expected {len(texts)} embeddings, got {len(rows)}")
        return [row["embedding"] for row in rows]

    def embed_one(self, text: str) -> List[float]:
        return self.embed([text])[0]
