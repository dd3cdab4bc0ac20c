from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class LLMProviderError(Exception):
    """The provider answered with an error or an unusable payload."""


class RetryableLLMError(LLMProviderError):
    """Timeout, connection failure, rate limit or 5xx; worth another attempt."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass

    @abstractmethod
    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Embedding vectors for texts, in input order."""
        pass
