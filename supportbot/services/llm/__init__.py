from supportbot.services.llm.base import LLMProvider, LLMProviderError, LLMResponse, RetryableLLMError
from supportbot.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMProviderError", "LLMResponse", "OpenAIProvider", "RetryableLLMError"]
