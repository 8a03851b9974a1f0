"""External service clients."""

from .llm_client import ExtractionServiceError, LLMClient, RateLimitExhausted

__all__ = ["LLMClient", "ExtractionServiceError", "RateLimitExhausted"]
