"""
OpenAI chat-completions transport for promotion extraction.

Wraps a JSON-mode chat completion with exponential backoff on
rate-limit-class failures. Callers get either the raw response text or a
typed ExtractionServiceError.
"""

import logging
import random
import time
from typing import Callable, List, Optional

from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)

from ..config import Settings

logger = logging.getLogger(__name__)


class ExtractionServiceError(Exception):
    """The extraction service could not produce a response."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class RateLimitExhausted(ExtractionServiceError):
    """Every retry attempt hit a rate limit."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class LLMClient:
    """JSON-mode chat completions with bounded exponential backoff."""

    RETRYABLE_ERRORS = (RateLimitError, APIConnectionError, APITimeoutError, InternalServerError)

    def __init__(self, settings: Optional[Settings] = None, client: Optional[OpenAI] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 jitter: Callable[[], float] = lambda: random.uniform(0, 1)):
        self.settings = settings or Settings.from_env()
        self._client = client
        self.sleep = sleep
        self.jitter = jitter
        self.model = self.settings.openai_model
        self.max_retries = max(1, self.settings.llm_max_retries)
        self.base_delay = self.settings.llm_base_delay
        self.max_delay = self.settings.llm_max_delay
        # Backoff delays used by the most recent call
        self.delays: List[float] = []

    @property
    def client(self) -> OpenAI:
        """Get or initialize the OpenAI client."""
        if self._client is None:
            if not self.settings.openai_api_key:
                raise ExtractionServiceError("OPENAI_API_KEY environment variable is required")
            self._client = OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def backoff_delay(self, attempt: int, previous: float = 0.0) -> float:
        """Exponential backoff with jitter, capped at max_delay and never below the previous delay."""
        return max(min(self.base_delay * (2 ** attempt) + self.jitter(), self.max_delay), previous)

    def complete_json(self, system_prompt: str, user_prompt: str) -> str:
        """
        Run one JSON-mode completion.

        Args:
            system_prompt: Instructions for the model
            user_prompt: Venue content

        Returns:
            The raw message content (expected, not guaranteed, to be JSON)

        Raises:
            RateLimitExhausted: if every attempt was rate limited
            ExtractionServiceError: on non-retryable errors or exhausted transient errors
        """
        self.delays = []
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=0.0,
                    max_tokens=self.settings.llm_max_tokens,
                )
                return response.choices[0].message.content or ""

            except self.RETRYABLE_ERRORS as e:
                last_exception = e

                # Don't sleep after the last attempt
                if attempt == self.max_retries - 1:
                    break

                delay = self.backoff_delay(attempt, self.delays[-1] if self.delays else 0.0)
                self.delays.append(delay)
                logger.warning(f"   ⚠️  API error (attempt {attempt + 1}/{self.max_retries}): "
                               f"{type(e).__name__}. Retrying in {delay:.2f} seconds...")
                self.sleep(delay)

            except APIError as e:
                raise ExtractionServiceError(f"{type(e).__name__}: {str(e)[:200]}") from e

        if isinstance(last_exception, RateLimitError):
            raise RateLimitExhausted(f"rate limited after {self.max_retries} attempts") from last_exception
        raise ExtractionServiceError(
            f"{type(last_exception).__name__} after {self.max_retries} attempts", retryable=True
        ) from last_exception
