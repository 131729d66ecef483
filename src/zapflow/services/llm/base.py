"""LLM provider interface and errors."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


class LLMError(Exception):
    """Transient LLM failure; the invoker retries these."""

    code = "llm_error"


class LLMTimeoutError(LLMError):
    code = "llm_timeout"


class LLMHTTPError(LLMError):
    """Provider answered with a non-2xx status."""

    code = "llm_http_error"

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"LLM provider returned HTTP {status_code}")
        self.status_code = status_code
        self.detail = detail


class EmptyResponseError(LLMError):
    code = "empty_response"


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: dict | None = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: list[dict],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: float | None = None,
    ) -> LLMResponse:
        """Generate a chat completion.

        Raises:
            LLMTimeoutError: If the provider did not answer within timeout_seconds.
            LLMError: On network failure or non-2xx status.
        """
