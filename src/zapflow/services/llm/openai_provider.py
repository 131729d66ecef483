"""OpenAI chat completions provider."""

import requests

from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import safe_log_context

from .base import LLMError, LLMHTTPError, LLMProvider, LLMResponse, LLMTimeoutError

logger = get_logger(__name__)

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_TIMEOUT_SECONDS = 25.0


class OpenAIProvider(LLMProvider):
    """OpenAI API provider, one instance per tenant API key."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = CHAT_COMPLETIONS_URL,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url

    def generate(
        self,
        messages: list[dict],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: float | None = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else DEFAULT_TIMEOUT_SECONDS
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            response = requests.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=timeout,
            )
        except requests.Timeout as e:
            raise LLMTimeoutError(f"LLM call exceeded {timeout}s") from e
        except requests.RequestException as e:
            raise LLMError(f"LLM request failed: {type(e).__name__}") from e

        if not 200 <= response.status_code < 300:
            # provider error bodies may echo prompt fragments; keep them out of logs
            logger.warning(
                "openai non-2xx response",
                extra={
                    "extra_fields": safe_log_context(
                        status_code=response.status_code,
                        model=model,
                    )
                },
            )
            raise LLMHTTPError(response.status_code, response.text[:200])

        try:
            data = response.json()
        except ValueError as e:
            raise LLMError("LLM response was not JSON") from e

        content = ""
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
