"""Pipeline settings loaded from environment variables.

Every value has a default so a local process starts with no env at all.
Per-tenant assistant configuration lives in the database, not here.
"""

from __future__ import annotations

from typing import Mapping

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FALLBACK_RESPONSE = (
    "Desculpe, não consegui processar sua mensagem agora. "
    "Um atendente vai responder em breve."
)


class Settings(BaseSettings):
    """Runtime knobs for the ingestion and reply pipeline."""

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        env_ignore_empty=True,
    )

    # debounce
    debounce_window_seconds: float = Field(10.0, alias="DEBOUNCE_WINDOW_SECONDS", ge=0)
    claim_lease_seconds: int = Field(120, alias="DEBOUNCE_CLAIM_LEASE_SECONDS", ge=1)
    sweep_grace_seconds: int = Field(30, alias="DEBOUNCE_SWEEP_GRACE_SECONDS", ge=0)
    sweep_limit: int = Field(10, alias="DEBOUNCE_SWEEP_LIMIT", ge=1)

    # prompt bounds
    history_fetch_limit: int = Field(20, alias="HISTORY_FETCH_LIMIT", ge=0)
    history_window: int = Field(8, alias="HISTORY_WINDOW", ge=0)
    history_message_chars: int = Field(1000, alias="HISTORY_MESSAGE_CHARS", ge=1)
    system_prompt_chars: int = Field(2000, alias="SYSTEM_PROMPT_CHARS", ge=1)
    user_turn_chars: int = Field(2000, alias="USER_TURN_CHARS", ge=1)

    # llm
    llm_timeout_seconds: float = Field(25.0, alias="LLM_TIMEOUT_SECONDS", gt=0)
    llm_max_attempts: int = Field(3, alias="LLM_MAX_ATTEMPTS", ge=1)
    llm_retry_base_seconds: float = Field(1.0, alias="LLM_RETRY_BASE_SECONDS", ge=0)
    default_model: str = Field("gpt-4o-mini", alias="LLM_DEFAULT_MODEL")

    # outbound
    dispatch_max_attempts: int = Field(2, alias="DISPATCH_MAX_ATTEMPTS", ge=1)
    dispatch_retry_seconds: float = Field(1.0, alias="DISPATCH_RETRY_SECONDS", ge=0)
    max_response_delay_seconds: float = Field(30.0, alias="MAX_RESPONSE_DELAY_SECONDS", ge=0)
    fallback_response: str = Field(DEFAULT_FALLBACK_RESPONSE, alias="FALLBACK_RESPONSE")
    gateway_base_url: str = Field("", alias="GATEWAY_BASE_URL")
    gateway_api_key: str = Field("", alias="GATEWAY_API_KEY")
    recipient_suffix: str = Field("", alias="GATEWAY_RECIPIENT_SUFFIX")
    gateway_timeout_seconds: float = Field(15.0, alias="GATEWAY_TIMEOUT_SECONDS", gt=0)

    # external speech functions
    speech_base_url: str = Field("", alias="SPEECH_FUNCTIONS_URL")
    speech_timeout_seconds: float = Field(30.0, alias="SPEECH_TIMEOUT_SECONDS", gt=0)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the process env, or from environ when given.

        Raises:
            pydantic.ValidationError: (a ValueError) naming the bad variable.
        """
        if environ is None:
            return cls()
        return cls.model_validate({k: v for k, v in environ.items() if v != ""})
