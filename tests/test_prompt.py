"""Tests for prompt assembly and assistant config parsing."""

from datetime import datetime, timezone

from zapflow.domain.assistant_config import AssistantConfig, clamp
from zapflow.domain.message_store import HistoryEntry
from zapflow.domain.prompt import (
    DEFAULT_SYSTEM_PROMPT,
    REFERENCE_FILES_PREFIX,
    WHATSAPP_INSTRUCTION,
    build_messages,
    build_system_prompt,
    concat_batch,
    history_turns,
)
from zapflow.domain.voice import AudioClip
from zapflow.infra.settings import Settings
from zapflow.whatsapp.models import Message

T = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _config(**kw):
    base = {"assistant_id": "a-1", "client_id": "c-1", "name": "Recepção", "prompt": "Você atende o Hotel Sol.", "model": None}
    base.update(kw)
    return AssistantConfig(**base)


def _msg(body, from_me=False):
    return Message(
        message_id=f"id-{body}",
        chat_id="5511@c.us",
        instance_id="inst",
        from_me=from_me,
        body=body,
        message_type="text",
        timestamp=T,
    )


def _history(n):
    return [HistoryEntry(message_id=f"h{i}", from_me=i % 2 == 1, content=f"msg {i}") for i in range(n)]


class TestConcatBatch:
    def test_joins_inbound_in_order(self):
        assert concat_batch([_msg("oi"), _msg("  tudo bem?  "), _msg("quero reservar")]) == (
            "oi\ntudo bem?\nquero reservar"
        )

    def test_skips_outbound_and_blank(self):
        assert concat_batch([_msg("oi"), _msg("eco", from_me=True), _msg("   ")]) == "oi"

    def test_empty(self):
        assert concat_batch([]) == ""


class TestSystemPrompt:
    def test_assistant_prompt_plus_whatsapp_instruction(self):
        prompt = build_system_prompt(_config(), Settings())
        assert prompt.startswith("Você atende o Hotel Sol.")
        assert WHATSAPP_INSTRUCTION in prompt

    def test_default_when_prompt_blank(self):
        assert build_system_prompt(_config(prompt="  "), Settings()).startswith(DEFAULT_SYSTEM_PROMPT)

    def test_audio_instructions_only_when_enabled(self):
        plain = build_system_prompt(_config(), Settings())
        voiced = build_system_prompt(
            _config(voice_cloning_enabled=True, eleven_labs_voice_id="v", eleven_labs_api_key="k"),
            Settings(),
        )
        assert "audio:" not in plain
        assert "audio: [sua resposta]" in voiced

    def test_library_listed(self):
        clip = AudioClip(trigger="oi", name="Saudação", url="https://cdn.test/oi.mp3")
        prompt = build_system_prompt(_config(audio_library=(clip,)), Settings())
        assert "oi (Saudação)" in prompt

    def test_truncated(self):
        prompt = build_system_prompt(_config(prompt="x" * 5000), Settings(system_prompt_chars=100))
        assert len(prompt) == 100

    def test_reference_files_listed(self):
        prompt = build_system_prompt(_config(custom_files=("tabela.pdf", "cardapio.png")), Settings())
        assert f"{REFERENCE_FILES_PREFIX} tabela.pdf, cardapio.png" in prompt
        assert prompt.index(REFERENCE_FILES_PREFIX) < prompt.index(WHATSAPP_INSTRUCTION)

    def test_no_reference_line_without_files(self):
        assert REFERENCE_FILES_PREFIX not in build_system_prompt(_config(), Settings())

    def test_reference_files_inside_bound(self):
        files = tuple(f"arquivo-{i}.pdf" for i in range(500))
        prompt = build_system_prompt(_config(custom_files=files), Settings(system_prompt_chars=300))
        assert len(prompt) == 300


class TestHistoryTurns:
    def test_roles_follow_direction(self):
        turns = history_turns(_history(2), Settings())
        assert turns == [
            {"role": "user", "content": "msg 0"},
            {"role": "assistant", "content": "msg 1"},
        ]

    def test_window_keeps_most_recent(self):
        turns = history_turns(_history(12), Settings(history_window=8))
        assert len(turns) == 8
        assert turns[0]["content"] == "msg 4"
        assert turns[-1]["content"] == "msg 11"

    def test_zero_window_sends_no_history(self):
        assert history_turns(_history(5), Settings.from_env({"HISTORY_WINDOW": "0"})) == []

    def test_zero_window_in_build_messages(self):
        chat = build_messages(_config(), _history(5), "oi", Settings(history_window=0))
        assert [m["role"] for m in chat] == ["system", "user"]

    def test_entries_truncated_and_blank_dropped(self):
        history = [
            HistoryEntry(message_id="a", from_me=False, content="y" * 50),
            HistoryEntry(message_id="b", from_me=True, content="   "),
        ]
        turns = history_turns(history, Settings(history_message_chars=10))
        assert turns == [{"role": "user", "content": "y" * 10}]


class TestBuildMessages:
    def test_shape(self):
        chat = build_messages(_config(), _history(2), "quero reservar", Settings())
        assert [m["role"] for m in chat] == ["system", "user", "assistant", "user"]
        assert chat[-1]["content"] == "quero reservar"

    def test_user_turn_bounded(self):
        chat = build_messages(_config(), [], "z" * 9000, Settings(user_turn_chars=2000))
        assert len(chat[-1]["content"]) == 2000


class TestConfigParsing:
    def test_clamp(self):
        assert clamp(None, 0, 2, 0.7) == 0.7
        assert clamp("abc", 0, 2, 0.7) == 0.7
        assert clamp(True, 0, 2, 0.7) == 0.7
        assert clamp(5, 0, 2, 0.7) == 2
        assert clamp(-1, 0, 2, 0.7) == 0
        assert clamp("1.2", 0, 2, 0.7) == 1.2

    def test_from_row_with_json_settings(self):
        row = (
            "q-1", "a-1", "c-1", "Recepção", "prompt", "gpt-4o",
            '{"temperature": 3, "max_tokens": 50, "voice_cloning_enabled": true,'
            ' "eleven_labs_voice_id": "v", "eleven_labs_api_key": "k",'
            ' "audio_library": [{"trigger": "oi", "url": "https://cdn.test/oi.mp3"}, {"trigger": "sem-url"}]}',
            "",
        )
        config = AssistantConfig.from_row(row)

        assert config.queue_id == "q-1"
        assert config.temperature == 2.0
        assert config.max_tokens == 100
        assert config.fallback_response is None
        assert config.can_synthesize
        assert [clip.trigger for clip in config.audio_library] == ["oi"]
        assert config.audio_library[0].name == "oi"

    def test_from_row_with_garbage_settings(self):
        config = AssistantConfig.from_row((None, "a-1", "c-1", None, None, "", "not json", None))

        assert config.queue_id is None
        assert config.model is None
        assert config.temperature == 0.7
        assert config.max_tokens == 1000
        assert not config.can_synthesize
        assert not config.audio_processing_enabled

    def test_from_row_reference_files_and_delay(self):
        settings = {
            "custom_files": [{"name": "tabela.pdf", "url": "https://cdn.test/t.pdf"}, "menu.png", {"url": "x"}, "  "],
            "response_delay_seconds": "3.5",
        }
        config = AssistantConfig.from_row((None, "a-1", "c-1", "R", "p", None, settings, None))

        assert config.custom_files == ("tabela.pdf", "menu.png")
        assert config.response_delay_seconds == 3.5

    def test_response_delay_clamped(self):
        def delay(value):
            row = (None, "a-1", "c-1", "R", "p", None, {"response_delay_seconds": value}, None)
            return AssistantConfig.from_row(row).response_delay_seconds

        assert delay(600) == 60.0
        assert delay(-2) == 0.0
        assert delay("soon") == 0.0
        assert delay(None) == 0.0
