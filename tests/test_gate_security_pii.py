"""Tests for the PII gate script."""

from pathlib import Path

from scripts.gate_security_pii import check_source, main


class TestCheckSource:
    def test_print_is_rejected(self):
        errors = check_source('def f():\n    print("hi")\n')
        assert len(errors) == 1
        assert "print()" in errors[0]

    def test_logger_with_raw_body_is_rejected(self):
        source = (
            "def f(logger, message):\n"
            "    logger.info('got', extra={'extra_fields': {'text': message.body}})\n"
        )
        errors = check_source(source)
        assert any("'body'" in e for e in errors)

    def test_logger_with_redaction_helper_passes(self):
        source = (
            "def f(logger, message):\n"
            "    logger.info(\n"
            "        'got',\n"
            "        extra={'extra_fields': safe_log_context(chat=hash_identifier(message.chat_id))},\n"
            "    )\n"
        )
        assert check_source(source) == []

    def test_sensitive_words_in_message_string_are_fine(self):
        assert check_source("def f(logger):\n    logger.warning('invalid webhook payload shape')\n") == []


def test_repository_source_passes_gate():
    src = Path(__file__).resolve().parents[1] / "src"
    assert main([str(src)]) == 0
