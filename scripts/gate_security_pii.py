#!/usr/bin/env python3
"""PII gate for runtime code under src/.

Fails if:
- print( is used anywhere in src/
- a logger call mentions a sensitive name (message body, chat id, phone,
  raw payload) without going through a redaction helper

Usage:
    python scripts/gate_security_pii.py [SRC_DIR]
"""

import ast
import re
import sys
from pathlib import Path

SENSITIVE_NAMES = (
    "payload",
    "body",
    "chat_id",
    "remote_jid",
    "message_text",
    "customer_phone",
    "customer_name",
    "api_key",
)

LOGGER_METHODS = {"debug", "info", "warning", "error", "critical", "exception"}

# Any of these in the call means the values were redacted or hashed first
REDACTION_HELPERS = (
    "safe_log_context",
    "redact_value",
    "redact_string",
    "hash_identifier",
    "id_prefix",
    "log_ctx",
)

_NAME_PATTERN = re.compile(r"\b(" + "|".join(SENSITIVE_NAMES) + r")\b")


def _is_logger_call(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and node.func.attr in LOGGER_METHODS
        and isinstance(node.func.value, ast.Name)
        and node.func.value.id == "logger"
    )


def _is_print_call(node: ast.AST) -> bool:
    return isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "print"


def _code_names(call: ast.Call) -> set[str]:
    """Identifiers and attributes used in the call, ignoring string literals."""
    names = set()
    for node in ast.walk(call):
        if isinstance(node, ast.Name):
            names.add(node.id)
        elif isinstance(node, ast.Attribute):
            names.add(node.attr)
        elif isinstance(node, ast.keyword) and node.arg:
            names.add(node.arg)
    return names


def check_source(source: str, filename: str = "<src>") -> list[str]:
    """Return one error line per violation in source."""
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        return [f"{filename}:{e.lineno}: cannot parse ({e.msg})"]

    errors = []
    for node in ast.walk(tree):
        if _is_print_call(node):
            errors.append(f"{filename}:{node.lineno}: print() not allowed in runtime code")
            continue
        if not _is_logger_call(node):
            continue
        names = _code_names(node)
        if any(helper in names for helper in REDACTION_HELPERS):
            continue
        for name in sorted(names):
            if _NAME_PATTERN.fullmatch(name):
                errors.append(
                    f"{filename}:{node.lineno}: logger call uses '{name}' "
                    "without redaction (safe_log_context/hash_identifier)"
                )
    return errors


def check_file(filepath: Path) -> list[str]:
    try:
        source = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []
    return check_source(source, str(filepath))


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    src_dir = Path(args[0]) if args else Path(__file__).resolve().parent.parent / "src"

    if not src_dir.exists():
        sys.stderr.write(f"Error: {src_dir} not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("PII gate FAILED:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("PII gate passed\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
