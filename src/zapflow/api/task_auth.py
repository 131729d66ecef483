"""Task authentication for worker routes.

Cloud Tasks calls the worker with a Google-signed OIDC token. In local
dev (TASKS_OIDC_AUDIENCE == "zapflow-tasks-local") the shared
X-Internal-Task-Secret header is accepted instead.
"""

from __future__ import annotations

import base64
import hmac
import json
import os

from fastapi import Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import safe_log_context

logger = get_logger(__name__)

_LOCAL_DEV_AUDIENCE = "zapflow-tasks-local"


def is_local_dev() -> bool:
    return os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE


def _unverified_claim(token: str, claim: str) -> str | None:
    """Read one claim without verifying the signature. Diagnostics only."""
    try:
        segment = token.split(".")[1]
        segment += "=" * (-len(segment) % 4)
        value = json.loads(base64.urlsafe_b64decode(segment)).get(claim)
    except (IndexError, ValueError):
        return None
    return str(value) if value is not None else None


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer "):]


def verify_task_oidc(token: str) -> bool:
    """Verify a Cloud Tasks OIDC token against TASKS_OIDC_AUDIENCE.

    Fails closed when the audience is not configured. When
    TASKS_OIDC_SERVICE_ACCOUNT is set, the token email must match it.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "OIDC token verification failed",
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    expected_audience=audience,
                    received_audience=_unverified_claim(token, "aud"),
                )
            },
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email", "") != expected_email:
        logger.warning(
            "OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(reason="service_account_mismatch")},
        )
        return False
    return True


def verify_task_auth(request: Request) -> bool:
    """OIDC, or the internal secret header in local dev only."""
    if is_local_dev():
        internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        request_secret = request.headers.get("X-Internal-Task-Secret", "")
        if internal_secret and hmac.compare_digest(request_secret, internal_secret):
            return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)
