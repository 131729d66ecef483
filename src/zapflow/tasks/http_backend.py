"""HTTP backend for tasks: POSTs the task straight to the worker.

For local/staging setups where api and worker run side by side. There is
no delayed delivery here; scheduled tasks are left to the worker sweep.
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Must match task_auth._LOCAL_DEV_AUDIENCE
_LOCAL_DEV_AUDIENCE = "zapflow-tasks-local"


def _worker_base_url() -> str:
    return os.environ.get("WORKER_BASE_URL", "http://worker:8000")


def _fetch_oidc_token(audience: str) -> str | None:
    """Fetch a GCP ID token for audience (metadata server or ADC)."""
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": safe_log_context(audience=audience, error=type(e).__name__)},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task to WORKER_BASE_URL + url_path.

    Returns:
        True if the worker answered 2xx (or the task was scheduled and
        deferred to the sweep), False otherwise.
    """
    if schedule_time is not None:
        logger.info(
            "HTTP backend cannot delay tasks, leaving to sweep",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
        )
        return True

    base_url = _worker_base_url()
    url = f"{base_url}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-Id": correlation_id or "",
        "X-Task-Id": task_id,
    }

    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        if secret:
            headers["X-Internal-Task-Secret"] = secret
    else:
        token = _fetch_oidc_token(os.environ.get("TASKS_OIDC_AUDIENCE") or base_url)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=int(os.environ.get("TASKS_HTTP_TIMEOUT", "30")),
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path, error=type(e).__name__)},
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True
