"""Tasks client with idempotent enqueue.

Backends, selected via TASKS_BACKEND:
- inline (default): records tasks without running them (dev/tests)
- http: POSTs the task to the worker right away
- cloud_tasks: creates a Google Cloud Task, honouring schedule_time

The debounce timer needs a scheduled delivery; only cloud_tasks provides
one. With the other backends the worker sweep picks overdue tickets up.
"""

import os
from datetime import datetime


class TasksClient:
    """Tasks client, idempotent by task_id within the process.

    Cross-process dedupe is the backend's job (Cloud Tasks rejects a
    second task with the same name).
    """

    def __init__(self, backend: str | None = None) -> None:
        self._seen_ids: set[str] = set()
        self._scheduled_tasks: list[dict] = []
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")

    @property
    def backend(self) -> str:
        return self._backend

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a task for the worker endpoint at url_path.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g., "/tasks/batches/fire").
            payload: Task data (ids only, no message text or phone numbers).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional earliest execution time.

        Returns:
            True if the task was enqueued (or already existed in the backend).
            False if task_id was already seen, or the http backend failed.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._seen_ids:
            return False

        self._seen_ids.add(task_id)

        if self._backend == "inline":
            self._scheduled_tasks.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        elif self._backend == "http":
            from zapflow.tasks.http_backend import enqueue_http
            return enqueue_http(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        elif self._backend == "cloud_tasks":
            from zapflow.tasks.cloud_tasks_backend import enqueue_cloud_task
            return enqueue_cloud_task(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_enqueued(self, task_id: str) -> bool:
        return task_id in self._seen_ids

    def get_scheduled_tasks(self) -> list[dict]:
        """Tasks recorded by the inline backend, in enqueue order."""
        return list(self._scheduled_tasks)

    def clear(self) -> None:
        self._seen_ids.clear()
        self._scheduled_tasks.clear()
