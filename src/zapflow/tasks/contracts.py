"""Task payload contracts. Ids only: no chat ids, no message text."""

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class FireBatchTaskV1:
    """Payload of POST /tasks/batches/fire."""

    task_id: str
    ticket_id: str
    correlation_id: str | None = None
    version: Literal["v1"] = field(default="v1", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "task_id": self.task_id,
            "ticket_id": self.ticket_id,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "FireBatchTaskV1":
        """Parse a task body. Payloads without a version are read as v1.

        Raises:
            ValueError: Unsupported version or missing ids.
        """
        if not isinstance(data, dict):
            raise ValueError("payload must be an object")
        version = data.get("version", "v1")
        if version != "v1":
            raise ValueError(f"Unsupported version: {version}")
        task_id = data.get("task_id")
        ticket_id = data.get("ticket_id")
        if not task_id or not ticket_id or not isinstance(task_id, str) or not isinstance(ticket_id, str):
            raise ValueError("missing required fields")
        correlation_id = data.get("correlation_id")
        return cls(
            task_id=task_id,
            ticket_id=ticket_id,
            correlation_id=correlation_id if isinstance(correlation_id, str) else None,
        )
