"""Worker/internal routes (APP_ROLE=worker). Task handlers live in api.routes.tasks_*."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/tasks/health")
def tasks_health(request: Request) -> dict:
    pipeline = request.app.state.pipeline
    return {"status": "ok", "subsystem": "tasks", "backend": pipeline.tasks_client.backend}


@router.get("/internal/health")
def internal_health() -> dict:
    return {"status": "ok", "subsystem": "internal"}
