"""Public-facing routes (APP_ROLE=public): health and the gateway webhook."""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "zapflow"}
