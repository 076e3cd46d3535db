"""Health check endpoint for the kpiscore API."""

from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from kpiscore import __version__
from kpiscore.persistence.db import is_postgres_configured

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    time: str
    version: str
    storage: str


@router.get("/health", response_model=HealthResponse)
def get_health() -> HealthResponse:
    """Liveness probe. No authentication; reports which store is in use."""
    return HealthResponse(
        status="ok",
        time=datetime.now(UTC).isoformat(),
        version=__version__,
        storage="postgres" if is_postgres_configured() else "memory",
    )
