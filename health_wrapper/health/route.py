import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from health_wrapper.vars import HEALTH_PATH

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


class HealthStatus(BaseModel):
    status: Literal["ok", "starting"]
    timestamp: str


def utc_timestamp() -> str:
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def health(request: Request) -> JSONResponse:
    """Answer the orchestrator probe from the readiness gate alone."""
    gate = request.app.state.readiness
    if gate.is_ready():
        body = HealthStatus(status="ok", timestamp=utc_timestamp())
        return JSONResponse(body.model_dump(), status_code=200)

    body = HealthStatus(status="starting", timestamp=utc_timestamp())
    return JSONResponse(body.model_dump(), status_code=503)


# No method list: the probe path answers every method so it can never fall
# through to the proxy catch-all.
router.add_route(HEALTH_PATH, health, include_in_schema=False)
