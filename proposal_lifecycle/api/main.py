"""
FILE: proposal_lifecycle/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from proposal_lifecycle.api.observability import setup_observability
from proposal_lifecycle.api.routers import orders as _order_routes  # noqa: F401
from proposal_lifecycle.api.routers.proposals import get_repository
from proposal_lifecycle.api.routers.proposals import router as proposal_lifecycle_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    # Fail fast on a misconfigured store instead of on the first request.
    get_repository()
    yield


app = FastAPI(
    title="Proposal Lifecycle API",
    version="0.1.0",
    description=(
        "Financial proposals with optimistic concurrency control, an automatic audit "
        "trail and order placement from approved proposals."
    ),
    openapi_tags=[
        {
            "name": "Proposal Lifecycle",
            "description": "Create, edit, transition, delete and audit proposals.",
        },
        {
            "name": "Orders",
            "description": "Orders derived from approved proposals.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
app.include_router(proposal_lifecycle_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"], summary="Liveness Probe")
def health() -> dict[str, str]:
    return {"status": "ok"}
