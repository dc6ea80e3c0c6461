"""
FastAPI application for provider integrations and goal tracking.

Routers translate domain exceptions into APIException; the handlers here
render those as ``{"detail", "error_code"}`` and turn anything else into a
logged 500.
"""
import logging
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.cache import get_redis_client
from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException
from core.logging import setup_logging
from routers import goals, health_data, integrations

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="HealthTrack Sync API",
    description="Connects Strava, Fitbit and Lose It!, keeps their data in sync and tracks goals",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)


def _cors_origins():
    if settings.DEBUG:
        return ["*"]
    if settings.CORS_ORIGINS:
        return [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    return ["http://localhost:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag each request with an id and log one line per response."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={
            "extra_fields": {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            }
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"extra_fields": {"request_id": getattr(request.state, "request_id", None)}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


app.include_router(integrations.router)
app.include_router(goals.router)
app.include_router(health_data.router)


@app.get("/health")
def health():
    """
    Liveness for the load balancer.

    503 only when the database is down. Redis is reported but optional:
    sync locks fall back to in-process locking without it.
    """
    database_ok = check_db_connection()
    redis_state = "disabled"
    if settings.REDIS_ENABLED:
        redis_state = "ok" if get_redis_client() is not None else "unavailable"

    body = {
        "status": "healthy" if database_ok else "unhealthy",
        "database": "ok" if database_ok else "unavailable",
        "redis": redis_state,
    }
    if not database_ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body
