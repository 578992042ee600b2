"""FastAPI application exposing health probes and recovery controls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import RecoveryBusy, RecoveryError, UnknownRecoveryAction
from .health_system import HealthSystem
from .models import HealthStatus, utcnow

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
STARTUP_UPTIME_SECONDS = 10


class RecoveryTriggerPayload(BaseModel):
    actions: List[str] = Field(..., min_length=1, description="Recovery action names to run, in order.")


def respond(status_code: int, content: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content), headers=NO_CACHE_HEADERS)


def http_status(status: HealthStatus) -> int:
    return 503 if status == HealthStatus.UNHEALTHY else 200


def endpoint_list(recovery_enabled: bool) -> List[str]:
    endpoints = [
        "GET /health - General health check",
        "GET /health/live - Liveness probe",
        "GET /health/ready - Readiness probe",
        "GET /health/startup - Startup probe",
        "GET /health/detailed - Detailed health information",
    ]
    if recovery_enabled:
        endpoints.append("GET /recovery/status - Recovery system status")
        endpoints.append("POST /recovery/trigger - Trigger recovery actions")
    return endpoints


def create_app(system: HealthSystem, lifespan=None) -> FastAPI:
    server = system.config.health_server
    app = FastAPI(title=system.config.project_name, lifespan=lifespan)
    app.state.system = system

    def require_recovery() -> None:
        if not server.enable_recovery_endpoints:
            raise HTTPException(status_code=404, detail="Recovery endpoints disabled")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        content: Dict[str, Any] = {"error": exc.detail}
        if exc.status_code == 404 and exc.detail == "Not Found":
            content = {
                "error": "Endpoint not found",
                "available_endpoints": endpoint_list(server.enable_recovery_endpoints),
            }
        return respond(exc.status_code, content)

    @app.get("/health")
    async def health() -> JSONResponse:
        try:
            result = system.health_monitor.perform_health_check(emit=False)
        except Exception as exc:  # noqa: BLE001
            logger.error("Health check failed: %s", exc)
            return respond(503, {"status": "error", "timestamp": utcnow(), "error": str(exc)})
        return respond(
            http_status(result.status),
            {"status": result.status, "timestamp": result.timestamp, "checks": result.checks},
        )

    @app.get("/health/live")
    @app.get("/healthz")
    async def liveness() -> JSONResponse:
        if system.is_live():
            return respond(200, {"status": "ok", "timestamp": utcnow()})
        return respond(503, {"status": "not live", "timestamp": utcnow()})

    @app.get("/health/ready")
    @app.get("/readyz")
    async def readiness() -> JSONResponse:
        metrics = system.health_monitor.metrics()
        if system.is_ready() and metrics.connection_connected:
            return respond(200, {"status": "ready", "timestamp": utcnow(), "uptime": metrics.uptime})
        reason = "Connection not established" if not metrics.connection_connected else "Agent not ready"
        return respond(503, {"status": "not ready", "timestamp": utcnow(), "reason": reason})

    @app.get("/health/startup")
    @app.get("/startupz")
    async def startup_probe() -> JSONResponse:
        metrics = system.health_monitor.metrics()
        if metrics.connection_ready and metrics.uptime > STARTUP_UPTIME_SECONDS:
            return respond(200, {"status": "started", "timestamp": utcnow(), "uptime": metrics.uptime})
        return respond(503, {"status": "starting", "timestamp": utcnow(), "uptime": metrics.uptime})

    @app.get("/health/detailed")
    async def detailed() -> JSONResponse:
        try:
            status = system.detailed_status()
        except Exception as exc:  # noqa: BLE001
            logger.error("Detailed health check failed: %s", exc)
            return respond(503, {"status": "error", "timestamp": utcnow(), "error": str(exc)})
        return respond(http_status(status["health"].status), status)

    @app.get("/recovery/status")
    async def recovery_status() -> JSONResponse:
        require_recovery()
        recovery = system.recovery
        return respond(
            200,
            {
                "stats": recovery.recovery_stats(),
                "recent_history": recovery.recovery_history(limit=20),
                "available_actions": recovery.available_actions(),
                "grace_period": recovery.grace_period_status(),
            },
        )

    @app.post("/recovery/trigger")
    async def recovery_trigger(request: Request) -> JSONResponse:
        require_recovery()
        try:
            body = await request.json()
            payload = RecoveryTriggerPayload.model_validate(body)
        except (ValueError, ValidationError) as exc:
            return respond(
                400,
                {"error": "Invalid request", "message": f"Expected 'actions' array in request body: {exc}"},
            )

        task = asyncio.ensure_future(system.recovery.force_recovery(payload.actions))
        try:
            results = await asyncio.wait_for(asyncio.shield(task), timeout=server.timeout_ms / 1000)
        except asyncio.TimeoutError:
            return respond(202, {"message": "Recovery still running", "actions": payload.actions})
        except UnknownRecoveryAction as exc:
            return respond(400, {"error": "Unknown recovery action", "actions": exc.names})
        except RecoveryBusy as exc:
            return respond(409, {"error": "Recovery in progress", "message": str(exc)})
        except RecoveryError as exc:
            return respond(400, {"error": "Recovery trigger failed", "message": str(exc)})
        return respond(200, {"message": "Recovery triggered", "results": results})

    return app
