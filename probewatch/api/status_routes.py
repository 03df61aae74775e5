"""API routes for service status.

Endpoints:
  GET  /api/services                 — summaries for all services (+ orphans)
  GET  /api/services/{id}/detail     — last full result, output redacted
  GET  /api/services/{id}/recent     — retained recent checks
  GET  /api/status                   — regenerated public snapshot
  POST /api/checks/run               — run every enabled check now
  GET  /health                       — store overview
  GET  /health/{service}             — ad-hoc check (development only)
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from .sanitize import sanitize_error_message, sanitize_output

logger = logging.getLogger(__name__)

status_router = APIRouter()
health_router = APIRouter()


# ── Pydantic models ──────────────────────────────────────────────────────────


class RecentCheckOut(BaseModel):
    timestamp: str
    status: str
    responseTime: float


class RecentChecksResponse(BaseModel):
    serviceId: str
    checks: list[RecentCheckOut]


class RunResultOut(BaseModel):
    name: str
    status: str
    responseTime: float
    answer: str | None = None
    message: str | None = None


class RunChecksResponse(BaseModel):
    results: list[RunResultOut]


# ── Helpers ──────────────────────────────────────────────────────────────────


def _safe_message(request: Request, error: BaseException) -> str:
    if getattr(request.app.state, "development", False):
        return str(error)
    return sanitize_error_message(error)


def _server_error(request: Request, error: BaseException, what: str, **extra: Any) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"error": what, "message": _safe_message(request, error), **extra},
    )


def _redact_result(result: dict[str, Any]) -> dict[str, Any]:
    return {
        **result,
        "stdout": sanitize_output(result.get("stdout")),
        "stderr": sanitize_output(result.get("stderr")),
        "message": sanitize_output(result.get("message")) if result.get("message") else None,
    }


# ── Service endpoints ────────────────────────────────────────────────────────


@status_router.get("/services")
async def list_services(request: Request) -> dict[str, Any]:
    store = request.app.state.store
    try:
        return {"services": await store.get_all_services_summary()}
    except Exception as e:
        logger.exception("Failed to load services overview")
        raise _server_error(request, e, "Failed to load services overview")


@status_router.get("/services/{service_id}/detail")
async def service_detail(service_id: str, request: Request) -> dict[str, Any]:
    store = request.app.state.store
    try:
        detail = await store.get_service_detail(service_id)
    except Exception as e:
        logger.exception("Failed to load detail for %s", service_id)
        raise _server_error(request, e, "Failed to load service detail", serviceId=service_id)

    if detail is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "Service detail not found", "serviceId": service_id},
        )
    return {**detail, "result": _redact_result(detail["result"])}


@status_router.get("/services/{service_id}/recent", response_model=RecentChecksResponse)
async def service_recent(service_id: str, request: Request) -> RecentChecksResponse:
    store = request.app.state.store
    try:
        checks = await store.get_service_recent_checks(service_id)
    except Exception as e:
        logger.exception("Failed to load recent checks for %s", service_id)
        raise _server_error(request, e, "Failed to load recent checks", serviceId=service_id)
    return RecentChecksResponse(
        serviceId=service_id,
        checks=[RecentCheckOut(**c) for c in checks],
    )


@status_router.get("/status")
async def public_status(request: Request) -> dict[str, Any]:
    """Public snapshot, regenerated on request."""
    scheduler = request.app.state.scheduler
    snapshot = await scheduler.generate_public_status()
    if snapshot is None:
        raise HTTPException(status_code=500, detail={"error": "Failed to generate public status"})
    return snapshot


@status_router.post("/checks/run", response_model=RunChecksResponse)
async def run_checks(request: Request) -> RunChecksResponse:
    """Manual refresh: run every enabled check once, sequentially."""
    scheduler = request.app.state.scheduler
    results = await scheduler.run_checks()
    return RunChecksResponse(
        results=[
            RunResultOut(
                name=r.name,
                status=r.status.value,
                responseTime=r.response_time,
                answer=r.answer,
                message=sanitize_output(r.message),
            )
            for r in results
        ],
    )


# ── Health endpoints ─────────────────────────────────────────────────────────


@health_router.get("/health")
async def health_overview(request: Request) -> dict[str, Any]:
    store = request.app.state.store
    try:
        return await store.get_health_overview()
    except Exception as e:
        logger.exception("Failed to load health overview")
        raise _server_error(request, e, "Failed to load health overview")


@health_router.get("/health/{service}")
async def adhoc_check(service: str, request: Request) -> dict[str, Any]:
    """Run one probe without recording it. Disabled outside development."""
    if not getattr(request.app.state, "development", False):
        raise HTTPException(
            status_code=403,
            detail={"error": "This endpoint is disabled in production"},
        )

    store = request.app.state.store
    executor = request.app.state.executor
    config = await store.load_config()
    definition = config.get(service)
    if definition is None:
        raise HTTPException(status_code=404, detail={"error": "Service not found", "service": service})

    result = await executor.check(definition)
    return {"service": definition.id, "result": result.to_dict()}
