"""FastAPI server — status API + dashboard assets."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from probewatch.api.status_routes import health_router, status_router
from probewatch.config import Settings, settings
from probewatch.health.assistant import AssistantCLI
from probewatch.health.executor import ProbeExecutor
from probewatch.health.scheduler import HealthScheduler
from probewatch.health.store import StatusStore

logger = logging.getLogger(__name__)


def build_components(cfg: Settings) -> tuple[StatusStore, ProbeExecutor, HealthScheduler]:
    """Wire store → executor → scheduler from settings."""
    store = StatusStore(
        data_dir=Path(cfg.data_dir),
        config_dir=Path(cfg.config_dir),
        config_path=Path(cfg.services_file),
    )
    assistant = AssistantCLI(
        home=Path(cfg.assistant_home) if cfg.assistant_home else None,
        template_dir=Path(cfg.assistant_template_dir),
    )
    executor = ProbeExecutor(
        project_root=Path(cfg.project_root) if cfg.project_root else None,
        default_timeout_ms=cfg.exec_timeout_ms,
        kill_grace_ms=cfg.kill_grace_ms,
        integrations=[assistant],
    )
    scheduler = HealthScheduler(
        executor,
        store,
        snapshot_path=Path(cfg.snapshot_path),
        default_interval_minutes=cfg.default_interval_minutes,
    )
    return store, executor, scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Reset the store and start the scheduler on startup."""
    store = app.state.store
    scheduler = app.state.scheduler

    await store.initialize()
    try:
        await scheduler.start()
    except Exception:
        logger.exception("Health scheduler failed to start")

    yield

    await scheduler.stop()


def create_app(cfg: Settings | None = None) -> FastAPI:
    cfg = cfg or settings
    app = FastAPI(
        title="probewatch — Service Monitor",
        version="0.1.0",
        lifespan=lifespan,
    )

    store, executor, scheduler = build_components(cfg)
    app.state.store = store
    app.state.executor = executor
    app.state.scheduler = scheduler
    app.state.development = cfg.is_development

    if cfg.is_development:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:5173"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    app.include_router(status_router, prefix="/api")
    app.include_router(health_router)

    # Dashboard build output (status.json is written here too)
    static_dir = Path(cfg.static_dir)
    static_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")

    return app
