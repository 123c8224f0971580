from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from tutti.config_manager import ConfigManager
from tutti.event_time import resolve_zone
from tutti.ledger import Ledger
from tutti.scheduler import SyncScheduler
from tutti.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    limit_to_window: bool = True


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        timezone_name = self.config_manager.load().sync.timezone
        self.ledger = Ledger(state_path, tz=resolve_zone(timezone_name))
        self.sync_engine = SyncEngine(self.config_manager, self.ledger)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def create_app() -> FastAPI:
    config_path = os.getenv("TUTTI_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TUTTI_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Tutti Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        sync_section = request.payload.get("sync")
        try:
            if isinstance(sync_section, dict) and "timezone" in sync_section:
                resolve_zone(sync_section["timezone"])
            config = app.state.context.config_manager.update(request.payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("rejected config update: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.sync_engine.use_timezone(config.sync.timezone)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def run_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        limit_to_window = request.limit_to_window if request is not None else True
        outcome = app.state.context.sync_engine.sync_all(limit_to_window=limit_to_window, trigger="manual")
        return outcome.to_dict()

    @app.post("/api/sync/trigger")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/events/{event_id}")
    def sync_event(event_id: str) -> dict[str, Any]:
        if app.state.context.ledger.get_event(event_id) is None:
            raise HTTPException(status_code=404, detail="event not found")
        return app.state.context.sync_engine.sync_one_event(event_id).to_dict()

    @app.post("/api/sync/diff")
    def diff_sync() -> dict[str, Any]:
        return app.state.context.sync_engine.scheduled_diff_sync().to_dict()

    @app.get("/api/sync/status")
    def sync_status() -> dict[str, Any]:
        return app.state.context.sync_engine.status()

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"items": app.state.context.ledger.recent_audit_events(limit=limit, run_id=run_id)}

    return app


app = create_app()
