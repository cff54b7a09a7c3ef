from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calmirror.caldav_client import CalDAVService
from calmirror.config_manager import MASK, ConfigManager
from calmirror.scheduler import SyncScheduler
from calmirror.state_store import StateStore
from calmirror.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def context_from_env() -> AppContext:
    config_path = os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALMIRROR_STATE_PATH", "data/state.db")
    return AppContext(config_path=config_path, state_path=state_path)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("caldav", {}).get("password", ""))

    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        password = caldav.get("password")
        if password is not None and str(password).strip() in {"", MASK}:
            # Blank or masked value means "keep what is stored".
            if current_password:
                caldav.pop("password", None)
            else:
                caldav["password"] = ""
        if caldav:
            sanitized["caldav"] = caldav
        else:
            sanitized.pop("caldav", None)
    return sanitized


def create_app(context: AppContext | None = None) -> FastAPI:
    context = context or context_from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting calmirror scheduler")
        app.state.context.scheduler.start()
        yield
        app.state.context.scheduler.stop()

    app = FastAPI(title="calmirror", version="0.1.0", lifespan=lifespan)
    app.state.context = context

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
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        if not config.caldav.is_complete:
            raise HTTPException(status_code=400, detail="CalDAV config missing base_url/username")
        service = CalDAVService(config.caldav)
        try:
            calendars = service.list_calendars()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        source_ids = set(config.mirror.source_calendar_ids)
        output = []
        for info in calendars:
            item = info.to_dict()
            item["is_source"] = info.calendar_id in source_ids
            item["is_destination"] = info.calendar_id == config.mirror.destination_calendar_id
            output.append(item)
        return {"calendars": output}

    @app.post("/api/sync/batch")
    def trigger_batch() -> dict[str, str]:
        app.state.context.scheduler.trigger_batch()
        return {"message": "batch sync triggered"}

    @app.post("/api/sync/full-sweep")
    def trigger_full_sweep() -> dict[str, str]:
        app.state.context.scheduler.trigger_full_sweep()
        return {"message": "full sweep triggered"}

    @app.post("/api/sync/reset")
    def reset_progress() -> dict[str, str]:
        app.state.context.scheduler.trigger_reset()
        return {"message": "progress reset triggered"}

    @app.get("/api/sync/progress")
    def sync_progress() -> dict[str, Any]:
        return {"progress": app.state.context.sync_engine.progress()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
