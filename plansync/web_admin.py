from __future__ import annotations

import os
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from plansync.calendar_client import AuthError, GoogleCredentialProvider, RemoteError
from plansync.config_manager import MASK, SECRET_FIELDS, ConfigManager
from plansync.extractor import ExtractionSession, IndexLoader
from plansync.scheduler import SyncScheduler
from plansync.state_store import StateStore
from plansync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    path: str | None = None


class OAuthExchangeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=2000)


class AppContext:
    def __init__(self, config_path: str, state_path: str, index_loader: IndexLoader | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            extraction_session=ExtractionSession(index_loader),
        )
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)
        self.credentials = GoogleCredentialProvider(self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    google = config_dict.get("google", {})
    return {"google": {key: {"is_masked": bool(str(google.get(key, "")).strip())} for key in SECRET_FIELDS}}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    google = sanitized.get("google")
    if isinstance(google, dict):
        google = dict(google)
        current_google = current.get("google", {})
        for key in SECRET_FIELDS:
            value = google.get(key)
            if value is None:
                continue
            if str(value).strip() in {"", MASK}:
                if current_google.get(key):
                    google.pop(key, None)
                else:
                    google[key] = ""
        if google:
            sanitized["google"] = google
        else:
            sanitized.pop("google", None)
    return sanitized


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD") from exc


def create_app() -> FastAPI:
    config_path = os.getenv("PLANSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("PLANSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="plansync Admin", version="0.1.0")
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
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.post("/api/sync/run")
    def run_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        path = request.path if request else None
        result = app.state.context.sync_engine.run_once(path=path, trigger="api")
        message = "sync busy" if result.status == "busy" else "sync completed"
        return {"message": message, "result": result.to_dict()}

    @app.post("/api/sync/trigger")
    def trigger_sync(request: SyncRunRequest | None = None) -> dict[str, str]:
        path = request.path if request else None
        if path:
            context = app.state.context
            try:
                context.sync_engine.resolve_document(context.config_manager.load(), path)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.scheduler.trigger_manual(path=path)
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "busy": app.state.context.sync_engine.busy,
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/timeline")
    def timeline(date: str | None = None, path: str | None = None) -> dict[str, Any]:
        day = _parse_date(date)
        try:
            return app.state.context.sync_engine.timeline(path=path, day=day)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/api/calendar/changes")
    def calendar_changes(date: str | None = None) -> dict[str, Any]:
        day = _parse_date(date)
        return {"changed": app.state.context.sync_engine.check_for_calendar_changes(day)}

    @app.get("/api/oauth/url")
    def oauth_url() -> dict[str, str]:
        try:
            return {"url": app.state.context.credentials.authorization_url()}
        except AuthError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/api/oauth/exchange")
    def oauth_exchange(request: OAuthExchangeRequest) -> dict[str, str]:
        try:
            app.state.context.credentials.exchange_code(request.code)
        except AuthError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RemoteError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"message": "google calendar connected"}

    return app


app = create_app()
