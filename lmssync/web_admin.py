from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from lmssync.config_manager import ConfigManager, resolve_paths
from lmssync.credential_store import CredentialStore
from lmssync.lms_client import LMSClient
from lmssync.state_store import StateStore
from lmssync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CredentialSaveRequest(BaseModel):
    cookie: str = Field(default="", max_length=16384)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        config = self.config_manager.load()
        self.client = LMSClient(config.lms)
        self.credentials = CredentialStore(self.state_store, self.client)
        self.sync_engine = SyncEngine(
            self.state_store,
            self.client,
            defaults=config.sync,
            credentials=self.credentials,
        )

    def apply_config(self) -> None:
        config = self.config_manager.load()
        self.client.config = config.lms
        self.sync_engine.defaults = config.sync


def _clean_user_id(user_id: str) -> str:
    cleaned = str(user_id or "").strip()
    if not cleaned:
        raise HTTPException(status_code=400, detail="user_id is required")
    return cleaned


def create_app() -> FastAPI:
    config_path, state_path = resolve_paths()
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="LMS Sync", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.apply_config()
        return {"message": "config updated", "config": updated.to_dict()}

    @app.put("/api/users/{user_id}/credential")
    def save_credential(user_id: str, request: CredentialSaveRequest) -> dict[str, Any]:
        result = app.state.context.credentials.save(_clean_user_id(user_id), request.cookie)
        return result.to_dict()

    @app.get("/api/users/{user_id}/credential")
    def credential_status(user_id: str) -> dict[str, Any]:
        return app.state.context.credentials.get(_clean_user_id(user_id)).to_dict()

    @app.delete("/api/users/{user_id}/credential")
    def delete_credential(user_id: str) -> dict[str, Any]:
        return app.state.context.credentials.delete(_clean_user_id(user_id)).to_dict()

    @app.post("/api/users/{user_id}/sync")
    def run_sync(user_id: str) -> dict[str, Any]:
        outcome = app.state.context.sync_engine.run_sync(_clean_user_id(user_id), trigger="api")
        return outcome.to_dict()

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20, user_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, user_id=user_id)}

    @app.get("/api/audit/events")
    def audit_events(limit: int | None = None, run_id: int | None = None) -> dict[str, Any]:
        if limit is None:
            limit = app.state.context.sync_engine.defaults.audit_limit
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
