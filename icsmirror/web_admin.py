from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from icsmirror.config_manager import ConfigManager
from icsmirror.errors import IncompleteRecord, InvalidArgument, NotFound, SyncFailure
from icsmirror.models import SyncResult
from icsmirror.state_store import StateStore
from icsmirror.sync_engine import SyncOrchestrator


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class OrganizerPayload(BaseModel):
    email: str = Field(min_length=1)
    name: str = ""


class AttendeePayload(BaseModel):
    email: str = Field(min_length=1)
    name: str = ""
    role: str = ""
    status: str = ""
    id: int | str | None = None


class ResourcePayload(BaseModel):
    email: str = ""
    name: str = ""
    type: str = ""
    sub_type: str = ""
    admin_email: str = ""


class EventChangeRequest(BaseModel):
    """Partial event update. Keys left out of the JSON body are not touched."""

    calendar_id: int | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    all_day: bool | None = None
    recurrence_rule: str | None = None
    organizer: OrganizerPayload | None = None
    attendees: list[AttendeePayload] | None = None
    resources: list[ResourcePayload] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.orchestrator = SyncOrchestrator(self.config_manager, self.state_store)


def _result_payload(context: AppContext, result: SyncResult) -> dict[str, Any]:
    payload: dict[str, Any] = {"result": result.to_dict()}
    if result.event_id is not None:
        payload["event"] = context.state_store.fetch_event(result.event_id).to_dict()
    return payload


def create_app() -> FastAPI:
    config_path = os.getenv("ICSMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ICSMIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="icsmirror", version="0.1.0")
    app.state.context = context

    def _run(action: Any, *args: Any) -> dict[str, Any]:
        try:
            result = action(*args)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (InvalidArgument, IncompleteRecord) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _result_payload(app.state.context, result)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        config_manager = app.state.context.config_manager
        config_manager.update(request.payload)
        return {"message": "config updated", "config": config_manager.masked()}

    @app.post("/api/events")
    def create_event(request: EventChangeRequest) -> dict[str, Any]:
        return _run(app.state.context.orchestrator.save_event, None, request.changes())

    @app.get("/api/events/{event_id}")
    def get_event(event_id: int) -> dict[str, Any]:
        try:
            record = app.state.context.state_store.fetch_event(event_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"event": record.to_dict()}

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: int, request: EventChangeRequest) -> dict[str, Any]:
        return _run(app.state.context.orchestrator.save_event, event_id, request.changes())

    @app.post("/api/events/{event_id}/cancel")
    def cancel_event(event_id: int) -> dict[str, Any]:
        return _run(app.state.context.orchestrator.cancel_event, event_id)

    @app.post("/api/events/{event_id}/retry")
    def retry_event(event_id: int) -> dict[str, Any]:
        return _run(app.state.context.orchestrator.retry_event, event_id)

    @app.get("/api/events/{event_id}/drift")
    def event_drift(event_id: int) -> dict[str, Any]:
        try:
            report = app.state.context.orchestrator.check_drift(event_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (SyncFailure, InvalidArgument) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"drift": report.to_dict()}

    @app.get("/api/sync-attempts")
    def sync_attempts(limit: int = 20, event_id: int | None = None) -> dict[str, Any]:
        rows = app.state.context.state_store.recent_sync_attempts(limit=limit, event_id=event_id)
        return {"attempts": rows}

    return app
