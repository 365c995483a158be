from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from timeline_sync.config_manager import ConfigManager
from timeline_sync.connector_client import normalize_instance_url
from timeline_sync.course_sync import CourseSync
from timeline_sync.errors import AppError, to_http_error
from timeline_sync.models import SOURCE_TYPES, parse_iso_datetime
from timeline_sync.state_store import StateStore
from timeline_sync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectionRequest(BaseModel):
    institution_url: str = Field(min_length=1)
    storage_state: dict[str, Any]


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.course_sync = CourseSync(self.config_manager, self.state_store)


def _parse_query_datetime(value: str | None, name: str) -> Any:
    if value is None or not value.strip():
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise AppError(400, f"invalid {name} datetime", "invalid_params") from exc


def _public_event(event: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": f"{event['source_type']}:{event['source_id']}:{event['date_kind']}",
        "source_type": event["source_type"],
        "source_id": event["source_id"],
        "date_kind": event["date_kind"],
        "org_unit_id": event["org_unit_id"],
        "course_id": event.get("course_id"),
        "title": event["title"],
        "description": event.get("description"),
        "start_at": event["start_at"],
        "end_at": event.get("end_at"),
        "is_all_day": bool(event.get("is_all_day")),
        "associated_entity_type": event.get("associated_entity_type"),
        "associated_entity_id": event.get("associated_entity_id"),
        "view_url": event.get("view_url"),
        "last_synced_at": event.get("last_synced_at"),
    }


def create_app() -> FastAPI:
    config_path = os.getenv("TIMELINE_SYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TIMELINE_SYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Timeline Sync", version="0.1.0")
    app.state.context = context

    @app.exception_handler(AppError)
    def _app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
        status_code, body = to_http_error(exc)
        return JSONResponse(status_code=status_code, content=body)

    @app.exception_handler(RequestValidationError)
    def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        issues = exc.errors()
        message = str(issues[0].get("msg")) if issues else "invalid request payload"
        return JSONResponse(status_code=400, content={"error": "invalid_request", "message": message})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.put("/api/users/{user_id}/connection")
    def put_connection(user_id: str, request: ConnectionRequest) -> dict[str, Any]:
        institution_url = normalize_instance_url(request.institution_url)
        app.state.context.state_store.upsert_user_connection(
            user_id=user_id,
            institution_url=institution_url,
            storage_state=request.storage_state,
        )
        return {"message": "connection stored", "institution_url": institution_url}

    @app.post("/api/users/{user_id}/sync/courses")
    def sync_courses(user_id: str) -> dict[str, Any]:
        return app.state.context.course_sync.run(user_id)

    @app.post("/api/users/{user_id}/sync/calendar")
    def sync_calendar(user_id: str) -> dict[str, Any]:
        return app.state.context.sync_engine.run_calendar_sync(user_id).to_dict()

    @app.get("/api/users/{user_id}/sync/logs")
    def sync_logs(user_id: str, limit: int = 10) -> dict[str, Any]:
        return {"logs": app.state.context.state_store.recent_sync_logs(user_id, limit=limit)}

    @app.get("/api/users/{user_id}/timeline")
    def timeline(
        user_id: str,
        start: str | None = None,
        end: str | None = None,
        source_type: list[str] | None = Query(default=None),
        limit: int = 1000,
    ) -> dict[str, Any]:
        source_types = [item for item in (source_type or []) if item]
        unknown = sorted(set(source_types) - set(SOURCE_TYPES))
        if unknown:
            raise AppError(400, f"unknown source type: {unknown[0]}", "invalid_params")
        events = app.state.context.state_store.list_timeline_events(
            user_id=user_id,
            start=_parse_query_datetime(start, "start"),
            end=_parse_query_datetime(end, "end"),
            source_types=source_types or None,
            limit=limit,
        )
        return {"events": [_public_event(event) for event in events]}

    @app.get("/api/users/{user_id}/calendar/events/{event_id}")
    def calendar_event(user_id: str, event_id: str) -> dict[str, Any]:
        event_id = event_id.strip()
        if not event_id:
            raise AppError(400, "invalid parameters", "invalid_params")
        event = app.state.context.state_store.get_timeline_event(
            user_id=user_id, source_type="calendar", source_id=event_id, date_kind="event"
        )
        if event is None:
            raise AppError(404, "event not found", "calendar_event_not_found")
        return _public_event(event)

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app


app = create_app()
