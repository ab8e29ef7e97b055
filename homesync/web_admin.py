from __future__ import annotations

import os
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from homesync.config_manager import MASKED_SECRET, ConfigManager
from homesync.engine import CalendarEngine
from homesync.errors import (
    EventNotFound,
    HomeSyncError,
    InvalidCredential,
    InvalidLocator,
    InvalidRule,
    InvalidTransition,
    ProviderUnavailable,
    ReconciliationConflict,
    RuleConflict,
    RuleNotFound,
    SourceNotFound,
    SyncInProgress,
)
from homesync.models import MatchType, Provider, parse_iso_datetime
from homesync.scheduler import SyncScheduler
from homesync.state_store import StateStore

ERROR_STATUS = {
    SourceNotFound: 404,
    RuleNotFound: 404,
    EventNotFound: 404,
    RuleConflict: 409,
    SyncInProgress: 409,
    InvalidTransition: 409,
    InvalidLocator: 400,
    InvalidRule: 400,
    InvalidCredential: 401,
    ProviderUnavailable: 502,
    ReconciliationConflict: 502,
}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectSourceRequest(BaseModel):
    provider: Provider
    child_id: str = Field(min_length=1)
    locator: str = Field(min_length=1)
    display_name: str = ""
    refresh_interval_minutes: int | None = Field(default=None, ge=1)


class ReplaceLocatorRequest(BaseModel):
    locator: str = Field(min_length=1)


class CreateRuleRequest(BaseModel):
    child_id: str = Field(min_length=1)
    match_type: MatchType
    match_value: str = Field(min_length=1)
    home_id: str | None = None
    auto_confirm: bool = False
    priority: int = 0
    source_id: str | None = None


class UpdateRuleRequest(BaseModel):
    match_type: MatchType | None = None
    match_value: str | None = None
    home_id: str | None = None
    auto_confirm: bool | None = None
    priority: int | None = None


class QuickMapRequest(BaseModel):
    home_id: str | None = None
    auto_confirm: bool = False
    match_type: MatchType | None = None


class IgnoreCandidatesRequest(BaseModel):
    event_ids: list[str] = Field(default_factory=list)
    source_id: str | None = None
    title: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.engine = CalendarEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_tokens = current.get("oauth", {}).get("access_tokens") or {}

    oauth = sanitized.get("oauth")
    if isinstance(oauth, dict):
        oauth = dict(oauth)
        tokens = oauth.get("access_tokens")
        if isinstance(tokens, dict):
            merged = dict(current_tokens)
            for connection_id, token in tokens.items():
                token_text = str(token or "").strip()
                if token_text == MASKED_SECRET:
                    continue
                if token_text:
                    merged[str(connection_id)] = token_text
                else:
                    merged.pop(str(connection_id), None)
            oauth["access_tokens"] = merged
        if oauth:
            sanitized["oauth"] = oauth
        else:
            sanitized.pop("oauth", None)

    return sanitized


def _parse_range_bound(value: str | None, name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} datetime") from exc


def create_app() -> FastAPI:
    config_path = os.getenv("HOMESYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("HOMESYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Homesync", version="0.1.0")
    app.state.context = context

    @app.exception_handler(HomeSyncError)
    async def _homesync_error(_request: Request, exc: HomeSyncError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            500,
        )
        return JSONResponse(status_code=status_code, content={"detail": exc.message})

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
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            app.state.context.config_manager.update(sanitized_payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Invalid config payload") from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    # Sources

    @app.get("/api/sources")
    def list_sources(child_id: str | None = None) -> dict[str, Any]:
        sources = app.state.context.engine.list_sources(child_id)
        return {"sources": [source.to_dict() for source in sources]}

    @app.post("/api/sources")
    async def connect_source(request: ConnectSourceRequest) -> dict[str, Any]:
        result = await app.state.context.engine.connect_source(
            request.provider,
            request.child_id,
            request.locator,
            display_name=request.display_name,
            refresh_interval_minutes=request.refresh_interval_minutes,
        )
        return result.to_dict()

    @app.post("/api/sources/{source_id}/sync")
    async def sync_source(source_id: str) -> dict[str, Any]:
        counts = await app.state.context.engine.sync_now(source_id)
        return {"counts": counts.to_dict()}

    @app.put("/api/sources/{source_id}/locator")
    def replace_locator(source_id: str, request: ReplaceLocatorRequest) -> dict[str, Any]:
        source = app.state.context.engine.replace_locator(source_id, request.locator)
        return {"source": source.to_dict()}

    @app.delete("/api/sources/{source_id}")
    def disconnect_source(source_id: str) -> dict[str, str]:
        app.state.context.engine.disconnect(source_id)
        return {"message": "source disconnected"}

    # Candidates

    @app.get("/api/children/{child_id}/candidates")
    def list_candidates(child_id: str) -> dict[str, Any]:
        candidates = app.state.context.engine.list_candidates(child_id)
        return {"candidates": [candidate.to_dict() for candidate in candidates]}

    @app.post("/api/children/{child_id}/candidates/{candidate_key}/map")
    def quick_map(child_id: str, candidate_key: str, request: QuickMapRequest) -> dict[str, Any]:
        rule = app.state.context.engine.quick_map(
            child_id,
            candidate_key,
            request.home_id,
            auto_confirm=request.auto_confirm,
            match_type=request.match_type,
        )
        return {"rule": rule.to_dict()}

    @app.post("/api/children/{child_id}/candidates/ignore")
    def ignore_candidates(child_id: str, request: IgnoreCandidatesRequest) -> dict[str, int]:
        engine = app.state.context.engine
        if request.event_ids:
            ignored = engine.ignore_candidates(request.event_ids)
        elif request.source_id and request.title:
            ignored = engine.ignore_candidates_by_title(child_id, request.source_id, request.title)
        else:
            raise HTTPException(status_code=400, detail="event_ids or source_id and title are required")
        return {"ignored": ignored}

    # Rules

    @app.get("/api/children/{child_id}/rules")
    def list_rules(child_id: str, include_inactive: bool = False) -> dict[str, Any]:
        rules = app.state.context.engine.list_rules(child_id, include_inactive=include_inactive)
        return {"rules": [rule.to_dict() for rule in rules]}

    @app.post("/api/rules")
    def create_rule(request: CreateRuleRequest) -> dict[str, Any]:
        rule = app.state.context.engine.create_rule(
            request.child_id,
            request.match_type,
            request.match_value,
            request.home_id,
            request.auto_confirm,
            priority=request.priority,
            source_id=request.source_id,
        )
        return {"rule": rule.to_dict()}

    @app.patch("/api/rules/{rule_id}")
    def update_rule(rule_id: str, request: UpdateRuleRequest) -> dict[str, Any]:
        changes = {key: getattr(request, key) for key in request.model_fields_set}
        rule = app.state.context.engine.update_rule(rule_id, **changes)
        return {"rule": rule.to_dict()}

    @app.post("/api/rules/{rule_id}/activate")
    def activate_rule(rule_id: str) -> dict[str, Any]:
        rule = app.state.context.engine.activate_rule(rule_id)
        return {"rule": rule.to_dict()}

    @app.delete("/api/rules/{rule_id}")
    def delete_rule(rule_id: str) -> dict[str, str]:
        app.state.context.engine.delete_rule(rule_id)
        return {"message": "rule deactivated"}

    # Events

    @app.get("/api/children/{child_id}/events")
    def list_events(child_id: str, start: str | None = None, end: str | None = None) -> dict[str, Any]:
        start_at = _parse_range_bound(start, "start")
        end_at = _parse_range_bound(end, "end")
        if start_at and end_at and end_at <= start_at:
            raise HTTPException(status_code=400, detail="end must be later than start")
        events = app.state.context.engine.list_events(child_id, start_at, end_at)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events/{event_id}/confirm")
    def confirm_home_stay(event_id: str) -> dict[str, Any]:
        event = app.state.context.engine.confirm_home_stay(event_id)
        return {"event": event.to_dict()}

    @app.post("/api/events/{event_id}/reject")
    def reject_home_stay(event_id: str) -> dict[str, Any]:
        event = app.state.context.engine.reject_home_stay(event_id)
        return {"event": event.to_dict()}

    # Operational trail

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, source_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, source_id=source_id)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None, action: str | None = None) -> dict[str, Any]:
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id, action=action)
        return {"events": events}

    return app


app = create_app()
