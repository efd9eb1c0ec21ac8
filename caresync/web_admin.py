from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from caresync.auth import CredentialAuthenticator, TokenCipher, expires_at_from
from caresync.config_manager import ConfigManager
from caresync.entities import EntityRepository, InMemoryEntityRepository
from caresync.errors import (
    AuthError,
    NotConnectedError,
    NotificationRejectedError,
    ProviderError,
    TransientProviderError,
    ValidationError,
    describe,
)
from caresync.google_client import GoogleCalendarClient
from caresync.integration import IntegrationService
from caresync.logging_setup import setup_logging
from caresync.models import SyncOptions
from caresync.scheduler import Clock, SyncOrchestrator
from caresync.state_store import StateStore
from caresync.sync_engine import SyncEngine
from caresync.watch import WatchManager

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    scope: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    expires_in: int | None = Field(default=None, ge=0)
    token_type: str | None = None
    calendar_id: str | None = None


class SyncRequest(BaseModel):
    force_full: bool = False
    calendar_id: str | None = None
    pull_remote: bool = True


class ItemChangedRequest(BaseModel):
    item_type: str


class AppContext:
    def __init__(
        self,
        config_path: str,
        state_path: str,
        entities: EntityRepository | None = None,
        client: GoogleCalendarClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        if not config.security.encryption_key:
            logger.warning("No security.encryption_key configured; generating one")
            config = self.config_manager.update({"security": {"encryption_key": TokenCipher.generate_key()}})
        setup_logging(config.logging.level)

        self.state_store = StateStore(state_path)
        self.entities = entities if entities is not None else InMemoryEntityRepository()
        self.client = client or GoogleCalendarClient(config.google)
        self.authenticator = CredentialAuthenticator(
            self.state_store,
            TokenCipher(config.security.encryption_key),
            config.google,
        )
        self.watch_manager = WatchManager(
            self.state_store, self.client, self.authenticator, self.config_manager
        )
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            self.authenticator,
            self.client,
            self.entities,
            self.watch_manager,
        )
        self.orchestrator = SyncOrchestrator(
            self.sync_engine, self.config_manager, self.state_store, self.watch_manager, clock=clock
        )
        self.integration = IntegrationService(
            self.state_store,
            self.authenticator,
            self.orchestrator,
            self.watch_manager,
            self.client,
            self.entities,
        )


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    body: dict[str, Any] = {"detail": describe(exc)}
    code = getattr(exc, "code", None)
    if code:
        body["code"] = code
    return JSONResponse(status_code=status_code, content=body)


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("CARESYNC_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("CARESYNC_STATE_PATH", "data/state.db")
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="CareSync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.orchestrator.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.orchestrator.stop()

    @app.exception_handler(NotConnectedError)
    def _not_connected(_: Request, exc: NotConnectedError) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(AuthError)
    def _auth_error(_: Request, exc: AuthError) -> JSONResponse:
        return _error_response(409, exc)

    @app.exception_handler(ValidationError)
    def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(400, exc)

    @app.exception_handler(NotificationRejectedError)
    def _notification_rejected(_: Request, exc: NotificationRejectedError) -> JSONResponse:
        return _error_response(403, exc)

    @app.exception_handler(TransientProviderError)
    def _transient_error(_: Request, exc: TransientProviderError) -> JSONResponse:
        return _error_response(503, exc)

    @app.exception_handler(ProviderError)
    def _provider_error(_: Request, exc: ProviderError) -> JSONResponse:
        return _error_response(502, exc)

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
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/users/{user_id}/integrations/google")
    def integration_status(user_id: int) -> dict[str, Any]:
        return app.state.context.integration.status(user_id)

    @app.put("/api/users/{user_id}/integrations/google")
    def connect_integration(user_id: int, request: ConnectRequest) -> dict[str, Any]:
        return app.state.context.integration.connect(
            user_id,
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            scope=request.scope,
            expires_at=request.expires_at or expires_at_from(request.expires_in),
            token_type=request.token_type,
            calendar_id=request.calendar_id,
        )

    @app.delete("/api/users/{user_id}/integrations/google")
    def disconnect_integration(user_id: int) -> dict[str, Any]:
        return app.state.context.integration.disconnect(user_id)

    @app.post("/api/users/{user_id}/integrations/google/sync")
    def sync_integration(user_id: int, request: SyncRequest | None = None) -> dict[str, Any]:
        request = request or SyncRequest()
        summary = app.state.context.integration.sync_now(
            user_id,
            SyncOptions(
                force_full=request.force_full,
                calendar_id=request.calendar_id,
                pull_remote=request.pull_remote,
            ),
        )
        return {"message": "sync completed", "summary": summary.to_dict()}

    @app.post("/api/users/{user_id}/items/{item_id}/changed")
    def item_changed(user_id: int, item_id: int, request: ItemChangedRequest) -> dict[str, Any]:
        scheduled = app.state.context.integration.notify_item_changed(user_id, item_id, request.item_type)
        return {"scheduled": scheduled}

    @app.delete("/api/items/{item_id}")
    def item_deleted(item_id: int) -> dict[str, Any]:
        return app.state.context.integration.notify_item_deleted(item_id)

    @app.post("/api/integrations/google/webhook")
    def google_webhook(request: Request) -> dict[str, Any]:
        outcome = app.state.context.watch_manager.handle_notification(dict(request.headers))
        return {"status": outcome.status}

    @app.get("/api/sync-runs")
    def sync_runs(limit: int = 20, user_id: int | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, user_id=user_id)}

    return app
