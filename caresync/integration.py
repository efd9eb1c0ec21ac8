from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from caresync.auth import CredentialAuthenticator
from caresync.entities import EntityRepository
from caresync.errors import (
    CursorInvalidatedError,
    NotConnectedError,
    NotFoundError,
    ProviderError,
    ValidationError,
    describe,
)
from caresync.google_client import GoogleCalendarClient
from caresync.models import ITEM_TYPES, SyncOptions, SyncSummary, serialize_datetime
from caresync.scheduler import SyncOrchestrator
from caresync.state_store import StateStore
from caresync.watch import WatchManager

logger = logging.getLogger(__name__)


class IntegrationService:
    """Entry points used by the HTTP layer and by the rest of the app."""

    def __init__(
        self,
        state_store: StateStore,
        authenticator: CredentialAuthenticator,
        orchestrator: SyncOrchestrator,
        watch_manager: WatchManager,
        client: GoogleCalendarClient,
        entities: EntityRepository,
    ) -> None:
        self.state_store = state_store
        self.authenticator = authenticator
        self.orchestrator = orchestrator
        self.watch_manager = watch_manager
        self.client = client
        self.entities = entities

    def connect(
        self,
        user_id: int,
        *,
        access_token: str,
        refresh_token: str,
        scope: list[str] | None = None,
        expires_at: datetime | None = None,
        token_type: str | None = None,
        calendar_id: str | None = None,
    ) -> dict[str, Any]:
        if not access_token or not refresh_token:
            raise ValidationError("access_token and refresh_token are required")
        self.authenticator.store_tokens(
            user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            scope=scope,
            expires_at=expires_at,
            token_type=token_type,
            calendar_id=calendar_id,
        )
        self.orchestrator.resume(user_id)
        self.orchestrator.schedule_sync(user_id, debounce_seconds=0, trigger="connect")
        logger.info("Connected Google Calendar for user %s", user_id)
        return self.status(user_id)

    def disconnect(self, user_id: int) -> dict[str, Any]:
        credential = self.state_store.get_credential(user_id)
        if credential is None:
            raise NotConnectedError("Google Calendar is not connected for this user", 404, "not_connected")
        access_token = None
        try:
            access_token = self.authenticator.ensure_valid_access_token(user_id).access_token
        except ProviderError as exc:
            logger.info("Disconnecting user %s without remote cleanup: %s", user_id, describe(exc))
        self.watch_manager.stop_watches_for_user(user_id, access_token)
        self.orchestrator.forget(user_id)
        self.state_store.clear_links_for_user(user_id)
        self.state_store.delete_credential(user_id)
        logger.info("Disconnected Google Calendar for user %s", user_id)
        return self.status(user_id)

    def status(self, user_id: int) -> dict[str, Any]:
        credential = self.state_store.get_credential(user_id)
        if credential is None:
            return {
                "connected": False,
                "calendar_id": None,
                "last_synced_at": None,
                "sync_pending_count": 0,
                "last_error": None,
                "needs_reauth": False,
                "managed_calendar_state": None,
            }
        activity = self.state_store.latest_link_activity(user_id)
        last_error = activity["last_error"] or self.orchestrator.state_of(user_id).last_error
        return {
            "connected": True,
            "calendar_id": credential.calendar_id,
            "last_synced_at": serialize_datetime(activity["last_synced_at"]),
            "sync_pending_count": self.state_store.count_pending(user_id),
            "last_error": last_error,
            "needs_reauth": credential.needs_reauth,
            "managed_calendar_state": credential.managed_calendar_state,
        }

    def sync_now(self, user_id: int, options: SyncOptions | None = None) -> SyncSummary:
        if self.state_store.get_credential(user_id) is None:
            raise NotConnectedError("Google Calendar is not connected for this user", 404, "not_connected")
        return self.orchestrator.run_now(user_id, options, trigger="manual")

    def notify_item_changed(self, user_id: int, item_id: int, item_type: str) -> bool:
        """Mark a locally mutated item dirty and schedule a debounced sync."""
        if item_type not in ITEM_TYPES:
            raise ValidationError(f"Unsupported item type: {item_type}")
        if self.state_store.get_credential(user_id) is None:
            return False
        self.state_store.mark_pending(item_id, item_type, user_id)
        return self.orchestrator.schedule_sync(user_id, trigger="local-change")

    def notify_item_deleted(self, item_id: int) -> dict[str, Any]:
        link = self.state_store.get_link(item_id)
        if link is None:
            return {"deleted": False, "pending": False}
        if not link.event_id or not link.calendar_id:
            self.state_store.delete_link(item_id)
            return {"deleted": True, "pending": False}
        try:
            auth = self.authenticator.ensure_valid_access_token(link.user_id)
            self.client.delete_event(auth.access_token, link.calendar_id, link.event_id)
        except (NotFoundError, CursorInvalidatedError):
            logger.debug("Remote event for item %s was already deleted", item_id)
        except ProviderError as exc:
            # the next push removes the remote event once the item is gone
            logger.warning("Deferred remote delete for item %s: %s", item_id, describe(exc))
            self.state_store.mark_pending(item_id, link.item_type, link.user_id)
            self.orchestrator.schedule_sync(link.user_id, trigger="local-delete")
            return {"deleted": False, "pending": True}
        self.state_store.delete_link(item_id)
        return {"deleted": True, "pending": False}
