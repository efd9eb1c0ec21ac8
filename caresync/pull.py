from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from caresync.entities import EntityRepository
from caresync.errors import CursorInvalidatedError, ValidationError, describe
from caresync.google_client import GoogleCalendarClient
from caresync.models import CalendarEvent, Credential, ItemError, SyncConfig, SyncLink, utc_now
from caresync.state_store import StateStore
from caresync.transforms import apply_remote_update, calculate_hash, event_back_reference

logger = logging.getLogger(__name__)


@dataclass
class PullResult:
    pulled: int = 0
    deleted: int = 0
    skipped: int = 0
    repush: int = 0
    errors: list[ItemError] = field(default_factory=list)
    cursor_recovered: bool = False
    full_sync: bool = False
    sync_token: str | None = None
    cursor_advanced: bool = False


class PullEngine:
    def __init__(
        self,
        state_store: StateStore,
        client: GoogleCalendarClient,
        entities: EntityRepository,
        config: SyncConfig,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.client = client
        self.entities = entities
        self.config = config
        self._now = now

    def _fetch(
        self, access_token: str, calendar_id: str, sync_token: str | None
    ) -> tuple[list[CalendarEvent], str | None]:
        time_min = None if sync_token else self._now() - timedelta(days=self.config.lookback_days)
        events: list[CalendarEvent] = []
        page_token: str | None = None
        while True:
            page = self.client.list_events(
                access_token,
                calendar_id,
                sync_token=sync_token,
                page_token=page_token,
                time_min=time_min,
            )
            events.extend(page.items)
            if page.next_page_token:
                page_token = page.next_page_token
                continue
            return events, page.next_sync_token

    def pull(
        self,
        access_token: str,
        credential: Credential,
        calendar_id: str,
        force_full: bool = False,
    ) -> PullResult:
        """Apply remote changes since the stored cursor.

        The cursor is only advanced once every page has been applied, so a
        failure part-way through leaves the previous token in place and the
        next pull replays the same batch.
        """
        result = PullResult()
        expected_token = credential.sync_token
        request_token = None if force_full else expected_token
        result.full_sync = request_token is None

        try:
            events, next_token = self._fetch(access_token, calendar_id, request_token)
        except CursorInvalidatedError:
            if request_token is None:
                raise
            logger.warning("Sync token for user %s was invalidated; running a full pull", credential.user_id)
            self.state_store.advance_sync_cursor(
                credential.user_id,
                expected_sync_token=expected_token,
                sync_token=None,
                last_pulled_at=credential.last_pulled_at,
            )
            expected_token = None
            result.cursor_recovered = True
            result.full_sync = True
            events, next_token = self._fetch(access_token, calendar_id, None)

        for event in events:
            if not event.event_id:
                continue
            self._apply_event(credential.user_id, calendar_id, event, result)

        result.sync_token = next_token or expected_token
        result.cursor_advanced = self.state_store.advance_sync_cursor(
            credential.user_id,
            expected_sync_token=expected_token,
            sync_token=result.sync_token,
            last_pulled_at=self._now(),
        )
        if not result.cursor_advanced:
            logger.warning("Sync cursor for user %s changed during pull; keeping the newer value", credential.user_id)
        return result

    def _resolve_link(self, user_id: int, calendar_id: str, event: CalendarEvent) -> SyncLink | None:
        link = self.state_store.find_link_by_event(event.event_id, calendar_id)
        if link is not None:
            return link
        reference = event_back_reference(event)
        if reference is None:
            return None
        item_type, item_id = reference
        link = self.state_store.get_link(item_id)
        if link is not None:
            return link if link.user_id == user_id else None
        if event.cancelled:
            return None
        entity = self.entities.get_item(item_id)
        if entity is None or entity.user_id != user_id or entity.item_type != item_type:
            return None
        link = self.state_store.ensure_link(item_id, item_type, user_id)
        return self.state_store.update_link(link.item_id, calendar_id=calendar_id, event_id=event.event_id)

    def _is_echo(self, link: SyncLink, event: CalendarEvent) -> bool:
        if link.etag and event.etag and event.etag == link.etag:
            return True
        if link.remote_updated_at is not None and event.updated is not None:
            return event.updated <= link.remote_updated_at
        return False

    def _apply_event(self, user_id: int, calendar_id: str, event: CalendarEvent, result: PullResult) -> None:
        link = self._resolve_link(user_id, calendar_id, event)
        if link is None:
            result.skipped += 1
            return
        if self._is_echo(link, event):
            result.skipped += 1
            return

        entity = self.entities.get_item(link.item_id)
        if event.cancelled:
            self.state_store.delete_link(link.item_id)
            result.deleted += 1
            if entity is not None and self.config.cancellation_policy == "cancel" and entity.status != "cancelled":
                self.entities.update_item(entity.with_updates(status="cancelled"))
            logger.info("Remote event %s cancelled; unlinked item %s", event.event_id, link.item_id)
            return

        if entity is None:
            self.state_store.delete_link(link.item_id)
            result.skipped += 1
            return

        remote_newer = event.updated is not None and (
            link.last_synced_at is None or event.updated > link.last_synced_at
        )
        if not remote_newer:
            # local copy stays authoritative; push it back over the remote edit
            self.state_store.mark_pending(link.item_id, link.item_type, user_id, force=True)
            self.state_store.update_link(link.item_id, etag=event.etag, remote_updated_at=event.updated)
            result.repush += 1
            return

        try:
            updated = apply_remote_update(entity, event, self.config.default_time_zone)
        except ValidationError as exc:
            message = describe(exc)
            self.state_store.mark_error(link.item_id, message)
            result.errors.append(ItemError(message=message, item_id=link.item_id))
            return
        self.entities.update_item(updated)
        self.state_store.mark_success(
            link.item_id,
            calendar_id=calendar_id,
            event_id=event.event_id,
            etag=event.etag,
            direction="pull",
            local_hash=calculate_hash(updated),
            remote_updated_at=event.updated,
            synced_at=self._now(),
        )
        result.pulled += 1
        logger.debug("Applied remote edit to %s %s", updated.item_type, updated.item_id)
