from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from caresync.entities import EntityRepository
from caresync.errors import (
    AuthError,
    ConflictError,
    CursorInvalidatedError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    ValidationError,
    describe,
)
from caresync.google_client import GoogleCalendarClient
from caresync.models import CalendarEvent, ItemError, SyncLink, utc_now
from caresync.state_store import StateStore
from caresync.transforms import build_event_payload, calculate_hash

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    pushed: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: list[ItemError] = field(default_factory=list)
    transient_failures: int = 0


class PushEngine:
    def __init__(
        self,
        state_store: StateStore,
        client: GoogleCalendarClient,
        entities: EntityRepository,
        default_time_zone: str = "UTC",
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.client = client
        self.entities = entities
        self.default_time_zone = default_time_zone
        self._now = now

    def push(self, access_token: str, user_id: int, calendar_id: str) -> PushResult:
        """Push every pending or errored item of ``user_id``.

        Item failures are recorded on their link and the batch continues.
        ``AuthError`` aborts the whole pass since it applies to every item.
        """
        result = PushResult()
        for link in self.state_store.list_dirty_links(user_id):
            try:
                self._push_link(access_token, link, calendar_id, result)
            except AuthError:
                raise
            except (ProviderError, ValidationError) as exc:
                message = describe(exc)
                if isinstance(exc, TransientProviderError):
                    result.transient_failures += 1
                self.state_store.mark_error(link.item_id, message)
                result.errors.append(ItemError(message=message, item_id=link.item_id))
                logger.warning("Push failed for item %s: %s", link.item_id, message)
        return result

    def _push_link(self, access_token: str, link: SyncLink, calendar_id: str, result: PushResult) -> None:
        entity = self.entities.get_item(link.item_id)
        if entity is None:
            if link.event_id and link.calendar_id:
                self._delete_remote(access_token, link.calendar_id, link.event_id)
            self.state_store.delete_link(link.item_id)
            result.deleted += 1
            return

        local_hash = calculate_hash(entity)
        if link.event_id and local_hash == link.local_hash:
            self.state_store.update_link(link.item_id, sync_status="idle", last_error=None)
            result.skipped += 1
            return

        payload = build_event_payload(entity, self.default_time_zone)
        target_calendar = (link.calendar_id or calendar_id) if link.event_id else calendar_id
        if link.event_id:
            event = self._patch(access_token, target_calendar, link, link.event_id, payload)
        else:
            event = self.client.insert_event(access_token, target_calendar, payload)

        self.state_store.mark_success(
            link.item_id,
            calendar_id=target_calendar,
            event_id=event.event_id,
            etag=event.etag,
            direction="push",
            local_hash=local_hash,
            remote_updated_at=event.updated,
            synced_at=self._now(),
        )
        result.pushed += 1

    def _patch(
        self,
        access_token: str,
        calendar_id: str,
        link: SyncLink,
        event_id: str,
        payload: dict[str, Any],
    ) -> CalendarEvent:
        try:
            return self.client.patch_event(access_token, calendar_id, event_id, payload, etag=link.etag)
        except ConflictError as exc:
            if exc.code != "precondition_failed":
                raise
            # stale etag: overwrite once with the current version
            fresh = self.client.get_event(access_token, calendar_id, event_id)
            logger.info("Retrying push for item %s with refreshed etag", link.item_id)
            return self.client.patch_event(access_token, calendar_id, event_id, payload, etag=fresh.etag)
        except (NotFoundError, CursorInvalidatedError):
            logger.info("Remote event for item %s is gone; recreating", link.item_id)
            return self.client.insert_event(access_token, calendar_id, payload)

    def _delete_remote(self, access_token: str, calendar_id: str, event_id: str) -> None:
        try:
            self.client.delete_event(access_token, calendar_id, event_id)
        except (NotFoundError, CursorInvalidatedError):
            logger.debug("Remote event %s already deleted", event_id)
