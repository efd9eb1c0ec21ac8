from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from caresync.entities import EntityRepository
from caresync.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    ValidationError,
    describe,
)
from caresync.google_client import GoogleCalendarClient
from caresync.models import Credential, ManagedCalendarConfig, utc_now
from caresync.state_store import StateStore
from caresync.transforms import build_event_payload, calculate_hash

logger = logging.getLogger(__name__)

# roles that already satisfy a requested grant
SATISFYING_ROLES = {
    "writer": {"owner", "writer"},
    "reader": {"owner", "writer", "reader"},
}


def _normalize_summary(value: str | None) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


@dataclass
class ManagedCalendarResult:
    calendar_id: str
    credential: Credential
    created: bool = False
    previous_calendar_id: str | None = None

    @property
    def calendar_changed(self) -> bool:
        return bool(self.previous_calendar_id) and self.previous_calendar_id != self.calendar_id


@dataclass
class MigrationResult:
    migrated: int = 0
    pending: int = 0
    failed: int = 0
    previous_calendar_ids: set[str] = field(default_factory=set)


@dataclass
class AclResult:
    granted: int = 0
    skipped: int = 0
    failed: int = 0


class ManagedCalendarManager:
    def __init__(
        self,
        state_store: StateStore,
        client: GoogleCalendarClient,
        entities: EntityRepository,
        config: ManagedCalendarConfig,
        default_time_zone: str = "UTC",
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.client = client
        self.entities = entities
        self.config = config
        self.default_time_zone = default_time_zone
        self._now = now

    def needs_provisioning(self, credential: Credential) -> bool:
        return (
            not credential.managed_calendar_id
            or credential.managed_calendar_state != "verified"
            or credential.calendar_id != credential.managed_calendar_id
        )

    def _accept_candidate(self, credential: Credential, access_token: str, candidate: str) -> bool:
        try:
            info = self.client.get_calendar(access_token, candidate)
        except NotFoundError:
            logger.info("Calendar %s for user %s no longer exists", candidate, credential.user_id)
            return False
        if candidate == credential.managed_calendar_id:
            return True
        return _normalize_summary(info.summary) == _normalize_summary(self.config.summary)

    def ensure_managed_calendar(self, credential: Credential, access_token: str) -> ManagedCalendarResult:
        """Return the app-owned calendar for ``credential``, creating it once.

        Safe to call repeatedly: stored ids are verified first, then the
        calendar list is scanned by summary, and only then is a calendar
        created.
        """
        summary = self.config.summary
        candidates: list[str] = []
        for value in (credential.managed_calendar_id, credential.legacy_calendar_id, credential.calendar_id):
            if value and value not in candidates:
                candidates.append(value)

        calendar_id: str | None = None
        created = False
        for candidate in candidates:
            if self._accept_candidate(credential, access_token, candidate):
                calendar_id = candidate
                break

        if calendar_id is None:
            wanted = _normalize_summary(summary)
            for info in self.client.list_calendars(access_token):
                if _normalize_summary(info.summary) == wanted:
                    calendar_id = info.calendar_id
                    break

        if calendar_id is None:
            credential = self.state_store.upsert_credential(
                credential.with_updates(managed_calendar_state="provisioning")
            )
            info = self.client.insert_calendar(access_token, summary, self.default_time_zone)
            calendar_id = info.calendar_id
            created = True
            logger.info("Created managed calendar %s for user %s", calendar_id, credential.user_id)

        previous = credential.calendar_id
        legacy = credential.legacy_calendar_id
        if previous and previous != calendar_id:
            legacy = previous
        if legacy == calendar_id:
            legacy = None

        updated = self.state_store.upsert_credential(
            credential.with_updates(
                managed_calendar_id=calendar_id,
                managed_calendar_summary=summary,
                calendar_id=calendar_id,
                managed_calendar_state="verified",
                managed_calendar_verified_at=self._now(),
                legacy_calendar_id=legacy,
            )
        )
        return ManagedCalendarResult(
            calendar_id=calendar_id,
            credential=updated,
            created=created,
            previous_calendar_id=previous,
        )

    def _copy_event(self, link_item_id: int, source_calendar: str, event_id: str, target: str, access_token: str) -> bool:
        entity = self.entities.get_item(link_item_id)
        if entity is None:
            self.state_store.delete_link(link_item_id)
            return True
        created = self.client.insert_event(
            access_token, target, build_event_payload(entity, self.default_time_zone)
        )
        try:
            self.client.delete_event(access_token, source_calendar, event_id)
        except (NotFoundError, ConflictError):
            logger.debug("Migrated event %s was already gone from %s", event_id, source_calendar)
        except (AuthError, TransientProviderError):
            raise
        except ProviderError as exc:
            logger.warning("Could not remove migrated event %s from %s: %s", event_id, source_calendar, describe(exc))
        self.state_store.mark_success(
            link_item_id,
            calendar_id=target,
            event_id=created.event_id,
            etag=created.etag,
            direction="push",
            local_hash=calculate_hash(entity),
            remote_updated_at=created.updated,
            synced_at=self._now(),
        )
        return True

    def migrate_events_to_managed_calendar(
        self, credential: Credential, access_token: str, target_calendar_id: str
    ) -> MigrationResult:
        result = MigrationResult()
        if credential.legacy_calendar_id and credential.legacy_calendar_id != target_calendar_id:
            result.previous_calendar_ids.add(credential.legacy_calendar_id)

        for link in self.state_store.list_links_for_user(credential.user_id):
            if not link.calendar_id or link.calendar_id == target_calendar_id:
                continue
            source = link.calendar_id
            if not link.event_id:
                self.state_store.update_link(link.item_id, calendar_id=target_calendar_id)
                result.migrated += 1
                continue
            result.previous_calendar_ids.add(source)
            try:
                moved = self.client.move_event(access_token, source, link.event_id, target_calendar_id)
                self.state_store.update_link(
                    link.item_id,
                    calendar_id=target_calendar_id,
                    event_id=moved.event_id or link.event_id,
                    etag=moved.etag or link.etag,
                    remote_updated_at=moved.updated or link.remote_updated_at,
                )
                result.migrated += 1
            except NotFoundError:
                self.state_store.update_link(
                    link.item_id,
                    calendar_id=target_calendar_id,
                    event_id=None,
                    etag=None,
                    remote_updated_at=None,
                )
                self.state_store.mark_pending(link.item_id, link.item_type, link.user_id, force=True)
                result.pending += 1
            except (AuthError, TransientProviderError):
                raise
            except ProviderError as exc:
                if exc.status not in (400, 403):
                    self.state_store.mark_error(link.item_id, f"Migration failed: {describe(exc)}")
                    result.failed += 1
                    continue
                try:
                    self._copy_event(link.item_id, source, link.event_id, target_calendar_id, access_token)
                    result.migrated += 1
                except (AuthError, TransientProviderError):
                    raise
                except (ProviderError, ValidationError) as copy_exc:
                    self.state_store.mark_error(link.item_id, f"Migration failed: {describe(copy_exc)}")
                    result.failed += 1

        if result.failed == 0 and credential.legacy_calendar_id:
            self.state_store.upsert_credential(credential.with_updates(legacy_calendar_id=None))
        if result.migrated or result.pending or result.failed:
            logger.info(
                "Migrated events for user %s: migrated=%s pending=%s failed=%s",
                credential.user_id,
                result.migrated,
                result.pending,
                result.failed,
            )
        return result

    def acl_due(self, credential: Credential, role: str | None = None) -> bool:
        role = role or self.config.acl_role
        if credential.managed_calendar_acl_role != role:
            return True
        verified_at = credential.managed_calendar_verified_at
        if verified_at is None:
            return True
        return self._now() - verified_at >= timedelta(seconds=self.config.acl_refresh_seconds)

    def ensure_managed_calendar_acl(
        self,
        credential: Credential,
        access_token: str,
        calendar_id: str,
        role: str | None = None,
    ) -> AclResult:
        role = role or self.config.acl_role
        satisfying = SATISFYING_ROLES.get(role, {role})
        result = AclResult()

        emails: list[str] = []
        for email in self.entities.list_collaborator_emails(credential.user_id):
            normalized = str(email or "").strip().lower()
            if normalized and normalized not in emails:
                emails.append(normalized)

        if emails:
            granted = {
                (entry.scope_value or "").lower()
                for entry in self.client.list_acl(access_token, calendar_id)
                if entry.scope_type == "user" and entry.role in satisfying
            }
            for email in emails:
                if email in granted:
                    result.skipped += 1
                    continue
                try:
                    self.client.insert_acl(access_token, calendar_id, role, email)
                    result.granted += 1
                except ConflictError:
                    result.skipped += 1
                except AuthError:
                    raise
                except ProviderError as exc:
                    logger.warning("Failed to grant %s on %s to %s: %s", role, calendar_id, email, describe(exc))
                    result.failed += 1

        self.state_store.upsert_credential(
            credential.with_updates(managed_calendar_acl_role=role, managed_calendar_verified_at=self._now())
        )
        return result
