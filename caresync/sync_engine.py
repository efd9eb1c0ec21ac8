from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from caresync.auth import CredentialAuthenticator
from caresync.config_manager import ConfigManager
from caresync.entities import EntityRepository
from caresync.errors import (
    AuthError,
    NotConnectedError,
    ProviderError,
    TransientProviderError,
    describe,
)
from caresync.google_client import GoogleCalendarClient
from caresync.managed_calendar import ManagedCalendarManager
from caresync.models import AppConfig, Credential, SyncOptions, SyncSummary, utc_now
from caresync.pull import PullEngine
from caresync.push import PushEngine, PushResult
from caresync.state_store import StateStore
from caresync.watch import WatchManager

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        authenticator: CredentialAuthenticator,
        client: GoogleCalendarClient,
        entities: EntityRepository,
        watch_manager: WatchManager,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.authenticator = authenticator
        self.client = client
        self.entities = entities
        self.watch_manager = watch_manager
        self._now = now

    def _reload(self, credential: Credential) -> Credential:
        return self.state_store.get_credential(credential.user_id) or credential

    def _seed_links(self, user_id: int) -> int:
        seeded = 0
        for entity in self.entities.list_items(user_id):
            link = self.state_store.get_link(entity.item_id)
            if link is None or link.sync_status == "idle":
                self.state_store.mark_pending(entity.item_id, entity.item_type, user_id)
                seeded += 1
        return seeded

    def _prepare_calendar(
        self,
        config: AppConfig,
        credential: Credential,
        access_token: str,
        options: SyncOptions,
    ) -> tuple[Credential, str, bool]:
        """Make sure the target calendar exists and holds every linked event.

        Returns the refreshed credential, the active calendar id and whether
        the active calendar changed during this run.
        """
        previous_calendar = credential.calendar_id
        managed = ManagedCalendarManager(
            self.state_store,
            self.client,
            self.entities,
            config.managed_calendar,
            default_time_zone=config.sync.default_time_zone,
            now=self._now,
        )
        acl_forced = False
        if options.calendar_id:
            if options.calendar_id != credential.calendar_id:
                credential = self.state_store.upsert_credential(
                    credential.with_updates(calendar_id=options.calendar_id)
                )
        elif managed.needs_provisioning(credential):
            provisioned = managed.ensure_managed_calendar(credential, access_token)
            credential = provisioned.credential
            acl_forced = provisioned.created or provisioned.calendar_changed

        calendar_id = credential.calendar_id
        if not calendar_id:
            raise ProviderError("No calendar is available for sync", None, "missing_calendar")

        migration = managed.migrate_events_to_managed_calendar(self._reload(credential), access_token, calendar_id)
        if migration.previous_calendar_ids:
            logger.info(
                "Retired calendars %s for user %s", sorted(migration.previous_calendar_ids), credential.user_id
            )

        try:
            self.watch_manager.ensure_watch(credential.user_id, access_token, calendar_id)
        except AuthError:
            raise
        except ProviderError as exc:
            logger.warning("Watch setup failed for user %s: %s", credential.user_id, describe(exc))

        credential = self._reload(credential)
        if credential.managed_calendar_id == calendar_id and (acl_forced or managed.acl_due(credential)):
            try:
                managed.ensure_managed_calendar_acl(credential, access_token, calendar_id)
            except AuthError:
                raise
            except ProviderError as exc:
                logger.warning("ACL upkeep failed for user %s: %s", credential.user_id, describe(exc))

        changed = bool(previous_calendar) and previous_calendar != calendar_id
        credential = self._reload(credential)
        if changed:
            self.state_store.advance_sync_cursor(
                credential.user_id,
                expected_sync_token=credential.sync_token,
                sync_token=None,
                last_pulled_at=None,
            )
            credential = self._reload(credential)
        return credential, calendar_id, changed

    def _merge_push(self, summary: SyncSummary, result: PushResult) -> None:
        summary.pushed += result.pushed
        summary.skipped += result.skipped
        summary.deleted += result.deleted
        for error in result.errors:
            summary.add_error(error.message, error.item_id)

    def sync_user(
        self,
        user_id: int,
        options: SyncOptions | None = None,
        trigger: str = "manual",
    ) -> SyncSummary:
        options = options or SyncOptions()
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(user_id=user_id, trigger=trigger)
        config = self.config_manager.load()
        summary = SyncSummary(max_error_detail=config.sync.max_error_detail)
        transient_failures = 0

        try:
            auth = self.authenticator.ensure_valid_access_token(user_id)
            access_token = auth.access_token
            first_sync = auth.credential.last_pulled_at is None
            credential, calendar_id, calendar_changed = self._prepare_calendar(
                config, auth.credential, access_token, options
            )
            summary.calendar_id = calendar_id

            if first_sync or options.force_full or calendar_changed:
                seeded = self._seed_links(user_id)
                if seeded:
                    logger.info("Queued %s items of user %s for initial push", seeded, user_id)

            push_engine = PushEngine(
                self.state_store,
                self.client,
                self.entities,
                default_time_zone=config.sync.default_time_zone,
                now=self._now,
            )
            push_result = push_engine.push(access_token, user_id, calendar_id)
            transient_failures += push_result.transient_failures
            self._merge_push(summary, push_result)

            if options.pull_remote:
                pull_engine = PullEngine(self.state_store, self.client, self.entities, config.sync, now=self._now)
                pull_result = pull_engine.pull(
                    access_token,
                    self._reload(credential),
                    calendar_id,
                    force_full=options.force_full or calendar_changed,
                )
                summary.pulled += pull_result.pulled
                summary.deleted += pull_result.deleted
                summary.skipped += pull_result.skipped
                summary.cursor_recovered = pull_result.cursor_recovered
                for error in pull_result.errors:
                    summary.add_error(error.message, error.item_id)
                if pull_result.repush:
                    repush_result = push_engine.push(access_token, user_id, calendar_id)
                    transient_failures += repush_result.transient_failures
                    self._merge_push(summary, repush_result)

            if transient_failures:
                raise TransientProviderError(
                    f"{transient_failures} item(s) failed with retryable provider errors", None, "partial"
                )
        except Exception as exc:
            if isinstance(exc, AuthError) and not isinstance(exc, NotConnectedError):
                self.state_store.set_needs_reauth(user_id, True)
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=f"{type(exc).__name__}: {describe(exc)}",
                duration_ms=duration_ms,
                pushed=summary.pushed,
                pulled=summary.pulled,
                deleted=summary.deleted,
                errors=summary.error_count,
            )
            raise

        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        status = "success" if summary.error_count == 0 else "partial"
        message = (
            f"pushed={summary.pushed} pulled={summary.pulled} deleted={summary.deleted} "
            f"skipped={summary.skipped} errors={summary.error_count}"
        )
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            pushed=summary.pushed,
            pulled=summary.pulled,
            deleted=summary.deleted,
            errors=summary.error_count,
        )
        logger.info("Sync for user %s (%s) finished: %s", user_id, trigger, message)
        return summary
