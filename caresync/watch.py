from __future__ import annotations

import logging
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping

from caresync.auth import CredentialAuthenticator
from caresync.config_manager import ConfigManager
from caresync.errors import AuthError, NotFoundError, NotificationRejectedError, ProviderError, describe
from caresync.google_client import GoogleCalendarClient
from caresync.models import WatchChannel, parse_iso_datetime, utc_now
from caresync.state_store import StateStore

logger = logging.getLogger(__name__)

STOP_STATES = {"not_exists"}
STOP_MESSAGE_TYPES = {"stop", "stopped"}


def _parse_expiration(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        try:
            return parse_iso_datetime(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class NotificationOutcome:
    status: str
    user_id: int | None = None
    channel_id: str | None = None


class WatchManager:
    def __init__(
        self,
        state_store: StateStore,
        client: GoogleCalendarClient,
        authenticator: CredentialAuthenticator,
        config_manager: ConfigManager,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.client = client
        self.authenticator = authenticator
        self.config_manager = config_manager
        self._now = now
        self.schedule: Callable[[int], None] | None = None
        self._guard = threading.Lock()
        self._user_locks: dict[int, threading.RLock] = {}

    def webhooks_available(self) -> bool:
        return self.config_manager.load().watch.enabled

    def _user_lock(self, user_id: int) -> threading.RLock:
        with self._guard:
            return self._user_locks.setdefault(int(user_id), threading.RLock())

    def ensure_watch(
        self,
        user_id: int,
        access_token: str,
        calendar_id: str,
        force: bool = False,
    ) -> WatchChannel | None:
        """Keep exactly one live channel for ``(user_id, calendar_id)``.

        Returns ``None`` when no webhook address is configured.
        """
        config = self.config_manager.load().watch
        if not config.enabled:
            return None

        with self._user_lock(user_id):
            existing = self.state_store.find_watch_channel_for_user(user_id, calendar_id)
            threshold = timedelta(seconds=config.renewal_threshold_seconds)
            if (
                not force
                and existing is not None
                and existing.expiration is not None
                and existing.expiration - self._now() > threshold
            ):
                return existing

            self.stop_watches_for_user(user_id, access_token)
            channel_id = str(uuid.uuid4())
            token = secrets.token_urlsafe(24)
            registration = self.client.watch_events(
                access_token,
                calendar_id,
                channel_id=channel_id,
                address=config.webhook_address,
                token=token,
                ttl_seconds=config.ttl_seconds,
            )
            channel = WatchChannel(
                channel_id=registration.channel_id,
                user_id=user_id,
                calendar_id=calendar_id,
                resource_id=registration.resource_id,
                resource_uri=registration.resource_uri,
                expiration=registration.expiration or self._now() + timedelta(seconds=config.ttl_seconds),
                channel_token=token,
            )
            self.state_store.upsert_watch_channel(channel)
            # a re-entrant call may have stored its own channel while ours was registering
            self.stop_watches_for_user(user_id, access_token, keep=channel.channel_id)
        logger.info("Registered watch channel %s for user %s on %s", channel.channel_id, user_id, calendar_id)
        return channel

    def stop_watches_for_user(self, user_id: int, access_token: str | None = None, keep: str | None = None) -> int:
        stopped = 0
        with self._user_lock(user_id):
            for channel in self.state_store.list_watch_channels_for_user(user_id):
                if channel.channel_id == keep:
                    continue
                if access_token:
                    try:
                        self.client.stop_channel(access_token, channel.channel_id, channel.resource_id)
                    except NotFoundError:
                        logger.debug("Watch channel %s already gone", channel.channel_id)
                    except ProviderError as exc:
                        logger.warning("Failed to stop watch channel %s: %s", channel.channel_id, describe(exc))
                self.state_store.delete_watch_channel(channel.channel_id)
                stopped += 1
        return stopped

    def handle_notification(self, headers: Mapping[str, str]) -> NotificationOutcome:
        lowered = {str(key).lower(): str(value) for key, value in headers.items()}
        channel_id = lowered.get("x-goog-channel-id", "").strip()
        resource_id = lowered.get("x-goog-resource-id", "").strip()
        resource_state = lowered.get("x-goog-resource-state", "").strip().lower()
        message_type = lowered.get("x-goog-message-type", "").strip().lower()
        token = lowered.get("x-goog-channel-token", "").strip()

        channel = None
        if token:
            channel = self.state_store.find_watch_channel_by_token(token)
        if channel is None and channel_id:
            channel = self.state_store.find_watch_channel_by_id(channel_id)
        if channel is None and resource_id:
            channel = self.state_store.find_watch_channel_by_resource(resource_id)
        if channel is None:
            logger.info("Ignoring notification for unknown channel %s", channel_id or resource_id)
            return NotificationOutcome(status="ignored", channel_id=channel_id or None)

        if channel.channel_token and token != channel.channel_token:
            raise NotificationRejectedError(f"Channel token mismatch for {channel.channel_id}")

        if resource_state in STOP_STATES or message_type in STOP_MESSAGE_TYPES:
            self.state_store.delete_watch_channel(channel.channel_id)
            logger.info("Watch channel %s stopped by provider", channel.channel_id)
            return NotificationOutcome(status="stopped", user_id=channel.user_id, channel_id=channel.channel_id)

        expiration = _parse_expiration(lowered.get("x-goog-channel-expiration"))
        if expiration is not None and expiration != channel.expiration:
            channel.expiration = expiration
            self.state_store.upsert_watch_channel(channel)

        if self.schedule is not None:
            self.schedule(channel.user_id)
        return NotificationOutcome(status="scheduled", user_id=channel.user_id, channel_id=channel.channel_id)

    def refresh_expiring_watches(self) -> int:
        config = self.config_manager.load().watch
        if not config.enabled:
            return 0
        before = self._now() + timedelta(seconds=config.renewal_lookahead_seconds)
        renewed = 0
        seen: set[int] = set()
        for channel in self.state_store.list_expiring_watch_channels(before):
            if channel.user_id in seen:
                continue
            seen.add(channel.user_id)
            try:
                auth = self.authenticator.ensure_valid_access_token(channel.user_id)
                calendar_id = auth.credential.calendar_id or channel.calendar_id
                self.ensure_watch(channel.user_id, auth.access_token, calendar_id, force=True)
                renewed += 1
            except AuthError as exc:
                logger.warning("Cannot renew watch for user %s: %s", channel.user_id, describe(exc))
            except ProviderError as exc:
                logger.warning("Watch renewal failed for user %s: %s", channel.user_id, describe(exc))
        return renewed
