from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from caresync.config_manager import ConfigManager
from caresync.errors import AuthError, CareSyncError, TransientProviderError, describe
from caresync.models import SyncOptions, SyncSummary
from caresync.state_store import StateStore
from caresync.sync_engine import SyncEngine
from caresync.watch import WatchManager

logger = logging.getLogger(__name__)

IDLE = "idle"
SCHEDULED = "scheduled"
RUNNING = "running"
BACKOFF = "backoff"
SUSPENDED = "suspended"

TRANSITIONS: dict[str, set[str]] = {
    IDLE: {SCHEDULED, RUNNING},
    SCHEDULED: {SCHEDULED, RUNNING},
    RUNNING: {IDLE, BACKOFF, SUSPENDED},
    BACKOFF: {RUNNING, SCHEDULED},
    SUSPENDED: {IDLE},
}


class InvalidTransitionError(RuntimeError):
    pass


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingClock:
    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer


@dataclass
class UserSyncState:
    state: str = IDLE
    timer: Optional[TimerHandle] = None
    locked: bool = False
    rerun_requested: bool = False
    attempt: int = 0
    generation: int = 0
    trigger: str = "debounce"
    last_error: Optional[str] = None
    last_summary: Optional[SyncSummary] = None


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    return min(base_seconds * (2 ** max(0, attempt - 1)), max_seconds)


class SyncOrchestrator:
    """Per-user debounce, single-flight locking and retry around ``SyncEngine``.

    Every user moves through ``TRANSITIONS``; timers come from the injected
    clock so the whole machine can be driven deterministically.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        state_store: StateStore,
        watch_manager: WatchManager,
        clock: Clock | None = None,
        owner: str | None = None,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.state_store = state_store
        self.watch_manager = watch_manager
        self.clock = clock or ThreadingClock()
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._lock = threading.RLock()
        self._released = threading.Condition(self._lock)
        self._users: dict[int, UserSyncState] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.watch_manager.schedule = self.schedule_sync

    # registry

    def _entry(self, user_id: int) -> UserSyncState:
        entry = self._users.get(int(user_id))
        if entry is None:
            entry = UserSyncState()
            self._users[int(user_id)] = entry
        return entry

    def _transition(self, user_id: int, entry: UserSyncState, target: str) -> None:
        if target not in TRANSITIONS[entry.state]:
            raise InvalidTransitionError(f"user {user_id}: {entry.state} -> {target}")
        logger.debug("Sync state for user %s: %s -> %s", user_id, entry.state, target)
        entry.state = target

    def _cancel_timer(self, entry: UserSyncState) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _arm(self, user_id: int, entry: UserSyncState, delay: float, trigger: str) -> None:
        self._cancel_timer(entry)
        entry.generation += 1
        entry.trigger = trigger
        generation = entry.generation
        entry.timer = self.clock.call_later(delay, lambda: self._fire(user_id, generation))

    def state_of(self, user_id: int) -> UserSyncState:
        with self._lock:
            return self._entry(user_id)

    # triggers

    def schedule_sync(
        self,
        user_id: int,
        debounce_seconds: float | None = None,
        trigger: str = "debounce",
    ) -> bool:
        """Debounced trigger; a burst of calls collapses into one run.

        Returns False when the user is suspended and the trigger was dropped.
        """
        user_id = int(user_id)
        if debounce_seconds is None:
            debounce_seconds = self.config_manager.load().sync.debounce_seconds
        with self._lock:
            entry = self._entry(user_id)
            if entry.state == SUSPENDED:
                logger.info("Ignoring %s trigger for suspended user %s", trigger, user_id)
                return False
            if entry.locked:
                entry.rerun_requested = True
                return True
            if entry.state == BACKOFF:
                # the pending retry already covers this trigger
                return True
            self._transition(user_id, entry, SCHEDULED)
            self._arm(user_id, entry, debounce_seconds, trigger)
            return True

    def _fire(self, user_id: int, generation: int) -> None:
        with self._lock:
            entry = self._entry(user_id)
            if entry.generation != generation or entry.state not in (SCHEDULED, BACKOFF):
                return
            entry.timer = None
            trigger = entry.trigger
            if not self._claim(user_id, entry):
                return
        self._run_claimed(user_id, entry, SyncOptions(), trigger, raise_errors=False)

    def _claim(self, user_id: int, entry: UserSyncState) -> bool:
        """Take the in-process slot and the cross-process lease, or reschedule."""
        config = self.config_manager.load().sync
        if not self.state_store.try_acquire_lock(user_id, self.owner, config.lock_ttl_seconds):
            logger.info("Sync lease for user %s is held elsewhere; rescheduling", user_id)
            if entry.state != SCHEDULED:
                self._transition(user_id, entry, SCHEDULED)
            self._arm(user_id, entry, max(config.debounce_seconds, 1.0), entry.trigger)
            return False
        self._cancel_timer(entry)
        entry.locked = True
        self._transition(user_id, entry, RUNNING)
        return True

    def _run_claimed(
        self,
        user_id: int,
        entry: UserSyncState,
        options: SyncOptions,
        trigger: str,
        raise_errors: bool,
    ) -> SyncSummary | None:
        config = self.config_manager.load().sync
        summary: SyncSummary | None = None
        failure: Exception | None = None
        try:
            summary = self.sync_engine.sync_user(user_id, options, trigger)
        except TransientProviderError as exc:
            failure = exc
            with self._lock:
                entry.attempt += 1
                delay = backoff_delay(entry.attempt, config.retry_base_seconds, config.retry_max_seconds)
                entry.last_error = describe(exc)
                self._transition(user_id, entry, BACKOFF)
                self._arm(user_id, entry, delay, "retry")
            logger.warning(
                "Sync for user %s failed (attempt %s), retrying in %.0fs: %s",
                user_id,
                entry.attempt,
                delay,
                describe(exc),
            )
        except AuthError as exc:
            failure = exc
            with self._lock:
                entry.attempt = 0
                entry.last_error = describe(exc)
                self._transition(user_id, entry, SUSPENDED)
            logger.warning("Sync for user %s suspended until reconnect: %s", user_id, describe(exc))
        except Exception as exc:
            failure = exc
            with self._lock:
                entry.attempt = 0
                entry.last_error = describe(exc)
                self._transition(user_id, entry, IDLE)
            logger.exception("Sync for user %s failed", user_id)
        else:
            with self._lock:
                entry.attempt = 0
                entry.last_error = None
                entry.last_summary = summary
                self._transition(user_id, entry, IDLE)
        finally:
            self.state_store.release_lock(user_id, self.owner)
            with self._lock:
                entry.locked = False
                rerun = entry.rerun_requested
                entry.rerun_requested = False
                self._released.notify_all()
            if rerun and entry.state == IDLE:
                self.schedule_sync(user_id, trigger="rerun")

        if failure is not None and raise_errors:
            raise failure
        return summary

    def run_now(self, user_id: int, options: SyncOptions | None = None, trigger: str = "manual") -> SyncSummary:
        """Run a sync synchronously, waiting for any in-flight run first."""
        user_id = int(user_id)
        with self._released:
            entry = self._entry(user_id)
            while entry.locked:
                self._released.wait()
            if entry.state == SUSPENDED:
                raise AuthError("Sync is suspended until the account is reconnected", 401, "needs_reauth")
            config = self.config_manager.load().sync
            if not self.state_store.try_acquire_lock(user_id, self.owner, config.lock_ttl_seconds):
                raise TransientProviderError("Sync is already running in another process", None, "locked")
            self._cancel_timer(entry)
            entry.generation += 1
            entry.locked = True
            self._transition(user_id, entry, RUNNING)
        summary = self._run_claimed(user_id, entry, options or SyncOptions(), trigger, raise_errors=True)
        if summary is None:
            raise CareSyncError(f"Sync for user {user_id} finished without a summary")
        return summary

    def resume(self, user_id: int) -> None:
        with self._lock:
            entry = self._entry(user_id)
            if entry.state != SUSPENDED:
                return
            entry.attempt = 0
            entry.last_error = None
            self._transition(int(user_id), entry, IDLE)
        logger.info("Sync resumed for user %s", user_id)

    def forget(self, user_id: int) -> None:
        with self._lock:
            entry = self._users.get(int(user_id))
            if entry is None or entry.locked:
                return
            self._cancel_timer(entry)
            del self._users[int(user_id)]

    # polling fallback

    def poll_tick(self) -> int:
        self.watch_manager.refresh_expiring_watches()
        config = self.config_manager.load()
        if config.watch.enabled and not config.sync.enable_polling_fallback:
            return 0
        scheduled = 0
        for user_id in self.state_store.list_connected_user_ids():
            if self.schedule_sync(user_id, debounce_seconds=0, trigger="poll"):
                scheduled += 1
        return scheduled

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="caresync-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        with self._lock:
            for entry in self._users.values():
                self._cancel_timer(entry)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            interval_seconds = max(30, int(self.config_manager.load().sync.poll_interval_seconds))
            if self._stop_event.wait(timeout=interval_seconds):
                break
            try:
                self.poll_tick()
            except Exception:
                logger.exception("Poll tick failed")
