from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from caresync.models import (
    Credential,
    SyncLink,
    WatchChannel,
    advance_managed_state,
    parse_iso_datetime,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


CREDENTIAL_COLUMNS = (
    "user_id",
    "access_token",
    "refresh_token",
    "scope_json",
    "expires_at",
    "token_type",
    "calendar_id",
    "sync_token",
    "last_pulled_at",
    "managed_calendar_id",
    "managed_calendar_summary",
    "managed_calendar_state",
    "managed_calendar_verified_at",
    "managed_calendar_acl_role",
    "legacy_calendar_id",
    "needs_reauth",
)

LINK_COLUMNS = (
    "item_id",
    "item_type",
    "user_id",
    "calendar_id",
    "event_id",
    "etag",
    "last_synced_at",
    "last_sync_direction",
    "local_hash",
    "remote_updated_at",
    "sync_status",
    "last_error",
)

CHANNEL_COLUMNS = (
    "channel_id",
    "user_id",
    "calendar_id",
    "resource_id",
    "resource_uri",
    "expiration",
    "channel_token",
)


def _credential_from_row(row: sqlite3.Row) -> Credential:
    return Credential(
        user_id=int(row["user_id"]),
        access_token=str(row["access_token"]),
        refresh_token=str(row["refresh_token"]),
        scope=json.loads(row["scope_json"] or "[]"),
        expires_at=parse_iso_datetime(row["expires_at"]),
        token_type=row["token_type"],
        calendar_id=row["calendar_id"],
        sync_token=row["sync_token"],
        last_pulled_at=parse_iso_datetime(row["last_pulled_at"]),
        managed_calendar_id=row["managed_calendar_id"],
        managed_calendar_summary=row["managed_calendar_summary"],
        managed_calendar_state=row["managed_calendar_state"] or "unprovisioned",
        managed_calendar_verified_at=parse_iso_datetime(row["managed_calendar_verified_at"]),
        managed_calendar_acl_role=row["managed_calendar_acl_role"],
        legacy_calendar_id=row["legacy_calendar_id"],
        needs_reauth=bool(row["needs_reauth"]),
    )


def _link_from_row(row: sqlite3.Row) -> SyncLink:
    return SyncLink(
        item_id=int(row["item_id"]),
        item_type=str(row["item_type"]),
        user_id=int(row["user_id"]),
        calendar_id=row["calendar_id"],
        event_id=row["event_id"],
        etag=row["etag"],
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        last_sync_direction=row["last_sync_direction"],
        local_hash=row["local_hash"],
        remote_updated_at=parse_iso_datetime(row["remote_updated_at"]),
        sync_status=str(row["sync_status"]),
        last_error=row["last_error"],
    )


def _channel_from_row(row: sqlite3.Row) -> WatchChannel:
    return WatchChannel(
        channel_id=str(row["channel_id"]),
        user_id=int(row["user_id"]),
        calendar_id=str(row["calendar_id"]),
        resource_id=str(row["resource_id"]),
        resource_uri=row["resource_uri"],
        expiration=parse_iso_datetime(row["expiration"]),
        channel_token=row["channel_token"],
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS credentials (
            user_id INTEGER PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            scope_json TEXT NOT NULL,
            expires_at TEXT,
            token_type TEXT,
            calendar_id TEXT,
            sync_token TEXT,
            last_pulled_at TEXT,
            managed_calendar_id TEXT,
            managed_calendar_summary TEXT,
            managed_calendar_state TEXT NOT NULL DEFAULT 'unprovisioned',
            managed_calendar_verified_at TEXT,
            managed_calendar_acl_role TEXT,
            legacy_calendar_id TEXT,
            needs_reauth INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_links (
            item_id INTEGER PRIMARY KEY,
            item_type TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            calendar_id TEXT,
            event_id TEXT,
            etag TEXT,
            last_synced_at TEXT,
            last_sync_direction TEXT,
            local_hash TEXT,
            remote_updated_at TEXT,
            sync_status TEXT NOT NULL DEFAULT 'pending',
            last_error TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sync_links_user ON sync_links(user_id, sync_status);
        CREATE INDEX IF NOT EXISTS idx_sync_links_event ON sync_links(event_id);

        CREATE TABLE IF NOT EXISTS watch_channels (
            channel_id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            calendar_id TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            resource_uri TEXT,
            expiration TEXT,
            channel_token TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            pushed INTEGER NOT NULL,
            pulled INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            errors INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_locks (
            user_id INTEGER PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # credentials

    def get_credential(self, user_id: int) -> Credential | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM credentials WHERE user_id = ?",
                    (int(user_id),),
                ).fetchone()
        return _credential_from_row(row) if row else None

    def upsert_credential(self, credential: Credential) -> Credential:
        """Insert or replace a credential row.

        The managed-calendar state is merged with the stored one so that a
        stale in-memory copy can never move it backwards.
        """
        with self._lock:
            existing = self.get_credential(credential.user_id)
            state = credential.managed_calendar_state
            if existing is not None:
                state = advance_managed_state(existing.managed_calendar_state, state)
            values = (
                int(credential.user_id),
                credential.access_token,
                credential.refresh_token,
                json.dumps(list(credential.scope)),
                serialize_datetime(credential.expires_at),
                credential.token_type,
                credential.calendar_id,
                credential.sync_token,
                serialize_datetime(credential.last_pulled_at),
                credential.managed_calendar_id,
                credential.managed_calendar_summary,
                state,
                serialize_datetime(credential.managed_calendar_verified_at),
                credential.managed_calendar_acl_role,
                credential.legacy_calendar_id,
                1 if credential.needs_reauth else 0,
            )
            placeholders = ", ".join("?" for _ in CREDENTIAL_COLUMNS)
            updates = ", ".join(f"{col} = excluded.{col}" for col in CREDENTIAL_COLUMNS[1:])
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO credentials({", ".join(CREDENTIAL_COLUMNS)}, updated_at)
                    VALUES ({placeholders}, ?)
                    ON CONFLICT(user_id) DO UPDATE SET {updates}, updated_at = excluded.updated_at
                    """,
                    (*values, _utc_now()),
                )
                conn.commit()
        return credential.with_updates(managed_calendar_state=state)

    def update_tokens(
        self,
        user_id: int,
        *,
        access_token: str,
        refresh_token: str,
        scope: list[str],
        expires_at: datetime | None,
        token_type: str | None,
    ) -> Credential | None:
        """Rewrite only the token columns; cursor and calendar fields are left alone."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE credentials
                    SET access_token = ?, refresh_token = ?, scope_json = ?, expires_at = ?,
                        token_type = ?, updated_at = ?
                    WHERE user_id = ?
                    """,
                    (
                        access_token,
                        refresh_token,
                        json.dumps(list(scope)),
                        serialize_datetime(expires_at),
                        token_type,
                        _utc_now(),
                        int(user_id),
                    ),
                )
                conn.commit()
            return self.get_credential(user_id)

    def delete_credential(self, user_id: int) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM credentials WHERE user_id = ?", (int(user_id),))
                conn.commit()

    def set_needs_reauth(self, user_id: int, needs_reauth: bool) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE credentials SET needs_reauth = ?, updated_at = ? WHERE user_id = ?",
                    (1 if needs_reauth else 0, _utc_now(), int(user_id)),
                )
                conn.commit()

    def list_connected_user_ids(self, include_reauth: bool = False) -> list[int]:
        sql = "SELECT user_id FROM credentials"
        if not include_reauth:
            sql += " WHERE needs_reauth = 0"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql + " ORDER BY user_id").fetchall()
        return [int(row["user_id"]) for row in rows]

    def advance_sync_cursor(
        self,
        user_id: int,
        *,
        expected_sync_token: str | None,
        sync_token: str | None,
        last_pulled_at: datetime | None,
    ) -> bool:
        """Compare-and-set the incremental cursor.

        Returns False when the stored token no longer matches
        ``expected_sync_token``; the caller must not assume its batch landed.
        """
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE credentials
                    SET sync_token = ?, last_pulled_at = ?, updated_at = ?
                    WHERE user_id = ? AND sync_token IS ?
                    """,
                    (
                        sync_token,
                        serialize_datetime(last_pulled_at),
                        _utc_now(),
                        int(user_id),
                        expected_sync_token,
                    ),
                )
                conn.commit()
                return cursor.rowcount == 1

    # sync links

    def get_link(self, item_id: int) -> SyncLink | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_links WHERE item_id = ?", (int(item_id),)).fetchone()
        return _link_from_row(row) if row else None

    def find_link_by_event(self, event_id: str, calendar_id: str | None = None) -> SyncLink | None:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    row = conn.execute(
                        "SELECT * FROM sync_links WHERE event_id = ? ORDER BY item_id LIMIT 1",
                        (event_id,),
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        SELECT * FROM sync_links
                        WHERE event_id = ? AND calendar_id = ?
                        ORDER BY item_id LIMIT 1
                        """,
                        (event_id, calendar_id),
                    ).fetchone()
        return _link_from_row(row) if row else None

    def save_link(self, link: SyncLink) -> SyncLink:
        values = (
            int(link.item_id),
            link.item_type,
            int(link.user_id),
            link.calendar_id,
            link.event_id,
            link.etag,
            serialize_datetime(link.last_synced_at),
            link.last_sync_direction,
            link.local_hash,
            serialize_datetime(link.remote_updated_at),
            link.sync_status,
            link.last_error,
        )
        placeholders = ", ".join("?" for _ in LINK_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in LINK_COLUMNS[1:])
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO sync_links({", ".join(LINK_COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT(item_id) DO UPDATE SET {updates}
                    """,
                    values,
                )
                conn.commit()
        return link

    def ensure_link(self, item_id: int, item_type: str, user_id: int) -> SyncLink:
        with self._lock:
            existing = self.get_link(item_id)
            if existing is not None:
                return existing
            return self.save_link(SyncLink(item_id=item_id, item_type=item_type, user_id=user_id))

    def mark_pending(
        self,
        item_id: int,
        item_type: str,
        user_id: int,
        *,
        force: bool = False,
    ) -> SyncLink:
        """Flag an item for the next push.

        ``force`` clears the stored hash so the next push cannot be skipped as
        a no-op even when the local content is unchanged.
        """
        with self._lock:
            link = self.ensure_link(item_id, item_type, user_id)
            link.sync_status = "pending"
            link.user_id = int(user_id)
            if force:
                link.local_hash = None
            return self.save_link(link)

    def mark_success(
        self,
        item_id: int,
        *,
        calendar_id: str,
        event_id: str,
        etag: str | None,
        direction: str,
        local_hash: str,
        remote_updated_at: datetime | None,
        synced_at: datetime | None = None,
    ) -> SyncLink | None:
        with self._lock:
            link = self.get_link(item_id)
            if link is None:
                return None
            link.calendar_id = calendar_id
            link.event_id = event_id
            link.etag = etag
            link.last_synced_at = synced_at or datetime.now(timezone.utc)
            link.last_sync_direction = direction
            link.local_hash = local_hash
            link.remote_updated_at = remote_updated_at
            link.sync_status = "idle"
            link.last_error = None
            return self.save_link(link)

    def mark_error(self, item_id: int, message: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE sync_links SET sync_status = 'error', last_error = ? WHERE item_id = ?",
                    (str(message)[:1000], int(item_id)),
                )
                conn.commit()

    def update_link(self, item_id: int, **fields: Any) -> SyncLink | None:
        with self._lock:
            link = self.get_link(item_id)
            if link is None:
                return None
            for key, value in fields.items():
                if not hasattr(link, key):
                    raise AttributeError(f"SyncLink has no field {key!r}")
                setattr(link, key, value)
            return self.save_link(link)

    def delete_link(self, item_id: int) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM sync_links WHERE item_id = ?", (int(item_id),))
                conn.commit()

    def list_links_for_user(self, user_id: int) -> list[SyncLink]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM sync_links WHERE user_id = ? ORDER BY item_id",
                    (int(user_id),),
                ).fetchall()
        return [_link_from_row(row) for row in rows]

    def list_dirty_links(self, user_id: int) -> list[SyncLink]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM sync_links
                    WHERE user_id = ? AND sync_status IN ('pending', 'error')
                    ORDER BY item_id
                    """,
                    (int(user_id),),
                ).fetchall()
        return [_link_from_row(row) for row in rows]

    def count_pending(self, user_id: int) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM sync_links WHERE user_id = ? AND sync_status = 'pending'",
                    (int(user_id),),
                ).fetchone()
        return int(row["total"])

    def latest_link_activity(self, user_id: int) -> dict[str, Any]:
        with self._lock:
            with self._connect() as conn:
                synced = conn.execute(
                    "SELECT MAX(last_synced_at) AS last_synced_at FROM sync_links WHERE user_id = ?",
                    (int(user_id),),
                ).fetchone()
                error = conn.execute(
                    """
                    SELECT last_error FROM sync_links
                    WHERE user_id = ? AND sync_status = 'error' AND last_error IS NOT NULL
                    ORDER BY item_id DESC LIMIT 1
                    """,
                    (int(user_id),),
                ).fetchone()
        return {
            "last_synced_at": parse_iso_datetime(synced["last_synced_at"]) if synced else None,
            "last_error": error["last_error"] if error else None,
        }

    def clear_links_for_user(self, user_id: int) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM sync_links WHERE user_id = ?", (int(user_id),))
                conn.commit()

    # watch channels

    def upsert_watch_channel(self, channel: WatchChannel) -> WatchChannel:
        values = (
            channel.channel_id,
            int(channel.user_id),
            channel.calendar_id,
            channel.resource_id,
            channel.resource_uri,
            serialize_datetime(channel.expiration),
            channel.channel_token,
        )
        placeholders = ", ".join("?" for _ in CHANNEL_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in CHANNEL_COLUMNS[1:])
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO watch_channels({", ".join(CHANNEL_COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT(channel_id) DO UPDATE SET {updates}
                    """,
                    values,
                )
                conn.commit()
        return channel

    def delete_watch_channel(self, channel_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM watch_channels WHERE channel_id = ?", (channel_id,))
                conn.commit()

    def _find_channel(self, column: str, value: Any) -> WatchChannel | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT * FROM watch_channels WHERE {column} = ? ORDER BY expiration DESC LIMIT 1",
                    (value,),
                ).fetchone()
        return _channel_from_row(row) if row else None

    def find_watch_channel_by_id(self, channel_id: str) -> WatchChannel | None:
        return self._find_channel("channel_id", channel_id)

    def find_watch_channel_by_token(self, channel_token: str) -> WatchChannel | None:
        return self._find_channel("channel_token", channel_token)

    def find_watch_channel_by_resource(self, resource_id: str) -> WatchChannel | None:
        return self._find_channel("resource_id", resource_id)

    def find_watch_channel_for_user(self, user_id: int, calendar_id: str) -> WatchChannel | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM watch_channels
                    WHERE user_id = ? AND calendar_id = ?
                    ORDER BY expiration DESC LIMIT 1
                    """,
                    (int(user_id), calendar_id),
                ).fetchone()
        return _channel_from_row(row) if row else None

    def list_watch_channels_for_user(self, user_id: int) -> list[WatchChannel]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM watch_channels WHERE user_id = ? ORDER BY channel_id",
                    (int(user_id),),
                ).fetchall()
        return [_channel_from_row(row) for row in rows]

    def list_expiring_watch_channels(self, before: datetime) -> list[WatchChannel]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM watch_channels
                    WHERE expiration IS NOT NULL AND expiration <= ?
                    ORDER BY expiration
                    """,
                    (serialize_datetime(before),),
                ).fetchall()
        return [_channel_from_row(row) for row in rows]

    # cross-process lease lock

    def try_acquire_lock(self, user_id: int, owner: str, ttl_seconds: int) -> bool:
        now = datetime.now(timezone.utc)
        expires_at = serialize_datetime(now + timedelta(seconds=ttl_seconds))
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_locks(user_id, owner, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
                    WHERE sync_locks.expires_at <= ? OR sync_locks.owner = excluded.owner
                    """,
                    (int(user_id), owner, expires_at, serialize_datetime(now)),
                )
                conn.commit()
                return cursor.rowcount == 1

    def release_lock(self, user_id: int, owner: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM sync_locks WHERE user_id = ? AND owner = ?",
                    (int(user_id), owner),
                )
                conn.commit()

    # run ledger

    def start_sync_run(self, *, user_id: int, trigger: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, user_id, trigger, status, message, duration_ms,
                                          pushed, pulled, deleted, errors)
                    VALUES (?, ?, ?, 'running', 'running', 0, 0, 0, 0, 0)
                    """,
                    (_utc_now(), int(user_id), trigger),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        pushed: int = 0,
        pulled: int = 0,
        deleted: int = 0,
        errors: int = 0,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, pushed = ?, pulled = ?, deleted = ?, errors = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(pushed),
                        int(pulled),
                        int(deleted),
                        int(errors),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, user_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute(
                        "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?",
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM sync_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                        (int(user_id), max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]
