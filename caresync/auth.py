from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import requests
from cryptography.fernet import Fernet, InvalidToken

from caresync.errors import (
    AuthError,
    NotConnectedError,
    ProviderError,
    TransientProviderError,
    error_for_status,
)
from caresync.models import Credential, GoogleConfig, utc_now
from caresync.state_store import StateStore

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(seconds=60)


class TokenCipher:
    """Fernet wrapper for the OAuth tokens kept at rest."""

    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("security.encryption_key must be configured")
        self._fernet = Fernet(key.encode("utf-8"))

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise AuthError("Stored credential cannot be decrypted", None, "undecryptable") from exc


@dataclass
class AuthenticatedCredential:
    credential: Credential
    access_token: str


class CredentialAuthenticator:
    def __init__(
        self,
        state_store: StateStore,
        cipher: TokenCipher,
        config: GoogleConfig,
        session: requests.Session | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.cipher = cipher
        self.config = config
        self.session = session or requests.Session()
        self._now = now

    def store_tokens(
        self,
        user_id: int,
        *,
        access_token: str,
        refresh_token: str,
        scope: list[str] | None = None,
        expires_at: datetime | None = None,
        token_type: str | None = None,
        calendar_id: str | None = None,
    ) -> Credential:
        """Persist freshly granted tokens, keeping managed-calendar identity."""
        existing = self.state_store.get_credential(user_id)
        encrypted_access = self.cipher.encrypt(access_token)
        encrypted_refresh = self.cipher.encrypt(refresh_token)
        if existing is None:
            credential = Credential(
                user_id=user_id,
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                scope=list(scope or []),
                expires_at=expires_at,
                token_type=token_type,
                calendar_id=calendar_id,
            )
        else:
            credential = existing.with_updates(
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                scope=list(scope or existing.scope),
                expires_at=expires_at,
                token_type=token_type or existing.token_type,
                calendar_id=calendar_id or existing.calendar_id,
                sync_token=None,
                last_pulled_at=None,
                needs_reauth=False,
            )
        return self.state_store.upsert_credential(credential)

    def ensure_valid_access_token(self, user_id: int) -> AuthenticatedCredential:
        credential = self.state_store.get_credential(user_id)
        if credential is None:
            raise NotConnectedError("Google Calendar is not connected for this user", 400, "not_connected")
        if credential.needs_reauth:
            raise AuthError("Google Calendar needs to be reconnected", 401, "needs_reauth")

        expires_at = credential.expires_at
        if expires_at is not None and expires_at - self._now() > REFRESH_MARGIN:
            return AuthenticatedCredential(credential, self.cipher.decrypt(credential.access_token))

        refreshed = self._refresh(self.cipher.decrypt(credential.refresh_token))
        expires_in = refreshed.get("expires_in")
        next_expiry = (
            self._now() + timedelta(seconds=int(expires_in)) if expires_in is not None else credential.expires_at
        )
        scope = refreshed.get("scope")
        access_token = str(refreshed["access_token"])
        # refresh grants rarely rotate the refresh token, but honour it when they do
        refresh_token = refreshed.get("refresh_token")
        # token columns only: a pull may have moved the cursor while we waited
        updated = self.state_store.update_tokens(
            user_id,
            access_token=self.cipher.encrypt(access_token),
            refresh_token=self.cipher.encrypt(refresh_token) if refresh_token else credential.refresh_token,
            scope=scope.split() if isinstance(scope, str) else credential.scope,
            expires_at=next_expiry,
            token_type=refreshed.get("token_type") or credential.token_type,
        )
        if updated is None:
            raise NotConnectedError("Google Calendar was disconnected during token refresh", 400, "not_connected")
        logger.info("Refreshed access token for user %s", user_id)
        return AuthenticatedCredential(updated, access_token)

    def _refresh(self, refresh_token: str) -> dict[str, Any]:
        if not self.config.client_id or not self.config.client_secret:
            raise ProviderError("Missing Google OAuth client credentials", 500, "missing_credentials")
        try:
            response = self.session.post(
                self.config.token_endpoint,
                data={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
                timeout=self.config.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(
                f"Token refresh failed: {type(exc).__name__}", None, "timeout"
            ) from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            description = payload.get("error_description") if isinstance(payload, dict) else None
            raise error_for_status(
                response.status_code,
                f"Failed to refresh access token: {description or response.reason}",
                payload if isinstance(payload, dict) else {},
            )
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ProviderError("Token endpoint returned no access token", response.status_code, "missing_token")
        return payload


def expires_at_from(expires_in: int | None, now: datetime | None = None) -> datetime | None:
    if expires_in is None:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=int(expires_in))
