import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import requests

from caresync.auth import CredentialAuthenticator, TokenCipher
from caresync.errors import AuthError, NotConnectedError, TransientProviderError
from caresync.models import GoogleConfig
from caresync.state_store import StateStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _token_response(status: int, payload: dict) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload).encode("utf-8")
    return response


class TokenCipherTests(unittest.TestCase):
    def test_encrypts_and_decrypts(self) -> None:
        cipher = TokenCipher(TokenCipher.generate_key())
        encrypted = cipher.encrypt("secret-token")
        self.assertNotEqual(encrypted, "secret-token")
        self.assertEqual(cipher.decrypt(encrypted), "secret-token")

    def test_foreign_ciphertext_is_an_auth_error(self) -> None:
        encrypted = TokenCipher(TokenCipher.generate_key()).encrypt("secret-token")
        with self.assertRaises(AuthError) as ctx:
            TokenCipher(TokenCipher.generate_key()).decrypt(encrypted)
        self.assertEqual(ctx.exception.code, "undecryptable")

    def test_missing_key_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            TokenCipher("")


class CredentialAuthenticatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.cipher = TokenCipher(TokenCipher.generate_key())
        self.session = mock.Mock()
        self.auth = CredentialAuthenticator(
            self.store,
            self.cipher,
            GoogleConfig(client_id="client", client_secret="secret"),
            session=self.session,
            now=lambda: NOW,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_tokens_are_encrypted_at_rest(self) -> None:
        self.auth.store_tokens(1, access_token="access", refresh_token="refresh", expires_at=NOW + timedelta(hours=1))
        stored = self.store.get_credential(1)
        self.assertNotIn("access", stored.access_token)
        self.assertEqual(self.cipher.decrypt(stored.refresh_token), "refresh")

    def test_unexpired_token_is_returned_without_refresh(self) -> None:
        self.auth.store_tokens(1, access_token="access", refresh_token="refresh", expires_at=NOW + timedelta(hours=1))
        result = self.auth.ensure_valid_access_token(1)
        self.assertEqual(result.access_token, "access")
        self.session.post.assert_not_called()

    def test_expiring_token_is_refreshed_and_persisted(self) -> None:
        self.auth.store_tokens(1, access_token="old", refresh_token="refresh", expires_at=NOW + timedelta(seconds=30))
        self.session.post.return_value = _token_response(
            200, {"access_token": "new", "expires_in": 3600, "scope": "a b", "token_type": "Bearer"}
        )

        result = self.auth.ensure_valid_access_token(1)

        self.assertEqual(result.access_token, "new")
        data = self.session.post.call_args.kwargs["data"]
        self.assertEqual(data["grant_type"], "refresh_token")
        self.assertEqual(data["refresh_token"], "refresh")
        stored = self.store.get_credential(1)
        self.assertEqual(self.cipher.decrypt(stored.access_token), "new")
        self.assertEqual(self.cipher.decrypt(stored.refresh_token), "refresh")
        self.assertEqual(stored.expires_at, NOW + timedelta(seconds=3600))
        self.assertEqual(stored.scope, ["a", "b"])

    def test_refresh_keeps_cursor_advanced_during_token_request(self) -> None:
        self.auth.store_tokens(1, access_token="old", refresh_token="refresh", expires_at=None)
        self.store.advance_sync_cursor(1, expected_sync_token=None, sync_token="tok-1", last_pulled_at=NOW)
        pulled_at = NOW + timedelta(minutes=1)

        def pull_lands_mid_refresh(*args, **kwargs):
            self.store.advance_sync_cursor(
                1, expected_sync_token="tok-1", sync_token="tok-2", last_pulled_at=pulled_at
            )
            self.store.set_needs_reauth(1, True)
            return _token_response(200, {"access_token": "new", "expires_in": 3600})

        self.session.post.side_effect = pull_lands_mid_refresh

        result = self.auth.ensure_valid_access_token(1)

        self.assertEqual(result.access_token, "new")
        stored = self.store.get_credential(1)
        self.assertEqual(stored.sync_token, "tok-2")
        self.assertEqual(stored.last_pulled_at, pulled_at)
        self.assertTrue(stored.needs_reauth)
        self.assertEqual(self.cipher.decrypt(stored.access_token), "new")

    def test_disconnect_during_refresh_is_not_connected(self) -> None:
        self.auth.store_tokens(1, access_token="old", refresh_token="refresh", expires_at=None)

        def disconnect_mid_refresh(*args, **kwargs):
            self.store.delete_credential(1)
            return _token_response(200, {"access_token": "new", "expires_in": 3600})

        self.session.post.side_effect = disconnect_mid_refresh

        with self.assertRaises(NotConnectedError):
            self.auth.ensure_valid_access_token(1)
        self.assertIsNone(self.store.get_credential(1))

    def test_revoked_refresh_token_is_an_auth_error(self) -> None:
        self.auth.store_tokens(1, access_token="old", refresh_token="refresh", expires_at=None)
        self.session.post.return_value = _token_response(400, {"error": "invalid_grant"})
        with self.assertRaises(AuthError):
            self.auth.ensure_valid_access_token(1)

    def test_token_endpoint_timeout_is_transient(self) -> None:
        self.auth.store_tokens(1, access_token="old", refresh_token="refresh", expires_at=None)
        self.session.post.side_effect = requests.ConnectionError("down")
        with self.assertRaises(TransientProviderError):
            self.auth.ensure_valid_access_token(1)

    def test_missing_and_flagged_credentials(self) -> None:
        with self.assertRaises(NotConnectedError):
            self.auth.ensure_valid_access_token(1)
        self.auth.store_tokens(1, access_token="a", refresh_token="r", expires_at=NOW + timedelta(hours=1))
        self.store.set_needs_reauth(1, True)
        with self.assertRaises(AuthError) as ctx:
            self.auth.ensure_valid_access_token(1)
        self.assertEqual(ctx.exception.code, "needs_reauth")

    def test_reconnect_clears_cursor_and_reauth_flag(self) -> None:
        self.auth.store_tokens(1, access_token="a", refresh_token="r", calendar_id="primary")
        self.store.advance_sync_cursor(1, expected_sync_token=None, sync_token="t1", last_pulled_at=NOW)
        self.store.set_needs_reauth(1, True)

        self.auth.store_tokens(1, access_token="a2", refresh_token="r2")

        stored = self.store.get_credential(1)
        self.assertIsNone(stored.sync_token)
        self.assertFalse(stored.needs_reauth)
        self.assertEqual(stored.calendar_id, "primary")


if __name__ == "__main__":
    unittest.main()
