import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient
from fakes import FakeCalendarProvider, FakeClock, make_appointment

from caresync.config_manager import ConfigManager
from caresync.models import utc_now
from caresync.web_admin import AppContext, create_app


class WebAdminConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        env = {"CARESYNC_CONFIG_PATH": self.config_path, "CARESYNC_STATE_PATH": self.state_path}
        with mock.patch.dict(os.environ, env):
            self.client = TestClient(create_app())

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_generated_encryption_key_is_masked(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["security"]["encryption_key"], "***")
        self.assertTrue(ConfigManager(self.config_path).load().security.encryption_key)

    def test_put_config_keeps_masked_secrets(self) -> None:
        key = ConfigManager(self.config_path).load().security.encryption_key
        update = {"security": {"encryption_key": "***"}, "sync": {"debounce_seconds": 5}}

        resp = self.client.put("/api/config", json={"payload": update})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["sync"]["debounce_seconds"], 5)
        self.assertEqual(ConfigManager(self.config_path).load().security.encryption_key, key)


class WebAdminIntegrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        ConfigManager(str(root / "config.yaml")).update(
            {"watch": {"webhook_base_url": "https://hooks.example.com"}}
        )
        self.provider = FakeCalendarProvider(utc_now)
        self.provider.add_calendar("primary", "user1@example.com")
        self.clock = FakeClock()
        self.context = AppContext(
            config_path=str(root / "config.yaml"),
            state_path=str(root / "state.db"),
            client=self.provider,
            clock=self.clock,
        )
        self.context.entities.add(make_appointment())
        self.client = TestClient(create_app(self.context))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _connect(self):
        return self.client.put(
            "/api/users/1/integrations/google",
            json={"access_token": "access", "refresh_token": "refresh", "expires_in": 3600, "calendar_id": "primary"},
        )

    def _sync(self):
        return self.client.post("/api/users/1/integrations/google/sync", json={})

    def test_status_before_connect(self) -> None:
        resp = self.client.get("/api/users/1/integrations/google")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["connected"])

    def test_connect_validates_tokens(self) -> None:
        resp = self.client.put("/api/users/1/integrations/google", json={"access_token": "", "refresh_token": "r"})
        self.assertEqual(resp.status_code, 422)

    def test_connect_then_manual_sync(self) -> None:
        resp = self._connect()
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["connected"])

        resp = self._sync()

        self.assertEqual(resp.status_code, 200)
        summary = resp.json()["summary"]
        self.assertEqual(summary["pushed"], 1)
        self.assertTrue(summary["calendar_id"].startswith("managed-"))
        runs = self.client.get("/api/sync-runs", params={"user_id": 1}).json()["runs"]
        self.assertEqual(runs[0]["status"], "success")

    def test_sync_without_connection_is_not_found(self) -> None:
        resp = self._sync()
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["code"], "not_connected")

    def test_sync_after_revocation_asks_for_reconnect(self) -> None:
        self._connect()
        self.context.state_store.set_needs_reauth(1, True)

        resp = self._sync()

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "needs_reauth")

    def test_item_changed_rejects_unknown_type(self) -> None:
        self._connect()
        resp = self.client.post("/api/users/1/items/7/changed", json={"item_type": "medication"})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post("/api/users/1/items/7/changed", json={"item_type": "appointment"})
        self.assertEqual(resp.json(), {"scheduled": True})

    def test_item_deleted(self) -> None:
        self._connect()
        self._sync()
        self.context.entities.remove(7)

        resp = self.client.delete("/api/items/7")

        self.assertEqual(resp.json(), {"deleted": True, "pending": False})

    def test_webhook_notifications(self) -> None:
        self._connect()
        self._sync()
        channel = self.context.state_store.list_watch_channels_for_user(1)[0]
        headers = {
            "X-Goog-Channel-ID": channel.channel_id,
            "X-Goog-Channel-Token": channel.channel_token,
            "X-Goog-Resource-ID": channel.resource_id,
            "X-Goog-Resource-State": "exists",
        }

        resp = self.client.post("/api/integrations/google/webhook", headers=headers)
        self.assertEqual(resp.json(), {"status": "scheduled"})

        headers["X-Goog-Channel-Token"] = "forged"
        resp = self.client.post("/api/integrations/google/webhook", headers=headers)
        self.assertEqual(resp.status_code, 403)

        resp = self.client.post(
            "/api/integrations/google/webhook",
            headers={"X-Goog-Channel-ID": "unknown", "X-Goog-Resource-State": "exists"},
        )
        self.assertEqual(resp.json(), {"status": "ignored"})

    def test_disconnect(self) -> None:
        self._connect()
        resp = self.client.delete("/api/users/1/integrations/google")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["connected"])

        resp = self.client.delete("/api/users/1/integrations/google")
        self.assertEqual(resp.status_code, 404)


if __name__ == "__main__":
    unittest.main()
