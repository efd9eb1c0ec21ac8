import tempfile
import unittest
from datetime import timedelta

from fakes import make_appointment, make_stack

from caresync.errors import NotConnectedError, TransientProviderError, ValidationError
from caresync.integration import IntegrationService
from caresync.scheduler import IDLE, SUSPENDED


class IntegrationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.stack = make_stack(self.temp_dir.name, {"watch": {"webhook_base_url": "https://hooks.example.com"}})
        self.provider = self.stack.provider
        self.store = self.stack.state_store
        self.provider.add_calendar("primary", "user1@example.com")
        self.stack.entities.add(make_appointment())
        self.service = IntegrationService(
            self.store,
            self.stack.authenticator,
            self.stack.orchestrator,
            self.stack.watch_manager,
            self.provider,
            self.stack.entities,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _connect(self) -> dict:
        return self.service.connect(
            1,
            access_token="access",
            refresh_token="refresh",
            scope=["https://www.googleapis.com/auth/calendar"],
            expires_at=self.stack.clock.utcnow() + timedelta(days=1),
            calendar_id="primary",
        )

    def test_status_for_unknown_user(self) -> None:
        status = self.service.status(1)
        self.assertFalse(status["connected"])
        self.assertEqual(status["sync_pending_count"], 0)

    def test_connect_runs_initial_sync(self) -> None:
        status = self._connect()
        self.assertTrue(status["connected"])
        self.assertIsNone(status["last_synced_at"])

        self.stack.clock.advance(0)

        status = self.service.status(1)
        self.assertEqual(status["managed_calendar_state"], "verified")
        self.assertEqual(status["sync_pending_count"], 0)
        self.assertIsNotNone(status["last_synced_at"])
        self.assertIsNone(status["last_error"])
        self.assertEqual(len(self.provider.live_events(status["calendar_id"])), 1)
        self.assertEqual(self.store.recent_sync_runs(user_id=1)[0]["trigger"], "connect")

    def test_reconnect_resumes_suspended_user(self) -> None:
        self._connect()
        self.stack.clock.advance(0)
        self.stack.orchestrator.state_of(1).state = SUSPENDED
        self.store.set_needs_reauth(1, True)

        status = self._connect()

        self.assertFalse(status["needs_reauth"])
        self.assertNotEqual(self.stack.orchestrator.state_of(1).state, SUSPENDED)

    def test_item_change_is_debounced_into_a_push(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.notify_item_changed(1, 7, "medication")
        self.assertFalse(self.service.notify_item_changed(1, 7, "appointment"))

        self._connect()
        self.stack.clock.advance(0)
        link = self.store.get_link(7)
        self.stack.entities.update_item(make_appointment(summary="Cardiology follow-up"))

        self.assertTrue(self.service.notify_item_changed(1, 7, "appointment"))
        self.assertEqual(self.service.status(1)["sync_pending_count"], 1)
        self.stack.clock.advance(15)

        self.assertEqual(self.provider.remote_event(link.calendar_id, link.event_id).summary, "Cardiology follow-up")
        self.assertEqual(self.stack.orchestrator.state_of(1).state, IDLE)

    def test_item_deletion_removes_remote_event(self) -> None:
        self.assertEqual(self.service.notify_item_deleted(7), {"deleted": False, "pending": False})
        self._connect()
        self.stack.clock.advance(0)
        link = self.store.get_link(7)
        self.stack.entities.remove(7)

        self.assertEqual(self.service.notify_item_deleted(7), {"deleted": True, "pending": False})
        self.assertEqual(self.provider.remote_event(link.calendar_id, link.event_id).status, "cancelled")
        self.assertIsNone(self.store.get_link(7))

    def test_failed_deletion_is_retried_by_push(self) -> None:
        self._connect()
        self.stack.clock.advance(0)
        link = self.store.get_link(7)
        self.stack.entities.remove(7)
        self.provider.fail_next("delete_event", TransientProviderError("Backend Error", 503))

        self.assertEqual(self.service.notify_item_deleted(7), {"deleted": False, "pending": True})
        self.stack.clock.advance(15)

        self.assertEqual(self.provider.remote_event(link.calendar_id, link.event_id).status, "cancelled")
        self.assertIsNone(self.store.get_link(7))

    def test_sync_now_requires_connection(self) -> None:
        with self.assertRaises(NotConnectedError):
            self.service.sync_now(1)
        self._connect()
        summary = self.service.sync_now(1)
        self.assertEqual(summary.pushed, 1)

    def test_disconnect_cleans_up(self) -> None:
        with self.assertRaises(NotConnectedError):
            self.service.disconnect(1)
        self._connect()
        self.stack.clock.advance(0)
        self.assertEqual(len(self.provider.channels), 1)

        status = self.service.disconnect(1)

        self.assertFalse(status["connected"])
        self.assertEqual(self.provider.channels, {})
        self.assertIsNone(self.store.get_link(7))
        self.assertIsNone(self.store.get_credential(1))


if __name__ == "__main__":
    unittest.main()
