import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from caresync.errors import ValidationError
from caresync.google_client import event_from_json
from caresync.models import Appointment, Bill
from caresync.transforms import (
    apply_remote_update,
    build_event_payload,
    calculate_hash,
    event_back_reference,
)


def _appointment(**overrides) -> Appointment:
    values = dict(
        item_id=7,
        user_id=1,
        summary="Cardiology",
        start=datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc),
        end=datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc),
        start_time_zone="America/New_York",
        location="Main St Clinic",
        prep_note="Bring insurance card",
    )
    values.update(overrides)
    return Appointment(**values)


class CalculateHashTests(unittest.TestCase):
    def test_hash_is_stable_for_equal_content(self) -> None:
        self.assertEqual(calculate_hash(_appointment()), calculate_hash(_appointment()))

    def test_hash_ignores_offset_representation(self) -> None:
        eastern = _appointment().start.astimezone(timezone.utc).astimezone()
        moved = _appointment(start=eastern)
        self.assertEqual(calculate_hash(_appointment()), calculate_hash(moved))

    def test_hash_changes_with_remote_affecting_fields(self) -> None:
        base = calculate_hash(_appointment())
        self.assertNotEqual(base, calculate_hash(_appointment(summary="Cardiology (moved)")))
        self.assertNotEqual(base, calculate_hash(_appointment(location="Elm St")))
        self.assertNotEqual(base, calculate_hash(_appointment(status="cancelled")))

    def test_bill_amount_is_normalized(self) -> None:
        first = Bill(item_id=3, user_id=1, amount=Decimal("12.5"), due_date=date(2026, 4, 1))
        second = Bill(item_id=3, user_id=1, amount=Decimal("12.50"), due_date=date(2026, 4, 1))
        self.assertEqual(calculate_hash(first), calculate_hash(second))


class BuildEventPayloadTests(unittest.TestCase):
    def test_appointment_payload_uses_zone_and_back_reference(self) -> None:
        payload = build_event_payload(_appointment(), "UTC")
        self.assertEqual(payload["summary"], "Cardiology")
        self.assertEqual(payload["start"]["timeZone"], "America/New_York")
        self.assertEqual(payload["start"]["dateTime"], "2026-03-10T10:00:00-04:00")
        self.assertEqual(payload["end"]["timeZone"], "America/New_York")
        self.assertEqual(payload["description"], "Bring insurance card")
        self.assertEqual(
            payload["extendedProperties"]["private"],
            {"caresyncItemId": "7", "caresyncType": "appointment"},
        )

    def test_unknown_zone_falls_back_to_utc(self) -> None:
        payload = build_event_payload(_appointment(start_time_zone="Mars/Olympus"), "Nowhere/Else")
        self.assertEqual(payload["start"]["timeZone"], "UTC")
        self.assertEqual(payload["start"]["dateTime"], "2026-03-10T14:00:00+00:00")

    def test_appointment_without_times_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            build_event_payload(_appointment(start=None), "UTC")

    def test_appointment_ending_before_start_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            build_event_payload(_appointment(end=datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)), "UTC")

    def test_bill_payload_is_all_day_with_overdue_title(self) -> None:
        bill = Bill(
            item_id=9,
            user_id=1,
            amount=Decimal("42"),
            due_date=date(2026, 4, 1),
            status="overdue",
            pay_url="https://pay.example.com/9",
        )
        payload = build_event_payload(bill)
        self.assertEqual(payload["summary"], "Bill $42.00 (Overdue)")
        self.assertEqual(payload["start"], {"date": "2026-04-01"})
        self.assertEqual(payload["end"], {"date": "2026-04-02"})
        self.assertIn("https://pay.example.com/9", payload["description"])
        self.assertEqual(payload["extendedProperties"]["private"]["caresyncType"], "bill")

    def test_bill_falls_back_to_statement_date(self) -> None:
        bill = Bill(item_id=9, user_id=1, statement_date=date(2026, 3, 15))
        payload = build_event_payload(bill)
        self.assertEqual(payload["start"], {"date": "2026-03-15"})
        self.assertEqual(payload["summary"], "Bill")

    def test_bill_without_dates_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            build_event_payload(Bill(item_id=9, user_id=1, amount=Decimal("1")))


class ApplyRemoteUpdateTests(unittest.TestCase):
    def test_remote_fields_override_sync_owned_fields_only(self) -> None:
        appointment = _appointment(status="scheduled")
        event = event_from_json(
            {
                "id": "evt1",
                "summary": "Cardiology (moved)",
                "location": "Elm St",
                "start": {"dateTime": "2026-03-11T09:00:00-04:00", "timeZone": "America/New_York"},
                "end": {"dateTime": "2026-03-11T10:00:00-04:00", "timeZone": "America/New_York"},
            }
        )
        updated = apply_remote_update(appointment, event, "UTC")
        self.assertEqual(updated.summary, "Cardiology (moved)")
        self.assertEqual(updated.location, "Elm St")
        self.assertEqual(updated.prep_note, "Bring insurance card")
        self.assertEqual(updated.start, datetime(2026, 3, 11, 13, 0, tzinfo=timezone.utc))
        self.assertEqual(updated.status, "scheduled")
        self.assertEqual(appointment.summary, "Cardiology")

    def test_push_then_apply_keeps_hash(self) -> None:
        appointment = _appointment()
        payload = build_event_payload(appointment, "UTC")
        payload["id"] = "evt1"
        updated = apply_remote_update(appointment, event_from_json(payload), "UTC")
        self.assertEqual(calculate_hash(appointment), calculate_hash(updated))

    def test_event_without_times_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            apply_remote_update(_appointment(), event_from_json({"id": "evt1", "summary": "x"}), "UTC")

    def test_bill_takes_due_date_from_all_day_event(self) -> None:
        bill = Bill(item_id=9, user_id=1, amount=Decimal("42"), due_date=date(2026, 4, 1))
        event = event_from_json({"id": "evt2", "start": {"date": "2026-04-05"}, "end": {"date": "2026-04-06"}})
        updated = apply_remote_update(bill, event)
        self.assertEqual(updated.due_date, date(2026, 4, 5))
        self.assertEqual(updated.amount, Decimal("42"))


class BackReferenceTests(unittest.TestCase):
    def test_reads_private_properties(self) -> None:
        event = event_from_json(
            {"id": "e", "extendedProperties": {"private": {"caresyncItemId": "12", "caresyncType": "bill"}}}
        )
        self.assertEqual(event_back_reference(event), ("bill", 12))

    def test_missing_or_malformed_reference(self) -> None:
        self.assertIsNone(event_back_reference(event_from_json({"id": "e"})))
        malformed = event_from_json({"id": "e", "extendedProperties": {"private": {"caresyncItemId": "abc"}}})
        self.assertIsNone(event_back_reference(malformed))


if __name__ == "__main__":
    unittest.main()
