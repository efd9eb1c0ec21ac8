from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from caresync.errors import ValidationError
from caresync.models import Appointment, Bill, CalendarEvent, Entity, serialize_datetime

logger = logging.getLogger(__name__)

ITEM_ID_PROPERTY = "caresyncItemId"
ITEM_TYPE_PROPERTY = "caresyncType"
SOURCE_TITLE = "CareBase"


def _hash_parts(parts: list[Any]) -> str:
    normalized = []
    for value in parts:
        if value is None:
            normalized.append("")
        elif isinstance(value, datetime):
            normalized.append(serialize_datetime(value) or "")
        elif isinstance(value, date):
            normalized.append(value.isoformat())
        else:
            normalized.append(str(value).strip())
    return hashlib.sha256("|".join(normalized).encode("utf-8")).hexdigest()


def _format_amount(amount: Decimal | float | int | None) -> str | None:
    if amount is None:
        return None
    return f"{Decimal(str(amount)).quantize(Decimal('0.01'))}"


def calculate_hash(entity: Entity) -> str:
    """Content hash over exactly the fields that shape the remote event."""
    if isinstance(entity, Appointment):
        return _hash_parts(
            [
                "appointment",
                entity.summary,
                entity.start,
                entity.end,
                entity.start_time_zone,
                entity.end_time_zone or entity.start_time_zone,
                entity.location,
                entity.prep_note,
                entity.status,
            ]
        )
    if isinstance(entity, Bill):
        return _hash_parts(
            [
                "bill",
                _format_amount(entity.amount),
                entity.due_date,
                entity.statement_date,
                entity.status,
                entity.pay_url,
            ]
        )
    raise ValidationError(f"Unsupported entity type: {type(entity).__name__}")


def resolve_zone(name: str | None, fallback: str = "UTC") -> tuple[str, ZoneInfo]:
    for candidate in (name, fallback, "UTC"):
        if not candidate:
            continue
        try:
            return candidate, ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown time zone %r; falling back", candidate)
    return "UTC", ZoneInfo("UTC")


def _event_time(value: datetime, zone_name: str | None, default_time_zone: str) -> dict[str, str]:
    name, zone = resolve_zone(zone_name, default_time_zone)
    return {"dateTime": value.astimezone(zone).isoformat(), "timeZone": name}


def _back_reference(entity: Entity) -> dict[str, Any]:
    return {"private": {ITEM_ID_PROPERTY: str(entity.item_id), ITEM_TYPE_PROPERTY: entity.item_type}}


def _appointment_payload(appointment: Appointment, default_time_zone: str) -> dict[str, Any]:
    if appointment.start is None or appointment.end is None:
        raise ValidationError("Appointment is missing a start or end time")
    if appointment.end < appointment.start:
        raise ValidationError("Appointment ends before it starts")
    start_zone = appointment.start_time_zone or default_time_zone
    end_zone = appointment.end_time_zone or start_zone
    return {
        "summary": appointment.summary or "Appointment",
        "description": appointment.prep_note or None,
        "location": appointment.location or None,
        "start": _event_time(appointment.start, start_zone, default_time_zone),
        "end": _event_time(appointment.end, end_zone, default_time_zone),
        "status": "cancelled" if appointment.status == "cancelled" else "confirmed",
        "extendedProperties": _back_reference(appointment),
        "source": {"title": SOURCE_TITLE, "url": "https://carebase.app"},
    }


def _bill_payload(bill: Bill) -> dict[str, Any]:
    due = bill.due_date or bill.statement_date
    if due is None:
        raise ValidationError("Bill has neither a due date nor a statement date")
    summary_parts = ["Bill"]
    amount = _format_amount(bill.amount)
    if amount is not None:
        summary_parts.append(f"${amount}")
    if bill.status == "overdue":
        summary_parts.append("(Overdue)")
    description_lines = []
    if bill.pay_url:
        description_lines.append(f"Pay online: {bill.pay_url}")
    description_lines.append(f"Status: {bill.status}")
    return {
        "summary": " ".join(summary_parts),
        "description": "\n".join(description_lines),
        "start": {"date": due.isoformat()},
        "end": {"date": (due + timedelta(days=1)).isoformat()},
        "status": "cancelled" if bill.status == "cancelled" else "confirmed",
        "extendedProperties": _back_reference(bill),
        "source": {"title": SOURCE_TITLE, "url": "https://carebase.app"},
    }


def build_event_payload(entity: Entity, default_time_zone: str = "UTC") -> dict[str, Any]:
    if isinstance(entity, Appointment):
        return _appointment_payload(entity, default_time_zone)
    if isinstance(entity, Bill):
        return _bill_payload(entity)
    raise ValidationError(f"Unsupported entity type: {type(entity).__name__}")


def event_back_reference(event: CalendarEvent) -> tuple[str, int] | None:
    raw_id = event.private_properties.get(ITEM_ID_PROPERTY)
    if not raw_id:
        return None
    try:
        item_id = int(raw_id)
    except ValueError:
        return None
    return event.private_properties.get(ITEM_TYPE_PROPERTY, ""), item_id


def apply_remote_update(entity: Entity, event: CalendarEvent, default_time_zone: str = "UTC") -> Entity:
    """Map inbound event fields onto a copy of ``entity``.

    Only sync-owned fields are touched: appointments take summary, times,
    zones, location and prep note; bills only take their due date.
    """
    if isinstance(entity, Appointment):
        start = event.start.as_datetime() if event.start else None
        end = event.end.as_datetime() if event.end else None
        if start is None or end is None:
            raise ValidationError("Calendar event missing start/end time")
        start_zone_name = (event.start.time_zone if event.start else None) or entity.start_time_zone
        start_zone_name, start_zone = resolve_zone(start_zone_name, default_time_zone)
        end_zone_name = (event.end.time_zone if event.end else None) or entity.end_time_zone or start_zone_name
        end_zone_name, end_zone = resolve_zone(end_zone_name, start_zone_name)
        # unset zones stay unset when the remote only echoes the fallback
        stored_start_zone = start_zone_name
        if entity.start_time_zone is None and start_zone_name == default_time_zone:
            stored_start_zone = None
        stored_end_zone = end_zone_name
        if entity.end_time_zone is None and end_zone_name == start_zone_name:
            stored_end_zone = None
        return entity.with_updates(
            summary=event.summary if event.summary is not None else entity.summary,
            start=start.astimezone(start_zone),
            end=end.astimezone(end_zone),
            start_time_zone=stored_start_zone,
            end_time_zone=stored_end_zone,
            location=event.location if event.location is not None else entity.location,
            prep_note=event.description if event.description is not None else entity.prep_note,
        )
    if isinstance(entity, Bill):
        due = None
        if event.start is not None:
            if event.start.date is not None:
                due = event.start.date
            elif event.start.date_time is not None:
                due = event.start.date_time.astimezone(timezone.utc).date()
        return entity.with_updates(due_date=due or entity.due_date)
    raise ValidationError(f"Unsupported entity type: {type(entity).__name__}")
