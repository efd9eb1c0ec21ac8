from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import requests

from caresync.errors import ProviderError, TransientProviderError, error_for_status
from caresync.models import (
    AclEntry,
    CalendarEvent,
    CalendarInfo,
    ChannelRegistration,
    EventDateTime,
    EventPage,
    GoogleConfig,
    parse_iso_date,
    parse_iso_datetime,
    serialize_datetime,
)

logger = logging.getLogger(__name__)

SENSITIVE_PARAMS = {"access_token", "token", "syncToken", "pageToken"}


def _quote(value: str) -> str:
    return quote(str(value), safe="")


def _parse_event_time(raw: Any) -> EventDateTime | None:
    if not isinstance(raw, dict):
        return None
    raw_date_time = raw.get("dateTime")
    try:
        date_time = parse_iso_datetime(raw_date_time) if raw_date_time else None
        day = parse_iso_date(raw.get("date")) if raw.get("date") else None
    except ValueError:
        return None
    if date_time is None and day is None:
        return None
    time_zone = str(raw.get("timeZone") or "").strip() or None
    return EventDateTime(
        date_time=date_time,
        date=day,
        time_zone=time_zone,
        raw_date_time=str(raw_date_time) if raw_date_time else None,
    )


def event_from_json(payload: dict[str, Any]) -> CalendarEvent:
    extended = payload.get("extendedProperties") or {}
    private = extended.get("private") if isinstance(extended, dict) else None
    private_properties = {str(k): str(v) for k, v in (private or {}).items()}
    try:
        updated = parse_iso_datetime(payload.get("updated"))
    except ValueError:
        updated = None
    return CalendarEvent(
        event_id=str(payload.get("id", "")),
        status=str(payload.get("status") or "confirmed"),
        etag=payload.get("etag"),
        updated=updated,
        summary=payload.get("summary"),
        description=payload.get("description"),
        location=payload.get("location"),
        start=_parse_event_time(payload.get("start")),
        end=_parse_event_time(payload.get("end")),
        private_properties=private_properties,
    )


def calendar_from_json(payload: dict[str, Any]) -> CalendarInfo:
    return CalendarInfo(
        calendar_id=str(payload.get("id", "")),
        summary=str(payload.get("summary") or ""),
        time_zone=payload.get("timeZone"),
    )


def acl_from_json(payload: dict[str, Any]) -> AclEntry:
    scope = payload.get("scope") or {}
    value = scope.get("value")
    return AclEntry(
        role=str(payload.get("role", "")),
        scope_type=str(scope.get("type", "")),
        scope_value=str(value).strip().lower() if value else None,
        rule_id=payload.get("id"),
    )


def channel_from_json(channel_id: str, payload: dict[str, Any]) -> ChannelRegistration:
    resource_id = payload.get("resourceId") or payload.get("resource_id")
    if not resource_id:
        raise ProviderError("Watch response missing resourceId", 500, "missing_resource")
    expiration = None
    raw_expiration = payload.get("expiration")
    if raw_expiration not in (None, ""):
        expiration = datetime.fromtimestamp(int(raw_expiration) / 1000, tz=timezone.utc)
    return ChannelRegistration(
        channel_id=str(payload.get("id") or channel_id),
        resource_id=str(resource_id),
        resource_uri=payload.get("resourceUri") or payload.get("resource_uri"),
        expiration=expiration,
    )


class GoogleCalendarClient:
    """Thin client over the calendar v3 REST surface.

    Every call takes the caller's access token, carries a timeout, and raises
    one of the ``caresync.errors`` provider errors on failure. Responses are
    mapped into the dataclasses from ``caresync.models`` before returning.
    """

    def __init__(self, config: GoogleConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.config.api_base_url}{path}"

    def _request(
        self,
        access_token: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        url = self._url(path)
        safe_params = {k: v for k, v in (params or {}).items() if k not in SENSITIVE_PARAMS}
        request_headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        request_headers.update(headers or {})
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=request_headers,
                timeout=self.config.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(
                f"Calendar API {method} {path} failed: {type(exc).__name__}",
                None,
                "timeout",
                {"method": method, "path": path},
            ) from exc

        if response.status_code == 204 or not response.content:
            if response.ok:
                logger.debug("Calendar API %s %s -> %s", method, path, response.status_code)
                return None
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            message = ""
            if isinstance(payload, dict):
                error = payload.get("error")
                if isinstance(error, dict):
                    message = str(error.get("message") or "")
                else:
                    message = str(payload.get("error_description") or error or "")
            raise error_for_status(
                response.status_code,
                f"Calendar API request failed: {message or response.reason}",
                payload if isinstance(payload, dict) else {},
                {"method": method, "path": path, "params": safe_params, "status": response.status_code},
            )
        logger.debug("Calendar API %s %s -> %s params=%s", method, path, response.status_code, safe_params)
        return payload if isinstance(payload, dict) else {}

    # calendars

    def get_calendar(self, access_token: str, calendar_id: str) -> CalendarInfo:
        payload = self._request(access_token, "GET", f"/calendars/{_quote(calendar_id)}")
        return calendar_from_json(payload or {})

    def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            payload = self._request(access_token, "GET", "/users/me/calendarList", params=params) or {}
            for item in payload.get("items") or []:
                if isinstance(item, dict) and item.get("id"):
                    calendars.append(calendar_from_json(item))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    def insert_calendar(self, access_token: str, summary: str, time_zone: str) -> CalendarInfo:
        payload = self._request(
            access_token,
            "POST",
            "/calendars",
            json_body={"summary": summary, "timeZone": time_zone},
        )
        info = calendar_from_json(payload or {})
        if not info.calendar_id:
            raise ProviderError("Calendar API did not return a calendar id", 500, "missing_calendar")
        return info

    # events

    def list_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        page_token: str | None = None,
        time_min: datetime | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {"showDeleted": "true", "singleEvents": "true", "maxResults": 2500}
        if sync_token:
            params["syncToken"] = sync_token
        elif time_min is not None:
            params["timeMin"] = serialize_datetime(time_min)
        if page_token:
            params["pageToken"] = page_token
        payload = self._request(
            access_token, "GET", f"/calendars/{_quote(calendar_id)}/events", params=params
        ) or {}
        items = [event_from_json(item) for item in payload.get("items") or [] if isinstance(item, dict)]
        return EventPage(
            items=items,
            next_page_token=payload.get("nextPageToken"),
            next_sync_token=payload.get("nextSyncToken"),
        )

    def get_event(self, access_token: str, calendar_id: str, event_id: str) -> CalendarEvent:
        payload = self._request(
            access_token, "GET", f"/calendars/{_quote(calendar_id)}/events/{_quote(event_id)}"
        )
        return event_from_json(payload or {})

    def insert_event(self, access_token: str, calendar_id: str, body: dict[str, Any]) -> CalendarEvent:
        payload = self._request(
            access_token, "POST", f"/calendars/{_quote(calendar_id)}/events", json_body=body
        )
        return event_from_json(payload or {})

    def patch_event(
        self,
        access_token: str,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        etag: str | None = None,
    ) -> CalendarEvent:
        headers = {"If-Match": etag} if etag else None
        payload = self._request(
            access_token,
            "PATCH",
            f"/calendars/{_quote(calendar_id)}/events/{_quote(event_id)}",
            json_body=body,
            headers=headers,
        )
        return event_from_json(payload or {})

    def move_event(
        self, access_token: str, calendar_id: str, event_id: str, destination: str
    ) -> CalendarEvent:
        payload = self._request(
            access_token,
            "POST",
            f"/calendars/{_quote(calendar_id)}/events/{_quote(event_id)}/move",
            params={"destination": destination},
        )
        return event_from_json(payload or {"id": event_id})

    def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        self._request(access_token, "DELETE", f"/calendars/{_quote(calendar_id)}/events/{_quote(event_id)}")

    # acl

    def list_acl(self, access_token: str, calendar_id: str) -> list[AclEntry]:
        payload = self._request(access_token, "GET", f"/calendars/{_quote(calendar_id)}/acl") or {}
        return [acl_from_json(item) for item in payload.get("items") or [] if isinstance(item, dict)]

    def insert_acl(self, access_token: str, calendar_id: str, role: str, email: str) -> AclEntry:
        payload = self._request(
            access_token,
            "POST",
            f"/calendars/{_quote(calendar_id)}/acl",
            params={"sendNotifications": "false"},
            json_body={"role": role, "scope": {"type": "user", "value": email}},
        )
        return acl_from_json(payload or {"role": role, "scope": {"type": "user", "value": email}})

    # push notifications

    def watch_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        channel_id: str,
        address: str,
        token: str,
        ttl_seconds: int,
    ) -> ChannelRegistration:
        payload = self._request(
            access_token,
            "POST",
            f"/calendars/{_quote(calendar_id)}/events/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": address,
                "token": token,
                "params": {"ttl": str(ttl_seconds)},
            },
        )
        return channel_from_json(channel_id, payload or {})

    def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        self._request(
            access_token,
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
