from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Callable, Protocol
from urllib.parse import quote, urlencode

import requests

from plansync.models import CalendarEvent, EventOrigin, GoogleConfig, day_window
from plansync.task_line import linked_task_id_from_description, source_path_from_description

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
OOB_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"
OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
)
TOKEN_EXPIRY_MARGIN_SECONDS = 60
UNTITLED_EVENT = "Untitled Event"


class GatewayError(Exception):
    pass


class AuthError(GatewayError):
    """No usable credential; the caller must stop issuing remote calls."""


class RemoteError(GatewayError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(RemoteError):
    pass


class EventGateway(Protocol):
    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]: ...

    def create_event(self, calendar_id: str, event: CalendarEvent) -> str: ...

    def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> None: ...

    def delete_event(self, calendar_id: str, event_id: str) -> None: ...


def configured_calendar_ids(config: GoogleConfig) -> list[str]:
    calendar_ids = []
    if config.calendar_id:
        calendar_ids.append(config.calendar_id)
    if config.enable_work_calendar and config.work_calendar_id and config.work_calendar_id not in calendar_ids:
        calendar_ids.append(config.work_calendar_id)
    return calendar_ids


def fetch_events_for_day(gateway: EventGateway, calendar_id: str, day: date, tz: Any) -> list[CalendarEvent]:
    start, end = day_window(day, tz)
    return gateway.fetch_events(calendar_id, start, end)


def _error_message(response: Any, default: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        text = str(getattr(response, "text", "") or "").strip()
        return text[:300] or default
    if not isinstance(payload, dict):
        return default
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or default)
    if error:
        return str(payload.get("error_description") or error)
    return default


def event_from_google(calendar_id: str, item: dict[str, Any]) -> CalendarEvent:
    start = item.get("start") or {}
    end = item.get("end") or {}
    description = str(item.get("description") or "")
    return CalendarEvent(
        id=str(item.get("id", "")),
        title=str(item.get("summary") or UNTITLED_EVENT),
        start=str(start.get("dateTime") or start.get("date") or ""),
        end=str(end.get("dateTime") or end.get("date") or ""),
        description=description,
        linked_task_id=linked_task_id_from_description(description),
        origin=EventOrigin.REMOTE_ONLY,
        calendar_id=calendar_id,
        source_path=source_path_from_description(description),
    )


def event_to_google(event: CalendarEvent, timezone_name: str) -> dict[str, Any]:
    if event.all_day:
        start: dict[str, str] = {"date": event.start}
        end: dict[str, str] = {"date": event.end}
    else:
        start = {"dateTime": event.start, "timeZone": timezone_name}
        end = {"dateTime": event.end, "timeZone": timezone_name}
    return {
        "summary": event.title,
        "description": event.description,
        "start": start,
        "end": end,
    }


class GoogleCredentialProvider:
    """Hands out bearer tokens, refreshing and persisting them through the config file."""

    def __init__(self, config_manager: Any, clock: Callable[[], float] = time.time) -> None:
        self.config_manager = config_manager
        self.clock = clock

    def _google(self) -> GoogleConfig:
        return self.config_manager.load().google

    def _store(self, **values: Any) -> None:
        self.config_manager.update({"google": values})

    def get_valid_credential(self) -> str:
        config = self._google()
        now = self.clock()
        if config.access_token and config.token_expiry > now + TOKEN_EXPIRY_MARGIN_SECONDS:
            return config.access_token
        if not config.refresh_token:
            if config.access_token or config.token_expiry:
                self._store(access_token="", token_expiry=0)
            raise AuthError("No refresh token. Connect to Google Calendar again.")

        logger.info("Refreshing Google access token")
        payload = self._token_request(
            {
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "refresh_token": config.refresh_token,
                "grant_type": "refresh_token",
            }
        )
        if "error" in payload:
            updates: dict[str, Any] = {"access_token": "", "token_expiry": 0}
            if payload.get("error") == "invalid_grant":
                logger.warning("Refresh token rejected; clearing it")
                updates["refresh_token"] = ""
            self._store(**updates)
            raise AuthError(str(payload.get("error_description") or payload.get("error") or "Token refresh failed."))

        access_token = str(payload.get("access_token", ""))
        self._store(access_token=access_token, token_expiry=now + float(payload.get("expires_in", 0) or 0))
        return access_token

    def authorization_url(self) -> str:
        config = self._google()
        if not config.client_id or not config.client_secret:
            raise AuthError("Google client_id and client_secret are required.")
        query = urlencode(
            {
                "client_id": config.client_id,
                "redirect_uri": OOB_REDIRECT_URI,
                "response_type": "code",
                "scope": " ".join(OAUTH_SCOPES),
                "access_type": "offline",
                "prompt": "consent",
            }
        )
        return f"{GOOGLE_AUTH_URL}?{query}"

    def exchange_code(self, code: str) -> None:
        config = self._google()
        if not config.client_id or not config.client_secret:
            raise AuthError("Google client_id and client_secret are required.")
        payload = self._token_request(
            {
                "code": code.strip(),
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "redirect_uri": OOB_REDIRECT_URI,
                "grant_type": "authorization_code",
            }
        )
        if "error" in payload:
            raise AuthError(str(payload.get("error_description") or payload.get("error")))
        updates: dict[str, Any] = {
            "access_token": str(payload.get("access_token", "")),
            "token_expiry": self.clock() + float(payload.get("expires_in", 0) or 0),
        }
        if payload.get("refresh_token"):
            updates["refresh_token"] = str(payload["refresh_token"])
        self._store(**updates)

    def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        try:
            response = requests.post(
                GOOGLE_TOKEN_URL,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._google().timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteError(f"{type(exc).__name__}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if not response.ok and "error" not in payload:
            payload["error"] = f"HTTP {response.status_code}"
        return payload


class GoogleCalendarService:
    def __init__(
        self,
        config: GoogleConfig,
        credentials: GoogleCredentialProvider | None = None,
        timezone_name: str = "UTC",
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.timezone_name = timezone_name

    def _auth_headers(self) -> dict[str, str]:
        if self.credentials is None:
            raise AuthError("Google Calendar is not connected.")
        return {"Authorization": f"Bearer {self.credentials.get_valid_credential()}"}

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{CALENDAR_API_BASE}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                params=params,
                json=body,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteError(f"{type(exc).__name__}: {exc}") from exc
        status = response.status_code
        if status == 401:
            raise AuthError(_error_message(response, "Google rejected the access token."))
        if status in {404, 410}:
            raise NotFoundError(_error_message(response, "Event not found."), status)
        if not response.ok:
            raise RemoteError(_error_message(response, f"Google Calendar API error (HTTP {status})."), status)
        if status == 204 or not response.content:
            return {}
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        params = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        try:
            headers = self._auth_headers()
        except AuthError:
            if not self.config.api_key:
                raise
            logger.warning("OAuth credential unavailable; reading %s with the API key", calendar_id)
            headers = {}
            params["key"] = self.config.api_key

        items: list[dict[str, Any]] = []
        while True:
            payload = self._request("GET", self._events_url(calendar_id), headers=headers, params=dict(params))
            items.extend(payload.get("items") or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = str(page_token)

        events: list[CalendarEvent] = []
        for item in items:
            if not item.get("id") or item.get("status") == "cancelled":
                continue
            events.append(event_from_google(calendar_id, item))
        return events

    def create_event(self, calendar_id: str, event: CalendarEvent) -> str:
        payload = self._request(
            "POST",
            self._events_url(calendar_id),
            headers=self._auth_headers(),
            body=event_to_google(event, self.timezone_name),
        )
        event_id = str(payload.get("id", "")).strip()
        if not event_id:
            raise RemoteError("Google Calendar did not return an event id.")
        return event_id

    def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        self._request(
            "PUT",
            self._events_url(calendar_id, event_id),
            headers=self._auth_headers(),
            body=event_to_google(event, self.timezone_name),
        )

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        try:
            self._request("DELETE", self._events_url(calendar_id, event_id), headers=self._auth_headers())
        except NotFoundError:
            logger.info("Event %s already gone from %s", event_id, calendar_id)
