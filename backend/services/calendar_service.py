# backend/services/calendar_service.py
"""Best-effort mirroring of notes onto the user's Google Calendar.

No remote event id is stored on the note. Deletion finds the event again by
title and start time, so a same-titled event starting within the tolerance
can be removed in its place, and an edited remote event can be left behind.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from config import CalendarSyncConfig
from models import NoteRead
from services.token_store import OAuthTokenStore

logger = logging.getLogger(__name__)


class SyncStatus(str, enum.Enum):
    SYNCED = "synced"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncOutcome:
    status: SyncStatus
    reason: str = ""

    @property
    def skipped(self) -> bool:
        """True when the remote calendar was left untouched, for whatever reason."""
        return self.status in (SyncStatus.SKIPPED, SyncStatus.FAILED)


def build_calendar_service(credentials: Credentials):
    """Builds and returns an authenticated Google Calendar API service object."""
    return build('calendar', 'v3', credentials=credentials, static_discovery=False)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_rfc3339(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


def parse_event_start(event: dict) -> Optional[datetime]:
    start = event.get("start") or {}
    raw = start.get("dateTime") or start.get("date")
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


class CalendarSyncEngine:
    def __init__(self, token_store: OAuthTokenStore, config: CalendarSyncConfig,
                 service_factory: Callable = build_calendar_service):
        self.token_store = token_store
        self.config = config
        self.service_factory = service_factory

    def build_event(self, note: NoteRead) -> dict:
        return {
            'summary': note.title,
            'description': note.content,
            'start': {'dateTime': to_rfc3339(note.start_time), 'timeZone': self.config.timezone},
            'end': {'dateTime': to_rfc3339(note.end_time), 'timeZone': self.config.timezone},
        }

    async def _run(self, fn, *args):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.config.timeout_seconds)

    async def _service_for(self, user_id: int):
        creds = await self.token_store.get_valid_credential(user_id)
        if creds is None:
            return None
        return await self._run(self.service_factory, creds)

    def _skip(self, note: NoteRead, reason: str) -> SyncOutcome:
        logger.info("Calendar sync skipped for note %s: %s", note.id, reason)
        return SyncOutcome(SyncStatus.SKIPPED, reason)

    def _fail(self, note: NoteRead, action: str, error: BaseException) -> SyncOutcome:
        if isinstance(error, asyncio.TimeoutError):
            reason = f"{action} timed out"
        else:
            reason = f"{action} failed: {type(error).__name__}"
        logger.warning("Calendar sync failed for note %s: %s (%s)", note.id, reason, error)
        return SyncOutcome(SyncStatus.FAILED, reason)

    async def on_note_created(self, note: NoteRead) -> SyncOutcome:
        if note.start_time is None or note.end_time is None:
            return self._skip(note, "note has no start and end time")
        try:
            service = await self._service_for(note.user_id)
            if service is None:
                return self._skip(note, "no valid Google credential")
            request = service.events().insert(calendarId=self.config.calendar_id, body=self.build_event(note))
            created = await self._run(request.execute)
        except Exception as e:
            return self._fail(note, "event insert", e)
        logger.info("Calendar event %s created for note %s", created.get('id'), note.id)
        return SyncOutcome(SyncStatus.SYNCED)

    def find_matching_event(self, note: NoteRead, events: list) -> Optional[dict]:
        anchor = as_utc(note.start_time)
        best, best_delta = None, None
        for event in events:
            if event.get("summary") != note.title:
                continue
            start = parse_event_start(event)
            if start is None:
                continue
            delta = abs(start - anchor)
            if delta < self.config.match_tolerance and (best_delta is None or delta < best_delta):
                best, best_delta = event, delta
        return best

    async def on_note_deleted(self, note: NoteRead) -> SyncOutcome:
        if note.start_time is None:
            return self._skip(note, "note has no start time")
        try:
            service = await self._service_for(note.user_id)
            if service is None:
                return self._skip(note, "no valid Google credential")
            start = note.start_time
            request = service.events().list(
                calendarId=self.config.calendar_id,
                q=note.title,
                timeMin=to_rfc3339(start - self.config.match_tolerance),
                timeMax=to_rfc3339(start + self.config.search_window),
                maxResults=self.config.max_candidates,
                singleEvents=True,
            )
            found = await self._run(request.execute)
        except Exception as e:
            return self._fail(note, "event lookup", e)

        event = self.find_matching_event(note, found.get('items', []))
        if event is None:
            return self._skip(note, "no matching calendar event")
        try:
            request = service.events().delete(calendarId=self.config.calendar_id, eventId=event['id'])
            await self._run(request.execute)
        except Exception as e:
            return self._fail(note, "event delete", e)
        logger.info("Calendar event %s deleted for note %s", event['id'], note.id)
        return SyncOutcome(SyncStatus.DELETED)
