# backend/services/note_service.py
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlmodel import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InternalError, NotFoundError, ValidationError
from models import Note, NoteRead, User, utcnow
from services.calendar_service import CalendarSyncEngine, SyncOutcome, as_utc

logger = logging.getLogger(__name__)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    return None if value is None else as_utc(value).replace(tzinfo=None)


async def _commit(session: AsyncSession, action: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Note %s failed", action)
        raise InternalError(f"Something went wrong while {action} the note")


async def create_note(session: AsyncSession, engine: CalendarSyncEngine, user: User, title: str, content: str,
                      is_public: bool = False, start_time: Optional[datetime] = None,
                      end_time: Optional[datetime] = None) -> Tuple[NoteRead, SyncOutcome]:
    if not title or not title.strip() or not content or not content.strip():
        raise ValidationError("Title and content are required")
    start_time, end_time = _to_naive_utc(start_time), _to_naive_utc(end_time)
    if start_time and end_time and end_time < start_time:
        raise ValidationError("End time must not be before start time")

    note = Note(user_id=user.id, title=title, content=content, is_public=is_public,
                start_time=start_time, end_time=end_time)
    session.add(note)
    await _commit(session, "creating")
    await session.refresh(note)
    # The sync attempt works on a detached copy; a rollback inside it would expire the instance.
    created = NoteRead.model_validate(note)

    outcome = await engine.on_note_created(created)
    logger.info("Note %s created (calendar: %s)", created.id, outcome.status.value)
    return created, outcome


async def list_own_notes(session: AsyncSession, user: User) -> List[Note]:
    result = await session.execute(
        select(Note).where(Note.user_id == user.id).order_by(Note.updated_at.desc(), Note.id.desc())
    )
    return list(result.scalars().all())


async def list_public_notes(session: AsyncSession) -> List[Note]:
    result = await session.execute(
        select(Note).where(Note.is_public == True).order_by(Note.updated_at.desc(), Note.id.desc())  # noqa: E712
    )
    return list(result.scalars().all())


async def get_note(session: AsyncSession, user: User, note_id: int) -> Note:
    result = await session.execute(select(Note).where(Note.id == note_id, Note.user_id == user.id))
    note = result.scalar_one_or_none()
    if note is None:
        raise NotFoundError("Note not found")
    return note


async def update_note(session: AsyncSession, user: User, note_id: int, title: Optional[str] = None,
                      content: Optional[str] = None, is_public: Optional[bool] = None) -> Note:
    note = await get_note(session, user, note_id)
    if title is not None:
        if not title.strip():
            raise ValidationError("Title cannot be empty")
        note.title = title
    if content is not None:
        if not content.strip():
            raise ValidationError("Content cannot be empty")
        note.content = content
    if is_public is not None:
        note.is_public = is_public
    note.updated_at = utcnow()
    session.add(note)
    await _commit(session, "updating")
    await session.refresh(note)
    return note


async def delete_note(session: AsyncSession, engine: CalendarSyncEngine, user: User, note_id: int) -> SyncOutcome:
    note = await get_note(session, user, note_id)
    deleted = NoteRead.model_validate(note)
    await session.delete(note)
    await _commit(session, "deleting")

    outcome = await engine.on_note_deleted(deleted)
    logger.info("Note %s deleted (calendar: %s)", note_id, outcome.status.value)
    return outcome
