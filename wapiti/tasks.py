"""Task store operations used by the reminder subsystem.

All writes are single conditional UPDATE statements so concurrent scanner
passes, action callbacks and the CRUD application can race safely.
"""
from datetime import timedelta
from typing import Optional
from sqlalchemy import update as sqlalchemy_update
import logging

from .db import async_session
from .models import Task
from .utils import now_utc, isoformat_or_none, as_utc
from . import config

logger = logging.getLogger(__name__)


async def acknowledge_reminder(task_id: int) -> bool:
    """Flip reminder_sent false -> true. Returns True only for the winning writer."""
    async with async_session() as sess:
        res = await sess.exec(
            sqlalchemy_update(Task)
            .where(Task.id == task_id)
            .where(Task.reminder_sent == False)  # noqa: E712
            .where(Task.completed == False)  # noqa: E712
            .values(reminder_sent=True, modified_at=now_utc())
        )
        await sess.commit()
        return (res.rowcount or 0) == 1


async def complete_task(owner_id: int, task_id: int) -> bool:
    async with async_session() as sess:
        res = await sess.exec(
            sqlalchemy_update(Task)
            .where(Task.id == task_id)
            .where(Task.owner_id == owner_id)
            .values(completed=True, modified_at=now_utc())
        )
        await sess.commit()
        return (res.rowcount or 0) == 1


async def snooze_task(owner_id: int, task_id: int, minutes: Optional[int] = None) -> Optional[Task]:
    """Move reminder_time to now + minutes and re-arm the reminder."""
    if minutes is None:
        minutes = config.DEFAULT_SNOOZE_MINUTES
    if minutes <= config.REMINDER_FUTURE_WINDOW_MINUTES:
        # a shorter snooze would already fall inside the scanner's due window
        raise ValueError(f'snooze minutes must be greater than {config.REMINDER_FUTURE_WINDOW_MINUTES}')
    new_time = now_utc() + timedelta(minutes=minutes)
    async with async_session() as sess:
        res = await sess.exec(
            sqlalchemy_update(Task)
            .where(Task.id == task_id)
            .where(Task.owner_id == owner_id)
            .where(Task.completed == False)  # noqa: E712
            .values(reminder_time=new_time, reminder_sent=False, modified_at=now_utc())
        )
        await sess.commit()
        if not res.rowcount:
            return None
        task = await sess.get(Task, task_id)
    logger.info('snoozed task %s for %d minutes', task_id, minutes)
    return task


async def task_exists(task_id: int) -> bool:
    async with async_session() as sess:
        return (await sess.get(Task, task_id)) is not None


def serialize_reminder(task: Task) -> dict:
    return {
        'taskId': task.id,
        'text': task.text,
        'reminderTime': isoformat_or_none(task.reminder_time),
        'reminderSent': bool(task.reminder_sent),
        'completed': bool(task.completed),
        'ownerId': task.owner_id,
    }


def reminder_age_minutes(task: Task, now=None) -> Optional[float]:
    rt = as_utc(task.reminder_time)
    if rt is None:
        return None
    return ((now or now_utc()) - rt).total_seconds() / 60.0
