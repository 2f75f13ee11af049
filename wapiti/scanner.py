from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from sqlmodel import select
import logging

from .db import async_session
from .models import Task
from .utils import now_utc, as_utc
from . import config

logger = logging.getLogger(__name__)


@dataclass
class DueReminders:
    fresh: list[Task] = field(default_factory=list)
    stale: list[Task] = field(default_factory=list)

    def __len__(self):
        return len(self.fresh) + len(self.stale)


class ReminderScanner:
    """Finds task reminders that are due and not yet acknowledged.

    A reminder is due when it is not completed, not acknowledged and its
    reminder_time is at most ``future_window`` ahead of now. Due reminders
    older than ``stale_ceiling`` are reported separately as stale: they are
    never pushed, only acknowledged.
    """

    def __init__(self, future_window: Optional[timedelta] = None, stale_ceiling: Optional[timedelta] = None):
        self.future_window = future_window if future_window is not None else timedelta(minutes=config.REMINDER_FUTURE_WINDOW_MINUTES)
        self.stale_ceiling = stale_ceiling if stale_ceiling is not None else timedelta(minutes=config.REMINDER_STALE_CEILING_MINUTES)

    def _due_query(self, now: datetime, principal: Optional[int]):
        q = (
            select(Task)
            .where(Task.completed == False)  # noqa: E712
            .where(Task.reminder_sent == False)  # noqa: E712
            .where(Task.reminder_time != None)  # noqa: E711
            .where(Task.reminder_time <= now + self.future_window)
        )
        if principal is not None:
            q = q.where(Task.owner_id == principal)
        return q.order_by(Task.reminder_time, Task.id)

    async def scan(self, principal: Optional[int] = None, now: Optional[datetime] = None) -> DueReminders:
        now = as_utc(now) or now_utc()
        async with async_session() as sess:
            res = await sess.exec(self._due_query(now, principal))
            tasks = list(res.all())
        due = DueReminders()
        cutoff = now - self.stale_ceiling
        for t in tasks:
            if as_utc(t.reminder_time) < cutoff:
                due.stale.append(t)
            else:
                due.fresh.append(t)
        if tasks:
            logger.info('scan found %d fresh and %d stale reminders (principal=%s)', len(due.fresh), len(due.stale), principal)
        return due

    async def upcoming(self, principal: int, now: Optional[datetime] = None,
                       horizon: Optional[timedelta] = None) -> list[Task]:
        """Unacknowledged reminders in [now - stale_ceiling, now + horizon]."""
        now = as_utc(now) or now_utc()
        if horizon is None:
            horizon = timedelta(hours=config.UPCOMING_HORIZON_HOURS)
        async with async_session() as sess:
            res = await sess.exec(
                select(Task)
                .where(Task.owner_id == principal)
                .where(Task.completed == False)  # noqa: E712
                .where(Task.reminder_sent == False)  # noqa: E712
                .where(Task.reminder_time != None)  # noqa: E711
                .where(Task.reminder_time >= now - self.stale_ceiling)
                .where(Task.reminder_time <= now + horizon)
                .order_by(Task.reminder_time, Task.id)
            )
            return list(res.all())

    async def pending(self, limit: int = 10, now: Optional[datetime] = None) -> list[Task]:
        now = as_utc(now) or now_utc()
        async with async_session() as sess:
            res = await sess.exec(self._due_query(now, None).limit(limit))
            return list(res.all())
