from typing import Optional
from sqlmodel import select
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy.exc import IntegrityError
import logging

from .db import async_session
from .models import UserPreferences, NOTIFICATION_METHODS
from .utils import now_utc

logger = logging.getLogger(__name__)

DELIVERY_STATUSES = ('ok', 'no_devices', 'failed', 'degraded')


async def get_preferences(user_id: int) -> UserPreferences:
    """Return the stored preferences, or unsaved push-only defaults."""
    async with async_session() as sess:
        q = await sess.exec(select(UserPreferences).where(UserPreferences.user_id == user_id))
        prefs = q.first()
    if prefs is None:
        prefs = UserPreferences(user_id=user_id, notification_method='push')
    if prefs.notification_method not in NOTIFICATION_METHODS:
        logger.warning('user %s has unknown notification method %r; using push', user_id, prefs.notification_method)
        prefs.notification_method = 'push'
    return prefs


async def set_preferences(user_id: int, notification_method: Optional[str] = None,
                          phone_number: Optional[str] = None, email: Optional[str] = None) -> UserPreferences:
    if notification_method is not None and notification_method not in NOTIFICATION_METHODS:
        raise ValueError(f'unknown notification method: {notification_method}')
    async with async_session() as sess:
        q = await sess.exec(select(UserPreferences).where(UserPreferences.user_id == user_id))
        prefs = q.first()
        if prefs is None:
            prefs = UserPreferences(user_id=user_id)
        if notification_method is not None:
            prefs.notification_method = notification_method
        if phone_number is not None:
            prefs.phone_number = phone_number or None
        if email is not None:
            prefs.email = email or None
        sess.add(prefs)
        await sess.commit()
        await sess.refresh(prefs)
        return prefs


async def record_delivery_status(user_id: int, status: str) -> None:
    if status not in DELIVERY_STATUSES:
        raise ValueError(f'unknown delivery status: {status}')
    stmt = (
        sqlalchemy_update(UserPreferences)
        .where(UserPreferences.user_id == user_id)
        .values(delivery_status=status, delivery_status_at=now_utc())
    )
    async with async_session() as sess:
        res = await sess.exec(stmt)
        if res.rowcount:
            await sess.commit()
            return
        sess.add(UserPreferences(user_id=user_id, delivery_status=status, delivery_status_at=now_utc()))
        try:
            await sess.commit()
        except IntegrityError:
            # another pass created the row first
            await sess.rollback()
            await sess.exec(stmt)
            await sess.commit()
