"""Device Registration Store operations.

Every destructive operation here is keyed by endpoint identity (and the
owner), never by device label. The (owner_id, endpoint) uniqueness rule is
a database constraint; insert_registration turns a violation into
DuplicateRegistration carrying the row that already exists.
"""
from typing import Optional
from datetime import datetime
from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy.exc import IntegrityError
import logging

from .db import async_session
from .models import DeviceRegistration
from .utils import now_utc, isoformat_or_none, endpoint_host, truncate_endpoint, make_device_label

logger = logging.getLogger(__name__)


class DuplicateRegistration(Exception):
    def __init__(self, existing: Optional[DeviceRegistration]):
        super().__init__('registration already exists for this endpoint')
        self.existing = existing


async def list_registrations(owner_id: int, endpoint: Optional[str] = None) -> list[DeviceRegistration]:
    async with async_session() as sess:
        q = select(DeviceRegistration).where(DeviceRegistration.owner_id == owner_id)
        if endpoint is not None:
            q = q.where(DeviceRegistration.endpoint == endpoint)
        res = await sess.exec(q.order_by(DeviceRegistration.id))
        return list(res.all())


async def insert_registration(owner_id: int, endpoint: str, p256dh: str, auth: str,
                              device_label: Optional[str] = None,
                              user_agent: Optional[str] = None) -> DeviceRegistration:
    if not endpoint or not p256dh or not auth:
        raise ValueError('endpoint and both credential keys are required')
    reg = DeviceRegistration(
        owner_id=owner_id,
        endpoint=endpoint,
        p256dh=p256dh,
        auth=auth,
        device_label=device_label or make_device_label(user_agent),
        user_agent=user_agent,
    )
    async with async_session() as sess:
        sess.add(reg)
        try:
            await sess.commit()
        except IntegrityError:
            await sess.rollback()
            q = await sess.exec(
                select(DeviceRegistration)
                .where(DeviceRegistration.owner_id == owner_id)
                .where(DeviceRegistration.endpoint == endpoint)
            )
            raise DuplicateRegistration(q.first())
        await sess.refresh(reg)
    logger.info('registered device %s for user %s (%s)', reg.id, owner_id, endpoint_host(endpoint))
    return reg


async def delete_registration(owner_id: int, registration_id: int, endpoint: str) -> bool:
    """Delete one row only when id, owner and endpoint all match."""
    async with async_session() as sess:
        res = await sess.exec(
            sqlalchemy_delete(DeviceRegistration)
            .where(DeviceRegistration.id == registration_id)
            .where(DeviceRegistration.owner_id == owner_id)
            .where(DeviceRegistration.endpoint == endpoint)
        )
        await sess.commit()
        deleted = res.rowcount or 0
    if deleted:
        logger.info('deleted registration %s for user %s (%s)', registration_id, owner_id, endpoint_host(endpoint))
    return bool(deleted)


async def delete_all_registrations(owner_id: int) -> int:
    async with async_session() as sess:
        res = await sess.exec(sqlalchemy_delete(DeviceRegistration).where(DeviceRegistration.owner_id == owner_id))
        await sess.commit()
        deleted = res.rowcount or 0
    logger.warning('wiped %d registrations for user %s', deleted, owner_id)
    return deleted


async def touch_last_used(registration_id: int, when: Optional[datetime] = None) -> None:
    async with async_session() as sess:
        await sess.exec(
            sqlalchemy_update(DeviceRegistration)
            .where(DeviceRegistration.id == registration_id)
            .values(last_used_at=when or now_utc())
        )
        await sess.commit()


def serialize_registration(reg: DeviceRegistration, include_keys: bool = True) -> dict:
    out = {
        'id': reg.id,
        'endpoint': reg.endpoint,
        'device_label': reg.device_label,
        'user_agent': reg.user_agent,
        'created_at': isoformat_or_none(reg.created_at),
        'last_used_at': isoformat_or_none(reg.last_used_at),
    }
    if include_keys:
        out['keys'] = {'p256dh': reg.p256dh, 'auth': reg.auth}
    return out


async def registration_summary(owner_id: int) -> dict:
    rows = await list_registrations(owner_id)
    counts: dict[str, int] = {}
    for r in rows:
        counts[r.endpoint] = counts.get(r.endpoint, 0) + 1
    return {
        'total': len(rows),
        'unique_endpoints': len(counts),
        'duplicate_endpoints': sum(1 for c in counts.values() if c > 1),
        'devices': [
            {
                'id': r.id,
                'endpoint': truncate_endpoint(r.endpoint),
                'device_label': r.device_label,
                'created_at': isoformat_or_none(r.created_at),
                'last_used_at': isoformat_or_none(r.last_used_at),
            }
            for r in rows
        ],
    }
