"""Device push-subscription capability.

The browser's PushManager is the real platform; FileSubscriptionPlatform
stands in for it on headless devices by reading a subscription exported
from a browser (``JSON.stringify(await reg.pushManager.getSubscription())``).
"""
import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class PlatformError(Exception):
    """The platform denied or could not create a push subscription."""


@dataclass
class PushSubscriptionHandle:
    endpoint: str
    p256dh: str
    auth: str
    expiration_time: Optional[float] = None
    is_valid: bool = True

    def keys_match(self, p256dh: Optional[str], auth: Optional[str]) -> bool:
        return self.p256dh == p256dh and self.auth == auth

    @classmethod
    def from_subscription_info(cls, info: dict) -> 'PushSubscriptionHandle':
        keys = info.get('keys') or {}
        if not info.get('endpoint') or not keys.get('p256dh') or not keys.get('auth'):
            raise PlatformError('subscription is missing endpoint or keys')
        return cls(
            endpoint=info['endpoint'],
            p256dh=keys['p256dh'],
            auth=keys['auth'],
            expiration_time=info.get('expirationTime'),
        )


class PushPlatform:
    """Abstract device capability: get, create and invalidate a subscription."""

    async def get_subscription(self) -> Optional[PushSubscriptionHandle]:
        raise NotImplementedError

    async def subscribe(self, application_server_key: str) -> PushSubscriptionHandle:
        raise NotImplementedError

    async def unsubscribe(self) -> None:
        raise NotImplementedError


class FileSubscriptionPlatform(PushPlatform):
    """Subscription exported from a browser, stored as JSON on disk.

    subscribe() cannot mint a new subscription; it re-reads the file, so a
    rotated subscription is picked up once the user exports it again.
    unsubscribe() renames the file aside so a stale subscription is not
    offered twice.
    """

    def __init__(self, path: str, clock=None):
        self.path = path
        self._clock = clock

    def _read(self) -> Optional[PushSubscriptionHandle]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, 'r') as f:
            try:
                info = json.load(f)
            except ValueError as e:
                raise PlatformError(f'unreadable subscription file: {e}')
        handle = PushSubscriptionHandle.from_subscription_info(info)
        if handle.expiration_time:
            now_ms = (self._clock() if self._clock else time.time()) * 1000
            handle.is_valid = handle.expiration_time > now_ms
        return handle

    async def get_subscription(self) -> Optional[PushSubscriptionHandle]:
        return await asyncio.to_thread(self._read)

    async def subscribe(self, application_server_key: str) -> PushSubscriptionHandle:
        handle = await self.get_subscription()
        if handle is None:
            raise PlatformError(f'no exported subscription at {self.path}')
        if not handle.is_valid:
            raise PlatformError('exported subscription has expired')
        return handle

    async def unsubscribe(self) -> None:
        if os.path.exists(self.path):
            os.replace(self.path, self.path + '.revoked')
            logger.info('moved stale subscription file aside')
