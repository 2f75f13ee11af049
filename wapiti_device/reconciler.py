"""Subscription reconciler.

Keeps this device's live push subscription represented by exactly one
registration row on the server. Every list, delete and insert it issues is
scoped to the device's own live endpoint; rows of other endpoints are
never touched, whatever their device label says. wipe_all() is the one
explicit exception.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from wapiti.schedule import IntervalPolicy, PeriodicRunner, retry_with_backoff
from wapiti.utils import endpoint_host, make_device_label

from .client import ApiClient, Principal, RegistrationConflict
from .local_store import LocalStore
from .platform import PlatformError, PushPlatform, PushSubscriptionHandle

logger = logging.getLogger(__name__)

REGISTERED = 'registered'
UNAVAILABLE = 'unavailable'
UNREGISTERED = 'unregistered'


class SubscriptionUnavailable(Exception):
    """Subscription creation failed after every retry."""


@dataclass
class ReconcileResult:
    status: str
    endpoint: Optional[str] = None
    registration_id: Optional[int] = None
    writes: int = 0


class SubscriptionReconciler:

    def __init__(self, api: ApiClient, platform: PushPlatform, store: LocalStore,
                 user_agent: str = '',
                 subscribe_attempts: int = 4,
                 subscribe_base_delay: float = 1.0,
                 health_interval_stable: float = 15 * 60,
                 health_interval_after_failure: float = 60,
                 on_status: Optional[Callable[[str], None]] = None,
                 sleep=asyncio.sleep):
        self.api = api
        self.platform = platform
        self.store = store
        self.user_agent = user_agent
        self.subscribe_attempts = subscribe_attempts
        self.subscribe_base_delay = subscribe_base_delay
        self.health_policy = IntervalPolicy(
            base=health_interval_stable,
            failure_base=health_interval_after_failure,
            max_interval=health_interval_stable,
        )
        self.on_status = on_status
        self._sleep = sleep
        self._server_key: Optional[str] = None
        self._runner: Optional[PeriodicRunner] = None
        self.status: Optional[str] = store.registration_status

    # -- status ---------------------------------------------------------

    def _set_status(self, status: str, endpoint: Optional[str] = None) -> None:
        changed = status != self.status
        self.status = status
        self.store.registration_status = status
        if endpoint is not None:
            self.store.set_state('endpoint', endpoint)
        if changed:
            logger.info('registration status: %s', status)
            if self.on_status:
                self.on_status(status)

    # -- platform -------------------------------------------------------

    async def _application_server_key(self) -> str:
        if self._server_key is None:
            self._server_key = await self.api.vapid_public_key()
        return self._server_key

    async def _subscribe(self) -> PushSubscriptionHandle:
        key = await self._application_server_key()
        try:
            return await retry_with_backoff(
                lambda: self.platform.subscribe(key),
                attempts=self.subscribe_attempts,
                base_delay=self.subscribe_base_delay,
                retry_on=(PlatformError, OSError),
                sleep=self._sleep,
                label='push subscribe',
            )
        except (PlatformError, OSError) as e:
            logger.error('push subscription unavailable after %d attempts: %s', self.subscribe_attempts, e)
            self._set_status(UNAVAILABLE)
            raise SubscriptionUnavailable(str(e)) from e

    # -- reconciliation -------------------------------------------------

    async def _delete_rows(self, rows: list, endpoint: str) -> int:
        deleted = 0
        for row in rows:
            # the endpoint filter is repeated server-side: id alone never deletes
            if row.get('endpoint') != endpoint:
                continue
            if await self.api.delete_registration(row['id'], endpoint):
                deleted += 1
        return deleted

    async def _insert(self, handle: PushSubscriptionHandle) -> tuple[Optional[int], int]:
        """Insert a row for handle. Returns (registration id, writes)."""
        label = make_device_label(self.user_agent)
        try:
            row = await self.api.create_registration(
                handle.endpoint, handle.p256dh, handle.auth, device_label=label, user_agent=self.user_agent or None,
            )
            return row['id'], 1
        except RegistrationConflict:
            # another process inserted first; converge on whatever is there now
            rows = await self.api.list_registrations(endpoint=handle.endpoint)
            for row in rows:
                if handle.keys_match(row['keys']['p256dh'], row['keys']['auth']):
                    return row['id'], 0
            writes = await self._delete_rows(rows, handle.endpoint)
            row = await self.api.create_registration(
                handle.endpoint, handle.p256dh, handle.auth, device_label=label, user_agent=self.user_agent or None,
            )
            return row['id'], writes + 1

    async def ensure_registered(self, principal: Optional[Principal] = None) -> ReconcileResult:
        """Make this device's live subscription map to exactly one row.

        Running it again with no platform change issues no writes.
        """
        writes = 0
        handle = await self.platform.get_subscription()
        if handle is None:
            handle = await self._subscribe()
        elif not handle.is_valid:
            logger.info('platform reports subscription invalid (%s); replacing it', endpoint_host(handle.endpoint))
            stale_rows = await self.api.list_registrations(endpoint=handle.endpoint)
            writes += await self._delete_rows(stale_rows, handle.endpoint)
            await self.platform.unsubscribe()
            handle = await self._subscribe()

        rows = await self.api.list_registrations(endpoint=handle.endpoint)
        matching = [r for r in rows if handle.keys_match(r['keys']['p256dh'], r['keys']['auth'])]
        registration_id: Optional[int] = None
        if len(rows) == 1 and matching:
            registration_id = matching[0]['id']
        elif matching:
            keep = matching[0]
            registration_id = keep['id']
            extra = [r for r in rows if r['id'] != keep['id']]
            writes += await self._delete_rows(extra, handle.endpoint)
            logger.warning('collapsed %d duplicate rows for this device', len(extra))
        else:
            if rows:
                # platform rotated the keys; the stored row can no longer decrypt
                logger.info('credential keys changed for %s; replacing registration', endpoint_host(handle.endpoint))
                writes += await self._delete_rows(rows, handle.endpoint)
            registration_id, inserted = await self._insert(handle)
            writes += inserted

        self.store.set_state('registration_id', registration_id)
        self._set_status(REGISTERED, endpoint=handle.endpoint)
        if writes:
            logger.info('reconciled registration for %s with %d writes (principal=%s)',
                        endpoint_host(handle.endpoint), writes, principal.username if principal else '?')
        return ReconcileResult(REGISTERED, handle.endpoint, registration_id, writes)

    async def check_health(self, principal: Optional[Principal] = None) -> bool:
        """True when the registration was already healthy.

        Anything needing repair (or failing) returns False so the next check
        comes sooner.
        """
        try:
            handle = await self.platform.get_subscription()
            if handle is not None and handle.is_valid:
                rows = await self.api.list_registrations(endpoint=handle.endpoint)
                if len(rows) == 1 and handle.keys_match(rows[0]['keys']['p256dh'], rows[0]['keys']['auth']):
                    if self.status != REGISTERED:
                        self._set_status(REGISTERED, endpoint=handle.endpoint)
                    return True
            result = await self.ensure_registered(principal)
            return result.writes == 0
        except SubscriptionUnavailable:
            return False
        except (httpx.HTTPError, PlatformError) as e:
            logger.warning('registration health check failed: %s', type(e).__name__)
            return False

    async def wipe_all(self) -> int:
        """Remove every registration of the principal, on every device.

        The local snapshot and device state go too.
        """
        deleted = await self.api.wipe_registrations()
        self.store.clear_all()
        self._set_status(UNREGISTERED)
        return deleted

    # -- lifecycle ------------------------------------------------------

    def start(self, principal: Optional[Principal] = None) -> None:
        if self._runner is not None and self._runner.running:
            return
        self._runner = PeriodicRunner('device-health', lambda: self.check_health(principal), self.health_policy)
        self._runner.start()

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.stop()
            self._runner = None
