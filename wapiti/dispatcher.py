"""Notification dispatcher: one dispatch pass over the due-reminder set.

For each due reminder the owner's channel preference is resolved, the
reminder is delivered (for push: to every registration of the owner,
concurrently) and the reminder is acknowledged iff at least one delivery
succeeded. Acknowledgment is a single conditional UPDATE, so racing passes
in other processes cannot both count the same reminder. Registrations the
push service reports as gone are deleted; successful ones get last_used_at.

Stale reminders (older than the scanner's ceiling) are not delivered. They
are acknowledged anyway and logged as degraded delivery so they stop being
retried.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Optional

from .delivery import DeliveryAdapter, DeliveryResult, NotificationPayload, build_reminder_payload, default_adapters
from .models import DeviceRegistration, Task, UserPreferences
from .preferences import get_preferences, record_delivery_status
from .registrations import list_registrations, delete_registration, touch_last_used
from .scanner import ReminderScanner
from .tasks import acknowledge_reminder, task_exists, reminder_age_minutes
from .utils import endpoint_host

logger = logging.getLogger(__name__)

NO_SUBSCRIPTIONS = 'No push subscriptions found'
NO_DEVICE_DELIVERED = 'Failed to deliver to any device'
DRY_RUN = 'dry run'
STALE = 'Reminder is stale; acknowledged without delivery'


def _group_by_owner(tasks: list[Task]) -> 'OrderedDict[int, list[Task]]':
    grouped: 'OrderedDict[int, list[Task]]' = OrderedDict()
    for t in tasks:
        grouped.setdefault(t.owner_id, []).append(t)
    return grouped


class NotificationDispatcher:

    def __init__(self, scanner: Optional[ReminderScanner] = None,
                 adapters: Optional[dict[str, DeliveryAdapter]] = None):
        self.scanner = scanner or ReminderScanner()
        self.adapters = adapters if adapters is not None else default_adapters()
        self._lock = asyncio.Lock()

    async def run_scan_once(self, principal: Optional[int] = None, test: bool = False) -> dict:
        """Scan and dispatch once. ``principal`` limits the pass to one owner.

        With ``test`` set nothing is delivered or written; the due set is
        reported with error 'dry run'.
        """
        async with self._lock:
            due = await self.scanner.scan(principal)
            notifications: list[dict] = []
            processed = 0
            owners = _group_by_owner(due.fresh + due.stale)
            stale_ids = {t.id for t in due.stale}
            for owner_id, tasks in owners.items():
                prefs = await get_preferences(owner_id)
                if test:
                    for t in tasks:
                        entry = {
                            'taskId': t.id,
                            'method': prefs.notification_method,
                            'result': {'success': False, 'error': DRY_RUN},
                            'acknowledged': False,
                        }
                        if t.id in stale_ids:
                            entry['stale'] = True
                        notifications.append(entry)
                    continue
                entries = await self._dispatch_owner(owner_id, prefs, tasks, stale_ids)
                processed += sum(1 for e in entries if e['acknowledged'] and not e.get('stale'))
                notifications.extend(entries)
            if notifications:
                logger.info('dispatch pass: %d due, %d processed%s', len(notifications), processed, ' (dry run)' if test else '')
            return {'processedCount': processed, 'notifications': notifications}

    async def _dispatch_owner(self, owner_id: int, prefs: UserPreferences,
                              tasks: list[Task], stale_ids: set) -> list[dict]:
        registrations: Optional[list[DeviceRegistration]] = None
        entries = []
        for task in tasks:
            if task.id in stale_ids:
                entries.append(await self._acknowledge_stale(task))
                continue
            if registrations is None:
                registrations = await list_registrations(owner_id)
            entries.append(await self._dispatch_task(task, prefs, registrations))
        await record_delivery_status(owner_id, self._owner_status(entries))
        return entries

    @staticmethod
    def _owner_status(entries: list[dict]) -> str:
        fresh = [e for e in entries if not e.get('stale')]
        if not fresh:
            return 'degraded'
        if any(e['result'].get('success') for e in fresh):
            return 'ok'
        if any(e['result'].get('error') == NO_SUBSCRIPTIONS for e in fresh):
            return 'no_devices'
        return 'failed'

    async def _dispatch_task(self, task: Task, prefs: UserPreferences,
                             registrations: list[DeviceRegistration]) -> dict:
        payload = build_reminder_payload(task)
        method = prefs.notification_method
        result: dict
        if method == 'sms' and prefs.phone_number:
            result = (await self.adapters['sms'].deliver(prefs.phone_number, payload)).to_dict()
        elif method == 'email' and prefs.email:
            result = (await self.adapters['email'].deliver(prefs.email, payload)).to_dict()
        elif method == 'push_sms':
            result = await self._push_fanout(task, payload, registrations)
            if not result['success'] and prefs.phone_number:
                logger.info('push failed for task %s; falling back to sms', task.id)
                sms = await self.adapters['sms'].deliver(prefs.phone_number, payload)
                result = sms.to_dict()
                result['fallbackFrom'] = 'push'
        else:
            if method in ('sms', 'email'):
                logger.info('user %s prefers %s but has no contact address; using push', task.owner_id, method)
                method = 'push'
            result = await self._push_fanout(task, payload, registrations)

        acknowledged = False
        if result['success']:
            acknowledged = await acknowledge_reminder(task.id)
            if not acknowledged:
                if await task_exists(task.id):
                    logger.info('task %s was acknowledged by a concurrent pass', task.id)
                else:
                    logger.info('task %s was deleted during delivery; result discarded', task.id)
                    result = {'success': False, 'error': 'Task no longer exists'}
        return {'taskId': task.id, 'method': method, 'result': result, 'acknowledged': acknowledged}

    async def _push_fanout(self, task: Task, payload: NotificationPayload,
                           registrations: list[DeviceRegistration]) -> dict:
        if not registrations:
            logger.info('task %s: user %s has no registered devices', task.id, task.owner_id)
            return {'success': False, 'error': NO_SUBSCRIPTIONS, 'devicesNotified': 0, 'devicesTotal': 0}
        adapter = self.adapters['push']
        targets = list(registrations)
        outcomes = await asyncio.gather(
            *(adapter.deliver(reg, payload) for reg in targets),
            return_exceptions=True,
        )
        delivered = 0
        for reg, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error('adapter raised for registration %s: %s', reg.id, type(outcome).__name__)
                outcome = DeliveryResult.transient('Adapter error')
            if outcome.success:
                delivered += 1
                await touch_last_used(reg.id)
            elif outcome.permanent:
                await delete_registration(reg.owner_id, reg.id, reg.endpoint)
                registrations.remove(reg)
                logger.info('removed dead registration %s (%s)', reg.id, endpoint_host(reg.endpoint))
        result = {'success': delivered > 0, 'devicesNotified': delivered, 'devicesTotal': len(targets)}
        if not delivered:
            result['error'] = NO_DEVICE_DELIVERED
        return result

    async def _acknowledge_stale(self, task: Task) -> dict:
        acknowledged = await acknowledge_reminder(task.id)
        age = reminder_age_minutes(task)
        logger.warning('degraded delivery: task %s reminder is %.0f minutes old; acknowledged without delivery',
                       task.id, age or 0.0)
        return {
            'taskId': task.id,
            'method': 'none',
            'result': {'success': False, 'error': STALE},
            'acknowledged': acknowledged,
            'stale': True,
        }
