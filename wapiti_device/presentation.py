"""Presentation layer: turns a delivered push into a visible notification.

render() must work from the payload plus the local store alone, since the
platform may wake it without the agent running. When the payload is absent
or malformed it falls back to a due reminder from the stored upcoming
snapshot, and then to a generic message.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from wapiti.payload import NotificationPayload, generic_payload, reminder_payload

from .local_store import LocalStore

logger = logging.getLogger(__name__)

REMINDER_ACTIONS = [
    {'action': 'complete', 'title': 'Mark Complete'},
    {'action': 'snooze', 'title': 'Snooze 15 min'},
]
GENERIC_ACTIONS = [
    {'action': 'open', 'title': 'Open App'},
    {'action': 'dismiss', 'title': 'Dismiss'},
]

SOURCE_PAYLOAD = 'payload'
SOURCE_SNAPSHOT = 'snapshot'
SOURCE_GENERIC = 'generic'

# web push payloads are capped near 4 KB; anything larger did not come from the server
MAX_PAYLOAD_BYTES = 3072


@dataclass
class RenderedNotification:
    title: str
    body: str
    tag: Optional[str]
    data: Dict[str, Any]
    actions: List[Dict[str, str]] = field(default_factory=list)
    require_interaction: bool = True
    source: str = SOURCE_PAYLOAD

    @property
    def task_id(self) -> Optional[int]:
        return self.data.get('taskId')


@dataclass
class ActionRequest:
    taskId: Optional[int]
    action: str
    snoozeMinutes: Optional[int] = None


class NotificationSink:
    """Where rendered notifications go (OS notification area, a GUI, a log)."""

    def show(self, notification: RenderedNotification) -> None:
        raise NotImplementedError


class LoggingSink(NotificationSink):

    def show(self, notification: RenderedNotification) -> None:
        logger.info('NOTIFY [%s] %s: %s', notification.tag, notification.title, notification.body)


def _from_payload(payload: NotificationPayload, source: str) -> RenderedNotification:
    generic = payload.data.taskId is None
    return RenderedNotification(
        title=payload.title,
        body=payload.body,
        tag=payload.tag,
        data=payload.data.model_dump(),
        actions=list(GENERIC_ACTIONS if generic else REMINDER_ACTIONS),
        source=source,
    )


def parse_payload(raw: Union[bytes, str, dict, None]) -> Optional[NotificationPayload]:
    """The canonical payload, or None if raw is absent or not one."""
    if raw is None:
        return None
    try:
        if isinstance(raw, str):
            raw = raw.encode('utf-8')
        if isinstance(raw, bytes):
            if len(raw) > MAX_PAYLOAD_BYTES:
                logger.info('push payload rejected: %d bytes', len(raw))
                return None
            raw = raw.decode('utf-8')
            if not raw.strip():
                return None
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            return None
        payload = NotificationPayload.model_validate(raw)
    except (UnicodeDecodeError, ValueError, RecursionError, ValidationError) as e:
        logger.info('push payload rejected: %s', type(e).__name__)
        return None
    if payload.data.taskId is None and payload.data.action != 'generic-reminder':
        return None
    return payload


class NotificationPresenter:

    def __init__(self, store: LocalStore, sink: Optional[NotificationSink] = None, action_relay=None):
        self.store = store
        self.sink = sink or LoggingSink()
        # anything with async send_action(task_id, action, snooze_minutes)
        self.action_relay = action_relay

    def render(self, raw: Union[bytes, str, dict, None], now: Optional[datetime] = None) -> RenderedNotification:
        payload = parse_payload(raw)
        if payload is not None:
            notification = _from_payload(payload, SOURCE_PAYLOAD)
        else:
            due = self.store.due_reminders(now)
            if due:
                latest = due[-1]
                notification = _from_payload(reminder_payload(latest['taskId'], latest['text']), SOURCE_SNAPSHOT)
            else:
                notification = _from_payload(generic_payload(), SOURCE_GENERIC)
        self.sink.show(notification)
        return notification

    async def handle_action(self, request: ActionRequest) -> Optional[Dict[str, Any]]:
        """Relay complete/snooze to the server. open and dismiss stay local."""
        if request.action not in ('complete', 'snooze'):
            return None
        if request.taskId is None:
            raise ValueError(f'{request.action} needs a taskId')
        if self.action_relay is None:
            raise RuntimeError('no action relay configured')
        result = await self.action_relay.send_action(request.taskId, request.action, request.snoozeMinutes)
        # the server owns the new state; the next heartbeat refreshes the snapshot
        self.store.forget_reminder(request.taskId)
        return result

    def show_status(self, status: str) -> None:
        if status != 'unavailable':
            return
        self.sink.show(RenderedNotification(
            title='Notifications unavailable',
            body='This device could not register for reminders. Check notification permissions in settings.',
            tag='registration-status',
            data={'taskId': None, 'action': 'registration-status'},
            actions=list(GENERIC_ACTIONS),
            require_interaction=False,
            source=SOURCE_GENERIC,
        ))
