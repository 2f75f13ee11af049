from fastapi import APIRouter, HTTPException, Depends, Header, Query
from typing import Optional, Literal
from pydantic import BaseModel
import secrets
import logging

from .auth import require_login, get_current_principal
from .dispatcher import NotificationDispatcher
from .models import User, NOTIFICATION_METHODS
from .preferences import get_preferences, set_preferences
from .registrations import (
    DuplicateRegistration,
    delete_all_registrations,
    delete_registration,
    insert_registration,
    list_registrations,
    registration_summary,
    serialize_registration,
)
from .scanner import ReminderScanner
from .tasks import complete_task, snooze_task, serialize_reminder
from .utils import now_utc, isoformat_or_none
from . import config

logger = logging.getLogger(__name__)

router = APIRouter()

_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """Process-wide dispatcher; its lock serialises passes in this process."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def get_scanner(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> ReminderScanner:
    return dispatcher.scanner


async def require_trigger(x_trigger_token: Optional[str] = Header(None),
                          user: Optional[User] = Depends(get_current_principal)) -> Optional[User]:
    """Allow admins, or a scheduled job holding REMINDER_TRIGGER_TOKEN."""
    expected = config.REMINDER_TRIGGER_TOKEN
    if x_trigger_token and expected and secrets.compare_digest(x_trigger_token, expected):
        return user
    if user is None:
        raise HTTPException(status_code=401, detail='authentication required')
    if not user.is_admin:
        raise HTTPException(status_code=403, detail='admin required')
    return user


# --- device registrations -------------------------------------------------

class RegistrationKeys(BaseModel):
    p256dh: str
    auth: str


class RegistrationIn(BaseModel):
    endpoint: str
    keys: RegistrationKeys
    device_label: Optional[str] = None
    user_agent: Optional[str] = None


@router.get('/push/vapid_public_key')
async def vapid_public_key():
    if not config.VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail='VAPID keys not configured')
    return {'publicKey': config.VAPID_PUBLIC_KEY}


@router.get('/push/registrations')
async def get_registrations(endpoint: Optional[str] = None, current_user: User = Depends(require_login)):
    rows = await list_registrations(current_user.id, endpoint)
    return {'registrations': [serialize_registration(r) for r in rows]}


@router.post('/push/registrations', status_code=201)
async def post_registration(payload: RegistrationIn, current_user: User = Depends(require_login)):
    try:
        reg = await insert_registration(
            current_user.id,
            payload.endpoint,
            payload.keys.p256dh,
            payload.keys.auth,
            device_label=payload.device_label,
            user_agent=payload.user_agent,
        )
    except DuplicateRegistration as e:
        existing = serialize_registration(e.existing) if e.existing else None
        raise HTTPException(status_code=409, detail={'message': 'already registered', 'existing': existing})
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return serialize_registration(reg)


@router.get('/push/registrations/summary')
async def get_registration_summary(current_user: User = Depends(require_login)):
    return await registration_summary(current_user.id)


@router.delete('/push/registrations/{registration_id}')
async def delete_one_registration(registration_id: int, endpoint: str = Query(...),
                                  current_user: User = Depends(require_login)):
    # both id and endpoint must match, so a device can only remove its own row
    if not await delete_registration(current_user.id, registration_id, endpoint):
        raise HTTPException(status_code=404, detail='registration not found')
    return {'ok': True, 'deleted': 1}


@router.delete('/push/registrations')
async def wipe_registrations(confirm: bool = False, current_user: User = Depends(require_login)):
    if not confirm:
        raise HTTPException(status_code=400, detail='pass confirm=true to remove every registration')
    deleted = await delete_all_registrations(current_user.id)
    return {'ok': True, 'deleted': deleted}


@router.get('/push/status')
async def push_status(current_user: User = Depends(require_login)):
    rows = await list_registrations(current_user.id)
    prefs = await get_preferences(current_user.id)
    return {
        'deviceCount': len(rows),
        'notificationMethod': prefs.notification_method,
        'deliveryStatus': prefs.delivery_status,
        'deliveryStatusAt': isoformat_or_none(prefs.delivery_status_at),
        'vapidConfigured': bool(config.VAPID_PUBLIC_KEY and config.VAPID_PRIVATE_KEY),
    }


class PreferencesIn(BaseModel):
    notification_method: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None


@router.get('/push/preferences')
async def get_push_preferences(current_user: User = Depends(require_login)):
    prefs = await get_preferences(current_user.id)
    return {
        'notification_method': prefs.notification_method,
        'phone_number': prefs.phone_number,
        'email': prefs.email,
    }


@router.put('/push/preferences')
async def put_push_preferences(payload: PreferencesIn, current_user: User = Depends(require_login)):
    if payload.notification_method is not None and payload.notification_method not in NOTIFICATION_METHODS:
        raise HTTPException(status_code=422, detail=f'notification_method must be one of {", ".join(NOTIFICATION_METHODS)}')
    prefs = await set_preferences(current_user.id, payload.notification_method, payload.phone_number, payload.email)
    return {
        'notification_method': prefs.notification_method,
        'phone_number': prefs.phone_number,
        'email': prefs.email,
    }


# --- reminders --------------------------------------------------------------

class RunRequest(BaseModel):
    test: bool = False


@router.post('/reminders/run')
async def run_reminders(payload: Optional[RunRequest] = None,
                        caller: Optional[User] = Depends(require_trigger),
                        dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    test = bool(payload and payload.test)
    logger.info('manual dispatch pass requested by %s (test=%s)', caller.username if caller else 'trigger token', test)
    return await dispatcher.run_scan_once(test=test)


@router.post('/reminders/scan')
async def scan_my_reminders(current_user: User = Depends(require_login),
                            dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return await dispatcher.run_scan_once(principal=current_user.id)


@router.get('/reminders/upcoming')
async def upcoming_reminders(current_user: User = Depends(require_login),
                             scanner: ReminderScanner = Depends(get_scanner)):
    now = now_utc()
    tasks = await scanner.upcoming(current_user.id, now)
    return {'generatedAt': now.isoformat(), 'reminders': [serialize_reminder(t) for t in tasks]}


@router.get('/reminders/pending')
async def pending_reminders(limit: int = Query(10, ge=1, le=100),
                            caller: Optional[User] = Depends(require_trigger),
                            scanner: ReminderScanner = Depends(get_scanner)):
    tasks = await scanner.pending(limit=limit)
    return {'count': len(tasks), 'reminders': [serialize_reminder(t) for t in tasks]}


class ActionRequest(BaseModel):
    taskId: int
    action: Literal['complete', 'snooze']
    snoozeMinutes: Optional[int] = None


@router.post('/reminders/actions')
async def reminder_action(payload: ActionRequest, current_user: User = Depends(require_login)):
    if payload.action == 'complete':
        if not await complete_task(current_user.id, payload.taskId):
            raise HTTPException(status_code=404, detail='task not found')
        logger.info('task %s completed from notification', payload.taskId)
        return {'ok': True, 'taskId': payload.taskId, 'action': 'complete'}
    minutes = payload.snoozeMinutes if payload.snoozeMinutes is not None else config.DEFAULT_SNOOZE_MINUTES
    try:
        task = await snooze_task(current_user.id, payload.taskId, minutes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if task is None:
        raise HTTPException(status_code=404, detail='task not found')
    return {
        'ok': True,
        'taskId': payload.taskId,
        'action': 'snooze',
        'reminderTime': isoformat_or_none(task.reminder_time),
    }
