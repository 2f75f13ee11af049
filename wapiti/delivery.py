"""Delivery backend adapters.

An adapter performs one transport call for one target and reports the
outcome as a DeliveryResult; it never raises for delivery failures. The
dispatcher owns fan-out, acknowledgment and row cleanup.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Any

import requests
from pywebpush import webpush, WebPushException

from . import config
from .models import DeviceRegistration, Task
from .payload import NotificationPayload, reminder_payload
from .utils import endpoint_host

logger = logging.getLogger(__name__)

TRANSIENT = 'transient'
PERMANENT = 'permanent'

# push services answer 404/410 for endpoints that will never work again
GONE_STATUS_CODES = (404, 410)


def build_reminder_payload(task: Task) -> NotificationPayload:
    return reminder_payload(task.id, task.text)


@dataclass
class DeliveryResult:
    success: bool
    reason: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def permanent(self) -> bool:
        return not self.success and self.reason == PERMANENT

    @classmethod
    def ok(cls, status_code: Optional[int] = None) -> 'DeliveryResult':
        return cls(success=True, status_code=status_code)

    @classmethod
    def transient(cls, error: str, status_code: Optional[int] = None) -> 'DeliveryResult':
        return cls(success=False, reason=TRANSIENT, error=error, status_code=status_code)

    @classmethod
    def gone(cls, error: str, status_code: Optional[int] = None) -> 'DeliveryResult':
        return cls(success=False, reason=PERMANENT, error=error, status_code=status_code)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {'success': self.success}
        if self.error:
            out['error'] = self.error
        if self.reason:
            out['reason'] = self.reason
        return out


class DeliveryAdapter:
    channel = 'push'

    async def deliver(self, target: Any, payload: NotificationPayload) -> DeliveryResult:
        raise NotImplementedError


class WebPushAdapter(DeliveryAdapter):
    """Web Push delivery through pywebpush.

    VAPID signing and aes128gcm payload encryption are done by pywebpush.
    The blocking call runs in a worker thread. Errors that produced no HTTP
    response are retried in-call with exponential backoff; everything else
    is classified and returned.
    """
    channel = 'push'

    def __init__(self, vapid_private_key: Optional[str] = None, vapid_subject: Optional[str] = None,
                 ttl: Optional[int] = None, timeout: Optional[float] = None,
                 connect_retries: Optional[int] = None, retry_delay: float = 0.5):
        self.vapid_private_key = vapid_private_key if vapid_private_key is not None else config.VAPID_PRIVATE_KEY
        self.vapid_subject = vapid_subject or config.VAPID_SUBJECT
        self.ttl = ttl if ttl is not None else config.PUSH_TTL_SECONDS
        self.timeout = timeout if timeout is not None else config.PUSH_TIMEOUT_SECONDS
        self.connect_retries = max(1, connect_retries if connect_retries is not None else config.PUSH_CONNECT_RETRIES)
        self.retry_delay = retry_delay

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key)

    def _send(self, registration: DeviceRegistration, data: str):
        # pywebpush adds aud/exp to the claims dict it is given; hand it a
        # fresh copy so every call signs its own token.
        claims = {'sub': self.vapid_subject}
        return webpush(
            subscription_info={
                'endpoint': registration.endpoint,
                'keys': {'p256dh': registration.p256dh, 'auth': registration.auth},
            },
            data=data,
            vapid_private_key=self.vapid_private_key,
            vapid_claims=claims,
            ttl=self.ttl,
            timeout=self.timeout,
        )

    async def deliver(self, registration: DeviceRegistration, payload: NotificationPayload) -> DeliveryResult:
        host = endpoint_host(registration.endpoint)
        if not registration.p256dh or not registration.auth:
            logger.warning('registration %s (%s) has no credential keys', registration.id, host)
            return DeliveryResult.gone('Registration is missing credential keys')
        if not self.configured:
            logger.error('push delivery skipped: VAPID keys not configured')
            return DeliveryResult.transient('VAPID keys not configured')
        data = payload.to_json()
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await asyncio.wait_for(
                    asyncio.to_thread(self._send, registration, data),
                    timeout=self.timeout + 5,
                )
                status = getattr(resp, 'status_code', None)
                logger.info('push to registration %s (%s) accepted: %s', registration.id, host, status)
                return DeliveryResult.ok(status)
            except WebPushException as e:
                status = getattr(getattr(e, 'response', None), 'status_code', None)
                if status in GONE_STATUS_CODES:
                    logger.info('registration %s (%s) is gone: HTTP %s', registration.id, host, status)
                    return DeliveryResult.gone(f'Push endpoint gone (HTTP {status})', status)
                if status is None and attempt < self.connect_retries:
                    await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
                    continue
                logger.warning('push to registration %s (%s) failed: HTTP %s', registration.id, host, status)
                return DeliveryResult.transient(f'Push service error (HTTP {status})' if status else 'Push service error', status)
            except requests.exceptions.ConnectionError:
                if attempt < self.connect_retries:
                    logger.info('push to %s: connection error, retrying (attempt %d/%d)', host, attempt, self.connect_retries)
                    await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
                    continue
                logger.warning('push to registration %s (%s) failed: connection error', registration.id, host)
                return DeliveryResult.transient('Connection error')
            except (requests.exceptions.Timeout, asyncio.TimeoutError):
                logger.warning('push to registration %s (%s) timed out', registration.id, host)
                return DeliveryResult.transient('Timed out')
            except Exception as e:
                # the message of an unexpected error may echo key material
                logger.error('push to registration %s (%s) failed: %s', registration.id, host, type(e).__name__)
                return DeliveryResult.transient(f'Unexpected delivery error ({type(e).__name__})')


class UnavailableChannelAdapter(DeliveryAdapter):
    """Placeholder for channels that have no transport yet (SMS, email)."""

    MESSAGES = {
        'sms': 'SMS notifications not implemented yet',
        'email': 'Email notifications not implemented yet',
    }

    def __init__(self, channel: str):
        self.channel = channel

    async def deliver(self, target: Any, payload: NotificationPayload) -> DeliveryResult:
        logger.info('%s delivery requested but the channel is not available', self.channel)
        return DeliveryResult.transient(self.MESSAGES.get(self.channel, f'{self.channel} notifications not implemented yet'))


def default_adapters() -> dict[str, DeliveryAdapter]:
    return {
        'push': WebPushAdapter(),
        'sms': UnavailableChannelAdapter('sms'),
        'email': UnavailableChannelAdapter('email'),
    }
