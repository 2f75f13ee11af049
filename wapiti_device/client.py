"""Async client for the Wapiti server API."""

import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    id: int
    username: str


class RegistrationConflict(Exception):
    """The server already holds a row for this (principal, endpoint)."""

    def __init__(self, existing: Optional[Dict[str, Any]]):
        super().__init__('registration already exists')
        self.existing = existing


class ApiClient:
    """Client for the registration and reminder endpoints.

    HTTP errors propagate as httpx exceptions; callers at loop boundaries
    decide what to do with them. Pass ``http`` to reuse a client (tests use
    one bound to the ASGI app).
    """

    def __init__(self, base_url: str, username: str, password: str,
                 http: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self.access_token: Optional[str] = None

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def login(self) -> str:
        resp = await self.http.post('/auth/token', json={'username': self.username, 'password': self.password})
        resp.raise_for_status()
        self.access_token = resp.json()['access_token']
        return self.access_token

    def _auth_headers(self) -> Dict[str, str]:
        if self.access_token:
            return {'Authorization': f'Bearer {self.access_token}'}
        return {}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self.access_token:
            await self.login()
        resp = await self.http.request(method, url, headers=self._auth_headers(), **kwargs)
        if resp.status_code == 401:
            # token expired or server secret rotated
            await self.login()
            resp = await self.http.request(method, url, headers=self._auth_headers(), **kwargs)
        return resp

    async def me(self) -> Principal:
        resp = await self._request('GET', '/auth/me')
        resp.raise_for_status()
        data = resp.json()
        return Principal(id=data['id'], username=data['username'])

    async def vapid_public_key(self) -> str:
        resp = await self.http.get('/push/vapid_public_key')
        resp.raise_for_status()
        return resp.json()['publicKey']

    async def list_registrations(self, endpoint: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'endpoint': endpoint} if endpoint is not None else None
        resp = await self._request('GET', '/push/registrations', params=params)
        resp.raise_for_status()
        return resp.json()['registrations']

    async def create_registration(self, endpoint: str, p256dh: str, auth: str,
                                  device_label: Optional[str] = None,
                                  user_agent: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            'endpoint': endpoint,
            'keys': {'p256dh': p256dh, 'auth': auth},
            'device_label': device_label,
            'user_agent': user_agent,
        }
        resp = await self._request('POST', '/push/registrations', json=payload)
        if resp.status_code == 409:
            detail = resp.json().get('detail') or {}
            raise RegistrationConflict(detail.get('existing') if isinstance(detail, dict) else None)
        resp.raise_for_status()
        return resp.json()

    async def delete_registration(self, registration_id: int, endpoint: str) -> bool:
        resp = await self._request('DELETE', f'/push/registrations/{registration_id}', params={'endpoint': endpoint})
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

    async def wipe_registrations(self) -> int:
        resp = await self._request('DELETE', '/push/registrations', params={'confirm': 'true'})
        resp.raise_for_status()
        return resp.json()['deleted']

    async def scan(self) -> Dict[str, Any]:
        resp = await self._request('POST', '/reminders/scan')
        resp.raise_for_status()
        return resp.json()

    async def upcoming(self) -> List[Dict[str, Any]]:
        resp = await self._request('GET', '/reminders/upcoming')
        resp.raise_for_status()
        return resp.json()['reminders']

    async def send_action(self, task_id: int, action: str, snooze_minutes: Optional[int] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'taskId': task_id, 'action': action}
        if snooze_minutes is not None:
            payload['snoozeMinutes'] = snooze_minutes
        resp = await self._request('POST', '/reminders/actions', json=payload)
        resp.raise_for_status()
        return resp.json()
