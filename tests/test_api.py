from datetime import timedelta, datetime

import pytest

from wapiti import config
from wapiti.db import async_session
from wapiti.models import Task
from wapiti.scanner import ReminderScanner
from wapiti.utils import now_utc

pytestmark = pytest.mark.asyncio


def _reg_body(endpoint='https://push.example.test/send/phone', p256dh='p-key', auth='a-key', **kw):
    body = {'endpoint': endpoint, 'keys': {'p256dh': p256dh, 'auth': auth}}
    body.update(kw)
    return body


async def test_whoami(client):
    resp = await client.get('/auth/me')
    assert resp.status_code == 200
    assert resp.json()['username'] == client.user.username
    assert resp.json()['is_admin'] is False


async def test_bad_credentials_rejected(anon_client, user):
    resp = await anon_client.post('/auth/token', json={'username': user.username, 'password': 'wrong'})
    assert resp.status_code == 401


async def test_registrations_require_login(anon_client):
    assert (await anon_client.get('/push/registrations')).status_code == 401
    resp = await anon_client.get('/push/registrations', headers={'Authorization': 'Bearer not-a-token'})
    assert resp.status_code == 401


async def test_vapid_public_key(anon_client, monkeypatch):
    monkeypatch.setattr(config, 'VAPID_PUBLIC_KEY', '')
    assert (await anon_client.get('/push/vapid_public_key')).status_code == 503
    monkeypatch.setattr(config, 'VAPID_PUBLIC_KEY', 'BPublicKey')
    resp = await anon_client.get('/push/vapid_public_key')
    assert resp.json() == {'publicKey': 'BPublicKey'}


async def test_register_list_and_conflict(client):
    resp = await client.post('/push/registrations', json=_reg_body(user_agent='Mozilla/5.0 (iPhone) Mobile'))
    assert resp.status_code == 201
    created = resp.json()
    assert created['keys'] == {'p256dh': 'p-key', 'auth': 'a-key'}
    assert created['device_label'].startswith('iPhone ')

    resp = await client.post('/push/registrations', json=_reg_body(p256dh='rotated'))
    assert resp.status_code == 409
    assert resp.json()['detail']['existing']['id'] == created['id']

    resp = await client.get('/push/registrations', params={'endpoint': 'https://push.example.test/send/phone'})
    [row] = resp.json()['registrations']
    assert row['keys']['p256dh'] == 'p-key'
    resp = await client.get('/push/registrations', params={'endpoint': 'https://push.example.test/other'})
    assert resp.json()['registrations'] == []


async def test_register_rejects_empty_keys(client):
    resp = await client.post('/push/registrations', json=_reg_body(auth=''))
    assert resp.status_code == 422


async def test_delete_needs_matching_endpoint(client):
    created = (await client.post('/push/registrations', json=_reg_body())).json()
    url = f"/push/registrations/{created['id']}"
    assert (await client.delete(url)).status_code == 422
    assert (await client.delete(url, params={'endpoint': 'https://push.example.test/elsewhere'})).status_code == 404
    resp = await client.delete(url, params={'endpoint': created['endpoint']})
    assert resp.json() == {'ok': True, 'deleted': 1}
    assert (await client.get('/push/registrations')).json()['registrations'] == []


async def test_cannot_delete_another_users_registration(client, admin_client):
    created = (await client.post('/push/registrations', json=_reg_body())).json()
    resp = await admin_client.delete(f"/push/registrations/{created['id']}", params={'endpoint': created['endpoint']})
    assert resp.status_code == 404


async def test_wipe_requires_confirmation(client):
    await client.post('/push/registrations', json=_reg_body('https://push.example.test/a'))
    await client.post('/push/registrations', json=_reg_body('https://push.example.test/b'))
    assert (await client.delete('/push/registrations')).status_code == 400
    resp = await client.delete('/push/registrations', params={'confirm': 'true'})
    assert resp.json() == {'ok': True, 'deleted': 2}


async def test_summary_and_status(client, monkeypatch):
    monkeypatch.setattr(config, 'VAPID_PUBLIC_KEY', 'pub')
    monkeypatch.setattr(config, 'VAPID_PRIVATE_KEY', 'priv')
    await client.post('/push/registrations', json=_reg_body('https://push.example.test/a'))
    summary = (await client.get('/push/registrations/summary')).json()
    assert summary['total'] == 1 and summary['duplicate_endpoints'] == 0
    status = (await client.get('/push/status')).json()
    assert status == {
        'deviceCount': 1,
        'notificationMethod': 'push',
        'deliveryStatus': None,
        'deliveryStatusAt': None,
        'vapidConfigured': True,
    }
    assert 'priv' not in str(status)


async def test_preferences_round_trip(client):
    assert (await client.get('/push/preferences')).json()['notification_method'] == 'push'
    resp = await client.put('/push/preferences', json={'notification_method': 'push_sms', 'phone_number': '+15550100'})
    assert resp.status_code == 200
    prefs = (await client.get('/push/preferences')).json()
    assert prefs == {'notification_method': 'push_sms', 'phone_number': '+15550100', 'email': None}
    resp = await client.put('/push/preferences', json={'notification_method': 'carrier-pigeon'})
    assert resp.status_code == 422


async def test_run_requires_admin_or_trigger_token(client, anon_client, admin_client, dispatcher, monkeypatch):
    assert (await anon_client.post('/reminders/run')).status_code == 401
    assert (await client.post('/reminders/run')).status_code == 403
    assert (await admin_client.post('/reminders/run')).json() == {'processedCount': 0, 'notifications': []}

    monkeypatch.setattr(config, 'REMINDER_TRIGGER_TOKEN', 'cron-secret')
    assert (await anon_client.post('/reminders/run', headers={'X-Trigger-Token': 'wrong'})).status_code == 401
    resp = await anon_client.post('/reminders/run', headers={'X-Trigger-Token': 'cron-secret'})
    assert resp.status_code == 200


async def test_run_delivers_due_reminders(admin_client, dispatcher, fake_push, make_user, make_task, make_registration):
    owner = await make_user()
    reg = await make_registration(owner)
    task = await make_task(owner, 'Call the bank')
    resp = await admin_client.post('/reminders/run', json={'test': True})
    assert resp.json()['notifications'][0]['result']['error'] == 'dry run'
    assert fake_push.calls == []

    resp = await admin_client.post('/reminders/run')
    body = resp.json()
    assert body['processedCount'] == 1
    assert body['notifications'][0]['taskId'] == task.id
    assert fake_push.endpoints_called() == [reg.endpoint]


async def test_scan_is_limited_to_caller(client, dispatcher, fake_push, make_user, make_task, make_registration):
    other = await make_user()
    await make_registration(other)
    await make_task(other, 'not mine')
    await make_registration(client.user)
    mine = await make_task(client.user, 'mine')
    body = (await client.post('/reminders/scan')).json()
    assert [n['taskId'] for n in body['notifications']] == [mine.id]
    assert len(fake_push.calls) == 1


async def test_upcoming_snapshot(client, make_task):
    soon = await make_task(client.user, 'soon', minutes=90)
    await make_task(client.user, 'done', minutes=30, completed=True)
    body = (await client.get('/reminders/upcoming')).json()
    assert datetime.fromisoformat(body['generatedAt'])
    [r] = body['reminders']
    assert r['taskId'] == soon.id
    assert r['text'] == 'soon'
    assert r['reminderSent'] is False


async def test_pending_is_admin_only(client, admin_client, make_task):
    await make_task(client.user, 'due', minutes=-5)
    assert (await client.get('/reminders/pending')).status_code == 403
    body = (await admin_client.get('/reminders/pending', params={'limit': 5})).json()
    assert body['count'] == 1


async def test_complete_action(client, make_task, make_user):
    task = await make_task(client.user)
    resp = await client.post('/reminders/actions', json={'taskId': task.id, 'action': 'complete'})
    assert resp.json() == {'ok': True, 'taskId': task.id, 'action': 'complete'}
    async with async_session() as sess:
        assert (await sess.get(Task, task.id)).completed is True

    stranger = await make_user()
    theirs = await make_task(stranger)
    resp = await client.post('/reminders/actions', json={'taskId': theirs.id, 'action': 'complete'})
    assert resp.status_code == 404


async def test_unknown_action_rejected(client, make_task):
    task = await make_task(client.user)
    resp = await client.post('/reminders/actions', json={'taskId': task.id, 'action': 'explode'})
    assert resp.status_code == 422


async def test_snooze_rearms_reminder(client, make_task):
    task = await make_task(client.user, 'Stretch', minutes=-2, reminder_sent=True)
    resp = await client.post('/reminders/actions', json={'taskId': task.id, 'action': 'snooze'})
    body = resp.json()
    assert body['action'] == 'snooze'
    new_time = datetime.fromisoformat(body['reminderTime'])
    assert timedelta(minutes=14) < new_time - now_utc() <= timedelta(minutes=15)

    scanner = ReminderScanner()
    assert len(await scanner.scan(client.user.id)) == 0
    due = await scanner.scan(client.user.id, now=now_utc() + timedelta(minutes=16))
    assert [t.id for t in due.fresh] == [task.id]


async def test_snooze_minutes_must_be_positive(client, make_task):
    task = await make_task(client.user)
    resp = await client.post('/reminders/actions', json={'taskId': task.id, 'action': 'snooze', 'snoozeMinutes': 0})
    assert resp.status_code == 422


async def test_snooze_inside_due_window_rejected(client, make_task, make_registration, dispatcher, fake_push):
    task = await make_task(client.user, minutes=-2, reminder_sent=True)
    await make_registration(client.user)
    resp = await client.post('/reminders/actions', json={'taskId': task.id, 'action': 'snooze', 'snoozeMinutes': 3})
    assert resp.status_code == 422

    async with async_session() as sess:
        stored = await sess.get(Task, task.id)
    assert stored.reminder_sent is True
    result = await dispatcher.run_scan_once()
    assert result['processedCount'] == 0
    assert fake_push.calls == []
