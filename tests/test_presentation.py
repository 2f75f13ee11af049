import json
from datetime import datetime, timedelta, timezone

import pytest

from wapiti.payload import reminder_payload, generic_payload
from wapiti_device.local_store import LocalStore
from wapiti_device.presentation import (
    ActionRequest,
    NotificationPresenter,
    NotificationSink,
    parse_payload,
    SOURCE_GENERIC,
    SOURCE_PAYLOAD,
    SOURCE_SNAPSHOT,
    MAX_PAYLOAD_BYTES,
)


class RecordingSink(NotificationSink):
    def __init__(self):
        self.shown = []

    def show(self, notification):
        self.shown.append(notification)


class RecordingRelay:
    def __init__(self):
        self.sent = []

    async def send_action(self, task_id, action, snooze_minutes=None):
        self.sent.append((task_id, action, snooze_minutes))
        return {'ok': True, 'taskId': task_id, 'action': action}


@pytest.fixture
def store(tmp_path):
    return LocalStore(str(tmp_path / 'device.db'))


@pytest.fixture
def sink():
    return RecordingSink()


def _iso(minutes):
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


def test_server_payload_renders_as_is(store, sink):
    presenter = NotificationPresenter(store, sink)
    raw = reminder_payload(42, 'Water plants').to_json().encode('utf-8')
    n = presenter.render(raw)
    assert n.source == SOURCE_PAYLOAD
    assert n.title == 'Task Reminder'
    assert n.body == "Don't forget: Water plants"
    assert n.tag == 'task-42'
    assert n.task_id == 42
    assert [a['action'] for a in n.actions] == ['complete', 'snooze']
    assert n.require_interaction is True
    assert sink.shown == [n]


@pytest.mark.parametrize('raw', [
    None,
    b'',
    b'\xff\xfe',
    'not json',
    '[1, 2]',
    json.dumps({'title': 'x'}),
    json.dumps({'title': 'T', 'body': 'B', 'data': {'taskId': None, 'action': 'task-reminder'}}),
])
def test_unusable_payloads_are_rejected(raw):
    assert parse_payload(raw) is None


def test_generic_payload_is_accepted():
    payload = parse_payload(generic_payload().to_json())
    assert payload is not None
    assert payload.data.action == 'generic-reminder'


def test_missing_payload_uses_latest_due_snapshot_entry(store, sink):
    store.store_upcoming([
        {'taskId': 1, 'text': 'earlier', 'reminderTime': _iso(-20)},
        {'taskId': 2, 'text': 'latest due', 'reminderTime': _iso(-1)},
        {'taskId': 3, 'text': 'not yet', 'reminderTime': _iso(60)},
    ])
    n = NotificationPresenter(store, sink).render(b'')
    assert n.source == SOURCE_SNAPSHOT
    assert n.task_id == 2
    assert n.body == "Don't forget: latest due"
    assert [a['action'] for a in n.actions] == ['complete', 'snooze']


def test_nothing_available_shows_generic(store, sink):
    store.store_upcoming([{'taskId': 3, 'text': 'not yet', 'reminderTime': _iso(60)}])
    n = NotificationPresenter(store, sink).render(None)
    assert n.source == SOURCE_GENERIC
    assert n.body == 'You have a task reminder! Check the app for details.'
    assert n.task_id is None
    assert [a['action'] for a in n.actions] == ['open', 'dismiss']


@pytest.mark.parametrize('raw', [
    b'[' * 3000 + b']' * 3000,
    '[' * 1400 + ']' * 1400,
    b'{"title": "' + b'x' * MAX_PAYLOAD_BYTES + b'"}',
])
def test_oversized_or_deeply_nested_payload_falls_back(store, sink, raw):
    assert parse_payload(raw) is None
    n = NotificationPresenter(store, sink).render(raw)
    assert n.source == SOURCE_GENERIC
    assert sink.shown == [n]


@pytest.mark.asyncio
async def test_complete_and_snooze_are_relayed(store, sink):
    store.store_upcoming([
        {'taskId': 5, 'text': 'five', 'reminderTime': _iso(-1)},
        {'taskId': 6, 'text': 'six', 'reminderTime': _iso(-1)},
    ])
    relay = RecordingRelay()
    presenter = NotificationPresenter(store, sink, action_relay=relay)
    await presenter.handle_action(ActionRequest(taskId=5, action='complete'))
    await presenter.handle_action(ActionRequest(taskId=6, action='snooze', snoozeMinutes=15))
    assert relay.sent == [(5, 'complete', None), (6, 'snooze', 15)]
    assert store.get_upcoming() == []


@pytest.mark.asyncio
async def test_open_and_dismiss_stay_local(store, sink):
    relay = RecordingRelay()
    presenter = NotificationPresenter(store, sink, action_relay=relay)
    assert await presenter.handle_action(ActionRequest(taskId=None, action='open')) is None
    assert await presenter.handle_action(ActionRequest(taskId=1, action='dismiss')) is None
    assert relay.sent == []


@pytest.mark.asyncio
async def test_task_action_without_task_id_is_an_error(store, sink):
    presenter = NotificationPresenter(store, sink, action_relay=RecordingRelay())
    with pytest.raises(ValueError):
        await presenter.handle_action(ActionRequest(taskId=None, action='complete'))


def test_unavailable_status_is_shown(store, sink):
    presenter = NotificationPresenter(store, sink)
    presenter.show_status('registered')
    assert sink.shown == []
    presenter.show_status('unavailable')
    [n] = sink.shown
    assert n.title == 'Notifications unavailable'
    assert n.require_interaction is False
