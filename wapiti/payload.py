"""Canonical notification payload shared by the server and devices.

Kept free of database and transport imports so a device can validate a
payload without loading the service.
"""
import json
from typing import Optional
from pydantic import BaseModel


REMINDER_TITLE = 'Task Reminder'
GENERIC_BODY = 'You have a task reminder! Check the app for details.'


class ReminderData(BaseModel):
    taskId: Optional[int] = None
    action: str = 'task-reminder'


class NotificationPayload(BaseModel):
    title: str
    body: str
    tag: Optional[str] = None
    data: ReminderData = ReminderData()

    def to_json(self) -> str:
        return json.dumps(self.model_dump())


def reminder_payload(task_id: int, text: str) -> NotificationPayload:
    return NotificationPayload(
        title=REMINDER_TITLE,
        body=f"Don't forget: {text}",
        tag=f'task-{task_id}',
        data=ReminderData(taskId=task_id, action='task-reminder'),
    )


def generic_payload() -> NotificationPayload:
    return NotificationPayload(
        title=REMINDER_TITLE,
        body=GENERIC_BODY,
        tag='generic-reminder',
        data=ReminderData(taskId=None, action='generic-reminder'),
    )
