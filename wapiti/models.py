from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


NOTIFICATION_METHODS = ('push', 'sms', 'email', 'push_sms')


class User(SQLModel, table=True):
    """An authenticated principal. Password stored as a passlib hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    is_admin: bool = Field(default=False)


class Task(SQLModel, table=True):
    """A task with an optional reminder.

    Only the reminder-related columns live here; titles, notes and list
    membership belong to the CRUD application. reminder_sent is flipped to
    true by the dispatcher with a conditional update and reset to false by
    a snooze action.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    text: str
    reminder_time: Optional[datetime] = Field(default=None, index=True)
    reminder_sent: bool = Field(default=False, index=True)
    completed: bool = Field(default=False, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    modified_at: datetime | None = Field(default_factory=now_utc)


class DeviceRegistration(SQLModel, table=True):
    """One device's ability to receive pushes.

    endpoint is the opaque push-service address of a single browser
    installation; p256dh and auth are the subscription's encryption keys.
    At most one row may exist per (owner_id, endpoint): the constraint is
    enforced by the database, not only by the reconciler. device_label is a
    display hint and never identifies a device.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    endpoint: str
    p256dh: str
    auth: str
    device_label: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    last_used_at: Optional[datetime] = None

    __table_args__ = (
        UniqueConstraint('owner_id', 'endpoint', name='uq_deviceregistration_owner_endpoint'),
    )


class UserPreferences(SQLModel, table=True):
    """Per-user notification channel choice and the settings-page status.

    notification_method: one of NOTIFICATION_METHODS, push when unset.
    delivery_status: 'ok' | 'no_devices' | 'failed' | 'degraded', written by
    the dispatcher after each reminder it handles for this user.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", sa_column_kwargs={"unique": True}, index=True)
    notification_method: str = Field(default='push')
    phone_number: Optional[str] = None
    email: Optional[str] = None
    delivery_status: Optional[str] = None
    delivery_status_at: Optional[datetime] = None
