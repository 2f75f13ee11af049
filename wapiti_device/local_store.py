"""Local storage for the device agent.

Holds what the presentation layer needs when the agent is not resident:
the last upcoming-reminder snapshot and the registration status. The
renderer reads this file directly, so it must not depend on the agent.
"""

import sqlite3
import json
import os
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone


class LocalStore:
    """SQLite-based local storage for device state."""

    def __init__(self, db_path: str = None):
        if db_path is None:
            db_path = os.path.join(os.getcwd(), 'device_store.db')
        self.db_path = db_path
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS reminders (
                    task_id INTEGER PRIMARY KEY,
                    text TEXT NOT NULL,
                    reminder_time TEXT,
                    stored_at TEXT
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS device_state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')
            conn.commit()

    def clear_all(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute('DELETE FROM reminders')
            conn.execute('DELETE FROM device_state')
            conn.commit()

    def store_upcoming(self, reminders: List[Dict[str, Any]]) -> None:
        """Replace the snapshot with the server's upcoming list."""
        stored_at = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute('DELETE FROM reminders')
            conn.executemany(
                'INSERT OR REPLACE INTO reminders (task_id, text, reminder_time, stored_at) VALUES (?, ?, ?, ?)',
                [(r['taskId'], r.get('text') or '', r.get('reminderTime'), stored_at) for r in reminders],
            )
            conn.commit()

    def get_upcoming(self) -> List[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                'SELECT task_id, text, reminder_time FROM reminders ORDER BY reminder_time, task_id'
            ).fetchall()
            return [{'taskId': row[0], 'text': row[1], 'reminderTime': row[2]} for row in rows]

    def get_reminder(self, task_id: int) -> Optional[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                'SELECT task_id, text, reminder_time FROM reminders WHERE task_id = ?', (task_id,)
            ).fetchone()
            if row:
                return {'taskId': row[0], 'text': row[1], 'reminderTime': row[2]}
        return None

    def forget_reminder(self, task_id: int) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute('DELETE FROM reminders WHERE task_id = ?', (task_id,))
            conn.commit()

    def due_reminders(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Snapshot entries whose reminder time has passed, oldest first."""
        now = now or datetime.now(timezone.utc)
        due = []
        for r in self.get_upcoming():
            try:
                rt = datetime.fromisoformat(r['reminderTime'])
            except (TypeError, ValueError):
                continue
            if rt.tzinfo is None:
                rt = rt.replace(tzinfo=timezone.utc)
            if rt <= now:
                due.append(r)
        return due

    def set_state(self, key: str, value: Any) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                'INSERT OR REPLACE INTO device_state (key, value) VALUES (?, ?)',
                (key, json.dumps(value))
            )
            conn.commit()

    def get_state(self, key: str, default: Any = None) -> Any:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute('SELECT value FROM device_state WHERE key = ?', (key,)).fetchone()
            return json.loads(row[0]) if row else default

    @property
    def registration_status(self) -> Optional[str]:
        return self.get_state('registration_status')

    @registration_status.setter
    def registration_status(self, value: str) -> None:
        self.set_state('registration_status', value)
