"""Client heartbeat: asks the server to scan this principal's reminders.

Each tick runs one dispatch pass for the signed-in principal and refreshes
the local upcoming snapshot used by the presentation fallback. A tick that
finds the previous one still running is skipped.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from wapiti.schedule import IntervalPolicy, PeriodicRunner

from .client import ApiClient
from .local_store import LocalStore

logger = logging.getLogger(__name__)


class DeviceReminderScanner:

    def __init__(self, api: ApiClient, store: LocalStore, interval: float = 60.0):
        self.api = api
        self.store = store
        self.policy = IntervalPolicy(base=interval, max_interval=interval * 10)
        self.checking = False
        self._runner: Optional[PeriodicRunner] = None

    async def scan_once(self) -> Optional[Dict[str, Any]]:
        """One heartbeat. Returns None when skipped because a scan is running."""
        if self.checking:
            logger.info('reminder check already in progress, skipping')
            return None
        self.checking = True
        try:
            result = await self.api.scan()
            upcoming = await self.api.upcoming()
            self.store.store_upcoming(upcoming)
            self.store.set_state('last_scan', {
                'processedCount': result.get('processedCount', 0),
                'due': len(result.get('notifications', [])),
            })
            if result.get('processedCount'):
                logger.info('heartbeat delivered %d reminders', result['processedCount'])
            return result
        finally:
            self.checking = False

    async def _tick(self) -> bool:
        try:
            await self.scan_once()
            return True
        except httpx.HTTPError as e:
            logger.warning('reminder heartbeat failed: %s', type(e).__name__)
            return False

    def start(self) -> None:
        if self._runner is not None and self._runner.running:
            return
        self._runner = PeriodicRunner('device-reminder-scan', self._tick, self.policy)
        self._runner.start()

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.stop()
            self._runner = None
