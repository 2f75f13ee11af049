"""Device composition root.

Builds the reconciler, heartbeat scanner and presenter for one signed-in
device and owns their lifecycle. Nothing here is global: every collaborator
is passed in or built from a DeviceConfig.
"""
import logging
from typing import Optional

import httpx

from .client import ApiClient, Principal
from .config import DeviceConfig
from .local_store import LocalStore
from .platform import FileSubscriptionPlatform, PushPlatform
from .presentation import NotificationPresenter, NotificationSink, RenderedNotification
from .reconciler import SubscriptionReconciler
from .scanner import DeviceReminderScanner

logger = logging.getLogger(__name__)


class DeviceAgent:

    def __init__(self, api: ApiClient, platform: PushPlatform, store: LocalStore,
                 sink: Optional[NotificationSink] = None,
                 user_agent: str = '',
                 scan_interval: float = 60.0,
                 health_interval_stable: float = 15 * 60,
                 health_interval_after_failure: float = 60,
                 subscribe_attempts: int = 4):
        self.api = api
        self.store = store
        self.presenter = NotificationPresenter(store, sink=sink, action_relay=api)
        self.reconciler = SubscriptionReconciler(
            api, platform, store,
            user_agent=user_agent,
            subscribe_attempts=subscribe_attempts,
            health_interval_stable=health_interval_stable,
            health_interval_after_failure=health_interval_after_failure,
            on_status=self.presenter.show_status,
        )
        self.scanner = DeviceReminderScanner(api, store, interval=scan_interval)
        self.principal: Optional[Principal] = None
        self.started = False

    @classmethod
    def from_config(cls, cfg: DeviceConfig, http: Optional[httpx.AsyncClient] = None,
                    sink: Optional[NotificationSink] = None) -> 'DeviceAgent':
        api = ApiClient(cfg.server_url, cfg.username, cfg.password, http=http)
        return cls(
            api,
            FileSubscriptionPlatform(cfg.subscription_file),
            LocalStore(cfg.local_store_path),
            sink=sink,
            user_agent=cfg.user_agent,
            scan_interval=cfg.scan_interval_seconds,
            health_interval_stable=cfg.health_interval_stable_seconds,
            health_interval_after_failure=cfg.health_interval_after_failure_seconds,
            subscribe_attempts=cfg.subscribe_attempts,
        )

    async def start(self) -> Principal:
        if self.started:
            return self.principal
        self.principal = await self.api.me()
        logger.info('device agent starting for %s', self.principal.username)
        # the first health check runs immediately and registers the device
        self.reconciler.start(self.principal)
        self.scanner.start()
        self.started = True
        return self.principal

    async def stop(self) -> None:
        """Stop both loops; in-flight runs finish first."""
        if not self.started:
            return
        await self.scanner.stop()
        await self.reconciler.stop()
        self.started = False
        logger.info('device agent stopped')

    async def close(self) -> None:
        await self.stop()
        await self.api.close()

    def on_push(self, raw) -> RenderedNotification:
        return self.presenter.render(raw)
