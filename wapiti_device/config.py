"""Configuration for the device agent."""

import os
import json
from typing import Dict, Any


DEFAULTS: Dict[str, Any] = {
    'server_url': 'http://127.0.0.1:8000',
    'username': '',
    'password': '',
    'subscription_file': 'subscription.json',
    'user_agent': '',
    'local_store': 'device_store.db',
    'scan_interval_seconds': 60,
    'health_interval_stable_seconds': 15 * 60,
    'health_interval_after_failure_seconds': 60,
    'subscribe_attempts': 4,
}


class DeviceConfig:
    """JSON-file backed settings for one device.

    Relative paths (subscription_file, local_store) are resolved against the
    directory holding the config file.
    """

    def __init__(self, config_file: str = None):
        self.config_file = config_file or os.path.join(os.getcwd(), 'device.json')
        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        if os.path.exists(self.config_file):
            with open(self.config_file, 'r') as f:
                self._config = json.load(f)
        else:
            self._config = dict(DEFAULTS)
            self.save()

    def save(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.config_file)), exist_ok=True)
        with open(self.config_file, 'w') as f:
            json.dump(self._config, f, indent=2)

    def get(self, key: str) -> Any:
        return self._config.get(key, DEFAULTS.get(key))

    def _path(self, key: str) -> str:
        value = self.get(key)
        if os.path.isabs(value):
            return value
        return os.path.join(os.path.dirname(os.path.abspath(self.config_file)), value)

    @property
    def server_url(self) -> str:
        return self.get('server_url').rstrip('/')

    @server_url.setter
    def server_url(self, value: str):
        self._config['server_url'] = value
        self.save()

    @property
    def username(self) -> str:
        return self.get('username')

    @username.setter
    def username(self, value: str):
        self._config['username'] = value
        self.save()

    @property
    def password(self) -> str:
        return self.get('password')

    @password.setter
    def password(self, value: str):
        self._config['password'] = value
        self.save()

    @property
    def subscription_file(self) -> str:
        return self._path('subscription_file')

    @property
    def local_store_path(self) -> str:
        return self._path('local_store')

    @property
    def user_agent(self) -> str:
        return self.get('user_agent') or ''

    @property
    def scan_interval_seconds(self) -> float:
        return float(self.get('scan_interval_seconds'))

    @property
    def health_interval_stable_seconds(self) -> float:
        return float(self.get('health_interval_stable_seconds'))

    @property
    def health_interval_after_failure_seconds(self) -> float:
        return float(self.get('health_interval_after_failure_seconds'))

    @property
    def subscribe_attempts(self) -> int:
        return int(self.get('subscribe_attempts'))
