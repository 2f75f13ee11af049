"""Run the device agent: ``python -m wapiti_device --config device.json``."""
import argparse
import asyncio
import json
import logging
import signal
import sys

from .agent import DeviceAgent
from .config import DeviceConfig
from .local_store import LocalStore
from .presentation import NotificationPresenter

logger = logging.getLogger('wapiti_device')


async def _run_agent(cfg: DeviceConfig) -> int:
    agent = DeviceAgent.from_config(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await agent.start()
    try:
        await stop.wait()
    finally:
        await agent.close()
    return 0


async def _wipe(cfg: DeviceConfig) -> int:
    agent = DeviceAgent.from_config(cfg)
    try:
        deleted = await agent.reconciler.wipe_all()
    finally:
        await agent.api.close()
    print(f"removed {deleted} registrations")
    return 0


def _render(cfg: DeviceConfig, payload_file: str) -> int:
    # the renderer only needs the local store, like a woken service worker
    raw = None
    if payload_file:
        with open(payload_file, 'rb') as f:
            raw = f.read()
    presenter = NotificationPresenter(LocalStore(cfg.local_store_path))
    n = presenter.render(raw)
    print(json.dumps({'title': n.title, 'body': n.body, 'tag': n.tag, 'data': n.data,
                      'actions': n.actions, 'source': n.source}, indent=2))
    return 0


def main(argv=None):
    p = argparse.ArgumentParser(prog='wapiti_device', description="Wapiti device agent")
    p.add_argument("--config", default=None, help="device config JSON (default ./device.json)")
    sub = p.add_subparsers(dest="command")
    sub.add_parser("run", help="register this device and run the heartbeat (default)")
    sub.add_parser("wipe", help="remove every registration of this user, on all devices")
    r = sub.add_parser("render", help="render a push payload from a file (or the fallback)")
    r.add_argument("payload_file", nargs="?", default=None)
    args = p.parse_args(argv if argv is not None else sys.argv[1:])

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s:%(name)s: %(message)s')
    cfg = DeviceConfig(args.config)
    if args.command == 'wipe':
        return asyncio.run(_wipe(cfg))
    if args.command == 'render':
        return _render(cfg, args.payload_file)
    return asyncio.run(_run_agent(cfg))


if __name__ == "__main__":
    raise SystemExit(main())
