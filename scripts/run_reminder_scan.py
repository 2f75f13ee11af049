#!/usr/bin/env python3
"""Run one reminder dispatch pass, for cron or other external schedulers.

Usage:
    python scripts/run_reminder_scan.py [--test] [--user-id N] [--db PATH]

Prints the pass result as JSON: {"processedCount": N, "notifications": [...]}.
--test reports the due set without delivering or writing anything. Exit
status is 0 even when deliveries fail; failures are retried next pass.
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import json
import logging


async def run(test: bool = False, user_id=None) -> dict:
    from wapiti.db import init_db
    from wapiti.dispatcher import NotificationDispatcher
    await init_db()
    dispatcher = NotificationDispatcher()
    return await dispatcher.run_scan_once(principal=user_id, test=test)


def parse_args(argv):
    p = argparse.ArgumentParser(description="Run one reminder scan and dispatch pass")
    p.add_argument("--test", action="store_true", help="dry run: report due reminders only")
    p.add_argument("--user-id", type=int, default=None, help="limit the pass to one principal")
    p.add_argument("--db", default=None, help="sqlite file to use instead of DATABASE_URL")
    p.add_argument("-v", "--verbose", action="store_true", help="log progress to stderr")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.db:
        os.environ['DATABASE_URL'] = f"sqlite+aiosqlite:///{args.db}"
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s:%(name)s: %(message)s',
        stream=sys.stderr,
    )
    result = asyncio.run(run(test=args.test, user_id=args.user_id))
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
