from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text
from sqlalchemy.pool import NullPool

import os
import json
import logging

from . import config

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", config.DATABASE_URL)


# Use NullPool to avoid connection-pool objects being bound to a specific
# event loop (which can cause 'bound to a different event loop' errors when
# the server loop, the scheduler and tests each run their own loop).
engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def _table_columns(conn, table: str) -> list[str]:
    res = await conn.execute(text(f"PRAGMA table_info('{table}')"))
    return [r[1] for r in res.fetchall()]


async def _table_exists(conn, table: str) -> bool:
    res = await conn.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' AND name=:name"), {'name': table}
    )
    return res.fetchone() is not None


async def _has_unique_index(conn, table: str, columns: tuple[str, ...]) -> bool:
    res = await conn.execute(text(f"PRAGMA index_list('{table}')"))
    for row in res.fetchall():
        name, unique = row[1], row[2]
        if not unique:
            continue
        info = await conn.execute(text(f"PRAGMA index_info('{name}')"))
        cols = tuple(r[2] for r in info.fetchall())
        if cols == columns:
            return True
    return False


async def _add_missing_columns(conn) -> None:
    """Bring older sqlite files up to the current column set."""
    wanted = {
        'deviceregistration': (
            ('device_label', 'TEXT'),
            ('user_agent', 'TEXT'),
            ('last_used_at', 'DATETIME'),
        ),
        'userpreferences': (
            ('delivery_status', 'TEXT'),
            ('delivery_status_at', 'DATETIME'),
        ),
    }
    for table, columns in wanted.items():
        cols = await _table_columns(conn, table)
        if not cols:
            continue
        for name, sql_type in columns:
            if name in cols:
                continue
            try:
                await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {sql_type}"))
                logger.info('added column %s.%s', table, name)
            except Exception:
                logger.exception('failed to add column %s.%s during init_db', table, name)


async def _import_legacy_push_subscriptions(conn) -> int:
    """Copy rows from the old JSON-blob pushsubscription table.

    Rows without both keys cannot receive encrypted pushes and are skipped,
    as are rows the user switched off through the old enabled flag.
    Rows whose (owner, endpoint) is already registered are left alone.
    """
    if not await _table_exists(conn, 'pushsubscription'):
        return 0
    has_enabled = 'enabled' in await _table_columns(conn, 'pushsubscription')
    enabled_col = 'enabled' if has_enabled else '1'
    res = await conn.execute(text(
        f"SELECT user_id, subscription_json, created_at, {enabled_col} FROM pushsubscription"
    ))
    imported = 0
    for user_id, raw, created_at, enabled in res.fetchall():
        if enabled is not None and not enabled:
            continue
        try:
            info = json.loads(raw or '{}')
        except ValueError:
            logger.warning('skipping unreadable legacy push subscription for user %s', user_id)
            continue
        endpoint = info.get('endpoint')
        keys = info.get('keys') or {}
        if not endpoint or not keys.get('p256dh') or not keys.get('auth'):
            continue
        ins = await conn.execute(
            text(
                "INSERT OR IGNORE INTO deviceregistration "
                "(owner_id, endpoint, p256dh, auth, device_label, created_at) "
                "VALUES (:owner_id, :endpoint, :p256dh, :auth, :label, :created_at)"
            ),
            {
                'owner_id': user_id,
                'endpoint': endpoint,
                'p256dh': keys['p256dh'],
                'auth': keys['auth'],
                'label': 'Imported device',
                'created_at': created_at,
            },
        )
        imported += ins.rowcount or 0
    # rename so rows removed later (wipe, dead endpoints) are not re-imported
    await conn.execute(text("ALTER TABLE pushsubscription RENAME TO pushsubscription_imported"))
    logger.info('imported %d legacy push subscriptions', imported)
    return imported


async def _dedupe_registrations(conn) -> int:
    """Keep the newest row per (owner_id, endpoint) and drop the rest."""
    res = await conn.execute(text(
        "DELETE FROM deviceregistration WHERE id NOT IN "
        "(SELECT MAX(id) FROM deviceregistration GROUP BY owner_id, endpoint)"
    ))
    removed = res.rowcount or 0
    if removed:
        logger.warning('removed %d duplicate device registrations', removed)
    return removed


async def init_db(target_engine=None):
    """Create tables and migrate older sqlite files in place.

    target_engine defaults to the service engine; scripts and tests may pass
    another one.
    """
    target_engine = target_engine or engine
    async with target_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if target_engine.dialect.name != 'sqlite':
            return
        await _add_missing_columns(conn)
        # Older files may predate the (owner_id, endpoint) constraint. Dedupe
        # first or index creation fails; the legacy import below relies on the
        # index for INSERT OR IGNORE.
        if not await _has_unique_index(conn, 'deviceregistration', ('owner_id', 'endpoint')):
            await _dedupe_registrations(conn)
            await conn.execute(text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_deviceregistration_owner_endpoint "
                "ON deviceregistration(owner_id, endpoint)"
            ))
        await _import_legacy_push_subscriptions(conn)
