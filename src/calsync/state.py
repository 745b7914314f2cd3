"""Key-value state store backed by PostgreSQL JSONB.

Holds scheduler bookkeeping (``calsync::scheduler::*``) and the mutable
calendar settings (``calendar.*``) that override static configuration.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

SETTINGS_PREFIX = "calendar."


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered.  If the stored JSONB was double-encoded (a JSON string
    containing JSON text), a second pass is applied.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        try:
            decoded = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            return val
        logger.warning("Double-encoded JSONB detected, applied second decode pass")
        return decoded
    return val


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval(
        "SELECT value FROM state WHERE key = $1",
        key,
    )
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Upsert *key* with *value* (any JSON-serialisable type).

    Returns:
        The new version number for the row after the upsert.
    """
    json_value = json.dumps(value)
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json_value,
    )
    return new_version


async def load_settings(pool: asyncpg.Pool, prefix: str = SETTINGS_PREFIX) -> dict[str, str]:
    """Return every setting under *prefix* as plain strings.

    Non-string JSON values are rendered back to their JSON text so callers
    can parse them uniformly.
    """
    rows = await pool.fetch(
        "SELECT key, value FROM state WHERE key LIKE $1 ORDER BY key",
        f"{prefix}%",
    )
    settings: dict[str, str] = {}
    for row in rows:
        value = decode_jsonb(row["value"])
        if value is None:
            continue
        settings[row["key"]] = value if isinstance(value, str) else json.dumps(value)
    return settings
