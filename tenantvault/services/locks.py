from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import hashlib
import logging
from typing import AsyncIterator
import weakref

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TenantBusyError
from tenantvault.persistence.db import dialect_name


logger = logging.getLogger(__name__)

# asyncio.Lock binds to the loop that first waits on it, so keep one table per loop.
_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _local_lock(tenant_id: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    table = _LOCKS.setdefault(loop, {})
    lock = table.get(tenant_id)
    if lock is None:
        lock = asyncio.Lock()
        table[tenant_id] = lock
    return lock


def advisory_key(tenant_id: str) -> int:
    # Fold the tenant id into the signed 64-bit keyspace used by pg_advisory locks.
    digest = hashlib.sha256(f"tenantvault:{tenant_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


@asynccontextmanager
async def tenant_lock(
    session: AsyncSession,
    tenant_id: str,
    *,
    timeout_s: float | None = None,
) -> AsyncIterator[None]:
    """Serialize lifecycle writes on one tenant.

    The in-process lock covers concurrent tasks in this worker. On PostgreSQL a
    transaction-scoped advisory lock is also taken so separate processes queue
    behind each other; it is released when the caller's transaction ends.
    """
    timeout = get_settings().tenant_lock_timeout_s if timeout_s is None else timeout_s
    lock = _local_lock(tenant_id)
    if lock.locked():
        logger.warning("tenant_lock_wait tenant_id=%s timeout_s=%s", tenant_id, timeout)
    try:
        await asyncio.wait_for(lock.acquire(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TenantBusyError(
            f"another lifecycle operation is running for tenant {tenant_id}; retry later"
        ) from exc
    try:
        if dialect_name(session) == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": advisory_key(tenant_id)},
            )
        yield
    finally:
        lock.release()
