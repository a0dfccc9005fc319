from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.domain.models import Base
from tenantvault.persistence.guards import tenant_predicate


async def fetch_records(session: AsyncSession, model: type[Base], tenant_id: str) -> list[Any]:
    # Stable id ordering keeps exports and reports deterministic.
    result = await session.execute(
        select(model)
        .where(tenant_predicate(model, tenant_id))
        .order_by(model.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def fetch_ids(session: AsyncSession, model: type[Base], tenant_id: str) -> set[str]:
    result = await session.execute(select(model.id).where(tenant_predicate(model, tenant_id)))
    return set(result.scalars().all())


async def delete_tenant_records(session: AsyncSession, model: type[Base], tenant_id: str) -> int:
    result = await session.execute(
        delete(model)
        .where(tenant_predicate(model, tenant_id))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def delete_records_by_id(
    session: AsyncSession,
    model: type[Base],
    tenant_id: str,
    ids: Sequence[str],
) -> int:
    if not ids:
        return 0
    result = await session.execute(
        delete(model)
        .where(tenant_predicate(model, tenant_id), model.id.in_(list(ids)))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def insert_records(
    session: AsyncSession,
    model: type[Base],
    rows: list[dict[str, Any]],
) -> int:
    # Bulk insert through the ORM so column defaults still apply.
    if rows:
        await session.execute(insert(model), rows)
    return len(rows)
