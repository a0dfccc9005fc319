from __future__ import annotations

from typing import Any

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TenantPredicateError


def require_tenant_id(tenant_id: str | None) -> None:
    settings = get_settings()
    if not settings.require_tenant_predicate:
        return
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise TenantPredicateError("lifecycle query needs a tenant id; none was given")


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    """Return ``model.tenant_id == tenant_id`` for a tenant-owned table.

    Every lifecycle read and write goes through here so that a query can
    never reach another tenant's rows.
    """
    column = getattr(model, "tenant_id", None)
    if column is None:
        raise TenantPredicateError(f"{getattr(model, '__name__', model)} is not scoped by tenant_id")
    require_tenant_id(tenant_id)
    return column == tenant_id
