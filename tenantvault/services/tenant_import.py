from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any, Iterator
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.errors import (
    DuplicateIdentifierError,
    SnapshotValidationError,
    TransactionAbortedError,
)
from tenantvault.domain.models import Tenant
from tenantvault.domain.registry import PROFILE_FIELDS, EntityRegistry, EntitySpec, default_registry
from tenantvault.persistence.db import transaction_scope
from tenantvault.persistence.records import coerce_record
from tenantvault.persistence.repos.entities import insert_records
from tenantvault.services.audit import record_restore
from tenantvault.services.snapshot import Snapshot, SnapshotMetadata, parse_snapshot, read_snapshot_file


logger = logging.getLogger(__name__)

REFERENCE_UNRESOLVED = "REFERENCE_UNRESOLVED"
TENANT_KEY = "tenants"


class IdentifierMap:
    """Old-to-new identifier mapping owned by a single import call.

    Keys are ``(entity type, source id)`` so equal ids in different entity
    types never shadow each other. Destination ids are unique across the map.
    """

    def __init__(self) -> None:
        self._forward: dict[tuple[str, str], str] = {}
        self._issued: set[str] = set()

    def __len__(self) -> int:
        return len(self._forward)

    def __iter__(self) -> Iterator[tuple[tuple[str, str], str]]:
        return iter(self._forward.items())

    def seed(self, entity_type: str, old_id: str, new_id: str) -> None:
        key = (entity_type, str(old_id))
        if key in self._forward:
            raise DuplicateIdentifierError(f"{entity_type} id {old_id} appears more than once in the snapshot")
        if new_id in self._issued:
            raise DuplicateIdentifierError(f"destination id {new_id} was already issued")
        self._forward[key] = new_id
        self._issued.add(new_id)

    def assign(self, entity_type: str, old_id: str) -> str:
        # Fresh uuid per source id, regenerated until it is unique within this import.
        new_id = uuid4().hex
        while new_id in self._issued:
            new_id = uuid4().hex
        self.seed(entity_type, old_id, new_id)
        return new_id

    def resolve(self, entity_type: str, old_id: Any) -> str | None:
        if old_id is None or old_id == "":
            return None
        return self._forward.get((entity_type, str(old_id)))

    def is_bijective(self) -> bool:
        return len(set(self._forward.values())) == len(self._forward)

    def as_dict(self) -> dict[str, dict[str, str]]:
        grouped: dict[str, dict[str, str]] = {}
        for (entity_type, old_id), new_id in self._forward.items():
            grouped.setdefault(entity_type, {})[old_id] = new_id
        return grouped


@dataclass(frozen=True)
class UnresolvedReference:
    # A reference that pointed outside the snapshot's id space and was cleared.
    entity_type: str
    source_id: str
    field_path: str
    value: str
    code: str = REFERENCE_UNRESOLVED


@dataclass(frozen=True)
class ImportResult:
    new_tenant_id: str
    imported_counts: dict[str, int]
    source_metadata: SnapshotMetadata
    unresolved_references: list[UnresolvedReference] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    id_map: IdentifierMap | None = None


def _new_company_code() -> str:
    return f"CMP-{uuid4().hex[:10].upper()}"


def _remap_items(
    spec: EntitySpec,
    source_id: str,
    items: Any,
    id_map: IdentifierMap,
    unresolved: list[UnresolvedReference],
) -> Any:
    # Line items carry their own references; rewrite them through the same map.
    if not isinstance(items, list):
        return items
    remapped: list[Any] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            remapped.append(item)
            continue
        copy = dict(item)
        for name, target in spec.nested_references.items():
            value = copy.get(name)
            if value is None or value == "":
                continue
            new_id = id_map.resolve(target.value, value)
            if new_id is None:
                unresolved.append(
                    UnresolvedReference(spec.key, source_id, f"items_json[{index}].{name}", str(value))
                )
            copy[name] = new_id
        remapped.append(copy)
    return remapped


def remap_section(
    spec: EntitySpec,
    records: list[dict[str, Any]],
    *,
    new_tenant_id: str,
    id_map: IdentifierMap,
    unresolved: list[UnresolvedReference],
) -> list[dict[str, Any]]:
    """Give every record a fresh id and rewrite its references.

    All ids of the section are registered before any reference is rewritten,
    so the map is complete for this type when its rows are built.
    """
    prepared: list[tuple[str, dict[str, Any]]] = []
    for record in records:
        try:
            row = coerce_record(spec.model, record)
        except ValueError as exc:
            raise SnapshotValidationError(
                f"section {spec.key!r} has a record with an unreadable timestamp: {exc}"
            ) from exc
        source_id = row.get("id")
        if source_id in (None, ""):
            raise SnapshotValidationError(f"section {spec.key!r} has a record without an id")
        source_id = str(source_id)
        row["id"] = id_map.assign(spec.key, source_id)
        row["tenant_id"] = new_tenant_id
        prepared.append((source_id, row))

    rows: list[dict[str, Any]] = []
    for source_id, row in prepared:
        for ref in spec.references:
            value = row.get(ref.name)
            if value is None or value == "":
                continue
            new_id = id_map.resolve(ref.target.value, value)
            if new_id is None:
                unresolved.append(UnresolvedReference(spec.key, source_id, ref.name, str(value)))
            row[ref.name] = new_id
        if spec.nested_references and row.get("items_json"):
            row["items_json"] = _remap_items(spec, source_id, row["items_json"], id_map, unresolved)
        rows.append(row)
    return rows


def _build_tenant(snapshot: Snapshot, new_tenant_id: str, owner_id: str) -> Tenant:
    # Copy name and profile only; identity and ownership belong to the importer.
    profile = snapshot.tenant
    name = profile.get("name") or snapshot.metadata.tenant_name or "Imported tenant"
    values = {field_name: profile.get(field_name) for field_name in PROFILE_FIELDS}
    return Tenant(
        id=new_tenant_id,
        name=str(name),
        company_code=_new_company_code(),
        owner_id=owner_id,
        **values,
    )


async def import_snapshot(
    session: AsyncSession,
    *,
    snapshot: Snapshot | dict[str, Any],
    importing_actor_id: str,
    registry: EntityRegistry | None = None,
) -> ImportResult:
    """Clone a snapshot into a brand-new tenant owned by ``importing_actor_id``.

    Only structure is validated; the source tenant is expected to differ from
    the destination. References that do not resolve inside the snapshot are
    cleared and reported instead of failing the import. Either the new tenant
    and all of its records commit together, or nothing does.
    """
    registry = registry or default_registry()
    parsed = parse_snapshot(snapshot)
    source = parsed.metadata

    warnings: list[str] = []
    unknown = sorted(section for section in parsed.payload if not registry.is_known(section))
    if unknown:
        warnings.append(f"snapshot contains unknown sections that were ignored: {', '.join(unknown)}")

    id_map = IdentifierMap()
    new_tenant_id = uuid4().hex
    id_map.seed(TENANT_KEY, source.tenant_id, new_tenant_id)

    unresolved: list[UnresolvedReference] = []
    ordered = [spec for spec in registry.dependency_order() if spec.key in parsed.payload]
    sections = {
        spec.key: remap_section(
            spec,
            parsed.records(spec.key),
            new_tenant_id=new_tenant_id,
            id_map=id_map,
            unresolved=unresolved,
        )
        for spec in ordered
    }
    for reference in unresolved:
        logger.warning(
            "import_reference_unresolved source_tenant_id=%s entity_type=%s source_id=%s field=%s value=%s",
            source.tenant_id,
            reference.entity_type,
            reference.source_id,
            reference.field_path,
            reference.value,
        )

    counts: dict[str, int] = {}
    try:
        async with transaction_scope(session):
            session.add(_build_tenant(parsed, new_tenant_id, importing_actor_id))
            await session.flush()
            for spec in ordered:
                counts[spec.key] = await insert_records(session, spec.model, sections[spec.key])
            await record_restore(
                session,
                tenant_id=new_tenant_id,
                snapshot_id=source.snapshot_id,
                restore_type="import",
                modules=[spec.key for spec in ordered],
                records_restored=counts,
                actor_id=importing_actor_id,
            )
    except SQLAlchemyError as exc:
        logger.error(
            "import_aborted source_tenant_id=%s snapshot_id=%s",
            source.tenant_id,
            source.snapshot_id,
            exc_info=exc,
        )
        raise TransactionAbortedError(
            f"import of snapshot {source.snapshot_id} failed; no tenant was created"
        ) from exc

    logger.info(
        "import_completed source_tenant_id=%s new_tenant_id=%s records=%s unresolved=%s",
        source.tenant_id,
        new_tenant_id,
        sum(counts.values()),
        len(unresolved),
    )
    return ImportResult(
        new_tenant_id=new_tenant_id,
        imported_counts=counts,
        source_metadata=source,
        unresolved_references=unresolved,
        warnings=warnings,
        id_map=id_map,
    )


async def import_snapshot_file(
    session: AsyncSession,
    *,
    path: str | os.PathLike[str],
    importing_actor_id: str,
    registry: EntityRegistry | None = None,
) -> ImportResult:
    raw = read_snapshot_file(path)
    return await import_snapshot(
        session,
        snapshot=raw,
        importing_actor_id=importing_actor_id,
        registry=registry,
    )
