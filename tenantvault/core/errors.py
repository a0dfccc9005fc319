from __future__ import annotations


class TenantVaultError(Exception):
    """Base error for tenantvault."""


class SnapshotValidationError(TenantVaultError):
    """Snapshot failed structural, ownership, or version checks; nothing was mutated."""


class TenantNotFoundError(TenantVaultError):
    """Tenant does not exist."""


class BackupNotFoundError(TenantVaultError):
    """No backup record (or backup file) matches the request."""


class UnsupportedEntityTypeError(TenantVaultError):
    """Entity type is unknown or does not support the requested operation."""


class TransactionAbortedError(TenantVaultError):
    """A write inside the transaction failed; every change was rolled back."""


class SnapshotExportError(TenantVaultError):
    """Reading tenant data for a snapshot failed; no backup record was written."""


class SnapshotFileError(TenantVaultError):
    """Snapshot file could not be written, read, or unpacked."""


class DuplicateIdentifierError(TenantVaultError):
    """Snapshot contains the same source id twice for one entity type."""


class ArchiveConflictError(TenantVaultError):
    """Record is already live; restoring it from the archive would duplicate it."""


class TenantBusyError(TenantVaultError):
    """Another lifecycle operation holds the tenant lock."""


class TenantPredicateError(TenantVaultError, RuntimeError):
    """A tenant-scoped query was built without a tenant id or against an unscoped table."""


class InvalidFilterError(TenantVaultError):
    """Filter names a field the archive table does not have."""
