"""Tombstones for contacts deleted after being imported from an external source.

Re-exports the public API so callers can ``from importguard.tombstones import X``.
"""

from importguard.tombstones.hooks import (
    ExternalIdMap,
    ExternalIdRefs,
    LegacyExternalId,
    NoExternalIds,
    record_entity_deletion,
    resolve_external_ids,
)
from importguard.tombstones.imports import (
    any_deleted_import,
    get_deleted_external_ids,
    is_deleted_import,
    list_deleted_imports,
    record_deleted_import,
    record_deleted_imports,
    undelete_import,
)
from importguard.tombstones.models import (
    SOURCE_GMAIL,
    SOURCE_GOOGLE_CONTACTS,
    DeletedImport,
)

__all__ = [
    "SOURCE_GMAIL",
    "SOURCE_GOOGLE_CONTACTS",
    "DeletedImport",
    "ExternalIdMap",
    "ExternalIdRefs",
    "LegacyExternalId",
    "NoExternalIds",
    "any_deleted_import",
    "get_deleted_external_ids",
    "is_deleted_import",
    "list_deleted_imports",
    "record_deleted_import",
    "record_deleted_imports",
    "record_entity_deletion",
    "resolve_external_ids",
    "undelete_import",
]
