"""Insert-or-update of transformed records keyed by their IGDB id."""

from __future__ import annotations

import enum
import logging

from catalog_sync.errors import PersistenceError
from catalog_sync.resources import ResourceSpec
from catalog_sync.store import CatalogStore
from catalog_sync.transform import LocalRecordDraft

logger = logging.getLogger(__name__)


class UpsertOutcome(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"


class Upserter:
    """Write drafts into ``store``, overwriting existing rows unconditionally."""

    def __init__(self, store: CatalogStore, spec: ResourceSpec) -> None:
        self._store = store
        self._spec = spec

    def upsert(self, draft: LocalRecordDraft) -> UpsertOutcome:
        resource = self._spec.name
        try:
            existing = self._store.find_by_external_id(resource, draft.external_id)
            if existing is not None:
                self._store.update(resource, existing["id"], draft)
                logger.debug("Updated %s %s", resource, draft.external_id)
                return UpsertOutcome.UPDATED
            self._store.insert(resource, draft)
            logger.debug("Created %s %s", resource, draft.external_id)
            return UpsertOutcome.CREATED
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(resource, draft.external_id, str(exc)) from exc


__all__ = ["UpsertOutcome", "Upserter"]
