"""Entity collection owned by the data-fetch layer.

The store is the only writer of ``entities``. Every change swaps in a new
tuple (and a new mapping for a patched record); the previous tuple and its
records are never touched, so a Query Engine holding the old reference keeps
seeing a consistent snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Optional

from campus_admin.core.errors import ConsoleError, classify_error
from campus_admin.services.entity_kinds import EntityKind, to_text

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[Sequence[Any]]]


class CollectionStore:
    def __init__(self, kind: EntityKind, entities: Sequence[Any] = ()) -> None:
        self.kind = kind
        self.entities: tuple[Any, ...] = tuple(entities)
        self.loading = False
        self.error: Optional[ConsoleError] = None

    def replace(self, entities: Any) -> None:
        if not isinstance(entities, (list, tuple)):
            logger.warning("Ignoring non-list %s collection of type %s", self.kind.name, type(entities).__name__)
            entities = ()
        self.entities = tuple(entities)

    async def load(self, fetch: Fetch) -> tuple[Any, ...]:
        """Await one fetch and install its result.

        Overlapping loads are neither de-duplicated nor cancelled: whichever
        response arrives last wins, and the single loading flag drops as soon
        as any of them finishes.
        """
        self.loading = True
        self.error = None
        try:
            result = await fetch()
        except Exception as exc:
            self.error = classify_error(exc)
            logger.warning("Collection load failed kind=%s error=%s", self.kind.name, self.error.kind.value)
            if self.error is exc:
                raise
            raise self.error from exc
        finally:
            self.loading = False
        self.replace(result)
        return self.entities

    def _matches(self, entity: Any, entity_id: Any) -> bool:
        return to_text(self.kind.entity_id(entity)) == to_text(entity_id)

    def find(self, entity_id: Any) -> Optional[Any]:
        for entity in self.entities:
            if entity is not None and self._matches(entity, entity_id):
                return entity
        return None

    def patch(self, entity_id: Any, changes: Mapping[str, Any]) -> bool:
        """Optimistic update of one record. Returns False if it is not loaded."""
        patched = False
        updated = []
        for entity in self.entities:
            if not patched and entity is not None and self._matches(entity, entity_id):
                base = dict(entity) if isinstance(entity, Mapping) else dict(vars(entity))
                base.update(changes)
                updated.append(base)
                patched = True
            else:
                updated.append(entity)
        if patched:
            self.entities = tuple(updated)
        return patched

    def remove(self, entity_id: Any) -> bool:
        remaining = tuple(e for e in self.entities if e is None or not self._matches(e, entity_id))
        if len(remaining) == len(self.entities):
            return False
        self.entities = remaining
        return True
