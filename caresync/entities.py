from __future__ import annotations

import threading
from typing import Iterable, Protocol

from caresync.models import Entity


class EntityRepository(Protocol):
    """Read/update surface the sync engine needs from the item owner.

    The engine never creates or deletes items; it only loads them and writes
    back sync-owned fields.
    """

    def get_item(self, item_id: int) -> Entity | None: ...

    def update_item(self, entity: Entity) -> Entity: ...

    def list_items(self, user_id: int) -> list[Entity]: ...

    def list_collaborator_emails(self, user_id: int) -> list[str]: ...


class InMemoryEntityRepository:
    def __init__(self, items: Iterable[Entity] = (), collaborators: dict[int, list[str]] | None = None) -> None:
        self._lock = threading.RLock()
        self._items: dict[int, Entity] = {item.item_id: item for item in items}
        self._collaborators = {int(k): list(v) for k, v in (collaborators or {}).items()}

    def add(self, entity: Entity) -> Entity:
        with self._lock:
            self._items[entity.item_id] = entity
            return entity

    def remove(self, item_id: int) -> None:
        with self._lock:
            self._items.pop(item_id, None)

    def get_item(self, item_id: int) -> Entity | None:
        with self._lock:
            return self._items.get(int(item_id))

    def update_item(self, entity: Entity) -> Entity:
        with self._lock:
            if entity.item_id not in self._items:
                raise KeyError(f"Unknown item {entity.item_id}")
            self._items[entity.item_id] = entity
            return entity

    def list_items(self, user_id: int) -> list[Entity]:
        with self._lock:
            return sorted(
                (item for item in self._items.values() if item.user_id == int(user_id)),
                key=lambda item: item.item_id,
            )

    def set_collaborators(self, user_id: int, emails: list[str]) -> None:
        with self._lock:
            self._collaborators[int(user_id)] = list(emails)

    def list_collaborator_emails(self, user_id: int) -> list[str]:
        with self._lock:
            return list(self._collaborators.get(int(user_id), []))
