"""
status_store.py

Ordered, observable collection of ItemState for one run.

Update discipline:
    Every write is a pure function over the ENTIRE previous snapshot:
    find the item by id, build its replacement, return a new tuple. The
    new tuple is published by a single attribute assignment. Workers run on
    one event loop, so publish is atomic and no lock is needed: two workers
    touching different ids can never lose each other's writes.

Guard:
    The store refuses updates that would move an item backwards or out of a
    terminal state, and never lets progress decrease. This is what keeps a
    late worker write from resurrecting an item that stop() already marked
    "stopped".

Observers:
    on_update(items) is called after every publish with the new snapshot.
    Observer errors are logged and swallowed; a broken progress display
    must never fail an extraction. Delivery is not re-entrant: an update
    made from inside an observer is queued and delivered, in order, once
    the current snapshot has reached every observer.
"""

import dataclasses
import logging
from collections import deque
from typing import Callable, Iterable, Optional

from models import STATUS_RANK, ItemState

logger = logging.getLogger(__name__)

Mutator  = Callable[[ItemState], ItemState]
Observer = Callable[[list[ItemState]], None]


def _guarded(previous: ItemState, proposed: ItemState) -> ItemState:
    """Return the state actually published for previous → proposed."""
    if previous.is_terminal:
        return previous
    if STATUS_RANK[proposed.status] < STATUS_RANK[previous.status]:
        return previous
    progress = min(100, max(previous.progress, proposed.progress))
    if progress != proposed.progress or proposed.id != previous.id:
        proposed = dataclasses.replace(proposed, id=previous.id, progress=progress)
    return proposed


def replace_by_id(
    items: tuple[ItemState, ...],
    item_id: str,
    mutator: Mutator,
) -> tuple[ItemState, ...]:
    """Pure: new snapshot with item_id replaced by mutator(item), guarded."""
    return tuple(
        _guarded(item, mutator(item)) if item.id == item_id else item
        for item in items
    )


def replace_where(
    items: tuple[ItemState, ...],
    predicate: Callable[[ItemState], bool],
    mutator: Mutator,
) -> tuple[ItemState, ...]:
    """Pure: new snapshot with every item matching predicate replaced, guarded."""
    return tuple(
        _guarded(item, mutator(item)) if predicate(item) else item
        for item in items
    )


class StatusStore:

    def __init__(self, item_ids: Iterable[str], on_update: Optional[Observer] = None):
        self._items: tuple[ItemState, ...] = tuple(ItemState(id=i) for i in item_ids)
        self._observers: list[Observer] = []
        self._pending: deque[list[ItemState]] = deque()
        self._notifying = False
        if on_update is not None:
            self._observers.append(on_update)

    @property
    def snapshot(self) -> tuple[ItemState, ...]:
        return self._items

    def get(self, item_id: str) -> Optional[ItemState]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def update(self, item_id: str, mutator: Mutator) -> bool:
        """
        Replace one item by id. Returns True if the published state changed.

        Unknown ids and guarded (rejected) transitions are no-ops.
        """
        previous = self._items
        updated = replace_by_id(previous, item_id, mutator)
        return self._publish(previous, updated)

    def update_where(self, predicate: Callable[[ItemState], bool], mutator: Mutator) -> int:
        """Bulk replace in a single publish. Returns the number of items changed."""
        previous = self._items
        updated = replace_where(previous, predicate, mutator)
        changed = sum(1 for old, new in zip(previous, updated) if old is not new and old != new)
        self._publish(previous, updated)
        return changed

    def reset(self) -> None:
        self._publish(self._items, ())

    def _publish(
        self,
        previous: tuple[ItemState, ...],
        updated: tuple[ItemState, ...],
    ) -> bool:
        if updated == previous:
            return False
        self._items = updated
        self._pending.append(list(updated))
        if self._notifying:
            # An observer updated the store; its snapshot is delivered after
            # the current one has reached every observer.
            return True

        self._notifying = True
        try:
            while self._pending:
                snapshot = self._pending.popleft()
                for observer in self._observers:
                    try:
                        observer(snapshot)
                    except Exception as exc:
                        logger.warning(f"Progress observer raised: {exc}", exc_info=True)
        finally:
            self._notifying = False
        return True
