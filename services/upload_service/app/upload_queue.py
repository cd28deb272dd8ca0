# services/upload_service/app/upload_queue.py
from typing import Iterable, Iterator, List

from core.config import logger as core_logger
from core.models import IncomingItem

logger = core_logger.getChild("UploadService").getChild("Queue")


class QueueFrozenError(RuntimeError):
    """Items were offered to a queue while its commit is running."""


class UploadQueue:
    """
    Ordered staging area for items awaiting upload.

    Insertion order is commit order. Removal never reorders the remaining items.
    While frozen (commit running) removals are ignored and appends are refused.
    """

    def __init__(self):
        self._items: List[IncomingItem] = []
        self._frozen = False

    def append(self, items: Iterable[IncomingItem]) -> int:
        """Adds items to the end in the order given. Returns how many were added."""
        items = list(items)
        if self._frozen:
            raise QueueFrozenError("Cannot add files while an upload is in progress.")
        self._items.extend(items)
        logger.debug(f"Appended {len(items)} items; queue length is now {len(self._items)}.")
        return len(items)

    def remove_at(self, index: int) -> bool:
        """Removes the item at index. Out-of-range indexes and frozen queues are a silent no-op."""
        if self._frozen:
            logger.debug(f"Ignoring removal of index {index}: queue is frozen.")
            return False
        if not 0 <= index < len(self._items):
            logger.debug(f"Ignoring removal of index {index}: queue has {len(self._items)} items.")
            return False
        del self._items[index]
        return True

    def aggregate_size(self) -> int:
        return sum(item.size for item in self._items)

    def clear(self):
        self._items.clear()

    def freeze(self):
        self._frozen = True

    def unfreeze(self):
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def items(self) -> List[IncomingItem]:
        """Snapshot copy; mutating it does not touch the queue."""
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[IncomingItem]:
        return iter(list(self._items))

    def __getitem__(self, index: int) -> IncomingItem:
        return self._items[index]
