"""Durable at-least-once work queue for verification requests.

Items live in memory and are written through a :class:`QueueStorage`
after every state transition, so a restart resumes from the last known
state.  A single background task processes at most one ready item per
tick; this serialises the expensive probe on purpose.

Item lifecycle::

    enqueue -> PENDING -> PROCESSING -> COMPLETED
                  ^            |
                  +-- retry ---+--> FAILED (attempts == max_attempts)

Completed items are purged after ``retention_seconds``; failed items stay
visible for inspection until the same retention sweep removes them.

Classes:
    ItemStatus: Status enum for queue entries.
    WorkItem: Dataclass for one durable entry.
    DurableWorkQueue: The queue and its processing loop.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from verifier.exceptions import StorageError
from verifier.storage import QueueStorage

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_RETENTION_SECONDS = 3600.0
DEFAULT_CLEANUP_INTERVAL = 300.0

Handler = Callable[[Dict[str, Any]], Awaitable[bool]]
FailureCallback = Callable[[Dict[str, Any], Optional[str]], None]


class ItemStatus(Enum):
    """Status of a queue entry."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def status_counts(raw_items: List[Dict[str, Any]]) -> Dict[str, int]:
    """Count persisted item dicts by status, plus ``total``.

    Works on storage output directly, so nothing is reconciled or
    written back.  Unknown statuses only count towards ``total``.
    """
    counts = {status.value: 0 for status in ItemStatus}
    for raw in raw_items:
        status = raw.get("status") if isinstance(raw, dict) else None
        if status in counts:
            counts[status] += 1
    counts["total"] = len(raw_items)
    return counts


_sequence = itertools.count()


def _new_item_id(now: float) -> str:
    """Unique id that sorts in generation order within a process."""
    return f"{int(now * 1000):013d}-{next(_sequence):06d}"


@dataclass
class WorkItem:
    """One durable queue entry.

    Attributes:
        id: Unique, generation-ordered identifier.
        payload: Opaque JSON-serialisable request data.
        status: Current :class:`ItemStatus`.
        attempts: Failed attempts so far.
        max_attempts: Retry budget; ``attempts`` never exceeds it.
        created_at: Epoch seconds at enqueue.
        last_attempt_at: Epoch seconds of the latest dequeue.
        completed_at: Epoch seconds when the item completed.
        last_error: Error text of the latest failed attempt.
    """

    id: str
    payload: Dict[str, Any]
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_at: float = field(default_factory=time.time)
    last_attempt_at: Optional[float] = None
    completed_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status is ItemStatus.PENDING and self.attempts < self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the item to a JSON-safe dictionary."""
        return {
            "id": self.id,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "last_attempt_at": self.last_attempt_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        """Deserialise an item, reconciling interrupted work.

        An item persisted as ``processing`` had no attempt known to be
        complete, so it comes back as ``pending``.
        """
        data = dict(data)
        status = ItemStatus(data.pop("status", ItemStatus.PENDING.value))
        if status is ItemStatus.PROCESSING:
            status = ItemStatus.PENDING
        return cls(status=status, **data)


class DurableWorkQueue:
    """Disk-persisted FIFO queue processed by a single ticker task.

    The owner registers an async handler with :meth:`set_handler`.  The
    handler returns ``True`` on success; ``False`` or an exception
    counts as a failed attempt.  Failed attempts are retried on a later
    tick until ``max_attempts`` is reached, after which the item is
    marked ``failed`` and the optional failure callback fires.
    """

    def __init__(
        self,
        storage: QueueStorage,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the queue and restore persisted items.

        Args:
            storage: Backend providing ``load``/``save``.
            max_attempts: Retry budget for new items.
            tick_interval: Seconds between processing ticks.
            retention_seconds: Age after which completed items are purged.
            cleanup_interval: Seconds between retention sweeps.
            clock: Wall-clock source (epoch seconds).
        """
        self.storage = storage
        self.max_attempts = max_attempts
        self.tick_interval = tick_interval
        self.retention_seconds = retention_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock

        self.items: List[WorkItem] = []
        self._handler: Optional[Handler] = None
        self._failure_callback: Optional[FailureCallback] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_cleanup = self._clock()

        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """Restore items from storage; unreadable entries are skipped."""
        try:
            raw_items = self.storage.load()
        except StorageError as e:
            logger.error("Could not load queue, starting empty: %s", e)
            raw_items = []

        restored = 0
        requeued = 0
        for raw in raw_items:
            try:
                was_processing = raw.get("status") == ItemStatus.PROCESSING.value
                self.items.append(WorkItem.from_dict(raw))
                restored += 1
                requeued += int(was_processing)
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning("Failed to restore queue item: %s", e)

        if restored:
            logger.info(
                "Restored %d queue items (%d interrupted items re-queued)",
                restored, requeued,
            )
            if requeued:
                self._persist()

    def _persist(self) -> None:
        """Write the full item list.  Errors are logged, never raised."""
        try:
            self.storage.save([item.to_dict() for item in self.items])
        except StorageError as e:
            logger.error("Could not persist queue: %s", e)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_handler(self, handler: Handler) -> None:
        """Register the async function called once per attempt."""
        self._handler = handler
        logger.debug("Queue handler set")

    def set_failure_callback(self, callback: FailureCallback) -> None:
        """Register a callback for items that exhaust their retries."""
        self._failure_callback = callback

    def enqueue(self, payload: Dict[str, Any]) -> str:
        """Append a pending item, persist, and make sure the loop runs.

        Args:
            payload: JSON-serialisable request data.

        Returns:
            The new item's id.
        """
        now = self._clock()
        item = WorkItem(
            id=_new_item_id(now),
            payload=payload,
            max_attempts=self.max_attempts,
            created_at=now,
        )
        self.items.append(item)
        self._persist()
        logger.info("Queued item %s (queue size: %d)", item.id, len(self.items))

        if not self.is_running:
            self.start()
        return item.id

    def get(self, item_id: str) -> Optional[WorkItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def pending_count(self) -> int:
        """Number of items still waiting for an attempt."""
        return sum(1 for item in self.items if item.is_ready)

    def stats(self) -> Dict[str, int]:
        """Item counts by status, plus ``total``."""
        counts = {status.value: 0 for status in ItemStatus}
        for item in self.items:
            counts[item.status.value] += 1
        counts["total"] = len(self.items)
        return counts

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _next_ready(self) -> Optional[WorkItem]:
        for item in self.items:
            if item.is_ready:
                return item
        return None

    def _mark_failed_attempt(self, item: WorkItem, error: str) -> None:
        item.attempts += 1
        item.last_error = error
        if item.attempts >= item.max_attempts:
            item.status = ItemStatus.FAILED
            logger.error(
                "Item %s failed permanently (%d/%d attempts): %s",
                item.id, item.attempts, item.max_attempts, error,
            )
        else:
            item.status = ItemStatus.PENDING
            logger.warning(
                "Item %s failed, will retry (%d/%d attempts): %s",
                item.id, item.attempts, item.max_attempts, error,
            )
        self._persist()

        if item.status is ItemStatus.FAILED and self._failure_callback:
            try:
                self._failure_callback(item.payload, item.last_error)
            except Exception as e:
                logger.error("Failure callback raised for %s: %s", item.id, e, exc_info=True)

    async def process_next(self) -> Optional[WorkItem]:
        """Run one tick: process the oldest ready item, if any.

        Returns:
            The processed item, or ``None`` if nothing was ready.
        """
        item = self._next_ready()
        if item is None:
            return None

        item.status = ItemStatus.PROCESSING
        item.last_attempt_at = self._clock()
        self._persist()
        logger.debug("Processing item %s", item.id)

        if self._handler is None:
            self._mark_failed_attempt(item, "No handler set")
            return item

        try:
            ok = await self._handler(item.payload)
        except asyncio.CancelledError:
            # Interrupted mid-attempt; leave it for the next run
            item.status = ItemStatus.PENDING
            self._persist()
            raise
        except Exception as e:
            logger.error("Handler raised for item %s: %s", item.id, e, exc_info=True)
            self._mark_failed_attempt(item, str(e) or type(e).__name__)
            return item

        if ok:
            item.status = ItemStatus.COMPLETED
            item.completed_at = self._clock()
            self._persist()
            logger.debug("Item %s completed", item.id)
        else:
            self._mark_failed_attempt(item, "Handler reported failure")
        return item

    def cleanup(self) -> int:
        """Purge completed and failed items older than the retention window.

        Returns:
            Number of items removed.
        """
        cutoff = self._clock() - self.retention_seconds
        before = len(self.items)

        def _expired(item: WorkItem) -> bool:
            if item.status is ItemStatus.COMPLETED:
                return (item.completed_at or item.created_at) < cutoff
            if item.status is ItemStatus.FAILED:
                return (item.last_attempt_at or item.created_at) < cutoff
            return False

        self.items = [item for item in self.items if not _expired(item)]
        removed = before - len(self.items)
        if removed:
            self._persist()
            logger.info("Cleanup: removed %d finished items", removed)
        self._last_cleanup = self._clock()
        return removed

    async def _run(self) -> None:
        logger.info("Queue processor started")
        while not self._stop_event.is_set():
            try:
                await self.process_next()
                if self._clock() - self._last_cleanup >= self.cleanup_interval:
                    self.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Queue tick failed: %s", e, exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
                break  # Stop event set during sleep
            except asyncio.TimeoutError:
                pass
        logger.info("Queue processor stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the ticker task on the running event loop.

        Outside an event loop this is a no-op; the loop is started by
        the next ``enqueue`` or ``start`` made from async code.
        """
        if self.is_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; queue processor not started")
            return
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run())

    def stop(self) -> None:
        """Signal the loop to stop after the current tick."""
        self._stop_event.set()

    async def join(self) -> None:
        """Wait for the loop to exit after :meth:`stop`."""
        if self._task is not None:
            await self._task
            self._task = None
