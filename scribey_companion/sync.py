"""
Scribey Companion - Upload Queue

Buffers snapshots and drains them to the Scribey service in small batches.

Features:
- Single-flight draining guarded by a busy flag (no locks; everything runs
  on one asyncio loop)
- Backoff after consecutive delivery failures
- Bounded per-item retries, with failed items retried ahead of newer ones
- Rescheduling through an explicit loop timer rather than recursion
- Optional SQLite store so pending snapshots survive a restart
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .client import CompanionClient
from .config import CompanionSettings, ConfigProvider, get_settings
from .errors import DeliveryError, QueueDrop
from .models import AddonSnapshot, QueueItem

logger = logging.getLogger(__name__)


# =============================================================================
# Durable Store (SQLite)
# =============================================================================


class QueueStore:
    """SQLite-backed copy of the pending upload queue."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS upload_queue (
        item_id TEXT PRIMARY KEY,
        position REAL NOT NULL,
        source_path TEXT NOT NULL,
        snapshot TEXT NOT NULL,
        enqueued_at INTEGER NOT NULL,
        failure_count INTEGER DEFAULT 0,
        last_error TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_upload_queue_position ON upload_queue(position);
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise
        try:
            yield conn
        finally:
            if conn:
                conn.close()

    def put(self, item: QueueItem) -> None:
        """Insert or update an item. An updated item keeps its place in the queue."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT position FROM upload_queue WHERE item_id = ?",
                (item.item_id,),
            ).fetchone()

            if row:
                position = row["position"]
            else:
                position = conn.execute(
                    "SELECT COALESCE(MAX(position), 0) + 1 FROM upload_queue"
                ).fetchone()[0]

            conn.execute(
                """
                INSERT OR REPLACE INTO upload_queue
                (item_id, position, source_path, snapshot, enqueued_at,
                 failure_count, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.item_id,
                    position,
                    item.source_path,
                    json.dumps(item.snapshot.to_dict()),
                    item.enqueued_at,
                    item.failure_count,
                    item.last_error,
                ),
            )
            conn.commit()

    def remove(self, item_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM upload_queue WHERE item_id = ?", (item_id,))
            conn.commit()

    def load(self) -> list[QueueItem]:
        """Pending items in delivery order. Unreadable rows are discarded."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM upload_queue ORDER BY position ASC"
            ).fetchall()

        items = []
        for row in rows:
            try:
                snapshot = AddonSnapshot.from_dict(json.loads(row["snapshot"]))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding unreadable queue item {row['item_id']}: {e}")
                self.remove(row["item_id"])
                continue

            items.append(QueueItem(
                snapshot=snapshot,
                source_path=row["source_path"],
                enqueued_at=row["enqueued_at"],
                failure_count=row["failure_count"],
                item_id=row["item_id"],
                last_error=row["last_error"],
            ))
        return items

    def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM upload_queue").fetchone()[0]

    def clear(self) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM upload_queue")
            conn.commit()


# =============================================================================
# Upload Queue
# =============================================================================


@dataclass
class DrainResult:
    """Outcome of one drain cycle."""
    delivered: int = 0
    failed: int = 0
    requeued: int = 0
    dropped: int = 0
    skipped: Optional[str] = None  # "busy" or "backoff" when nothing was attempted

    @property
    def attempted(self) -> int:
        return self.delivered + self.failed


class UploadQueue:
    """
    FIFO of snapshots awaiting delivery.

    Item lifecycle: queued -> in flight -> delivered, requeued at the front,
    or dropped once it has failed ``max_item_failures`` times.
    """

    def __init__(
        self,
        config: ConfigProvider,
        client: CompanionClient,
        store: Optional[QueueStore] = None,
        settings: Optional[CompanionSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_drain: bool = True,
        on_drop: Optional[Callable[[QueueItem, QueueDrop], None]] = None,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.settings = settings or get_settings()
        self.auto_drain = auto_drain
        self.on_drop = on_drop
        self._clock = clock

        self._queue: deque[QueueItem] = deque()
        self._busy = False
        self._consecutive_failures = 0
        self._last_attempt: Optional[float] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._redrain_handle: Optional[asyncio.TimerHandle] = None

        if self.store:
            restored = self.store.load()
            self._queue.extend(restored)
            if restored:
                logger.info(f"Restored {len(restored)} pending uploads")

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def pending(self) -> list[QueueItem]:
        return list(self._queue)

    # === Enqueue ===

    def enqueue(self, snapshot: AddonSnapshot, source_path) -> QueueItem:
        """Append a snapshot and start draining if nothing else is."""
        item = QueueItem(snapshot=snapshot, source_path=str(source_path))
        self._queue.append(item)
        if self.store:
            self.store.put(item)

        logger.info(
            f"Queued upload {item.item_id} ({len(snapshot.characters)} characters), "
            f"{len(self._queue)} pending"
        )

        if self.auto_drain:
            self._trigger_drain()
        return item

    # === Draining ===

    def backoff_seconds(self) -> float:
        """Required quiet period before the next attempt, 0 below the threshold."""
        if self._consecutive_failures < self.settings.failure_threshold:
            return 0.0
        return min(
            self._consecutive_failures * self.settings.backoff_step_seconds,
            self.settings.max_backoff_seconds,
        )

    def _in_backoff(self) -> bool:
        backoff = self.backoff_seconds()
        if not backoff or self._last_attempt is None:
            return False

        elapsed = self._clock() - self._last_attempt
        if elapsed < backoff:
            logger.info(
                f"Backing off uploads due to {self._consecutive_failures} failures. "
                f"Waiting {backoff - elapsed:.1f}s"
            )
            return True
        return False

    async def drain(self) -> DrainResult:
        """
        Run one drain cycle: deliver up to ``batch_size`` items in order.

        Returns immediately when another cycle is running or the backoff
        window has not elapsed; queued items are left untouched then.
        """
        if self._busy:
            return DrainResult(skipped="busy")
        if not self._queue:
            return DrainResult()

        self._busy = True
        try:
            if self._in_backoff():
                return DrainResult(skipped="backoff")

            batch_size = min(self.settings.batch_size, len(self._queue))
            batch = [self._queue.popleft() for _ in range(batch_size)]
            result = DrainResult()
            retry: list[QueueItem] = []

            for index, item in enumerate(batch):
                self._last_attempt = self._clock()
                try:
                    await self.client.upload(item)
                except DeliveryError as e:
                    logger.error(f"Failed to upload item from {item.source_path}: {e}")
                    self._handle_failure(item, e, retry, result)
                except Exception as e:
                    logger.exception(f"Unexpected error uploading item from {item.source_path}")
                    self._handle_failure(item, e, retry, result)
                else:
                    self._handle_success(item, result)
                    continue

                if self._consecutive_failures >= self.settings.failure_threshold:
                    # Leave the rest of the batch for after the backoff window
                    retry.extend(batch[index + 1:])
                    break

            # Failed items go back ahead of newer ones, keeping their order
            self._queue.extendleft(reversed(retry))

            logger.info(
                f"Processed {result.attempted} items: {result.delivered} delivered, "
                f"{result.requeued} requeued, {result.dropped} dropped"
            )
            return result

        finally:
            self._busy = False
            if self._queue and self.auto_drain:
                self._schedule_redrain()

    def _handle_success(self, item: QueueItem, result: DrainResult) -> None:
        self._consecutive_failures = 0
        result.delivered += 1
        if self.store:
            self.store.remove(item.item_id)

        for character in item.snapshot.characters.values():
            self.config.update_character_sync(character.name, character.realm, item.enqueued_at)

    def _handle_failure(
        self,
        item: QueueItem,
        error: Exception,
        retry: list[QueueItem],
        result: DrainResult,
    ) -> None:
        self._consecutive_failures += 1
        item.failure_count += 1
        item.last_error = str(error)
        result.failed += 1

        if item.failure_count < self.settings.max_item_failures:
            retry.append(item)
            result.requeued += 1
            if self.store:
                self.store.put(item)
            return

        drop = QueueDrop(item.item_id, item.failure_count, str(error))
        logger.error(str(drop))
        result.dropped += 1
        if self.store:
            self.store.remove(item.item_id)
        if self.on_drop:
            self.on_drop(item, drop)

    # === Scheduling ===

    def _trigger_drain(self) -> None:
        if self._busy or (self._drain_task is not None and not self._drain_task.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, drain deferred")
            return

        self._cancel_redrain()
        self._drain_task = loop.create_task(self.drain())

    def _schedule_redrain(self) -> None:
        if self._redrain_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._redrain_handle = loop.call_later(
            self.settings.redrain_delay_seconds, self._on_redrain_timer
        )

    def _on_redrain_timer(self) -> None:
        self._redrain_handle = None
        self._trigger_drain()

    def _cancel_redrain(self) -> None:
        if self._redrain_handle is not None:
            self._redrain_handle.cancel()
            self._redrain_handle = None

    # === Control ===

    def get_status(self) -> dict:
        return {
            "queue_length": len(self._queue),
            "is_uploading": self._busy,
            "consecutive_failures": self._consecutive_failures,
        }

    def clear(self) -> None:
        self._queue.clear()
        self._cancel_redrain()
        if self.store:
            self.store.clear()
        logger.info("Upload queue cleared")

    def resume(self) -> None:
        """Start draining items restored from the store."""
        if self._queue:
            self._trigger_drain()

    def retry_failed(self) -> None:
        """Forget the failure streak and drain right away."""
        self._consecutive_failures = 0
        if self._queue and not self._busy:
            self._trigger_drain()

    async def close(self) -> None:
        """Stop rescheduling. An in-flight drain is allowed to finish."""
        self._cancel_redrain()
        if self._drain_task is not None and not self._drain_task.done():
            await asyncio.gather(self._drain_task, return_exceptions=True)
        self._cancel_redrain()
