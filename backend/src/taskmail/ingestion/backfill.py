"""
Batch embedding backfill.

Finds entities without an embedding and embeds them in bounded batches.
Failures are per item: a bad provider response or a timeout is counted and
the batch moves on. Each vector is written as soon as it is produced, so a
crash mid-batch keeps everything done so far.

At most one run is in flight per process. Multi-instance deployments need a
lease-based lock in front of this (not provided).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time

from pydantic import BaseModel
from taskmail.common.exceptions import TaskmailError
from taskmail.config.loader import TaskmailConfig, get_config
from taskmail.config.models import BackfillConfig
from taskmail.db.models import EntityType
from taskmail.db.repository import EntityTextRepository, RawText
from taskmail.db.session import SessionFactory
from taskmail.embeddings.client import EmbeddingProvider
from taskmail.embeddings.text_preparer import TextPreparer, normalize_text
from taskmail.observability import record_metric, trace_operation
from taskmail.retrieval.vector_index import PgvectorIndexStore, VectorIndexStore

logger = logging.getLogger(__name__)


class BackfillState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class BackfillStats(BaseModel):
    """Counters for one run. `processed = successful + failed + skipped`."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    already_running: bool = False

    def add(self, other: BackfillStats) -> None:
        self.processed += other.processed
        self.successful += other.successful
        self.failed += other.failed
        self.skipped += other.skipped
        self.batches += other.batches


class BatchEmbeddingBackfiller:
    """Embed entities whose `embedding` is still NULL."""

    def __init__(
        self,
        repository: EntityTextRepository,
        preparer: TextPreparer,
        embedder: EmbeddingProvider,
        vector_store: VectorIndexStore,
        config: BackfillConfig | None = None,
    ) -> None:
        self._repository = repository
        self._preparer = preparer
        self._embedder = embedder
        self._vector_store = vector_store
        self._config = config or BackfillConfig()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: TaskmailConfig | None = None,
        session_factory: SessionFactory | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> BatchEmbeddingBackfiller:
        config = config or get_config()
        return cls(
            repository=EntityTextRepository(session_factory),
            preparer=TextPreparer(max_chars=config.backfill.max_text_chars),
            embedder=embedder or EmbeddingProvider.from_config(config),
            vector_store=PgvectorIndexStore(
                session_factory,
                canonical_dim=config.embedding.canonical_dim,
                config=config.vector_index,
            ),
            config=config.backfill,
        )

    @property
    def state(self) -> BackfillState:
        return BackfillState.RUNNING if self._lock.locked() else BackfillState.IDLE

    @trace_operation("backfill_batch")
    async def run_batch(
        self,
        entity_type: EntityType,
        owner_id: str | None = None,
        batch_size: int | None = None,
    ) -> BackfillStats:
        """
        Embed up to `batch_size` pending entities, oldest first.

        Returns immediately with `already_running=True` when another run is
        in progress.
        """
        if self._lock.locked():
            logger.info("Backfill already running; skipping this invocation")
            return BackfillStats(already_running=True)
        async with self._lock:
            return await self._run_batch(entity_type, owner_id, batch_size)

    @trace_operation("backfill_all")
    async def run_all(
        self,
        entity_type: EntityType,
        owner_id: str | None = None,
        max_batches: int | None = None,
    ) -> BackfillStats:
        """
        Run batches until nothing eligible remains (or `max_batches` is hit).

        Stops early when a whole batch fails, so a dead provider does not
        spin through the same rows forever.
        """
        if self._lock.locked():
            logger.info("Backfill already running; skipping this invocation")
            return BackfillStats(already_running=True)

        total = BackfillStats()
        async with self._lock:
            while max_batches is None or total.batches < max_batches:
                stats = await self._run_batch(entity_type, owner_id, None)
                if stats.processed == 0:
                    break
                total.add(stats)
                if stats.failed == stats.processed:
                    logger.warning(
                        "Every item in the last batch failed; stopping backfill"
                    )
                    break
        logger.info(
            "Backfill complete for %s: %d processed, %d ok, %d failed, %d skipped",
            EntityType(entity_type).value,
            total.processed,
            total.successful,
            total.failed,
            total.skipped,
        )
        return total

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    async def _run_batch(
        self,
        entity_type: EntityType,
        owner_id: str | None,
        batch_size: int | None,
    ) -> BackfillStats:
        entity_type = EntityType(entity_type)
        size = batch_size or self._config.batch_size
        started = time.perf_counter()

        items = await asyncio.to_thread(
            self._repository.fetch_unembedded, entity_type, size, owner_id
        )
        stats = BackfillStats()
        if not items:
            return stats
        stats.batches = 1

        for item in items:
            outcome = await self._process_item(item)
            stats.processed += 1
            if outcome == "ok":
                stats.successful += 1
            elif outcome == "skipped":
                stats.skipped += 1
            else:
                stats.failed += 1
            record_metric(
                "backfill_items_total",
                1,
                {"entity_type": entity_type.value, "outcome": outcome},
            )

        logger.info(
            "Backfill batch for %s: %d processed, %d ok, %d failed, %d skipped (%.2fs)",
            entity_type.value,
            stats.processed,
            stats.successful,
            stats.failed,
            stats.skipped,
            time.perf_counter() - started,
        )
        return stats

    def _content_length(self, item: RawText) -> int:
        content = " ".join(
            part
            for part in (
                normalize_text(item.primary_text),
                normalize_text(item.secondary_text),
            )
            if part
        )
        return len(content)

    async def _process_item(self, item: RawText) -> str:
        """Embed and write one entity. Returns "ok", "skipped" or "failed"."""
        if self._content_length(item) < self._config.min_text_length:
            try:
                await asyncio.to_thread(
                    self._repository.mark_skipped, item.entity_type, item.entity_id
                )
            except TaskmailError as e:
                logger.warning(
                    "Could not mark %s %s as skipped: %s",
                    item.entity_type.value,
                    item.entity_id,
                    e.error_code or type(e).__name__,
                )
                return "failed"
            return "skipped"

        try:
            text = self._preparer.prepare(item)
            vector = await asyncio.wait_for(
                self._embedder.embed(text),
                timeout=self._config.item_timeout_seconds,
            )
            await asyncio.to_thread(
                self._vector_store.upsert_embedding,
                item.entity_type,
                item.entity_id,
                vector,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Embedding %s %s timed out after %.0fs",
                item.entity_type.value,
                item.entity_id,
                self._config.item_timeout_seconds,
            )
            return "failed"
        except TaskmailError as e:
            logger.warning(
                "Embedding %s %s failed: %s",
                item.entity_type.value,
                item.entity_id,
                e.error_code or type(e).__name__,
            )
            return "failed"
        except Exception:
            logger.exception(
                "Unexpected error embedding %s %s",
                item.entity_type.value,
                item.entity_id,
            )
            return "failed"
        return "ok"
