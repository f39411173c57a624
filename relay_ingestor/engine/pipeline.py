"""Dedup, filter and materialize stages shared by the poll and realtime drivers."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..exceptions import MaterializationError
from ..monitoring.metrics import record_item_outcome
from ..schemas.items import IngestItem
from ..schemas.plugin import PluginMetadata
from ..schemas.results import ThreadRef
from ..schemas.source import IntegrationSource
from ..utils.logging import setup_logger
from .dedup import LedgerBook
from .filters import apply_filter, resolve_filter
from .materializer import TaskMaterializer
from .state import StateStore

logger = setup_logger(__name__, component="pipeline")

CREATED = "created"
REPLIED = "replied"
FILTERED = "filtered"
DUPLICATE = "duplicate"


@dataclass
class BatchOutcome:
    """Counters for one batch of items."""

    items_found: int = 0
    items_duplicate: int = 0
    items_filtered: int = 0
    items_created: int = 0
    items_replied: int = 0

    @property
    def items_new(self) -> int:
        return self.items_created + self.items_replied

    def count(self, outcome: str) -> None:
        if outcome == CREATED:
            self.items_created += 1
        elif outcome == REPLIED:
            self.items_replied += 1
        elif outcome == FILTERED:
            self.items_filtered += 1
        elif outcome == DUPLICATE:
            self.items_duplicate += 1


class IngestPipeline:
    """
    Processes items of one source in adapter order.

    An id reaches the ledger only after its item was fully handled, so a
    materialization failure mid-batch leaves the unhandled suffix eligible for
    re-delivery while the handled prefix stays suppressed.
    """

    def __init__(
        self,
        state_store: StateStore,
        materializer: TaskMaterializer,
        ledgers: LedgerBook,
    ) -> None:
        self.state_store = state_store
        self.materializer = materializer
        self.ledgers = ledgers

    async def process(
        self,
        source: IntegrationSource,
        metadata: PluginMetadata,
        items: Sequence[IngestItem],
    ) -> BatchOutcome:
        """
        Run a batch through dedup, filter and materialization.

        Raises:
            MaterializationError: If the work-item collaborator failed; items
                handled before the failure stay committed to the ledger
        """
        ledger = self.ledgers.for_source(source.id)
        conditions = resolve_filter(source.filter, metadata.default_filter)
        outcome = BatchOutcome(items_found=len(items))
        seen: set[str] = set()

        try:
            for item in items:
                if item.id in seen or item.id in ledger:
                    outcome.count(DUPLICATE)
                    continue
                seen.add(item.id)
                outcome.count(await self._handle(source, metadata, conditions, item))
                ledger.add(item.id)
        finally:
            self._record(metadata.type, outcome)
        return outcome

    async def _handle(
        self,
        source: IntegrationSource,
        metadata: PluginMetadata,
        conditions: list | None,
        item: IngestItem,
    ) -> str:
        if not apply_filter(item, conditions):
            return FILTERED

        if item.reply_to:
            task_id = self.state_store.lookup_work_item(source.id, item.reply_to)
            if task_id is not None:
                await self._materialize_reply(task_id, source, item)
                return REPLIED

        try:
            task_id = await self.materializer.create_work_item(source, item)
        except MaterializationError:
            raise
        except Exception as exc:
            raise MaterializationError(item.id, str(exc)) from exc

        if task_id:
            self.state_store.record_work_item(source.id, item.id, task_id, item.title)
            if metadata.capabilities.threads and source.track_replies:
                self.state_store.register_thread(source.id, item.id, task_id)
        return CREATED

    async def _materialize_reply(self, task_id: str, source: IntegrationSource, item: IngestItem) -> None:
        try:
            await self.materializer.add_reply(task_id, source, item)
        except MaterializationError:
            raise
        except Exception as exc:
            raise MaterializationError(item.id, str(exc)) from exc

    async def process_replies(
        self,
        source: IntegrationSource,
        metadata: PluginMetadata,
        threads: Sequence[ThreadRef],
        replies: Sequence[IngestItem],
    ) -> int:
        """
        Append thread replies to their parent work items.

        Replies skip the filter; duplicates are dropped through the ledger.
        Each thread's cursor advances to its newest reply once all of that
        thread's replies were appended. Returns the number of replies appended.
        """
        ledger = self.ledgers.for_source(source.id)
        appended = 0
        for thread in threads:
            batch = [reply for reply in replies if reply.reply_to == thread.parent_item_id]
            if not batch:
                continue
            fresh = [reply for reply in batch if reply.id not in ledger]
            for reply in fresh:
                await self._materialize_reply(thread.task_id, source, reply)
                ledger.add(reply.id)
            appended += len(fresh)
            self.state_store.update_thread_cursor(
                source.id, thread.parent_item_id, batch[-1].id, reply_count=len(fresh)
            )
            if fresh:
                logger.info(
                    f"Appended {len(fresh)} reply(s) to {thread.task_id}",
                    extra={"source_id": source.id, "adapter_type": metadata.type},
                )
        record_item_outcome(metadata.type, REPLIED, appended)
        return appended

    @staticmethod
    def _record(adapter_type: str, outcome: BatchOutcome) -> None:
        record_item_outcome(adapter_type, CREATED, outcome.items_created)
        record_item_outcome(adapter_type, REPLIED, outcome.items_replied)
        record_item_outcome(adapter_type, FILTERED, outcome.items_filtered)
        record_item_outcome(adapter_type, DUPLICATE, outcome.items_duplicate)
