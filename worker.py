# -*- coding: utf-8 -*-
"""
Batch production worker for Sora Studio

Handles:
- Pre-flight validation of a production batch
- Concurrent Submit → Poll → Fetch pipelines, one per selected item
- Per-item error containment
- Cancellation on shutdown
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from artifacts import ArtifactSink
from backends.simulation import SimulatedArtifactFetcher, SimulatedTaskPoller, SimulatedTaskSubmitter
from backends.sora import ArtifactFetcher, TaskPoller, TaskSubmitter
from clock import SystemClock, system_clock
from config import DurationBucket, ErrorCode, ItemStatus, ProductionConfig, production_config
from credentials import CredentialEntry, parse_headers_from_curl, require_authorization
from error_handler import (
    ValidationError, error_handler, format_error_for_log, format_error_for_user, mask_secret,
)
from work_items import IN_FLIGHT, TERMINAL, ItemEvent, WorkItemBoard

logger = logging.getLogger(__name__)

CANCELLED_LOG = "❌ Error: production cancelled"


@dataclass
class ProductionReport:
    """Outcome of one production batch"""
    item_ids: List[str]
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    duration_sec: float = 0.0
    simulated: bool = False

    def to_dict(self) -> Dict:
        return {
            "item_ids": list(self.item_ids),
            "completed": list(self.completed),
            "failed": list(self.failed),
            "duration_sec": round(self.duration_sec, 2),
            "simulated": self.simulated,
        }


class ProductionWorker:
    """
    Fans out one pipeline per selected item and waits for all of them.

    Every pipeline owns exactly one item id, so pipelines never write the
    same item and no locking is needed.
    """

    def __init__(
        self,
        board: WorkItemBoard,
        sink: ArtifactSink,
        client: Optional[httpx.AsyncClient] = None,
        config: ProductionConfig = None,
        clock: SystemClock = None,
        rng: random.Random = None,
    ):
        self.board = board
        self.sink = sink
        self.client = client
        self.config = config or production_config
        self.clock = clock or system_clock
        self.rng = rng or random.Random()

        self._tasks: Dict[str, asyncio.Task] = {}
        self._finished = 0

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def _backends(self, simulate: bool) -> Tuple:
        if simulate:
            return (
                SimulatedTaskSubmitter(self.config, self.clock, self.rng),
                SimulatedTaskPoller(self.config, self.clock, self.rng),
                SimulatedArtifactFetcher(),
            )
        if self.client is None:
            raise ValidationError("No HTTP client available for the generation backend",
                                  code=ErrorCode.INVALID_CONFIG)
        return (
            TaskSubmitter(self.client, self.config),
            TaskPoller(self.client, self.config, self.clock),
            ArtifactFetcher(self.client, self.config),
        )

    # ============ Pre-flight ============

    def preflight(
        self,
        item_ids: Sequence[str],
        credential: Optional[CredentialEntry],
        duration,
        simulate: bool,
    ) -> Tuple[List[str], DurationBucket, Dict[str, str]]:
        """Validate a batch before any item changes state"""
        item_ids = list(dict.fromkeys(item_ids))
        if not item_ids:
            raise ValidationError("Select at least one script to produce")

        missing = [i for i in item_ids if i not in self.board]
        if missing:
            raise ValidationError(f"Unknown items: {', '.join(missing)}")

        for item in self.board.items(item_ids):
            if item.state.status in IN_FLIGHT:
                raise ValidationError(
                    f"'{item.content.title}' is already in production",
                    item_id=item.id,
                )

        try:
            duration = DurationBucket(duration)
        except ValueError:
            raise ValidationError(f"Unsupported duration: {duration}", code=ErrorCode.INVALID_CONFIG)

        config_errors = self.config.validate()
        if config_errors:
            raise ValidationError("; ".join(config_errors), code=ErrorCode.INVALID_CONFIG)

        headers: Dict[str, str] = {}
        if not simulate:
            if credential is None:
                raise ValidationError("Add a Sora cURL credential first", code=ErrorCode.INVALID_CREDENTIAL)
            headers = require_authorization(parse_headers_from_curl(credential.value))

        return item_ids, duration, headers

    # ============ Batch ============

    async def run_batch(
        self,
        item_ids: Sequence[str],
        credential: Optional[CredentialEntry] = None,
        duration=DurationBucket.SHORT,
        simulate: bool = False,
    ) -> ProductionReport:
        """Run one production batch; only pre-flight errors propagate"""
        if self.is_running:
            raise ValidationError("A production batch is already running")

        item_ids, duration, headers = self.preflight(item_ids, credential, duration, simulate)
        backends = self._backends(simulate)

        started = self.clock.monotonic()
        not_before = self.clock.time() - self.config.created_at_slack_sec
        started_at = self.clock.now()

        if simulate:
            start_log = "🧪 [Simulation] Connecting to virtual server..."
        else:
            start_log = f"🚀 Using account #{credential.position + 1} to connect to Sora..."
            logger.info(
                f"[Worker] Production batch of {len(item_ids)} items with credential "
                f"#{credential.position + 1} ({mask_secret(headers['authorization'])})"
            )

        for item_id in item_ids:
            self.board.start_run(item_id, start_log, started_at)

        self._finished = 0
        self._tasks = {
            item_id: asyncio.create_task(
                self._run_pipeline(item_id, duration, headers, not_before, backends, simulate, len(item_ids)),
                name=f"production-{item_id}",
            )
            for item_id in item_ids
        }

        # Pipelines contain their own errors; gather is only the completion barrier
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

        report = ProductionReport(
            item_ids=item_ids,
            duration_sec=self.clock.monotonic() - started,
            simulated=simulate,
        )
        for item in self.board.items(item_ids):
            if item.state.status == ItemStatus.COMPLETED:
                report.completed.append(item.id)
            else:
                report.failed.append(item.id)

        logger.info(
            f"[Worker] Batch finished: {len(report.completed)} completed, "
            f"{len(report.failed)} failed in {report.duration_sec:.0f}s"
        )
        self.board.broadcast({"type": "batch_completed", **report.to_dict()})
        return report

    async def _run_pipeline(
        self,
        item_id: str,
        duration: DurationBucket,
        headers: Dict[str, str],
        not_before: float,
        backends: Tuple,
        simulate: bool,
        total: int,
    ):
        submitter, poller, fetcher = backends
        content = self.board.get(item_id).content
        prompt = content.production_prompt
        tag = "[Simulation] " if simulate else ""

        try:
            task_id = await submitter.submit(prompt, duration, headers)
            self.board.apply(ItemEvent.status(
                item_id, ItemStatus.MONITORING,
                f"✅ {tag}Task submitted, ID: {task_id}\n📡 Monitoring queue...",
                task_id=task_id,
            ))

            result = await poller.wait_for_artifact(task_id, prompt, headers, not_before)
            data = await fetcher.fetch(result.download_url)
            handle = await asyncio.to_thread(self.sink.save, item_id, content.title, data)

            self.board.apply(ItemEvent.status(
                item_id, ItemStatus.COMPLETED,
                f"🎉 {tag}Production complete! Downloaded.",
                artifact=handle,
            ))
        except asyncio.CancelledError:
            self._mark_error(item_id, CANCELLED_LOG)
            raise
        except Exception as e:
            record = error_handler.classify_exception(e, context={"item_id": item_id})
            if record.code == ErrorCode.UNKNOWN:
                logger.error(f"[Worker] Item {item_id} failed:\n{format_error_for_log(record)}")
            else:
                logger.warning(f"[Worker] Item {item_id} failed: [{record.code.value}] {record.message}")
            self._mark_error(item_id, format_error_for_user(record))
        finally:
            self._finished += 1
            logger.info(f"[Worker] {self._finished}/{total} items finished")

    def _mark_error(self, item_id: str, progress_log: str):
        if self.board.get(item_id).state.status in TERMINAL:
            return
        self.board.apply(ItemEvent.status(item_id, ItemStatus.ERROR, progress_log))

    # ============ Teardown ============

    async def shutdown(self):
        """Cancel in-flight pipelines; their items end in error"""
        pending = [task for task in self._tasks.values() if not task.done()]
        if not pending:
            return
        logger.info(f"[Worker] Shutting down - cancelling {len(pending)} pipelines")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("[Worker] Shutdown complete")
