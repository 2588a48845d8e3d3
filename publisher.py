# -*- coding: utf-8 -*-
"""
Batch publishing for Sora Studio

Items are uploaded strictly one after another. The YouTube tokens are
copied once per batch; a token that fails is dropped from that copy and
never retried within the batch, so later items start from the first
token that still works.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import httpx

from artifacts import ArtifactSink
from backends.simulation import SimulatedPublisher
from backends.youtube import YouTubePublisher
from clock import SystemClock, system_clock
from config import ErrorCode, ItemStatus, PublishConfig, PublishStatus, publish_config
from credentials import CredentialPool, CredentialRotation
from error_handler import (
    CredentialExhaustedError, PublishError, TransportError, ValidationError,
    error_handler, format_error_for_log, format_error_for_user,
)
from work_items import ItemEvent, WorkItem, WorkItemBoard

logger = logging.getLogger(__name__)


@dataclass
class PublishReport:
    item_ids: List[str]
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    credentials_remaining: int = 0
    simulated: bool = False

    def to_dict(self) -> Dict:
        return {
            "item_ids": list(self.item_ids),
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "credentials_remaining": self.credentials_remaining,
            "simulated": self.simulated,
        }


def eligible_items(board: WorkItemBoard, item_ids: Sequence[str]) -> List[WorkItem]:
    """Selected items that finished production with an artifact"""
    return [
        item for item in board.items(item_ids)
        if item.state.status == ItemStatus.COMPLETED and item.state.artifact is not None
    ]


class PublishWorker:
    """Sequential uploader with batch-scoped credential rotation"""

    def __init__(
        self,
        board: WorkItemBoard,
        sink: ArtifactSink,
        client: Optional[httpx.AsyncClient] = None,
        config: PublishConfig = None,
        clock: SystemClock = None,
        rng: random.Random = None,
    ):
        self.board = board
        self.sink = sink
        self.client = client
        self.config = config or publish_config
        self.clock = clock or system_clock
        self.rng = rng or random.Random()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def preflight(self, item_ids: Sequence[str]) -> List[WorkItem]:
        items = eligible_items(self.board, item_ids)
        if not items:
            raise ValidationError("No completed videos selected for publishing")

        for item in items:
            if item.state.scheduled_publish_at is None:
                raise ValidationError(
                    f"Set a publish time for '{item.content.title}'",
                    code=ErrorCode.MISSING_PUBLISH_TIME,
                    item_id=item.id,
                )
        return items

    async def run_batch(
        self,
        item_ids: Sequence[str],
        pool: CredentialPool,
        simulate: bool = False,
    ) -> PublishReport:
        if self._running:
            raise ValidationError("A publish batch is already running")

        items = self.preflight(item_ids)
        rotation = pool.working_copy()

        if simulate:
            backend = SimulatedPublisher(self.config, self.clock, self.rng)
        elif self.client is None:
            raise ValidationError("No HTTP client available for the publishing backend",
                                  code=ErrorCode.INVALID_CONFIG)
        else:
            backend = YouTubePublisher(self.client, self.config)

        report = PublishReport(item_ids=[item.id for item in items], simulated=simulate)
        logger.info(
            f"[Publisher] Publishing {len(items)} videos"
            + (" (simulation)" if simulate else f" with {len(rotation)} tokens")
        )

        self._running = True
        try:
            for item in items:
                if await self._publish_item(item, backend, rotation, simulate):
                    report.succeeded.append(item.id)
                else:
                    report.failed.append(item.id)
        finally:
            self._running = False

        report.credentials_remaining = len(rotation)
        logger.info(
            f"[Publisher] Batch finished: {len(report.succeeded)} published, "
            f"{len(report.failed)} failed, {report.credentials_remaining} tokens left"
        )
        self.board.broadcast({"type": "publish_completed", **report.to_dict()})
        return report

    async def _publish_item(self, item: WorkItem, backend, rotation: CredentialRotation, simulate: bool) -> bool:
        item_id = item.id
        self.board.apply(ItemEvent(item_id, {"publish_status": PublishStatus.UPLOADING, "publish_id": None}))

        try:
            data = await asyncio.to_thread(self.sink.read, item.state.artifact)

            if simulate:
                video_id = await backend.publish(data, item.content, item.state.scheduled_publish_at, None)
            else:
                video_id = await self._publish_with_rotation(item, backend, rotation, data)
        except asyncio.CancelledError:
            self.board.apply(ItemEvent(item_id, {"publish_status": PublishStatus.FAILED, "publish_id": None}))
            raise
        except Exception as e:
            record = error_handler.classify_exception(e, context={"item_id": item_id})
            if record.code == ErrorCode.CREDENTIALS_EXHAUSTED:
                logger.warning(f"[Publisher] {item_id}: {record.message}")
            else:
                logger.error(f"[Publisher] {item_id} failed:\n{format_error_for_log(record)}")
            self.board.apply(ItemEvent(item_id, {
                "publish_status": PublishStatus.FAILED,
                "publish_id": None,
                "progress_log": format_error_for_user(record),
            }))
            return False

        self.board.apply(ItemEvent(item_id, {
            "publish_status": PublishStatus.SUCCESS,
            "publish_id": video_id,
        }))
        return True

    async def _publish_with_rotation(self, item: WorkItem, backend: YouTubePublisher,
                                     rotation: CredentialRotation, data: bytes) -> str:
        last_error: Optional[Exception] = None

        while not rotation.exhausted:
            entry = rotation.current
            try:
                return await backend.publish(data, item.content, item.state.scheduled_publish_at, entry.value)
            except (PublishError, TransportError) as e:
                last_error = e
                logger.warning(
                    f"[Publisher] Token #{entry.position + 1} ({entry.suffix}) failed for {item.id}: {e.message}"
                )
                rotation.rotate_next()

        message = "All YouTube tokens failed or none are configured"
        if last_error is not None:
            message = f"{message} (last error: {last_error})"
        raise CredentialExhaustedError(message, item_id=item.id)
