# -*- coding: utf-8 -*-
"""
Work items for Sora Studio

A work item is two records sharing one id:
- ScriptContent: immutable script text supplied by the content provider
- ItemState: orchestration state, changed only by applying ItemEvents

The board enforces the status state machine and broadcasts every applied
event to subscribers (SSE streams, tests).
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime
from typing import Dict, List, Optional, Iterable, Any, Tuple

from config import ItemStatus, PublishStatus
from error_handler import InvalidTransitionError, ItemNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SceneDetails:
    setting: str = ""
    lighting: str = ""
    atmosphere: str = ""


@dataclass(frozen=True)
class ScriptContent:
    """One script as returned by the content provider"""
    id: str
    title: str
    concept: str = ""
    visual_prompt: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()
    scene_details: SceneDetails = field(default_factory=SceneDetails)
    camera_movement: str = ""
    duration_estimate: str = ""
    notes: str = ""

    @property
    def production_prompt(self) -> str:
        return self.visual_prompt or self.concept

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data


@dataclass(frozen=True)
class ArtifactHandle:
    """Reference to a fetched video stored by the ArtifactSink"""
    item_id: str
    path: str
    size_bytes: int
    sha256: str
    storage_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemState:
    status: ItemStatus = ItemStatus.IDLE
    progress_log: str = ""
    started_at: Optional[datetime] = None
    task_id: Optional[str] = None
    artifact: Optional[ArtifactHandle] = None
    publish_status: PublishStatus = PublishStatus.NONE
    publish_id: Optional[str] = None
    scheduled_publish_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "progress_log": self.progress_log,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "task_id": self.task_id,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "publish_status": self.publish_status.value,
            "publish_id": self.publish_id,
            "scheduled_publish_at": self.scheduled_publish_at.isoformat() if self.scheduled_publish_at else None,
        }


@dataclass(frozen=True)
class WorkItem:
    """Read-only view combining content and state"""
    content: ScriptContent
    state: ItemState

    @property
    def id(self) -> str:
        return self.content.id

    def to_dict(self) -> Dict[str, Any]:
        return {**self.content.to_dict(), **self.state.to_dict()}


# Fields an event may set; anything else is rejected
_EVENT_FIELDS = {
    "status", "progress_log", "started_at", "task_id", "artifact",
    "publish_status", "publish_id", "scheduled_publish_at",
}

_ALLOWED_TRANSITIONS = {
    ItemStatus.IDLE: {ItemStatus.PROCESSING},
    ItemStatus.PROCESSING: {ItemStatus.MONITORING, ItemStatus.ERROR},
    ItemStatus.MONITORING: {ItemStatus.COMPLETED, ItemStatus.ERROR},
    # Terminal states are only left by a fresh resubmission
    ItemStatus.COMPLETED: {ItemStatus.PROCESSING},
    ItemStatus.ERROR: {ItemStatus.PROCESSING},
}

IN_FLIGHT = (ItemStatus.PROCESSING, ItemStatus.MONITORING)
TERMINAL = (ItemStatus.COMPLETED, ItemStatus.ERROR)


@dataclass(frozen=True)
class ItemEvent:
    """A change to one item's orchestration state"""
    item_id: str
    changes: Dict[str, Any]
    kind: str = "item_updated"

    @classmethod
    def status(cls, item_id: str, status: ItemStatus, progress_log: str, **extra) -> "ItemEvent":
        return cls(item_id=item_id, changes={"status": status, "progress_log": progress_log, **extra})


class WorkItemBoard:
    """
    Collection of work items for one session.

    Every item is written by exactly one pipeline at a time, and all
    writers run on the same event loop, so apply() needs no lock.
    """

    def __init__(self):
        self._contents: Dict[str, ScriptContent] = {}
        self._states: Dict[str, ItemState] = {}
        self._order: List[str] = []
        self._subscribers: List[asyncio.Queue] = []

    # ============ Content ============

    def replace_batch(self, contents: Iterable[ScriptContent]):
        """Replace every item with a fresh batch (all idle)"""
        contents = list(contents)
        seen = set()
        for content in contents:
            if content.id in seen:
                raise InvalidTransitionError(f"Duplicate item id in batch: {content.id}")
            seen.add(content.id)
        self._contents = {c.id: c for c in contents}
        self._states = {c.id: ItemState() for c in contents}
        self._order = [c.id for c in contents]
        self._broadcast({"type": "batch_replaced", "item_ids": list(self._order)})

    def update_content(self, item_id: str, **fields) -> ScriptContent:
        content = self._require_content(item_id)
        if "id" in fields:
            raise InvalidTransitionError("Item id cannot be changed")
        if "tags" in fields:
            fields["tags"] = tuple(fields["tags"])
        if "scene_details" in fields and isinstance(fields["scene_details"], dict):
            fields["scene_details"] = SceneDetails(**fields["scene_details"])
        updated = replace(content, **fields)
        self._contents[item_id] = updated
        self._broadcast({"type": "content_updated", "item_id": item_id})
        return updated

    # ============ Queries ============

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._contents

    def __len__(self) -> int:
        return len(self._order)

    def ids(self) -> List[str]:
        return list(self._order)

    def get(self, item_id: str) -> WorkItem:
        content = self._require_content(item_id)
        return WorkItem(content=content, state=replace(self._states[item_id]))

    def items(self, item_ids: Iterable[str] = None) -> List[WorkItem]:
        if item_ids is None:
            return [self.get(i) for i in self._order]
        wanted = set(item_ids)
        return [self.get(i) for i in self._order if i in wanted]

    def snapshot(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.items()]

    # ============ State changes ============

    def apply(self, event: ItemEvent) -> WorkItem:
        """Validate and apply one event, then broadcast it"""
        self._require_content(event.item_id)
        state = self._states[event.item_id]

        unknown = set(event.changes) - _EVENT_FIELDS
        if unknown:
            raise InvalidTransitionError(f"Unknown state fields: {sorted(unknown)}")

        new_state = replace(state, **event.changes)
        status_changed = "status" in event.changes and event.changes["status"] != state.status

        if status_changed:
            self._check_status_transition(event.item_id, state, new_state)
        elif "artifact" in event.changes and event.changes["artifact"] is not state.artifact:
            raise InvalidTransitionError(
                f"Item {event.item_id}: artifact can only be set when the item completes"
            )

        resetting = status_changed and new_state.status == ItemStatus.PROCESSING
        publish_fields = {"publish_status", "publish_id", "scheduled_publish_at"} & set(event.changes)
        if publish_fields and new_state.status != ItemStatus.COMPLETED and not resetting:
            raise InvalidTransitionError(
                f"Item {event.item_id}: publishing fields require a completed item (status={state.status.value})"
            )
        if new_state.publish_status == PublishStatus.SUCCESS and not new_state.publish_id:
            raise InvalidTransitionError(f"Item {event.item_id}: publish success requires a publish id")
        if new_state.publish_id and new_state.publish_status != PublishStatus.SUCCESS:
            raise InvalidTransitionError(f"Item {event.item_id}: a publish id is only kept after a successful publish")

        self._states[event.item_id] = new_state
        self._broadcast({
            "type": event.kind,
            "item_id": event.item_id,
            "state": new_state.to_dict(),
        })
        return WorkItem(content=self._contents[event.item_id], state=replace(new_state))

    def _check_status_transition(self, item_id: str, old: ItemState, new: ItemState):
        if new.status not in _ALLOWED_TRANSITIONS[old.status]:
            raise InvalidTransitionError(
                f"Item {item_id}: cannot move from {old.status.value} to {new.status.value}"
            )

        if new.status == ItemStatus.PROCESSING:
            # Resubmission clears everything produced by the previous run
            if new.artifact is not None or new.publish_id is not None:
                raise InvalidTransitionError(f"Item {item_id}: resubmission must clear the previous artifact")
        elif new.status == ItemStatus.COMPLETED:
            if new.artifact is None:
                raise InvalidTransitionError(f"Item {item_id}: cannot complete without an artifact")
        elif new.artifact is not old.artifact:
            raise InvalidTransitionError(
                f"Item {item_id}: artifact can only be set when the item completes"
            )

    def start_run(self, item_id: str, progress_log: str, started_at: datetime) -> WorkItem:
        """Reset an item for a fresh production run"""
        return self.apply(ItemEvent(item_id=item_id, changes={
            "status": ItemStatus.PROCESSING,
            "progress_log": progress_log,
            "started_at": started_at,
            "task_id": None,
            "artifact": None,
            "publish_status": PublishStatus.NONE,
            "publish_id": None,
            "scheduled_publish_at": None,
        }))

    # ============ Subscriptions ============

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        logger.debug(f"[Board] Subscriber added, total: {len(self._subscribers)}")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def broadcast(self, event: Dict[str, Any]):
        """Publish a batch-level event (batch_completed, publish_completed, ...)"""
        self._broadcast(event)

    def _broadcast(self, event: Dict[str, Any]):
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def _require_content(self, item_id: str) -> ScriptContent:
        content = self._contents.get(item_id)
        if content is None:
            raise ItemNotFoundError(f"Unknown item: {item_id}", item_id=item_id)
        return content
