# -*- coding: utf-8 -*-
"""
Studio session

The long-lived client session: owns the work item board, the selection,
the credential pools and settings, and drives the production and
publishing workers. Everything runs on one event loop.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx

from artifacts import ArtifactSink
from backends.storage import get_storage
from clock import SystemClock, system_clock
from config import (
    CredentialKind, DurationBucket, ErrorCode, ItemStatus, ScriptEngine, app_config,
    get_gemini_keys_from_env, get_openai_key_from_env, get_sora_curls_from_env, get_youtube_tokens_from_env,
)
from credentials import CredentialEntry, CredentialPool
from error_handler import ValidationError, mask_secret
from models import get_db, get_setting, load_credentials, save_credentials, set_setting
from publisher import PublishReport, PublishWorker, eligible_items
from scheduler import smart_schedule
from script_generator import ScriptGenerator
from work_items import ItemEvent, ScriptContent, WorkItem, WorkItemBoard
from worker import ProductionReport, ProductionWorker

logger = logging.getLogger(__name__)

SETTING_KEYS = ("active_sora_index", "use_simulation", "openai_key")

# Content fields a user may edit
EDITABLE_FIELDS = {
    "title", "concept", "visual_prompt", "description", "tags",
    "scene_details", "camera_movement", "duration_estimate", "notes",
}

_ENV_LOADERS = {
    CredentialKind.SORA: get_sora_curls_from_env,
    CredentialKind.YOUTUBE: get_youtube_tokens_from_env,
    CredentialKind.GEMINI: get_gemini_keys_from_env,
}


class StudioSession:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        clock: SystemClock = None,
        sink: ArtifactSink = None,
        script_generator: ScriptGenerator = None,
        persist: bool = True,
    ):
        self.clock = clock or system_clock
        self.client = client
        self._owns_client = client is None
        self.persist = persist

        self.board = WorkItemBoard()
        self.selection: List[str] = []
        self.pools: Dict[CredentialKind, CredentialPool] = {
            kind: CredentialPool(kind) for kind in CredentialKind
        }
        self.use_simulation = app_config.use_simulation
        self.openai_key: Optional[str] = None

        self.sink = sink or ArtifactSink(app_config.outputs_dir, get_storage())
        self.script_generator = script_generator or ScriptGenerator()
        self.production = ProductionWorker(self.board, self.sink, self.client, clock=self.clock)
        self.publisher = PublishWorker(self.board, self.sink, self.client, clock=self.clock)
        self._production_task: Optional[asyncio.Task] = None

    # ============ Lifecycle ============

    def load(self):
        """Load pools and settings from the store; seed empty pools from the environment"""
        if self.client is None:
            self.client = httpx.AsyncClient()
            self.production.client = self.client
            self.publisher.client = self.client

        if not self.persist:
            for kind, loader in _ENV_LOADERS.items():
                self.pools[kind] = CredentialPool(kind, loader())
            self.openai_key = get_openai_key_from_env()
            return

        with get_db() as db:
            for kind, loader in _ENV_LOADERS.items():
                values = load_credentials(db, kind)
                if not values:
                    values = loader()
                    if values:
                        save_credentials(db, kind, values)
                self.pools[kind] = CredentialPool(kind, values)

            active = get_setting(db, "active_sora_index", 0)
            self.pools[CredentialKind.SORA].active_index = (
                active if isinstance(active, int) and 0 <= active < len(self.pools[CredentialKind.SORA]) else 0
            )
            self.use_simulation = bool(get_setting(db, "use_simulation", app_config.use_simulation))
            self.openai_key = get_setting(db, "openai_key") or get_openai_key_from_env()

        logger.info(
            "[Session] Loaded "
            + ", ".join(f"{len(pool)} {kind.value}" for kind, pool in self.pools.items())
            + f" credentials (simulation={self.use_simulation})"
        )

    async def shutdown(self):
        await self.production.shutdown()
        if self._production_task is not None and not self._production_task.done():
            self._production_task.cancel()
            await asyncio.gather(self._production_task, return_exceptions=True)
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None
        logger.info("[Session] Closed")

    # ============ Settings ============

    def settings(self) -> Dict[str, Any]:
        return {
            "active_sora_index": self.pools[CredentialKind.SORA].active_index,
            "use_simulation": self.use_simulation,
            "openai_key": mask_secret(self.openai_key) if self.openai_key else None,
        }

    def save_settings(self, openai_key: Optional[str] = None, use_simulation: Optional[bool] = None) -> Dict[str, Any]:
        if openai_key is not None:
            openai_key = openai_key.strip()
            if openai_key.startswith("AIza"):
                raise ValidationError(
                    "That looks like a Google API key; put it in the Gemini key pool instead",
                    code=ErrorCode.INVALID_CREDENTIAL,
                )
            self.openai_key = openai_key or None
            self._store_setting("openai_key", self.openai_key)
        if use_simulation is not None:
            self.set_simulation(use_simulation)
        return self.settings()

    def set_simulation(self, enabled: bool):
        self.use_simulation = bool(enabled)
        self._store_setting("use_simulation", self.use_simulation)
        logger.info(f"[Session] Simulation mode {'on' if self.use_simulation else 'off'}")

    def _store_setting(self, key: str, value: Any):
        if self.persist:
            with get_db() as db:
                set_setting(db, key, value)

    # ============ Credentials ============

    def pool(self, kind) -> CredentialPool:
        try:
            return self.pools[CredentialKind(kind)]
        except ValueError:
            raise ValidationError(f"Unknown credential kind: {kind}", code=ErrorCode.INVALID_CREDENTIAL)

    def add_credential(self, kind, value: str) -> CredentialEntry:
        pool = self.pool(kind)
        entry = pool.add(value)
        self._store_pool(pool)
        logger.info(f"[Session] Added {pool.kind.value} credential #{entry.position + 1} ({entry.suffix})")
        return entry

    def remove_credential(self, kind, index: int) -> CredentialEntry:
        pool = self.pool(kind)
        entry = pool.remove(index)
        self._store_pool(pool)
        if pool.kind == CredentialKind.SORA:
            self._store_setting("active_sora_index", pool.active_index)
        logger.info(f"[Session] Removed {pool.kind.value} credential #{index + 1}")
        return entry

    def select_sora_credential(self, index: int) -> CredentialEntry:
        entry = self.pools[CredentialKind.SORA].select(index)
        self._store_setting("active_sora_index", index)
        return entry

    def _store_pool(self, pool: CredentialPool):
        if self.persist:
            with get_db() as db:
                save_credentials(db, pool.kind, pool.values)

    # ============ Scripts ============

    async def generate_scripts(self, engine, idea: str, count: int, duration=DurationBucket.SHORT) -> List[WorkItem]:
        """Replace the board with a fresh batch and select all of it"""
        if not idea or not idea.strip():
            raise ValidationError("Describe the video idea first", code=ErrorCode.INVALID_CONFIG)
        if count < 1:
            raise ValidationError("Script count must be at least 1", code=ErrorCode.INVALID_CONFIG)
        if self.production.is_running or self.publisher.is_running:
            raise ValidationError("Wait for the running batch to finish before writing new scripts")

        scripts = await self.script_generator.generate(
            ScriptEngine(engine), idea.strip(), count, DurationBucket(duration),
            gemini_keys=self.pools[CredentialKind.GEMINI].values,
            openai_key=self.openai_key,
        )
        self.board.replace_batch(scripts)
        self.selection = self.board.ids()
        return self.board.items()

    def update_content(self, item_id: str, **fields) -> ScriptContent:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        return self.board.update_content(item_id, **fields)

    def update_tags(self, item_id: str, tags_text: str) -> ScriptContent:
        """Comma separated tags, blanks dropped"""
        tags = [t.strip() for t in (tags_text or "").split(",") if t.strip()]
        return self.board.update_content(item_id, tags=tags)

    async def refine_prompt(self, item_id: str) -> ScriptContent:
        content = self.board.get(item_id).content
        prompt = await self.script_generator.refine_visual_prompt(
            content.concept, gemini_keys=self.pools[CredentialKind.GEMINI].values,
        )
        return self.board.update_content(item_id, visual_prompt=prompt)

    # ============ Selection ============

    def toggle_select(self, item_id: str) -> List[str]:
        self.board.get(item_id)
        if item_id in self.selection:
            self.selection.remove(item_id)
        else:
            self.selection.append(item_id)
        return self.selected_ids()

    def set_selection(self, item_ids: Iterable[str]) -> List[str]:
        item_ids = list(item_ids)
        for item_id in item_ids:
            self.board.get(item_id)
        self.selection = list(dict.fromkeys(item_ids))
        return self.selected_ids()

    def selected_ids(self) -> List[str]:
        """Selected ids in board order"""
        wanted = set(self.selection)
        return [i for i in self.board.ids() if i in wanted]

    # ============ Production ============

    async def run_production(self, duration=DurationBucket.SHORT) -> ProductionReport:
        return await self.production.run_batch(
            self.selected_ids(),
            credential=self.pools[CredentialKind.SORA].active(),
            duration=duration,
            simulate=self.use_simulation,
        )

    def start_production(self, duration=DurationBucket.SHORT) -> List[str]:
        """Validate, then run the batch in the background; returns the item ids"""
        if self._production_task is not None and not self._production_task.done():
            raise ValidationError("A production batch is already running")

        item_ids, duration, _ = self.production.preflight(
            self.selected_ids(),
            self.pools[CredentialKind.SORA].active(),
            duration,
            self.use_simulation,
        )
        self._production_task = asyncio.create_task(self._run_production_logged(duration), name="production-batch")
        return item_ids

    async def _run_production_logged(self, duration: DurationBucket) -> Optional[ProductionReport]:
        try:
            return await self.run_production(duration)
        except ValidationError as e:
            logger.warning(f"[Session] Production batch rejected: {e.message}")
            return None

    async def wait_for_production(self) -> Optional[ProductionReport]:
        """Report of the background batch, once it finishes"""
        if self._production_task is None:
            return None
        return await self._production_task

    # ============ Scheduling & publishing ============

    def apply_smart_schedule(self) -> Dict[str, datetime]:
        items = eligible_items(self.board, self.selected_ids())
        if not items:
            raise ValidationError("No completed videos selected to schedule")

        schedule = smart_schedule([item.id for item in items], self.clock.now())
        for item_id, publish_at in schedule:
            self.board.apply(ItemEvent(item_id, {"scheduled_publish_at": publish_at}))
        logger.info(f"[Session] Scheduled {len(schedule)} videos starting {schedule[0][1].isoformat()}")
        return dict(schedule)

    def set_publish_time(self, item_id: str, publish_at: datetime) -> WorkItem:
        if publish_at.tzinfo is None:
            publish_at = publish_at.astimezone()
        item = self.board.get(item_id)
        if item.state.status != ItemStatus.COMPLETED:
            raise ValidationError(f"'{item.content.title}' has not finished production", item_id=item_id)
        return self.board.apply(ItemEvent(item_id, {"scheduled_publish_at": publish_at}))

    async def run_publish(self) -> PublishReport:
        return await self.publisher.run_batch(
            self.selected_ids(),
            self.pools[CredentialKind.YOUTUBE],
            simulate=self.use_simulation,
        )

    def export_item(self, item_id: str, dest: Path) -> Path:
        item = self.board.get(item_id)
        if item.state.artifact is None:
            raise ValidationError(f"'{item.content.title}' has no video to export", item_id=item_id)
        return self.sink.export_item(item.content, item.state.artifact, dest)
