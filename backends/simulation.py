# -*- coding: utf-8 -*-
"""
Simulation mode backends

Drop-in replacements for the Sora and YouTube backends that never touch
the network: randomized delays plus a canned placeholder video. The
orchestrators run exactly the same state transitions against them.
"""

import random
import logging
from datetime import datetime
from typing import Dict, Optional

from clock import SystemClock, system_clock
from config import DurationBucket, ProductionConfig, PublishConfig, production_config, publish_config
from backends.sora import PollResult
from work_items import ScriptContent

logger = logging.getLogger(__name__)

SIMULATED_URL_PREFIX = "sim://artifacts/"

# Smallest useful MP4 header ("ftyp" box) followed by filler
PLACEHOLDER_VIDEO = (
    b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom"
    + b"\x00\x00\x00\x08free"
    + b"SIMULATED-SORA-STUDIO-ARTIFACT" * 32
)


class _SimulatedDelays:
    def __init__(self, clock: SystemClock = None, rng: random.Random = None):
        self.clock = clock or system_clock
        self.rng = rng or random.Random()

    async def _pause(self, bounds) -> float:
        low, high = bounds
        delay = self.rng.uniform(low, high) if high > low else low
        await self.clock.sleep(delay)
        return delay


class SimulatedTaskSubmitter(_SimulatedDelays):
    def __init__(self, config: ProductionConfig = None, clock: SystemClock = None, rng: random.Random = None):
        super().__init__(clock, rng)
        self.config = config or production_config

    async def submit(self, prompt: str, duration: DurationBucket, headers: Dict[str, str]) -> str:
        await self._pause(self.config.sim_submit_delay)
        task_id = f"SIM-{self.rng.randrange(100000)}"
        logger.info(f"[Simulation] Task {task_id} accepted ({DurationBucket(duration).n_frames} frames)")
        return task_id


class SimulatedTaskPoller(_SimulatedDelays):
    def __init__(self, config: ProductionConfig = None, clock: SystemClock = None, rng: random.Random = None):
        super().__init__(clock, rng)
        self.config = config or production_config

    async def wait_for_artifact(self, task_id: str, prompt: str, headers: Dict[str, str], not_before: float) -> PollResult:
        delay = await self._pause(self.config.sim_monitor_delay)
        return PollResult(
            task_id=task_id,
            download_url=f"{SIMULATED_URL_PREFIX}{task_id}.mp4",
            record={"id": task_id, "prompt": prompt},
            polls=1,
            elapsed_sec=delay,
        )


class SimulatedArtifactFetcher:
    async def fetch(self, download_url: str) -> bytes:
        return PLACEHOLDER_VIDEO


class SimulatedPublisher(_SimulatedDelays):
    def __init__(self, config: PublishConfig = None, clock: SystemClock = None, rng: random.Random = None):
        super().__init__(clock, rng)
        self.config = config or publish_config

    async def publish(self, data: bytes, content: ScriptContent, publish_at: datetime, token: Optional[str]) -> str:
        await self.clock.sleep(self.config.sim_upload_delay)
        alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
        video_id = "sim_yt_" + "".join(self.rng.choice(alphabet) for _ in range(6))
        logger.info(f"[Simulation] Published '{content.title}' as {video_id}")
        return video_id
