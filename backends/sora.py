# -*- coding: utf-8 -*-
"""
Sora generation backend

Three steps per work item, all sharing one credential:
- TaskSubmitter: create-job request, returns the remote task id
- TaskPoller: watches the drafts listing until the task exposes a
  downloadable video, the backend reports failure, or the deadline passes
- ArtifactFetcher: downloads the finished video
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from clock import SystemClock, system_clock
from config import DurationBucket, ProductionConfig, production_config
from error_handler import (
    SubmissionError, TransportError, PollTimeout, TaskFailedError, FetchError, mask_secret,
)

logger = logging.getLogger(__name__)

FAILED_TASK_STATES = {"failed", "error", "cancelled", "canceled", "rejected"}


@dataclass(frozen=True)
class PollResult:
    """Terminal success of the poller"""
    task_id: str
    download_url: str
    record: Dict[str, Any]
    polls: int
    elapsed_sec: float


def _auth_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {"authorization": headers.get("authorization", "")}


class TaskSubmitter:
    """Issues create-job requests"""

    def __init__(self, client: httpx.AsyncClient, config: ProductionConfig = None):
        self.client = client
        self.config = config or production_config

    def build_payload(self, prompt: str, duration: DurationBucket) -> Dict[str, Any]:
        return {
            "kind": "video",
            "prompt": prompt,
            "orientation": self.config.orientation,
            "size": self.config.size,
            "n_frames": DurationBucket(duration).n_frames,
            "model": self.config.model,
            "n": self.config.variants,
        }

    async def submit(self, prompt: str, duration: DurationBucket, headers: Dict[str, str]) -> str:
        url = f"{self.config.base_url}{self.config.create_path}"
        request_headers = {
            "accept": "*/*",
            "authorization": headers.get("authorization", ""),
            "content-type": "application/json",
            "openai-sentinel-token": headers.get("openai-sentinel-token", ""),
        }

        try:
            response = await self.client.post(
                url,
                json=self.build_payload(prompt, duration),
                headers=request_headers,
                timeout=self.config.request_timeout_sec,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Connection failed while submitting: {type(e).__name__}: {e}") from e

        if not response.is_success:
            raise SubmissionError(response.status_code, response.text[:self.config.error_body_chars])

        try:
            task_id = response.json().get("id")
        except (ValueError, AttributeError):
            task_id = None
        if not task_id:
            raise SubmissionError(response.status_code, "response did not contain a task id")

        logger.info(f"[Submitter] Task {task_id} accepted (credential {mask_secret(headers.get('authorization', ''))})")
        return str(task_id)


def extract_download_url(record: Dict[str, Any]) -> Optional[str]:
    """Downloadable artifact reference of a draft record, if it has one yet"""
    url = record.get("downloadable_url") or record.get("url")
    if not url and isinstance(record.get("result"), dict):
        url = record["result"].get("video_url")
    return url or None


def task_failure_reason(record: Dict[str, Any]) -> Optional[str]:
    if record.get("failure_reason"):
        return str(record["failure_reason"])
    state = str(record.get("status") or record.get("state") or "").lower()
    if state in FAILED_TASK_STATES:
        return f"task {state}"
    return None


def find_task_record(
    records: List[Dict[str, Any]],
    task_id: str,
    prompt: str,
    not_before: float,
    prompt_match_chars: int = 10,
    strict: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Locate the submitted task in a drafts listing.

    An exact id match always wins. Otherwise, unless strict, fall back to
    the first record created no earlier than not_before whose prompt
    contains the first prompt_match_chars characters of the submitted
    prompt. The fallback exists because listings may omit or rename the
    task id; two near-simultaneous jobs sharing a prompt opening can be
    confused by it.
    """
    for record in records:
        if record.get("id") == task_id:
            return record

    if strict:
        return None

    needle = prompt[:prompt_match_chars]
    for record in records:
        created_at = record.get("created_at")
        remote_prompt = record.get("prompt")
        if not isinstance(created_at, (int, float)) or not isinstance(remote_prompt, str):
            continue
        if created_at >= not_before and needle in remote_prompt:
            return record
    return None


class TaskPoller:
    """
    Watches one submitted task until it yields a download URL.

    The deadline is checked at the start of every iteration; a failed
    single poll (network error, bad status, bad JSON) only costs one
    interval.
    """

    def __init__(self, client: httpx.AsyncClient, config: ProductionConfig = None, clock: SystemClock = None):
        self.client = client
        self.config = config or production_config
        self.clock = clock or system_clock

    async def list_drafts(self, headers: Dict[str, str]) -> Optional[List[Dict[str, Any]]]:
        """One status query; None means the poll is skipped"""
        url = f"{self.config.base_url}{self.config.drafts_path}"
        try:
            response = await self.client.get(
                url,
                params={"limit": self.config.drafts_limit},
                headers=_auth_headers(headers),
                timeout=self.config.request_timeout_sec,
            )
        except httpx.HTTPError as e:
            logger.warning(f"[Poller] Poll failed ({type(e).__name__}: {e}) - retrying next interval")
            return None

        if not response.is_success:
            logger.warning(f"[Poller] Poll returned {response.status_code} - retrying next interval")
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("[Poller] Poll returned non-JSON body - retrying next interval")
            return None

        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get("items") or []
        else:
            items = []
        return [item for item in items if isinstance(item, dict)]

    async def wait_for_artifact(
        self,
        task_id: str,
        prompt: str,
        headers: Dict[str, str],
        not_before: float,
    ) -> PollResult:
        started = self.clock.monotonic()
        polls = 0

        while True:
            elapsed = self.clock.monotonic() - started
            if elapsed >= self.config.production_timeout_sec:
                logger.warning(f"[Poller] Task {task_id} timed out after {elapsed:.0f}s ({polls} polls)")
                raise PollTimeout(self.config.production_timeout_sec)

            records = await self.list_drafts(headers)
            polls += 1

            if records is not None:
                record = find_task_record(
                    records, task_id, prompt, not_before,
                    prompt_match_chars=self.config.prompt_match_chars,
                    strict=self.config.strict_task_match,
                )
                if record is not None:
                    reason = task_failure_reason(record)
                    if reason:
                        raise TaskFailedError(f"Backend reported failure: {reason}", task_id=task_id)

                    download_url = extract_download_url(record)
                    if download_url:
                        elapsed = self.clock.monotonic() - started
                        logger.info(f"[Poller] Task {task_id} ready after {elapsed:.0f}s ({polls} polls)")
                        return PollResult(
                            task_id=task_id,
                            download_url=download_url,
                            record=record,
                            polls=polls,
                            elapsed_sec=elapsed,
                        )

            await self.clock.sleep(self.config.poll_interval_sec)


class ArtifactFetcher:
    """Downloads finished videos"""

    def __init__(self, client: httpx.AsyncClient, config: ProductionConfig = None):
        self.client = client
        self.config = config or production_config

    async def fetch(self, download_url: str) -> bytes:
        try:
            response = await self.client.get(
                download_url,
                timeout=self.config.download_timeout_sec,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise FetchError(f"Download failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            raise FetchError(f"Download failed with status {response.status_code}; the link may have expired")

        data = response.content
        if not data:
            raise FetchError("Download returned an empty body")

        logger.info(f"[Fetcher] Downloaded {len(data) / 1024:.0f} KB")
        return data
