"""Batch production: fan-out, isolation, simulation and cancellation."""

import asyncio
import json
import random
from pathlib import Path

import httpx
import pytest

from backends.simulation import PLACEHOLDER_VIDEO
from config import ErrorCode, ItemStatus, ProductionConfig
from credentials import CredentialEntry
from error_handler import ValidationError
from worker import ProductionWorker

from conftest import FakeClock, SORA_CURL, mock_client

CREDENTIAL = CredentialEntry(value=SORA_CURL, position=0)


def sora_handler(fail_prompts=(), submitted=None, ready=True, video_body=None):
    """Fake Sora: tasks are ready on the first poll unless ready is False."""
    tasks = {}

    def handler(request: httpx.Request):
        if request.url.path == "/backend/nf/create":
            prompt = json.loads(request.content)["prompt"]
            if submitted is not None:
                submitted.append(prompt)
            if prompt in fail_prompts:
                return httpx.Response(500, text="internal error")
            task_id = f"task_{len(tasks)}"
            tasks[task_id] = prompt
            return httpx.Response(200, json={"id": task_id})
        if request.url.path == "/backend/project_y/profile/drafts":
            return httpx.Response(200, json={"items": [
                {"id": task_id, "prompt": prompt, "downloadable_url": f"https://cdn.test/{task_id}.mp4"}
                for task_id, prompt in tasks.items() if ready
            ]})
        if request.url.host == "cdn.test":
            body = f"video:{request.url.path}".encode() if video_body is None else video_body
            return httpx.Response(200, content=body)
        return httpx.Response(404)

    return handler


def make_worker(board, sink, client=None, clock=None):
    return ProductionWorker(
        board, sink, client,
        config=ProductionConfig(base_url="https://sora.test"),
        clock=clock or FakeClock(),
        rng=random.Random(7),
    )


async def test_all_selected_items_complete(board, sink):
    async with mock_client(sora_handler()) as client:
        report = await make_worker(board, sink, client).run_batch(["a", "b", "c"], CREDENTIAL, "10s")

    assert sorted(report.completed) == ["a", "b", "c"]
    assert report.failed == []
    for item in board.items():
        assert item.state.status == ItemStatus.COMPLETED
        assert item.state.artifact is not None
        assert Path(item.state.artifact.path).read_bytes().startswith(b"video:/task_")
        assert item.state.started_at is not None


async def test_one_failure_does_not_affect_siblings(board, sink):
    failing_prompt = board.get("b").content.visual_prompt

    async with mock_client(sora_handler(fail_prompts={failing_prompt})) as client:
        report = await make_worker(board, sink, client).run_batch(["a", "b", "c"], CREDENTIAL, "15s")

    assert report.failed == ["b"]
    assert sorted(report.completed) == ["a", "c"]
    failed = board.get("b").state
    assert failed.status == ItemStatus.ERROR
    assert failed.artifact is None
    assert failed.progress_log.startswith("❌ Error:")
    assert "500" in failed.progress_log


async def test_only_selected_items_run(board, sink):
    submitted = []
    async with mock_client(sora_handler(submitted=submitted)) as client:
        await make_worker(board, sink, client).run_batch(["b"], CREDENTIAL, "10s")

    assert submitted == [board.get("b").content.visual_prompt]
    assert board.get("a").state.status == ItemStatus.IDLE
    assert board.get("c").state.status == ItemStatus.IDLE


async def test_prompt_falls_back_to_concept(sink):
    from work_items import WorkItemBoard
    from conftest import make_script

    board = WorkItemBoard()
    board.replace_batch([make_script("x", prompt="", concept="Only a concept here")])
    submitted = []
    async with mock_client(sora_handler(submitted=submitted)) as client:
        await make_worker(board, sink, client).run_batch(["x"], CREDENTIAL, "10s")

    assert submitted == ["Only a concept here"]


async def test_batch_completed_event(board, sink):
    queue = board.subscribe()
    async with mock_client(sora_handler()) as client:
        await make_worker(board, sink, client).run_batch(["a"], CREDENTIAL, "10s")

    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    assert [e["state"]["status"] for e in events if e["type"] == "item_updated"] == [
        "processing", "monitoring", "completed",
    ]
    assert events[-1]["type"] == "batch_completed"
    assert events[-1]["completed"] == ["a"]


async def test_simulation_completes_without_network(board, sink):
    clock = FakeClock()
    worker = make_worker(board, sink, client=None, clock=clock)

    report = await worker.run_batch(["a", "b"], None, "10s", simulate=True)

    assert sorted(report.completed) == ["a", "b"]
    assert report.simulated
    for item_id in ("a", "b"):
        state = board.get(item_id).state
        assert state.status == ItemStatus.COMPLETED
        assert state.artifact is not None
        assert state.task_id.startswith("SIM-")
        assert Path(state.artifact.path).read_bytes() == PLACEHOLDER_VIDEO
    # Submit delay 2-4 s, monitoring delay 5-8 s, per item
    assert len(clock.sleeps) == 4
    assert all(2 <= s <= 8 for s in clock.sleeps)


async def test_empty_download_ends_item_in_error(board, sink, tmp_path):
    async with mock_client(sora_handler(video_body=b"")) as client:
        report = await make_worker(board, sink, client).run_batch(["a"], CREDENTIAL, "10s")

    assert report.failed == ["a"]
    assert report.completed == []
    state = board.get("a").state
    assert state.status == ItemStatus.ERROR
    assert state.artifact is None
    assert state.task_id == "task_0"
    assert "empty body" in state.progress_log
    assert not (tmp_path / "outputs" / "a").exists()


async def test_poll_deadline_ends_item_in_error(board, sink):
    clock = FakeClock()
    async with mock_client(sora_handler(ready=False)) as client:
        report = await make_worker(board, sink, client, clock=clock).run_batch(["a", "b"], CREDENTIAL, "10s")

    assert sorted(report.failed) == ["a", "b"]
    for item_id in ("a", "b"):
        state = board.get(item_id).state
        assert state.status == ItemStatus.ERROR
        assert state.artifact is None
        assert state.progress_log == "❌ Error: Production timeout (20 minutes)"
    assert clock.sleeps
    assert all(s == 12 for s in clock.sleeps)


# ============ Pre-flight ============

async def test_empty_selection_is_rejected(board, sink):
    with pytest.raises(ValidationError) as exc_info:
        await make_worker(board, sink).run_batch([], CREDENTIAL, "10s")
    assert exc_info.value.code == ErrorCode.INVALID_SELECTION


async def test_missing_credential_is_rejected(board, sink):
    with pytest.raises(ValidationError) as exc_info:
        await make_worker(board, sink).run_batch(["a"], None, "10s")
    assert exc_info.value.code == ErrorCode.INVALID_CREDENTIAL
    assert board.get("a").state.status == ItemStatus.IDLE


async def test_credential_without_authorization_is_rejected(board, sink):
    bad = CredentialEntry(value="curl 'https://x' -H 'accept: */*'", position=0)
    with pytest.raises(ValidationError):
        await make_worker(board, sink).run_batch(["a"], bad, "10s")
    assert board.get("a").state.status == ItemStatus.IDLE


async def test_unknown_duration_is_rejected(board, sink):
    with pytest.raises(ValidationError) as exc_info:
        await make_worker(board, sink).run_batch(["a"], None, "20s", simulate=True)
    assert exc_info.value.code == ErrorCode.INVALID_CONFIG


# ============ Cancellation ============

class StalledClock(FakeClock):
    """sleep() never returns until cancelled."""

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        await asyncio.Event().wait()


async def test_shutdown_cancels_in_flight_items(board, sink):
    worker = make_worker(board, sink, clock=StalledClock())
    batch = asyncio.create_task(worker.run_batch(["a", "b"], None, "10s", simulate=True))

    for _ in range(50):
        await asyncio.sleep(0)
        if worker.is_running:
            break
    assert worker.is_running

    with pytest.raises(ValidationError):
        await worker.run_batch(["c"], None, "10s", simulate=True)

    await worker.shutdown()
    report = await batch

    assert sorted(report.failed) == ["a", "b"]
    for item_id in ("a", "b"):
        state = board.get(item_id).state
        assert state.status == ItemStatus.ERROR
        assert "production cancelled" in state.progress_log
    assert not worker.is_running
