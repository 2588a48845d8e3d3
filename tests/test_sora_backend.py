"""Sora submitter, poller and fetcher against a mocked transport."""

import json

import httpx
import pytest

from backends.sora import ArtifactFetcher, TaskPoller, TaskSubmitter, find_task_record
from config import DurationBucket, ProductionConfig
from error_handler import FetchError, PollTimeout, SubmissionError, TaskFailedError, TransportError

from conftest import mock_client

HEADERS = {"authorization": "Bearer tok-123456", "openai-sentinel-token": "sentinel"}
PROMPT = "A glass whale swimming through clouds at dawn"


@pytest.fixture
def config():
    return ProductionConfig(base_url="https://sora.test", poll_interval_sec=12, production_timeout_sec=1200)


# ============ Submitter ============

async def test_submit_sends_create_body_and_headers(config):
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "task_1"})

    async with mock_client(handler) as client:
        task_id = await TaskSubmitter(client, config).submit(PROMPT, DurationBucket.LONG, HEADERS)

    assert task_id == "task_1"
    assert seen["url"] == "https://sora.test/backend/nf/create"
    assert seen["headers"]["authorization"] == "Bearer tok-123456"
    assert seen["headers"]["openai-sentinel-token"] == "sentinel"
    assert seen["body"] == {
        "kind": "video",
        "prompt": PROMPT,
        "orientation": "landscape",
        "size": "small",
        "n_frames": 450,
        "model": "sy_8",
        "n": 1,
    }


def test_duration_buckets():
    assert DurationBucket.SHORT.n_frames == 300
    assert DurationBucket.LONG.n_frames == 450


async def test_submit_non_2xx_truncates_body(config):
    body = "x" * 200

    async with mock_client(lambda request: httpx.Response(401, text=body)) as client:
        with pytest.raises(SubmissionError) as exc_info:
            await TaskSubmitter(client, config).submit(PROMPT, DurationBucket.SHORT, HEADERS)

    assert exc_info.value.status_code == 401
    assert exc_info.value.body == "x" * 50
    assert "(401)" in exc_info.value.message


async def test_submit_without_id_is_rejected(config):
    async with mock_client(lambda request: httpx.Response(200, json={"ok": True})) as client:
        with pytest.raises(SubmissionError):
            await TaskSubmitter(client, config).submit(PROMPT, DurationBucket.SHORT, HEADERS)


async def test_submit_network_failure(config):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(TransportError):
            await TaskSubmitter(client, config).submit(PROMPT, DurationBucket.SHORT, HEADERS)


# ============ Matching ============

def test_exact_id_match_wins():
    records = [
        {"id": "other", "prompt": PROMPT, "created_at": 2000},
        {"id": "task_1", "prompt": "unrelated", "created_at": 0},
    ]
    assert find_task_record(records, "task_1", PROMPT, not_before=1000)["id"] == "task_1"


def test_fallback_match_by_prompt_prefix_and_time():
    records = [
        {"id": "old", "prompt": PROMPT, "created_at": 900},
        {"id": "new", "prompt": f"remixed: {PROMPT[:10]} and more", "created_at": 1000},
    ]
    assert find_task_record(records, "task_1", PROMPT, not_before=1000)["id"] == "new"


def test_fallback_disabled_in_strict_mode():
    records = [{"id": "new", "prompt": PROMPT, "created_at": 1000}]
    assert find_task_record(records, "task_1", PROMPT, not_before=0, strict=True) is None


# ============ Poller ============

async def test_poller_returns_download_url_after_pending_polls(config, fake_clock):
    responses = iter([
        httpx.Response(200, json={"items": []}),
        httpx.Response(500, text="oops"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=[{"id": "task_1", "status": "running"}]),
        httpx.Response(200, json=[{"id": "task_1", "downloadable_url": "https://cdn.test/v.mp4"}]),
    ])
    requests = []

    def handler(request):
        requests.append(request)
        return next(responses)

    async with mock_client(handler) as client:
        result = await TaskPoller(client, config, fake_clock).wait_for_artifact("task_1", PROMPT, HEADERS, 0)

    assert result.download_url == "https://cdn.test/v.mp4"
    assert result.polls == 5
    assert fake_clock.sleeps == [12] * 4
    assert requests[0].url.params["limit"] == "15"
    assert requests[0].url.path == "/backend/project_y/profile/drafts"
    assert requests[0].headers["authorization"] == "Bearer tok-123456"


async def test_poller_survives_transport_errors(config, fake_clock):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json=[{"id": "task_1", "result": {"video_url": "https://cdn.test/r.mp4"}}])

    async with mock_client(handler) as client:
        result = await TaskPoller(client, config, fake_clock).wait_for_artifact("task_1", PROMPT, HEADERS, 0)

    assert result.download_url == "https://cdn.test/r.mp4"


async def test_poller_reports_backend_failure(config, fake_clock):
    def handler(request):
        return httpx.Response(200, json=[{"id": "task_1", "status": "failed"}])

    async with mock_client(handler) as client:
        with pytest.raises(TaskFailedError):
            await TaskPoller(client, config, fake_clock).wait_for_artifact("task_1", PROMPT, HEADERS, 0)


async def test_poller_failure_reason_field(config, fake_clock):
    def handler(request):
        return httpx.Response(200, json=[{"id": "task_1", "failure_reason": "content_policy"}])

    async with mock_client(handler) as client:
        with pytest.raises(TaskFailedError) as exc_info:
            await TaskPoller(client, config, fake_clock).wait_for_artifact("task_1", PROMPT, HEADERS, 0)

    assert "content_policy" in exc_info.value.message


async def test_poller_times_out_exactly_at_ceiling(config, fake_clock):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(200, json=[])

    async with mock_client(handler) as client:
        with pytest.raises(PollTimeout) as exc_info:
            await TaskPoller(client, config, fake_clock).wait_for_artifact("task_1", PROMPT, HEADERS, 0)

    assert fake_clock.monotonic() == 1200
    # Polls at 0, 12, ..., 1188
    assert calls["n"] == 100
    assert "20 minutes" in exc_info.value.message


# ============ Fetcher ============

async def test_fetch_returns_bytes(config):
    async with mock_client(lambda request: httpx.Response(200, content=b"mp4data")) as client:
        assert await ArtifactFetcher(client, config).fetch("https://cdn.test/v.mp4") == b"mp4data"


@pytest.mark.parametrize("response", [httpx.Response(403, text="expired"), httpx.Response(200, content=b"")])
async def test_fetch_failures(config, response):
    async with mock_client(lambda request: response) as client:
        with pytest.raises(FetchError):
            await ArtifactFetcher(client, config).fetch("https://cdn.test/v.mp4")
