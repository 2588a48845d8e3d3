# -*- coding: utf-8 -*-
"""
YouTube publishing backend

Uses the YouTube Data API v3 resumable upload protocol: one metadata
request that returns an upload session URL, then a single PUT with the
video bytes. Scheduled videos are uploaded as private with publishAt set.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any

import httpx

from config import PublishConfig, publish_config
from error_handler import PublishError, TransportError, mask_secret
from work_items import ScriptContent

logger = logging.getLogger(__name__)

YOUTUBE_TITLE_MAX = 100
YOUTUBE_DESCRIPTION_MAX = 5000


def format_publish_at(publish_at: datetime) -> str:
    """RFC 3339 UTC timestamp accepted by status.publishAt"""
    if publish_at.tzinfo is None:
        publish_at = publish_at.astimezone()
    return publish_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _error_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:120]
    error = payload.get("error", {}) if isinstance(payload, dict) else {}
    if isinstance(error, dict):
        reasons = [e.get("reason") for e in error.get("errors", []) if isinstance(e, dict) and e.get("reason")]
        return ", ".join(reasons) or str(error.get("message", ""))[:120]
    return str(error)[:120]


class YouTubePublisher:
    """Uploads one artifact per call with one access token"""

    def __init__(self, client: httpx.AsyncClient, config: PublishConfig = None):
        self.client = client
        self.config = config or publish_config

    def build_metadata(self, content: ScriptContent, publish_at: datetime) -> Dict[str, Any]:
        return {
            "snippet": {
                "title": content.title[:YOUTUBE_TITLE_MAX],
                "description": content.description[:YOUTUBE_DESCRIPTION_MAX],
                "tags": list(content.tags),
                "categoryId": self.config.category_id,
            },
            "status": {
                "privacyStatus": self.config.privacy_status,
                "publishAt": format_publish_at(publish_at),
                "selfDeclaredMadeForKids": False,
                "containsSyntheticMedia": self.config.contains_synthetic_media,
            },
        }

    async def publish(self, data: bytes, content: ScriptContent, publish_at: datetime, token: str) -> str:
        """Upload and return the new video id; PublishError means this token failed"""
        init_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=utf-8",
            "X-Upload-Content-Length": str(len(data)),
            "X-Upload-Content-Type": "video/mp4",
        }

        try:
            init = await self.client.post(
                self.config.upload_url,
                params={"uploadType": "resumable", "part": "snippet,status"},
                content=json.dumps(self.build_metadata(content, publish_at)).encode("utf-8"),
                headers=init_headers,
                timeout=self.config.request_timeout_sec,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"YouTube upload init failed: {type(e).__name__}: {e}") from e

        if not init.is_success:
            raise PublishError(
                f"YouTube rejected the upload ({init.status_code}): {_error_reason(init)}",
                status_code=init.status_code,
            )

        upload_url = init.headers.get("Location")
        if not upload_url:
            raise PublishError("YouTube did not return an upload session URL", status_code=init.status_code)

        try:
            upload = await self.client.put(
                upload_url,
                content=data,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "video/mp4"},
                timeout=self.config.upload_timeout_sec,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"YouTube upload failed: {type(e).__name__}: {e}") from e

        if not upload.is_success:
            raise PublishError(
                f"YouTube upload failed ({upload.status_code}): {_error_reason(upload)}",
                status_code=upload.status_code,
            )

        try:
            video_id = upload.json().get("id")
        except (ValueError, AttributeError):
            video_id = None
        if not video_id:
            raise PublishError("YouTube upload response did not include a video id", status_code=upload.status_code)

        logger.info(f"[YouTube] Uploaded '{content.title}' as {video_id} with token {mask_secret(token)}")
        return video_id
