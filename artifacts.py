# -*- coding: utf-8 -*-
"""
Output sink for fetched videos

Videos land in outputs_dir/<item_id>/<title>.mp4. When object storage is
configured the bytes are mirrored there as well; a mirror failure is
logged and the local copy still counts.
"""

import re
import hashlib
import logging
import shutil
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from backends.storage import ObjectStorage
from config import app_config
from work_items import ArtifactHandle, ScriptContent

logger = logging.getLogger(__name__)


def slugify(s: str) -> str:
    return re.sub(r"[^\w\-.]+", "_", s).strip("._")


def artifact_filename(title: str, item_id: str, max_len: int = 80) -> str:
    base = slugify(title or "")[:max_len] or slugify(item_id) or "video"
    return f"{base}.mp4"


class ArtifactSink:
    """Stores artifact bytes and hands back ArtifactHandles"""

    def __init__(self, outputs_dir: Path = None, storage: Optional[ObjectStorage] = None):
        self.outputs_dir = Path(outputs_dir or app_config.outputs_dir)
        self.storage = storage

    def save(self, item_id: str, title: str, data: bytes) -> ArtifactHandle:
        item_dir = self.outputs_dir / slugify(item_id)
        item_dir.mkdir(parents=True, exist_ok=True)

        filename = artifact_filename(title, item_id)
        path = item_dir / filename
        path.write_bytes(data)

        storage_key = None
        if self.storage is not None and self.storage.is_configured():
            try:
                storage_key = self.storage.upload_artifact(item_id, filename, data)
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"[Sink] Mirror upload failed for {item_id}: {e} - keeping local copy only")

        handle = ArtifactHandle(
            item_id=item_id,
            path=str(path),
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            storage_key=storage_key,
        )
        logger.info(f"[Sink] Saved {item_id} → {path} ({handle.size_bytes} bytes)")
        return handle

    def read(self, handle: ArtifactHandle) -> bytes:
        """Artifact bytes, from disk or (if the local file is gone) from the mirror"""
        path = Path(handle.path)
        if path.exists():
            return path.read_bytes()
        if handle.storage_key and self.storage is not None and self.storage.is_configured():
            logger.info(f"[Sink] Local copy of {handle.item_id} missing - reading from object storage")
            return self.storage.download_bytes(handle.storage_key)
        raise FileNotFoundError(f"Artifact for {handle.item_id} not found at {path}")

    def export_item(self, content: ScriptContent, handle: ArtifactHandle, dest: Path) -> Path:
        """
        Copy the video plus a <title>_notes.txt sidecar into dest.

        Returns the exported video path.
        """
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)

        video_path = dest / artifact_filename(content.title, content.id)
        source = Path(handle.path)
        if source.exists():
            shutil.copyfile(source, video_path)
        else:
            video_path.write_bytes(self.read(handle))

        notes_path = dest / f"{video_path.stem}_notes.txt"
        notes_path.write_text(render_notes(content), encoding="utf-8")

        logger.info(f"[Sink] Exported {content.id} to {dest}")
        return video_path


def render_notes(content: ScriptContent) -> str:
    return "\n".join([
        f"TITLE: {content.title}",
        "",
        f"CONCEPT: {content.concept}",
        "",
        "DESCRIPTION:",
        content.description,
        "",
        f"TAGS: {', '.join(content.tags)}",
        "",
        "PROMPT:",
        content.production_prompt,
        "",
    ])
