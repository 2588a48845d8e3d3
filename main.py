# -*- coding: utf-8 -*-
"""
Sora Studio - Main FastAPI Application

Features:
- REST API over the studio session (scripts, credentials, production, publishing)
- Server-Sent Events for real-time item state
- Artifact download
"""

import json
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session as DBSession

from config import CredentialKind, DurationBucket, ScriptEngine, app_config
from error_handler import (
    StudioError, ValidationError, ItemNotFoundError, InvalidTransitionError, ScriptGenerationError,
    error_handler,
)
from models import CredentialRecord, init_db, get_db_session
from session import StudioSession

logging.basicConfig(
    level=getattr(logging, app_config.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"
SSE_KEEPALIVE_SEC = 30


# ============ Pydantic Models ============

class SettingsInput(BaseModel):
    openai_key: Optional[str] = None
    use_simulation: Optional[bool] = None


class CredentialInput(BaseModel):
    value: str


class SelectCredentialInput(BaseModel):
    index: int


class GenerateScriptsRequest(BaseModel):
    engine: ScriptEngine = ScriptEngine.GEMINI
    idea: str
    count: int = Field(default=3, ge=1, le=20)
    duration: DurationBucket = DurationBucket.SHORT


class SceneDetailsInput(BaseModel):
    setting: str = ""
    lighting: str = ""
    atmosphere: str = ""


class ItemContentPatch(BaseModel):
    title: Optional[str] = None
    concept: Optional[str] = None
    visual_prompt: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    tags_text: Optional[str] = None  # Comma separated, as typed in the editor
    scene_details: Optional[SceneDetailsInput] = None
    camera_movement: Optional[str] = None
    duration_estimate: Optional[str] = None
    notes: Optional[str] = None


class SelectionInput(BaseModel):
    item_ids: List[str]


class ProductionRequest(BaseModel):
    duration: DurationBucket = DurationBucket.SHORT


class PublishTimeInput(BaseModel):
    publish_at: datetime


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Optional[Dict] = None


# ============ Application Setup ============

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Startup
    init_db()
    if getattr(app.state, "session", None) is None:
        app.state.session = StudioSession()
    app.state.session.load()
    logger.info(f"[App] Started (version {APP_VERSION})")

    yield

    # Shutdown
    await app.state.session.shutdown()
    logger.info("[App] Shutdown complete")


app = FastAPI(
    title="Sora Studio",
    description="Batch Sora video production and scheduled YouTube publishing",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_session(request: Request) -> StudioSession:
    return request.app.state.session


_STATUS_BY_ERROR = (
    (ItemNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ValidationError, 400),
    (ScriptGenerationError, 502),
)


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    record = error_handler.classify_exception(exc, context={"path": request.url.path})
    if status_code >= 500:
        logger.error(f"[App] {request.url.path} failed: [{record.code.value}] {record.message}")
    body = ErrorResponse(
        code=record.code.value,
        message=record.user_message,
        details={k: v for k, v in exc.details.items() if isinstance(v, (str, int, float, bool))} or None,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ============ Version ============

@app.get("/api/version")
def get_version():
    return {"app": "sora-studio", "version": APP_VERSION}


# ============ Settings ============

@app.get("/api/settings")
def get_settings(session: StudioSession = Depends(get_session)):
    return session.settings()


@app.put("/api/settings")
def put_settings(body: SettingsInput, session: StudioSession = Depends(get_session)):
    return session.save_settings(openai_key=body.openai_key, use_simulation=body.use_simulation)


# ============ Credentials ============

@app.get("/api/credentials/{kind}")
def list_credentials(
    kind: str,
    session: StudioSession = Depends(get_session),
    db: DBSession = Depends(get_db_session),
):
    pool = session.pool(kind)
    records = db.query(CredentialRecord).filter(
        CredentialRecord.kind == pool.kind.value
    ).order_by(CredentialRecord.position.asc()).all()
    return {**pool.to_dict(), "records": [r.to_dict() for r in records]}


@app.post("/api/credentials/{kind}", status_code=201)
def add_credential(kind: str, body: CredentialInput, session: StudioSession = Depends(get_session)):
    entry = session.add_credential(kind, body.value)
    return {"position": entry.position, "preview": entry.suffix, "pool": session.pool(kind).to_dict()}


@app.delete("/api/credentials/{kind}/{index}")
def delete_credential(kind: str, index: int, session: StudioSession = Depends(get_session)):
    session.remove_credential(kind, index)
    return session.pool(kind).to_dict()


@app.post("/api/credentials/sora/select")
def select_sora_credential(body: SelectCredentialInput, session: StudioSession = Depends(get_session)):
    session.select_sora_credential(body.index)
    return session.pool(CredentialKind.SORA).to_dict()


# ============ Scripts & items ============

def _items_payload(session: StudioSession) -> Dict[str, Any]:
    return {"items": session.board.snapshot(), "selected": session.selected_ids()}


@app.post("/api/scripts/generate")
async def generate_scripts(body: GenerateScriptsRequest, session: StudioSession = Depends(get_session)):
    await session.generate_scripts(body.engine, body.idea, body.count, body.duration)
    return _items_payload(session)


@app.get("/api/items")
def list_items(session: StudioSession = Depends(get_session)):
    return _items_payload(session)


@app.patch("/api/items/{item_id}")
def patch_item(item_id: str, body: ItemContentPatch, session: StudioSession = Depends(get_session)):
    fields = body.model_dump(exclude_unset=True, exclude={"tags_text"})
    if body.tags_text is not None:
        session.update_tags(item_id, body.tags_text)
    if fields:
        session.update_content(item_id, **fields)
    return session.board.get(item_id).to_dict()


@app.post("/api/items/{item_id}/refine")
async def refine_item_prompt(item_id: str, session: StudioSession = Depends(get_session)):
    content = await session.refine_prompt(item_id)
    return {"id": item_id, "visual_prompt": content.visual_prompt}


@app.put("/api/selection")
def put_selection(body: SelectionInput, session: StudioSession = Depends(get_session)):
    return {"selected": session.set_selection(body.item_ids)}


@app.post("/api/items/{item_id}/toggle")
def toggle_item(item_id: str, session: StudioSession = Depends(get_session)):
    return {"selected": session.toggle_select(item_id)}


# ============ Production ============

@app.post("/api/production", status_code=202)
async def start_production(body: ProductionRequest, session: StudioSession = Depends(get_session)):
    item_ids = session.start_production(body.duration)
    return {"started": item_ids, "simulated": session.use_simulation}


# ============ Server-Sent Events ============

@app.get("/api/stream")
async def stream_events(request: Request, session: StudioSession = Depends(get_session)):
    """
    Stream board events via Server-Sent Events.

    Events:
    - snapshot: full item list (first message)
    - item_updated: one item's state changed
    - content_updated / batch_replaced: scripts changed
    - batch_completed: production batch finished
    - publish_completed: publish batch finished
    """
    async def event_generator():
        event_queue = session.board.subscribe()

        try:
            yield f"data: {json.dumps({'type': 'snapshot', **_items_payload(session)})}\n\n"

            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(event_queue.get(), timeout=SSE_KEEPALIVE_SEC)
                    yield f"data: {json.dumps(event, default=str)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            session.board.unsubscribe(event_queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


# ============ Scheduling & publishing ============

@app.post("/api/schedule/smart")
def apply_smart_schedule(session: StudioSession = Depends(get_session)):
    schedule = session.apply_smart_schedule()
    return {"schedule": {item_id: when.isoformat() for item_id, when in schedule.items()}}


@app.put("/api/items/{item_id}/publish-time")
def set_publish_time(item_id: str, body: PublishTimeInput, session: StudioSession = Depends(get_session)):
    return session.set_publish_time(item_id, body.publish_at).to_dict()


@app.post("/api/publish")
async def publish(session: StudioSession = Depends(get_session)):
    report = await session.run_publish()
    return report.to_dict()


@app.post("/api/items/{item_id}/export")
def export_item(item_id: str, session: StudioSession = Depends(get_session)):
    path = session.export_item(item_id, app_config.outputs_dir / "exports")
    return {"path": str(path)}


# ============ Downloads ============

@app.get("/api/items/{item_id}/video")
def download_video(item_id: str, session: StudioSession = Depends(get_session)):
    item = session.board.get(item_id)
    handle = item.state.artifact
    if handle is None:
        raise ValidationError(f"'{item.content.title}' has no video yet", item_id=item_id)

    path = Path(handle.path)
    if path.exists():
        return FileResponse(path, media_type="video/mp4", filename=path.name)
    return Response(content=session.sink.read(handle), media_type="video/mp4")


# ============ Main Entry Point ============

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=app_config.host,
        port=app_config.port,
        reload=app_config.debug,
    )
