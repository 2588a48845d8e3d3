# -*- coding: utf-8 -*-
"""
Script writing for Sora Studio

Asks Gemini (rotating through the Gemini key pool) or OpenAI to write a
batch of structured video scripts, and refines single visual prompts.
A batch either parses completely or fails; partial batches are never
returned.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from google import genai
from google.genai import types
from openai import OpenAI

from config import (
    DurationBucket, GEMINI_MODEL, OPENAI_MODEL, ScriptEngine, get_gemini_keys_from_env,
)
from error_handler import ScriptGenerationError, mask_secret
from work_items import SceneDetails, ScriptContent

logger = logging.getLogger(__name__)


def build_script_prompt(count: int, duration: str, idea: str) -> str:
    return f"""Act as a world-class AI film director. Based on the idea below, write {count} professional scripts optimized for the Sora 2 video generation engine: "{idea}".
Target video length: {duration}.

Every script must contain exactly these fields:
1. title: a striking film title.
2. concept: the core creative idea.
3. visualPrompt: [MOST IMPORTANT] an English visual prompt for Sora 2. Describe lighting, camera angle, physics simulation (fluids, smoke, explosions) and material detail (4K/8K texture).
4. videoDescription: an engaging description suitable for YouTube or Instagram.
5. videoTags: 5-10 popular tags.
6. cameraMovement: detailed camera movement instructions.
7. sceneDetails: an object with setting, lighting and atmosphere."""


OPENAI_SYSTEM_MESSAGE = (
    "You are a professional film script AI. Every visualPrompt in the returned JSON must be rich in detail. "
    "The output format must follow the requested structure."
)

REFINE_PROMPT = """You are a Sora 2 Prompt Engineer. Convert the following video concept into a high-fidelity, photorealistic English visual prompt for Sora 2. Focus on lighting, texture, camera movement, and physics. Output ONLY the English prompt text, no markdown.

Concept: "{concept}\""""


def script_schema() -> types.Schema:
    text = types.Schema(type=types.Type.STRING)
    return types.Schema(
        type=types.Type.ARRAY,
        items=types.Schema(
            type=types.Type.OBJECT,
            properties={
                "id": text,
                "title": text,
                "concept": text,
                "visualPrompt": text,
                "videoDescription": text,
                "videoTags": types.Schema(type=types.Type.ARRAY, items=text),
                "sceneDetails": types.Schema(
                    type=types.Type.OBJECT,
                    properties={"setting": text, "lighting": text, "atmosphere": text},
                    required=["setting", "lighting", "atmosphere"],
                ),
                "cameraMovement": text,
                "durationEstimate": text,
                "notes": text,
            },
            required=[
                "title", "concept", "visualPrompt", "videoDescription", "videoTags",
                "sceneDetails", "cameraMovement", "durationEstimate",
            ],
        ),
    )


def clean_json(text: str) -> str:
    """Strip a surrounding markdown code fence"""
    text = (text or "").strip()
    text = re.sub(r"^```json\s*", "", text)
    text = re.sub(r"^```\s*", "", text)
    return re.sub(r"\s*```$", "", text)


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ("" if value is None else str(value))


def script_from_record(record: Dict[str, Any], default_id: str) -> ScriptContent:
    if not isinstance(record, dict):
        raise ScriptGenerationError("Script record is not an object")

    scene = record.get("sceneDetails") if isinstance(record.get("sceneDetails"), dict) else {}
    tags = record.get("videoTags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]

    return ScriptContent(
        id=_as_str(record.get("id")) or default_id,
        title=_as_str(record.get("title")),
        concept=_as_str(record.get("concept")),
        visual_prompt=_as_str(record.get("visualPrompt") or record.get("soraPrompt") or record.get("prompt")),
        description=_as_str(record.get("videoDescription")),
        tags=tuple(_as_str(t) for t in tags),
        scene_details=SceneDetails(
            setting=_as_str(scene.get("setting")),
            lighting=_as_str(scene.get("lighting")),
            atmosphere=_as_str(scene.get("atmosphere")),
        ),
        camera_movement=_as_str(record.get("cameraMovement")),
        duration_estimate=_as_str(record.get("durationEstimate")),
        notes=_as_str(record.get("notes")),
    )


def parse_scripts(text: str, id_prefix: str, now_ms: int = None) -> List[ScriptContent]:
    """
    Parse a model response into scripts.

    Accepts a bare list or an object wrapping the list under "scripts",
    "data" or its first value.
    """
    try:
        content = json.loads(clean_json(text))
    except ValueError as e:
        raise ScriptGenerationError(f"AI response is not valid JSON: {e}")

    if isinstance(content, dict):
        data = content.get("scripts") or content.get("data")
        if data is None and content:
            data = next(iter(content.values()))
    else:
        data = content

    if not isinstance(data, list):
        raise ScriptGenerationError("AI response is not a list of scripts")

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    scripts = []
    seen = set()
    for i, record in enumerate(data):
        default_id = f"{id_prefix}-{now_ms}-{i}"
        script = script_from_record(record, default_id)
        if script.id in seen:
            # Models sometimes repeat ids; the generated one is unique
            script = replace(script, id=default_id)
        seen.add(script.id)
        scripts.append(script)
    return scripts


class ScriptGenerator:
    """Content provider backed by Gemini or OpenAI"""

    def __init__(
        self,
        gemini_client_factory: Callable[..., Any] = None,
        openai_client_factory: Callable[..., Any] = None,
    ):
        self.gemini_client_factory = gemini_client_factory or genai.Client
        self.openai_client_factory = openai_client_factory or OpenAI

    async def generate(
        self,
        engine: ScriptEngine,
        idea: str,
        count: int,
        duration: DurationBucket,
        gemini_keys: Sequence[str] = (),
        openai_key: Optional[str] = None,
    ) -> List[ScriptContent]:
        engine = ScriptEngine(engine)
        duration = DurationBucket(duration).value
        prompt = build_script_prompt(count, duration, idea)

        if engine == ScriptEngine.GEMINI:
            return await self._generate_with_gemini(prompt, gemini_keys)
        return await self._generate_with_openai(prompt, openai_key)

    async def _generate_with_gemini(self, prompt: str, gemini_keys: Sequence[str]) -> List[ScriptContent]:
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=script_schema(),
        )
        scripts = await self._rotate_gemini_keys(
            gemini_keys, prompt, config, purpose="scripts",
            parse=lambda text: parse_scripts(text, "gm"),
        )
        logger.info(f"[Scripts] Gemini wrote {len(scripts)} scripts")
        return scripts

    async def _generate_with_openai(self, prompt: str, openai_key: Optional[str]) -> List[ScriptContent]:
        if not openai_key:
            raise ScriptGenerationError("No OpenAI API key configured")

        def call() -> str:
            client = self.openai_client_factory(api_key=openai_key)
            resp = client.chat.completions.create(
                model=OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": OPENAI_SYSTEM_MESSAGE},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
            )
            return resp.choices[0].message.content or ""

        try:
            text = await asyncio.to_thread(call)
        except Exception as e:
            raise ScriptGenerationError(f"OpenAI request failed: {e}") from e

        scripts = parse_scripts(text, "oa")
        logger.info(f"[Scripts] OpenAI wrote {len(scripts)} scripts")
        return scripts

    async def refine_visual_prompt(self, concept: str, gemini_keys: Sequence[str] = ()) -> str:
        return await self._rotate_gemini_keys(
            gemini_keys, REFINE_PROMPT.format(concept=concept), None, purpose="prompt refinement",
            parse=lambda text: text.strip(),
        )

    async def _rotate_gemini_keys(
        self,
        gemini_keys: Sequence[str],
        contents: str,
        config: Optional[types.GenerateContentConfig],
        purpose: str,
        parse: Callable[[str], Any],
    ) -> Any:
        """Try each key in order; the first response that parses wins"""
        keys = [k for k in (gemini_keys or get_gemini_keys_from_env()) if k]
        if not keys:
            raise ScriptGenerationError("No Gemini API key configured")

        last_error: Optional[Exception] = None
        for api_key in keys:
            def call() -> str:
                client = self.gemini_client_factory(api_key=api_key)
                response = client.models.generate_content(model=GEMINI_MODEL, contents=contents, config=config)
                return response.text or ""

            try:
                logger.info(f"[Scripts] Gemini {purpose} with key {mask_secret(api_key)}")
                return parse(await asyncio.to_thread(call))
            except Exception as e:
                logger.warning(f"[Scripts] Gemini key {mask_secret(api_key)} failed: {e}")
                last_error = e

        raise ScriptGenerationError(
            f"All Gemini API keys failed for {purpose}: {last_error}" if last_error
            else f"All Gemini API keys failed for {purpose}"
        )
