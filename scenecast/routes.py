"""FastAPI API endpoints under /api.

Endpoint groups: health and settings; the four pipeline stages as
standalone calls (segment, characters, cast, prompt); full analysis with
a local cache of finished runs under /api/stories.

Stage endpoints never fail on upstream LLM trouble; they degrade to the
paragraph split or an empty registry. Only rejected input is an error:
400 for an empty story, 413 for an oversized one.
"""

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from scenecast.config import Limits, public_config, update_config
from scenecast.llm import llm_from_config
from scenecast.models import Character, StoryAnalysis
from scenecast.pipeline import (
    EmptyStory,
    InputError,
    analyse_story,
    build_prompt,
    dedupe_registry,
    extract_characters,
    generate_prompts,
    resolve_cast,
    segment_story,
    settings_key,
    story_key,
    validate_story,
)

from .schemas import AnalyseBody, CastBody, CharactersBody, PromptBody, StoryBody

router = APIRouter()


def _limits(request: Request) -> Limits:
    return Limits.from_config(request.app.state.config)


def _templates(request: Request) -> dict[str, str]:
    return request.app.state.config.get("prompts", {})


def _style(request: Request, style: str | None) -> str | None:
    return style or request.app.state.config.get("style") or None


def _validated(text: str, limits: Limits) -> str:
    try:
        return validate_story(text, limits)
    except EmptyStory as e:
        raise HTTPException(400, str(e))
    except InputError as e:
        raise HTTPException(413, str(e))


def _counts(characters: list[Character]) -> dict[str, int]:
    main = sum(1 for c in characters if c.category == "main")
    return {"main": main, "side": len(characters) - main, "total": len(characters)}


async def _rebuild_prompts(
    request: Request,
    analysis: StoryAnalysis,
    characters: list[Character],
    style: str | None,
) -> StoryAnalysis:
    """Regenerate a cached analysis' prompts and save it."""
    run = await generate_prompts(
        analysis.lines,
        characters,
        style,
        max_side=_limits(request).max_side_characters,
    )
    analysis.characters = characters
    analysis.prompts = run.prompts
    analysis.style = style
    request.app.state.storage.save_analysis(analysis)
    return analysis


# ── Health & settings ────────────────────────────────────────


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Current settings, credentials masked."""
    return public_config(request.app.state.config)


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update settings (partial merge) and reconnect the LLM client."""
    state = request.app.state
    try:
        state.config = update_config(state.storage.base_path, body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    state.llm = llm_from_config(state.config)
    return public_config(state.config)


# ── Pipeline stages ──────────────────────────────────────────


@router.post("/segment")
async def segment(request: Request, body: StoryBody):
    """Split a story into scene lines."""
    limits = _limits(request)
    text = _validated(body.text, limits)
    lines = await segment_story(
        text, request.app.state.llm, limits=limits, templates=_templates(request),
    )
    return {"lines": [line.text for line in lines]}


@router.post("/characters")
async def characters(request: Request, body: CharactersBody):
    """Extract the deduplicated character registry of a story."""
    text = _validated(body.text, _limits(request))
    llm = request.app.state.llm
    registry = []
    if llm is not None:
        registry = await extract_characters(
            text, llm, body.theme, templates=_templates(request),
        )
    return {"characters": [c.wire() for c in registry], "counts": _counts(registry)}


@router.post("/cast")
async def cast(request: Request, body: CastBody):
    """Resolve which characters appear in one line."""
    resolved = resolve_cast(
        body.line, body.characters, max_side=_limits(request).max_side_characters,
    )
    return [c.wire() for c in resolved]


@router.post("/prompt")
async def prompt(request: Request, body: PromptBody):
    """Assemble the image prompt for one line and its cast."""
    return {"prompt": build_prompt(_style(request, body.style), body.cast, body.scene_line)}


# ── Full analysis & cache ────────────────────────────────────


@router.post("/analyse")
async def analyse(request: Request, body: AnalyseBody):
    """Run the full pipeline for a story; cached by content hash.

    A cached run is reused only if it finished and was built with the
    current limits and templates. A different style only rebuilds prompts.
    """
    state = request.app.state
    limits = _limits(request)
    templates = _templates(request)
    style = _style(request, body.style)
    text = _validated(body.text, limits)

    if not body.refresh:
        cached = state.storage.get_analysis(story_key(text))
        if (
            cached is not None
            and not cached.cancelled
            and cached.settings == settings_key(limits, templates)
        ):
            if cached.style != style:
                cached = await _rebuild_prompts(request, cached, cached.characters, style)
            return cached.wire()

    analysis = await analyse_story(
        text,
        state.llm,
        style=style,
        limits=limits,
        templates=templates,
    )
    state.storage.save_analysis(analysis)
    return analysis.wire()


@router.get("/stories")
async def list_stories(request: Request):
    """Summaries of every cached analysis."""
    return request.app.state.storage.list_analyses()


@router.get("/stories/{key}")
async def get_story(request: Request, key: str):
    """A cached analysis."""
    analysis = request.app.state.storage.get_analysis(key)
    if analysis is None:
        raise HTTPException(404, "Story not found")
    return analysis.wire()


@router.put("/stories/{key}/characters")
async def update_story_characters(request: Request, key: str, body: list[Character]):
    """Replace a cached registry (re-merged) and rebuild its prompts."""
    state = request.app.state
    analysis = state.storage.get_analysis(key)
    if analysis is None:
        raise HTTPException(404, "Story not found")
    analysis = await _rebuild_prompts(
        request, analysis, dedupe_registry(body), _style(request, analysis.style),
    )
    return analysis.wire()


@router.delete("/stories/{key}")
async def delete_story(request: Request, key: str):
    """Remove a cached analysis."""
    if not request.app.state.storage.delete_analysis(key):
        raise HTTPException(404, "Story not found")
    return {"ok": True}
