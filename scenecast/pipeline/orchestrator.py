"""Story analysis run: story in, one prompt per scene line out.

Run flow:
  1. Validate the story text (empty / oversized stories are rejected).
  2. Concurrently:
       a. segment_story        → ordered scene lines
       b. analyze_theme        → era / genre hint
          extract_characters   → deduplicated registry
  3. For each line in order: check the run control (pause / cancel), then
     resolve_cast → build_prompt.

Upstream failures never fail the run; they degrade to the paragraph split
or an empty registry. Cancellation stops the run and keeps every result
produced so far.
"""

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from scenecast.config import Limits
from scenecast.control import Cancelled, RunControl
from scenecast.llm import LLM
from scenecast.models import Character, LinePrompt, SceneLine, StoryAnalysis, ThemeProfile

from .cast import resolve_cast
from .extractors import analyze_theme, extract_characters
from .prompts import build_prompt
from .segments import segment_story

logger = logging.getLogger(__name__)


class InputError(ValueError):
    """The story text was rejected before any processing."""


class EmptyStory(InputError):
    pass


class StoryTooLarge(InputError):
    pass


def validate_story(text: str, limits: Limits = Limits()) -> str:
    """Return the text unchanged, or raise InputError."""
    if not text or not text.strip():
        raise EmptyStory("Story text is empty")
    if len(text) > limits.max_story_chars:
        raise StoryTooLarge(
            f"Story is {len(text)} characters; the limit is {limits.max_story_chars}"
        )
    return text


def story_key(text: str) -> str:
    """Stable cache key for a story: a truncated content hash."""
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()[:16]


def settings_key(limits: Limits, templates: dict[str, str] | None = None) -> str:
    """Fingerprint of the settings that shape segmentation and extraction."""
    payload = json.dumps(
        {"limits": limits.model_dump(), "templates": templates or {}}, sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


# ── Per-line prompts ───────────────────────────────────────


@dataclass
class PromptRun:
    prompts: list[LinePrompt] = field(default_factory=list)
    cancelled: bool = False


def line_prompt(
    line: SceneLine,
    characters: list[Character],
    style: str | None = None,
    *,
    max_side: int = 3,
) -> LinePrompt:
    cast = resolve_cast(line, characters, max_side=max_side)
    return LinePrompt(
        index=line.index,
        line=line.text,
        cast=[c.name for c in cast],
        prompt=build_prompt(style, cast, line),
    )


async def generate_prompts(
    lines: list[SceneLine],
    characters: list[Character],
    style: str | None = None,
    *,
    control: RunControl | None = None,
    on_prompt: Callable[[LinePrompt], None] | None = None,
    max_side: int = 3,
) -> PromptRun:
    """Build a prompt per line, honouring pause and cancel between lines.

    On cancellation the prompts already built are returned with
    `cancelled=True`; they stay valid.
    """
    run = PromptRun()
    for line in sorted(lines, key=lambda l: l.index):
        if control is not None:
            try:
                await control.checkpoint()
            except Cancelled:
                logger.info("Prompt generation cancelled after %d of %d lines",
                            len(run.prompts), len(lines))
                run.cancelled = True
                break
        prompt = line_prompt(line, characters, style, max_side=max_side)
        run.prompts.append(prompt)
        if on_prompt is not None:
            on_prompt(prompt)
    return run


# ── Full analysis ──────────────────────────────────────────


async def _characters(
    story: str,
    llm: LLM | None,
    control: RunControl | None,
    templates: dict[str, str] | None,
) -> tuple[ThemeProfile, list[Character]]:
    if llm is None:
        return ThemeProfile(), []
    theme = await analyze_theme(story, llm, control=control, templates=templates)
    characters = await extract_characters(
        story, llm, theme, control=control, templates=templates,
    )
    return theme, characters


def _result(task: asyncio.Future, default):
    if task.done() and not task.cancelled() and task.exception() is None:
        return task.result()
    return default


async def analyse_story(
    story: str,
    llm: LLM | None = None,
    *,
    style: str | None = None,
    control: RunControl | None = None,
    limits: Limits = Limits(),
    templates: dict[str, str] | None = None,
    on_prompt: Callable[[LinePrompt], None] | None = None,
) -> StoryAnalysis:
    """Run the whole pipeline for one story.

    Raises InputError for rejected input. Everything else degrades: the
    result is always a StoryAnalysis, possibly partial when cancelled.
    """
    validate_story(story, limits)
    key = story_key(story)
    settings = settings_key(limits, templates)

    segmenting = asyncio.ensure_future(
        segment_story(story, llm, control=control, limits=limits, templates=templates)
    )
    extracting = asyncio.ensure_future(_characters(story, llm, control, templates))
    try:
        lines, (theme, characters) = await asyncio.gather(segmenting, extracting)
    except Cancelled:
        for task in (segmenting, extracting):
            task.cancel()
        await asyncio.gather(segmenting, extracting, return_exceptions=True)
        theme, characters = _result(extracting, (ThemeProfile(), []))
        logger.info("Analysis of story %s cancelled before prompt generation", key)
        return StoryAnalysis(
            key=key,
            theme=theme,
            lines=_result(segmenting, []),
            characters=characters,
            cancelled=True,
            style=style,
            settings=settings,
        )

    logger.info(
        "Story %s: %d lines, %d characters", key, len(lines), len(characters),
    )
    run = await generate_prompts(
        lines, characters, style,
        control=control,
        on_prompt=on_prompt,
        max_side=limits.max_side_characters,
    )
    return StoryAnalysis(
        key=key,
        theme=theme,
        lines=lines,
        characters=characters,
        prompts=run.prompts,
        cancelled=run.cancelled,
        style=style,
        settings=settings,
    )
