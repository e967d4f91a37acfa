"""Story → scene lines → character-consistent image prompts.

Stages for one story:
  1. Segment — split the story into scene lines of 8-25 words (LLM split,
     deterministic paragraph fallback).
  2. Extract — theme profile, then one structured call listing every human
     character; candidates are merged into a deduplicated registry with a
     fully populated appearance record each.
  3. Per line — resolve which characters are present (lexical match on
     names and aliases, all main characters when nothing matches), then
     assemble style lock + character blocks + scene + anti-text tail.

Stages 1 and 2 run concurrently; stage 3 is pure and checks the run
control between lines so a run can be paused or cancelled.

Stage LLM calls ("segmenter", "theme", "characters") each render a
Handlebars template that can be overridden in config.
"""

from .cast import resolve_cast  # noqa: F401
from .extractors import (  # noqa: F401
    analyze_theme,
    build_registry,
    dedupe_registry,
    extract_characters,
    merge_characters,
    normalize_name,
)
from .orchestrator import (  # noqa: F401
    EmptyStory,
    InputError,
    PromptRun,
    StoryTooLarge,
    analyse_story,
    generate_prompts,
    settings_key,
    story_key,
    validate_story,
)
from .prompts import (  # noqa: F401
    ANTI_TEXT_TAIL,
    STYLE_LOCK,
    assemble,
    build_prompt,
    character_block,
    describe_scene,
)
from .segments import fallback_split, segment_story  # noqa: F401
