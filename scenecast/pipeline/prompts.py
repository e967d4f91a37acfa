"""Image-prompt assembly.

A prompt is four blocks, one per line of output:

  style lock       fixed style description, the same for every line
  character block  one appearance record per cast member, joined by " | "
  scene            environment / camera hints read from the line text
  anti-text tail   fixed clause keeping typography out of the image

Everything here is pure string formatting.
"""

import re

from scenecast.models import Character, SceneLine

STYLE_LOCK = (
    "Semi-realistic 90s 2D cel animation aesthetic, bold black ink outlines exactly 3px thick, "
    "hand-painted cel shading with 2-3 flat color layers per object, matte finish, "
    "Batman: The Animated Series color palette (deep shadows #1A1A2E, vibrant reds #C1272D, "
    "blues #0077BE, yellows #FFD700), analog film grain texture at 15% opacity, 16:9 aspect ratio, "
    "rule of thirds composition, diffused studio lighting from 45-degree angle top-left, "
    "classic 90s cartoon proportions, dynamic elements like motion lines or tension lines, "
    "NO TEXT OR CAPTIONS, pure visual scene with zero typography, no letters, no words, "
    "no written language, no signs, no labels, no captions, no subtitles, no speech bubbles, "
    "no quotes, blank surfaces only."
)

ANTI_TEXT_TAIL = (
    "pure visual scene with zero typography, no letters, no words, no written language, "
    "no signs, no labels, no captions, no subtitles, no speech bubbles, no quotes, "
    "blank surfaces only, focus only on character actions and environment visuals."
)

CAST_SEPARATOR = " | "

_TIME = re.compile(r"night|midnight|dawn|dusk|sunset|morning|noon|evening")
_CAMERA = re.compile(r"close(?:-up)?|medium|wide|overhead|low-angle|high-angle")
_ATMOSPHERE = re.compile(r"rain|smoke|fog|haze|neon|storm|snow")
_LOCATION = re.compile(
    r"kitchen|office|rooftop|street|alley|bedroom|hotel|train|car|park|hallway|living room"
)


def character_block(character: Character) -> str:
    a = character.appearance
    return (
        f"{character.name} — {a.face}; "
        f"eyes {a.eyes.shape} {a.eyes.hex}; "
        f"hair {a.hair.style} {a.hair.hex}; "
        f"skin {a.skin.hex}; "
        f"body {a.body.age}y {a.body.height_cm}cm {a.body.build}; "
        f"mark: {a.mark}; accessory: {a.accessory}; outfit: {a.outfit}; "
        f"expression: {a.defaults.expression}"
    )


def _first(pattern: re.Pattern, text: str, default: str) -> str:
    match = pattern.search(text)
    return match.group(0) if match else default


def describe_scene(line: SceneLine | str) -> str:
    """Scene block from keyword hints in the line; the line itself is quoted."""
    text = line.text if isinstance(line, SceneLine) else line
    lowered = text.lower()
    location = _first(_LOCATION, lowered, "story location")
    time = _first(_TIME, lowered, "unspecified time")
    atmosphere = _first(_ATMOSPHERE, lowered, "neutral air")
    camera = _first(_CAMERA, lowered, "medium shot")
    return (
        f"Environment: {location}, {time}, {atmosphere}; Camera: {camera}; "
        f'visual elements guided by line: "{text}".'
    )


def assemble(
    style: str,
    cast: list[Character],
    scene_description: str,
    anti_text_tail: str,
) -> str:
    """Join the four blocks, one per line, skipping empty ones."""
    parts = [
        style.strip(),
        CAST_SEPARATOR.join(character_block(c) for c in cast),
        scene_description.strip(),
        anti_text_tail.strip(),
    ]
    return "\n".join(p for p in parts if p)


def build_prompt(style: str | None, cast: list[Character], scene_line: SceneLine | str) -> str:
    """Full prompt for one line. An empty style falls back to STYLE_LOCK."""
    return assemble(style or STYLE_LOCK, cast, describe_scene(scene_line), ANTI_TEXT_TAIL)
