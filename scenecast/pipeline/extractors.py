"""LLM output extractors: theme profile and the character registry.

Character extraction is one structured call. Its raw answer goes through:

  normalize_candidate  tolerate field-name variants, coerce types
  merge_characters     collapse aliases / relationship mentions into one
                       entity per person
  enforce_schema       fill every appearance field with defaults
  sort_registry        alphabetical by display name

Any failure (LLM error, unparsable output) yields an empty registry; the
rest of the pipeline works with zero characters.
"""

import copy
import json
import logging
import re
from typing import Any

from scenecast.control import RunControl
from scenecast.llm import LLM, LLMError
from scenecast.models import (
    Appearance,
    Body,
    Character,
    Defaults,
    Eyes,
    Hair,
    Skin,
    ThemeProfile,
    new_id,
)
from scenecast.templates import PromptError, render_stage

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")
_TITLE = re.compile(r"^(dr|mr|mrs|ms)\.?\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")
_HEX = re.compile(r"#?[0-9A-Fa-f]{6}")


def parse_json_output(text: str) -> dict | list | None:
    """Parse JSON from LLM output, stripping markdown fences and chatter."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        match = _JSON_BLOCK.search(cleaned)
        try:
            data = json.loads(match.group(1)) if match else None
        except json.JSONDecodeError:
            data = None
        if data is None:
            logger.warning("Extractor output is not valid JSON: %s", e)
            return None
    return data if isinstance(data, (dict, list)) else None


async def call_llm(
    llm: LLM,
    stage: str,
    prompt: str,
    *,
    control: RunControl | None = None,
    temperature: float = 0.2,
    max_tokens: int = 1200,
) -> str:
    """Call the LLM for one stage, abortable through the run control."""
    call = llm(stage, prompt, temperature=temperature, max_tokens=max_tokens)
    if control is None:
        return await call
    return await control.guard(call)


# ── Theme profile ──────────────────────────────────────────


async def analyze_theme(
    story: str,
    llm: LLM,
    *,
    control: RunControl | None = None,
    templates: dict[str, str] | None = None,
) -> ThemeProfile:
    """Classify theme / tone / genre / era; defaults on any failure."""
    try:
        prompt = render_stage("theme", {"story": story}, templates)
        output = await call_llm(
            llm, "theme", prompt, control=control, temperature=0.2, max_tokens=300,
        )
    except (LLMError, PromptError) as e:
        logger.warning("Theme analysis failed, using defaults: %s", e)
        return ThemeProfile()

    data = parse_json_output(output)
    if not isinstance(data, dict):
        return ThemeProfile()
    found = {
        key: value.strip()
        for key, value in data.items()
        if key in ThemeProfile.model_fields and isinstance(value, str) and value.strip()
    }
    return ThemeProfile(**found)


# ── Candidates ─────────────────────────────────────────────


def normalize_name(name: str) -> str:
    """Lower-case, drop a leading title, strip punctuation, collapse spaces."""
    text = name.lower().strip()
    text = _TITLE.sub("", text)
    text = _PUNCTUATION.sub("", text)
    return " ".join(text.split())


def _unique(values: list[str]) -> list[str]:
    """Order-preserving, case-insensitive de-duplication."""
    seen: set[str] = set()
    result = []
    for value in values:
        folded = value.casefold()
        if folded not in seen:
            seen.add(folded)
            result.append(value)
    return result


def _coerce_aliases(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    return [a.strip() for a in raw if isinstance(a, str) and a.strip()]


def normalize_candidate(raw: Any) -> dict | None:
    """Turn one raw extraction item into a candidate dict, or None."""
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    name = name.strip() if isinstance(name, str) else ""
    if not normalize_name(name):
        return None

    category = raw.get("category", raw.get("type"))
    generated = raw.get("isGenerated", raw.get("isAIGenerated", raw.get("is_generated", False)))
    appearance = raw.get("appearance", raw.get("dna"))

    candidate: dict[str, Any] = {
        "name": name,
        "category": "main" if category == "main" else "side",
        "aliases": _unique(_coerce_aliases(raw.get("aliases"))),
        "isGenerated": bool(generated),
        "appearance": copy.deepcopy(appearance) if isinstance(appearance, dict) else {},
    }
    if isinstance(raw.get("id"), str) and raw["id"]:
        candidate["id"] = raw["id"]
    return candidate


def match_keys(candidate: dict) -> set[str]:
    """Normalized name, each of its words, and every normalized alias."""
    base = normalize_name(candidate["name"])
    keys = {base, *base.split(" ")}
    keys.update(normalize_name(a) for a in candidate.get("aliases", []))
    keys.discard("")
    return keys


# ── Merging ────────────────────────────────────────────────


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value <= 0  # 0 is the extraction template's placeholder
    if isinstance(value, (list, dict)):
        return not value
    return False


def merge_appearance(existing: dict, incoming: dict) -> dict:
    """Field-by-field merge; non-empty incoming leaves win."""
    merged = copy.deepcopy(existing)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_appearance(merged[key], value)
        elif not _is_empty(value):
            merged[key] = copy.deepcopy(value)
    return merged


def _surface_forms(entity: dict) -> list[str]:
    """Aliases plus the name, unless the name was synthesized."""
    forms = list(entity["aliases"])
    if not entity["isGenerated"]:
        forms.append(entity["name"])
    return forms


def _absorb(target: dict, incoming: dict) -> None:
    """Merge `incoming` into `target` in place."""
    target["aliases"] = _unique(_surface_forms(target) + _surface_forms(incoming))
    if target["isGenerated"] and not incoming["isGenerated"]:
        target["name"] = incoming["name"]
        target["isGenerated"] = False
    if incoming["category"] == "main":
        target["category"] = "main"
    target["appearance"] = merge_appearance(target["appearance"], incoming["appearance"])
    if "id" not in target and "id" in incoming:
        target["id"] = incoming["id"]


def merge_characters(candidates: list[dict]) -> list[dict]:
    """Collapse candidates that share a match key into one entity each.

    Scans in order; the first-seen entity survives a merge. A candidate
    whose keys touch several existing entities chains them all together,
    so single-word keys can merge transitively: two different people
    sharing a first word end up as one. Text alone carries no stronger
    signal, so that approximation is accepted.
    """
    entities: list[dict] = []
    entity_keys: list[set[str]] = []
    for candidate in candidates:
        keys = match_keys(candidate)
        if not keys:
            continue
        hits = [i for i, existing in enumerate(entity_keys) if existing & keys]
        if not hits:
            entities.append(copy.deepcopy(candidate))
            entity_keys.append(keys)
            continue

        target = hits[0]
        for i in hits[1:]:
            _absorb(entities[target], entities[i])
            entity_keys[target] |= entity_keys[i]
        _absorb(entities[target], candidate)
        entity_keys[target] |= keys
        for i in reversed(hits[1:]):
            del entities[i]
            del entity_keys[i]
    return entities


# ── Schema enforcement ─────────────────────────────────────


def _text(value: Any, default: str) -> str:
    return value.strip() if isinstance(value, str) and value.strip() else default


def _hex(value: Any, default: str) -> str:
    if isinstance(value, str) and _HEX.fullmatch(value.strip()):
        value = value.strip()
        return value if value.startswith("#") else f"#{value}"
    return default


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return int(value)
    return default


def _section(appearance: dict, key: str) -> dict:
    value = appearance.get(key)
    return value if isinstance(value, dict) else {}


def enforce_schema(candidate: dict) -> Character:
    """Build a Character with every appearance field populated."""
    dna = candidate.get("appearance") or {}
    eyes, hair = _section(dna, "eyes"), _section(dna, "hair")
    skin, body = _section(dna, "skin"), _section(dna, "body")
    defaults = _section(dna, "defaults")

    appearance = Appearance(
        face=_text(dna.get("face"), "average proportions"),
        eyes=Eyes(shape=_text(eyes.get("shape"), "average"), hex=_hex(eyes.get("hex"), "#6B4E3D")),
        hair=Hair(style=_text(hair.get("style"), "short"), hex=_hex(hair.get("hex"), "#111111")),
        skin=Skin(hex=_hex(skin.get("hex"), "#C69C77")),
        body=Body(
            age=_positive_int(body.get("age"), 30),
            height_cm=_positive_int(body.get("height_cm"), 170),
            build=_text(body.get("build"), "average"),
        ),
        mark=_text(dna.get("mark"), "no visible mark"),
        accessory=_text(dna.get("accessory"), "simple wristwatch"),
        outfit=_text(dna.get("outfit"), "neutral outfit"),
        defaults=Defaults(expression=_text(defaults.get("expression"), "neutral")),
    )
    name = _text(candidate.get("name"), "Unnamed Person")
    return Character(
        id=candidate.get("id") or new_id(),
        name=name,
        aliases=_unique(_coerce_aliases(candidate.get("aliases"))),
        category="main" if candidate.get("category") == "main" else "side",
        is_generated=bool(candidate.get("isGenerated")),
        appearance=appearance,
    )


def sort_registry(characters: list[Character]) -> list[Character]:
    """Alphabetical by display name; ties broken by name, category, aliases."""
    return sorted(
        characters,
        key=lambda c: (
            c.name.casefold(),
            c.name,
            c.category != "main",
            tuple(a.casefold() for a in c.aliases),
        ),
    )


def build_registry(raw_items: list[Any]) -> list[Character]:
    """Raw extraction items → deduplicated, fully populated, sorted registry."""
    candidates = [c for c in (normalize_candidate(r) for r in raw_items) if c]
    merged = merge_characters(candidates)
    return sort_registry([enforce_schema(c) for c in merged])


def dedupe_registry(characters: list[Character]) -> list[Character]:
    """Re-run the merge over an existing registry (e.g. after user edits)."""
    return build_registry([c.wire() for c in characters])


def parse_characters_output(text: str) -> list | None:
    """Accept a bare JSON array or {"characters": [...]}."""
    data = parse_json_output(text)
    if isinstance(data, dict):
        data = data.get("characters")
    return data if isinstance(data, list) else None


async def extract_characters(
    story: str,
    llm: LLM,
    theme: ThemeProfile | None = None,
    *,
    control: RunControl | None = None,
    templates: dict[str, str] | None = None,
) -> list[Character]:
    """Extract, merge and sort every human character in the story.

    Returns [] when the call fails or its output is not the expected shape.
    """
    theme = theme or ThemeProfile()
    try:
        prompt = render_stage("characters", {
            "story": story,
            "era": theme.era,
            "genre": theme.genre,
            "tone": theme.tone,
        }, templates)
        output = await call_llm(
            llm, "characters", prompt, control=control, temperature=0.2, max_tokens=2400,
        )
    except (LLMError, PromptError) as e:
        logger.warning("Character extraction failed: %s", e)
        return []

    items = parse_characters_output(output)
    if items is None:
        logger.warning("Character extractor returned no character list")
        return []

    registry = build_registry(items)
    main = sum(1 for c in registry if c.category == "main")
    logger.info(
        "Extracted %d characters (%d main, %d side)",
        len(registry), main, len(registry) - main,
    )
    return registry
