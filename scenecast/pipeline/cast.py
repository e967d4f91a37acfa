"""Per-line cast resolution.

Which characters' appearance blocks go into one line's prompt. Matching is
lexical only: any pronoun resolution already happened when the extractor
built alias sets, so a pronoun-only line relies on the default-to-main
fallback.
"""

from scenecast.models import Character, SceneLine

MAX_SIDE_CHARACTERS = 3


def mentions(text: str, character: Character) -> bool:
    """True if the name or any alias appears in text (case-insensitive substring)."""
    haystack = text.casefold()
    for term in (character.name, *character.aliases):
        term = term.strip().casefold()
        if term and term in haystack:
            return True
    return False


def resolve_cast(
    line: SceneLine | str,
    registry: list[Character],
    *,
    max_side: int = MAX_SIDE_CHARACTERS,
) -> list[Character]:
    """Return the cast for one scene line.

    With any match: every matched main character, then the first `max_side`
    matched side characters, each group in registry order. With no match:
    every main character.
    """
    text = line.text if isinstance(line, SceneLine) else line
    matched = [c for c in registry if mentions(text, c)]
    if not matched:
        return [c for c in registry if c.category == "main"]

    mains = [c for c in matched if c.category == "main"]
    sides = [c for c in matched if c.category == "side"]
    return mains + sides[:max(max_side, 0)]
