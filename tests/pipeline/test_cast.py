"""Tests for per-line cast resolution."""

from scenecast.models import Character, SceneLine
from scenecast.pipeline import resolve_cast
from scenecast.pipeline.cast import mentions


def _names(cast: list[Character]) -> list[str]:
    return [c.name for c in cast]


MICHAEL = Character(name="Michael", category="main", aliases=["Mike"])
CHLOE = Character(name="Chloe", category="side", aliases=["the neighbour"])


def test_match_excludes_unmentioned_side_character():
    cast = resolve_cast("Michael picks up the phone", [CHLOE, MICHAEL])
    assert _names(cast) == ["Michael"]


def test_no_match_defaults_to_all_main_characters():
    a = Character(name="Anna", category="main")
    b = Character(name="Boris", category="main")
    side = Character(name="Clerk", category="side")
    cast = resolve_cast("The clock ticks on the wall.", [a, b, side])
    assert _names(cast) == ["Anna", "Boris"]


def test_no_match_and_no_main_characters_gives_empty_cast():
    assert resolve_cast("The clock ticks.", [CHLOE]) == []


def test_empty_registry():
    assert resolve_cast("Michael runs.", []) == []


def test_alias_match_is_case_insensitive():
    cast = resolve_cast("THE NEIGHBOUR waves from the porch.", [MICHAEL, CHLOE])
    assert _names(cast) == ["Chloe"]


def test_accepts_scene_line():
    line = SceneLine(index=3, text="Mike hangs up and stares at the wall.")
    assert _names(resolve_cast(line, [MICHAEL, CHLOE])) == ["Michael"]


def test_side_characters_capped_at_three():
    sides = [Character(name=n, category="side") for n in ("Ann", "Ben", "Cat", "Dan", "Eve")]
    line = "Ann, Ben, Cat, Dan and Eve greet Michael at the door."
    cast = resolve_cast(line, [*sides, MICHAEL])
    assert _names(cast) == ["Michael", "Ann", "Ben", "Cat"]


def test_all_matched_mains_kept():
    mains = [Character(name=n, category="main") for n in ("Ann", "Ben", "Cat", "Dan", "Eve")]
    line = "Ann, Ben, Cat, Dan and Eve sit down."
    assert len(resolve_cast(line, mains)) == 5


def test_cast_size_bound():
    registry = [
        Character(name="Ann", category="main"),
        Character(name="Ben", category="side"),
        Character(name="Cat", category="side"),
        Character(name="Dan", category="side"),
        Character(name="Eve", category="side"),
        Character(name="Fay", category="main"),
    ]
    lines = [
        "Ann and Ben argue.",
        "Ben, Cat, Dan and Eve leave.",
        "Fay, Ann, Eve, Dan, Cat and Ben all shout.",
        "Nobody speaks.",
    ]
    for line in lines:
        cast = resolve_cast(line, registry)
        matched_mains = [c for c in registry if c.category == "main" and mentions(line, c)]
        if any(mentions(line, c) for c in registry):
            assert len(cast) <= len(matched_mains) + 3


def test_custom_side_limit():
    sides = [Character(name=n, category="side") for n in ("Ann", "Ben", "Cat")]
    cast = resolve_cast("Ann, Ben and Cat.", sides, max_side=1)
    assert _names(cast) == ["Ann"]


def test_blank_alias_never_matches():
    ghost = Character(name="Ghost", category="side", aliases=["", "  "])
    assert not mentions("Anything at all.", ghost)
