"""Tests for theme analysis and character registry building."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scenecast.control import Cancelled, RunControl
from scenecast.llm import HttpLLM
from scenecast.models import Character, ThemeProfile
from scenecast.pipeline import (
    analyze_theme,
    build_registry,
    dedupe_registry,
    extract_characters,
    merge_characters,
    normalize_name,
)
from scenecast.pipeline.extractors import (
    enforce_schema,
    match_keys,
    merge_appearance,
    normalize_candidate,
    parse_json_output,
)


def _candidates(*raw: dict) -> list[dict]:
    return [normalize_candidate(r) for r in raw]


def _alias_set(entity) -> set[str]:
    aliases = entity["aliases"] if isinstance(entity, dict) else entity.aliases
    return {a.casefold() for a in aliases}


# ── parse_json_output ──────────────────────────────────────


def test_parse_json_plain():
    assert parse_json_output('{"a": 1}') == {"a": 1}


def test_parse_json_fenced():
    assert parse_json_output('```json\n[{"name": "Rachel"}]\n```') == [{"name": "Rachel"}]


def test_parse_json_with_chatter():
    text = 'Here you go:\n[{"name": "Rachel"}]\nHope this helps.'
    assert parse_json_output(text) == [{"name": "Rachel"}]


def test_parse_json_garbage():
    assert parse_json_output("no json here") is None


def test_parse_json_garbage_logs_warning(caplog):
    with caplog.at_level("WARNING", logger="scenecast.pipeline.extractors"):
        parse_json_output("{broken")
    record = next(r for r in caplog.records if "not valid JSON" in r.getMessage())
    assert record.args


def test_parse_json_scalar_rejected():
    assert parse_json_output("42") is None


# ── Names and keys ─────────────────────────────────────────


@pytest.mark.parametrize("raw, expected", [
    ("Rachel", "rachel"),
    ("Dr. Smith", "smith"),
    ("dr smith", "smith"),
    ("Mrs.  Anne   Hale", "anne hale"),
    ("Ms Lee", "lee"),
    ("Mr. O'Brien", "obrien"),
    ("  his wife! ", "his wife"),
    ("Drake", "drake"),
])
def test_normalize_name(raw, expected):
    assert normalize_name(raw) == expected


def test_match_keys():
    candidate = normalize_candidate({"name": "Dr. Anne Hale", "aliases": ["The Doctor"]})
    assert match_keys(candidate) == {"anne hale", "anne", "hale", "the doctor"}


# ── Candidate normalisation ────────────────────────────────


def test_candidate_field_variants():
    candidate = normalize_candidate({
        "name": " Tom Hale ",
        "type": "main",
        "aliases": "the driver, Tommy",
        "isAIGenerated": True,
        "dna": {"face": "square jaw"},
    })
    assert candidate == {
        "name": "Tom Hale",
        "category": "main",
        "aliases": ["the driver", "Tommy"],
        "isGenerated": True,
        "appearance": {"face": "square jaw"},
    }


@pytest.mark.parametrize("raw", [{"name": ""}, {"name": "!!!"}, {"aliases": ["x"]}, "Rachel", None])
def test_candidate_without_usable_name_dropped(raw):
    assert normalize_candidate(raw) is None


def test_unknown_category_becomes_side():
    assert normalize_candidate({"name": "A", "category": "extra"})["category"] == "side"


# ── Merging ────────────────────────────────────────────────


def test_rachel_and_his_wife_merge():
    merged = merge_characters(_candidates(
        {"name": "Rachel", "aliases": ["Rach", "wife"]},
        {"name": "his wife", "aliases": []},
    ))
    assert len(merged) == 1
    assert merged[0]["name"] == "Rachel"
    assert _alias_set(merged[0]) == {"rach", "wife", "rachel", "his wife"}


def test_alias_union_independent_of_order():
    a = {"name": "Rachel", "aliases": ["Rach", "wife"]}
    b = {"name": "his wife", "aliases": ["Mrs. Cole"]}
    forward = merge_characters(_candidates(a, b))
    backward = merge_characters(_candidates(b, a))
    assert len(forward) == len(backward) == 1
    assert _alias_set(forward[0]) == _alias_set(backward[0])


def test_unrelated_candidates_stay_apart():
    merged = merge_characters(_candidates({"name": "Michael"}, {"name": "Chloe"}))
    assert [m["name"] for m in merged] == ["Michael", "Chloe"]
    assert all(m["aliases"] == [] for m in merged)


def test_title_variants_merge():
    merged = merge_characters(_candidates({"name": "Dr. Smith"}, {"name": "Smith"}))
    assert len(merged) == 1
    assert merged[0]["name"] == "Dr. Smith"


def test_shared_word_chains_people_together():
    # Accepted approximation: two different Smiths collapse into one entity
    merged = merge_characters(_candidates({"name": "Mrs. Smith"}, {"name": "John Smith"}))
    assert len(merged) == 1


def test_transitive_chain_through_later_candidate():
    merged = merge_characters(_candidates(
        {"name": "Anne", "aliases": ["the nurse"]},
        {"name": "Hale"},
        {"name": "Anne Hale"},
    ))
    assert len(merged) == 1
    assert merged[0]["name"] == "Anne"
    assert _alias_set(merged[0]) == {"the nurse", "anne", "hale", "anne hale"}


def test_generated_name_replaced_by_verbatim_name():
    merged = merge_characters(_candidates(
        {"name": "Tom Hale", "isGenerated": True, "aliases": ["the doctor"]},
        {"name": "Dr. Evans", "aliases": ["the doctor"]},
    ))
    assert len(merged) == 1
    assert merged[0]["name"] == "Dr. Evans"
    assert merged[0]["isGenerated"] is False
    assert merged[0]["aliases"] == ["the doctor", "Dr. Evans"]


def test_verbatim_name_not_replaced_by_generated_one():
    merged = merge_characters(_candidates(
        {"name": "Dr. Evans", "aliases": ["the doctor"]},
        {"name": "Tom Hale", "isGenerated": True, "aliases": ["the doctor"]},
    ))
    assert merged[0]["name"] == "Dr. Evans"
    assert "tom hale" not in _alias_set(merged[0])


def test_main_wins_over_side():
    merged = merge_characters(_candidates(
        {"name": "Rachel", "category": "side"},
        {"name": "Rachel Cole", "category": "main"},
    ))
    assert merged[0]["category"] == "main"


def test_appearance_merged_field_by_field():
    merged = merge_characters(_candidates(
        {"name": "Rachel", "appearance": {
            "face": "oval face", "hair": {"style": "long red", "hex": "#B22222"},
            "body": {"age": 34, "height_cm": 165},
        }},
        {"name": "Rachel", "appearance": {
            "face": "", "hair": {"hex": "#8B0000"},
            "body": {"age": 0, "build": "slim"}, "mark": "scar on chin",
        }},
    ))
    appearance = merged[0]["appearance"]
    assert appearance["face"] == "oval face"
    assert appearance["hair"] == {"style": "long red", "hex": "#8B0000"}
    assert appearance["body"] == {"age": 34, "height_cm": 165, "build": "slim"}
    assert appearance["mark"] == "scar on chin"


def test_merge_appearance_does_not_mutate_inputs():
    existing = {"eyes": {"shape": "round"}}
    merge_appearance(existing, {"eyes": {"shape": "narrow"}})
    assert existing == {"eyes": {"shape": "round"}}


# ── Schema enforcement ─────────────────────────────────────


def test_enforce_schema_fills_defaults():
    character = enforce_schema(normalize_candidate({"name": "Rachel"}))
    assert isinstance(character, Character)
    a = character.appearance
    assert a.body.age == 30
    assert a.accessory == "simple wristwatch"
    assert a.defaults.expression == "neutral"
    assert a.skin.hex == "#C69C77"
    assert character.description.startswith("Rachel, 30 year old")


def test_enforce_schema_coerces_values():
    character = enforce_schema(normalize_candidate({"name": "Rachel", "appearance": {
        "eyes": {"shape": "almond", "hex": "3a5f0b"},
        "hair": {"style": "", "hex": "red"},
        "skin": "not a dict",
        "body": {"age": "41", "height_cm": -5, "build": "athletic"},
    }}))
    a = character.appearance
    assert a.eyes.shape == "almond"
    assert a.eyes.hex == "#3a5f0b"
    assert a.hair.style == "short"
    assert a.hair.hex == "#111111"
    assert a.skin.hex == "#C69C77"
    assert (a.body.age, a.body.height_cm, a.body.build) == (41, 170, "athletic")


def test_enforce_schema_keeps_id():
    assert enforce_schema(normalize_candidate({"name": "A", "id": "abc"})).id == "abc"


# ── Registry ───────────────────────────────────────────────


RAW = [
    {"name": "rachel", "category": "main", "aliases": ["Rach", "his wife"]},
    {"name": "Michael", "category": "main", "aliases": ["Mike"]},
    {"name": "his wife", "aliases": []},
    {"name": "Tom Hale", "isGenerated": True, "aliases": ["the doctor"]},
    {"name": "Dr. Evans", "aliases": ["the doctor"]},
    {"name": "Chloe", "aliases": ["the neighbour"]},
    {"name": "", "aliases": ["nobody"]},
]


def test_build_registry_sorted_and_merged():
    registry = build_registry(RAW)
    assert [c.name for c in registry] == ["Chloe", "Dr. Evans", "Michael", "rachel"]
    assert all(len(c.id) == 32 for c in registry)


def test_sort_is_case_insensitive():
    registry = build_registry([{"name": "bob"}, {"name": "Alice"}, {"name": "Carl"}])
    assert [c.name for c in registry] == ["Alice", "bob", "Carl"]


def test_merge_is_idempotent():
    registry = build_registry(RAW)
    assert dedupe_registry(registry) == registry
    assert dedupe_registry(dedupe_registry(registry)) == registry


def test_registry_after_edits_re_merges():
    registry = build_registry(RAW)
    edited = [*registry, Character(name="Mike", aliases=["Michael's brother"])]
    assert len(dedupe_registry(edited)) == len(registry)


# ── LLM stages ─────────────────────────────────────────────


async def test_extract_characters(make_llm):
    llm = make_llm({"characters": json.dumps({"characters": RAW})})
    theme = ThemeProfile(era="1920s", genre="Noir")
    registry = await extract_characters("Story text.", llm, theme)
    assert [c.name for c in registry] == ["Chloe", "Dr. Evans", "Michael", "rachel"]
    stage, prompt, temperature, max_tokens = llm.calls[0]
    assert stage == "characters"
    assert (temperature, max_tokens) == (0.2, 2400)
    assert "era: 1920s" in prompt
    assert "Story text." in prompt


async def test_extract_characters_bad_output_gives_empty_registry(make_llm):
    llm = make_llm({"characters": "Sorry, I can't do that."})
    assert await extract_characters("Story text.", llm) == []


async def test_extract_characters_llm_error_gives_empty_registry(make_llm):
    assert await extract_characters("Story text.", make_llm({})) == []


async def test_extract_characters_cancelled(make_llm):
    control = RunControl()
    control.cancel()
    llm = make_llm({"characters": "[]"})
    with pytest.raises(Cancelled):
        await extract_characters("Story text.", llm, control=control)


async def test_analyze_theme(make_llm):
    llm = make_llm({"theme": '{"theme": "Betrayal", "tone": "Dark", "genre": "Noir", "era": "1940s"}'})
    theme = await analyze_theme("Story text.", llm)
    assert theme == ThemeProfile(theme="Betrayal", tone="Dark", genre="Noir", era="1940s")
    assert llm.calls[0][3] == 300


async def test_analyze_theme_partial_keeps_defaults(make_llm):
    llm = make_llm({"theme": '{"genre": "Thriller", "era": ""}'})
    theme = await analyze_theme("Story text.", llm)
    assert theme.genre == "Thriller"
    assert theme.era == "Modern Day"


async def test_analyze_theme_failure_gives_defaults(make_llm):
    assert await analyze_theme("Story text.", make_llm({})) == ThemeProfile()
    assert await analyze_theme("Story text.", make_llm({"theme": "nope"})) == ThemeProfile()


async def test_extract_characters_null_completion_gives_empty_registry():
    llm = HttpLLM("http://localhost:8080", provider_format="openai")
    resp = MagicMock()
    resp.json.return_value = {"choices": [{"text": None}]}
    with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
        assert await extract_characters("Story text.", llm) == []
