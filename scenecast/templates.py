"""Handlebars instruction templates for the LLM-backed pipeline stages.

Each stage ("segmenter", "theme", "characters") renders one template with
the story and its limits, then sends the result to the LLM. The wording is
a replaceable detail: any stage template can be overridden through the
`prompts` section of the config. Story text is inserted with triple
braces so quotes and ampersands reach the model unescaped.
"""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


SEGMENT_TEMPLATE = """Break the story into scene lines with STRICT rules:
- Every line {{min_words}}-{{max_words}} words (ideal {{target_min}}-{{target_max}}).
- Keep the narrative order exactly.
- Break at sentence-final punctuation first (. ! ? ;), then at commas.
- Merge fragments and short sentences under {{min_words}} words into a neighbouring line.
Return ONLY a JSON array of strings.

TEXT:
{{{story}}}"""

THEME_TEMPLATE = """Analyze this story and return compact JSON: {"theme": "...", "tone": "...", "genre": "...", "era": "..."}.

Story:
{{{story}}}"""

CHARACTER_TEMPLATE = """You are an EXPERT CHARACTER IDENTIFIER for film scripts.

GOAL: Extract EVERY HUMAN CHARACTER (named or unnamed) and output a full visual DNA record for each one, for visual consistency across a sequence of generated images.

Work in four passes over the text:
1. Collect every proper name.
2. Resolve every pronoun to a person. If no named antecedent exists, create a person with a realistic generated name.
3. Collect every occupation or role reference ("the doctor", "the detective") as a person unless already covered.
4. Collect implied and possessive references ("his wife", "her son").

RULES:
- Merge aliases and mentions into one entity (e.g. "Rachel", "his wife" -> Rachel). List every surface form in "aliases".
- If unnamed, GENERATE a realistic name and set "isGenerated": true.
- category: "main" if the person is named and drives or recurs in the story, else "side".
- Prefer era-appropriate names and ages (era: {{era}}; genre: {{genre}}).
- Fill EVERY field. Never omit one.

OUTPUT JSON ARRAY ONLY (no commentary):
[
  {
    "name": "string",
    "category": "main|side",
    "aliases": ["array", "of", "strings"],
    "appearance": {
      "face": "shape/jaw/cheekbones",
      "eyes": { "shape": "", "hex": "#RRGGBB" },
      "hair": { "style": "length, texture, style", "hex": "#RRGGBB" },
      "skin": { "hex": "#RRGGBB" },
      "body": { "age": 0, "height_cm": 0, "build": "" },
      "mark": "one permanent distinctive mark (location)",
      "accessory": "one signature accessory (always present)",
      "outfit": "permanent clothing and colors (always present)",
      "defaults": { "expression": "neutral|happy|concerned|angry" }
    },
    "isGenerated": false
  }
]

TEXT:
{{{story}}}

Return ONLY the JSON array."""

DEFAULT_TEMPLATES: dict[str, str] = {
    "segmenter": SEGMENT_TEMPLATE,
    "theme": THEME_TEMPLATE,
    "characters": CHARACTER_TEMPLATE,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def stage_template(stage: str, overrides: dict[str, str] | None = None) -> str:
    """Return the template for a stage, preferring a non-empty override."""
    if overrides and overrides.get(stage):
        return overrides[stage]
    try:
        return DEFAULT_TEMPLATES[stage]
    except KeyError:
        raise PromptError(f"No template for stage {stage!r}") from None


def render_stage(
    stage: str, context: dict[str, Any], overrides: dict[str, str] | None = None
) -> str:
    return render_prompt(stage_template(stage, overrides), context)
