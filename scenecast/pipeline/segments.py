"""Story segmentation into bounded-length scene lines.

Two tiers:
  1. LLM split — the segmenter template asks for lines of min..max words.
     The answer is kept only if enough lines fall inside the window.
  2. Paragraph fallback — deterministic, no I/O, cannot fail on non-empty
     input. Blank-line paragraphs are the units; overlong paragraphs are
     broken at sentence punctuation, then commas; short units are buffered
     and emitted together once the buffer reaches flush_words.

A paragraph longer than max_words with no punctuation to break at passes
through whole.
"""

import logging
import re

from scenecast.config import Limits
from scenecast.control import RunControl
from scenecast.llm import LLM, LLMError
from scenecast.models import SceneLine
from scenecast.templates import PromptError, render_stage

from .extractors import call_llm, parse_json_output

logger = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
# Sentence end, optionally followed by one closing quote or bracket
_SENTENCE_BREAK = re.compile(r"(?<=[.!?;])\s+|(?<=[.!?;][\"'”’)\]])\s+")
_CLAUSE_BREAK = re.compile(r"(?<=,)\s+")


def count_words(text: str) -> int:
    return len(text.split())


def within_bounds(text: str, limits: Limits) -> bool:
    return limits.min_words <= count_words(text) <= limits.max_words


def split_paragraphs(story: str) -> list[str]:
    """Blank-line separated paragraphs, inner whitespace collapsed."""
    paragraphs = []
    for block in _PARAGRAPH_BREAK.split(story):
        text = " ".join(block.split())
        if text:
            paragraphs.append(text)
    return paragraphs


# ── Breaking overlong text ─────────────────────────────────


def _pieces(text: str, max_words: int, clauses: bool = False) -> list[str]:
    """Sentences, with overlong sentences (or all, with clauses=True) split at commas."""
    pieces: list[str] = []
    for sentence in _SENTENCE_BREAK.split(text):
        if not sentence.strip():
            continue
        if clauses or count_words(sentence) > max_words:
            pieces.extend(p for p in _CLAUSE_BREAK.split(sentence) if p.strip())
        else:
            pieces.append(sentence)
    return pieces


def _wc(chunk: list[str]) -> int:
    return sum(count_words(p) for p in chunk)


def _pack(pieces: list[str], max_words: int) -> list[list[str]]:
    """Greedily fill chunks with consecutive pieces up to max_words."""
    chunks: list[list[str]] = []
    current: list[str] = []
    for piece in pieces:
        if current and _wc(current) + count_words(piece) > max_words:
            chunks.append(current)
            current = []
        current.append(piece)
    if current:
        chunks.append(current)
    return chunks


def _settle(chunks: list[list[str]], min_words: int, max_words: int) -> list[list[str]]:
    """Eliminate chunks under min_words, keeping narrative order.

    In order of preference: fold the short chunk into a neighbour that has
    room, borrow boundary pieces from a neighbour, and finally fold it into
    the smaller neighbour even past max_words.
    """
    settled = [list(c) for c in chunks]
    i = 0
    while i < len(settled):
        chunk = settled[i]
        if len(settled) == 1 or _wc(chunk) >= min_words:
            i += 1
            continue
        prev = settled[i - 1] if i > 0 else None
        nxt = settled[i + 1] if i + 1 < len(settled) else None

        if prev is not None and _wc(prev) + _wc(chunk) <= max_words:
            prev.extend(chunk)
            del settled[i]
            continue
        if nxt is not None and _wc(nxt) + _wc(chunk) <= max_words:
            nxt[:0] = chunk
            del settled[i]
            continue

        while prev is not None and len(prev) > 1 and _wc(chunk) < min_words:
            moved = count_words(prev[-1])
            if _wc(prev) - moved < min_words or _wc(chunk) + moved > max_words:
                break
            chunk.insert(0, prev.pop())
        while nxt is not None and len(nxt) > 1 and _wc(chunk) < min_words:
            moved = count_words(nxt[0])
            if _wc(nxt) - moved < min_words or _wc(chunk) + moved > max_words:
                break
            chunk.append(nxt.pop(0))
        if _wc(chunk) >= min_words:
            i += 1
            continue

        if prev is not None and (nxt is None or _wc(prev) <= _wc(nxt)):
            prev.extend(chunk)
        else:
            nxt[:0] = chunk
        del settled[i]
    return settled


def break_long(text: str, limits: Limits) -> list[str]:
    """Split text longer than max_words into chunks inside the window.

    Sentence boundaries are tried first; if that leaves a chunk outside the
    window, the split is redone with every comma as a candidate boundary.
    """
    lines = _chunked(text, limits, clauses=False)
    if all(within_bounds(line, limits) for line in lines):
        return lines
    return _chunked(text, limits, clauses=True)


def _chunked(text: str, limits: Limits, clauses: bool) -> list[str]:
    pieces = _pieces(text, limits.max_words, clauses)
    chunks = _settle(_pack(pieces, limits.max_words), limits.min_words, limits.max_words)
    return [" ".join(c) for c in chunks]


# ── Deterministic fallback ─────────────────────────────────


def _join_pending(buffer: str, unit: str, limits: Limits) -> list[str]:
    """Emit a pending short buffer together with the full-size unit after it."""
    if count_words(buffer) + count_words(unit) <= limits.max_words:
        return [f"{buffer} {unit}"]
    if count_words(buffer) >= limits.min_words:
        return [buffer, unit]
    return break_long(f"{buffer} {unit}", limits)


def fallback_split(story: str, limits: Limits = Limits()) -> list[str]:
    """Paragraph-based split. Same input always gives the same output."""
    units: list[str] = []
    for paragraph in split_paragraphs(story):
        if count_words(paragraph) > limits.max_words:
            units.extend(break_long(paragraph, limits))
        else:
            units.append(paragraph)

    lines: list[str] = []
    buffer = ""
    for unit in units:
        if count_words(unit) < limits.min_words:
            buffer = f"{buffer} {unit}".strip()
            if count_words(buffer) >= limits.flush_words:
                lines.append(buffer)
                buffer = ""
            continue
        if buffer:
            lines.extend(_join_pending(buffer, unit, limits))
            buffer = ""
        else:
            lines.append(unit)

    # A trailing buffer that never reached min_words is dropped
    if buffer and count_words(buffer) >= limits.min_words:
        lines.append(buffer)
    return lines


# ── LLM split ──────────────────────────────────────────────


def parse_lines_output(text: str, limits: Limits) -> list[str] | None:
    """Parse the segmenter's answer; None if unusable.

    Accepts a bare JSON array or {"lines": [...]}. Lines outside the word
    window are dropped; fewer than min_viable_lines survivors is a failure.
    """
    data = parse_json_output(text)
    if isinstance(data, dict):
        data = data.get("lines")
    if not isinstance(data, list):
        return None
    lines = [
        " ".join(item.split())
        for item in data
        if isinstance(item, str) and within_bounds(item, limits)
    ]
    if len(lines) < limits.min_viable_lines:
        logger.warning(
            "Segmenter returned %d usable lines (need %d)",
            len(lines), limits.min_viable_lines,
        )
        return None
    return lines


async def _segment_with_llm(
    story: str,
    llm: LLM,
    control: RunControl | None,
    limits: Limits,
    templates: dict[str, str] | None,
) -> list[str] | None:
    try:
        prompt = render_stage("segmenter", {
            "story": story,
            "min_words": limits.min_words,
            "max_words": limits.max_words,
            "target_min": limits.target_min,
            "target_max": limits.target_max,
        }, templates)
        output = await call_llm(
            llm, "segmenter", prompt, control=control, temperature=0.2, max_tokens=2400,
        )
    except (LLMError, PromptError) as e:
        logger.warning("Segmenter call failed, using paragraph fallback: %s", e)
        return None
    return parse_lines_output(output, limits)


def to_scene_lines(texts: list[str]) -> list[SceneLine]:
    return [SceneLine(index=i, text=t) for i, t in enumerate(texts, start=1)]


async def segment_story(
    story: str,
    llm: LLM | None = None,
    *,
    control: RunControl | None = None,
    limits: Limits = Limits(),
    templates: dict[str, str] | None = None,
) -> list[SceneLine]:
    """Split a story into ordered scene lines.

    Never fails on upstream errors: anything wrong with the LLM split falls
    back to fallback_split(). Only Cancelled propagates.
    """
    if not story or not story.strip():
        return []
    if llm is not None:
        lines = await _segment_with_llm(story, llm, control, limits, templates)
        if lines is not None:
            logger.debug("Segmenter produced %d lines", len(lines))
            return to_scene_lines(lines)
    lines = fallback_split(story, limits)
    logger.debug("Paragraph fallback produced %d lines", len(lines))
    return to_scene_lines(lines)
