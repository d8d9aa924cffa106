"""Parse screenplay-style script text into attributed dialogue lines and a character roster."""

import logging
import re

from scene_partner.models import DialogueLine, ScriptParsing
from scene_partner.constants import (
    NAME_MIN_LENGTH,
    NAME_MAX_LENGTH,
    CUE_MAX_WORDS,
    ROSTER_LIMIT,
    PRODUCTION_KEYWORDS,
    STAGE_DIRECTION_WORDS,
    GENERIC_SPEAKER_TOKENS,
    CUE_ACTION_WORDS,
    FALLBACK_ROSTER,
    PLAIN_TEXT_SPEAKER,
)

logger = logging.getLogger(__name__)

_KEYWORD_PATTERN = "|".join(re.escape(k) for k in PRODUCTION_KEYWORDS)

# Scene headings and transitions close the current speaker's block
_PRODUCTION_LINE_RE = re.compile(rf"^(?:{_KEYWORD_PATTERN})\b")

# JOHN: Hello there.
_COLON_RE = re.compile(r"^([A-Z][A-Z\s\-'.]+):\s*(.*)$")

# A line holding only a caps name, optionally with an extension: JOHN (V.O.)
_CUE_RE = re.compile(r"^([A-Z][A-Z\s\-'.]*?)\s*(?:\([^()]*\))?$")

# (SARAH) inside action or dialogue
_PARENTHETICAL_RE = re.compile(r"\(([A-Z][A-Z\s\-']+)\)")

_ACTION_RE = re.compile(r"\b(?:" + "|".join(CUE_ACTION_WORDS) + r")\b")


def preprocess_script(text: str) -> str:
    """Normalize line endings, typography and stray markup before parsing."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\u00a0", " ")
    text = re.sub("[\u2018\u2019]", "'", text)
    text = re.sub("[\u201c\u201d]", '"', text)
    text = re.sub("[\u2013\u2014]", "-", text)
    text = text.replace("\t", "    ")
    # Asterisk markup: lone asterisks, leading bullets, trailing stars
    text = re.sub(r"^[ ]*\*+[ ]*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"^[ ]*\*+[ ]*", "", text, flags=re.MULTILINE)
    text = re.sub(r"[ ]*\*+[ ]*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"\n[ ]*\n(?:[ ]*\n)+", "\n\n", text)
    return text.strip()


def _valid_name(name: str) -> bool:
    """Length bounds plus production-keyword exclusion shared by colon and cue names."""
    if not NAME_MIN_LENGTH < len(name) < NAME_MAX_LENGTH:
        return False
    # Substring match: WINTERS contains INT, CUTLER contains CUT
    return not any(keyword in name for keyword in PRODUCTION_KEYWORDS)


def _match_colon_line(line: str) -> tuple[str, str] | None:
    """Return (NAME, dialogue) for a CHARACTER: dialogue line, else None."""
    match = _COLON_RE.match(line)
    if not match:
        return None
    name = match.group(1).strip()
    if not _valid_name(name):
        return None
    return name, match.group(2).strip()


def _match_cue_line(line: str) -> str | None:
    """Return the character name for a standalone cue line, else None."""
    match = _CUE_RE.match(line)
    if not match:
        return None
    name = " ".join(match.group(1).split())
    if not _valid_name(name):
        return None
    if len(name.split()) > CUE_MAX_WORDS:
        return None
    if _ACTION_RE.search(name):
        return None
    return name


def _find_parenthetical_names(text: str) -> list[str]:
    """Caps names written in parentheses, minus stage directions like (BEAT)."""
    names = []
    for match in _PARENTHETICAL_RE.finditer(text):
        name = match.group(1).strip()
        if not NAME_MIN_LENGTH < len(name) < NAME_MAX_LENGTH:
            continue
        lowered = name.lower()
        if any(word in lowered for word in STAGE_DIRECTION_WORDS):
            continue
        names.append(name.upper())
    return names


def _extract_dialogues(lines: list[str]) -> tuple[list[DialogueLine], list[str], int]:
    """Walk the script once, building dialogue lines.

    Returns (dialogues, speaker names in order seen, colon-line count).
    A colon line wins over a cue reading of the same line. Blank lines end
    a dialogue block but keep the current cue speaker.
    """
    dialogues = []
    names = []
    colon_count = 0
    speaker = None
    block = []
    block_start = 0

    def flush():
        if speaker is not None and block:
            dialogues.append(DialogueLine(
                character=speaker,
                text=" ".join(block),
                line_number=block_start,
            ))
        block.clear()

    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line:
            flush()
            continue

        colon = _match_colon_line(line)
        if colon:
            flush()
            name, text = colon
            names.append(name)
            if text:
                dialogues.append(DialogueLine(character=name, text=text, line_number=number))
                colon_count += 1
                speaker = None
            else:
                # "JOHN:" on its own line acts as a cue
                speaker = name
            continue

        if _PRODUCTION_LINE_RE.match(line):
            flush()
            speaker = None
            continue

        cue = _match_cue_line(line)
        if cue:
            flush()
            names.append(cue)
            speaker = cue
            continue

        if speaker is not None:
            if not block:
                block_start = number
            block.append(line)

    flush()
    return dialogues, names, colon_count


def rank_characters(names: list[str], text: str, limit: int = ROSTER_LIMIT) -> list[str]:
    """Deduplicate, drop generic speakers, rank by occurrence count in text.

    Ties keep first-appearance order.
    """
    seen = set()
    unique = []
    for name in names:
        name = name.upper()
        if name in seen:
            continue
        seen.add(name)
        lowered = name.lower()
        if any(token in lowered for token in GENERIC_SPEAKER_TOKENS):
            continue
        unique.append(name)

    counts = {
        name: len(re.findall(re.escape(name), text, re.IGNORECASE))
        for name in unique
    }
    ranked = sorted(unique, key=lambda name: -counts[name])
    return ranked[:limit]


def parse_script(text: str) -> ScriptParsing:
    """Parse script text into a ScriptParsing.

    Never raises: empty or prose input yields no dialogues and
    is_plain_text=True.
    """
    cleaned = preprocess_script(text or "")
    lines = cleaned.split("\n")

    dialogues, names, colon_count = _extract_dialogues(lines)
    names.extend(_find_parenthetical_names(cleaned))
    characters = rank_characters(names, cleaned)
    is_plain_text = colon_count == 0

    logger.debug(
        "Parsed %d lines: %d dialogues, characters=%s, plain_text=%s",
        len(lines), len(dialogues), characters, is_plain_text,
    )
    return ScriptParsing(dialogues=dialogues, characters=characters, is_plain_text=is_plain_text)


def roster_or_fallback(parsing: ScriptParsing) -> list[str]:
    """Characters for a selection list, with placeholders when none were found."""
    if parsing.characters:
        return list(parsing.characters)
    return list(FALLBACK_ROSTER)


def reading_lines(text: str) -> list[DialogueLine]:
    """Turn plain prose into single-speaker lines for a solo teleprompter read."""
    lines = []
    for number, raw in enumerate(preprocess_script(text or "").split("\n"), start=1):
        line = raw.strip()
        if not line or _PRODUCTION_LINE_RE.match(line):
            continue
        lines.append(DialogueLine(character=PLAIN_TEXT_SPEAKER, text=line, line_number=number))
    return lines


def character_lines(dialogues: list[DialogueLine], character: str) -> list[DialogueLine]:
    return [d for d in dialogues if d.character == character]


def other_character_lines(dialogues: list[DialogueLine], character: str) -> list[DialogueLine]:
    return [d for d in dialogues if d.character != character]
