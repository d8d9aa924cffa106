"""Voice assignment for the characters the actor rehearses against."""

import hashlib
import json
import logging
import os
from typing import Callable

from scene_partner.constants import DEFAULT_VOICE

logger = logging.getLogger(__name__)

# Hardcoded English voice pool (avoids network call at startup)
VOICE_POOL = [
    "en-US-AriaNeural",
    "en-US-DavisNeural",
    "en-US-TonyNeural",
    "en-US-JennyNeural",
    "en-US-SaraNeural",
    "en-US-GuyNeural",
    "en-GB-SoniaNeural",
    "en-GB-ThomasNeural",
    "en-GB-RyanNeural",
    "en-AU-NatashaNeural",
    "en-AU-WilliamNeural",
    "en-CA-ClaraNeural",
    "en-CA-LiamNeural",
    "en-IE-EmilyNeural",
]


def load_cast(script_path: str) -> dict:
    """Load .cast.json sidecar file if it exists.

    Returns cast dict or empty dict if not found or malformed.
    """
    base = os.path.splitext(script_path)[0]
    cast_path = base + ".cast.json"
    if not os.path.exists(cast_path):
        return {}
    try:
        with open(cast_path) as f:
            return json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed cast file: %s — using hash fallback", cast_path)
        return {}


def _resolve_alias(character: str, cast: dict) -> str:
    """Resolve a character name through alias mappings in cast data."""
    for primary_name, info in cast.get("cast", {}).items():
        aliases = info.get("aliases", [])
        if character.upper() in [a.upper() for a in aliases]:
            return primary_name.upper()
    return character.upper()


def _hash_voice(character: str, pool: list[str]) -> str:
    """Deterministic voice assignment via sha256 hash."""
    h = hashlib.sha256(character.encode()).hexdigest()
    idx = int(h, 16) % len(pool)
    return pool[idx]


def assign_voices(characters: list[str], cast: dict | None = None) -> dict[str, str]:
    """Map each character to a voice id.

    Priority: cast file (after alias resolution) → hash fallback. Voices
    claimed in the cast are kept out of the hash pool.
    """
    if cast is None:
        cast = {}

    cast_voices = {
        name.upper(): info["voice"]
        for name, info in cast.get("cast", {}).items()
        if info.get("voice")
    }
    available_pool = [v for v in VOICE_POOL if v not in cast_voices.values()]
    if not available_pool:
        available_pool = list(VOICE_POOL)  # fallback to full pool if all taken

    assignments = {}
    for character in characters:
        resolved = _resolve_alias(character, cast)
        if resolved in cast_voices:
            assignments[character] = cast_voices[resolved]
        else:
            assignments[character] = _hash_voice(resolved, available_pool)
    return assignments


def voice_strategy(assignments: dict[str, str], default: str = DEFAULT_VOICE) -> Callable[[str], str]:
    """Wrap an assignment map as the callable a sequencer asks for voices."""
    def voice_for(character: str) -> str:
        return assignments.get(character, default)
    return voice_for
