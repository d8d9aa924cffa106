"""Persisted rehearsal settings: loaded at startup, saved on every change."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict, fields, replace

from scene_partner.constants import (
    SETTINGS_PATH,
    COUNTDOWN_SECONDS,
    DEFAULT_SPEED,
    TTS_VOLUME,
    VAD_THRESHOLD,
)

logger = logging.getLogger(__name__)


@dataclass
class RehearsalSettings:
    countdown_time: int = COUNTDOWN_SECONDS
    speed: float = DEFAULT_SPEED
    tts_volume: float = TTS_VOLUME
    voice_activation: bool = False      # end the actor's lines on silence instead of Enter
    vad_threshold: float = VAD_THRESHOLD
    mic_device: str = ""                # ffmpeg input device; empty for the platform default
    selected_character: str = ""
    character_voices: dict[str, str] = field(default_factory=dict)


SETTING_KEYS = tuple(f.name for f in fields(RehearsalSettings))
_SETTING_TYPES = {f.name: f.type for f in fields(RehearsalSettings)}


def _matches_type(key: str, value) -> bool:
    """Whether a loaded JSON value fits the named setting (ints count as floats)."""
    kind = _SETTING_TYPES[key]
    if kind is bool:
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if kind is int:
        return isinstance(value, int)
    if kind is float:
        return isinstance(value, (int, float))
    if kind is str:
        return isinstance(value, str)
    return isinstance(value, dict) and all(isinstance(v, str) for v in value.values())


def coerce_value(key: str, raw: str):
    """Convert a command-line string to the type of the named setting.

    Raises KeyError for unknown keys and ValueError for bad values.
    """
    if key not in SETTING_KEYS:
        raise KeyError(key)
    kind = _SETTING_TYPES[key]
    if kind is bool:
        lowered = raw.strip().lower()
        if lowered in ("on", "true", "yes", "1"):
            return True
        if lowered in ("off", "false", "no", "0"):
            return False
        raise ValueError(f"Expected on/off, got: {raw}")
    if kind is int:
        return int(raw)
    if kind is float:
        return float(raw)
    if kind is str:
        return raw
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"Expected a JSON object, got: {raw}")
    return value


class SettingsStore:
    """JSON-file settings repository."""

    def __init__(self, path: str = SETTINGS_PATH):
        self.path = path

    def load(self) -> RehearsalSettings:
        """Saved values merged over defaults.

        Unknown keys are dropped; values of the wrong type fall back to the
        default with a warning.
        """
        if not os.path.exists(self.path):
            return RehearsalSettings()
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Malformed settings file: %s — using defaults", self.path)
            return RehearsalSettings()
        if not isinstance(data, dict):
            logger.warning("Settings file is not an object: %s — using defaults", self.path)
            return RehearsalSettings()
        known = {}
        for key, value in data.items():
            if key not in SETTING_KEYS:
                continue
            if not _matches_type(key, value):
                logger.warning("Ignoring invalid %s in %s: %r", key, self.path, value)
                continue
            known[key] = value
        return replace(RehearsalSettings(), **known)

    def save(self, settings: RehearsalSettings) -> str:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(asdict(settings), f, indent=2)
        return self.path

    def update(self, **changes) -> RehearsalSettings:
        """Apply changes to the stored settings and save immediately."""
        unknown = set(changes) - set(SETTING_KEYS)
        if unknown:
            raise KeyError(", ".join(sorted(unknown)))
        settings = replace(self.load(), **changes)
        self.save(settings)
        return settings

    def reset(self) -> RehearsalSettings:
        if os.path.exists(self.path):
            os.remove(self.path)
        return RehearsalSettings()
