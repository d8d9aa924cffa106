"""Speed presets and line timing."""

import numpy as np

from scene_partner.constants import (
    WORDS_PER_MINUTE,
    PAUSE_BUFFER_MS,
    PAUSE_FLOOR_MS,
    LEAD_IN_DELAY_MS,
    SPEED_MIN,
    SPEED_MAX,
    SPEED_LABELS,
    PAUSE_MULTIPLIERS,
    SPEECH_RATES,
)

_PRESETS = sorted(PAUSE_MULTIPLIERS)


def clamp_speed(speed: float) -> float:
    """Clamp a speed setting to the preset range."""
    return max(SPEED_MIN, min(SPEED_MAX, speed))


def speed_label(speed: float) -> str:
    return SPEED_LABELS.get(int(round(clamp_speed(speed))), SPEED_LABELS[3])


def pause_multiplier(speed: float) -> float:
    """Timing multiplier for a speed setting: 2.0 at the slowest, 0.5 at the fastest.

    Whole-number speeds hit the presets exactly; anything in between is
    interpolated linearly.
    """
    return float(np.interp(clamp_speed(speed), _PRESETS, [PAUSE_MULTIPLIERS[p] for p in _PRESETS]))


def speech_rate(speed: float) -> float:
    """Synthesized-voice rate for a speed setting (1.0 = natural)."""
    return float(np.interp(clamp_speed(speed), _PRESETS, [SPEECH_RATES[p] for p in _PRESETS]))


def word_count(text: str) -> int:
    return len(text.split())


def pause_duration_ms(text: str, speed: float) -> float:
    """How long an AI line stays up before auto-advancing.

    Reading time at WORDS_PER_MINUTE plus a response buffer, never below
    PAUSE_FLOOR_MS, then scaled by the speed multiplier.
    """
    reading_ms = word_count(text) / WORDS_PER_MINUTE * 60 * 1000
    base = max(reading_ms + PAUSE_BUFFER_MS, PAUSE_FLOOR_MS)
    return base * pause_multiplier(speed)


def lead_in_delay_ms(speed: float) -> float:
    """Gap before an AI line is spoken, and after the actor says they're done."""
    return LEAD_IN_DELAY_MS * pause_multiplier(speed)
