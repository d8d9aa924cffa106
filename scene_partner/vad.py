"""Voice-activity detection for the actor's own lines, fed from an ffmpeg microphone capture."""

import asyncio
import logging
import sys

import numpy as np

from scene_partner.constants import (
    VAD_THRESHOLD,
    VAD_SILENCE_HOLD_MS,
    MIC_COMMAND,
    MIC_SAMPLE_RATE,
    MIC_FRAME_MS,
    MIC_INPUTS,
)
from scene_partner.speech import terminate_process

logger = logging.getLogger(__name__)


class VoiceActivityDetector:
    """Report when the actor stops speaking.

    Feed it microphone frames; feed() returns True once per utterance,
    after the level has been above threshold and then stayed below it
    for silence_hold_ms.
    """

    def __init__(self, threshold: float = VAD_THRESHOLD, silence_hold_ms: float = VAD_SILENCE_HOLD_MS):
        self.threshold = threshold
        self.silence_hold_ms = silence_hold_ms
        self.reset()

    def reset(self) -> None:
        self.speaking = False
        self._silence_since = None

    @staticmethod
    def level(samples) -> float:
        """Normalized RMS level (0.0–1.0) of an int16 or float frame."""
        frame = np.asarray(samples)
        if frame.size == 0:
            return 0.0
        if np.issubdtype(frame.dtype, np.integer):
            frame = frame.astype(np.float64) / 32768.0
        else:
            frame = frame.astype(np.float64)
        return float(min(np.sqrt(np.mean(frame ** 2)), 1.0))

    def feed(self, samples, now_ms: float) -> bool:
        if self.level(samples) > self.threshold:
            self.speaking = True
            self._silence_since = None
            return False

        if not self.speaking:
            return False

        if self._silence_since is None:
            self._silence_since = now_ms
            return False

        if now_ms - self._silence_since >= self.silence_hold_ms:
            self.reset()
            return True
        return False


def microphone_command(device: str | None = None, input_format: str | None = None,
                       sample_rate: int = MIC_SAMPLE_RATE) -> list[str]:
    """ffmpeg arguments that capture the microphone as mono s16le PCM on stdout."""
    default_format, default_device = MIC_INPUTS.get(sys.platform, MIC_INPUTS["linux"])
    return [
        MIC_COMMAND, "-hide_banner", "-loglevel", "quiet",
        "-f", input_format or default_format,
        "-i", device or default_device,
        "-ac", "1",
        "-ar", str(sample_rate),
        "-f", "s16le", "-",
    ]


async def stream_microphone(on_frame, device: str | None = None, input_format: str | None = None,
                            sample_rate: int = MIC_SAMPLE_RATE, frame_ms: int = MIC_FRAME_MS) -> None:
    """Call on_frame(samples, now_ms) for each captured frame until cancelled or input ends.

    samples is an int16 numpy array; now_ms comes from the event loop clock.
    """
    loop = asyncio.get_running_loop()
    frame_bytes = sample_rate * frame_ms // 1000 * 2
    process = await asyncio.create_subprocess_exec(
        *microphone_command(device, input_format, sample_rate),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    logger.debug("Microphone capture started (%s, %d Hz)", device or "default device", sample_rate)
    try:
        while True:
            try:
                chunk = await process.stdout.readexactly(frame_bytes)
            except asyncio.IncompleteReadError:
                logger.warning("Microphone input ended; finish your lines with Enter")
                return
            on_frame(np.frombuffer(chunk, dtype=np.int16), loop.time() * 1000)
    finally:
        terminate_process(process)
