"""Speak scene partner lines: edge-tts synthesis with retry, playback through ffplay."""

import asyncio
import contextlib
import hashlib
import logging
import os

import edge_tts
import numpy as np
from pydub import AudioSegment

from scene_partner.constants import (
    TTS_RETRY_COUNT,
    TTS_RETRY_BASE_DELAY,
    TTS_VOLUME,
    TTS_CACHE_DIR,
    PLAYER_COMMAND,
)

logger = logging.getLogger(__name__)


def rate_string(rate: float) -> str:
    """Rate multiplier as an edge-tts relative rate: 1.2 → "+20%", 0.7 → "-30%"."""
    percent = int(round((rate - 1.0) * 100))
    return f"{percent:+d}%"


def volume_gain_db(volume: float) -> float:
    """Linear volume (0.0–1.0) as a dB gain for pydub."""
    return float(20 * np.log10(max(volume, 0.001)))


def clip_path(cache_dir: str, text: str, voice: str, rate: str) -> str:
    """Cache location for a synthesized clip, keyed by voice, rate and text."""
    key = hashlib.sha256(f"{voice}|{rate}|{text}".encode()).hexdigest()
    return os.path.join(cache_dir, f"{key}.mp3")


async def synthesize(text: str, voice: str, output_path: str, rate: str = "+0%") -> None:
    """Generate a single TTS clip with retry logic.

    Retries on network errors, HTTP errors, or 0-byte output files, with
    exponential backoff between attempts. Rate is a relative string like "-10%".
    """
    last_error = None
    for attempt in range(TTS_RETRY_COUNT):
        try:
            communicate = edge_tts.Communicate(text, voice, rate=rate)
            await communicate.save(output_path)

            # Validate output: 0-byte file counts as failure
            if os.path.exists(output_path) and os.path.getsize(output_path) > 0:
                return

            last_error = Exception(f"TTS produced 0-byte file for: {text[:50]}...")
        except Exception as e:
            last_error = e

        if attempt < TTS_RETRY_COUNT - 1:
            delay = TTS_RETRY_BASE_DELAY * (2 ** attempt)
            logger.debug("TTS attempt %d failed (%s), retrying in %.1fs", attempt + 1, last_error, delay)
            await asyncio.sleep(delay)

    raise last_error


def level_clip(source_path: str, output_path: str, volume: float) -> str:
    """Write a copy of source_path with the playback volume baked in."""
    audio = AudioSegment.from_file(source_path)
    leveled = audio + volume_gain_db(volume)
    leveled.export(output_path, format="wav")
    return output_path


def terminate_process(process) -> None:
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()


class EdgeSpeechEngine:
    """Speech capability for PlaybackSequencer.

    speak() returns immediately; the clip is synthesized (or read from the
    cache), leveled to the configured volume and played on the running
    event loop. on_done fires when playback ends, on_error(exc) on any
    failure. stop() cancels the utterance; a cancelled utterance fires
    neither callback.
    """

    def __init__(self, cache_dir: str = TTS_CACHE_DIR, volume: float = TTS_VOLUME, player: str = PLAYER_COMMAND):
        self.cache_dir = cache_dir
        self.volume = volume
        self.player = player
        self._task = None
        self._process = None

    def speak(self, text: str, voice: str, rate: float, on_done, on_error) -> None:
        self.stop()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(text, voice, rate, on_done, on_error))

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._process is not None:
            terminate_process(self._process)

    async def prepare(self, text: str, voice: str, rate: float) -> str:
        """Return a playable file for the line, synthesizing on cache miss."""
        os.makedirs(self.cache_dir, exist_ok=True)
        edge = rate_string(rate)
        path = clip_path(self.cache_dir, text, voice, edge)
        if not (os.path.exists(path) and os.path.getsize(path) > 0):
            logger.debug("Synthesizing %s (%s, %s): %s", os.path.basename(path), voice, edge, text[:40])
            await synthesize(text, voice, path, rate=edge)

        if self.volume >= 1.0:
            return path
        leveled = f"{os.path.splitext(path)[0]}_v{int(round(self.volume * 100))}.wav"
        if not os.path.exists(leveled):
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, level_clip, path, leveled, self.volume)
        return leveled

    async def _play(self, path: str) -> None:
        process = await asyncio.create_subprocess_exec(
            self.player, "-nodisp", "-autoexit", "-loglevel", "quiet", path,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        self._process = process
        try:
            returncode = await process.wait()
        finally:
            terminate_process(process)
            if self._process is process:
                self._process = None
        if returncode != 0:
            raise RuntimeError(f"{self.player} exited with status {returncode}")

    async def _run(self, text, voice, rate, on_done, on_error) -> None:
        try:
            path = await self.prepare(text, voice, rate)
            await self._play(path)
        except Exception as exc:
            on_error(exc)
            return
        on_done()
