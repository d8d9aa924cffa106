"""Line-by-line playback of a parsed scene.

The sequencer walks ScriptParsing.dialogues one line at a time. Lines that
belong to other characters are spoken by a speech engine (or just held on
screen for a computed pause) and then advance on their own; the actor's
own lines wait for user_finished(), the voice-activity detector, or next().

Everything runs on one event loop. Timers, speech callbacks and user input
interleave freely, so every asynchronous callback carries the session id and
line index it was created for and is dropped if either has moved on. The
session id changes on start, pause, stop and manual navigation.
"""

import asyncio
import logging
from typing import Callable

from scene_partner.constants import DEFAULT_SPEED, DEFAULT_VOICE
from scene_partner.models import DialogueLine, PlaybackState, ScriptParsing
from scene_partner.pacing import clamp_speed, lead_in_delay_ms, pause_duration_ms, speech_rate

logger = logging.getLogger(__name__)

IDLE = "idle"
COUNTDOWN = "countdown"
AI_TURN = "ai_turn"
USER_TURN = "user_turn"
PAUSED = "paused"
FINISHED = "finished"

PLAYING_PHASES = (COUNTDOWN, AI_TURN, USER_TURN)


class SelectionError(ValueError):
    """Playback can't start: no character selected or nothing to play."""


def _normalize_character(name: str) -> str:
    return " ".join((name or "").split()).upper()


class PlaybackSequencer:
    """Drive a scene through its dialogue lines.

    scheduler: anything with call_later(seconds, callback, *args) returning a
        handle with cancel(); defaults to the running asyncio loop.
    speech: object with speak(text, voice, rate, on_done, on_error) and stop();
        None plays silently, advancing AI lines on the pause timer alone.
    voice_for: callable mapping a character name to a voice id.
    detector: optional VoiceActivityDetector fed through feed_audio().
    """

    def __init__(
        self,
        parsing: ScriptParsing,
        scheduler=None,
        speech=None,
        voice_for: Callable[[str], str] | None = None,
        selected_character: str = "",
        speed: float = DEFAULT_SPEED,
        countdown_s: float = 0,
        detector=None,
    ):
        self.dialogues: list[DialogueLine] = list(parsing.dialogues)
        self.speech = speech
        self.voice_for = voice_for or (lambda character: DEFAULT_VOICE)
        self.selected_character = _normalize_character(selected_character)
        self.speed = clamp_speed(speed)
        self.countdown_s = countdown_s
        self.detector = detector

        self._scheduler = scheduler
        self._index = 0
        self._phase = IDLE
        self._session = 0
        self._timers = set()
        self._completed = None   # (session, index) whose speech already reported back
        self._finishing = None   # (session, index) the actor already marked finished
        self._listeners = []

    # --- Observable state ---

    @property
    def current_line(self) -> DialogueLine | None:
        if 0 <= self._index < len(self.dialogues):
            return self.dialogues[self._index]
        return None

    @property
    def is_playing(self) -> bool:
        return self._phase in PLAYING_PHASES

    @property
    def is_user_turn(self) -> bool:
        line = self.current_line
        return bool(self.selected_character) and line is not None and line.character == self.selected_character

    @property
    def state(self) -> PlaybackState:
        return PlaybackState(
            current_line_index=self._index,
            is_playing=self.is_playing,
            is_user_turn=self.is_user_turn,
            speed=self.speed,
            phase=self._phase,
            session_id=self._session,
            total_lines=len(self.dialogues),
            current_line=self.current_line,
        )

    def subscribe(self, listener: Callable[[PlaybackState], None]) -> Callable[[], None]:
        """Call listener with a fresh PlaybackState after every change.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self) -> None:
        state = self.state
        for listener in list(self._listeners):
            listener(state)

    # --- Transport ---

    def start(self) -> None:
        """Begin or resume playback from the current line.

        Raises SelectionError, leaving state untouched, when no character is
        selected or the scene has no lines.
        """
        if not self.selected_character:
            raise SelectionError("Please select your character first.")
        if not self.dialogues:
            raise SelectionError("This script has no dialogue lines to rehearse.")
        if self.is_playing:
            return

        if self._phase == FINISHED or self._index >= len(self.dialogues):
            self._index = 0
        self._new_session()

        if self.countdown_s > 0:
            self._phase = COUNTDOWN
            self._schedule(self.countdown_s * 1000, self._end_countdown, self._session, self._index)
            self._notify()
        else:
            self._enter_line()

    resume = start

    def pause(self) -> None:
        if not self.is_playing:
            return
        self._new_session()
        self._cancel_all()
        self._phase = PAUSED
        self._notify()

    def stop(self) -> None:
        self._new_session()
        self._cancel_all()
        self._index = 0
        self._phase = IDLE
        self._notify()

    def next(self) -> None:
        """Step forward one line; at the last line, end the run instead."""
        if self._index >= len(self.dialogues) - 1:
            self._new_session()
            self._cancel_all()
            self._phase = FINISHED
            self._notify()
            return
        self._index += 1
        self._interrupt()

    def previous(self) -> None:
        if self._index <= 0:
            return
        self._index -= 1
        self._interrupt()

    def set_speed(self, speed: float) -> float:
        """Change speed for every pause and utterance from now on."""
        self.speed = clamp_speed(speed)
        self._notify()
        return self.speed

    def set_selected_character(self, name: str) -> None:
        """Switch the actor's character; a running scene pauses first."""
        if self.is_playing:
            self.pause()
        self.selected_character = _normalize_character(name)
        self._notify()

    def user_finished(self) -> None:
        """The actor has delivered their line: move on after a short gap."""
        if self._phase != USER_TURN:
            return
        key = (self._session, self._index)
        if self._finishing == key:
            return
        self._finishing = key
        self._schedule(lead_in_delay_ms(self.speed), self._advance, *key)

    def feed_audio(self, samples, now_ms: float) -> bool:
        """Pass a microphone frame to the detector during the actor's turn.

        Returns True when the frame ended the actor's line.
        """
        if self.detector is None or self._phase != USER_TURN:
            return False
        if self.detector.feed(samples, now_ms):
            self.user_finished()
            return True
        return False

    def close(self) -> None:
        """Cancel everything; late callbacks from this sequencer become no-ops."""
        self._new_session()
        self._cancel_all()
        self._phase = IDLE
        self._listeners.clear()

    # --- Internals ---

    @property
    def scheduler(self):
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler

    def _schedule(self, delay_ms: float, callback, *args):
        handle = None

        def fire():
            self._timers.discard(handle)
            callback(*args)

        handle = self.scheduler.call_later(delay_ms / 1000, fire)
        self._timers.add(handle)
        return handle

    def _cancel_all(self) -> None:
        # Run after _new_session(): engines may report the cut-off utterance from stop()
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        if self.speech is not None:
            self.speech.stop()

    def _new_session(self) -> None:
        self._session += 1
        self._completed = None
        self._finishing = None

    def _is_current(self, session: int, index: int) -> bool:
        return session == self._session and index == self._index and self.is_playing

    def _interrupt(self) -> None:
        """Manual navigation: drop in-flight work and hold on the new line."""
        self._new_session()
        self._cancel_all()
        if self.is_playing or self._phase == FINISHED:
            self._phase = PAUSED
        self._notify()

    def _end_countdown(self, session: int, index: int) -> None:
        if not self._is_current(session, index):
            return
        self._enter_line()

    def _enter_line(self) -> None:
        if self._index >= len(self.dialogues):
            self._finish()
            return

        if self.is_user_turn:
            self._phase = USER_TURN
            if self.detector is not None:
                self.detector.reset()
        else:
            self._phase = AI_TURN
            self._schedule(lead_in_delay_ms(self.speed), self._play_line, self._session, self._index)
        self._notify()

    def _play_line(self, session: int, index: int) -> None:
        if not self._is_current(session, index):
            return
        line = self.dialogues[index]

        if self.speech is None:
            self._schedule(pause_duration_ms(line.text, self.speed), self._advance, session, index)
            return

        try:
            self.speech.speak(
                line.text,
                self.voice_for(line.character),
                speech_rate(self.speed),
                on_done=lambda: self._on_speech_done(session, index),
                on_error=lambda exc: self._on_speech_error(session, index, exc),
            )
        except Exception as exc:
            self._on_speech_error(session, index, exc)

    def _on_speech_done(self, session: int, index: int) -> None:
        if not self._is_current(session, index) or self._completed == (session, index):
            return
        self._completed = (session, index)
        line = self.dialogues[index]
        self._schedule(pause_duration_ms(line.text, self.speed), self._advance, session, index)

    def _on_speech_error(self, session: int, index: int, exc: Exception) -> None:
        if not self._is_current(session, index) or self._completed == (session, index):
            return
        self._completed = (session, index)
        logger.warning(
            "Speech failed on line %d (%s): %s, moving on",
            index + 1, self.dialogues[index].character, exc,
        )
        self._advance(session, index)

    def _advance(self, session: int, index: int) -> None:
        if not self._is_current(session, index):
            return
        self._index += 1
        self._enter_line()

    def _finish(self) -> None:
        self._index = len(self.dialogues)
        self._phase = FINISHED
        logger.info("Scene complete (%d lines)", len(self.dialogues))
        self._notify()
