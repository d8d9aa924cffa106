"""Tests for the playback sequencer."""

import logging

import numpy as np
import pytest

from scene_partner.models import ScriptParsing
from scene_partner.parser import parse_script
from scene_partner.sequencer import (
    AI_TURN,
    COUNTDOWN,
    FINISHED,
    IDLE,
    PAUSED,
    USER_TURN,
    PlaybackSequencer,
    SelectionError,
)
from scene_partner.vad import VoiceActivityDetector

from conftest import FakeSpeech


def _sequencer(scene, scheduler, **kwargs):
    kwargs.setdefault("selected_character", "MARY")
    return PlaybackSequencer(scene, scheduler=scheduler, **kwargs)


def _reach_first_user_turn(seq, scheduler):
    """JOHN's opening line: 1s lead-in plus the 3s pause floor at normal speed."""
    seq.start()
    scheduler.advance(4.0)
    assert seq.state.current_line_index == 1
    assert seq.state.phase == USER_TURN


# --- Starting ---

def test_start_requires_character(scene, scheduler):
    """No selected character: start raises and nothing changes."""
    seq = _sequencer(scene, scheduler, selected_character="")
    with pytest.raises(SelectionError, match="select your character"):
        seq.start()
    assert seq.state.phase == IDLE
    assert seq.state.session_id == 0
    assert scheduler.handles == []


def test_start_requires_dialogue(scheduler):
    """Empty scene can't be started."""
    seq = PlaybackSequencer(ScriptParsing(), scheduler=scheduler, selected_character="JOHN")
    with pytest.raises(SelectionError, match="no dialogue"):
        seq.start()
    assert seq.state.phase == IDLE


def test_start_enters_first_line(scene, scheduler):
    """First line belongs to JOHN, so the partner speaks it."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    state = seq.state
    assert state.phase == AI_TURN
    assert state.is_playing
    assert not state.is_user_turn
    assert state.current_line.character == "JOHN"


def test_start_while_playing_is_noop(scene, scheduler):
    """A second start keeps the running session."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    session = seq.state.session_id
    seq.start()
    assert seq.state.session_id == session


def test_selected_character_normalized(scene, scheduler):
    """Selection matches regardless of case or extra spaces."""
    seq = _sequencer(scene, scheduler, selected_character="  mary ")
    assert seq.selected_character == "MARY"


def test_countdown_precedes_first_line(scene, scheduler):
    """Countdown phase holds for countdown_s before the first line."""
    seq = _sequencer(scene, scheduler, countdown_s=5)
    seq.start()
    assert seq.state.phase == COUNTDOWN
    scheduler.advance(4.9)
    assert seq.state.phase == COUNTDOWN
    scheduler.advance(0.1)
    assert seq.state.phase == AI_TURN


# --- Timing ---

def test_ai_line_advances_after_lead_in_and_pause(scene, scheduler):
    """Silent mode: 1s lead-in, then the 3s floor for a two-word line."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    scheduler.advance(0.99)
    assert seq.state.current_line_index == 0
    scheduler.advance(0.01)
    scheduler.advance(2.99)
    assert seq.state.current_line_index == 0
    scheduler.advance(0.01)
    assert seq.state.current_line_index == 1


def test_fast_speed_shortens_every_gap(scene, scheduler):
    """Speed 5 halves the lead-in and the pause floor."""
    seq = _sequencer(scene, scheduler, speed=5)
    seq.start()
    scheduler.advance(0.5)
    scheduler.advance(1.49)
    assert seq.state.current_line_index == 0
    scheduler.advance(0.01)
    assert seq.state.current_line_index == 1


def test_user_turn_never_auto_advances(scene, scheduler):
    """Actor's line waits indefinitely."""
    seq = _sequencer(scene, scheduler)
    _reach_first_user_turn(seq, scheduler)
    assert seq.state.is_user_turn
    scheduler.advance(600)
    assert seq.state.current_line_index == 1
    assert seq.state.phase == USER_TURN
    assert scheduler.pending == []


def test_user_finished_advances_after_gap(scene, scheduler):
    """user_finished moves on after the lead-in delay."""
    seq = _sequencer(scene, scheduler)
    _reach_first_user_turn(seq, scheduler)
    seq.user_finished()
    scheduler.advance(0.99)
    assert seq.state.current_line_index == 1
    scheduler.advance(0.01)
    assert seq.state.current_line_index == 2
    assert seq.state.phase == AI_TURN


def test_user_finished_twice_advances_once(scene, scheduler):
    """Repeated user_finished on the same line schedules one advance."""
    seq = _sequencer(scene, scheduler)
    _reach_first_user_turn(seq, scheduler)
    seq.user_finished()
    seq.user_finished()
    assert len(scheduler.pending) == 1
    scheduler.advance(1.0)
    assert seq.state.current_line_index == 2


def test_user_finished_ignored_on_ai_turn(scene, scheduler):
    """user_finished outside the actor's turn does nothing."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    seq.user_finished()
    scheduler.advance(1.0)
    assert seq.state.current_line_index == 0


def test_full_run_finishes(scene, scheduler):
    """Finishing the last line ends the run at the end of the scene."""
    seq = _sequencer(scene, scheduler)
    _reach_first_user_turn(seq, scheduler)
    seq.user_finished()
    scheduler.advance(1.0)
    scheduler.advance(5.0)
    assert seq.state.current_line_index == 3
    seq.user_finished()
    scheduler.advance(1.0)
    state = seq.state
    assert state.phase == FINISHED
    assert not state.is_playing
    assert state.current_line_index == 4
    assert state.progress == 1.0


def test_start_after_finish_restarts(scene, scheduler):
    """Starting a finished run goes back to line one."""
    seq = _sequencer(scene, scheduler, selected_character="JOHN")
    for _ in range(4):
        seq.next()
    assert seq.state.phase == FINISHED
    seq.start()
    assert seq.state.current_line_index == 0
    assert seq.state.phase == USER_TURN


# --- Speech ---

def test_speech_gets_voice_and_rate(scene, scheduler, speech):
    """Engine receives the line, the character's voice and the speed's rate."""
    seq = _sequencer(scene, scheduler, speech=speech, speed=4,
                     voice_for=lambda c: {"JOHN": "en-GB-RyanNeural"}.get(c, "x"))
    seq.start()
    scheduler.advance(0.7)
    assert len(speech.calls) == 1
    call = speech.calls[0]
    assert call["text"] == "Hello there."
    assert call["voice"] == "en-GB-RyanNeural"
    assert call["rate"] == pytest.approx(1.2)


def test_speech_done_waits_pause_then_advances(scene, scheduler, speech):
    """Completion schedules the post-line pause; nothing advances before it."""
    seq = _sequencer(scene, scheduler, speech=speech)
    seq.start()
    scheduler.advance(1.0)
    scheduler.advance(30)
    assert seq.state.current_line_index == 0
    speech.finish()
    scheduler.advance(2.99)
    assert seq.state.current_line_index == 0
    scheduler.advance(0.01)
    assert seq.state.current_line_index == 1


def test_duplicate_speech_completion_advances_once(scene, scheduler, speech):
    """Two completions for one utterance move one line, not two."""
    seq = _sequencer(scene, scheduler, speech=speech, selected_character="NOBODY")
    seq.start()
    scheduler.advance(1.0)
    speech.finish()
    speech.finish()
    assert len(scheduler.pending) == 1
    scheduler.advance(3.0)
    assert seq.state.current_line_index == 1


def test_late_completion_from_old_line_ignored(scene, scheduler, speech):
    """A callback for a line already left behind changes nothing."""
    seq = _sequencer(scene, scheduler, speech=speech, selected_character="NOBODY")
    seq.start()
    scheduler.advance(1.0)
    stale = speech.calls[0]
    seq.next()
    seq.start()
    stale["on_done"]()
    stale["on_error"](RuntimeError("late"))
    assert seq.state.current_line_index == 1
    assert seq.state.phase == AI_TURN
    assert len(scheduler.pending) == 1


def test_speech_error_advances_immediately(scene, scheduler, speech, caplog):
    """Engine failure is logged and the scene keeps going."""
    seq = _sequencer(scene, scheduler, speech=speech)
    seq.start()
    scheduler.advance(1.0)
    with caplog.at_level(logging.WARNING, logger="scene_partner.sequencer"):
        speech.error(RuntimeError("network down"))
    assert seq.state.current_line_index == 1
    assert "network down" in caplog.text


def test_error_after_completion_ignored(scene, scheduler, speech):
    """on_error after on_done for the same utterance is dropped."""
    seq = _sequencer(scene, scheduler, speech=speech)
    seq.start()
    scheduler.advance(1.0)
    speech.finish()
    speech.error(RuntimeError("late"))
    assert seq.state.current_line_index == 0


def test_speak_raising_counts_as_error(scene, scheduler):
    """Synchronous engine failure advances like an async one."""
    seq = _sequencer(scene, scheduler, speech=FakeSpeech(fail=True))
    seq.start()
    scheduler.advance(1.0)
    assert seq.state.current_line_index == 1


# --- Transport ---

def test_pause_freezes_and_cancels(scene, scheduler, speech):
    """Pause stops speech, drops timers and holds the line."""
    seq = _sequencer(scene, scheduler, speech=speech)
    seq.start()
    seq.pause()
    assert seq.state.phase == PAUSED
    assert not seq.state.is_playing
    assert speech.stops >= 1
    scheduler.advance(60)
    assert seq.state.current_line_index == 0
    assert speech.calls == []


def test_resume_reevaluates_turn(scene, scheduler):
    """Resuming on the actor's line waits for them again."""
    seq = _sequencer(scene, scheduler)
    _reach_first_user_turn(seq, scheduler)
    seq.pause()
    seq.resume()
    assert seq.state.phase == USER_TURN
    assert seq.state.current_line_index == 1


def test_stop_resets_and_cancels(scene, scheduler):
    """A timer that fires after stop() can't move the index."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    scheduler.advance(1.0)
    pause_timer = scheduler.pending[0]
    seq.stop()
    assert pause_timer.cancelled
    pause_timer.run()
    assert seq.state.current_line_index == 0
    assert seq.state.phase == IDLE


def test_next_while_playing_pauses(scene, scheduler):
    """Manual navigation holds on the new line."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    seq.next()
    assert seq.state.current_line_index == 1
    assert seq.state.phase == PAUSED
    assert scheduler.pending == []


def test_previous_at_first_line_is_noop(scene, scheduler):
    seq = _sequencer(scene, scheduler)
    seq.previous()
    assert seq.state.current_line_index == 0
    assert seq.state.session_id == 0


def test_previous_steps_back(scene, scheduler):
    seq = _sequencer(scene, scheduler)
    seq.next()
    seq.next()
    seq.previous()
    assert seq.state.current_line_index == 1


def test_next_at_last_line_finishes(scene, scheduler):
    """Stepping past the last line ends the run without moving the index."""
    seq = _sequencer(scene, scheduler)
    for _ in range(3):
        seq.next()
    assert seq.state.current_line_index == 3
    seq.next()
    assert seq.state.current_line_index == 3
    assert seq.state.phase == FINISHED
    assert not seq.state.is_playing


def test_set_speed_clamps(scene, scheduler):
    """Speeds outside 1-5 are clamped."""
    seq = _sequencer(scene, scheduler)
    assert seq.set_speed(9) == 5
    assert seq.set_speed(0) == 1
    assert seq.state.speed == 1


def test_change_character_pauses_playback(scene, scheduler):
    """Switching character mid-scene pauses and flips turn ownership."""
    seq = _sequencer(scene, scheduler)
    seq.start()
    assert not seq.state.is_user_turn
    seq.set_selected_character("john")
    assert seq.state.phase == PAUSED
    assert seq.state.is_user_turn


def test_turn_ownership_follows_line(scene, scheduler):
    """is_user_turn is true exactly on the selected character's lines."""
    seq = _sequencer(scene, scheduler)
    owners = []
    for _ in range(4):
        owners.append(seq.state.is_user_turn)
        if seq.state.current_line_index < 3:
            seq.next()
    assert owners == [False, True, False, True]


# --- Observers ---

def test_subscribe_and_unsubscribe(scene, scheduler):
    """Listeners see each change until they unsubscribe."""
    seq = _sequencer(scene, scheduler)
    seen = []
    unsubscribe = seq.subscribe(seen.append)
    seq.start()
    assert seen[-1].phase == AI_TURN
    unsubscribe()
    seq.pause()
    assert seen[-1].phase == AI_TURN


def test_close_cancels_everything(scene, scheduler, speech):
    """Closed sequencer ignores its in-flight callbacks."""
    seq = _sequencer(scene, scheduler, speech=speech)
    seq.start()
    scheduler.advance(1.0)
    seq.close()
    speech.finish()
    scheduler.advance(60)
    assert seq.state.phase == IDLE
    assert seq.state.current_line_index == 0


class InterruptingSpeech(FakeSpeech):
    """Reports the cut-off utterance as an error from inside stop()."""

    def stop(self):
        super().stop()
        if self.calls:
            self.error(RuntimeError("interrupted"))


def _speaking_first_line(scene, scheduler):
    speech = InterruptingSpeech()
    seq = _sequencer(scene, scheduler, speech=speech)
    seq.start()
    scheduler.advance(1.0)
    assert len(speech.calls) == 1
    return seq


def test_pause_holds_line_when_stop_reports_error(scene, scheduler, caplog):
    """An engine erroring out of stop() can't advance a paused scene."""
    seq = _speaking_first_line(scene, scheduler)
    with caplog.at_level(logging.WARNING, logger="scene_partner.sequencer"):
        seq.pause()
    assert seq.state.phase == PAUSED
    assert seq.state.current_line_index == 0
    assert "interrupted" not in caplog.text


def test_stop_notifies_once_when_stop_reports_error(scene, scheduler):
    """stop() publishes only the reset, never an advance."""
    seq = _speaking_first_line(scene, scheduler)
    seen = []
    seq.subscribe(seen.append)
    seq.stop()
    assert [(s.phase, s.current_line_index) for s in seen] == [(IDLE, 0)]


def test_close_ignores_error_from_stop(scene, scheduler):
    seq = _speaking_first_line(scene, scheduler)
    seq.close()
    assert seq.state.phase == IDLE
    assert seq.state.current_line_index == 0
    assert scheduler.pending == []


def test_next_holds_line_when_stop_reports_error(scene, scheduler):
    """Skipping while the partner speaks lands on exactly the next line."""
    seq = _speaking_first_line(scene, scheduler)
    seq.next()
    assert seq.state.current_line_index == 1
    assert seq.state.phase == PAUSED


def test_next_at_end_finishes_once_when_stop_reports_error(scheduler):
    parsing = parse_script("JOHN: Only line.")
    speech = InterruptingSpeech()
    seq = PlaybackSequencer(parsing, scheduler=scheduler, speech=speech, selected_character="MARY")
    seq.start()
    scheduler.advance(1.0)
    seen = []
    seq.subscribe(seen.append)
    seq.next()
    assert [s.phase for s in seen] == [FINISHED]
    assert seq.state.current_line_index == 0


# --- Voice activity ---

def test_voice_activity_ends_user_turn(scene, scheduler):
    """Speech followed by a second of silence finishes the actor's line."""
    detector = VoiceActivityDetector(threshold=0.1, silence_hold_ms=1000)
    seq = _sequencer(scene, scheduler, detector=detector)
    _reach_first_user_turn(seq, scheduler)
    loud = np.full(160, 0.5)
    quiet = np.zeros(160)
    assert not seq.feed_audio(loud, 0)
    assert not seq.feed_audio(quiet, 100)
    assert seq.feed_audio(quiet, 1100)
    scheduler.advance(1.0)
    assert seq.state.current_line_index == 2


def test_voice_activity_ignored_on_ai_turn(scene, scheduler):
    detector = VoiceActivityDetector()
    seq = _sequencer(scene, scheduler, detector=detector)
    seq.start()
    assert not seq.feed_audio(np.full(160, 0.5), 0)
    assert not seq.feed_audio(np.zeros(160), 5000)


def test_plain_scene_plays_through(scheduler):
    """Cue-format scene plays the same way as a colon scene."""
    parsing = parse_script("JOHN\nHello.\n\nMARY\nHi.")
    seq = PlaybackSequencer(parsing, scheduler=scheduler, selected_character="MARY")
    _reach_first_user_turn(seq, scheduler)
