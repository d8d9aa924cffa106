"""Shared fixtures for scene partner tests."""

import itertools

import pytest

from scene_partner.parser import parse_script


SCENE_TEXT = (
    "JOHN: Hello there.\n"
    "MARY: Hi John!\n"
    "JOHN: How have you been?\n"
    "MARY: Busy."
)


class FakeHandle:
    _seq = itertools.count()

    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.order = next(self._seq)
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def run(self):
        """Fire regardless of cancellation, like a timer that was already queued."""
        self.fired = True
        self.callback(*self.args)


class FakeScheduler:
    """call_later stand-in driven by a manual clock (seconds)."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(self.now + delay, callback, args)
        self.handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def advance(self, seconds):
        target = self.now + seconds + 1e-9
        while True:
            due = [h for h in self.pending if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.order))
            self.now = max(self.now, handle.when)
            handle.run()
        self.now = target


class FakeSpeech:
    """Speech engine that records utterances and completes them on demand."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []
        self.stops = 0

    def speak(self, text, voice, rate, on_done, on_error):
        if self.fail:
            raise RuntimeError("speech engine unavailable")
        self.calls.append({
            "text": text, "voice": voice, "rate": rate,
            "on_done": on_done, "on_error": on_error,
        })

    def stop(self):
        self.stops += 1

    def finish(self, index=-1):
        self.calls[index]["on_done"]()

    def error(self, exc, index=-1):
        self.calls[index]["on_error"](exc)


@pytest.fixture
def scene_text():
    return SCENE_TEXT


@pytest.fixture
def scene():
    """Parsed four-line JOHN/MARY scene."""
    return parse_script(SCENE_TEXT)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def script_file(tmp_path):
    path = tmp_path / "scene.txt"
    path.write_text(SCENE_TEXT)
    return str(path)
