"""CLI interface: inspect scripts, rehearse scenes, manage voices and settings."""

import argparse
import asyncio
import json
import logging
import os
import shutil
import sys
import threading
from dataclasses import asdict

from scene_partner.constants import (
    VERSION,
    SETTINGS_PATH,
    TTS_CACHE_DIR,
    PLAYER_COMMAND,
    MIC_COMMAND,
    PLAIN_TEXT_SPEAKER,
    SPEED_MIN,
    SPEED_MAX,
)
from scene_partner.models import PlaybackState, ScriptParsing
from scene_partner.parser import (
    parse_script,
    roster_or_fallback,
    reading_lines,
    character_lines,
    other_character_lines,
)
from scene_partner.pacing import speed_label
from scene_partner.sequencer import (
    PlaybackSequencer,
    SelectionError,
    COUNTDOWN,
    AI_TURN,
    USER_TURN,
    PAUSED,
    FINISHED,
    IDLE,
)
from scene_partner.settings import SettingsStore, SETTING_KEYS, coerce_value
from scene_partner.speech import EdgeSpeechEngine
from scene_partner.vad import VoiceActivityDetector, stream_microphone
from scene_partner.voices import VOICE_POOL, assign_voices, load_cast, voice_strategy

logger = logging.getLogger(__name__)

REHEARSE_HELP = (
    "Controls: Enter = I'm finished / resume, p = pause/resume, n = next, b = back, "
    "s = stop, +/- = speed, 1-5 = speed preset, q = quit"
)


def _read_script(path: str) -> str:
    """Read a script file, exiting with a message if missing or empty."""
    if not os.path.exists(path):
        print(f"Error: File not found: {path}", file=sys.stderr)
        raise SystemExit(1)

    with open(path, encoding="utf-8") as f:
        text = f.read()

    if not text.strip():
        print(f"Error: File is empty: {path}", file=sys.stderr)
        raise SystemExit(1)
    return text


def _print_format_hint() -> None:
    print("No dialogue characters detected. This looks like plain text.")
    print("Format the script with character names in ALL CAPS followed by their dialogue:")
    print("  JOHN: Hello, how are you today?")
    print("  MARY: I'm doing great, thanks for asking!")


def cmd_parse(args):
    """Show the characters and dialogue lines detected in a script."""
    parsing = parse_script(_read_script(args.file))

    if args.json:
        print(json.dumps({
            "characters": parsing.characters,
            "is_plain_text": parsing.is_plain_text,
            "dialogues": [asdict(d) for d in parsing.dialogues],
        }, indent=2))
        return

    if parsing.needs_screenplay_format:
        _print_format_hint()
        return

    print(f"Characters: {', '.join(parsing.characters) or '(none)'}")
    print(f"Dialogue lines: {len(parsing.dialogues)}")
    for i, line in enumerate(parsing.dialogues, start=1):
        print(f"  {i:>3}. {line.character}: {line.text}")


class ConsoleView:
    """Print playback changes as they happen; sets `done` when the scene ends."""

    def __init__(self, done: asyncio.Event | None = None, out=None):
        self.done = done
        self.out = out or sys.stdout
        self._last = None

    def __call__(self, state: PlaybackState) -> None:
        key = (state.phase, state.current_line_index, state.speed)
        if key == self._last:
            return
        previous, self._last = self._last, key

        if previous is not None and previous[2] != state.speed:
            self._print(f"Speed: {speed_label(state.speed)} ({state.speed:g})")
            if previous[:2] == key[:2]:
                return

        line = state.current_line
        position = f"[{state.current_line_index + 1}/{state.total_lines}]"
        if state.phase == COUNTDOWN:
            self._print("Get ready...")
        elif state.phase == AI_TURN and line:
            self._print(f"{position} {line.character}: {line.text}")
        elif state.phase == USER_TURN and line:
            self._print(f"{position} >> YOU ({line.character}): {line.text}")
            self._print("   (press Enter when you've finished the line)")
        elif state.phase == PAUSED:
            where = f" at line {state.current_line_index + 1}" if line else ""
            self._print(f"Paused{where}. Enter or p to resume.")
        elif state.phase == IDLE:
            self._print("Stopped. Enter to start from the top.")
        elif state.phase == FINISHED:
            self._print("Scene complete! You've reached the end of the script.")
            if self.done is not None:
                self.done.set()

    def _print(self, message: str) -> None:
        print(message, file=self.out, flush=True)


def handle_command(sequencer: PlaybackSequencer, command: str) -> bool:
    """Apply one line of keyboard input. Returns False when the user quits."""
    command = command.strip().lower()
    if command == "q":
        return False

    if command == "":
        if sequencer.state.phase == USER_TURN:
            sequencer.user_finished()
        elif not sequencer.is_playing:
            sequencer.start()
    elif command == "p":
        if sequencer.is_playing:
            sequencer.pause()
        else:
            sequencer.start()
    elif command == "n":
        sequencer.next()
    elif command == "b":
        sequencer.previous()
    elif command == "s":
        sequencer.stop()
    elif command == "+":
        sequencer.set_speed(sequencer.speed + 1)
    elif command == "-":
        sequencer.set_speed(sequencer.speed - 1)
    elif command.isdigit() and SPEED_MIN <= int(command) <= SPEED_MAX:
        sequencer.set_speed(int(command))
    else:
        print(f"Unknown command: {command!r}. {REHEARSE_HELP}")
    return True


def _start_stdin_reader(loop, queue: asyncio.Queue) -> None:
    """Feed stdin lines into the loop from a daemon thread; EOF becomes "q"."""
    def read():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, "q")

    threading.Thread(target=read, daemon=True).start()


async def rehearse(sequencer: PlaybackSequencer, listen: bool = False, mic_device: str | None = None) -> PlaybackState:
    """Run an interactive rehearsal until the scene ends or the user quits.

    With listen, microphone frames feed the sequencer's detector so the
    actor's lines end on silence as well as on Enter.
    """
    loop = asyncio.get_running_loop()
    done = asyncio.Event()
    commands = asyncio.Queue()
    sequencer.subscribe(ConsoleView(done))
    _start_stdin_reader(loop, commands)

    microphone = None
    if listen:
        microphone = asyncio.ensure_future(stream_microphone(sequencer.feed_audio, device=mic_device or None))
        microphone.add_done_callback(_report_microphone)

    print(REHEARSE_HELP)
    sequencer.start()
    try:
        while not done.is_set():
            next_command = asyncio.ensure_future(commands.get())
            finished = asyncio.ensure_future(done.wait())
            await asyncio.wait({next_command, finished}, return_when=asyncio.FIRST_COMPLETED)
            finished.cancel()
            if not next_command.done():
                next_command.cancel()
                break
            if not handle_command(sequencer, next_command.result()):
                break
        return sequencer.state
    finally:
        if microphone is not None:
            microphone.cancel()
        sequencer.close()


def _report_microphone(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Microphone capture failed: %s", exc)
        print("Microphone unavailable; finish your lines with Enter.")


def _solo_read(text: str) -> ScriptParsing | None:
    """Plain prose as one speaker's lines, or None if nothing is readable."""
    lines = reading_lines(text)
    if not lines:
        return None
    return ScriptParsing(dialogues=lines, characters=[PLAIN_TEXT_SPEAKER], is_plain_text=True)


def cmd_rehearse(args):
    """Rehearse a scene: the other characters are read to you, you say your lines.

    Plain prose with no dialogue becomes a solo read: every line is yours.
    """
    text = _read_script(args.file)
    parsing = parse_script(text)

    store = SettingsStore(args.settings)
    settings = store.load()

    solo = not parsing.dialogues
    if solo:
        parsing = _solo_read(text)
        if parsing is None:
            _print_format_hint()
            raise SystemExit(1)
        print("No dialogue characters detected; reading the text solo.")
        character = PLAIN_TEXT_SPEAKER
    else:
        character = (args.character or settings.selected_character).strip().upper()

    speakers = sorted({d.character for d in parsing.dialogues})
    if not character:
        print("Error: Choose your character with --as.", file=sys.stderr)
        print(f"Characters: {', '.join(roster_or_fallback(parsing))}", file=sys.stderr)
        raise SystemExit(1)
    if character not in speakers:
        print(f"Error: {character} has no lines in this script.", file=sys.stderr)
        print(f"Speaking characters: {', '.join(speakers)}", file=sys.stderr)
        raise SystemExit(1)

    listen = args.listen or settings.voice_activation
    if listen and not shutil.which(MIC_COMMAND):
        print(f"Error: {MIC_COMMAND} is required to listen for your lines but was not found.", file=sys.stderr)
        print("Install ffmpeg, or rehearse without --listen.", file=sys.stderr)
        raise SystemExit(1)

    speech = None
    if not args.silent and not solo:
        if not shutil.which(PLAYER_COMMAND):
            print(f"Error: {PLAYER_COMMAND} is required for spoken lines but was not found.", file=sys.stderr)
            print("Install ffmpeg, or rerun with --silent.", file=sys.stderr)
            raise SystemExit(1)
        speech = EdgeSpeechEngine(cache_dir=args.cache_dir, volume=settings.tts_volume)

    assignments = assign_voices(speakers, cast=load_cast(args.file))
    assignments.update({name.upper(): voice for name, voice in settings.character_voices.items()})

    speed = args.speed if args.speed is not None else settings.speed
    countdown = args.countdown if args.countdown is not None else settings.countdown_time

    sequencer = PlaybackSequencer(
        parsing,
        speech=speech,
        voice_for=voice_strategy(assignments),
        selected_character=character,
        speed=speed,
        countdown_s=countdown,
        detector=VoiceActivityDetector(threshold=settings.vad_threshold) if listen else None,
    )
    if not solo:
        mine = len(character_lines(parsing.dialogues, character))
        theirs = len(other_character_lines(parsing.dialogues, character))
        print(f"Rehearsing as {character}: {mine} of your lines, {theirs} partner lines.")
        store.update(selected_character=character, speed=sequencer.speed)
    else:
        store.update(speed=sequencer.speed)
    saved_speed = sequencer.speed

    try:
        final = asyncio.run(rehearse(sequencer, listen=listen, mic_device=args.mic_device or settings.mic_device))
    except SelectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print()
        return

    if final.speed != saved_speed:
        store.update(speed=final.speed)


def cmd_voices(args):
    """List available voices, or the voice cast for a script."""
    if args.file:
        parsing = parse_script(_read_script(args.file))
        speakers = sorted({d.character for d in parsing.dialogues})
        if not speakers:
            print("No speaking characters found.")
            return
        assignments = assign_voices(speakers, cast=load_cast(args.file))
        print("Cast:")
        for name in speakers:
            print(f"  {name:<20} → {assignments[name]}")
        return

    filter_str = args.filter.lower() if args.filter else None
    voices = VOICE_POOL
    if filter_str:
        voices = [v for v in voices if filter_str in v.lower()]
    if not voices:
        print("No matching voices found.")
        return
    print("Available voices:")
    for v in voices:
        print(f"  {v}")


def cmd_settings(args):
    """Show, change or reset the saved rehearsal settings."""
    store = SettingsStore(args.settings)

    if args.action == "show":
        for key, value in asdict(store.load()).items():
            print(f"  {key:<20} {json.dumps(value)}")
        return

    if args.action == "reset":
        store.reset()
        print("Settings reset to defaults.")
        return

    # set
    if len(args.values) != 2:
        print("Error: 'settings set' requires <key> and <value>", file=sys.stderr)
        raise SystemExit(1)
    key, raw = args.values
    key = key.replace("-", "_")
    try:
        value = coerce_value(key, raw)
    except KeyError:
        print(f"Error: Invalid setting key: {key}", file=sys.stderr)
        print(f"Valid keys: {', '.join(SETTING_KEYS)}", file=sys.stderr)
        raise SystemExit(1)
    except ValueError as e:
        print(f"Error: Invalid value for {key}: {e}", file=sys.stderr)
        raise SystemExit(1)
    store.update(**{key: value})
    print(f"Updated: {key} → {json.dumps(value)}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scene-partner",
        description="Scene Partner — rehearse scripts with a synthesized reading partner",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--settings", default=SETTINGS_PATH, help="Settings file path")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # parse
    parse_parser = subparsers.add_parser("parse", help="Show characters and dialogue found in a script")
    parse_parser.add_argument("file", help="Path to the script text file")
    parse_parser.add_argument("--json", action="store_true", help="Print the parse as JSON")
    parse_parser.set_defaults(func=cmd_parse)

    # rehearse
    rehearse_parser = subparsers.add_parser("rehearse", help="Run lines with a scene partner")
    rehearse_parser.add_argument("file", help="Path to the script text file")
    rehearse_parser.add_argument("--as", dest="character", help="The character you are playing")
    rehearse_parser.add_argument("--speed", type=float, help=f"Speed {SPEED_MIN}-{SPEED_MAX} (3 = normal)")
    rehearse_parser.add_argument("--countdown", type=float, help="Seconds before the first line")
    rehearse_parser.add_argument("--silent", action="store_true", help="Show partner lines without speaking them")
    rehearse_parser.add_argument("--cache-dir", default=TTS_CACHE_DIR, help="Where synthesized lines are cached")
    rehearse_parser.add_argument("--listen", action="store_true", help="End your lines when you stop speaking (microphone)")
    rehearse_parser.add_argument("--mic-device", help="ffmpeg input device for --listen")
    rehearse_parser.set_defaults(func=cmd_rehearse)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List voices, or a script's voice cast")
    voices_parser.add_argument("file", nargs="?", help="Script to show the cast for")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.set_defaults(func=cmd_voices)

    # settings
    settings_parser = subparsers.add_parser("settings", help="Show or change saved settings")
    settings_parser.add_argument("action", choices=["show", "set", "reset"])
    settings_parser.add_argument("values", nargs="*", help="<key> <value> for set")
    settings_parser.set_defaults(func=cmd_settings)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
