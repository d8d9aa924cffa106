"""Data models for script parsing and playback."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DialogueLine:
    character: str     # uppercase speaker name
    text: str
    line_number: int = 0   # 1-based line in the source text


@dataclass
class ScriptParsing:
    dialogues: list[DialogueLine] = field(default_factory=list)
    characters: list[str] = field(default_factory=list)
    is_plain_text: bool = True

    @property
    def needs_screenplay_format(self) -> bool:
        """True when the text cannot drive dialogue or teleprompter playback."""
        return self.is_plain_text and not self.characters


@dataclass(frozen=True)
class PlaybackState:
    current_line_index: int = 0
    is_playing: bool = False
    is_user_turn: bool = False
    speed: float = 3
    phase: str = "idle"    # idle, countdown, ai_turn, user_turn, paused, finished
    session_id: int = 0
    total_lines: int = 0
    current_line: DialogueLine | None = None

    @property
    def progress(self) -> float:
        if not self.total_lines:
            return 0.0
        return min(self.current_line_index / self.total_lines, 1.0)
