"""All magic numbers and configuration constants."""

import os

# Parser
NAME_MIN_LENGTH = 1                 # character names must be strictly longer than this
NAME_MAX_LENGTH = 30                # ...and strictly shorter than this
CUE_MAX_WORDS = 3                   # standalone cue names are 1-3 words
ROSTER_LIMIT = 10                   # characters shown for selection
PRODUCTION_KEYWORDS = ("FADE", "CUT", "INT", "EXT", "SCENE", "ACT")
STAGE_DIRECTION_WORDS = ("pause", "beat", "cont")
GENERIC_SPEAKER_TOKENS = ("narrator", "voice", "announcer", "off", "cont")
CUE_ACTION_WORDS = (
    "LOOKS", "WALKS", "RUNS", "SITS", "STANDS", "ENTERS", "EXITS", "MOVES", "TURNS",
    "GRABS", "HOLDS", "OPENS", "CLOSES", "POINTS", "NODS", "SHAKES", "SMILES",
    "CAMERA", "PAUSES", "HESITATES", "APPROACHES", "RETURNS", "FOLLOWS",
)
FALLBACK_ROSTER = ("MAIN CHARACTER", "PROTAGONIST", "LEAD ROLE")
PLAIN_TEXT_SPEAKER = "SPEAKER"

# Pacing
WORDS_PER_MINUTE = 150              # average read-aloud speed
PAUSE_BUFFER_MS = 2000              # extra time to process and respond
PAUSE_FLOOR_MS = 3000               # minimum display time before multiplier
LEAD_IN_DELAY_MS = 1000             # gap before an AI line / after the actor finishes
SPEED_MIN = 1
SPEED_MAX = 5
DEFAULT_SPEED = 3
SPEED_LABELS = {1: "Very Slow", 2: "Slow", 3: "Normal", 4: "Fast", 5: "Very Fast"}
PAUSE_MULTIPLIERS = {1: 2.0, 2: 1.5, 3: 1.0, 4: 0.7, 5: 0.5}
SPEECH_RATES = {1: 0.7, 2: 0.85, 3: 1.0, 4: 1.2, 5: 1.4}

# Speech
TTS_RETRY_COUNT = 3                 # max retries per synthesized line
TTS_RETRY_BASE_DELAY = 1.0          # seconds, base delay for exponential backoff
TTS_VOLUME = 0.7                    # playback volume (0.0–1.0)
PLAYER_COMMAND = "ffplay"           # plays synthesized clips
DEFAULT_VOICE = "en-US-AriaNeural"

# Voice activity
VAD_THRESHOLD = 0.1                 # normalized level counted as speech
VAD_SILENCE_HOLD_MS = 1000          # silence after speech before the line counts as done

# Microphone capture (ffmpeg writes mono int16 PCM to stdout)
MIC_COMMAND = "ffmpeg"
MIC_SAMPLE_RATE = 16000
MIC_FRAME_MS = 50
MIC_INPUTS = {                      # sys.platform -> (ffmpeg input format, default device)
    "linux": ("pulse", "default"),
    "darwin": ("avfoundation", ":0"),
    "win32": ("dshow", "audio=default"),
}

COUNTDOWN_SECONDS = 5               # before the first line of a run

STATE_DIR = os.path.join(os.path.expanduser("~"), ".scene_partner")
SETTINGS_PATH = os.path.join(STATE_DIR, "settings.json")
TTS_CACHE_DIR = os.path.join(STATE_DIR, "tts_cache")
VERSION = "0.1.0"
