"""
Shared constants, types, and utilities for the Team Voices MCP Server.

This module is the single source of truth for:
- Queue, dedup and watcher constants
- Voice pool (the ordered Kokoro voices handed out round-robin)
- Dataclasses passed between subsystems
- Custom exceptions
- Logging configuration
"""

import logging
import sys
from dataclasses import dataclass
from typing import Optional


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_SPEED = 1.0            # Default TTS speed multiplier
MAX_SPOKEN_LENGTH = 500        # Rendered message text is cut to this many characters
QUEUE_TRIM_THRESHOLD = 10      # Backlog size that triggers a trim
QUEUE_TRIM_KEEP = 5            # Items kept (most recent) after a trim
FINGERPRINT_CAPACITY = 100     # Recent message fingerprints remembered for dedup
SAFETY_POLL_INTERVAL = 5.0     # Seconds between unconditional inbox re-reads
INBOX_DEBOUNCE = 0.1           # Seconds to coalesce writes to one inbox
TEAM_DEBOUNCE = 0.5            # Seconds to coalesce writes to a team descriptor
WATCH_INTERVAL = 0.5           # Seconds between stat() checks of a watched path
READ_RETRIES = 3               # Extra attempts when an inbox is mid-write
READ_RETRY_DELAY = 0.05        # Seconds between those attempts
ELECTION_ATTEMPTS = 5          # Bind/connect rounds before giving up
CONFIG_FILE_NAME = "config.json"
SOCKET_FILE_NAME = "playback.sock"
TEAM_DESCRIPTOR_NAME = "config.json"
INBOX_DIR_NAME = "inboxes"
TEMP_FILE_PREFIX = "team-voice-"
IDLE_NOTIFICATION_TYPE = "idle_notification"
DIRECT_SENDER = "direct"


# ─── Voice Pool ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Voice:
    """A named TTS voice."""
    name: str
    id: str

    def to_dict(self) -> dict:
        return {"name": self.name, "id": self.id}


# Handed out round-robin to agents as they first speak. Order alternates
# accent and gender so neighbouring agents sound distinct.
VOICE_POOL: tuple[Voice, ...] = (
    Voice("Nova", "af_nova"),
    Voice("Eric", "am_eric"),
    Voice("Alice", "bf_alice"),
    Voice("George", "bm_george"),
    Voice("Bella", "af_bella"),
    Voice("Adam", "am_adam"),
    Voice("Emma", "bf_emma"),
    Voice("Daniel", "bm_daniel"),
    Voice("Sarah", "af_sarah"),
    Voice("Michael", "am_michael"),
)

# All Kokoro voice IDs the engine accepts
ALL_VOICE_IDS: set[str] = {
    # American English - Female (11)
    "af_alloy", "af_aoede", "af_bella", "af_heart", "af_jessica",
    "af_kore", "af_nicole", "af_nova", "af_river", "af_sarah", "af_sky",
    # American English - Male (9)
    "am_adam", "am_echo", "am_eric", "am_fenrir", "am_liam",
    "am_michael", "am_onyx", "am_puck", "am_santa",
    # British English - Female (4)
    "bf_alice", "bf_emma", "bf_isabella", "bf_lily",
    # British English - Male (4)
    "bm_daniel", "bm_fable", "bm_george", "bm_lewis",
    # Spanish (3)
    "ef_dora", "em_alex", "em_santa",
    # French (1)
    "ff_siwis",
    # Hindi (4)
    "hf_alpha", "hf_beta", "hm_omega", "hm_psi",
    # Italian (2)
    "if_sara", "im_nicola",
    # Japanese (5)
    "jf_alpha", "jf_gongitsune", "jf_nezumi", "jf_tebukuro", "jm_kumo",
    # Portuguese (3)
    "pf_dora", "pm_alex", "pm_santa",
    # Mandarin (8)
    "zf_xiaobei", "zf_xiaoni", "zf_xiaoxiao", "zf_xiaoyi",
    "zm_yunjian", "zm_yunxi", "zm_yunxia", "zm_yunyang",
}


def resolve_voice(name_or_id: str) -> Voice:
    """Find a pool voice by name (case-insensitive) or exact id.

    Anything else is treated as a custom voice identifier.
    """
    lowered = name_or_id.lower()
    for voice in VOICE_POOL:
        if voice.name.lower() == lowered or voice.id == name_or_id:
            return voice
    return Voice(name_or_id, name_or_id)


# ─── Dataclasses ──────────────────────────────────────────────────────────────

@dataclass
class QueueItem:
    """One speech request waiting for playback."""
    text: str
    voice_id: str
    sender: Optional[str] = None
    bypass_mute: bool = False

    def to_dict(self) -> dict:
        """Wire form sent from a follower to the leader."""
        return {
            "text": self.text,
            "voiceId": self.voice_id,
            "from": self.sender,
            "bypassMute": self.bypass_mute,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueItem":
        text = data.get("text")
        voice_id = data.get("voiceId")
        if not isinstance(text, str) or not isinstance(voice_id, str):
            raise ValueError("queue item needs string 'text' and 'voiceId'")
        return cls(
            text=text,
            voice_id=voice_id,
            sender=data.get("from"),
            bypass_mute=bool(data.get("bypassMute", False)),
        )


@dataclass
class SynthesisResult:
    """Result from TTS engine synthesis."""
    samples: object  # numpy ndarray
    sample_rate: int
    duration_ms: float
    synthesis_ms: float


@dataclass
class PlaybackResult:
    """Result from audio player."""
    success: bool
    duration_ms: float = 0.0
    error: Optional[str] = None


# ─── Exceptions ───────────────────────────────────────────────────────────────

class TTSEngineError(Exception):
    """Raised when TTS engine encounters an error."""
    pass


class AudioPlayerError(Exception):
    """Raised when audio playback encounters an error."""
    pass


class CoordinationError(Exception):
    """Raised when no process could be elected to own playback."""
    pass


# ─── Logging ──────────────────────────────────────────────────────────────────

def get_logger(name: str = "team-voices") -> logging.Logger:
    """Get a logger that outputs to stderr (MCP convention: stdout is reserved for protocol)."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


_COMPONENT_LOGGERS = (
    "server",
    "config",
    "team-voices",
    "voice-registry",
    "message-processor",
    "inbox-watcher",
    "coordinator",
    "tts.kokoro",
    "tts.audio_player",
    "tts.playback_queue",
)


def set_log_level(level: str) -> None:
    """Apply a level name (e.g. "debug") to every component logger."""
    value = getattr(logging, level.upper(), None)
    if not isinstance(value, int):
        return
    for name in _COMPONENT_LOGGERS:
        get_logger(name).setLevel(value)
