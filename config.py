"""
Configuration management for the Team Voices MCP Server.

Lookup order: $TEAM_VOICES_CONFIG → <state_dir>/config.json → defaults
Environment variables override individual config values.

The same file also holds the persisted voice record (voiceAssignments,
nextVoiceIndex, muted); that part is owned by VoiceRegistry.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from shared import (
    CONFIG_FILE_NAME,
    DEFAULT_SPEED,
    INBOX_DEBOUNCE,
    READ_RETRIES,
    READ_RETRY_DELAY,
    SAFETY_POLL_INTERVAL,
    SOCKET_FILE_NAME,
    TEAM_DEBOUNCE,
    WATCH_INTERVAL,
    get_logger,
)

logger = get_logger("config")

DEFAULT_STATE_DIR = Path.home() / ".claude-team-voices"
DEFAULT_TEAMS_DIR = Path.home() / ".claude" / "teams"
DEFAULT_MODEL_DIR = Path.home() / ".local" / "share" / "agent-voice-mcp" / "models"


@dataclass
class TTSConfig:
    model_path: str = str(DEFAULT_MODEL_DIR / "kokoro-v1.0.onnx")
    voices_path: str = str(DEFAULT_MODEL_DIR / "voices-v1.0.bin")
    speed: float = DEFAULT_SPEED
    audio_player: str = "mpv"


@dataclass
class WatchConfig:
    poll_interval: float = SAFETY_POLL_INTERVAL
    inbox_debounce: float = INBOX_DEBOUNCE
    team_debounce: float = TEAM_DEBOUNCE
    watch_interval: float = WATCH_INTERVAL
    read_retries: int = READ_RETRIES
    retry_delay: float = READ_RETRY_DELAY


@dataclass
class AppConfig:
    tts: TTSConfig = field(default_factory=TTSConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    state_dir: str = str(DEFAULT_STATE_DIR)
    teams_dir: str = str(DEFAULT_TEAMS_DIR)
    log_level: str = "info"

    @property
    def config_path(self) -> Path:
        return Path(self.state_dir) / CONFIG_FILE_NAME

    @property
    def socket_path(self) -> Path:
        return Path(self.state_dir) / SOCKET_FILE_NAME


def get_state_dir() -> Path:
    """Return the shared state directory, respecting $TEAM_VOICES_STATE_DIR."""
    env_dir = os.environ.get("TEAM_VOICES_STATE_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return DEFAULT_STATE_DIR


def get_config_path() -> Path:
    """Return the config file path, respecting $TEAM_VOICES_CONFIG."""
    env_path = os.environ.get("TEAM_VOICES_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return get_state_dir() / CONFIG_FILE_NAME


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load configuration from JSON file with env var overrides.

    Lookup order:
    1. Explicit config_path argument
    2. $TEAM_VOICES_CONFIG environment variable
    3. <state_dir>/config.json
    4. Built-in defaults
    """
    path = config_path or get_config_path()
    config = AppConfig(state_dir=str(get_state_dir()))

    # Load from file if it exists
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")

            # TTS config
            tts = data.get("tts")
            if isinstance(tts, dict):
                if "model_path" in tts:
                    config.tts.model_path = str(Path(tts["model_path"]).expanduser())
                if "voices_path" in tts:
                    config.tts.voices_path = str(Path(tts["voices_path"]).expanduser())
                if "speed" in tts:
                    config.tts.speed = float(tts["speed"])
                if "audio_player" in tts:
                    config.tts.audio_player = tts["audio_player"]

            # Watcher timings
            watch = data.get("watch")
            if isinstance(watch, dict):
                for key in ("poll_interval", "inbox_debounce", "team_debounce",
                            "watch_interval", "retry_delay"):
                    if key in watch:
                        setattr(config.watch, key, float(watch[key]))
                if "read_retries" in watch:
                    config.watch.read_retries = int(watch["read_retries"])

            # Top-level config
            if "teams_dir" in data:
                config.teams_dir = str(Path(data["teams_dir"]).expanduser())
            if "log_level" in data:
                config.log_level = data["log_level"]

            logger.debug(f"Loaded config from {path}")
        except (json.JSONDecodeError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Error reading config from {path}: {e}. Using defaults.")

    # Environment variable overrides
    if env_teams := os.environ.get("TEAM_VOICES_TEAMS_DIR"):
        config.teams_dir = str(Path(env_teams).expanduser())
    if env_model := os.environ.get("KOKORO_MODEL"):
        config.tts.model_path = str(Path(env_model).expanduser())
    if env_voices := os.environ.get("KOKORO_VOICES"):
        config.tts.voices_path = str(Path(env_voices).expanduser())
    if env_player := os.environ.get("VOICE_PLAYER"):
        config.tts.audio_player = env_player
    if env_level := os.environ.get("TEAM_VOICES_LOG_LEVEL"):
        config.log_level = env_level

    return config
