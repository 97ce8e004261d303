"""TTS subsystem for the Team Voices MCP Server."""

from tts.kokoro_engine import KokoroEngine
from tts.audio_player import AudioPlayer
from tts.playback_queue import PlaybackQueue

__all__ = ["KokoroEngine", "AudioPlayer", "PlaybackQueue"]
