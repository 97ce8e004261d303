"""Audio playback via external player (mpv, afplay, aplay)."""

import asyncio
import platform
import subprocess
import time

from shared import PlaybackResult, AudioPlayerError, get_logger

logger = get_logger("tts.audio_player")


class AudioPlayer:
    """Plays audio files through an external player process."""

    def __init__(self, player_command: str = "mpv") -> None:
        self._player_command = player_command
        self._process: asyncio.subprocess.Process | None = None

        # Detect platform fallback if player_command is not available
        if not self._command_exists(player_command):
            system = platform.system()
            if system == "Darwin":
                self._player_command = "afplay"
                logger.info(f"'{player_command}' not found, falling back to afplay")
            elif system == "Linux":
                self._player_command = "aplay"
                logger.info(f"'{player_command}' not found, falling back to aplay")
            else:
                logger.warning(f"'{player_command}' not found and no fallback for {system}")

    @staticmethod
    def _command_exists(cmd: str) -> bool:
        """Check if a command is available on the system."""
        try:
            subprocess.run(
                ["which", cmd],
                capture_output=True,
                check=True,
            )
            return True
        except (subprocess.CalledProcessError, FileNotFoundError):
            return False

    def _build_command(self, path: str) -> list[str]:
        """Build the player command list for the given audio file path."""
        if self._player_command == "mpv":
            return ["mpv", "--no-video", "--really-quiet", path]
        elif self._player_command == "afplay":
            return ["afplay", path]
        elif self._player_command == "aplay":
            return ["aplay", "-q", path]
        else:
            return [self._player_command, path]

    async def play(self, path: str) -> PlaybackResult:
        """Play an audio file and wait for the player to exit.

        Args:
            path: Audio file to play.

        Returns:
            PlaybackResult with timing.

        Raises:
            AudioPlayerError: If the player cannot start or exits non-zero.
        """
        cmd = self._build_command(path)
        logger.debug(f"Playing audio: {' '.join(cmd)}")

        start = time.perf_counter()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            returncode = await self._process.wait()
        except OSError as e:
            raise AudioPlayerError(f"Playback failed: {e}") from e
        finally:
            self._process = None
        duration_ms = (time.perf_counter() - start) * 1000

        if returncode != 0:
            raise AudioPlayerError(f"Player exited with code {returncode}")

        return PlaybackResult(success=True, duration_ms=duration_ms)

    def stop(self) -> bool:
        """Stop any currently playing audio.

        Returns:
            True if a process was stopped, False if nothing was playing.
        """
        if self._process is not None:
            try:
                self._process.kill()
                logger.info("Stopped audio playback")
                return True
            except ProcessLookupError:
                return False
            finally:
                self._process = None
        return False

    @property
    def is_playing(self) -> bool:
        """Return True if audio is currently playing."""
        return self._process is not None and self._process.returncode is None
