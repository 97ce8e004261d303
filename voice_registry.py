"""
Voice registry for the Team Voices MCP Server.

Maps agent names to voices from VOICE_POOL:
1. Existing assignments are sticky (auto or manual)
2. New agents get the next pool voice, round-robin
3. Manual assignment accepts a pool name, a pool id, or a custom voice id

The record {voiceAssignments, nextVoiceIndex, muted} lives in the state
directory's config.json and is rewritten after every change.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

from shared import VOICE_POOL, Voice, get_logger, resolve_voice

logger = get_logger("voice-registry")


class VoiceRegistry:
    """Manages agent name -> voice mappings with round-robin defaults."""

    def __init__(self, config_path: Optional[Path] = None):
        self._assignments: dict[str, Voice] = {}
        self._next_index = 0
        self._muted = False
        self._config_path = config_path
        self._save_scheduled = False

    # ─── Assignment ──────────────────────────────────────────────────────

    def assign(self, agent: str) -> Voice:
        """Return the agent's voice, handing out the next pool voice if it has none."""
        existing = self._assignments.get(agent)
        if existing is not None:
            return existing

        voice = VOICE_POOL[self._next_index % len(VOICE_POOL)]
        self._next_index += 1
        self._assignments[agent] = voice
        logger.info(f"Auto-assigned voice '{voice.name}' to '{agent}'")
        self._schedule_save()
        return voice

    def manual_assign(self, agent: str, name_or_id: str) -> Voice:
        """Bind a voice to an agent, replacing any existing assignment."""
        voice = resolve_voice(name_or_id)
        self._assignments[agent] = voice
        logger.info(f"Set voice '{voice.name}' ({voice.id}) for '{agent}'")
        self._schedule_save()
        return voice

    def get_voice(self, agent: str) -> Voice:
        return self._assignments.get(agent) or self.assign(agent)

    def assignments(self) -> dict[str, Voice]:
        """Return a copy of the current assignments."""
        return dict(self._assignments)

    @property
    def muted(self) -> bool:
        return self._muted

    @muted.setter
    def muted(self, value: bool) -> None:
        self._muted = bool(value)
        logger.info("Voice muted" if self._muted else "Voice unmuted")
        self._schedule_save()

    @property
    def next_index(self) -> int:
        return self._next_index

    @property
    def size(self) -> int:
        """Return number of entries in the registry."""
        return len(self._assignments)

    # ─── Persistence ─────────────────────────────────────────────────────

    def _schedule_save(self) -> None:
        """Persist soon without blocking the caller.

        Inside an event loop several changes in one tick share a single write.
        """
        if self._config_path is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._safe_save()
            return
        if not self._save_scheduled:
            self._save_scheduled = True
            loop.call_soon(self._safe_save)

    def _safe_save(self) -> None:
        self._save_scheduled = False
        try:
            self.save()
        except OSError as e:
            logger.error(f"Failed to save voice record: {e}")

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save the voice record to the config JSON file.

        Reads existing config, updates the voice keys, writes back.
        """
        path = config_path or self._config_path
        if path is None:
            logger.warning("No config path specified, cannot save registry")
            return

        data = {}
        if path.exists():
            try:
                with open(path) as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Error reading config for save: {e}")

        data["voiceAssignments"] = {
            agent: voice.to_dict() for agent, voice in self._assignments.items()
        }
        data["nextVoiceIndex"] = self._next_index
        data["muted"] = self._muted

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

        logger.debug(f"Saved registry ({self.size} entries) to {path}")

    def load(self, config_path: Optional[Path] = None) -> None:
        """Load the voice record; a missing or corrupt file leaves defaults."""
        path = config_path or self._config_path
        if path is None:
            logger.warning("No config path specified, cannot load registry")
            return

        if not path.exists():
            logger.debug(f"Config file not found at {path}, starting with empty registry")
            return

        try:
            with open(path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Error loading registry from {path}: {e}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring registry in {path}: not a JSON object")
            return

        raw = data.get("voiceAssignments")
        if isinstance(raw, dict):
            assignments = {}
            for agent, entry in raw.items():
                if (isinstance(entry, dict)
                        and isinstance(entry.get("name"), str)
                        and isinstance(entry.get("id"), str)):
                    assignments[agent] = Voice(entry["name"], entry["id"])
                else:
                    logger.warning(f"Skipping malformed voice entry for '{agent}'")
            self._assignments = assignments
            next_index = data.get("nextVoiceIndex")
            if isinstance(next_index, int) and not isinstance(next_index, bool) and next_index > 0:
                self._next_index = next_index
            else:
                self._next_index = len(assignments)

        if isinstance(data.get("muted"), bool):
            self._muted = data["muted"]

        logger.debug(f"Loaded registry ({self.size} entries) from {path}")
