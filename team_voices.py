"""
Process-local wiring of the Team Voices components.

One TeamVoicesService per server process owns the voice registry, playback
queue, message processor, inbox watcher and playback coordinator. The
enqueue path is the same for every producer: when this process leads it
plays locally, when it follows the item is forwarded to the leader.
"""

from pathlib import Path
from typing import Optional

from config import AppConfig
from inbox_watcher import InboxWatcher, WatchFactory, default_watch_factory
from message_processor import MessageProcessor
from playback_coordinator import PlaybackCoordinator, Role
from shared import (
    DIRECT_SENDER,
    VOICE_POOL,
    CoordinationError,
    QueueItem,
    Voice,
    get_logger,
    resolve_voice,
)
from tts.playback_queue import PlayFn, PlaybackQueue, SynthesizeFn
from voice_registry import VoiceRegistry

logger = get_logger("team-voices")


class TeamVoicesService:
    """Everything one server process needs to speak team messages."""

    def __init__(
        self,
        config: AppConfig,
        synthesize: SynthesizeFn,
        play: PlayFn,
        watch_factory: Optional[WatchFactory] = None,
    ):
        self._config = config
        self.registry = VoiceRegistry(config_path=config.config_path)
        self.queue = PlaybackQueue(synthesize, play, is_muted=lambda: self.registry.muted)
        self.processor = MessageProcessor(self.registry.get_voice, self.enqueue)
        self.coordinator = PlaybackCoordinator(config.socket_path, on_item=self.queue.enqueue)
        self.watcher = InboxWatcher(
            Path(config.teams_dir),
            on_message=self.processor.handle,
            watch_factory=watch_factory or default_watch_factory(config.watch.watch_interval),
            poll_interval=config.watch.poll_interval,
            inbox_debounce=config.watch.inbox_debounce,
            team_debounce=config.watch.team_debounce,
            read_retries=config.watch.read_retries,
            retry_delay=config.watch.retry_delay,
        )
        self._started = False

    async def start(self) -> Optional[Role]:
        """Load persisted voices, join the election, then start watching inboxes."""
        self.registry.load()
        role = None
        try:
            role = await self.coordinator.elect()
        except CoordinationError as e:
            logger.error(f"{e}. Playing locally without coordination.")
        await self.watcher.start()
        self._started = True
        return role

    async def stop(self) -> None:
        """Stop watching, give up the playback socket and flush state."""
        await self.watcher.stop()
        await self.coordinator.close()
        await self.queue.close()
        if self._started:
            try:
                self.registry.save()
            except OSError as e:
                logger.error(f"Failed to save registry on shutdown: {e}")
        self._started = False

    # ─── Enqueue ─────────────────────────────────────────────────────────

    def enqueue(self, item: QueueItem) -> bool:
        """Queue an item on whichever process currently plays audio.

        Items arriving while no leader is known (before the first election,
        during a re-election, after shutdown) are dropped. An uncoordinated
        process, one whose election gave up, plays on its own queue.
        """
        if self.registry.muted and not item.bypass_mute:
            logger.debug(f"Muted, dropping item from {item.sender}")
            return False
        coordinator = self.coordinator
        if coordinator.role is Role.FOLLOWER:
            return coordinator.forward(item)
        if coordinator.role is Role.LEADER or coordinator.is_uncoordinated:
            return self.queue.enqueue(item)
        state = "electing" if coordinator.is_electing else "no leader"
        logger.warning(f"Playback role unknown ({state}), dropping item from {item.sender}")
        return False

    # ─── Tool surface ────────────────────────────────────────────────────

    def speak(self, text: str, voice: Optional[str] = None, bypass_mute: bool = False) -> dict:
        """Queue arbitrary text for playback."""
        chosen = resolve_voice(voice) if voice else VOICE_POOL[0]
        if self.registry.muted and not bypass_mute:
            return {"queued": False, "reason": "Muted"}
        forwarded = self.coordinator.role is Role.FOLLOWER
        queued = self.enqueue(
            QueueItem(text=text, voice_id=chosen.id, sender=DIRECT_SENDER, bypass_mute=bypass_mute)
        )
        result = {"queued": queued, "voice": chosen.name, "forwarded": forwarded}
        if not forwarded:
            result["position"] = self.queue.depth
        return result

    def test_voice(self, voice: str) -> dict:
        """Speak a sample sentence in the given voice, even while muted."""
        chosen = resolve_voice(voice)
        forwarded = self.coordinator.role is Role.FOLLOWER
        queued = self.enqueue(QueueItem(
            text=f"Hello, I am {chosen.name}. Testing team voices.",
            voice_id=chosen.id,
            sender="test",
            bypass_mute=True,
        ))
        result = {"testing": chosen.name, "queued": queued, "forwarded": forwarded}
        if not forwarded:
            result["position"] = self.queue.depth
        return result

    def assign_voice(self, agent: str, voice: str) -> Voice:
        return self.registry.manual_assign(agent, voice)

    def set_muted(self, muted: bool) -> bool:
        self.registry.muted = muted
        return self.registry.muted

    def status(self) -> dict:
        role = self.coordinator.role
        return {
            "muted": self.registry.muted,
            "queueLength": self.queue.depth,
            "isPlaying": self.queue.is_playing,
            "role": role.value if role else None,
            "assignments": [
                {"agent": agent, "voice": voice.name, "voiceId": voice.id}
                for agent, voice in self.registry.assignments().items()
            ],
            "availableVoices": [voice.name for voice in VOICE_POOL],
            "watchedInboxes": len(self.watcher.inbox_paths),
        }
