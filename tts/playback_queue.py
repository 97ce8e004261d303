"""Playback queue for serialized TTS playback."""

import asyncio
import os
import tempfile
from collections import deque
from typing import Awaitable, Callable, Optional

from shared import (
    QUEUE_TRIM_KEEP,
    QUEUE_TRIM_THRESHOLD,
    TEMP_FILE_PREFIX,
    QueueItem,
    get_logger,
)

logger = get_logger("tts.playback_queue")

SynthesizeFn = Callable[[str, str, str], Awaitable[object]]
PlayFn = Callable[[str], Awaitable[object]]


class PlaybackQueue:
    """Plays queued speech strictly one item at a time, in arrival order."""

    def __init__(
        self,
        synthesize: SynthesizeFn,
        play: PlayFn,
        is_muted: Optional[Callable[[], bool]] = None,
        tmp_dir: Optional[str] = None,
    ) -> None:
        self._synthesize = synthesize
        self._play = play
        self._is_muted = is_muted or (lambda: False)
        self._tmp_dir = tmp_dir
        self._items: deque[QueueItem] = deque()
        self._playing = False
        self._tasks: set[asyncio.Task] = set()

    def enqueue(self, item: QueueItem) -> bool:
        """Add an item and start draining. Never blocks.

        When nothing is playing the head item is taken off the backlog
        immediately, so a burst that follows cannot trim it away.

        Returns False if the item was dropped because output is muted.
        """
        if self._is_muted() and not item.bypass_mute:
            logger.debug(f"Muted, dropping item from {item.sender}")
            return False

        if len(self._items) >= QUEUE_TRIM_THRESHOLD:
            dropped = len(self._items) - QUEUE_TRIM_KEEP
            for _ in range(dropped):
                self._items.popleft()
            logger.info(f"Backlog full, dropped {dropped} oldest items")

        self._items.append(item)
        if not self._playing:
            self._playing = True
            task = asyncio.get_running_loop().create_task(
                self._play_from(self._items.popleft())
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        """Play queued items until the queue is empty.

        Returns immediately if another drain is already playing.
        """
        if self._playing or not self._items:
            return
        self._playing = True
        await self._play_from(self._items.popleft())

    async def _play_from(self, item: QueueItem) -> None:
        try:
            while True:
                await self._play_item(item)
                if not self._items:
                    break
                item = self._items.popleft()
        finally:
            self._playing = False

    async def _play_item(self, item: QueueItem) -> None:
        fd, tmp_path = tempfile.mkstemp(
            prefix=TEMP_FILE_PREFIX, suffix=".wav", dir=self._tmp_dir
        )
        os.close(fd)
        try:
            await self._synthesize(item.text, item.voice_id, tmp_path)
            await self._play(tmp_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"TTS error for item from {item.sender}: {e}")
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def pending(self) -> list[QueueItem]:
        """Return a copy of the items waiting to play."""
        return list(self._items)

    def clear(self) -> int:
        """Drop every waiting item. Returns how many were dropped."""
        count = len(self._items)
        self._items.clear()
        return count

    async def close(self) -> None:
        """Drop waiting items and cancel any drain in progress."""
        self._items.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        # A drain cancelled before its first step never reaches its finally
        self._playing = False

    @property
    def depth(self) -> int:
        """Return the number of items in the queue."""
        return len(self._items)

    @property
    def is_playing(self) -> bool:
        return self._playing
