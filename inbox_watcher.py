"""
Inbox watcher for agent teams.

Discovers teams under the teams directory, watches every member's inbox
file and hands newly appended messages to a callback:

    <teams_dir>/<team>/config.json            team descriptor ({"members": [...]})
    <teams_dir>/<team>/inboxes/<member>.json  JSON array of messages

Change notifications are debounced and backed by an unconditional safety
poll, since notifications may be missed.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Callable, Optional, Protocol

from shared import (
    INBOX_DEBOUNCE,
    INBOX_DIR_NAME,
    READ_RETRIES,
    READ_RETRY_DELAY,
    SAFETY_POLL_INTERVAL,
    TEAM_DEBOUNCE,
    TEAM_DESCRIPTOR_NAME,
    WATCH_INTERVAL,
    get_logger,
)

logger = get_logger("inbox-watcher")

ChangeCallback = Callable[[Path], None]
ErrorCallback = Callable[[Path, Exception], None]


class WatchHandle(Protocol):
    def close(self) -> None: ...


WatchFactory = Callable[[Path, ChangeCallback, ErrorCallback], WatchHandle]


class PathWatcher:
    """Polls a file or directory with stat() and reports changes.

    Files report their own path when size or mtime changes (including when
    they first appear). Directories report each child that appears or
    changes. A missing path is simply not reported; any other stat error
    ends the watch and is passed to on_error.
    """

    def __init__(
        self,
        path: Path,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
        interval: float = WATCH_INTERVAL,
    ):
        self._path = path
        self._callback = callback
        self._on_error = on_error
        self._interval = interval
        self._snapshot = self._take_snapshot()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _take_snapshot(self) -> Optional[dict]:
        try:
            if self._path.is_dir():
                return {
                    entry.name: entry.stat().st_mtime_ns
                    for entry in os.scandir(self._path)
                }
            stat = self._path.stat()
            return {"": (stat.st_mtime_ns, stat.st_size)}
        except FileNotFoundError:
            return None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                snapshot = self._take_snapshot()
            except OSError as e:
                logger.warning(f"Watch on {self._path} failed: {e}")
                if self._on_error is not None:
                    self._on_error(self._path, e)
                return
            if snapshot is None or snapshot == self._snapshot:
                self._snapshot = snapshot
                continue
            previous = self._snapshot or {}
            self._snapshot = snapshot
            for name, value in snapshot.items():
                if previous.get(name) == value:
                    continue
                try:
                    self._callback(self._path / name if name else self._path)
                except Exception as e:
                    logger.error(f"Watch callback for {self._path} failed: {e}")

    def close(self) -> None:
        self._task.cancel()


def default_watch_factory(interval: float = WATCH_INTERVAL) -> WatchFactory:
    def factory(path: Path, callback: ChangeCallback, on_error: ErrorCallback) -> PathWatcher:
        return PathWatcher(path, callback, on_error, interval=interval)
    return factory


class InboxWatcher:
    """Streams new inbox messages from every team member to on_message."""

    def __init__(
        self,
        teams_dir: Path,
        on_message: Callable[[dict], object],
        watch_factory: Optional[WatchFactory] = None,
        poll_interval: float = SAFETY_POLL_INTERVAL,
        inbox_debounce: float = INBOX_DEBOUNCE,
        team_debounce: float = TEAM_DEBOUNCE,
        read_retries: int = READ_RETRIES,
        retry_delay: float = READ_RETRY_DELAY,
    ):
        self._teams_dir = Path(teams_dir)
        self._on_message = on_message
        self._watch_factory = watch_factory or default_watch_factory()
        self._poll_interval = poll_interval
        self._inbox_debounce = inbox_debounce
        self._team_debounce = team_debounce
        self._read_retries = read_retries
        self._retry_delay = retry_delay

        self._cursors: dict[Path, int] = {}
        self._inboxes: set[Path] = set()
        self._shrunk: set[Path] = set()
        self._watchers: dict[Path, WatchHandle] = {}
        self._timers: dict[Path, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._running = False

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """Scan all teams, then keep watching for new teams and messages."""
        self._running = True
        try:
            self._teams_dir.mkdir(parents=True, exist_ok=True)
            for entry in sorted(self._teams_dir.iterdir()):
                if entry.is_dir():
                    await self.scan_team_dir(entry)

            self._add_watch(self._teams_dir, self._on_teams_dir_change)
            self._poll_task = asyncio.get_running_loop().create_task(self._safety_poll())
            logger.info(f"Inbox watcher started on {self._teams_dir}")
        except OSError as e:
            logger.error(f"Failed to start inbox watcher: {e}")

    async def stop(self) -> None:
        """Close every watch and cancel pending timers and tasks."""
        self._running = False
        for handle in self._watchers.values():
            handle.close()
        self._watchers.clear()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        tasks = list(self._tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Inbox watcher stopped")

    # ─── Discovery ───────────────────────────────────────────────────────

    async def scan_team_dir(self, team_dir: Path) -> None:
        """Watch every member inbox listed in a team descriptor."""
        descriptor = team_dir / TEAM_DESCRIPTOR_NAME
        try:
            content = await self._read_text(descriptor)
            config = json.loads(content)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot scan team dir {team_dir}: {e}")
            return

        # Membership can change later, so watch the descriptor even when it lists no one
        self._add_watch(descriptor, lambda _path: self._debounce(
            descriptor, self._team_debounce, lambda: self.scan_team_dir(team_dir)
        ))

        members = config.get("members") if isinstance(config, dict) else None
        if not isinstance(members, list):
            logger.warning(f"Team descriptor {descriptor} has no members list")
            return

        for member in members:
            name = member.get("name") if isinstance(member, dict) else None
            if not isinstance(name, str) or not name:
                continue
            inbox = team_dir / INBOX_DIR_NAME / f"{name}.json"
            if inbox in self._inboxes:
                continue
            self.watch_inbox_file(inbox)
            await self.process_inbox_file(inbox)

    def watch_inbox_file(self, path: Path) -> None:
        """Start watching one inbox file. Safe to call repeatedly."""
        if path in self._inboxes:
            return
        self._inboxes.add(path)
        self._add_watch(path, lambda _path: self._debounce(
            path, self._inbox_debounce, lambda: self.process_inbox_file(path)
        ))

    def unwatch_inbox_file(self, path: Path) -> None:
        """Stop watching one inbox and forget its cursor."""
        handle = self._watchers.pop(path, None)
        if handle is not None:
            handle.close()
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self._inboxes.discard(path)
        self._cursors.pop(path, None)

    def _on_teams_dir_change(self, changed: Path) -> None:
        if changed.is_dir():
            self._spawn(self.scan_team_dir(changed))

    # ─── Reading ─────────────────────────────────────────────────────────

    async def process_inbox_file(self, path: Path) -> int:
        """Hand messages appended since the last read to on_message.

        Returns the number of new messages. Never raises for I/O or parse
        errors: the file may be mid-write, so reads are retried briefly.
        """
        messages = None
        for attempt in range(self._read_retries + 1):
            try:
                messages = json.loads(await self._read_text(path))
                break
            except (OSError, ValueError) as e:
                if attempt == self._read_retries:
                    if isinstance(e, FileNotFoundError):
                        logger.debug(f"Inbox {path} does not exist yet")
                    else:
                        logger.warning(f"Failed to process inbox {path}: {e}")
                    return 0
                await asyncio.sleep(self._retry_delay)

        if not isinstance(messages, list):
            logger.debug(f"Ignoring inbox {path}: not a JSON array")
            return 0

        # No await between reading and advancing the cursor, so concurrent
        # reads of the same file never hand off a message twice.
        last = self._cursors.get(path, 0)
        if len(messages) < last and path not in self._shrunk:
            self._shrunk.add(path)
            logger.warning(
                f"Inbox {path} shrank from {last} to {len(messages)} messages; "
                f"waiting for it to grow past {last}"
            )
        if len(messages) <= last:
            return 0
        self._shrunk.discard(path)
        self._cursors[path] = len(messages)

        new_messages = messages[last:]
        for message in new_messages:
            try:
                self._on_message(message)
            except Exception as e:
                logger.error(f"Failed to handle message in {path}: {e}")
        return len(new_messages)

    async def _read_text(self, path: Path) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, path.read_text, "utf-8")

    async def _safety_poll(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            for path in list(self._inboxes):
                await self.process_inbox_file(path)

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _add_watch(self, path: Path, callback: ChangeCallback) -> None:
        if path in self._watchers:
            return
        try:
            self._watchers[path] = self._watch_factory(path, callback, self._on_watch_error)
        except OSError as e:
            logger.warning(f"Cannot watch {path}: {e}")

    def _on_watch_error(self, path: Path, error: Exception) -> None:
        """Drop only the failed watch; every other path keeps its watcher."""
        logger.warning(f"Watcher error for {path}, cleaning up: {error}")
        if path in self._inboxes:
            self.unwatch_inbox_file(path)
            return
        handle = self._watchers.pop(path, None)
        if handle is not None:
            handle.close()

    def _debounce(self, key: Path, delay: float, factory) -> None:
        if not self._running:
            return
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        def fire():
            self._timers.pop(key, None)
            self._spawn(factory())

        self._timers[key] = asyncio.get_running_loop().call_later(delay, fire)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─── Introspection ───────────────────────────────────────────────────

    @property
    def inbox_paths(self) -> list[Path]:
        return sorted(self._inboxes)

    def cursor(self, path: Path) -> int:
        return self._cursors.get(path, 0)
