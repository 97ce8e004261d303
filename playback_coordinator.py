"""
Leader election over a Unix-domain socket.

All server processes sharing a state directory compete for one socket:

- The process that binds it is the leader and plays audio.
- Everyone else connects as a follower and forwards queue items to the
  leader as newline-delimited JSON.
- A socket file that refuses connections was left by a leader that died
  without cleanup; it is removed and the election retried.
"""

import asyncio
import errno
import json
import os
import socket
from contextlib import suppress
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from shared import ELECTION_ATTEMPTS, CoordinationError, QueueItem, get_logger

logger = get_logger("coordinator")

STREAM_LIMIT = 1024 * 1024  # Longest accepted line from a follower


class Role(str, Enum):
    LEADER = "leader"
    FOLLOWER = "follower"


class PlaybackCoordinator:
    """Elects this process as leader or follower of the playback socket."""

    def __init__(
        self,
        socket_path: Path,
        on_item: Callable[[QueueItem], object],
        max_attempts: int = ELECTION_ATTEMPTS,
    ):
        self._socket_path = Path(socket_path)
        self._on_item = on_item
        self._max_attempts = max_attempts
        self._role: Optional[Role] = None
        self._closing = False
        self._electing = False
        self._uncoordinated = False

        # Leader state
        self._listen_sock: Optional[socket.socket] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._inode: Optional[int] = None
        self._connections: set[asyncio.StreamWriter] = set()

        # Follower state
        self._writer: Optional[asyncio.StreamWriter] = None
        self._monitor_task: Optional[asyncio.Task] = None

    # ─── Election ────────────────────────────────────────────────────────

    async def elect(self) -> Role:
        """Become leader if the socket is free, otherwise follow the current leader.

        While this runs ``is_electing`` is true and the process holds no role.
        A failed election leaves the coordinator uncoordinated.

        Raises:
            CoordinationError: If neither role could be taken within the retry budget.
        """
        self._electing = True
        self._uncoordinated = False
        try:
            return await self._run_election()
        except CoordinationError:
            self._uncoordinated = True
            raise
        finally:
            self._electing = False

    async def _run_election(self) -> Role:
        self._socket_path.parent.mkdir(parents=True, exist_ok=True)

        for attempt in range(1, self._max_attempts + 1):
            if self._closing:
                break

            if self._bind():
                self._server = await asyncio.start_unix_server(
                    self._handle_follower, sock=self._listen_sock, limit=STREAM_LIMIT
                )
                self._role = Role.LEADER
                logger.info(f"Leader of {self._socket_path} (pid {os.getpid()})")
                return self._role

            try:
                refused_inode = os.stat(self._socket_path).st_ino
            except FileNotFoundError:
                continue  # Leader left between our bind and stat

            try:
                reader, writer = await asyncio.open_unix_connection(
                    str(self._socket_path), limit=STREAM_LIMIT
                )
            except ConnectionRefusedError:
                self._remove_stale(refused_inode)
                continue
            except FileNotFoundError:
                continue

            self._follow(reader, writer)
            logger.info(f"Following leader at {self._socket_path} (attempt {attempt})")
            return self._role

        raise CoordinationError(
            f"No leader elected for {self._socket_path} after {self._max_attempts} attempts"
        )

    def _bind(self) -> bool:
        """Try to take the socket path. Returns False if it is already bound."""
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(self._socket_path))
        except OSError as e:
            sock.close()
            if e.errno == errno.EADDRINUSE:
                return False
            raise CoordinationError(f"Cannot bind {self._socket_path}: {e}") from e

        sock.listen()
        sock.setblocking(False)
        # Restrict socket to owner-only
        os.chmod(self._socket_path, 0o600)
        self._inode = os.stat(self._socket_path).st_ino
        self._listen_sock = sock
        return True

    def _remove_stale(self, refused_inode: int) -> None:
        """Unlink a dead leader's socket unless a racer already replaced it."""
        try:
            if os.stat(self._socket_path).st_ino != refused_inode:
                return
            os.unlink(self._socket_path)
            logger.info(f"Removed stale socket {self._socket_path}")
        except FileNotFoundError:
            pass

    # ─── Leader ──────────────────────────────────────────────────────────

    async def _handle_follower(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._connections.add(writer)
        logger.debug(f"Follower connected ({len(self._connections)} total)")
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self._receive(line)
        except (ConnectionError, ValueError) as e:
            logger.warning(f"Follower connection error: {e}")
        finally:
            self._connections.discard(writer)
            writer.close()

    def _receive(self, line: bytes) -> None:
        try:
            item = QueueItem.from_dict(json.loads(line))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring malformed item from follower: {e}")
            return
        try:
            self._on_item(item)
        except Exception as e:
            logger.error(f"Failed to enqueue forwarded item: {e}")

    # ─── Follower ────────────────────────────────────────────────────────

    def _follow(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._role = Role.FOLLOWER
        self._monitor_task = asyncio.get_running_loop().create_task(
            self._watch_leader(reader, writer)
        )

    def forward(self, item: QueueItem) -> bool:
        """Send an item to the leader. Returns False if there is no live connection."""
        writer = self._writer
        if self._role is not Role.FOLLOWER or writer is None or writer.is_closing():
            logger.warning(f"No leader connection, dropping item from {item.sender}")
            return False
        writer.write((json.dumps(item.to_dict()) + "\n").encode("utf-8"))
        return True

    async def _watch_leader(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Wait for the leader to go away, then run a fresh election."""
        try:
            while await reader.read(4096):
                pass
        except ConnectionError:
            pass
        writer.close()
        if self._closing:
            return

        logger.warning("Lost connection to leader, re-running election")
        self._writer = None
        self._role = None
        try:
            role = await self.elect()
            logger.info(f"Re-elected as {role.value}")
        except CoordinationError as e:
            logger.error(f"Re-election failed: {e}")

    # ─── Teardown ────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Give up the current role. A leader closes and removes the socket."""
        self._closing = True

        task = self._monitor_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._monitor_task = None

        if self._writer is not None:
            self._writer.close()
            with suppress(ConnectionError):
                await self._writer.wait_closed()
            self._writer = None

        if self._server is not None:
            self._server.close()
            for writer in list(self._connections):
                writer.close()
            await self._server.wait_closed()
            self._server = None
        elif self._listen_sock is not None:
            self._listen_sock.close()
        self._listen_sock = None

        self.release()
        self._role = None
        self._uncoordinated = False

    def release(self) -> None:
        """Remove the socket file if this process still owns it.

        Synchronous so it can run from signal handlers and atexit.
        """
        if self._inode is None:
            return
        try:
            if os.stat(self._socket_path).st_ino == self._inode:
                os.unlink(self._socket_path)
                logger.info(f"Released {self._socket_path}")
        except FileNotFoundError:
            pass
        self._inode = None

    # ─── Introspection ───────────────────────────────────────────────────

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    def is_leader(self) -> bool:
        return self._role is Role.LEADER

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def follower_count(self) -> int:
        return len(self._connections)

    @property
    def is_electing(self) -> bool:
        """True while an election is running and no role is held."""
        return self._electing

    @property
    def is_uncoordinated(self) -> bool:
        """True after an election gave up; the process then plays on its own."""
        return self._uncoordinated
