"""Shared pytest fixtures for Team Voices MCP Server tests."""

import asyncio
import json
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure project root is on sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from shared import PlaybackResult


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Yield to the loop until predicate() is true or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True


# ─── TTS Fakes ───────────────────────────────────────────────────────────────

class RecordingTTS:
    """Async synthesize/play pair that records what it was asked to do."""

    def __init__(self, play_delay: float = 0.0):
        self.spoken: list[tuple[str, str]] = []
        self.played: list[str] = []
        self.paths: list[str] = []
        self.play_delay = play_delay
        self.active = 0
        self.max_active = 0

    async def synthesize(self, text: str, voice_id: str, output_path: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.spoken.append((text, voice_id))
            self.paths.append(output_path)
            Path(output_path).write_bytes(b"RIFF")
            await asyncio.sleep(0)
        finally:
            self.active -= 1

    async def play(self, path: str) -> PlaybackResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.play_delay)
            self.played.append(path)
        finally:
            self.active -= 1
        return PlaybackResult(success=True, duration_ms=1.0)

    @property
    def texts(self) -> list[str]:
        return [text for text, _ in self.spoken]


@pytest.fixture
def recorder():
    return RecordingTTS()


# ─── Watch Fakes ─────────────────────────────────────────────────────────────

class FakeWatch:
    def __init__(self, path: Path, callback, on_error=None):
        self.path = path
        self.callback = callback
        self.on_error = on_error
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeWatchFactory:
    """Stands in for the stat() poller; tests fire change events by hand."""

    def __init__(self):
        self.watches: dict[Path, FakeWatch] = {}

    def __call__(self, path: Path, callback, on_error=None) -> FakeWatch:
        watch = FakeWatch(path, callback, on_error)
        self.watches[path] = watch
        return watch

    def fire(self, path: Path, changed: Path = None) -> None:
        self.watches[path].callback(changed or path)

    def fail(self, path: Path, error: Exception) -> None:
        self.watches[path].on_error(path, error)


@pytest.fixture
def watch_factory():
    return FakeWatchFactory()


# ─── Filesystem Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def state_dir():
    """A short state directory; Unix socket paths are limited to ~100 bytes."""
    path = Path(tempfile.mkdtemp(prefix="tv-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def teams_dir(tmp_path):
    path = tmp_path / "teams"
    path.mkdir()
    return path


def make_team(teams_dir: Path, team: str, members: list[str], inboxes: dict = None) -> Path:
    """Create a team descriptor and optional inbox contents."""
    team_dir = teams_dir / team
    (team_dir / "inboxes").mkdir(parents=True, exist_ok=True)
    (team_dir / "config.json").write_text(
        json.dumps({"members": [{"name": name} for name in members]})
    )
    for member, messages in (inboxes or {}).items():
        (team_dir / "inboxes" / f"{member}.json").write_text(json.dumps(messages))
    return team_dir


# ─── Config Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def app_config(state_dir, teams_dir):
    """An AppConfig pointing at temp dirs, with the safety poll effectively off."""
    from config import AppConfig

    config = AppConfig(state_dir=str(state_dir), teams_dir=str(teams_dir))
    config.watch.poll_interval = 60.0
    config.watch.inbox_debounce = 0.01
    config.watch.team_debounce = 0.01
    config.watch.retry_delay = 0.0
    return config
