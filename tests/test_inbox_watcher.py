"""Tests for inbox_watcher.py."""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from conftest import make_team, wait_for
from inbox_watcher import InboxWatcher, PathWatcher


def _msg(sender, text, ts="2025-01-01T00:00:00Z"):
    return {"from": sender, "text": text, "timestamp": ts}


def _write(path: Path, messages) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(messages))


@pytest.fixture
def received():
    return []


@pytest.fixture
def watcher(teams_dir, watch_factory, received):
    return InboxWatcher(
        teams_dir,
        on_message=received.append,
        watch_factory=watch_factory,
        poll_interval=60.0,
        inbox_debounce=0.01,
        team_debounce=0.01,
        retry_delay=0.0,
    )


class TestProcessInboxFile:
    @pytest.mark.asyncio
    async def test_delivers_only_new_messages(self, watcher, received, tmp_path):
        inbox = tmp_path / "alice.json"
        _write(inbox, [_msg("lead", "one"), _msg("lead", "two")])

        assert await watcher.process_inbox_file(inbox) == 2
        assert watcher.cursor(inbox) == 2

        _write(inbox, [_msg("lead", "one"), _msg("lead", "two"), _msg("lead", "three")])
        assert await watcher.process_inbox_file(inbox) == 1
        assert [m["text"] for m in received] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_unchanged_file_delivers_nothing(self, watcher, received, tmp_path):
        inbox = tmp_path / "alice.json"
        _write(inbox, [_msg("lead", "one")])
        await watcher.process_inbox_file(inbox)
        assert await watcher.process_inbox_file(inbox) == 0
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_missing_file(self, watcher, received, tmp_path):
        assert await watcher.process_inbox_file(tmp_path / "nobody.json") == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_invalid_json_after_retries(self, watcher, received, tmp_path):
        inbox = tmp_path / "alice.json"
        inbox.write_text('[{"from": "lead", "te')
        assert await watcher.process_inbox_file(inbox) == 0
        assert watcher.cursor(inbox) == 0

    @pytest.mark.asyncio
    async def test_non_array_ignored(self, watcher, received, tmp_path):
        inbox = tmp_path / "alice.json"
        _write(inbox, {"messages": []})
        assert await watcher.process_inbox_file(inbox) == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_shrunk_file_keeps_cursor(self, watcher, received, tmp_path):
        inbox = tmp_path / "alice.json"
        _write(inbox, [_msg("lead", str(i)) for i in range(3)])
        await watcher.process_inbox_file(inbox)

        _write(inbox, [_msg("lead", "rewritten")])
        assert await watcher.process_inbox_file(inbox) == 0
        assert watcher.cursor(inbox) == 3

        _write(inbox, [_msg("lead", str(i)) for i in range(4)])
        assert await watcher.process_inbox_file(inbox) == 1
        assert received[-1]["text"] == "3"

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_delivery(self, teams_dir, watch_factory, tmp_path):
        seen = []

        def on_message(message):
            if message["text"] == "bad":
                raise RuntimeError("handler failed")
            seen.append(message["text"])

        watcher = InboxWatcher(teams_dir, on_message, watch_factory=watch_factory, retry_delay=0.0)
        inbox = tmp_path / "alice.json"
        _write(inbox, [_msg("lead", "bad"), _msg("lead", "good")])

        assert await watcher.process_inbox_file(inbox) == 2
        assert seen == ["good"]
        assert watcher.cursor(inbox) == 2


class TestScanTeamDir:
    @pytest.mark.asyncio
    async def test_watches_member_inboxes(self, watcher, received, teams_dir, watch_factory):
        team = make_team(teams_dir, "alpha", ["alice", "bob"], inboxes={
            "alice": [_msg("lead", "welcome")],
        })

        await watcher.scan_team_dir(team)

        assert watcher.inbox_paths == [
            team / "inboxes" / "alice.json",
            team / "inboxes" / "bob.json",
        ]
        assert team / "config.json" in watch_factory.watches
        assert [m["text"] for m in received] == ["welcome"]

    @pytest.mark.asyncio
    async def test_members_without_names_skipped(self, watcher, teams_dir):
        team = teams_dir / "alpha"
        team.mkdir()
        (team / "config.json").write_text(json.dumps({"members": [
            {"name": "alice"}, {"agentType": "tester"}, "bob", {"name": ""},
        ]}))

        await watcher.scan_team_dir(team)
        assert watcher.inbox_paths == [team / "inboxes" / "alice.json"]

    @pytest.mark.asyncio
    async def test_missing_descriptor(self, watcher, teams_dir, watch_factory):
        team = teams_dir / "empty"
        team.mkdir()
        await watcher.scan_team_dir(team)
        assert watcher.inbox_paths == []
        assert watch_factory.watches == {}

    @pytest.mark.asyncio
    async def test_invalid_descriptor(self, watcher, teams_dir):
        team = teams_dir / "broken"
        team.mkdir()
        (team / "config.json").write_text("{nope")
        await watcher.scan_team_dir(team)
        assert watcher.inbox_paths == []

    @pytest.mark.asyncio
    async def test_descriptor_without_members_still_watched(self, watcher, teams_dir, watch_factory):
        team = teams_dir / "forming"
        team.mkdir()
        (team / "config.json").write_text(json.dumps({"name": "forming"}))

        await watcher.scan_team_dir(team)
        assert watcher.inbox_paths == []
        assert team / "config.json" in watch_factory.watches

    @pytest.mark.asyncio
    async def test_rescan_does_not_redeliver(self, watcher, received, teams_dir):
        team = make_team(teams_dir, "alpha", ["alice"], inboxes={"alice": [_msg("lead", "hi")]})
        await watcher.scan_team_dir(team)
        await watcher.scan_team_dir(team)
        assert len(received) == 1

    def test_unwatch_inbox_file(self, watcher, tmp_path):
        inbox = tmp_path / "alice.json"
        watcher.watch_inbox_file(inbox)
        watcher.watch_inbox_file(inbox)
        assert watcher.inbox_paths == [inbox]

        watcher.unwatch_inbox_file(inbox)
        assert watcher.inbox_paths == []
        assert watcher.cursor(inbox) == 0


class TestWatchLifecycle:
    @pytest.mark.asyncio
    async def test_failed_inbox_watch_drops_only_that_inbox(self, watcher, teams_dir, watch_factory):
        team = make_team(teams_dir, "alpha", ["alice", "bob"])
        alice = team / "inboxes" / "alice.json"
        bob = team / "inboxes" / "bob.json"

        await watcher.start()
        try:
            watch_factory.fail(alice, PermissionError("denied"))

            assert watcher.inbox_paths == [bob]
            assert watch_factory.watches[alice].closed
            assert not watch_factory.watches[bob].closed
            assert not watch_factory.watches[team / "config.json"].closed
            assert not watch_factory.watches[teams_dir].closed
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_failed_descriptor_watch_rewatched_on_rescan(self, watcher, teams_dir, watch_factory):
        team = make_team(teams_dir, "alpha", ["alice"])
        descriptor = team / "config.json"
        await watcher.scan_team_dir(team)
        failed = watch_factory.watches[descriptor]

        watch_factory.fail(descriptor, OSError("device gone"))
        assert failed.closed
        assert watcher.inbox_paths == [team / "inboxes" / "alice.json"]

        await watcher.scan_team_dir(team)
        assert watch_factory.watches[descriptor] is not failed

    @pytest.mark.asyncio
    async def test_start_scans_existing_teams(self, watcher, received, teams_dir, watch_factory):
        make_team(teams_dir, "alpha", ["alice"], inboxes={"alice": [_msg("lead", "one")]})
        make_team(teams_dir, "beta", ["bob"], inboxes={"bob": [_msg("lead", "two")]})

        await watcher.start()
        try:
            assert len(watcher.inbox_paths) == 2
            assert teams_dir in watch_factory.watches
            assert sorted(m["text"] for m in received) == ["one", "two"]
        finally:
            await watcher.stop()

        assert all(w.closed for w in watch_factory.watches.values())

    @pytest.mark.asyncio
    async def test_start_creates_missing_teams_dir(self, tmp_path, watch_factory, received):
        teams_dir = tmp_path / "not-yet"
        watcher = InboxWatcher(teams_dir, received.append, watch_factory=watch_factory)
        await watcher.start()
        try:
            assert teams_dir.is_dir()
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_inbox_change_delivers_after_debounce(self, watcher, received, teams_dir, watch_factory):
        team = make_team(teams_dir, "alpha", ["alice"])
        inbox = team / "inboxes" / "alice.json"
        await watcher.start()
        try:
            _write(inbox, [_msg("lead", "first")])
            watch_factory.fire(inbox)
            watch_factory.fire(inbox)
            assert await wait_for(lambda: len(received) == 1)
            await asyncio.sleep(0.05)
            assert len(received) == 1
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_new_team_discovered(self, watcher, received, teams_dir, watch_factory):
        await watcher.start()
        try:
            team = make_team(teams_dir, "late", ["carol"], inboxes={"carol": [_msg("lead", "hi")]})
            watch_factory.fire(teams_dir, team)
            assert await wait_for(lambda: len(received) == 1)
            assert watcher.inbox_paths == [team / "inboxes" / "carol.json"]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_new_member_discovered(self, watcher, received, teams_dir, watch_factory):
        team = make_team(teams_dir, "alpha", ["alice"])
        await watcher.start()
        try:
            make_team(teams_dir, "alpha", ["alice", "dave"], inboxes={"dave": [_msg("lead", "yo")]})
            watch_factory.fire(team / "config.json")
            assert await wait_for(lambda: len(watcher.inbox_paths) == 2)
            assert await wait_for(lambda: len(received) == 1)
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_safety_poll_catches_missed_changes(self, teams_dir, watch_factory, received):
        team = make_team(teams_dir, "alpha", ["alice"])
        watcher = InboxWatcher(
            teams_dir, received.append, watch_factory=watch_factory,
            poll_interval=0.02, retry_delay=0.0,
        )
        await watcher.start()
        try:
            _write(team / "inboxes" / "alice.json", [_msg("lead", "unnoticed")])
            assert await wait_for(lambda: len(received) == 1)
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_debounce(self, watcher, received, teams_dir, watch_factory):
        team = make_team(teams_dir, "alpha", ["alice"])
        inbox = team / "inboxes" / "alice.json"
        await watcher.start()
        _write(inbox, [_msg("lead", "too late")])
        watch_factory.fire(inbox)
        await watcher.stop()
        await asyncio.sleep(0.05)
        assert received == []


class TestPathWatcher:
    @pytest.mark.asyncio
    async def test_reports_file_creation_and_change(self, tmp_path):
        target = tmp_path / "inbox.json"
        changes = []
        watcher = PathWatcher(target, changes.append, interval=0.01)
        try:
            target.write_text("[]")
            assert await wait_for(lambda: len(changes) == 1)
            target.write_text("[1, 2, 3]")
            assert await wait_for(lambda: len(changes) == 2)
            assert changes == [target, target]
        finally:
            watcher.close()

    @pytest.mark.asyncio
    async def test_reports_new_directory_entries(self, tmp_path):
        changes = []
        watcher = PathWatcher(tmp_path, changes.append, interval=0.01)
        try:
            (tmp_path / "team-a").mkdir()
            assert await wait_for(lambda: tmp_path / "team-a" in changes)
        finally:
            watcher.close()

    @pytest.mark.asyncio
    async def test_stat_error_ends_watch_and_is_reported(self, tmp_path):
        errors = []
        watcher = PathWatcher(
            tmp_path, lambda path: None, lambda path, e: errors.append((path, e)), interval=0.01
        )
        try:
            with patch.object(watcher, "_take_snapshot", side_effect=PermissionError("denied")):
                assert await wait_for(lambda: len(errors) == 1)
                await asyncio.sleep(0.05)
            assert len(errors) == 1
            assert errors[0][0] == tmp_path
            assert isinstance(errors[0][1], PermissionError)
        finally:
            watcher.close()

    @pytest.mark.asyncio
    async def test_missing_file_is_not_an_error(self, tmp_path):
        errors = []
        watcher = PathWatcher(
            tmp_path / "later.json", lambda path: None,
            lambda path, e: errors.append(e), interval=0.01,
        )
        try:
            await asyncio.sleep(0.05)
            assert errors == []
        finally:
            watcher.close()
