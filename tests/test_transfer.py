"""Tests for sshmirror/transfer.py — TransferQueue and remote tree helpers."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from sshmirror.connection import LazySession, TransportError
from sshmirror.context import ConnectionContext
from sshmirror.status import StatusTracker
from sshmirror.transfer import (
    SUPERSEDED_NOTE,
    TEMP_MARKER,
    ProgressThrottle,
    QueueAction,
    QueueItem,
    QueuePhase,
    TransferQueue,
    ensure_remote_dir,
    remove_remote_path,
    upload_atomic,
)
from sshmirror.verifier import HashMismatchError, Verifier

from conftest import FakeSession, factory_for


class RecordingTracker(StatusTracker):
    """Keeps every (item id, phase) the queue records, in order."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(connection_id)
        self.transitions: list[tuple[int, QueuePhase]] = []

    def record_item(self, item: QueueItem) -> None:
        if not self.transitions or self.transitions[-1] != (item.id, item.phase):
            self.transitions.append((item.id, item.phase))
        super().record_item(item)

    def phases_of(self, item: QueueItem) -> list[QueuePhase]:
        return [phase for item_id, phase in self.transitions if item_id == item.id]


class GatedVerifier:
    """Verifier stand-in that parks in verify_upload until released."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[str] = []

    async def verify_upload(self, session, local_path: str, remote_path: str) -> None:
        self.calls.append(local_path)
        self.started.set()
        await self.release.wait()


def _write(root: Path, name: str, data: bytes = b"hello world") -> Path:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture()
def tracker(ctx: ConnectionContext) -> RecordingTracker:
    return RecordingTracker(ctx.id)


@pytest.fixture()
def queue(
    ctx: ConnectionContext, sessions: LazySession, tracker: RecordingTracker
) -> TransferQueue:
    return TransferQueue(
        ctx, sessions, tracker, verifier=Verifier(ctx.verify_mode), progress_interval=0.0
    )


# ---------------------------------------------------------------------------
# QueueItem unit tests
# ---------------------------------------------------------------------------


class TestQueueItem:
    def test_initial_phase_is_queued(self) -> None:
        item = QueueItem(path="/local/a.txt", action=QueueAction.UPLOAD)
        assert item.phase is QueuePhase.QUEUED
        assert item.error is None and item.note is None

    def test_progress_fraction_zero_when_no_bytes(self) -> None:
        item = QueueItem(path="/local/a.txt", action=QueueAction.UPLOAD, bytes_total=1024)
        assert item.progress_fraction == 0.0

    def test_progress_fraction_complete(self) -> None:
        item = QueueItem(path="/local/a.txt", action=QueueAction.UPLOAD, bytes_total=1024)
        item.bytes_sent = 1024
        assert item.progress_fraction == pytest.approx(1.0)

    def test_progress_fraction_zero_size_file(self) -> None:
        """Zero-size files should not cause a ZeroDivisionError."""
        item = QueueItem(path="/local/empty", action=QueueAction.UPLOAD, bytes_total=0)
        assert item.progress_fraction == 0.0
        item.phase = QueuePhase.COMPLETE
        assert item.progress_fraction == 1.0

    def test_ids_are_monotonic(self) -> None:
        items = [QueueItem(path=f"/f{i}", action=QueueAction.UPLOAD) for i in range(5)]
        ids = [item.id for item in items]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_annotate_appends(self) -> None:
        item = QueueItem(path="/f", action=QueueAction.UPLOAD)
        item.annotate("Remote won.")
        item.annotate(SUPERSEDED_NOTE)
        assert item.note == f"Remote won. {SUPERSEDED_NOTE}"


# ---------------------------------------------------------------------------
# ProgressThrottle
# ---------------------------------------------------------------------------


class TestProgressThrottle:
    def _make(self, total: int = 100):
        now = [0.0]
        seen: list[int] = []
        throttle = ProgressThrottle(total, seen.append, interval=0.2, clock=lambda: now[0])
        return throttle, seen, now

    def test_first_offset_emitted(self) -> None:
        throttle, seen, _ = self._make()
        throttle(10)
        assert seen == [10]

    def test_offsets_within_interval_dropped(self) -> None:
        throttle, seen, now = self._make()
        throttle(10)
        now[0] = 0.1
        throttle(20)
        now[0] = 0.25
        throttle(30)
        assert seen == [10, 30]

    def test_final_offset_always_emitted(self) -> None:
        throttle, seen, now = self._make()
        throttle(10)
        now[0] = 0.05
        throttle(100)
        assert seen == [10, 100]

    def test_flush_emits_unreported_offset_once(self) -> None:
        throttle, seen, now = self._make()
        throttle(10)
        now[0] = 0.05
        throttle(50)
        throttle.flush(50)
        throttle.flush(50)
        assert seen == [10, 50]

    def test_callback_error_is_contained(self) -> None:
        def _boom(sent: int) -> None:
            raise RuntimeError("ui gone")

        throttle = ProgressThrottle(10, _boom)
        throttle(10)  # must not raise


# ---------------------------------------------------------------------------
# Remote tree helpers
# ---------------------------------------------------------------------------


class TestEnsureRemoteDir:
    @pytest.mark.asyncio
    async def test_creates_missing_ancestors(self, fake_session: FakeSession) -> None:
        await ensure_remote_dir(fake_session, "/remote/a/b/c")
        assert {"/remote/a", "/remote/a/b", "/remote/a/b/c"} <= fake_session.dirs

    @pytest.mark.asyncio
    async def test_tolerates_existing_directory(self, fake_session: FakeSession) -> None:
        fake_session.add_dir("/remote/a")
        await ensure_remote_dir(fake_session, "/remote/a")
        assert "/remote/a" in fake_session.dirs

    @pytest.mark.asyncio
    async def test_file_in_the_way_raises(self, fake_session: FakeSession) -> None:
        fake_session.add_file("/remote/a", b"x")
        with pytest.raises(OSError):
            await ensure_remote_dir(fake_session, "/remote/a/b")


class TestUploadAtomic:
    @pytest.mark.asyncio
    async def test_publishes_without_leaving_temp(
        self, fake_session: FakeSession, local_root: Path
    ) -> None:
        src = _write(local_root, "a.txt", b"payload")
        sent = await upload_atomic(fake_session, str(src), "/remote/sub/a.txt")
        assert sent == 7
        assert fake_session.files["/remote/sub/a.txt"] == b"payload"
        assert not [p for p in fake_session.files if TEMP_MARKER in p]
        # the final path is only ever touched by the rename
        assert all(TEMP_MARKER in p for p in fake_session.ops("write_stream"))

    @pytest.mark.asyncio
    async def test_failure_before_rename_keeps_target_and_removes_temp(
        self, fake_session: FakeSession, local_root: Path
    ) -> None:
        fake_session.add_file("/remote/a.txt", b"old contents")
        src = _write(local_root, "a.txt", b"new contents")
        fake_session.fail_next("rename", OSError("connection reset mid-rename"))

        with pytest.raises(OSError, match="mid-rename"):
            await upload_atomic(fake_session, str(src), "/remote/a.txt")

        assert fake_session.files["/remote/a.txt"] == b"old contents"
        assert not [p for p in fake_session.files if TEMP_MARKER in p]
        assert len(fake_session.ops("unlink")) == 1

    @pytest.mark.asyncio
    async def test_write_failure_propagates(
        self, fake_session: FakeSession, local_root: Path
    ) -> None:
        src = _write(local_root, "a.txt")
        fake_session.fail_next("write_stream", TransportError("broken pipe"))
        with pytest.raises(TransportError):
            await upload_atomic(fake_session, str(src), "/remote/a.txt")
        assert "/remote/a.txt" not in fake_session.files


class TestRemoveRemotePath:
    @pytest.mark.asyncio
    async def test_removes_tree_bottom_up(self, fake_session: FakeSession) -> None:
        fake_session.add_file("/remote/d/one.txt", b"1")
        fake_session.add_file("/remote/d/sub/two.txt", b"2")
        fake_session.add_dir("/remote/d/sub/empty")

        await remove_remote_path(fake_session, "/remote/d")

        assert not any(p.startswith("/remote/d") for p in fake_session.files)
        assert not any(p.startswith("/remote/d") for p in fake_session.dirs)
        rmdirs = fake_session.ops("rmdir")
        assert rmdirs.index("/remote/d/sub/empty") < rmdirs.index("/remote/d/sub")
        assert rmdirs[-1] == "/remote/d"

    @pytest.mark.asyncio
    async def test_missing_path_is_noop(self, fake_session: FakeSession) -> None:
        await remove_remote_path(fake_session, "/remote/nothing")
        assert fake_session.calls["unlink"] == 0
        assert fake_session.calls["rmdir"] == 0


# ---------------------------------------------------------------------------
# TransferQueue tests
# ---------------------------------------------------------------------------


class TestTransferQueue:
    @pytest.mark.asyncio
    async def test_upload_walks_phases_and_verifies(
        self, queue: TransferQueue, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        src = _write(local_root, "src/main.py", b"print('hi')\n")
        item = queue.enqueue_upload(src)
        await queue.join()

        assert tracker.phases_of(item) == [
            QueuePhase.QUEUED,
            QueuePhase.TRANSFERRING,
            QueuePhase.VERIFYING,
            QueuePhase.COMPLETE,
        ]
        assert fake_session.files["/remote/src/main.py"] == b"print('hi')\n"
        assert fake_session.calls["exec"] == 1
        assert item.bytes_sent == item.bytes_total == 12
        status = tracker.status
        assert status.processed == 1 and status.failed == 0
        assert status.last_phase == "complete"
        assert status.pending == 0 and status.active == 0

    @pytest.mark.asyncio
    async def test_vanished_file_is_skipped(
        self, queue: TransferQueue, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        item = queue.enqueue_upload(local_root / "gone.txt")
        await queue.join()
        assert item.phase is QueuePhase.COMPLETE
        assert "Skipped" in item.note
        assert fake_session.calls["write_stream"] == 0
        assert tracker.status.processed == 0 and tracker.status.failed == 0

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_queue_continues(
        self, queue: TransferQueue, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        first = _write(local_root, "first.txt")
        second = _write(local_root, "second.txt")
        fake_session.fail_next("write_stream", PermissionError("Permission denied"))

        bad = queue.enqueue_upload(first)
        good = queue.enqueue_upload(second)
        await queue.join()

        assert bad.phase is QueuePhase.FAILED
        assert "Permission denied" in bad.error
        assert good.phase is QueuePhase.COMPLETE
        assert tracker.status.failed == 1
        assert tracker.status.processed == 1
        assert [i.id for i in tracker.status.recent] == [good.id, bad.id]

    @pytest.mark.asyncio
    async def test_items_run_strictly_in_enqueue_order(
        self, queue: TransferQueue, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        a = _write(local_root, "a.txt")
        c = _write(local_root, "c.txt")
        fake_session.add_file("/remote/b.txt", b"bbb", mtime=0.0)

        item_a = queue.enqueue_upload(a)
        item_b = queue.enqueue_delete(local_root / "b.txt")
        item_c = queue.enqueue_upload(c)
        await queue.join()

        active = [(i, p) for i, p in tracker.transitions if p is not QueuePhase.QUEUED]
        assert active == [
            (item_a.id, QueuePhase.TRANSFERRING),
            (item_a.id, QueuePhase.VERIFYING),
            (item_a.id, QueuePhase.COMPLETE),
            (item_b.id, QueuePhase.DELETING),
            (item_b.id, QueuePhase.COMPLETE),
            (item_c.id, QueuePhase.TRANSFERRING),
            (item_c.id, QueuePhase.VERIFYING),
            (item_c.id, QueuePhase.COMPLETE),
        ]
        assert "/remote/b.txt" not in fake_session.files

    @pytest.mark.asyncio
    async def test_superseded_save_is_annotated(
        self, ctx: ConnectionContext, sessions: LazySession,
        tracker: RecordingTracker, local_root: Path,
    ) -> None:
        verifier = GatedVerifier()
        queue = TransferQueue(ctx, sessions, tracker, verifier=verifier, progress_interval=0.0)
        path = _write(local_root, "notes.md", b"v1")

        first = queue.enqueue_upload(path)
        await verifier.started.wait()
        assert first.phase is QueuePhase.VERIFYING

        path.write_bytes(b"v2")
        second = queue.enqueue_upload(path)
        assert first.superseded
        verifier.release.set()
        await queue.join()

        assert first.phase is QueuePhase.COMPLETE
        assert SUPERSEDED_NOTE in first.note
        assert second.phase is QueuePhase.COMPLETE
        assert not second.superseded and second.note is None
        assert {first.id, second.id} <= {i.id for i in tracker.status.recent}
        assert verifier.calls == [str(path), str(path)]

    @pytest.mark.asyncio
    async def test_queued_duplicate_is_not_superseded(
        self, ctx: ConnectionContext, sessions: LazySession,
        tracker: RecordingTracker, local_root: Path,
    ) -> None:
        verifier = GatedVerifier()
        queue = TransferQueue(ctx, sessions, tracker, verifier=verifier, progress_interval=0.0)
        other = _write(local_root, "other.txt")
        path = _write(local_root, "notes.md")

        queue.enqueue_upload(other)
        waiting = queue.enqueue_upload(path)
        queue.enqueue_upload(path)
        verifier.release.set()
        await queue.join()

        assert not waiting.superseded

    @pytest.mark.asyncio
    async def test_remote_newer_is_pulled_instead(
        self, ctx: ConnectionContext, sessions: LazySession, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        pull = AsyncMock()
        queue = TransferQueue(ctx, sessions, tracker, pull=pull, progress_interval=0.0)
        path = _write(local_root, "cfg.ini", b"local")
        fake_session.add_file("/remote/cfg.ini", b"remote", mtime=time.time() + 3600)

        item = queue.enqueue_upload(path)
        await queue.join()

        pull.assert_awaited_once()
        assert pull.await_args.args[1] == "/remote/cfg.ini"
        assert "Remote won" in item.note
        assert fake_session.files["/remote/cfg.ini"] == b"remote"
        assert fake_session.calls["write_stream"] == 0

    @pytest.mark.asyncio
    async def test_published_file_carries_local_mtime(
        self, queue: TransferQueue, fake_session: FakeSession, local_root: Path,
    ) -> None:
        path = _write(local_root, "page.html", b"<p>")
        os.utime(path, (1_600_000_000.0, 1_600_000_000.0))

        queue.enqueue_upload(path)
        await queue.join()

        assert fake_session.mtimes["/remote/page.html"] == 1_600_000_000.0
        assert fake_session.ops("utime") == ["/remote/page.html"]

    @pytest.mark.asyncio
    async def test_save_during_transfer_is_not_clobbered(
        self, ctx: ConnectionContext, sessions: LazySession, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        pull = AsyncMock()
        queue = TransferQueue(
            ctx, sessions, tracker, verifier=Verifier(ctx.verify_mode),
            pull=pull, progress_interval=0.0,
        )
        path = _write(local_root, "draft.txt", b"v1-old-content")
        later: list[QueueItem] = []

        async def _save_again(_: str) -> None:
            if later:
                return
            path.write_bytes(b"v2-newest-edit!!")
            older = time.time() - 2
            os.utime(path, (older, older))
            later.append(queue.enqueue_upload(path))

        fake_session.hooks["rename"] = _save_again
        first = queue.enqueue_upload(path)
        await queue.join()

        assert first.superseded
        pull.assert_not_awaited()
        assert later[0].phase is QueuePhase.COMPLETE
        assert later[0].note is None
        assert path.read_bytes() == b"v2-newest-edit!!"
        assert fake_session.files["/remote/draft.txt"] == b"v2-newest-edit!!"

    @pytest.mark.asyncio
    async def test_foreign_change_after_publish_still_wins(
        self, ctx: ConnectionContext, sessions: LazySession, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        pull = AsyncMock()
        queue = TransferQueue(ctx, sessions, tracker, pull=pull, progress_interval=0.0)
        path = _write(local_root, "shared.txt", b"mine")
        queue.enqueue_upload(path)
        await queue.join()

        fake_session.add_file("/remote/shared.txt", b"theirs", mtime=time.time() + 3600)
        item = queue.enqueue_upload(path)
        await queue.join()

        pull.assert_awaited_once()
        assert "Remote won" in item.note

    @pytest.mark.asyncio
    async def test_forced_upload_ignores_remote_mtime(
        self, ctx: ConnectionContext, sessions: LazySession, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        pull = AsyncMock()
        queue = TransferQueue(ctx, sessions, tracker, pull=pull, progress_interval=0.0)
        path = _write(local_root, "cfg.ini", b"local")
        fake_session.add_file("/remote/cfg.ini", b"remote", mtime=time.time() + 3600)

        queue.enqueue_upload(path, force=True)
        await queue.join()

        pull.assert_not_awaited()
        assert fake_session.files["/remote/cfg.ini"] == b"local"

    @pytest.mark.asyncio
    async def test_delete_outside_root_dropped(
        self, queue: TransferQueue, fake_session: FakeSession, tmp_path: Path,
    ) -> None:
        item = queue.enqueue_delete(tmp_path / "elsewhere" / "x.txt")
        await queue.join()
        assert item.phase is QueuePhase.COMPLETE
        assert fake_session.calls["stat"] == 0
        assert fake_session.calls["unlink"] == 0

    @pytest.mark.asyncio
    async def test_delete_directory_recursively(
        self, queue: TransferQueue, fake_session: FakeSession, local_root: Path,
    ) -> None:
        fake_session.add_file("/remote/build/out/app.bin", b"\x00\x01")
        fake_session.add_file("/remote/build/log.txt", b"ok")
        item = queue.enqueue_delete(local_root / "build")
        await queue.join()
        assert item.phase is QueuePhase.COMPLETE
        assert "/remote/build" not in fake_session.dirs
        assert not fake_session.files

    @pytest.mark.asyncio
    async def test_hash_mismatch_fails_item(
        self, queue: TransferQueue, tracker: RecordingTracker,
        fake_session: FakeSession, local_root: Path,
    ) -> None:
        path = _write(local_root, "a.txt")
        fake_session.exec_handler = lambda command: "0" * 64 + "  -"
        item = queue.enqueue_upload(path)
        await queue.join()
        assert item.phase is QueuePhase.FAILED
        assert "hash mismatch" in item.error
        assert tracker.status.last_error == item.error

    @pytest.mark.asyncio
    async def test_transport_error_reopens_session_for_next_item(
        self, ctx: ConnectionContext, tracker: RecordingTracker, local_root: Path,
    ) -> None:
        broken, healthy = FakeSession(), FakeSession()
        for session in (broken, healthy):
            session.add_dir("/remote")
        broken.fail_next("write_stream", TransportError("socket closed"))
        factory = factory_for(broken, healthy)
        queue = TransferQueue(ctx, LazySession(ctx, factory), tracker, progress_interval=0.0)

        first = queue.enqueue_upload(_write(local_root, "a.txt"))
        second = queue.enqueue_upload(_write(local_root, "b.txt"))
        await queue.join()

        assert first.phase is QueuePhase.FAILED
        assert second.phase is QueuePhase.COMPLETE
        assert factory.opened == [broken, healthy]
        assert broken.closed
        assert "/remote/b.txt" in healthy.files

    @pytest.mark.asyncio
    async def test_stop_drops_pending_and_finishes_active(
        self, ctx: ConnectionContext, sessions: LazySession,
        tracker: RecordingTracker, local_root: Path,
    ) -> None:
        verifier = GatedVerifier()
        queue = TransferQueue(ctx, sessions, tracker, verifier=verifier, progress_interval=0.0)
        active = queue.enqueue_upload(_write(local_root, "1.txt"))
        queue.enqueue_upload(_write(local_root, "2.txt"))
        queue.enqueue_upload(_write(local_root, "3.txt"))
        await verifier.started.wait()

        stopping = asyncio.create_task(queue.stop())
        await asyncio.sleep(0)
        assert not stopping.done()
        verifier.release.set()
        dropped = await stopping

        assert len(dropped) == 2
        assert active.phase is QueuePhase.COMPLETE
        assert queue.pending_count == 0 and queue.active_count == 0
        assert [i.id for i in tracker.status.recent] == [active.id]
        assert not queue.has_pending(str(local_root / "2.txt"))

    @pytest.mark.asyncio
    async def test_has_pending_tracks_queued_paths(
        self, ctx: ConnectionContext, sessions: LazySession,
        tracker: RecordingTracker, local_root: Path,
    ) -> None:
        verifier = GatedVerifier()
        queue = TransferQueue(ctx, sessions, tracker, verifier=verifier, progress_interval=0.0)
        path = _write(local_root, "a.txt")
        queue.enqueue_upload(path)
        assert queue.has_pending(str(path))
        verifier.release.set()
        await queue.join()
        assert not queue.has_pending(str(path))
