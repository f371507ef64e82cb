"""Tests for the checkpoint store - atomic saves, history, sessions."""

import asyncio
import json
import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from ideaforge.errors import CheckpointWriteError, OrchestrationIOError
from ideaforge.schemas.checkpoint import CheckpointStatus
from ideaforge.schemas.state import ExecutionState
from ideaforge.storage.checkpoint_store import CheckpointStore, derive_session_id

# === HELPER FUNCTIONS ===


def create_test_state(session_id: str = "sess1", nodes: list[str] | None = None) -> ExecutionState:
    """Create a state with results recorded for `nodes`."""
    state = ExecutionState.create("docs/idea.org", session_id=session_id, content="* Idea\nBuild a thing")
    for node in nodes or []:
        state.record_result(node, {"node": node, "items": [1, 2, 3]})
        state.execution_path.append(node)
    return state


# === CHECKPOINT TESTS ===


class TestSaveAndLoad:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        state = create_test_state(nodes=["A", "B"])
        state.record_error("B", "reddit rate limited")

        await store.save("sess1", state, position="B", next_node="C")
        checkpoint = await store.load("sess1")

        assert checkpoint is not None
        assert checkpoint.state == state
        assert checkpoint.position == "B"
        assert checkpoint.next_node == "C"
        assert checkpoint.status == CheckpointStatus.RUNNING

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        assert await store.load("nope") is None

    @pytest.mark.asyncio
    async def test_corrupt_checkpoint_degrades_to_none(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        path = store.get_checkpoint_path("sess1")
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")

        assert await store.load("sess1") is None

    @pytest.mark.asyncio
    async def test_snapshot_isolated_from_later_mutation(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        state = create_test_state(nodes=["A"])
        await store.save("sess1", state, position="A")

        state.record_result("B", "later")
        checkpoint = await store.load("sess1")

        assert checkpoint.state.completed_nodes == ["A"]

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        await store.save("sess1", create_test_state(nodes=["A"]), position="A")

        files = os.listdir(store.get_session_path("sess1"))
        assert files == ["checkpoint.json"]

    @pytest.mark.asyncio
    async def test_write_failure_raises_checkpoint_write_error(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = CheckpointStore(blocker)

        with pytest.raises(CheckpointWriteError) as exc_info:
            await store.save("sess1", create_test_state(), position=None)

        assert isinstance(exc_info.value, OSError)
        assert exc_info.value.session_id == "sess1"

    @pytest.mark.asyncio
    async def test_concurrent_saves_leave_valid_checkpoint(self, tmp_path: Path):
        store = CheckpointStore(tmp_path, max_history=0)
        states = [create_test_state(nodes=[f"N{i}"]) for i in range(5)]

        await asyncio.gather(*(store.save("sess1", s, position=f"N{i}") for i, s in enumerate(states)))

        checkpoint = await store.load("sess1")
        assert checkpoint.position in {f"N{i}" for i in range(5)}
        data = json.loads(store.get_checkpoint_path("sess1").read_text())
        assert data["session_id"] == "sess1"


class TestHistory:
    @pytest.mark.asyncio
    async def test_previous_checkpoints_archived(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        for position in ["A", "B", "C"]:
            await store.save("sess1", create_test_state(nodes=[position]), position=position)

        history = await store.history("sess1")

        assert [h.position for h in history] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_history_bounded(self, tmp_path: Path):
        store = CheckpointStore(tmp_path, max_history=2)
        for position in ["A", "B", "C", "D", "E"]:
            await store.save("sess1", create_test_state(nodes=[position]), position=position)

        history = await store.history("sess1")

        assert [h.position for h in history] == ["C", "D"]

    @pytest.mark.asyncio
    async def test_history_disabled(self, tmp_path: Path):
        store = CheckpointStore(tmp_path, max_history=0)
        await store.save("sess1", create_test_state(), position="A")
        await store.save("sess1", create_test_state(), position="B")

        assert await store.history("sess1") == []

    @pytest.mark.asyncio
    async def test_prune_removes_old_history(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        await store.save("sess1", create_test_state(), position="A")
        await store.save("sess1", create_test_state(), position="B")

        archived = next(store.get_history_dir("sess1").glob("*.json"))
        data = json.loads(archived.read_text())
        data["created_at"] = (datetime.now() - timedelta(days=30)).isoformat()
        archived.write_text(json.dumps(data))

        assert await store.prune("sess1", max_age_days=7) == 1
        assert await store.history("sess1") == []
        assert await store.exists("sess1")


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_deletes_everything(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        await store.save("sess1", create_test_state(), position="A")
        await store.save("sess1", create_test_state(), position="B")

        assert await store.clear("sess1") is True
        assert await store.load("sess1") is None
        assert await store.clear("sess1") is False


# === SESSION TESTS ===


class TestSessions:
    def test_derive_session_id_normalises_path(self):
        assert derive_session_id("Docs\\Idea.org") == derive_session_id("docs/idea.org")
        assert len(derive_session_id("docs/idea.org")) == 16

    def test_salt_changes_id(self):
        assert derive_session_id("docs/idea.org", salt="x") != derive_session_id("docs/idea.org")

    @pytest.mark.asyncio
    async def test_same_document_same_session(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        first = await store.session_for("docs/idea.org")
        second = await CheckpointStore(tmp_path).session_for("docs/idea.org")

        assert first.session_id == second.session_id
        assert first.has_checkpoint is False

    @pytest.mark.asyncio
    async def test_has_checkpoint_reflects_store(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        session = await store.session_for("docs/idea.org")
        await store.save(session.session_id, create_test_state(session.session_id), position="A")

        session = await store.session_for("docs/idea.org")

        assert session.has_checkpoint is True
        assert session.can_refine is True

    @pytest.mark.asyncio
    async def test_force_new_mints_fresh_id_and_keeps_old_checkpoint(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        old = await store.session_for("docs/idea.org")
        await store.save(old.session_id, create_test_state(old.session_id), position="A")

        fresh = await store.session_for("docs/idea.org", force_new=True)

        assert fresh.session_id != old.session_id
        assert fresh.has_checkpoint is False
        assert await store.exists(old.session_id)

        # The forced session is what later runs reuse
        again = await CheckpointStore(tmp_path).session_for("docs/idea.org")
        assert again.session_id == fresh.session_id

    @pytest.mark.asyncio
    async def test_forget_document_restores_default_id(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        await store.session_for("docs/idea.org", force_new=True)

        await store.forget_document("docs/idea.org")
        session = await store.session_for("docs/idea.org")

        assert session.session_id == derive_session_id("docs/idea.org")

    @pytest.mark.asyncio
    async def test_corrupt_index_moved_aside_before_rewrite(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        await store.session_for("docs/a.org", force_new=True)
        await store.session_for("docs/b.org", force_new=True)
        good = store.index_path.read_text(encoding="utf-8")
        store.index_path.write_text(good[: len(good) // 2], encoding="utf-8")

        fresh = await store.session_for("docs/c.org", force_new=True)

        backups = list(tmp_path.glob("sessions.json.corrupt-*"))
        assert len(backups) == 1
        assert backups[0].read_text(encoding="utf-8") == good[: len(good) // 2]
        assert json.loads(store.index_path.read_text(encoding="utf-8"))["sessions"] == {
            "docs/c.org": fresh.session_id
        }

    @pytest.mark.asyncio
    async def test_unreadable_index_is_an_error(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        store.index_path.mkdir(parents=True)

        with pytest.raises(OrchestrationIOError, match="Cannot read session index"):
            await store.session_for("docs/idea.org", force_new=True)

        assert store.index_path.is_dir()
