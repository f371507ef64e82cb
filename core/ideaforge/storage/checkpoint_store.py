"""
Checkpoint Store - Durable per-session checkpoints with atomic writes.

Directory structure:
    {base_path}/
        sessions.json                              # document_key -> session_id
        sessions/{session_id}/
            checkpoint.json                        # Current checkpoint
            history/{checkpoint_id}.json           # Prior checkpoints (audit)

Saves and loads of one session id are serialised by a per-session lock;
different sessions never contend.
"""

import asyncio
import hashlib
import logging
import shutil
import uuid
from datetime import datetime, timedelta
from pathlib import Path

from ideaforge.errors import CheckpointWriteError, OrchestrationIOError
from ideaforge.schemas.checkpoint import (
    Checkpoint,
    CheckpointStatus,
    CheckpointSummary,
    SessionIndex,
)
from ideaforge.schemas.session import Session
from ideaforge.schemas.state import ExecutionState
from ideaforge.utils.io import atomic_write

logger = logging.getLogger(__name__)


def derive_session_id(document_key: str, salt: str | None = None) -> str:
    """
    Deterministic session id for a document key.

    Path separators and case are normalised so "Docs\\Idea.org" and
    "docs/idea.org" resolve to the same session.
    """
    normalized = document_key.replace("\\", "/").lower()
    source = f"{normalized}:{salt}" if salt else normalized
    return hashlib.sha256(source.encode("utf-8")).hexdigest()[:16]


class CheckpointStore:
    """
    Manages session checkpoints on disk.

    Example:
        store = CheckpointStore(Path("~/.ideaforge/state").expanduser())
        session = await store.session_for("docs/idea.org")
        await store.save(session.session_id, state, position="requirementsAnalysis")
        checkpoint = await store.load(session.session_id)
    """

    def __init__(self, base_path: Path, max_history: int = 20):
        """
        Initialize checkpoint store.

        Args:
            base_path: Root state directory
            max_history: Prior checkpoints retained per session (0 disables history)
        """
        self.base_path = Path(base_path)
        self.sessions_dir = self.base_path / "sessions"
        self.index_path = self.base_path / "sessions.json"
        self.max_history = max_history
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._index_lock = asyncio.Lock()

    # === PATHS ===

    def get_session_path(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def get_checkpoint_path(self, session_id: str) -> Path:
        return self.get_session_path(session_id) / "checkpoint.json"

    def get_history_dir(self, session_id: str) -> Path:
        return self.get_session_path(session_id) / "history"

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    # === CHECKPOINTS ===

    async def save(
        self,
        session_id: str,
        state: ExecutionState,
        position: str | None,
        next_node: str | None = None,
        status: CheckpointStatus = CheckpointStatus.RUNNING,
    ) -> Checkpoint:
        """
        Atomically replace the current checkpoint for a session.

        The previous checkpoint (if any) is moved into the history directory.

        Returns:
            The checkpoint that was written

        Raises:
            CheckpointWriteError: If the write fails (disk full, permissions, ...)
        """
        checkpoint = Checkpoint.create(
            session_id=session_id,
            state=state,
            position=position,
            next_node=next_node,
            status=status,
        )

        def _write() -> None:
            checkpoint_path = self.get_checkpoint_path(session_id)
            if self.max_history > 0 and checkpoint_path.exists():
                self._archive_current(session_id, checkpoint_path)
            with atomic_write(checkpoint_path) as f:
                f.write(checkpoint.model_dump_json(indent=2))

        async with self._lock_for(session_id):
            try:
                await asyncio.to_thread(_write)
            except OSError as e:
                logger.error(f"Failed to save checkpoint for session {session_id}: {e}")
                raise CheckpointWriteError(session_id, e) from e

        logger.debug(
            f"Saved checkpoint {checkpoint.checkpoint_id} "
            f"(session={session_id}, position={position}, status={status})"
        )
        return checkpoint

    def _archive_current(self, session_id: str, checkpoint_path: Path) -> None:
        """Copy the current checkpoint into history and trim history to max_history."""
        history_dir = self.get_history_dir(session_id)
        history_dir.mkdir(parents=True, exist_ok=True)
        try:
            previous = Checkpoint.model_validate_json(checkpoint_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Not archiving unreadable checkpoint for {session_id}: {e}")
            return
        with atomic_write(history_dir / f"{previous.checkpoint_id}.json") as f:
            f.write(previous.model_dump_json(indent=2))

        archived = sorted(history_dir.glob("*.json"))
        for stale in archived[: max(0, len(archived) - self.max_history)]:
            stale.unlink(missing_ok=True)

    async def load(self, session_id: str) -> Checkpoint | None:
        """
        Load the current checkpoint for a session.

        Read or parse failures are logged and reported as "no checkpoint";
        they never raise.

        Returns:
            Checkpoint, or None if absent or unreadable
        """

        def _read() -> Checkpoint | None:
            checkpoint_path = self.get_checkpoint_path(session_id)
            if not checkpoint_path.exists():
                return None
            try:
                return Checkpoint.model_validate_json(checkpoint_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load checkpoint for session {session_id}: {e}")
                return None

        async with self._lock_for(session_id):
            return await asyncio.to_thread(_read)

    async def exists(self, session_id: str) -> bool:
        """Check whether a session has a current checkpoint."""
        return await asyncio.to_thread(self.get_checkpoint_path(session_id).exists)

    async def history(self, session_id: str) -> list[CheckpointSummary]:
        """
        List archived checkpoints, oldest first (the current one excluded).
        """

        def _scan() -> list[CheckpointSummary]:
            history_dir = self.get_history_dir(session_id)
            if not history_dir.exists():
                return []
            summaries = []
            for path in sorted(history_dir.glob("*.json")):
                try:
                    checkpoint = Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
                except (OSError, ValueError) as e:
                    logger.warning(f"Skipping unreadable checkpoint {path}: {e}")
                    continue
                summaries.append(CheckpointSummary.from_checkpoint(checkpoint))
            return summaries

        async with self._lock_for(session_id):
            return await asyncio.to_thread(_scan)

    async def prune(self, session_id: str, max_age_days: int = 7) -> int:
        """
        Delete archived checkpoints older than max_age_days.

        Returns:
            Number of checkpoints deleted
        """
        cutoff = datetime.now() - timedelta(days=max_age_days)

        def _prune() -> int:
            history_dir = self.get_history_dir(session_id)
            if not history_dir.exists():
                return 0
            deleted = 0
            for path in history_dir.glob("*.json"):
                try:
                    checkpoint = Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
                    created = datetime.fromisoformat(checkpoint.created_at)
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to inspect {path} for pruning: {e}")
                    continue
                if created < cutoff:
                    path.unlink(missing_ok=True)
                    deleted += 1
            return deleted

        async with self._lock_for(session_id):
            deleted = await asyncio.to_thread(_prune)

        if deleted:
            logger.info(f"Pruned {deleted} checkpoints older than {max_age_days} days")
        return deleted

    async def clear(self, session_id: str) -> bool:
        """
        Delete a session's checkpoint and history.

        Returns:
            True if anything was deleted
        """

        def _delete() -> bool:
            session_path = self.get_session_path(session_id)
            if not session_path.exists():
                return False
            shutil.rmtree(session_path)
            return True

        async with self._lock_for(session_id):
            deleted = await asyncio.to_thread(_delete)

        if deleted:
            logger.info(f"Cleared session {session_id}")
        return deleted

    # === SESSIONS ===

    async def session_for(self, document_key: str, force_new: bool = False) -> Session:
        """
        Resolve the session for a document.

        Without force_new the session recorded for the document is reused;
        for a document never seen before the id is derived deterministically
        from the key. With force_new a fresh id is minted and recorded as
        the document's session; the old checkpoint is left untouched.
        """
        async with self._index_lock:
            index = await asyncio.to_thread(self._read_index)

            if force_new:
                session_id = derive_session_id(document_key, salt=uuid.uuid4().hex)
                index.sessions[document_key] = session_id
                await asyncio.to_thread(self._write_index, index)
                logger.info(f"Minted fresh session {session_id} for {document_key}")
            else:
                session_id = index.sessions.get(document_key) or derive_session_id(document_key)

        return Session(
            session_id=session_id,
            document_key=document_key,
            has_checkpoint=await self.exists(session_id),
            forced_new=force_new,
        )

    async def forget_document(self, document_key: str) -> None:
        """Drop the document -> session binding (the next run derives the default id)."""
        async with self._index_lock:
            index = await asyncio.to_thread(self._read_index)
            if index.sessions.pop(document_key, None) is not None:
                await asyncio.to_thread(self._write_index, index)

    def _read_index(self) -> SessionIndex:
        """
        Load sessions.json.

        An unparseable index is moved aside to sessions.json.corrupt-<time>
        and an empty one is used in its place; its bindings survive in the
        backup. An index that cannot be read raises OrchestrationIOError.
        """
        if not self.index_path.exists():
            return SessionIndex()
        try:
            raw = self.index_path.read_text(encoding="utf-8")
        except OSError as e:
            raise OrchestrationIOError(f"Cannot read session index {self.index_path}: {e}") from e
        try:
            return SessionIndex.model_validate_json(raw)
        except ValueError as e:
            backup = self.index_path.with_name(
                f"{self.index_path.name}.corrupt-{datetime.now().strftime('%Y%m%dT%H%M%S%f')}"
            )
            try:
                self.index_path.replace(backup)
            except OSError as move_error:
                raise OrchestrationIOError(
                    f"Session index {self.index_path} is corrupt and could not be moved aside: {move_error}"
                ) from e
            logger.error(f"Session index was corrupt ({e}); moved to {backup.name} and starting empty")
            return SessionIndex()

    def _write_index(self, index: SessionIndex) -> None:
        with atomic_write(self.index_path) as f:
            f.write(index.model_dump_json(indent=2))
