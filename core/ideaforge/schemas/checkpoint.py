"""
Checkpoint Schema - Durable snapshots of execution state.

A checkpoint is written after every completed node (and when a run ends),
so an interrupted or failed run can be resumed from the last node that
finished, and a refinement can restart from any named node.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from ideaforge.schemas.state import ExecutionState


class CheckpointStatus(StrEnum):
    """Run status at the time the checkpoint was written."""

    RUNNING = "running"  # Node completed, more nodes pending
    COMPLETED = "completed"  # Terminal node completed
    INTERRUPTED = "interrupted"  # Stopped at a node boundary on request
    FAILED = "failed"  # A node raised; positioned at the last good node


class Checkpoint(BaseModel):
    """
    Snapshot of an ExecutionState plus positional metadata.

    `position` is the last node that completed successfully (None if the
    run stopped before any node finished). `next_node` is where a resume
    would pick up.
    """

    checkpoint_id: str
    session_id: str
    created_at: str  # ISO 8601 format

    position: str | None = None
    next_node: str | None = None
    status: CheckpointStatus = CheckpointStatus.RUNNING

    state: ExecutionState

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        session_id: str,
        state: ExecutionState,
        position: str | None,
        next_node: str | None = None,
        status: CheckpointStatus = CheckpointStatus.RUNNING,
    ) -> "Checkpoint":
        """
        Create a new checkpoint with generated ID and timestamp.

        The state is deep-copied so later mutation of the live state never
        leaks into a snapshot that is already written or queued.
        """
        now = datetime.now()
        checkpoint_id = f"cp_{now.strftime('%Y%m%d_%H%M%S_%f')}_{position or 'start'}"
        return cls(
            checkpoint_id=checkpoint_id,
            session_id=session_id,
            created_at=now.isoformat(),
            position=position,
            next_node=next_node,
            status=status,
            state=state.model_copy(deep=True),
        )


class CheckpointSummary(BaseModel):
    """Lightweight checkpoint metadata for history listings."""

    checkpoint_id: str
    created_at: str
    position: str | None = None
    status: CheckpointStatus = CheckpointStatus.RUNNING
    iteration: int = 0

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        """Create summary from full checkpoint."""
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            created_at=checkpoint.created_at,
            position=checkpoint.position,
            status=checkpoint.status,
            iteration=checkpoint.state.iteration,
        )


class SessionIndex(BaseModel):
    """Manifest mapping document keys to their active session ids."""

    sessions: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "allow"}
