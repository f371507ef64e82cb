from ideaforge.schemas.checkpoint import Checkpoint, CheckpointStatus, CheckpointSummary
from ideaforge.schemas.research import ResearchHit, ResearchRequest, ResearchResult
from ideaforge.schemas.session import Session, SessionInfo
from ideaforge.schemas.state import ErrorKind, ExecutionState, NodeResultEntry, StateError

__all__ = [
    "Checkpoint",
    "CheckpointStatus",
    "CheckpointSummary",
    "ErrorKind",
    "ExecutionState",
    "NodeResultEntry",
    "ResearchHit",
    "ResearchRequest",
    "ResearchResult",
    "Session",
    "SessionInfo",
    "StateError",
]
