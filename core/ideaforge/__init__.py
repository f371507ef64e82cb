"""
IdeaForge - checkpointed analysis pipelines with a rate-limited research bridge.

The pieces:
- Graph: pipeline nodes, their dependencies and the executor that runs them
- Storage: durable per-session checkpoints
- Runtime: progress events for interactive callers
- Bridge: cached, rate-limited, retried access to research providers
- Runner: analyze/refine documents end to end
"""

from ideaforge.bridge import ResearchBridge
from ideaforge.errors import (
    AnalysisInterrupted,
    CheckpointWriteError,
    IdeaForgeError,
    NodeFailure,
    NoCheckpointFound,
    NoPriorAnalysis,
    ProviderUnavailable,
    RateLimited,
)
from ideaforge.graph import (
    ExecutionResult,
    ExecutorStatus,
    FunctionNode,
    GraphExecutor,
    GraphSpec,
    NodeContext,
    NodeSpec,
)
from ideaforge.runner import AnalysisRunner, AnalyzeOptions, RefineOptions
from ideaforge.runtime import ProgressBus, ProgressEvent
from ideaforge.schemas import ExecutionState
from ideaforge.storage import CheckpointStore

__all__ = [
    # Graph
    "GraphSpec",
    "NodeSpec",
    "FunctionNode",
    "NodeContext",
    "GraphExecutor",
    "ExecutionResult",
    "ExecutorStatus",
    # State & storage
    "ExecutionState",
    "CheckpointStore",
    # Runtime
    "ProgressBus",
    "ProgressEvent",
    # Bridge
    "ResearchBridge",
    # Runner
    "AnalysisRunner",
    "AnalyzeOptions",
    "RefineOptions",
    # Errors
    "IdeaForgeError",
    "AnalysisInterrupted",
    "CheckpointWriteError",
    "NodeFailure",
    "NoCheckpointFound",
    "NoPriorAnalysis",
    "ProviderUnavailable",
    "RateLimited",
]
