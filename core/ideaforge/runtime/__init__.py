"""Runtime support shared by executions: progress delivery."""

from ideaforge.runtime.progress_bus import (
    ProgressBus,
    ProgressEvent,
    ProgressKind,
    ProgressLevel,
    ProgressListener,
)

__all__ = [
    "ProgressBus",
    "ProgressEvent",
    "ProgressKind",
    "ProgressLevel",
    "ProgressListener",
]
