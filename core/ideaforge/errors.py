"""
Error taxonomy for orchestration and the research bridge.

Hierarchy:
    IdeaForgeError
    ├── OrchestrationIOError (also an OSError)
    │   ├── DocumentNotFoundError
    │   ├── DocumentReadError
    │   └── CheckpointWriteError
    ├── NodeFailure            - a pipeline stage failed (fatal to the run)
    ├── AnalysisInterrupted    - user-requested stop (partial state preserved)
    ├── NoCheckpointFound
    │   └── NoPriorAnalysis
    └── ResearchError          - research bridge only, never fatal to a run
        ├── RateLimited
        └── ProviderUnavailable
            └── CircuitOpen

Provider-level classification (used by the retry policy):
    TransientProviderError, ProviderRequestError, RetryExhausted
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ideaforge.schemas.state import ExecutionState


class IdeaForgeError(Exception):
    """Base class for all orchestration errors."""


class OrchestrationIOError(IdeaForgeError, OSError):
    """Document or checkpoint I/O failed."""


class DocumentNotFoundError(OrchestrationIOError):
    """The requested document does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File not found: {path}")


class DocumentReadError(OrchestrationIOError):
    """The document exists but could not be read."""


class CheckpointWriteError(OrchestrationIOError):
    """A checkpoint could not be persisted. Always fatal to the run."""

    def __init__(self, session_id: str, cause: BaseException):
        self.session_id = session_id
        self.cause = cause
        super().__init__(f"Failed to write checkpoint for session {session_id}: {cause}")


class NodeFailure(IdeaForgeError):
    """A pipeline node raised. The last checkpoint remains intact and resumable."""

    def __init__(self, node: str, cause: BaseException):
        self.node = node
        self.cause = cause
        super().__init__(f"Node '{node}' failed: {cause}")


class AnalysisInterrupted(IdeaForgeError):
    """The run stopped at a node boundary because an interrupt was requested."""

    def __init__(self, state: ExecutionState, position: str | None):
        self.state = state
        self.position = position
        where = f"after '{position}'" if position else "before the first node"
        super().__init__(f"Analysis interrupted {where}")


class NoCheckpointFound(IdeaForgeError):
    """No checkpoint exists for the session."""

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or f"No checkpoint found for session {session_id}")


class NoPriorAnalysis(NoCheckpointFound):
    """Refinement was requested for a document that was never analyzed."""

    def __init__(self, document_key: str, session_id: str):
        self.document_key = document_key
        super().__init__(
            session_id,
            f"No previous analysis found for {document_key}. Run 'ideaforge analyze' first.",
        )


class ResearchError(IdeaForgeError):
    """Base class for research bridge failures."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(message)


class RateLimited(ResearchError):
    """No rate limit token became available within the wait timeout."""

    def __init__(self, provider: str, waited: float):
        self.waited = waited
        super().__init__(provider, f"Rate limit for '{provider}' not available after {waited:.2f}s")


class ProviderUnavailable(ResearchError):
    """The provider could not answer (retries exhausted or terminal failure)."""

    def __init__(self, provider: str, cause: BaseException | None = None, attempts: int = 0):
        self.cause = cause
        self.attempts = attempts
        detail = f": {cause}" if cause else ""
        super().__init__(provider, f"Provider '{provider}' unavailable{detail}")


class CircuitOpen(ProviderUnavailable):
    """The provider's circuit breaker is open; the request was refused without a call."""

    def __init__(self, provider: str, retry_in: float = 0.0):
        self.retry_in = retry_in
        super().__init__(provider, RuntimeError(f"circuit open, retry in {retry_in:.1f}s"))


class TransientProviderError(Exception):
    """A provider call failed in a way worth retrying (network, timeout, 5xx, 429)."""

    def __init__(self, message: str, status_code: int | None = None, retry_after: float | None = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class ProviderRequestError(Exception):
    """A provider rejected the request (auth failure, malformed query). Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RetryExhausted(Exception):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")


def describe_error(error: BaseException) -> dict[str, Any]:
    """Flatten an exception into a JSON-friendly dict for events and logs."""
    payload: dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    node = getattr(error, "node", None)
    if node:
        payload["node"] = node
    provider = getattr(error, "provider", None)
    if provider:
        payload["provider"] = provider
    return payload
