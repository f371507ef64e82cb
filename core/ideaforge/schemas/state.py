"""
Execution State Schema - the payload threaded through the pipeline graph.

The state is created by the executor at the start of a fresh run, or
reconstructed from a checkpoint when resuming/refining. Node results are
kept in a log keyed by node name: re-running a node replaces its own entry
and never touches the entries of other nodes.
"""

import hashlib
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def fingerprint_content(content: str) -> str:
    """Content fingerprint used to detect document changes between runs."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ErrorKind(StrEnum):
    """Source of a non-fatal error recorded in the state."""

    RESEARCH = "research"  # Research bridge degraded (rate limited / provider down)
    NODE = "node"  # Node reported a recoverable problem


class StateError(BaseModel):
    """A non-fatal problem recorded during a run."""

    node: str
    message: str
    kind: ErrorKind = ErrorKind.NODE
    iteration: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"extra": "allow"}


class NodeResultEntry(BaseModel):
    """Output of one node, as last produced."""

    node: str
    output: Any = None
    iteration: int = 0
    completed_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"extra": "allow"}


class ExecutionState(BaseModel):
    """
    Mutable state for one session's pipeline execution.

    `results` preserves first-insertion order (dicts are ordered), so the
    log reads in pipeline order even after refinement overwrites entries.
    """

    session_id: str
    document_key: str
    document_content: str | None = None
    document_fingerprint: str | None = None

    results: dict[str, NodeResultEntry] = Field(default_factory=dict)
    iteration: int = 0
    errors: list[StateError] = Field(default_factory=list)
    current_node: str | None = None
    execution_path: list[str] = Field(default_factory=list)  # Every node run, across runs

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        document_key: str,
        session_id: str | None = None,
        content: str | None = None,
    ) -> "ExecutionState":
        """Create a fresh state for a first analysis run."""
        return cls(
            session_id=session_id or uuid.uuid4().hex[:16],
            document_key=document_key,
            document_content=content,
            document_fingerprint=fingerprint_content(content) if content is not None else None,
        )

    def record_result(self, node: str, output: Any) -> NodeResultEntry:
        """Store (or overwrite) the result for `node`."""
        entry = NodeResultEntry(node=node, output=output, iteration=self.iteration)
        self.results[node] = entry
        return entry

    def get_result(self, node: str, default: Any = None) -> Any:
        """Return the output recorded for `node`, or `default`."""
        entry = self.results.get(node)
        return entry.output if entry is not None else default

    def has_result(self, node: str) -> bool:
        return node in self.results

    def record_error(
        self,
        node: str,
        message: str,
        kind: ErrorKind = ErrorKind.NODE,
    ) -> StateError:
        """Append a non-fatal error."""
        error = StateError(node=node, message=message, kind=kind, iteration=self.iteration)
        self.errors.append(error)
        return error

    def update_document(self, content: str) -> bool:
        """
        Replace the document content.

        Returns:
            True if the content fingerprint changed
        """
        new_fingerprint = fingerprint_content(content)
        changed = self.document_fingerprint is not None and new_fingerprint != self.document_fingerprint
        self.document_content = content
        self.document_fingerprint = new_fingerprint
        return changed

    @property
    def completed_nodes(self) -> list[str]:
        return list(self.results.keys())

    def result_log(self) -> dict[str, Any]:
        """Plain {node: output} view of the result log."""
        return {name: entry.output for name, entry in self.results.items()}
