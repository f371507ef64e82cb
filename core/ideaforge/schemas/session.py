"""Session schemas - binding between a document and its checkpoint history."""

from pydantic import BaseModel


class Session(BaseModel):
    """
    A document's session.

    The same document key maps to the same session id across process
    restarts unless a fresh session was forced.
    """

    session_id: str
    document_key: str
    has_checkpoint: bool = False
    forced_new: bool = False

    @property
    def can_refine(self) -> bool:
        """Refinement needs a completed prior analysis to start from."""
        return self.has_checkpoint


class SessionInfo(BaseModel):
    """Session summary exposed to callers."""

    session_id: str
    document_key: str
    has_checkpoint: bool
    last_position: str | None = None
    status: str | None = None
    iteration: int = 0
    updated_at: str | None = None
