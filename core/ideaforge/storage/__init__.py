from ideaforge.storage.checkpoint_store import CheckpointStore, derive_session_id

__all__ = ["CheckpointStore", "derive_session_id"]
