"""Document loading and result writing used by the runner."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from ideaforge.errors import DocumentNotFoundError, DocumentReadError
from ideaforge.schemas.state import ExecutionState
from ideaforge.utils.io import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentLoader(Protocol):
    async def read_document(self, path: str) -> str: ...


@runtime_checkable
class ResultWriter(Protocol):
    async def write_results(self, state: ExecutionState, path: str) -> None: ...


class FileDocumentLoader:
    """Reads documents from the local filesystem."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    async def read_document(self, path: str) -> str:
        """
        Raises:
            DocumentNotFoundError: The file does not exist
            DocumentReadError: The file exists but could not be read
        """
        file_path = Path(path).expanduser()

        def _read() -> str:
            if not file_path.is_file():
                raise DocumentNotFoundError(str(path))
            try:
                return file_path.read_text(encoding=self.encoding)
            except (OSError, UnicodeDecodeError) as e:
                raise DocumentReadError(f"Failed to read {path}: {e}") from e

        return await asyncio.to_thread(_read)


class JsonResultWriter:
    """Writes the result log (and recorded errors) as JSON."""

    async def write_results(self, state: ExecutionState, path: str) -> None:
        payload = {
            "session_id": state.session_id,
            "document": state.document_key,
            "iteration": state.iteration,
            "results": state.result_log(),
            "errors": [error.model_dump(mode="json") for error in state.errors],
        }

        def _write() -> None:
            with atomic_write(Path(path).expanduser()) as f:
                json.dump(payload, f, indent=2, default=str)

        await asyncio.to_thread(_write)
        logger.info(f"Wrote results for session {state.session_id} to {path}")
