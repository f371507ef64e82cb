"""
Analysis Runner - The caller-facing facade over the executor.

Owns one executor, progress bus, research bridge and checkpoint store, and
maps documents to sessions:

    runner = AnalysisRunner(graph, CheckpointStore(state_dir), bridge=bridge)
    runner.subscribe(lambda e: print(f"[{e.node}] {e.message}"))
    result = await runner.analyze("docs/idea.org")
    result = await runner.refine("docs/idea.org", RefineOptions(start_from="moscowCategorization"))
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ideaforge.bridge.research_bridge import ResearchBridge
from ideaforge.config import BridgeConfig, OrchestratorConfig
from ideaforge.errors import AnalysisInterrupted, NoPriorAnalysis
from ideaforge.graph.executor import ExecutionResult, GraphExecutor
from ideaforge.graph.spec import GraphSpec
from ideaforge.observability import set_trace_context
from ideaforge.runner.io import DocumentLoader, FileDocumentLoader
from ideaforge.runtime.progress_bus import (
    ProgressBus,
    ProgressKind,
    ProgressLevel,
    ProgressListener,
)
from ideaforge.schemas.session import SessionInfo
from ideaforge.schemas.state import ExecutionState, StateError
from ideaforge.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


@dataclass
class AnalyzeOptions:
    force_new_session: bool = False
    providers: list[str] | None = None  # Research providers nodes may use (None = all)


@dataclass
class RefineOptions:
    start_from: str | None = None  # Defaults to the graph's refinement entry node
    providers: list[str] | None = None


@dataclass
class AnalysisResult:
    """Outcome of a completed analyze/refine call."""

    session_id: str
    document_key: str
    state: ExecutionState
    nodes_executed: list[str] = field(default_factory=list)
    execution_time_ms: int = 0

    @property
    def iteration(self) -> int:
        return self.state.iteration

    @property
    def results(self) -> dict[str, Any]:
        return self.state.result_log()

    @property
    def errors(self) -> list[StateError]:
        return self.state.errors


class AnalysisRunner:
    """Runs analyses and refinements of documents, one at a time."""

    def __init__(
        self,
        graph: GraphSpec,
        store: CheckpointStore,
        bridge: ResearchBridge | None = None,
        bus: ProgressBus | None = None,
        loader: DocumentLoader | None = None,
    ):
        errors = graph.validate()
        if errors:
            raise ValueError(f"Invalid graph '{graph.id}': {'; '.join(errors)}")
        self.graph = graph
        self.store = store
        self.bridge = bridge
        self.bus = bus or ProgressBus()
        self.loader = loader or FileDocumentLoader()
        self.executor = GraphExecutor(graph, store, bus=self.bus, bridge=bridge)

    @classmethod
    def from_config(
        cls,
        graph: GraphSpec,
        config: OrchestratorConfig | None = None,
        bridge_config: BridgeConfig | None = None,
    ) -> "AnalysisRunner":
        """Runner wired from configuration.json and the environment."""
        config = config or OrchestratorConfig()
        bridge_config = bridge_config or BridgeConfig.from_sources()
        store = CheckpointStore(config.state_dir, max_history=config.checkpoint_history)
        return cls(graph, store, bridge=ResearchBridge.from_config(bridge_config))

    # === PROGRESS ===

    def subscribe(self, listener: ProgressListener) -> str:
        return self.bus.subscribe(listener)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.bus.unsubscribe(subscription_id)

    def _system(self, message: str, session_id: str | None = None, level=ProgressLevel.INFO) -> None:
        self.bus.emit("system", message, kind=ProgressKind.SYSTEM, level=level, session_id=session_id)

    # === OPERATIONS ===

    async def analyze(self, document_key: str, options: AnalyzeOptions | None = None) -> AnalysisResult:
        """
        Run the whole graph over a document.

        Raises:
            DocumentNotFoundError / DocumentReadError: The document could not be loaded
            AnalysisInterrupted: interrupt() was called; carries the partial state
            NodeFailure: A node raised
        """
        options = options or AnalyzeOptions()
        start = time.perf_counter()

        self._system(f"Loading document {document_key}")
        content = await self.loader.read_document(document_key)

        session = await self.store.session_for(document_key, force_new=options.force_new_session)
        set_trace_context(document_key=document_key, session_id=session.session_id)
        if session.has_checkpoint and not options.force_new_session:
            logger.info(f"Re-analyzing {document_key}; previous results in {session.session_id} are replaced")

        state = ExecutionState.create(document_key, session_id=session.session_id, content=content)
        result = await self.executor.run(state, providers=options.providers)
        return self._finish(document_key, result, start)

    async def refine(self, document_key: str, options: RefineOptions | None = None) -> AnalysisResult:
        """
        Re-run the graph from a node onward, on top of the previous analysis.

        Results of nodes before `start_from` are kept; the iteration counter
        goes up by one.

        Raises:
            NoPriorAnalysis: The document was never analyzed
            ValueError: start_from is not a node of the graph
            AnalysisInterrupted / NodeFailure: as for analyze()
        """
        options = options or RefineOptions()
        start = time.perf_counter()

        session = await self.store.session_for(document_key)
        checkpoint = await self.store.load(session.session_id)
        if checkpoint is None:
            raise NoPriorAnalysis(document_key, session.session_id)
        set_trace_context(document_key=document_key, session_id=session.session_id)

        start_from = options.start_from or self.graph.refinement_entry or self.graph.execution_order()[0]
        # Fail on an unknown node before touching the state
        self.graph.nodes_from(start_from)

        self._system(f"Loading document {document_key}", session.session_id)
        content = await self.loader.read_document(document_key)

        state = checkpoint.state
        if state.update_document(content):
            message = "Document changed since the last analysis; earlier results were kept as-is"
            logger.warning(f"{document_key}: {message}")
            self._system(message, session.session_id, level=ProgressLevel.WARNING)

        state.iteration += 1
        logger.info(f"Refining {document_key} (iteration {state.iteration}) from {start_from}")
        result = await self.executor.run(state, start_node=start_from, providers=options.providers)
        return self._finish(document_key, result, start)

    async def resume(self, document_key: str, providers: list[str] | None = None) -> AnalysisResult:
        """
        Continue an interrupted or failed run from the node after its checkpoint.

        Nodes that already completed are not re-run and the iteration counter
        is unchanged. A session whose last run completed returns immediately
        with no nodes executed.

        Raises:
            NoPriorAnalysis: The document has no saved progress
            AnalysisInterrupted / NodeFailure: as for analyze()
        """
        start = time.perf_counter()
        session = await self.store.session_for(document_key)
        if not session.has_checkpoint:
            raise NoPriorAnalysis(document_key, session.session_id)
        set_trace_context(document_key=document_key, session_id=session.session_id)

        self._system(f"Resuming {document_key}", session.session_id)
        result = await self.executor.continue_run(session.session_id, providers=providers)
        return self._finish(document_key, result, start)

    def _finish(self, document_key: str, result: ExecutionResult, start: float) -> AnalysisResult:
        if result.interrupted:
            raise AnalysisInterrupted(result.state, result.position)
        return AnalysisResult(
            session_id=result.state.session_id,
            document_key=document_key,
            state=result.state,
            nodes_executed=result.path,
            execution_time_ms=int((time.perf_counter() - start) * 1000),
        )

    async def get_session(self, document_key: str) -> SessionInfo:
        """Describe the document's current session."""
        session = await self.store.session_for(document_key)
        checkpoint = await self.store.load(session.session_id) if session.has_checkpoint else None
        if checkpoint is None:
            return SessionInfo(session_id=session.session_id, document_key=document_key, has_checkpoint=False)
        return SessionInfo(
            session_id=session.session_id,
            document_key=document_key,
            has_checkpoint=True,
            last_position=checkpoint.position,
            status=checkpoint.status,
            iteration=checkpoint.state.iteration,
            updated_at=checkpoint.created_at,
        )

    async def clear_session(self, document_key: str) -> bool:
        """
        Delete the document's checkpoints and forget its session binding.

        Returns:
            True if a checkpoint was deleted
        """
        session = await self.store.session_for(document_key)
        deleted = await self.store.clear(session.session_id)
        await self.store.forget_document(document_key)
        return deleted

    def interrupt(self) -> None:
        """Stop the current run at the next node boundary."""
        if self.executor.is_running:
            self._system("Interruption requested...", level=ProgressLevel.WARNING)
        self.executor.interrupt()

    async def aclose(self) -> None:
        await self.bus.close()
        if self.bridge is not None:
            await self.bridge.aclose()
