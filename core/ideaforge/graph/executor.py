"""
Graph Executor - Runs a pipeline graph node by node with durable checkpoints.

Handles:
- Static execution order (topological, declaration order breaks ties)
- A checkpoint after every completed node
- Cooperative interruption at node boundaries
- Starting part-way through the graph (refinement) and resuming
- Progress events at run and node transitions
"""

import logging
import time
import uuid
from collections.abc import Collection
from dataclasses import dataclass, field
from enum import StrEnum

from ideaforge.bridge.research_bridge import ResearchBridge
from ideaforge.errors import CheckpointWriteError, NodeFailure, NoCheckpointFound, describe_error
from ideaforge.graph.node import CancellationToken, NodeContext
from ideaforge.graph.spec import GraphSpec
from ideaforge.observability import set_trace_context
from ideaforge.runtime.progress_bus import ProgressBus, ProgressKind, ProgressLevel
from ideaforge.schemas.checkpoint import Checkpoint, CheckpointStatus
from ideaforge.schemas.state import ExecutionState
from ideaforge.storage.checkpoint_store import CheckpointStore


class ExecutorStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """Result of running a graph."""

    status: ExecutorStatus
    state: ExecutionState
    position: str | None = None  # Last node that completed
    next_node: str | None = None  # Where a resume picks up (None when complete)
    path: list[str] = field(default_factory=list)  # Nodes run by this call
    checkpoint_id: str | None = None
    total_latency_ms: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == ExecutorStatus.COMPLETED

    @property
    def interrupted(self) -> bool:
        return self.status == ExecutorStatus.INTERRUPTED


class GraphExecutor:
    """
    Executes one graph at a time.

    Example:
        executor = GraphExecutor(graph, store, bus=bus, bridge=bridge)
        result = await executor.run(ExecutionState.create("docs/idea.org", session_id))
        if result.interrupted:
            state = await executor.resume(result.state.session_id)
    """

    def __init__(
        self,
        graph: GraphSpec,
        store: CheckpointStore,
        bus: ProgressBus | None = None,
        bridge: ResearchBridge | None = None,
    ):
        """
        Initialize the executor.

        Args:
            graph: The pipeline to run
            store: Checkpoint store written after every node
            bus: Progress bus for lifecycle events
            bridge: Research bridge exposed to nodes
        """
        self.graph = graph
        self.store = store
        self.bus = bus
        self.bridge = bridge
        self.logger = logging.getLogger(__name__)
        self._status = ExecutorStatus.IDLE
        self._token = CancellationToken()
        self._active_run: str | None = None

    @property
    def status(self) -> ExecutorStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == ExecutorStatus.RUNNING

    def interrupt(self) -> None:
        """
        Request a stop at the next node boundary.

        The node in flight is never aborted. Calling this repeatedly is
        harmless; a request made while idle applies to the next run.
        """
        if not self._token.is_cancelled:
            self.logger.info("⏸ Interrupt requested - will stop at next node boundary")
        self._token.cancel()

    def _emit(
        self,
        node: str,
        message: str,
        kind: ProgressKind,
        session_id: str,
        level: ProgressLevel = ProgressLevel.INFO,
        **data,
    ) -> None:
        if self.bus is not None:
            self.bus.emit(node=node, message=message, kind=kind, level=level, session_id=session_id, **data)

    async def run(
        self,
        state: ExecutionState,
        start_node: str | None = None,
        providers: Collection[str] | None = None,
    ) -> ExecutionResult:
        """
        Run the graph over `state`.

        Args:
            state: Execution state (fresh, or reconstructed from a checkpoint).
                Nodes work on copies of it, so read the outcome from the
                returned ExecutionResult.state
            start_node: Start here instead of at the first node; results of
                earlier nodes are kept untouched
            providers: Research providers nodes may reach (None = all)

        Returns:
            ExecutionResult with status COMPLETED or INTERRUPTED

        Raises:
            ValueError: Empty session id, invalid graph or unknown start node
            RuntimeError: The executor is already running
            NodeFailure: A node raised (the failed checkpoint carries the state
                as it was before that node started)
            CheckpointWriteError: A checkpoint could not be persisted
        """
        if not state.session_id:
            raise ValueError("ExecutionState.session_id must not be empty")
        if self.is_running:
            raise RuntimeError("GraphExecutor is already running; use a separate executor per session")

        order = self.graph.execution_order()
        scheduled = self.graph.nodes_from(start_node) if start_node else order
        first_index = len(order) - len(scheduled)
        position = order[first_index - 1] if first_index > 0 else None

        session_id = state.session_id
        run_id = uuid.uuid4().hex[:12]
        set_trace_context(session_id=session_id, run_id=run_id, node_id=None)

        self._status = ExecutorStatus.RUNNING
        self._active_run = run_id
        path: list[str] = []
        last_checkpoint: Checkpoint | None = None
        run_start = time.perf_counter()

        self.logger.info(f"🚀 Starting run {run_id} for session {session_id}")
        self.logger.info(f"   Nodes: {' → '.join(scheduled)}")
        self._emit(
            "system",
            f"Starting analysis at {scheduled[0] if scheduled else 'end of graph'}",
            ProgressKind.RUN_STARTED,
            session_id,
            run_id=run_id,
            nodes=scheduled,
            iteration=state.iteration,
        )

        try:
            for index, name in enumerate(scheduled):
                if self._token.is_cancelled:
                    return await self._stop_interrupted(state, position, name, path, run_start)

                set_trace_context(node_id=name)
                self.logger.info(f"▶ Step {index + 1}/{len(scheduled)}: {name}")
                self._emit(name, f"Starting {name}", ProgressKind.NODE_STARTED, session_id)

                # The node works on a copy; it replaces the committed state only on success
                working = state.model_copy(deep=True)
                working.current_node = name
                ctx = NodeContext(
                    node=name,
                    state=working,
                    token=self._token,
                    bus=self.bus,
                    bridge=self.bridge,
                    providers=providers,
                    is_active=lambda rid=run_id: self._active_run == rid,
                )

                node_start = time.perf_counter()
                try:
                    output = await self.graph.get_impl(name).run(working, ctx)
                except Exception as e:
                    await self._stop_failed(state, position, name, e)
                    raise NodeFailure(name, e) from e

                latency_ms = int((time.perf_counter() - node_start) * 1000)
                working.record_result(name, output)
                working.execution_path.append(name)
                state = working
                path.append(name)

                next_node = scheduled[index + 1] if index + 1 < len(scheduled) else None
                try:
                    last_checkpoint = await self.store.save(
                        session_id,
                        state,
                        position=name,
                        next_node=next_node,
                        status=CheckpointStatus.COMPLETED if next_node is None else CheckpointStatus.RUNNING,
                    )
                except CheckpointWriteError as e:
                    self._status = ExecutorStatus.FAILED
                    self._emit(name, str(e), ProgressKind.RUN_FAILED, session_id, level=ProgressLevel.ERROR)
                    raise

                position = name
                self.logger.info(f"   ✓ {name} completed in {latency_ms}ms", extra={"latency_ms": latency_ms})
                self._emit(
                    name,
                    f"Completed {name}",
                    ProgressKind.NODE_COMPLETED,
                    session_id,
                    latency_ms=latency_ms,
                )

            state.current_node = None
            self._status = ExecutorStatus.COMPLETED
            total_ms = int((time.perf_counter() - run_start) * 1000)
            self.logger.info(f"✓ Run {run_id} completed ({len(path)} nodes, {total_ms}ms)")
            self._emit(
                "system",
                "Analysis complete",
                ProgressKind.RUN_COMPLETED,
                session_id,
                nodes_executed=len(path),
                latency_ms=total_ms,
            )
            return ExecutionResult(
                status=ExecutorStatus.COMPLETED,
                state=state,
                position=position,
                path=path,
                checkpoint_id=last_checkpoint.checkpoint_id if last_checkpoint else None,
                total_latency_ms=total_ms,
            )
        finally:
            if self._status == ExecutorStatus.RUNNING:
                # Cancelled from outside (task cancellation)
                self._status = ExecutorStatus.FAILED
            self._token.reset()
            self._active_run = None
            set_trace_context(node_id=None)

    async def _stop_interrupted(
        self,
        state: ExecutionState,
        position: str | None,
        next_node: str,
        path: list[str],
        run_start: float,
    ) -> ExecutionResult:
        self.logger.info(f"⏸ Interrupt detected - stopping before {next_node}")
        state.current_node = position
        checkpoint = await self.store.save(
            state.session_id,
            state,
            position=position,
            next_node=next_node,
            status=CheckpointStatus.INTERRUPTED,
        )
        self._status = ExecutorStatus.INTERRUPTED
        where = f"after {position}" if position else "before the first node"
        self._emit(
            position or "system",
            f"Analysis interrupted {where}",
            ProgressKind.RUN_INTERRUPTED,
            state.session_id,
            level=ProgressLevel.WARNING,
            next_node=next_node,
        )
        return ExecutionResult(
            status=ExecutorStatus.INTERRUPTED,
            state=state,
            position=position,
            next_node=next_node,
            path=path,
            checkpoint_id=checkpoint.checkpoint_id,
            total_latency_ms=int((time.perf_counter() - run_start) * 1000),
        )

    async def _stop_failed(
        self,
        state: ExecutionState,
        position: str | None,
        node: str,
        error: Exception,
    ) -> None:
        """
        Persist a failed checkpoint positioned at the last good node.

        `state` is the committed state; whatever the failing node did to its
        working copy is dropped.
        """
        self.logger.error(f"✗ Node {node} failed: {error}")
        self._status = ExecutorStatus.FAILED
        state.current_node = position
        try:
            await self.store.save(
                state.session_id,
                state,
                position=position,
                next_node=node,
                status=CheckpointStatus.FAILED,
            )
        except CheckpointWriteError as write_error:
            # The previous checkpoint is still intact; the node error is what gets reported
            self.logger.error(f"Could not record failure checkpoint: {write_error}")
        self._emit(
            node,
            f"{node} failed: {error}",
            ProgressKind.RUN_FAILED,
            state.session_id,
            level=ProgressLevel.ERROR,
            error=describe_error(error),
        )

    async def resume(self, session_id: str) -> ExecutionState:
        """
        Reconstruct a session's state from its checkpoint.

        Raises:
            NoCheckpointFound: If the session has no (readable) checkpoint
        """
        checkpoint = await self.load_checkpoint(session_id)
        self.logger.info(
            f"📥 Restored session {session_id} at {checkpoint.position or 'start'} "
            f"({len(checkpoint.state.results)} results)"
        )
        return checkpoint.state

    async def load_checkpoint(self, session_id: str) -> Checkpoint:
        checkpoint = await self.store.load(session_id)
        if checkpoint is None:
            raise NoCheckpointFound(session_id)
        return checkpoint

    async def continue_run(
        self,
        session_id: str,
        providers: Collection[str] | None = None,
    ) -> ExecutionResult:
        """
        Resume an interrupted or failed run from where its checkpoint stopped.

        Raises:
            NoCheckpointFound: If the session has no checkpoint
        """
        checkpoint = await self.load_checkpoint(session_id)
        state = checkpoint.state
        if checkpoint.next_node is None and checkpoint.position is not None:
            self.logger.info(f"Session {session_id} already complete; nothing to resume")
            self._status = ExecutorStatus.COMPLETED
            return ExecutionResult(
                status=ExecutorStatus.COMPLETED,
                state=state,
                position=checkpoint.position,
                checkpoint_id=checkpoint.checkpoint_id,
            )
        self.logger.info(f"🔄 Resuming session {session_id} from {checkpoint.next_node or 'start'}")
        return await self.run(state, start_node=checkpoint.next_node, providers=providers)
