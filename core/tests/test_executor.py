"""
Tests for GraphExecutor: ordering, checkpointing, interruption, resume, failure.
"""

import asyncio
from pathlib import Path

import pytest

from ideaforge.errors import CheckpointWriteError, NodeFailure, NoCheckpointFound, ProviderUnavailable
from ideaforge.graph.executor import ExecutorStatus, GraphExecutor
from ideaforge.graph.node import FunctionNode
from ideaforge.graph.spec import GraphSpec
from ideaforge.runtime.progress_bus import ProgressBus, ProgressKind
from ideaforge.schemas.checkpoint import CheckpointStatus
from ideaforge.schemas.research import ResearchResult
from ideaforge.schemas.state import ErrorKind, ExecutionState
from ideaforge.storage.checkpoint_store import CheckpointStore


# ---- Nodes that record what ran ----
class RecordingNode:
    def __init__(self, name: str, calls: list[str], output=None):
        self.name = name
        self.calls = calls
        self.output = output

    async def run(self, state, ctx):
        self.calls.append(self.name)
        return self.output if self.output is not None else f"{self.name}-out-{state.iteration}"


class FailingNode:
    def __init__(self, name: str):
        self.name = name

    async def run(self, state, ctx):
        raise ValueError("model returned garbage")


class InterruptingNode(RecordingNode):
    """Requests an interrupt while it runs, like a Ctrl+C mid-node."""

    def __init__(self, name: str, calls: list[str], executor_ref: dict):
        super().__init__(name, calls)
        self.executor_ref = executor_ref

    async def run(self, state, ctx):
        self.executor_ref["executor"].interrupt()
        return await super().run(state, ctx)


class FakeBridge:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.requests = []

    async def fetch(self, request, allowed=None):
        self.requests.append((request, allowed))
        if self.error:
            raise self.error
        return ResearchResult(provider=request.provider, query=request.query)


def make_graph(calls: list[str], names=("A", "B", "C")) -> GraphSpec:
    return GraphSpec.linear("test-graph", [RecordingNode(n, calls) for n in names])


def new_state(session_id: str = "sess1") -> ExecutionState:
    return ExecutionState.create("foo", session_id=session_id, content="foo")


@pytest.mark.asyncio
async def test_run_executes_all_nodes_and_checkpoints(tmp_path: Path):
    calls: list[str] = []
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(make_graph(calls), store)

    result = await executor.run(new_state())

    assert result.success is True
    assert result.path == ["A", "B", "C"]
    assert calls == ["A", "B", "C"]
    assert executor.status == ExecutorStatus.COMPLETED

    checkpoint = await store.load("sess1")
    assert checkpoint.position == "C"
    assert checkpoint.status == CheckpointStatus.COMPLETED
    assert checkpoint.next_node is None
    assert checkpoint.state.completed_nodes == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_checkpoint_written_after_each_node(tmp_path: Path):
    calls: list[str] = []
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(make_graph(calls), store)

    await executor.run(new_state())

    history = await store.history("sess1")
    assert [h.position for h in history] == ["A", "B"]


@pytest.mark.asyncio
async def test_empty_session_id_rejected(tmp_path: Path):
    executor = GraphExecutor(make_graph([]), CheckpointStore(tmp_path))
    state = new_state()
    state.session_id = ""

    with pytest.raises(ValueError):
        await executor.run(state)


@pytest.mark.asyncio
async def test_start_node_skips_earlier_nodes(tmp_path: Path):
    calls: list[str] = []
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(make_graph(calls), store)
    state = new_state()
    state.record_result("A", "kept")

    result = await executor.run(state, start_node="B")

    assert calls == ["B", "C"]
    assert result.state.get_result("A") == "kept"


# ---- Interruption ----


@pytest.mark.asyncio
async def test_interrupt_stops_at_node_boundary(tmp_path: Path):
    calls: list[str] = []
    ref: dict = {}
    graph = GraphSpec.linear(
        "g",
        [RecordingNode("A", calls), InterruptingNode("B", calls, ref), RecordingNode("C", calls)],
    )
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(graph, store)
    ref["executor"] = executor

    result = await executor.run(new_state())

    assert result.interrupted is True
    assert calls == ["A", "B"]  # B finished, C never started
    assert result.position == "B"
    assert result.next_node == "C"

    checkpoint = await store.load("sess1")
    assert checkpoint.status == CheckpointStatus.INTERRUPTED
    assert checkpoint.position == "B"
    assert checkpoint.state.completed_nodes == ["A", "B"]


@pytest.mark.asyncio
async def test_interrupt_before_first_node(tmp_path: Path):
    calls: list[str] = []
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(make_graph(calls), store)

    executor.interrupt()
    executor.interrupt()  # idempotent
    result = await executor.run(new_state())

    assert result.interrupted is True
    assert calls == []
    assert result.position is None
    assert (await store.load("sess1")).next_node == "A"


@pytest.mark.asyncio
async def test_interrupt_from_outside_while_node_in_flight(tmp_path: Path):
    started = asyncio.Event()
    release = asyncio.Event()
    calls: list[str] = []

    async def slow(state, ctx):
        started.set()
        await release.wait()
        calls.append("slow")
        return "done"

    graph = GraphSpec.linear("g", [FunctionNode("slow", slow), RecordingNode("after", calls)])
    executor = GraphExecutor(graph, CheckpointStore(tmp_path))

    task = asyncio.create_task(executor.run(new_state()))
    await started.wait()
    assert executor.is_running
    executor.interrupt()
    release.set()
    result = await task

    assert calls == ["slow"]  # in-flight node completed, next never started
    assert result.interrupted is True
    assert result.state.get_result("slow") == "done"


@pytest.mark.asyncio
async def test_resume_to_completion_matches_uninterrupted_run(tmp_path: Path):
    # Uninterrupted reference run
    reference = await GraphExecutor(make_graph([]), CheckpointStore(tmp_path / "ref")).run(new_state())

    calls: list[str] = []
    ref: dict = {}
    graph = GraphSpec.linear(
        "g",
        [InterruptingNode("A", calls, ref), RecordingNode("B", calls), RecordingNode("C", calls)],
    )
    store = CheckpointStore(tmp_path / "run")
    executor = GraphExecutor(graph, store)
    ref["executor"] = executor

    interrupted = await executor.run(new_state())
    assert interrupted.interrupted

    resumed = await executor.continue_run("sess1")

    assert resumed.success
    assert calls == ["A", "B", "C"]
    assert resumed.state.result_log() == reference.state.result_log()
    assert resumed.state.completed_nodes == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_resume_returns_checkpointed_state(tmp_path: Path):
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(make_graph([]), store)
    await executor.run(new_state())

    state = await executor.resume("sess1")

    assert state.completed_nodes == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_resume_without_checkpoint(tmp_path: Path):
    executor = GraphExecutor(make_graph([]), CheckpointStore(tmp_path))
    with pytest.raises(NoCheckpointFound):
        await executor.resume("missing")


# ---- Failure ----


@pytest.mark.asyncio
async def test_node_failure_persists_failed_checkpoint(tmp_path: Path):
    calls: list[str] = []
    graph = GraphSpec.linear("g", [RecordingNode("A", calls), FailingNode("B"), RecordingNode("C", calls)])
    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(graph, store)

    with pytest.raises(NodeFailure) as exc_info:
        await executor.run(new_state())

    assert exc_info.value.node == "B"
    assert isinstance(exc_info.value.cause, ValueError)
    assert executor.status == ExecutorStatus.FAILED
    assert calls == ["A"]

    checkpoint = await store.load("sess1")
    assert checkpoint.status == CheckpointStatus.FAILED
    assert checkpoint.position == "A"
    assert checkpoint.next_node == "B"
    assert checkpoint.state.completed_nodes == ["A"]


@pytest.mark.asyncio
async def test_checkpoint_write_failure_is_fatal(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    executor = GraphExecutor(make_graph([]), CheckpointStore(blocker))

    with pytest.raises(CheckpointWriteError):
        await executor.run(new_state())

    assert executor.status == ExecutorStatus.FAILED


@pytest.mark.asyncio
async def test_concurrent_run_rejected(tmp_path: Path):
    release = asyncio.Event()

    async def wait(state, ctx):
        await release.wait()

    executor = GraphExecutor(GraphSpec.linear("g", [FunctionNode("wait", wait)]), CheckpointStore(tmp_path))
    task = asyncio.create_task(executor.run(new_state()))
    await asyncio.sleep(0)

    with pytest.raises(RuntimeError):
        await executor.run(new_state("other"))

    release.set()
    await task


# ---- Progress and research ----


@pytest.mark.asyncio
async def test_progress_events_for_every_transition(tmp_path: Path):
    bus = ProgressBus()
    events = []
    bus.subscribe(events.append)
    executor = GraphExecutor(make_graph([], names=("A", "B")), CheckpointStore(tmp_path), bus=bus)

    await executor.run(new_state())
    await bus.drain()

    assert [(e.kind, e.node) for e in events] == [
        (ProgressKind.RUN_STARTED, "system"),
        (ProgressKind.NODE_STARTED, "A"),
        (ProgressKind.NODE_COMPLETED, "A"),
        (ProgressKind.NODE_STARTED, "B"),
        (ProgressKind.NODE_COMPLETED, "B"),
        (ProgressKind.RUN_COMPLETED, "system"),
    ]
    assert all(e.session_id == "sess1" for e in events)


@pytest.mark.asyncio
async def test_research_failure_recorded_not_fatal(tmp_path: Path):
    bus = ProgressBus()
    warnings = []
    bus.subscribe(lambda e: warnings.append(e) if e.kind == ProgressKind.RESEARCH_WARNING else None)

    async def research(state, ctx):
        result = await ctx.research("reddit", "rust")
        return {"research": result}

    bridge = FakeBridge(error=ProviderUnavailable("reddit", RuntimeError("503")))
    executor = GraphExecutor(
        GraphSpec.linear("g", [FunctionNode("research", research)]),
        CheckpointStore(tmp_path),
        bus=bus,
        bridge=bridge,
    )

    result = await executor.run(new_state(), providers=["reddit"])
    await bus.drain()

    assert result.success
    assert result.state.get_result("research") == {"research": None}
    assert result.state.errors[0].kind == ErrorKind.RESEARCH
    assert len(warnings) == 1
    assert bridge.requests[0][1] == ["reddit"]



@pytest.mark.asyncio
async def test_research_kept_when_interrupt_requested_mid_node(tmp_path: Path):
    ref: dict = {}

    async def research(state, ctx):
        ref["executor"].interrupt()
        result = await ctx.research("hackernews", "htmx")
        return {"hits_from": result.provider if result else None}

    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(
        GraphSpec.linear("g", [FunctionNode("research", research), FunctionNode("next", lambda s, c: 1)]),
        store,
        bridge=FakeBridge(),
    )
    ref["executor"] = executor

    result = await executor.run(new_state())

    assert result.interrupted
    assert result.state.get_result("research") == {"hits_from": "hackernews"}
    assert result.state.errors == []
    checkpoint = await store.load("sess1")
    assert checkpoint.position == "research"
    assert checkpoint.state.get_result("research") == {"hits_from": "hackernews"}


@pytest.mark.asyncio
async def test_research_after_run_ended_is_discarded_with_warning(tmp_path: Path):
    held: dict = {}

    def keep_context(state, ctx):
        held["ctx"] = ctx
        return "done"

    executor = GraphExecutor(
        GraphSpec.linear("g", [FunctionNode("keep", keep_context)]),
        CheckpointStore(tmp_path),
        bridge=FakeBridge(),
    )
    await executor.run(new_state())

    ctx = held["ctx"]
    assert await ctx.research("reddit", "late query") is None
    assert ctx.state.errors[-1].kind == ErrorKind.RESEARCH
    assert "Discarded" in ctx.state.errors[-1].message


@pytest.mark.asyncio
async def test_failed_node_mutations_never_reach_checkpoint(tmp_path: Path):
    def first(state, ctx):
        return {"summary": "original"}

    def half_done(state, ctx):
        state.document_content = "HALF-MUTATED"
        state.record_result("first", "clobbered")
        state.record_error("half_done", "partial work")
        raise RuntimeError("crashed midway")

    store = CheckpointStore(tmp_path)
    executor = GraphExecutor(
        GraphSpec.linear("g", [FunctionNode("first", first), FunctionNode("half_done", half_done)]),
        store,
    )
    state = new_state()

    with pytest.raises(NodeFailure):
        await executor.run(state)

    checkpoint = await store.load("sess1")
    assert checkpoint.status == CheckpointStatus.FAILED
    assert checkpoint.position == "first"
    assert checkpoint.state.document_content == "foo"
    assert checkpoint.state.get_result("first") == {"summary": "original"}
    assert checkpoint.state.errors == []
    assert checkpoint.state.completed_nodes == ["first"]
    # The caller's object is never mutated by nodes
    assert state.document_content == "foo"
    assert state.results == {}


@pytest.mark.asyncio
async def test_failure_event_describes_error(tmp_path: Path):
    bus = ProgressBus()
    graph = GraphSpec.linear("g", [FailingNode("B")])
    executor = GraphExecutor(graph, CheckpointStore(tmp_path), bus=bus)

    with pytest.raises(NodeFailure):
        await executor.run(new_state())

    failed = bus.get_history(kind=ProgressKind.RUN_FAILED)[0]
    assert failed.data["error"] == {"type": "ValueError", "message": "model returned garbage"}
