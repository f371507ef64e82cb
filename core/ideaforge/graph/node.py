"""
Pipeline nodes and the context they run in.

A node is anything with a `name` and an `async run(state, ctx)`. Whatever
`run` returns is recorded as the node's result. Raising fails the run
(wrapped as NodeFailure by the executor); research problems do not, they
come back from `ctx.research(...)` as None and are recorded as warnings.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Collection
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ideaforge.errors import ResearchError
from ideaforge.runtime.progress_bus import ProgressBus, ProgressKind, ProgressLevel
from ideaforge.schemas.research import ResearchRequest, ResearchResult
from ideaforge.schemas.state import ErrorKind, ExecutionState

if TYPE_CHECKING:
    from ideaforge.bridge.research_bridge import ResearchBridge

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative interruption flag.

    Setting it never stops a node mid-flight; the executor checks it at
    node boundaries.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self) -> None:
        self._event.clear()

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class PipelineNode(Protocol):
    """Protocol for pipeline stages."""

    name: str

    async def run(self, state: ExecutionState, ctx: NodeContext) -> Any: ...


# Plain functions may return a value or an awaitable
NodeCallable = Callable[[ExecutionState, "NodeContext"], Any]


class FunctionNode:
    """
    Adapt a plain function (sync or async) into a PipelineNode.

    Example:
        def parse(state, ctx):
            ctx.report("Parsing document")
            return {"sections": state.document_content.split("\\n\\n")}

        node = FunctionNode("documentParser", parse)
    """

    def __init__(self, name: str, fn: NodeCallable, description: str = ""):
        self.name = name
        self.fn = fn
        self.description = description or (fn.__doc__ or "").strip()

    async def run(self, state: ExecutionState, ctx: NodeContext) -> Any:
        result = self.fn(state, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionNode({self.name!r})"


class NodeContext:
    """
    Everything a node may touch besides the state.

    One context is built per node invocation.
    """

    def __init__(
        self,
        node: str,
        state: ExecutionState,
        token: CancellationToken,
        bus: ProgressBus | None = None,
        bridge: ResearchBridge | None = None,
        providers: Collection[str] | None = None,
        is_active: Callable[[], bool] | None = None,
    ):
        """
        Args:
            node: Name of the node being run
            state: Live execution state
            token: The run's cancellation token
            bus: Progress bus for report()
            bridge: Research bridge (None disables research)
            providers: Providers this run may reach (None = all)
            is_active: False once the owning run has stopped
        """
        self.node = node
        self.state = state
        self.token = token
        self.bus = bus
        self.bridge = bridge
        self.providers = providers
        self._is_active = is_active or (lambda: True)

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def interrupted(self) -> bool:
        """True once an interrupt was requested (the node may finish early)."""
        return self.token.is_cancelled

    def report(self, message: str, level: ProgressLevel = ProgressLevel.INFO, **data: Any) -> None:
        """Publish a progress message attributed to this node."""
        if self.bus is None:
            return
        self.bus.emit(
            node=self.node,
            message=message,
            kind=ProgressKind.NODE_PROGRESS,
            level=level,
            session_id=self.session_id,
            **data,
        )

    def record_warning(self, message: str, kind: ErrorKind = ErrorKind.NODE) -> None:
        """Record a non-fatal problem in the state and surface it as a warning."""
        self.state.record_error(self.node, message, kind)
        logger.warning(f"{self.node}: {message}", extra={"node_id": self.node})
        if self.bus is not None:
            self.bus.emit(
                node=self.node,
                message=message,
                kind=ProgressKind.RESEARCH_WARNING if kind == ErrorKind.RESEARCH else ProgressKind.NODE_PROGRESS,
                level=ProgressLevel.WARNING,
                session_id=self.session_id,
            )

    async def research(self, provider: str, query: str, limit: int = 10) -> ResearchResult | None:
        """
        Fetch research without ever failing the node.

        Returns:
            The result, or None when research is unavailable (rate limited,
            provider down, provider not enabled) or arrived after the owning
            run stopped. An interrupt requested while the node is still
            running does not discard results.
        """
        if self.bridge is None:
            self.record_warning(f"Research unavailable for '{provider}': no research bridge", ErrorKind.RESEARCH)
            return None

        request = ResearchRequest(provider=provider, query=query, session_id=self.session_id, limit=limit)
        try:
            result = await self.bridge.fetch(request, allowed=self.providers)
        except ResearchError as e:
            self.record_warning(str(e), ErrorKind.RESEARCH)
            return None

        if not self._is_active():
            self.record_warning(
                f"Discarded {provider} result for {query!r}: the run that requested it has ended",
                ErrorKind.RESEARCH,
            )
            return None
        return result
