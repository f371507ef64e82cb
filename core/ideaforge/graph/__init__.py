"""Graph structures: node specs, the graph, and the executor that runs it."""

from ideaforge.graph.executor import ExecutionResult, ExecutorStatus, GraphExecutor
from ideaforge.graph.node import CancellationToken, FunctionNode, NodeContext, PipelineNode
from ideaforge.graph.spec import GraphSpec, NodeSpec

__all__ = [
    "CancellationToken",
    "ExecutionResult",
    "ExecutorStatus",
    "FunctionNode",
    "GraphExecutor",
    "GraphSpec",
    "NodeContext",
    "NodeSpec",
    "PipelineNode",
]
