"""
Graph specification - pipeline nodes plus their dependency edges.

The execution order is static: a topological sort of the dependencies in
which declaration order breaks ties, so the same graph always runs its
nodes in the same sequence.
"""

from typing import Any

from pydantic import BaseModel, Field

from ideaforge.graph.node import PipelineNode


class NodeSpec(BaseModel):
    """A node in the graph: its name, dependencies and implementation."""

    name: str
    description: str = ""
    depends_on: list[str] = Field(default_factory=list, description="Nodes that must complete first")
    node: Any = Field(default=None, exclude=True, description="PipelineNode implementation")

    model_config = {"arbitrary_types_allowed": True}

    @classmethod
    def from_node(cls, node: PipelineNode, depends_on: list[str] | None = None) -> "NodeSpec":
        return cls(
            name=node.name,
            description=getattr(node, "description", ""),
            depends_on=depends_on or [],
            node=node,
        )


class GraphSpec(BaseModel):
    """
    Complete specification of an analysis pipeline.

    Example:
        GraphSpec(
            id="ideaforge-analysis",
            nodes=[
                NodeSpec.from_node(parser),
                NodeSpec.from_node(requirements, depends_on=["documentParser"]),
                NodeSpec.from_node(moscow, depends_on=["requirementsAnalysis"]),
            ],
            refinement_entry="requirementsAnalysis",
        )
    """

    id: str
    version: str = "1.0.0"
    description: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    refinement_entry: str | None = Field(
        default=None,
        description="Node a refinement starts from when the caller names none",
    )

    model_config = {"extra": "allow"}

    @classmethod
    def linear(cls, id: str, nodes: list[PipelineNode], **kwargs: Any) -> "GraphSpec":
        """Chain nodes so each depends on the one before it."""
        specs = []
        previous: str | None = None
        for node in nodes:
            specs.append(NodeSpec.from_node(node, depends_on=[previous] if previous else []))
            previous = node.name
        return cls(id=id, nodes=specs, **kwargs)

    def get_node(self, name: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def get_impl(self, name: str) -> PipelineNode:
        spec = self.get_node(name)
        if spec is None or spec.node is None:
            raise KeyError(f"No implementation for node '{name}'")
        return spec.node

    @property
    def node_names(self) -> list[str]:
        return [node.name for node in self.nodes]

    def validate(self) -> list[str]:
        """Validate the graph structure."""
        errors = []

        seen: set[str] = set()
        for node in self.nodes:
            if node.name in seen:
                errors.append(f"Duplicate node name: '{node.name}'")
            seen.add(node.name)
            if node.node is None:
                errors.append(f"Node '{node.name}' has no implementation")

        for node in self.nodes:
            for dep in node.depends_on:
                if dep not in seen:
                    errors.append(f"Node '{node.name}' depends on missing node '{dep}'")

        if self.refinement_entry and self.refinement_entry not in seen:
            errors.append(f"Refinement entry '{self.refinement_entry}' not found")

        if not errors:
            remaining = self._sort()[1]
            if remaining:
                errors.append(f"Dependency cycle among nodes: {', '.join(remaining)}")

        return errors

    def _sort(self) -> tuple[list[str], list[str]]:
        """Kahn's algorithm, always picking the earliest-declared ready node."""
        pending = [node.name for node in self.nodes]
        deps = {node.name: set(node.depends_on) for node in self.nodes}
        ordered: list[str] = []
        done: set[str] = set()

        while pending:
            ready = next((name for name in pending if deps[name] <= done), None)
            if ready is None:
                break
            ordered.append(ready)
            done.add(ready)
            pending.remove(ready)

        return ordered, pending

    def execution_order(self) -> list[str]:
        """
        Deterministic topological order of the nodes.

        Raises:
            ValueError: If the graph is invalid
        """
        errors = self.validate()
        if errors:
            raise ValueError(f"Invalid graph '{self.id}': {'; '.join(errors)}")
        return self._sort()[0]

    def nodes_from(self, start: str) -> list[str]:
        """
        Execution order beginning at `start` (earlier nodes omitted).

        Raises:
            ValueError: If start is not a node of this graph
        """
        order = self.execution_order()
        if start not in order:
            raise ValueError(f"Unknown node '{start}'. Valid nodes: {', '.join(order)}")
        return order[order.index(start) :]

    def next_node(self, current: str | None) -> str | None:
        """Node after `current` in execution order (the first node for None)."""
        order = self.execution_order()
        if current is None:
            return order[0] if order else None
        index = order.index(current)
        return order[index + 1] if index + 1 < len(order) else None
