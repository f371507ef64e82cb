"""Tests for GraphSpec validation and ordering."""

import pytest

from ideaforge.graph.node import FunctionNode
from ideaforge.graph.spec import GraphSpec, NodeSpec


def node(name: str) -> FunctionNode:
    return FunctionNode(name, lambda state, ctx: name)


def spec(name: str, *deps: str) -> NodeSpec:
    return NodeSpec.from_node(node(name), depends_on=list(deps))


class TestValidate:
    def test_valid_linear_graph(self):
        graph = GraphSpec.linear("g", [node("A"), node("B"), node("C")])
        assert graph.validate() == []
        assert graph.execution_order() == ["A", "B", "C"]

    def test_duplicate_names(self):
        graph = GraphSpec(id="g", nodes=[spec("A"), spec("A")])
        assert any("Duplicate" in e for e in graph.validate())

    def test_unknown_dependency(self):
        graph = GraphSpec(id="g", nodes=[spec("A", "ghost")])
        assert graph.validate() == ["Node 'A' depends on missing node 'ghost'"]

    def test_cycle_detected(self):
        graph = GraphSpec(id="g", nodes=[spec("A", "C"), spec("B", "A"), spec("C", "B")])
        errors = graph.validate()
        assert len(errors) == 1
        assert "cycle" in errors[0]

    def test_missing_implementation(self):
        graph = GraphSpec(id="g", nodes=[NodeSpec(name="A")])
        assert graph.validate() == ["Node 'A' has no implementation"]

    def test_unknown_refinement_entry(self):
        graph = GraphSpec.linear("g", [node("A")], refinement_entry="Z")
        assert graph.validate() == ["Refinement entry 'Z' not found"]

    def test_execution_order_raises_on_invalid_graph(self):
        graph = GraphSpec(id="g", nodes=[spec("A", "B"), spec("B", "A")])
        with pytest.raises(ValueError, match="Invalid graph"):
            graph.execution_order()


class TestOrdering:
    def test_declaration_order_breaks_ties(self):
        graph = GraphSpec(
            id="g",
            nodes=[spec("parse"), spec("hn", "parse"), spec("reddit", "parse"), spec("synth", "hn", "reddit")],
        )
        assert graph.execution_order() == ["parse", "hn", "reddit", "synth"]

    def test_dependencies_before_dependents_regardless_of_declaration(self):
        graph = GraphSpec(id="g", nodes=[spec("C", "B"), spec("B", "A"), spec("A")])
        assert graph.execution_order() == ["A", "B", "C"]

    def test_order_is_stable(self):
        graph = GraphSpec(id="g", nodes=[spec("X"), spec("Y"), spec("Z", "X")])
        assert graph.execution_order() == graph.execution_order() == ["X", "Y", "Z"]

    def test_nodes_from(self):
        graph = GraphSpec.linear("g", [node("A"), node("B"), node("C")])
        assert graph.nodes_from("B") == ["B", "C"]
        with pytest.raises(ValueError, match="Unknown node"):
            graph.nodes_from("Q")

    def test_next_node(self):
        graph = GraphSpec.linear("g", [node("A"), node("B")])
        assert graph.next_node(None) == "A"
        assert graph.next_node("A") == "B"
        assert graph.next_node("B") is None

    def test_serialisation_excludes_implementation(self):
        graph = GraphSpec.linear("g", [node("A"), node("B")])
        data = graph.model_dump()
        assert data["nodes"][1] == {"name": "B", "description": "", "depends_on": ["A"]}
