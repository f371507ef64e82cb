"""Tests for the ideaforge command line."""

import json
import sys
import types
from pathlib import Path

import pytest

from ideaforge.cli import EXIT_ERROR, EXIT_OK, load_pipeline, main
from ideaforge.graph.node import FunctionNode
from ideaforge.graph.spec import GraphSpec


def build_graph() -> GraphSpec:
    return GraphSpec.linear(
        "cli-pipeline",
        [
            FunctionNode("documentParser", lambda state, ctx: len(state.document_content)),
            FunctionNode("summary", lambda state, ctx: "looks promising"),
        ],
    )


def build_flaky_graph(flags: dict) -> GraphSpec:
    def summary(state, ctx):
        if flags["fail"]:
            raise RuntimeError("model timed out")
        return "looks promising"

    return GraphSpec.linear(
        "cli-flaky",
        [
            FunctionNode("documentParser", lambda state, ctx: len(state.document_content)),
            FunctionNode("summary", summary),
        ],
    )


@pytest.fixture
def pipeline_module(monkeypatch) -> str:
    module = types.ModuleType("cli_test_pipeline")
    module.build_graph = build_graph
    module.graph = build_graph()
    module.not_a_graph = 42
    module.flags = {"fail": False}
    module.flaky = lambda: build_flaky_graph(module.flags)
    monkeypatch.setitem(sys.modules, "cli_test_pipeline", module)
    monkeypatch.delenv("IDEAFORGE_STATE_DIR", raising=False)
    return "cli_test_pipeline"


@pytest.fixture
def document(tmp_path: Path) -> str:
    path = tmp_path / "idea.md"
    path.write_text("# Idea\nShared grocery lists\n", encoding="utf-8")
    return str(path)


class TestLoadPipeline:
    def test_factory(self, pipeline_module):
        assert load_pipeline(f"{pipeline_module}:build_graph").id == "cli-pipeline"

    def test_instance(self, pipeline_module):
        assert load_pipeline(f"{pipeline_module}:graph").node_names() == ["documentParser", "summary"]

    def test_bad_target(self):
        with pytest.raises(ValueError):
            load_pipeline("no_colon_here")

    def test_not_a_graph(self, pipeline_module):
        with pytest.raises(TypeError):
            load_pipeline(f"{pipeline_module}:not_a_graph")


class TestMain:
    def test_analyze_writes_output(self, pipeline_module, document, tmp_path):
        output = tmp_path / "out" / "results.json"
        code = main(
            [
                "analyze",
                document,
                "--pipeline",
                f"{pipeline_module}:build_graph",
                "--state-dir",
                str(tmp_path / "state"),
                "-q",
                "-o",
                str(output),
            ]
        )

        assert code == EXIT_OK
        data = json.loads(output.read_text())
        assert data["results"] == {"documentParser": 28, "summary": "looks promising"}
        assert data["iteration"] == 0

    def test_session_and_clear(self, pipeline_module, document, tmp_path, capsys):
        common = ["--pipeline", f"{pipeline_module}:graph", "--state-dir", str(tmp_path / "state")]
        assert main(["analyze", document, "-q", *common]) == EXIT_OK
        capsys.readouterr()

        assert main(["session", document, *common]) == EXIT_OK
        info = json.loads(capsys.readouterr().out)
        assert info["has_checkpoint"] is True
        assert info["last_position"] == "summary"

        assert main(["session", document, "--clear", *common]) == EXIT_OK
        assert main(["session", document, *common]) == EXIT_OK
        assert json.loads(capsys.readouterr().out)["has_checkpoint"] is False

    def test_refine_without_analysis(self, pipeline_module, document, tmp_path):
        code = main(
            ["refine", document, "-q", "--pipeline", f"{pipeline_module}:graph", "--state-dir", str(tmp_path)]
        )
        assert code == EXIT_ERROR

    def test_missing_document(self, pipeline_module, tmp_path):
        code = main(
            [
                "analyze",
                str(tmp_path / "missing.md"),
                "-q",
                "--pipeline",
                f"{pipeline_module}:graph",
                "--state-dir",
                str(tmp_path),
            ]
        )
        assert code == EXIT_ERROR

    def test_unknown_pipeline_module(self, document, tmp_path):
        code = main(["analyze", document, "--pipeline", "no_such_module_xyz:graph", "--state-dir", str(tmp_path)])
        assert code == EXIT_ERROR

    def test_resume_after_failed_node(self, pipeline_module, document, tmp_path, capsys):
        common = ["--pipeline", f"{pipeline_module}:flaky", "--state-dir", str(tmp_path / "state")]
        sys.modules[pipeline_module].flags["fail"] = True
        assert main(["analyze", document, "-q", *common]) == EXIT_ERROR
        assert "model timed out" in capsys.readouterr().err

        sys.modules[pipeline_module].flags["fail"] = False
        assert main(["resume", document, "-q", *common]) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["nodes_executed"] == ["summary"]
        assert data["results"] == {"documentParser": 28, "summary": "looks promising"}

    def test_resume_without_analysis(self, pipeline_module, document, tmp_path, capsys):
        code = main(
            ["resume", document, "-q", "--pipeline", f"{pipeline_module}:graph", "--state-dir", str(tmp_path)]
        )
        assert code == EXIT_ERROR
        assert "No previous analysis" in capsys.readouterr().err
