"""
Command-line interface for IdeaForge.

Usage:
    ideaforge analyze docs/idea.org --pipeline my_pipeline:build_graph
    ideaforge analyze docs/idea.org --fresh --provider hackernews
    ideaforge refine docs/idea.org --from moscowCategorization
    ideaforge resume docs/idea.org
    ideaforge session docs/idea.org [--clear]

The pipeline is named as `module:attribute`, where the attribute is a
GraphSpec or a zero-argument callable returning one. IDEAFORGE_PIPELINE
supplies the default.
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from ideaforge.config import BridgeConfig, OrchestratorConfig, load_environment
from ideaforge.errors import (
    AnalysisInterrupted,
    IdeaForgeError,
    NodeFailure,
    NoPriorAnalysis,
    OrchestrationIOError,
)
from ideaforge.graph.spec import GraphSpec
from ideaforge.observability import configure_logging
from ideaforge.runner.analysis_runner import (
    AnalysisResult,
    AnalysisRunner,
    AnalyzeOptions,
    RefineOptions,
)
from ideaforge.runner.io import JsonResultWriter
from ideaforge.runtime.progress_bus import ProgressEvent, ProgressLevel
from ideaforge.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def load_pipeline(target: str) -> GraphSpec:
    """Import `module:attribute` and return the GraphSpec it names."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Pipeline must look like 'module:attribute', got {target!r}")
    module = importlib.import_module(module_name)
    obj = getattr(module, attr)
    graph = obj() if callable(obj) and not isinstance(obj, GraphSpec) else obj
    if not isinstance(graph, GraphSpec):
        raise TypeError(f"{target} did not produce a GraphSpec (got {type(graph).__name__})")
    return graph


def _print_progress(event: ProgressEvent) -> None:
    marker = {ProgressLevel.WARNING: "⚠ ", ProgressLevel.ERROR: "✗ "}.get(event.level, "")
    print(f"[{event.node}] {marker}{event.message}", file=sys.stderr)


def _print_result(result: AnalysisResult) -> None:
    print(
        json.dumps(
            {
                "session_id": result.session_id,
                "iteration": result.iteration,
                "nodes_executed": result.nodes_executed,
                "results": result.results,
                "warnings": [e.message for e in result.errors],
            },
            indent=2,
            default=str,
        )
    )


def _install_interrupt_handler(runner: AnalysisRunner) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, runner.interrupt)
    except NotImplementedError:
        # Windows event loops have no add_signal_handler
        signal.signal(signal.SIGINT, lambda signum, frame: loop.call_soon_threadsafe(runner.interrupt))


def _build_runner(args: argparse.Namespace, with_bridge: bool = True) -> AnalysisRunner:
    graph = load_pipeline(args.pipeline)
    config = OrchestratorConfig()
    if args.state_dir:
        config.state_dir = args.state_dir
    if with_bridge:
        return AnalysisRunner.from_config(graph, config, BridgeConfig.from_sources())
    store = CheckpointStore(config.state_dir, max_history=config.checkpoint_history)
    return AnalysisRunner(graph, store)


async def _run_with_runner(
    args: argparse.Namespace,
    action: Callable[[AnalysisRunner], Awaitable[AnalysisResult]],
) -> int:
    runner = _build_runner(args)
    if not args.quiet:
        runner.subscribe(_print_progress)
    _install_interrupt_handler(runner)
    try:
        result = await action(runner)
        if args.output:
            await JsonResultWriter().write_results(result.state, args.output)
        else:
            _print_result(result)
        return EXIT_OK
    except AnalysisInterrupted as e:
        print(f"{e}. Progress saved; run 'ideaforge resume {args.file}' to continue.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except NoPriorAnalysis as e:
        print(str(e), file=sys.stderr)
        return EXIT_ERROR
    except NodeFailure as e:
        logger.debug("Node failure", exc_info=e)
        print(f"Analysis failed: {e}", file=sys.stderr)
        return EXIT_ERROR
    except OrchestrationIOError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        await runner.aclose()


def cmd_analyze(args: argparse.Namespace) -> int:
    options = AnalyzeOptions(force_new_session=args.fresh, providers=args.provider)
    return asyncio.run(_run_with_runner(args, lambda runner: runner.analyze(args.file, options)))


def cmd_refine(args: argparse.Namespace) -> int:
    options = RefineOptions(start_from=args.start_from, providers=args.provider)
    return asyncio.run(_run_with_runner(args, lambda runner: runner.refine(args.file, options)))


def cmd_resume(args: argparse.Namespace) -> int:
    return asyncio.run(_run_with_runner(args, lambda runner: runner.resume(args.file, providers=args.provider)))


def cmd_session(args: argparse.Namespace) -> int:
    async def _session() -> int:
        runner = _build_runner(args, with_bridge=False)
        try:
            if args.clear:
                deleted = await runner.clear_session(args.file)
                print("Session cleared" if deleted else "No saved session", file=sys.stderr)
                return EXIT_OK
            info = await runner.get_session(args.file)
            print(info.model_dump_json(indent=2))
            return EXIT_OK
        finally:
            await runner.aclose()

    return asyncio.run(_session())


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register analyze, refine, resume and session commands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("file", help="Document to analyze")
    common.add_argument(
        "--pipeline",
        default=os.environ.get("IDEAFORGE_PIPELINE"),
        required="IDEAFORGE_PIPELINE" not in os.environ,
        help="Pipeline factory as module:attribute (default: $IDEAFORGE_PIPELINE)",
    )
    common.add_argument("--state-dir", default=None, help="Checkpoint directory (default: ~/.ideaforge/state)")

    run_opts = argparse.ArgumentParser(add_help=False)
    run_opts.add_argument(
        "--provider",
        action="append",
        default=None,
        help="Research provider to enable (repeatable; default: all)",
    )
    run_opts.add_argument("--output", "-o", default=None, help="Write results JSON to this file")
    run_opts.add_argument("--quiet", "-q", action="store_true", help="Suppress progress output")

    analyze = subparsers.add_parser("analyze", parents=[common, run_opts], help="Analyze a document")
    analyze.add_argument("--fresh", action="store_true", help="Start a new session, ignoring saved progress")
    analyze.set_defaults(func=cmd_analyze)

    refine = subparsers.add_parser("refine", parents=[common, run_opts], help="Refine a previous analysis")
    refine.add_argument("--from", dest="start_from", default=None, help="Node to restart from")
    refine.set_defaults(func=cmd_refine)

    resume = subparsers.add_parser(
        "resume", parents=[common, run_opts], help="Continue an interrupted or failed analysis"
    )
    resume.set_defaults(func=cmd_resume)

    session = subparsers.add_parser("session", parents=[common], help="Show or clear a document's session")
    session.add_argument("--clear", action="store_true", help="Delete saved progress")
    session.set_defaults(func=cmd_session)


def main(argv: list[str] | None = None) -> int:
    load_environment()

    parser = argparse.ArgumentParser(
        prog="ideaforge",
        description="IdeaForge - checkpointed document analysis pipelines",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"), help="Logging level")
    parser.add_argument("--log-format", choices=["auto", "json", "human"], default="auto", help="Log output format")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        return args.func(args)
    except (ImportError, ValueError, TypeError) as e:
        # Pipeline could not be loaded or was invalid
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except IdeaForgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
