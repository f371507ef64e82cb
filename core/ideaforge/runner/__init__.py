"""Runner - analyze and refine documents end to end."""

from ideaforge.runner.analysis_runner import (
    AnalysisResult,
    AnalysisRunner,
    AnalyzeOptions,
    RefineOptions,
)
from ideaforge.runner.io import DocumentLoader, FileDocumentLoader, JsonResultWriter, ResultWriter

__all__ = [
    "AnalysisResult",
    "AnalysisRunner",
    "AnalyzeOptions",
    "DocumentLoader",
    "FileDocumentLoader",
    "JsonResultWriter",
    "RefineOptions",
    "ResultWriter",
]
