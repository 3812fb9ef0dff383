"""Static analysis: line classification and block/function extraction."""

from lunacov.analysis.analyzer import StaticAnalyzer
from lunacov.analysis.cache import AnalysisCache
from lunacov.analysis.classifier import classify
from lunacov.analysis.extractor import BlockExtractor
from lunacov.analysis.models import (
    ROOT_BLOCK_ID,
    BlockKind,
    BlockSpan,
    Classification,
    FunctionSpan,
    LineClass,
    StaticAnalysis,
    Structure,
)
from lunacov.analysis.parser import LuaParser
from lunacov.analysis.source import SourceFile, split_lines

__all__ = [
    "AnalysisCache",
    "BlockExtractor",
    "BlockKind",
    "BlockSpan",
    "Classification",
    "FunctionSpan",
    "LineClass",
    "LuaParser",
    "ROOT_BLOCK_ID",
    "SourceFile",
    "StaticAnalysis",
    "StaticAnalyzer",
    "Structure",
    "classify",
    "split_lines",
]
