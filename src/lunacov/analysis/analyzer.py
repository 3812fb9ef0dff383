"""Static analysis entry point: classify, extract, cache."""

from __future__ import annotations

import structlog

from lunacov.analysis.cache import AnalysisCache
from lunacov.analysis.classifier import classify, unterminated_marker
from lunacov.analysis.extractor import BlockExtractor
from lunacov.analysis.models import StaticAnalysis
from lunacov.analysis.parser import LuaParser
from lunacov.analysis.source import SourceFile
from lunacov.config.models import ClassifierConfig
from lunacov.core.errors import AnalysisError

log = structlog.get_logger(__name__)


def _policy_key(config: ClassifierConfig) -> str:
    return f"structural={int(config.structural_lines_executable)}"


class StaticAnalyzer:
    """Runs the classifier and the block extractor once per file version.

    Results are cached by (path, fingerprint, policy). Static-analysis
    failures never escape: they come back as flags on the StaticAnalysis.
    """

    def __init__(
        self,
        config: ClassifierConfig | None = None,
        cache: AnalysisCache | None = None,
        parser: LuaParser | None = None,
    ) -> None:
        self.config = config if config is not None else ClassifierConfig()
        self.cache = cache if cache is not None else AnalysisCache()
        self.parser = parser if parser is not None else LuaParser()
        self._extractor = BlockExtractor(self.parser)
        self._policy = _policy_key(self.config)

    def analyze(self, source: SourceFile) -> StaticAnalysis:
        cached = self.cache.get(source.path, source.fingerprint, self._policy)
        if cached is not None:
            return cached

        classification = classify(source.lines, self.config)
        if classification.incomplete:
            err = AnalysisError.classification_incomplete(
                source.path,
                classification.incomplete_line or 0,
                unterminated_marker(source.lines) or "?",
            )
            log.warning("analysis.classification_incomplete", path=source.path, error=err.message)

        structure = self._extractor.extract(
            source.text,
            source.line_count,
            path=source.path,
            classification=classification,
        )
        analysis = StaticAnalysis(
            path=source.path,
            fingerprint=source.fingerprint,
            classification=classification,
            blocks=structure.blocks,
            functions=structure.functions,
            parse_error=structure.parse_error,
            closure_lines=structure.closure_lines,
            loop_entries=structure.loop_entries,
            loop_exits=structure.loop_exits,
        )
        self.cache.put(analysis, self._policy)
        log.debug(
            "analysis.completed",
            path=source.path,
            lines=source.line_count,
            executable=len(classification.executable_lines),
        )
        return analysis

    def analyze_path(self, path: str) -> tuple[SourceFile, StaticAnalysis]:
        """Read and analyze a file.

        Raises:
            AnalysisError: If the file cannot be read.
        """
        source = SourceFile.from_path(path)
        return source, self.analyze(source)
