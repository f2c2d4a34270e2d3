from .schemas import Signal, TickerMention, BatchResult
from .batcher import AnalysisBatch, build_analysis_batches, format_item
from .extractor import (
    DEFAULT_PROMPT,
    AnalysisClient,
    safe_parse_signals,
    analyze_batches,
    enrich_signals,
)

__all__ = [
    "Signal",
    "TickerMention",
    "BatchResult",
    "AnalysisBatch",
    "build_analysis_batches",
    "format_item",
    "DEFAULT_PROMPT",
    "AnalysisClient",
    "safe_parse_signals",
    "analyze_batches",
    "enrich_signals",
]
