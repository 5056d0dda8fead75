from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from services.aggregate import aggregate_node_analysis
from services.embeddings import EmbeddingCache
from services.kpi import ConceptCache
from services.nodes import NodeEmbeddingCache
from services.sentiment_model import SentimentCache
from services.types import Node, NodeAnalysis, SentimentResult

ProgressCallback = Callable[[int], None]
StatusCallback = Callable[[str], None]


@dataclass
class AnalysisContext:
    """Caches shared by every run of one analyzer instance."""

    text_embeddings: EmbeddingCache = field(default_factory=EmbeddingCache)
    node_embeddings: NodeEmbeddingCache = field(default_factory=NodeEmbeddingCache)
    sentiments: SentimentCache = field(default_factory=SentimentCache)
    concepts: ConceptCache = field(default_factory=ConceptCache)


@dataclass
class AnalysisRun:
    results: list[SentimentResult]
    total: int
    processed: int
    failed: int = 0
    partial: bool = False
    abort_reason: str | None = None
    advisory: str | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_sec: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.processed <= 0:
            return 1.0
        return (self.processed - self.failed) / self.processed

    def node_analysis(self) -> list[NodeAnalysis]:
        return aggregate_node_analysis(self.results)

    def summary(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "returned": len(self.results),
            "success_rate": round(self.success_rate, 4),
            "partial": self.partial,
            "abort_reason": self.abort_reason,
            "advisory": self.advisory,
            "warnings": list(self.warnings),
            "elapsed_sec": round(self.elapsed_sec, 4),
        }


class Analyzer(ABC):
    name = "analyzer"

    async def warm_up(self) -> None:
        pass

    @abstractmethod
    async def analyze(
        self,
        texts: Sequence[str],
        nodes: Sequence[Node],
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> AnalysisRun:
        raise NotImplementedError
