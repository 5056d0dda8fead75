from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

Polarity = Literal["positive", "neutral", "negative"]

KPI_DIMENSIONS: tuple[str, ...] = ("trust", "optimism", "frustration", "clarity", "access", "fairness")
MAX_RESULT_CONFIDENCE = 0.95


def clamp(value: float, minimum: float = -1.0, maximum: float = 1.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if parsed != parsed:
        return 0.0
    return max(minimum, min(maximum, parsed))


@dataclass(frozen=True)
class Node:
    id: str
    name: str
    keywords: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Node":
        keywords = payload.get("keywords") or []
        return cls(
            id=str(payload.get("id", "")).strip(),
            name=str(payload.get("name", "")).strip(),
            keywords=tuple(str(k).strip() for k in keywords if str(k).strip()),
        )

    @property
    def fingerprint(self) -> tuple[str, tuple[str, ...]]:
        return (self.name, self.keywords)


@dataclass(frozen=True)
class RawSentiment:
    label: str
    score: float


@dataclass(frozen=True)
class PolarityScore:
    value: float
    category: Polarity


@dataclass(frozen=True)
class KPIScore:
    trust: float = 0.0
    optimism: float = 0.0
    frustration: float = 0.0
    clarity: float = 0.0
    access: float = 0.0
    fairness: float = 0.0

    @classmethod
    def from_mapping(cls, values: dict[str, float]) -> "KPIScore":
        return cls(**{dim: clamp(values.get(dim, 0.0)) for dim in KPI_DIMENSIONS})

    @classmethod
    def from_sequence(cls, values: list[Any] | tuple[Any, ...]) -> "KPIScore":
        padded = list(values)[: len(KPI_DIMENSIONS)]
        padded += [0.0] * (len(KPI_DIMENSIONS) - len(padded))
        return cls(**{dim: clamp(v) for dim, v in zip(KPI_DIMENSIONS, padded)})

    def as_dict(self) -> dict[str, float]:
        return {dim: float(getattr(self, dim)) for dim in KPI_DIMENSIONS}


@dataclass(frozen=True)
class NodeMatch:
    node_id: str
    node_name: str
    confidence: float


@dataclass(frozen=True)
class SentimentResult:
    text: str
    node_id: str
    node_name: str
    polarity: Polarity
    polarity_score: float
    kpi_scores: KPIScore
    confidence: float
    is_fallback: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NodeAnalysis:
    node_id: str
    node_name: str
    total_texts: int
    avg_polarity: float
    avg_kpi_scores: KPIScore
    sentiment_distribution: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
