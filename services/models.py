from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from services.nodes import MAX_NODES
from services.types import KPIScore, Node, SentimentResult

MAX_TEXTS_PER_RUN = 50000


class NodeIn(BaseModel):
    id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=1, max_length=200)
    keywords: list[str] = Field(default_factory=list, max_length=50)

    def to_node(self) -> Node:
        return Node.from_dict(self.model_dump())


class KPIScoreModel(BaseModel):
    trust: float = Field(default=0.0, ge=-1.0, le=1.0)
    optimism: float = Field(default=0.0, ge=-1.0, le=1.0)
    frustration: float = Field(default=0.0, ge=-1.0, le=1.0)
    clarity: float = Field(default=0.0, ge=-1.0, le=1.0)
    access: float = Field(default=0.0, ge=-1.0, le=1.0)
    fairness: float = Field(default=0.0, ge=-1.0, le=1.0)


class SentimentResultModel(BaseModel):
    text: str
    node_id: str
    node_name: str
    polarity: Literal["positive", "neutral", "negative"]
    polarity_score: float = Field(ge=-1.0, le=1.0)
    kpi_scores: KPIScoreModel
    confidence: float = Field(ge=0.0, le=1.0)
    is_fallback: bool = False

    @classmethod
    def from_result(cls, result: SentimentResult) -> "SentimentResultModel":
        return cls.model_validate(result.as_dict())

    def to_result(self) -> SentimentResult:
        data = self.model_dump()
        data["kpi_scores"] = KPIScore.from_mapping(data["kpi_scores"])
        return SentimentResult(**data)


class CreateRunRequest(BaseModel):
    texts: list[str] = Field(max_length=MAX_TEXTS_PER_RUN)
    nodes: list[NodeIn] = Field(min_length=1, max_length=MAX_NODES)
    backend: Literal["local", "remote"] | None = None


class CreateRunResponse(BaseModel):
    run_id: str
    status: Literal["queued", "processing"]
    created_at: datetime
    total: int
    links: dict[str, str]


class RunStatusResponse(BaseModel):
    run_id: str
    status: Literal["queued", "processing", "completed", "failed"]
    progress: dict[str, Any]
    error: str | None = None
    updated_at: str | None = None
    warnings: list[str] = Field(default_factory=list)
    partial: bool = False
    abort_reason: str | None = None
    advisory: str | None = None


class RunResultsResponse(BaseModel):
    run_id: str
    summary: dict[str, Any]
    results: list[SentimentResultModel]


class NodeAnalysisModel(BaseModel):
    node_id: str
    node_name: str
    total_texts: int = Field(ge=1)
    avg_polarity: float
    avg_kpi_scores: KPIScoreModel
    sentiment_distribution: dict[str, int]


class NodeAnalysisResponse(BaseModel):
    nodes: list[NodeAnalysisModel]


class AggregateRequest(BaseModel):
    results: list[SentimentResultModel]


class KeywordsRequest(BaseModel):
    texts: list[str] = Field(min_length=1, max_length=MAX_TEXTS_PER_RUN)
    max_keywords: int = Field(default=10, ge=1, le=50)
    diversify: bool = False


class KeywordsResponse(BaseModel):
    keywords: list[str]
