from __future__ import annotations

from functools import lru_cache
from typing import Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from services.aggregate import aggregate_node_analysis
from services.analyzer import Analyzer
from services.config import AnalyzerSettings, load_settings
from services.embeddings import BaseEmbedder, SentenceTransformerEmbedder
from services.factory import build_analyzer
from services.keywords import extract_keywords
from services.models import (
    AggregateRequest,
    CreateRunRequest,
    CreateRunResponse,
    KeywordsRequest,
    KeywordsResponse,
    NodeAnalysisModel,
    NodeAnalysisResponse,
    RunResultsResponse,
    RunStatusResponse,
    SentimentResultModel,
)
from services.nodes import validate_nodes
from services.runs import RunRecord, RunRegistry, execute_run

router = APIRouter(prefix="/v1/sentiment", tags=["sentiment"])

AnalyzerProvider = Callable[[str | None], Analyzer]

_registry = RunRegistry()
_analyzers: dict[str, Analyzer] = {}


@lru_cache(maxsize=1)
def get_settings() -> AnalyzerSettings:
    return load_settings()


def get_registry() -> RunRegistry:
    return _registry


def get_analyzer_provider(settings: AnalyzerSettings = Depends(get_settings)) -> AnalyzerProvider:
    def provide(backend: str | None) -> Analyzer:
        name = backend or settings.backend
        if name not in _analyzers:
            _analyzers[name] = build_analyzer(settings.model_copy(update={"backend": name}))
        return _analyzers[name]

    return provide


def get_keyword_embedder(settings: AnalyzerSettings = Depends(get_settings)) -> BaseEmbedder:
    return SentenceTransformerEmbedder(
        model_name=settings.embedding_model,
        batch_size=settings.encode_batch_size,
        device=settings.device,
    )


def _run_or_404(registry: RunRegistry, run_id: str) -> RunRecord:
    record = registry.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="run_id not found")
    return record


def _ensure_completed_or_raise(record: RunRecord) -> None:
    if record.status == "completed" and record.run is not None:
        return
    if record.status == "failed":
        raise HTTPException(status_code=400, detail=record.error or "analysis failed")
    raise HTTPException(status_code=409, detail="analysis is still processing")


@router.post("/runs", response_model=CreateRunResponse)
async def create_run(
    body: CreateRunRequest,
    background_tasks: BackgroundTasks,
    registry: RunRegistry = Depends(get_registry),
    provide_analyzer: AnalyzerProvider = Depends(get_analyzer_provider),
):
    try:
        nodes = validate_nodes([n.to_node() for n in body.nodes])
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    analyzer = provide_analyzer(body.backend)
    record = registry.create(total=len(body.texts), backend=analyzer.name)
    background_tasks.add_task(execute_run, registry, record.run_id, analyzer, list(body.texts), nodes)

    base = f"/v1/sentiment/runs/{record.run_id}"
    return CreateRunResponse(
        run_id=record.run_id,
        status="queued",
        created_at=record.created_at,
        total=record.total,
        links={
            "status": f"{base}/status",
            "results": f"{base}/results",
            "nodes": f"{base}/nodes",
        },
    )


@router.get("/runs/{run_id}/status", response_model=RunStatusResponse)
def get_run_status(run_id: str, registry: RunRegistry = Depends(get_registry)):
    return RunStatusResponse.model_validate(_run_or_404(registry, run_id).status_payload())


@router.get("/runs/{run_id}/results", response_model=RunResultsResponse)
def get_run_results(run_id: str, registry: RunRegistry = Depends(get_registry)):
    record = _run_or_404(registry, run_id)
    _ensure_completed_or_raise(record)
    run = record.run
    return RunResultsResponse(
        run_id=run_id,
        summary=run.summary(),
        results=[SentimentResultModel.from_result(r) for r in run.results],
    )


@router.get("/runs/{run_id}/nodes", response_model=NodeAnalysisResponse)
def get_run_nodes(run_id: str, registry: RunRegistry = Depends(get_registry)):
    record = _run_or_404(registry, run_id)
    _ensure_completed_or_raise(record)
    return NodeAnalysisResponse(
        nodes=[NodeAnalysisModel.model_validate(n.as_dict()) for n in record.run.node_analysis()]
    )


@router.post("/aggregate", response_model=NodeAnalysisResponse)
def aggregate(body: AggregateRequest):
    analyses = aggregate_node_analysis(r.to_result() for r in body.results)
    return NodeAnalysisResponse(nodes=[NodeAnalysisModel.model_validate(n.as_dict()) for n in analyses])


@router.post("/keywords", response_model=KeywordsResponse)
def keywords(body: KeywordsRequest, embedder: BaseEmbedder = Depends(get_keyword_embedder)):
    try:
        found = extract_keywords(
            body.texts,
            max_keywords=body.max_keywords,
            embedder=embedder if body.diversify else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return KeywordsResponse(keywords=found)
