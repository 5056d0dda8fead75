from __future__ import annotations

from collections import Counter
from typing import Iterable

from services.types import KPI_DIMENSIONS, KPIScore, NodeAnalysis, SentimentResult


def aggregate_node_analysis(results: Iterable[SentimentResult]) -> list[NodeAnalysis]:
    groups: dict[str, list[SentimentResult]] = {}
    for result in results:
        groups.setdefault(result.node_id, []).append(result)

    out: list[NodeAnalysis] = []
    for node_id, members in groups.items():
        total = len(members)
        if total == 0:
            continue
        avg_polarity = sum(r.polarity_score for r in members) / total
        avg_kpis = {dim: sum(getattr(r.kpi_scores, dim) for r in members) / total for dim in KPI_DIMENSIONS}
        counts = Counter(r.polarity for r in members)
        out.append(
            NodeAnalysis(
                node_id=node_id,
                node_name=members[0].node_name,
                total_texts=total,
                avg_polarity=float(avg_polarity),
                avg_kpi_scores=KPIScore.from_mapping(avg_kpis),
                sentiment_distribution={
                    "positive": int(counts.get("positive", 0)),
                    "neutral": int(counts.get("neutral", 0)),
                    "negative": int(counts.get("negative", 0)),
                },
            )
        )
    return out
