import asyncio

import pytest

from conftest import BrokenEmbedder, HashingEmbedder, LexiconClassifier
from services.errors import CapabilityInitializationError, LowSuccessRateWarning
from services.pipeline import LocalAnalyzer, select_batch_size
from services.types import MAX_RESULT_CONFIDENCE, KPI_DIMENSIONS

SCENARIO_TEXTS = [
    "I love this transparent and fair process",
    "This is so frustrating and broken",
    "The weather is nice today",
]


@pytest.mark.parametrize(
    "n_items,mean_length,expected",
    [
        (10, 5000.0, 50),
        (99, 10.0, 50),
        (100, 1500.0, 100),
        (20000, 1500.0, 100),
        (20000, 80.0, 500),
        (5000, 80.0, 250),
    ],
)
def test_batch_size_table(n_items, mean_length, expected):
    assert select_batch_size(n_items, mean_length) == expected


def test_end_to_end_scenario(analyzer, nodes):
    run = asyncio.run(analyzer.analyze(SCENARIO_TEXTS, nodes))
    assert len(run.results) == 3
    first, second, third = run.results

    assert first.node_id == "A"
    assert first.polarity == "positive"
    assert first.kpi_scores.trust > 0
    assert first.kpi_scores.fairness > 0

    assert second.node_id == "B"
    assert second.polarity == "negative"
    assert second.kpi_scores.frustration > 0

    assert third.node_id in {"A", "B"}
    assert third.polarity == "neutral"
    assert abs(third.polarity_score) < 0.1


def test_result_ranges_and_node_membership(analyzer, nodes):
    texts = SCENARIO_TEXTS + ["Access is easy and clear", "Terrible, awful, never fair or honest"]
    run = asyncio.run(analyzer.analyze(texts, nodes))
    node_ids = {n.id for n in nodes}
    for result in run.results:
        assert -1.0 <= result.polarity_score <= 1.0
        assert 0.0 <= result.confidence <= MAX_RESULT_CONFIDENCE
        assert result.node_id in node_ids
        for dim in KPI_DIMENSIONS:
            assert -1.0 <= getattr(result.kpi_scores, dim) <= 1.0


def test_results_keep_input_order(analyzer, nodes):
    texts = [f"message number {i} is good" for i in range(30)]
    run = asyncio.run(analyzer.analyze(texts, nodes))
    assert [r.text for r in run.results] == texts


def test_repeat_analysis_is_identical(analyzer, nodes):
    first = asyncio.run(analyzer.analyze(SCENARIO_TEXTS, nodes))
    cached = len(analyzer.context.text_embeddings)
    second = asyncio.run(analyzer.analyze(SCENARIO_TEXTS, nodes))
    assert first.results == second.results
    assert len(analyzer.context.text_embeddings) == cached == 3


def test_failed_items_are_dropped_with_warning(analyzer, nodes):
    texts = ["good service"] * 8 + ["boom goes the service", "   "]
    with pytest.warns(LowSuccessRateWarning):
        run = asyncio.run(analyzer.analyze(texts, nodes))
    assert len(run.results) == 8
    assert run.failed == 2
    assert run.success_rate == pytest.approx(0.8)
    assert run.warnings


def test_high_success_rate_has_no_warning(analyzer, nodes, recwarn):
    texts = ["good service"] * 19 + ["boom"]
    run = asyncio.run(analyzer.analyze(texts, nodes))
    assert len(run.results) == 19
    assert run.success_rate == pytest.approx(0.95)
    assert not [w for w in recwarn if issubclass(w.category, LowSuccessRateWarning)]
    assert run.warnings == []


class RecordingEmbedder(HashingEmbedder):
    def __init__(self) -> None:
        super().__init__()
        self.sizes: list[int] = []

    def _encode_raw(self, texts):
        self.sizes.append(len(texts))
        return super()._encode_raw(texts)


class RecordingClassifier(LexiconClassifier):
    def __init__(self) -> None:
        self.sizes: list[int] = []

    def _classify_raw(self, texts):
        self.sizes.append(len(texts))
        return super()._classify_raw(texts)


def test_models_are_called_once_per_batch(nodes):
    embedder = RecordingEmbedder()
    classifier = RecordingClassifier()
    analyzer = LocalAnalyzer(embedder, classifier)
    texts = [f"message number {i} is good" for i in range(30)] + ["message number 0 is good"]
    run = asyncio.run(analyzer.analyze(texts, nodes))
    assert len(run.results) == 31
    assert classifier.sizes == [30]
    assert 30 in embedder.sizes
    assert 1 not in embedder.sizes

    asyncio.run(analyzer.analyze(texts, nodes))
    assert classifier.sizes == [30]


def test_batch_failure_only_drops_failing_items(nodes):
    classifier = RecordingClassifier()
    analyzer = LocalAnalyzer(HashingEmbedder(), classifier)
    texts = ["good service", "boom", "bad service"]
    with pytest.warns(LowSuccessRateWarning):
        run = asyncio.run(analyzer.analyze(texts, nodes))
    assert [r.text for r in run.results] == ["good service", "bad service"]
    assert classifier.sizes[0] == 3
    assert sorted(classifier.sizes[1:]) == [1, 1, 1]


def test_progress_is_monotonic_and_reports_eta(analyzer, nodes):
    progress: list[int] = []
    statuses: list[str] = []
    texts = [f"text {i} is fine" for i in range(99)]
    asyncio.run(analyzer.analyze(texts, nodes, on_progress=progress.append, on_status=statuses.append))
    assert progress == sorted(progress)
    assert progress[0] == 51 and progress[-1] == 100
    assert all(0 <= p <= 100 for p in progress)
    assert any("remaining" in s for s in statuses)
    assert statuses[-1].startswith("Analysis complete")


def test_empty_input_returns_empty_run(analyzer, nodes):
    progress: list[int] = []
    run = asyncio.run(analyzer.analyze([], nodes, on_progress=progress.append))
    assert run.results == []
    assert progress == [100]


def test_initialization_failure_is_fatal(nodes):
    analyzer = LocalAnalyzer(BrokenEmbedder(), LexiconClassifier())
    with pytest.raises(CapabilityInitializationError):
        asyncio.run(analyzer.analyze(SCENARIO_TEXTS, nodes))


def test_invalid_nodes_rejected(analyzer):
    with pytest.raises(ValueError):
        asyncio.run(analyzer.analyze(SCENARIO_TEXTS, []))


def test_node_analysis_from_run(analyzer, nodes):
    run = asyncio.run(analyzer.analyze(SCENARIO_TEXTS, nodes))
    summary = {n.node_id: n for n in run.node_analysis()}
    assert sum(n.total_texts for n in summary.values()) == 3
    assert summary["B"].sentiment_distribution["negative"] == 1
