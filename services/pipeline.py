from __future__ import annotations

import asyncio
import logging
import time
import warnings
from typing import Sequence

import numpy as np

from services.analyzer import AnalysisContext, AnalysisRun, Analyzer, ProgressCallback, StatusCallback
from services.embeddings import BaseEmbedder
from services.errors import CapabilityInitializationError, LowSuccessRateWarning, PerItemAnalysisError
from services.kpi import DEFAULT_NEGATION_CHARS, DEFAULT_NEGATION_TOKENS, KPIConceptScorer
from services.nodes import NodeAttributor, validate_nodes
from services.normalizer import normalize_text
from services.polarity import DEFAULT_SHORT_TEXT_DAMPING, attenuate_for_short_text, calibrate_polarity
from services.progress import ProgressReporter
from services.sentiment_model import BaseSentimentClassifier
from services.types import MAX_RESULT_CONFIDENCE, Node, RawSentiment, SentimentResult, clamp

logger = logging.getLogger(__name__)

SMALL_CORPUS_ITEMS = 100
LARGE_CORPUS_ITEMS = 10000
LONG_MEAN_CHARS = 1000
SMALL_CORPUS_BATCH = 50
LONG_TEXT_BATCH = 100
LARGE_CORPUS_BATCH = 500
DEFAULT_BATCH = 250
DEFAULT_SUCCESS_RATE_THRESHOLD = 0.9


def select_batch_size(n_items: int, mean_length: float) -> int:
    if n_items < SMALL_CORPUS_ITEMS:
        return SMALL_CORPUS_BATCH
    if mean_length > LONG_MEAN_CHARS:
        return LONG_TEXT_BATCH
    if n_items > LARGE_CORPUS_ITEMS:
        return LARGE_CORPUS_BATCH
    return DEFAULT_BATCH


def _mean_length(texts: Sequence[str]) -> float:
    if not texts:
        return 0.0
    return float(np.mean([len(str(t or "")) for t in texts]))


class LocalAnalyzer(Analyzer):
    name = "local"

    def __init__(
        self,
        embedder: BaseEmbedder,
        classifier: BaseSentimentClassifier,
        context: AnalysisContext | None = None,
        negation_window_tokens: int = DEFAULT_NEGATION_TOKENS,
        negation_window_chars: int = DEFAULT_NEGATION_CHARS,
        short_text_damping: float = DEFAULT_SHORT_TEXT_DAMPING,
        success_rate_threshold: float = DEFAULT_SUCCESS_RATE_THRESHOLD,
    ) -> None:
        self.embedder = embedder
        self.classifier = classifier
        self.context = context if context is not None else AnalysisContext()
        self.short_text_damping = float(short_text_damping)
        self.success_rate_threshold = float(success_rate_threshold)
        self.kpi_scorer = KPIConceptScorer(
            embedder,
            cache=self.context.concepts,
            negation_window_tokens=negation_window_tokens,
            negation_window_chars=negation_window_chars,
        )
        self.attributor = NodeAttributor(embedder, cache=self.context.node_embeddings)

    async def warm_up(self) -> None:
        await asyncio.gather(
            asyncio.to_thread(self.embedder.load),
            asyncio.to_thread(self.classifier.load),
        )
        await self.kpi_scorer.prepare()

    async def _text_embedding(self, normalized: str) -> np.ndarray:
        cached = self.context.text_embeddings.get(normalized)
        if cached is not None:
            return cached
        vector = await self.embedder.embed(normalized)
        return self.context.text_embeddings.insert(normalized, vector)

    async def _raw_sentiment(self, normalized: str) -> RawSentiment:
        cached = self.context.sentiments.get(normalized)
        if cached is not None:
            return cached
        raw = await self.classifier.classify(normalized)
        return self.context.sentiments.insert(normalized, raw)

    async def analyze_item(self, text: str, nodes: Sequence[Node]) -> SentimentResult:
        normalized = normalize_text(text)
        if not normalized:
            raise ValueError("text is empty after normalization")

        embedding, raw = await asyncio.gather(self._text_embedding(normalized), self._raw_sentiment(normalized))
        polarity = calibrate_polarity(raw.label, raw.score)
        kpi_polarity = attenuate_for_short_text(polarity.value, normalized, self.short_text_damping)
        kpi_scores = await self.kpi_scorer.score(normalized, embedding, kpi_polarity)
        match = await self.attributor.attribute(embedding, nodes)

        return SentimentResult(
            text=text,
            node_id=match.node_id,
            node_name=match.node_name,
            polarity=polarity.category,
            polarity_score=polarity.value,
            kpi_scores=kpi_scores,
            confidence=clamp(min(raw.score, match.confidence), 0.0, MAX_RESULT_CONFIDENCE),
        )

    async def _prefetch(self, batch: Sequence[str]) -> None:
        """Fill the embedding and sentiment caches for a batch with one model call each."""
        normalized = [n for n in dict.fromkeys(normalize_text(t) for t in batch) if n]
        embed_misses = [n for n in normalized if n not in self.context.text_embeddings]
        sentiment_misses = [n for n in normalized if self.context.sentiments.get(n) is None]

        if embed_misses:
            try:
                vectors = await self.embedder.embed_batch(embed_misses)
            except CapabilityInitializationError:
                raise
            except Exception as exc:
                logger.warning("Batch embedding failed, falling back to per-item calls: %s", exc)
            else:
                for text, vector in vectors.items():
                    self.context.text_embeddings.insert(text, vector)

        if sentiment_misses:
            try:
                raws = await self.classifier.classify_batch(sentiment_misses)
            except CapabilityInitializationError:
                raise
            except Exception as exc:
                logger.warning("Batch classification failed, falling back to per-item calls: %s", exc)
            else:
                for text, raw in zip(sentiment_misses, raws):
                    self.context.sentiments.insert(text, raw)

    async def _analyze_isolated(
        self, index: int, text: str, nodes: Sequence[Node]
    ) -> SentimentResult | PerItemAnalysisError:
        try:
            return await self.analyze_item(text, nodes)
        except CapabilityInitializationError:
            raise
        except Exception as exc:
            error = PerItemAnalysisError(index, text, exc)
            logger.warning("Dropping item: %s", error)
            return error

    async def analyze(
        self,
        texts: Sequence[str],
        nodes: Sequence[Node],
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> AnalysisRun:
        items = [str(t or "") for t in texts]
        run_nodes = validate_nodes(nodes)
        started = time.perf_counter()
        reporter = ProgressReporter(len(items), on_progress=on_progress, on_status=on_status)

        if not items:
            reporter.finish()
            return AnalysisRun(results=[], total=0, processed=0)

        logger.info("Starting local analysis on %d texts across %d nodes", len(items), len(run_nodes))
        reporter.status("Loading sentiment and embedding models")
        await self.warm_up()
        reporter.status("Preparing node context")
        await self.attributor.prepare(run_nodes)

        batch_size = select_batch_size(len(items), _mean_length(items))
        total_batches = (len(items) + batch_size - 1) // batch_size
        logger.info("Batch size %d (%d batches)", batch_size, total_batches)

        results: list[SentimentResult] = []
        failed = 0
        for batch_index, start in enumerate(range(0, len(items), batch_size)):
            batch = items[start : start + batch_size]
            reporter.status(f"Analyzing batch {batch_index + 1}/{total_batches}")
            await self._prefetch(batch)
            outcomes = await asyncio.gather(
                *(self._analyze_isolated(start + offset, text, run_nodes) for offset, text in enumerate(batch))
            )
            for outcome in outcomes:
                if isinstance(outcome, PerItemAnalysisError):
                    failed += 1
                else:
                    results.append(outcome)
            reporter.advance(start + len(batch))
            logger.debug("Batch %d/%d done, %d failures so far", batch_index + 1, total_batches, failed)

        run = AnalysisRun(
            results=results,
            total=len(items),
            processed=len(items),
            failed=failed,
            elapsed_sec=time.perf_counter() - started,
        )
        if run.success_rate < self.success_rate_threshold:
            message = (
                f"Only {run.success_rate:.0%} of texts were analyzed successfully "
                f"({failed} of {len(items)} failed)"
            )
            logger.warning(message)
            run.warnings.append(message)
            warnings.warn(message, LowSuccessRateWarning, stacklevel=2)

        reporter.finish()
        reporter.status(f"Analysis complete: {len(results)} of {len(items)} texts analyzed")
        logger.info("Local analysis finished in %.2fs (success rate %.2f)", run.elapsed_sec, run.success_rate)
        return run
