from __future__ import annotations

import logging

from services.analyzer import AnalysisContext, Analyzer
from services.config import AnalyzerSettings
from services.embeddings import SentenceTransformerEmbedder
from services.pipeline import LocalAnalyzer
from services.remote import RemoteAnalyzer, Transport
from services.sentiment_model import TransformersSentimentClassifier

logger = logging.getLogger(__name__)


def build_local_analyzer(settings: AnalyzerSettings, context: AnalysisContext | None = None) -> LocalAnalyzer:
    embedder = SentenceTransformerEmbedder(
        model_name=settings.embedding_model,
        batch_size=settings.encode_batch_size,
        device=settings.device,
    )
    classifier = TransformersSentimentClassifier(model_name=settings.sentiment_model, device=settings.device)
    return LocalAnalyzer(
        embedder,
        classifier,
        context=context,
        negation_window_tokens=settings.negation_window_tokens,
        negation_window_chars=settings.negation_window_chars,
        short_text_damping=settings.short_text_damping,
        success_rate_threshold=settings.success_rate_threshold,
    )


def build_remote_analyzer(settings: AnalyzerSettings, transport: Transport | None = None) -> RemoteAnalyzer:
    return RemoteAnalyzer(
        transport=transport,
        endpoint=settings.endpoint,
        api_key=settings.api_key,
        model=settings.remote_model,
        batch_size=settings.remote_batch_size,
        parallel_batches=settings.parallel_batches,
        max_text_chars=settings.max_text_chars,
        max_tokens=settings.max_tokens,
        request_timeout_sec=settings.request_timeout_sec,
        run_timeout_sec=settings.run_timeout_sec,
        stream=settings.stream,
    )


def build_analyzer(settings: AnalyzerSettings, context: AnalysisContext | None = None) -> Analyzer:
    logger.info("Using %s sentiment backend", settings.backend)
    if settings.backend == "remote":
        return build_remote_analyzer(settings)
    return build_local_analyzer(settings, context=context)
