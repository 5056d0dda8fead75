from __future__ import annotations

import asyncio
import logging
import threading
from functools import lru_cache

from services.config import DEFAULT_SENTIMENT_MODEL
from services.errors import CapabilityInitializationError
from services.types import RawSentiment

logger = logging.getLogger(__name__)

CACHE_KEY_CHARS = 200


class SentimentCache:
    def __init__(self, key_chars: int = CACHE_KEY_CHARS) -> None:
        self.key_chars = int(key_chars)
        self._entries: dict[str, RawSentiment] = {}

    def key_for(self, text: str) -> str:
        return str(text or "")[: self.key_chars]

    def get(self, text: str) -> RawSentiment | None:
        return self._entries.get(self.key_for(text))

    def insert(self, text: str, value: RawSentiment) -> RawSentiment:
        return self._entries.setdefault(self.key_for(text), value)

    def __len__(self) -> int:
        return len(self._entries)


def _to_raw_sentiment(output: object) -> RawSentiment:
    if isinstance(output, list):
        output = output[0] if output else {}
    if not isinstance(output, dict):
        raise ValueError(f"Unexpected sentiment output: {output!r}")
    label = str(output.get("label", "")).strip().upper()
    score = float(output.get("score", 0.0))
    return RawSentiment(label=label, score=max(0.0, min(1.0, score)))


class BaseSentimentClassifier:
    model_name = "base"

    def load(self) -> None:
        pass

    def _classify_raw(self, texts: list[str]) -> list[object]:
        raise NotImplementedError

    def classify_many(self, texts: list[str]) -> list[RawSentiment]:
        if not texts:
            return []
        return [_to_raw_sentiment(out) for out in self._classify_raw(list(texts))]

    async def classify(self, text: str) -> RawSentiment:
        results = await asyncio.to_thread(self.classify_many, [text])
        return results[0]

    async def classify_batch(self, texts: list[str]) -> list[RawSentiment]:
        return await asyncio.to_thread(self.classify_many, list(texts))


@lru_cache(maxsize=2)
def _get_hf_pipeline(model_name: str, device: str | None = None):
    from transformers import pipeline

    logger.info("Loading sentiment model %s", model_name)
    kwargs = {"model": model_name}
    if device:
        kwargs["device"] = device
    return pipeline("sentiment-analysis", **kwargs)


class TransformersSentimentClassifier(BaseSentimentClassifier):
    def __init__(
        self,
        model_name: str = DEFAULT_SENTIMENT_MODEL,
        batch_size: int = 32,
        device: str | None = None,
    ) -> None:
        self.model_name = model_name
        self.batch_size = max(1, int(batch_size))
        self.device = device
        self._pipeline = None
        self._lock = threading.Lock()
        self._call_lock = threading.Lock()

    def load(self) -> None:
        if self._pipeline is not None:
            return
        with self._lock:
            if self._pipeline is not None:
                return
            try:
                self._pipeline = _get_hf_pipeline(self.model_name, self.device)
            except Exception as exc:
                logger.error("Failed to initialize sentiment model %s: %s", self.model_name, exc)
                raise CapabilityInitializationError("sentiment", self.model_name) from exc

    def _classify_raw(self, texts: list[str]) -> list[object]:
        self.load()
        # HF tokenizers are not safe to share across threads.
        with self._call_lock:
            return list(self._pipeline(texts, truncation=True, batch_size=self.batch_size))
