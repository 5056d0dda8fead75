from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from functools import lru_cache

import numpy as np

from services.config import DEFAULT_EMBEDDING_MODEL
from services.errors import CapabilityInitializationError
from services.normalizer import DEFAULT_CHUNK_TOKENS, chunk_long_text, is_long_text

logger = logging.getLogger(__name__)


def _l2_normalize(vectors: np.ndarray) -> np.ndarray:
    from sklearn.preprocessing import normalize

    if vectors.size == 0:
        return vectors.astype(np.float32, copy=False)
    return normalize(vectors, norm="l2", axis=1, copy=False).astype(np.float32, copy=False)


def cosine_similarity(a: np.ndarray | list[float], b: np.ndarray | list[float]) -> float:
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0 or not np.isfinite(denom):
        return 0.0
    sim = float(np.dot(va, vb) / denom)
    return max(-1.0, min(1.0, sim))


class EmbeddingCache:
    """Insert-if-absent store of unit vectors keyed by normalized text."""

    def __init__(self) -> None:
        self._entries: dict[str, np.ndarray] = {}

    def get(self, key: str) -> np.ndarray | None:
        return self._entries.get(key)

    def insert(self, key: str, vector: np.ndarray) -> np.ndarray:
        vector.setflags(write=False)
        return self._entries.setdefault(key, vector)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class BaseEmbedder:
    model_name = "base"

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_TOKENS) -> None:
        self.chunk_size = int(chunk_size)

    def load(self) -> None:
        pass

    def _encode_raw(self, texts: list[str]) -> np.ndarray:
        raise NotImplementedError

    def encode(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        vectors = np.asarray(self._encode_raw(list(texts)), dtype=np.float32)
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        return _l2_normalize(vectors)

    def encode_one(self, text: str) -> np.ndarray:
        if is_long_text(text):
            chunks = chunk_long_text(text, self.chunk_size)
            chunk_vectors = self.encode(chunks)
            averaged = chunk_vectors.mean(axis=0, keepdims=True)
            return _l2_normalize(averaged)[0]
        return self.encode([text])[0]

    async def embed(self, text: str) -> np.ndarray:
        return await asyncio.to_thread(self.encode_one, text)

    async def embed_batch(self, texts: list[str]) -> dict[str, np.ndarray]:
        unique = list(dict.fromkeys(texts))
        long_texts = [t for t in unique if is_long_text(t)]
        short_texts = [t for t in unique if not is_long_text(t)]
        out: dict[str, np.ndarray] = {}
        if short_texts:
            vectors = await asyncio.to_thread(self.encode, short_texts)
            for text, vector in zip(short_texts, vectors):
                out[text] = vector
        for text in long_texts:
            out[text] = await self.embed(text)
        return {t: out[t] for t in unique}


@lru_cache(maxsize=2)
def _get_st_model(model_name: str, device: str | None = None):
    from sentence_transformers import SentenceTransformer

    logger.info("Loading embedding model %s", model_name)
    if device:
        return SentenceTransformer(model_name, device=device)
    return SentenceTransformer(model_name)


class SentenceTransformerEmbedder(BaseEmbedder):
    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        batch_size: int = 64,
        device: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_TOKENS,
    ) -> None:
        super().__init__(chunk_size=chunk_size)
        self.model_name = model_name
        self.batch_size = max(1, int(batch_size))
        self.device = device
        self._model = None
        self._lock = threading.Lock()
        self._call_lock = threading.Lock()

    def load(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            try:
                self._model = _get_st_model(self.model_name, self.device)
            except Exception as exc:
                logger.error("Failed to initialize embedding model %s: %s", self.model_name, exc)
                raise CapabilityInitializationError("embedding", self.model_name) from exc

    def _encode_raw(self, texts: list[str]) -> np.ndarray:
        self.load()
        encode_kwargs = {
            "batch_size": self.batch_size,
            "show_progress_bar": False,
            "normalize_embeddings": True,
            "convert_to_numpy": True,
        }
        if self.device:
            try:
                if "device" in inspect.signature(self._model.encode).parameters:
                    encode_kwargs["device"] = self.device
            except (TypeError, ValueError):
                pass
        with self._call_lock:
            return self._model.encode(texts, **encode_kwargs).astype(np.float32)
