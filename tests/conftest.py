from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Callable

import numpy as np
import pytest

from services.embeddings import BaseEmbedder
from services.errors import CapabilityInitializationError
from services.pipeline import LocalAnalyzer
from services.sentiment_model import BaseSentimentClassifier
from services.types import Node

TOKEN_RE = re.compile(r"[a-z0-9]+")
HASH_DIM = 4096

POSITIVE_WORDS = {"love", "great", "good", "excellent", "fair", "transparent", "reliable", "happy", "clear"}
NEGATIVE_WORDS = {"broken", "frustrating", "bad", "terrible", "awful", "hate", "unfair", "slow"}


class HashingEmbedder(BaseEmbedder):
    """Bag-of-words vectors via md5 token hashing; identical inputs give identical vectors."""

    model_name = "hashing"

    def __init__(self, dim: int = HASH_DIM, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.dim = dim
        self.calls = 0

    def _encode_raw(self, texts: list[str]) -> np.ndarray:
        self.calls += 1
        out = np.zeros((len(texts), self.dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for tok in TOKEN_RE.findall(str(text).lower()):
                bucket = int(hashlib.md5(tok.encode("utf-8")).hexdigest(), 16) % self.dim
                out[row, bucket] += 1.0
        return out


class ConstantEmbedder(BaseEmbedder):
    def _encode_raw(self, texts: list[str]) -> np.ndarray:
        return np.ones((len(texts), 8), dtype=np.float32)


class BrokenEmbedder(BaseEmbedder):
    model_name = "broken"

    def load(self) -> None:
        raise CapabilityInitializationError("embedding", self.model_name)


class LexiconClassifier(BaseSentimentClassifier):
    """Counts lexicon hits; texts containing 'boom' raise."""

    model_name = "lexicon"

    def _classify_raw(self, texts: list[str]) -> list[object]:
        out: list[object] = []
        for text in texts:
            tokens = TOKEN_RE.findall(str(text).lower())
            if "boom" in tokens:
                raise RuntimeError("classifier exploded")
            pos = sum(1 for t in tokens if t in POSITIVE_WORDS)
            neg = sum(1 for t in tokens if t in NEGATIVE_WORDS)
            if pos > neg:
                out.append({"label": "POSITIVE", "score": 0.97})
            elif neg > pos:
                out.append({"label": "NEGATIVE", "score": 0.97})
            else:
                out.append({"label": "POSITIVE", "score": 0.55})
        return out


def prompt_lines(payload: dict[str, Any]) -> list[tuple[int, str]]:
    user = payload["messages"][-1]["content"]
    lines: list[tuple[int, str]] = []
    for line in user.splitlines():
        idx, _, raw = line.partition(":")
        lines.append((int(idx), json.loads(raw)))
    return lines


def remote_items(payload: dict[str, Any], node_id: str = "A") -> list[dict[str, Any]]:
    return [
        {"i": i, "p": "pos", "s": 0.6, "n": node_id, "c": 0.8, "k": [0.1, 0.2, -0.1, 0.3, 0.0, 0.4]}
        for i, _ in prompt_lines(payload)
    ]


def json_transport(node_id: str = "A") -> Callable[[dict[str, Any]], str]:
    def transport(payload: dict[str, Any]) -> str:
        return json.dumps(remote_items(payload, node_id))

    return transport


@pytest.fixture
def nodes() -> list[Node]:
    return [
        Node(id="A", name="Trust & Fairness", keywords=("trust", "fair", "transparent")),
        Node(id="B", name="Frustration", keywords=("frustration", "broken", "difficult")),
    ]


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def classifier() -> LexiconClassifier:
    return LexiconClassifier()


@pytest.fixture
def analyzer(embedder: HashingEmbedder, classifier: LexiconClassifier) -> LocalAnalyzer:
    return LocalAnalyzer(embedder, classifier)
