from __future__ import annotations

import logging
import re

import numpy as np

from services.embeddings import BaseEmbedder, cosine_similarity
from services.types import KPI_DIMENSIONS, KPIScore, clamp

logger = logging.getLogger(__name__)

# =========================
# Lexicons
# =========================

# Entries are matched at a word start, so stems like "frustrat" cover inflections.
KPI_LEXICONS: dict[str, dict[str, float]] = {
    "trust": {
        "trust": 1.4,
        "reliab": 1.2,
        "honest": 1.3,
        "transparent": 1.2,
        "credible": 1.2,
        "dependable": 1.0,
        "authentic": 1.0,
        "integrity": 1.0,
        "accountab": 1.0,
        "genuine": 1.0,
    },
    "optimism": {
        "hopeful": 1.3,
        "hoping": 1.0,
        "optimis": 1.4,
        "promising": 1.2,
        "encouraging": 1.2,
        "bright": 1.0,
        "confident": 1.0,
        "excited": 1.0,
        "looking forward": 1.0,
        "improv": 1.0,
        "progress": 1.0,
    },
    "frustration": {
        "frustrat": 1.4,
        "annoy": 1.2,
        "broken": 1.3,
        "difficult": 1.0,
        "problem": 1.0,
        "issue": 1.0,
        "struggl": 1.2,
        "confusing": 1.0,
        "waste": 1.0,
        "angry": 1.2,
        "fail": 1.0,
        "stuck": 1.0,
    },
    "clarity": {
        "clear": 1.3,
        "understand": 1.2,
        "simple": 1.0,
        "obvious": 1.0,
        "transparent": 1.0,
        "straightforward": 1.2,
        "explicit": 1.0,
        "well explained": 1.2,
        "well documented": 1.0,
        "concise": 1.0,
    },
    "access": {
        "access": 1.4,
        "available": 1.2,
        "easy": 1.0,
        "convenient": 1.0,
        "reachable": 1.0,
        "obtainable": 1.0,
        "affordable": 1.2,
        "open to": 1.0,
        "inclusive": 1.0,
        "usable": 1.0,
    },
    "fairness": {
        "fair": 1.4,
        "equal": 1.2,
        "equitable": 1.3,
        "balanced": 1.0,
        "impartial": 1.0,
        "unbiased": 1.2,
        "justice": 1.0,
        "even-handed": 1.0,
        "level playing field": 1.0,
    },
}

CONCEPT_DESCRIPTIONS: dict[str, str] = {
    "trust": "trust, reliable, honest, transparent, credible, dependable, authentic, integrity, accountable, genuine",
    "optimism": "hopeful, optimistic, promising, encouraging, bright, confident, excited, looking forward, improving, progress",
    "frustration": "frustration, annoying, broken, difficult, problem, issue, struggle, confusing, waste, angry, failure, stuck",
    "clarity": "clear, understand, simple, obvious, transparent, straightforward, explicit, well explained, concise",
    "access": "access, available, easy, convenient, reachable, obtainable, affordable, open to everyone, inclusive, usable",
    "fairness": "fair, equal, equitable, balanced, impartial, unbiased, justice, even-handed, level playing field",
}

NEGATORS = frozenset(
    {
        "not",
        "no",
        "never",
        "dont",
        "cant",
        "wont",
        "isnt",
        "doesnt",
        "didnt",
        "arent",
        "wasnt",
        "werent",
        "couldnt",
        "shouldnt",
        "wouldnt",
        "havent",
        "hasnt",
        "aint",
        "lack",
        "lacks",
        "lacking",
        "without",
        "absence",
        "missing",
        "barely",
        "hardly",
        "scarcely",
        "neither",
        "nor",
        "none",
    }
)
POSITIVE_DIMENSIONS = frozenset(d for d in KPI_DIMENSIONS if d != "frustration")
KEYWORD_SCALE = 0.20
MAX_KEYWORD_CONTRIBUTION = 0.5
DEFAULT_NEGATION_TOKENS = 3
DEFAULT_NEGATION_CHARS = 30
WINDOW_TOKEN_RE = re.compile(r"[a-z0-9]+")


def concept_sentence(dimension: str) -> str:
    return f"{dimension}: {CONCEPT_DESCRIPTIONS[dimension]}"


def is_negated(
    text: str,
    position: int,
    window_tokens: int = DEFAULT_NEGATION_TOKENS,
    window_chars: int = DEFAULT_NEGATION_CHARS,
) -> bool:
    if window_tokens <= 0 or window_chars <= 0 or position <= 0:
        return False
    start = max(0, position - window_chars)
    tokens = WINDOW_TOKEN_RE.findall(text[start:position].replace("'", ""))
    if start > 0 and tokens and text[start - 1].isalnum() and text[start].isalnum():
        # First token was cut by the char window.
        tokens = tokens[1:]
    return any(tok in NEGATORS for tok in tokens[-window_tokens:])


def _keyword_positions(text: str, keyword: str) -> list[int]:
    positions: list[int] = []
    start = text.find(keyword)
    while start >= 0:
        if start == 0 or not text[start - 1].isalnum():
            positions.append(start)
        start = text.find(keyword, start + 1)
    return positions


def keyword_weight_map(
    normalized_text: str,
    dimension: str,
    window_tokens: int = DEFAULT_NEGATION_TOKENS,
    window_chars: int = DEFAULT_NEGATION_CHARS,
) -> dict[str, float]:
    weights: dict[str, float] = {}
    for keyword, weight in KPI_LEXICONS[dimension].items():
        total = 0.0
        for pos in _keyword_positions(normalized_text, keyword):
            negated = is_negated(normalized_text, pos, window_tokens, window_chars)
            total += -weight if negated else weight
        if total:
            weights[keyword] = total
    return weights


def keyword_contribution(
    normalized_text: str,
    dimension: str,
    window_tokens: int = DEFAULT_NEGATION_TOKENS,
    window_chars: int = DEFAULT_NEGATION_CHARS,
) -> float:
    weights = keyword_weight_map(normalized_text, dimension, window_tokens, window_chars)
    return clamp(sum(weights.values()) * KEYWORD_SCALE, -MAX_KEYWORD_CONTRIBUTION, MAX_KEYWORD_CONTRIBUTION)


def modulate(score: float, dimension: str, polarity_value: float) -> float:
    if dimension in POSITIVE_DIMENSIONS:
        return score * (1.0 + polarity_value)
    return score * (1.0 - polarity_value)


class ConceptCache:
    def __init__(self) -> None:
        self._entries: dict[str, np.ndarray] = {}

    def get(self, dimension: str) -> np.ndarray | None:
        return self._entries.get(dimension)

    def insert(self, dimension: str, vector: np.ndarray) -> np.ndarray:
        return self._entries.setdefault(dimension, vector)

    def complete(self) -> bool:
        return all(d in self._entries for d in KPI_DIMENSIONS)


class KPIConceptScorer:
    def __init__(
        self,
        embedder: BaseEmbedder,
        cache: ConceptCache | None = None,
        negation_window_tokens: int = DEFAULT_NEGATION_TOKENS,
        negation_window_chars: int = DEFAULT_NEGATION_CHARS,
    ) -> None:
        self.embedder = embedder
        self.cache = cache if cache is not None else ConceptCache()
        self.negation_window_tokens = int(negation_window_tokens)
        self.negation_window_chars = int(negation_window_chars)

    async def prepare(self) -> None:
        missing = [d for d in KPI_DIMENSIONS if self.cache.get(d) is None]
        if not missing:
            return
        logger.info("Generating KPI concept embeddings for %d dimensions", len(missing))
        sentences = {d: concept_sentence(d) for d in missing}
        vectors = await self.embedder.embed_batch(list(sentences.values()))
        for dimension, sentence in sentences.items():
            self.cache.insert(dimension, vectors[sentence])

    async def score(self, normalized_text: str, text_embedding: np.ndarray, polarity_value: float) -> KPIScore:
        await self.prepare()
        scores: dict[str, float] = {}
        for dimension in KPI_DIMENSIONS:
            similarity = cosine_similarity(text_embedding, self.cache.get(dimension))
            contribution = keyword_contribution(
                normalized_text,
                dimension,
                window_tokens=self.negation_window_tokens,
                window_chars=self.negation_window_chars,
            )
            raw = modulate(similarity + contribution, dimension, polarity_value)
            scores[dimension] = clamp(raw)
        return KPIScore.from_mapping(scores)
