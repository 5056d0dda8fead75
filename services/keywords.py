from __future__ import annotations

import logging
import re
from collections import Counter

import numpy as np
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS, TfidfVectorizer

from services.embeddings import BaseEmbedder
from services.normalizer import normalize_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_KEYWORDS = 10
DIVERSITY_THRESHOLD = 0.75
MAX_KEYWORD_DOCS = 500
CANDIDATE_MULTIPLIER = 3
WORD_RE = re.compile(r"[a-z][a-z'-]{2,}")


def _sample_docs(texts: list[str], max_docs: int = MAX_KEYWORD_DOCS) -> list[str]:
    docs = [normalize_text(t) for t in texts]
    docs = [d for d in docs if any(ch.isalpha() for ch in d)]
    if len(docs) <= max_docs:
        return docs
    step = max(1, len(docs) // max_docs)
    return [docs[i] for i in range(0, len(docs), step)][:max_docs]


def _tfidf_terms(docs: list[str], limit: int) -> list[str]:
    vectorizer = TfidfVectorizer(lowercase=True, stop_words="english", ngram_range=(1, 2), max_features=6000)
    mat = vectorizer.fit_transform(docs)
    scores = mat.mean(axis=0).A1
    terms = vectorizer.get_feature_names_out()
    out: list[str] = []
    for idx in np.argsort(scores)[::-1]:
        if scores[int(idx)] <= 0:
            break
        term = " ".join(str(terms[int(idx)]).split())
        if term and term not in out:
            out.append(term)
        if len(out) >= limit:
            break
    return out


def _frequent_terms(docs: list[str], limit: int) -> list[str]:
    counts: Counter[str] = Counter()
    for doc in docs:
        counts.update(w for w in WORD_RE.findall(doc) if w not in ENGLISH_STOP_WORDS)
    return [term for term, _ in counts.most_common(limit)]


def _diversify(candidates: list[str], embedder: BaseEmbedder, limit: int) -> list[str]:
    vectors = embedder.encode(candidates)
    chosen: list[int] = []
    for idx in range(len(candidates)):
        if any(float(np.dot(vectors[idx], vectors[j])) > DIVERSITY_THRESHOLD for j in chosen):
            continue
        chosen.append(idx)
        if len(chosen) >= limit:
            break
    return [candidates[i] for i in chosen]


def extract_keywords(
    texts: list[str],
    max_keywords: int = DEFAULT_MAX_KEYWORDS,
    embedder: BaseEmbedder | None = None,
) -> list[str]:
    """Suggest up to `max_keywords` salient terms for a set of texts.

    TF-IDF over unigrams and bigrams, falling back to plain term frequency when
    the vectorizer has nothing left after stop-word removal. With an embedder,
    near-duplicate terms are skipped so the list covers distinct topics.
    """
    limit = max(0, int(max_keywords))
    docs = _sample_docs(list(texts or []))
    if not docs or limit == 0:
        return []

    pool = limit * CANDIDATE_MULTIPLIER if embedder is not None else limit
    try:
        candidates = _tfidf_terms(docs, pool)
    except ValueError as exc:
        logger.info("TF-IDF keyword extraction unavailable (%s); using term counts", exc)
        candidates = []
    if not candidates:
        candidates = _frequent_terms(docs, pool)

    if embedder is None or len(candidates) <= 1:
        return candidates[:limit]
    return _diversify(candidates, embedder, limit)
