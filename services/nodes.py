from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from services.embeddings import BaseEmbedder, cosine_similarity
from services.types import Node, NodeMatch

logger = logging.getLogger(__name__)

MAX_NODES = 10
MAX_CONTEXT_KEYWORDS = 10


def validate_nodes(nodes: Sequence[Node]) -> list[Node]:
    out = list(nodes)
    if not out:
        raise ValueError("at least one node is required")
    if len(out) > MAX_NODES:
        raise ValueError(f"at most {MAX_NODES} nodes are supported, got {len(out)}")
    seen: set[str] = set()
    for node in out:
        if not node.id:
            raise ValueError("node id must be non-empty")
        if not node.name.strip():
            raise ValueError(f"node name must be non-empty: {node.id}")
        if node.id in seen:
            raise ValueError(f"duplicate node id: {node.id}")
        seen.add(node.id)
    return out


def node_context_sentence(node: Node) -> str:
    keywords = [k for k in node.keywords if k][:MAX_CONTEXT_KEYWORDS]
    if not keywords:
        return node.name
    return f"{node.name}: {', '.join(keywords)}"


class NodeEmbeddingCache:
    """Keyed by node id plus (name, keywords), so an edited node gets a fresh entry."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, tuple[str, tuple[str, ...]]], np.ndarray] = {}

    def get(self, node: Node) -> np.ndarray | None:
        return self._entries.get((node.id, node.fingerprint))

    def insert(self, node: Node, vector: np.ndarray) -> np.ndarray:
        return self._entries.setdefault((node.id, node.fingerprint), vector)

    def __len__(self) -> int:
        return len(self._entries)


class NodeAttributor:
    def __init__(self, embedder: BaseEmbedder, cache: NodeEmbeddingCache | None = None) -> None:
        self.embedder = embedder
        self.cache = cache if cache is not None else NodeEmbeddingCache()

    async def prepare(self, nodes: Sequence[Node]) -> None:
        missing = [n for n in nodes if self.cache.get(n) is None]
        if not missing:
            return
        sentences = {n.id: node_context_sentence(n) for n in missing}
        vectors = await self.embedder.embed_batch(list(sentences.values()))
        for node in missing:
            self.cache.insert(node, vectors[sentences[node.id]])
        logger.debug("Embedded context for %d node(s)", len(missing))

    async def node_embedding(self, node: Node) -> np.ndarray:
        cached = self.cache.get(node)
        if cached is not None:
            return cached
        vector = await self.embedder.embed(node_context_sentence(node))
        return self.cache.insert(node, vector)

    async def attribute(self, text_embedding: np.ndarray, nodes: Sequence[Node]) -> NodeMatch:
        if not nodes:
            raise ValueError("at least one node is required")
        best: Node | None = None
        best_sim = float("-inf")
        for node in nodes:
            sim = cosine_similarity(text_embedding, await self.node_embedding(node))
            # Strict comparison keeps the earliest node on ties.
            if best is None or sim > best_sim:
                best, best_sim = node, sim
        return NodeMatch(node_id=best.id, node_name=best.name, confidence=max(0.0, min(1.0, best_sim)))
