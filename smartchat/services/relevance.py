from __future__ import annotations

import logging
import math
from typing import Sequence

from smartchat.core.errors import ProviderError
from smartchat.domain.chat import SchemaDescriptor
from smartchat.services.model_gateway import ModelGateway


logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError("vector length mismatch")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class RelevanceRanker:
    def __init__(self, gateway: ModelGateway, *, top_k: int = 3) -> None:
        self._gateway = gateway
        self._top_k = top_k
        # Descriptor text -> embedding; schema text changes only on catalog refresh.
        self._descriptor_vectors: dict[str, list[float]] = {}

    async def _descriptor_embeddings(self, descriptors: list[SchemaDescriptor]) -> list[list[float]]:
        texts = [descriptor.render() for descriptor in descriptors]
        missing = [text for text in texts if text not in self._descriptor_vectors]
        if missing:
            vectors = await self._gateway.embed_batch(missing)
            self._descriptor_vectors.update(zip(missing, vectors))
        return [self._descriptor_vectors[text] for text in texts]

    async def rank(self, message: str, descriptors: list[SchemaDescriptor]) -> list[SchemaDescriptor]:
        if len(descriptors) <= self._top_k:
            return list(descriptors)
        try:
            query_vector = await self._gateway.embed(message)
            vectors = await self._descriptor_embeddings(descriptors)
        except ProviderError as exc:
            # Ranking only trims the prompt; fall back to allow-list order.
            logger.warning("relevance_ranking_fallback error=%s", type(exc).__name__)
            return list(descriptors[: self._top_k])
        scored = [
            (cosine_similarity(query_vector, vector), index)
            for index, vector in enumerate(vectors)
        ]
        # Highest score first; ties keep allow-list order.
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [descriptors[index] for _score, index in scored[: self._top_k]]
