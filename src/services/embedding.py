"""
Shared Embedding Service - lazily loaded sentence-transformers model.
Used by: enrichment (embed step), connections (cosine similarity)
"""
import asyncio
from src.config import settings
from src.services.logger import logger
import numpy as np
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero magnitude."""
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Vectors must have the same length ({a.shape[0]} != {b.shape[0]})")
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


class EmbeddingService:
    def __init__(self, model_name: Optional[str] = None, timeout: Optional[float] = None,
                 max_chars: Optional[int] = None):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT_SECONDS
        self.max_chars = max_chars or settings.EMBEDDING_MAX_CHARS
        self._model: Optional["SentenceTransformer"] = None

    def get_model(self) -> "SentenceTransformer":
        """Get shared embedding model (lazy loaded)"""
        if self._model is None:
            logger.info(f"🔄 Loading embedding model ({self.model_name})...")
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
            logger.info("✅ Embedding model loaded!")
        return self._model

    def _encode(self, text: str) -> List[float]:
        vector = self.get_model().encode(text, normalize_embeddings=True)
        return [float(x) for x in vector]

    async def embed(self, text: str) -> List[float]:
        """Embeds text off the event loop; raises asyncio.TimeoutError past the timeout."""
        text = text[:self.max_chars]
        return await asyncio.wait_for(asyncio.to_thread(self._encode, text), timeout=self.timeout)
