"""
Embedding strategies - text in, fixed-dimension vector out.

The consolidation pass and the context assembler only see the Embedder
protocol. Any exception an embedder raises is treated as "skip this item",
which is what lets tests plug in fakes that fail on purpose.
"""

import asyncio
from typing import Optional, Protocol, runtime_checkable

from mnemo.logger import get_logger

logger = get_logger("mnemo.embeddings")


@runtime_checkable
class Embedder(Protocol):
    """Turns text into a vector. May raise; callers isolate the failure.

    `dimension` is the vector length, or None while it isn't known yet.
    """

    dimension: Optional[int]

    async def embed(self, text: str) -> list:
        ...


class SentenceTransformerEmbedder:
    """Local sentence-transformers model (lazy - loaded on first use).

    all-mpnet-base-v2 gives 768-dimension vectors; ~420MB download on
    first use.
    """

    def __init__(self, model_name: str = "all-mpnet-base-v2"):
        self.model_name = model_name
        self._model = None
        self._load_lock: Optional[asyncio.Lock] = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    @property
    def dimension(self) -> Optional[int]:
        if self._model is None:
            return None
        return self._model.get_sentence_embedding_dimension()

    async def embed(self, text: str) -> list:
        if not text or not text.strip():
            raise ValueError("cannot embed empty text")
        if self._load_lock is None:
            self._load_lock = asyncio.Lock()
        async with self._load_lock:
            # Loading blocks for seconds, keep it off the event loop
            model = await asyncio.to_thread(lambda: self.model)
        vector = await asyncio.to_thread(model.encode, text)
        return vector.tolist()
