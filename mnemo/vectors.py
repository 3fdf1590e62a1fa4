"""
Vector Index - finds past events by meaning.

Each project gets its own ChromaDB collection (`mnemo_<namespace>`, cosine
space) inside one persistent Chroma directory. Records are written only by
the consolidation pass, one per event, keyed by the event id. Adding an id
that is already indexed is a no-op, so a replayed pass cannot double-index.
"""

import asyncio
from pathlib import Path
from typing import Optional

import chromadb
from chromadb.config import Settings

from mnemo.errors import ClosedResourceError, VectorIndexConnectionError
from mnemo.logger import get_logger
from mnemo.models import SearchHit, iso, utcnow

logger = get_logger("mnemo.vectors")


def collection_name(namespace: str) -> str:
    return f"mnemo_{namespace}"


class VectorIndex:
    """ChromaDB collection bound to one namespace."""

    def __init__(self, chroma_dir: Path, namespace: str, dimension: Optional[int] = None):
        self.chroma_dir = Path(chroma_dir)
        self.namespace = namespace
        self.dimension = dimension
        self.client = None
        self.collection = None
        self._lock = asyncio.Lock()
        self._closed = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def connect(self) -> None:
        self._require_open()
        try:
            await asyncio.to_thread(self._connect_sync)
        except Exception as e:
            # Chroma surfaces storage problems through many exception types
            raise VectorIndexConnectionError(f"cannot open collection in {self.chroma_dir}", e) from e
        logger.info(f"Vector index ready ({self.collection.name})")

    def _connect_sync(self) -> None:
        self.chroma_dir.mkdir(parents=True, exist_ok=True)
        client = chromadb.PersistentClient(
            path=str(self.chroma_dir),
            settings=Settings(
                anonymized_telemetry=False,  # Don't send usage data
                allow_reset=True,
            ),
        )
        # Vectors always come from our own embedder, so no embedding function
        self.collection = client.get_or_create_collection(
            name=collection_name(self.namespace),
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )
        self.client = client
        if self.dimension is None and self.collection.count() > 0:
            sample = self.collection.get(limit=1, include=["embeddings"])
            embeddings = sample.get("embeddings")
            if embeddings is not None and len(embeddings) > 0:
                self.dimension = len(embeddings[0])

    async def close(self) -> None:
        """Drop the collection handle. Safe to call more than once.

        Chroma persists on every write, so releasing the references is all
        that's needed.
        """
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            self.collection = None
            self.client = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_collection(self):
        if self._closed:
            raise ClosedResourceError(f"vector index {self.namespace}")
        if self.collection is None:
            raise ClosedResourceError(f"vector index {self.namespace} (not connected)")
        return self.collection

    def _require_open(self) -> None:
        if self._closed:
            raise ClosedResourceError(f"vector index {self.namespace}")

    def _check_dimension(self, vector) -> list:
        vector = [float(x) for x in vector]
        if not vector:
            raise ValueError("vector must not be empty")
        if self.dimension is not None and len(vector) != self.dimension:
            raise ValueError(f"expected a {self.dimension}-dimension vector, got {len(vector)}")
        return vector

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def add(self, event_id: int, text: str, vector) -> bool:
        """Index an event's content. Returns False if it was already indexed."""
        vector = self._check_dimension(vector)
        async with self._lock:
            collection = self._require_collection()
            written = await asyncio.to_thread(self._add_sync, collection, event_id, text, vector)
        if written and self.dimension is None:
            self.dimension = len(vector)
        return written

    def _add_sync(self, collection, event_id, text, vector) -> bool:
        doc_id = str(event_id)
        if collection.get(ids=[doc_id])["ids"]:
            return False
        collection.add(
            ids=[doc_id],
            embeddings=[vector],
            documents=[text],
            metadatas=[{"event_id": int(event_id), "created_at": iso(utcnow())}],
        )
        return True

    async def contains(self, event_id: int) -> bool:
        collection = self._require_collection()
        result = await asyncio.to_thread(collection.get, ids=[str(event_id)])
        return bool(result["ids"])

    async def count(self) -> int:
        collection = self._require_collection()
        return await asyncio.to_thread(collection.count)

    async def search(self, vector, k: int = 5) -> list:
        """Nearest neighbours by cosine similarity, best first.

        Score is 1 - cosine distance. An empty index gives an empty list.
        """
        vector = self._check_dimension(vector)
        collection = self._require_collection()
        if k <= 0:
            return []
        return await asyncio.to_thread(self._search_sync, collection, vector, k)

    def _search_sync(self, collection, vector, k) -> list:
        total = collection.count()
        if total == 0:
            return []
        results = collection.query(
            query_embeddings=[vector],
            n_results=min(k, total),
            include=["documents", "distances", "metadatas"],
        )
        if not results["ids"] or not results["ids"][0]:
            return []

        hits = []
        for i, doc_id in enumerate(results["ids"][0]):
            distance = results["distances"][0][i] if results["distances"] else 0.0
            metadata = results["metadatas"][0][i] if results["metadatas"] else {}
            hits.append(SearchHit(
                event_id=int(doc_id),
                text=results["documents"][0][i],
                score=round(1.0 - float(distance), 4),
                created_at=(metadata or {}).get("created_at"),
            ))
        return hits
