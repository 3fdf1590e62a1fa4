#!/usr/bin/env python3
"""
Vector Index Tests

Real ChromaDB in a temp directory, fake 16-dimension vectors.
"""

import pytest
import pytest_asyncio

from conftest import EMBED_DIM, fake_vector

from mnemo.errors import ClosedResourceError, VectorIndexConnectionError
from mnemo.vectors import VectorIndex, collection_name


@pytest_asyncio.fixture
async def index(config):
    idx = VectorIndex(config.chroma_dir, "vectorns")
    await idx.connect()
    yield idx
    await idx.close()


class TestVectorIndex:

    def test_collection_name_is_namespaced(self):
        assert collection_name("abc123") == "mnemo_abc123"

    @pytest.mark.asyncio
    async def test_empty_index_returns_nothing(self, index):
        assert await index.search(fake_vector("anything"), k=5) == []
        assert await index.count() == 0

    @pytest.mark.asyncio
    async def test_add_is_idempotent_per_event(self, index):
        text = "Prefer async/await over callbacks"
        assert await index.add(1, text, fake_vector(text)) is True
        assert await index.add(1, text, fake_vector(text)) is False
        assert await index.count() == 1
        assert await index.contains(1)
        assert not await index.contains(2)

    @pytest.mark.asyncio
    async def test_nearest_first(self, index):
        docs = {
            1: "retry loop in fetcher with exponential backoff",
            2: "session cache requires redis",
            3: "prefer async await over callbacks",
        }
        for event_id, text in docs.items():
            await index.add(event_id, text, fake_vector(text))

        hits = await index.search(fake_vector("session cache redis"), k=3)
        assert hits[0].event_id == 2
        assert hits[0].text == docs[2]
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)
        assert all(-1.0 <= h.score <= 1.0 for h in hits)

    @pytest.mark.asyncio
    async def test_k_larger_than_index(self, index):
        await index.add(1, "only one", fake_vector("only one"))
        hits = await index.search(fake_vector("only one"), k=10)
        assert len(hits) == 1
        assert hits[0].score == pytest.approx(1.0, abs=1e-3)
        assert await index.search(fake_vector("only one"), k=0) == []

    @pytest.mark.asyncio
    async def test_dimension_locked_after_first_add(self, index):
        await index.add(1, "first", fake_vector("first"))
        assert index.dimension == EMBED_DIM
        with pytest.raises(ValueError):
            await index.add(2, "short", [0.5, 0.5])
        with pytest.raises(ValueError):
            await index.search([1.0, 0.0, 0.0], k=1)

    @pytest.mark.asyncio
    async def test_dimension_recovered_on_reconnect(self, config, index):
        await index.add(1, "first", fake_vector("first"))
        await index.close()

        reopened = VectorIndex(config.chroma_dir, "vectorns")
        await reopened.connect()
        assert reopened.dimension == EMBED_DIM
        assert await reopened.count() == 1
        await reopened.close()

    @pytest.mark.asyncio
    async def test_namespaces_do_not_share_collections(self, config, index):
        await index.add(1, "secret", fake_vector("secret"))
        other = VectorIndex(config.chroma_dir, "otherns")
        await other.connect()
        assert await other.count() == 0
        assert await other.search(fake_vector("secret"), k=5) == []
        await other.close()

    @pytest.mark.asyncio
    async def test_closed_index_rejects_operations(self, index):
        await index.close()
        with pytest.raises(ClosedResourceError):
            await index.add(1, "late", fake_vector("late"))
        with pytest.raises(ClosedResourceError):
            await index.search(fake_vector("late"))

    @pytest.mark.asyncio
    async def test_unusable_directory_fails_connect(self, temp_data_dir):
        blocker = temp_data_dir / "chroma"
        blocker.write_text("a file, not a directory")
        idx = VectorIndex(blocker, "ns")
        with pytest.raises(VectorIndexConnectionError) as exc_info:
            await idx.connect()
        assert exc_info.value.backend == "vector-index"
