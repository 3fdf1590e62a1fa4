#!/usr/bin/env python3
"""
Knowledge Graph Tests

Covers:
1. Entity upserts are idempotent (first spelling and kind win)
2. Relation strength: 1.0 on creation, +1.0 per new contributing event,
   unchanged when the same event is replayed
3. Path search: shortest first, bounded depth, cycles terminate
4. Persistence across reconnects, and corrupt files failing loudly
5. A write whose save fails leaves the in-memory graph untouched
"""

import json

import pytest
import pytest_asyncio

from mnemo.errors import ClosedResourceError, KnowledgeGraphConnectionError
from mnemo.graph import KnowledgeGraph, entity_key, relation_label
from mnemo.models import EntityKind


@pytest_asyncio.fixture
async def graph(config):
    g = KnowledgeGraph(config.graph_dir, "testns")
    await g.connect()
    yield g
    await g.close()


class TestEntities:

    def test_entity_key_normalization(self):
        assert entity_key("  Async/Await ") == "async/await"
        assert entity_key("session   cache") == "session cache"
        assert relation_label("Depends On") == "depends_on"

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, graph):
        first = await graph.upsert_entity("async/await", EntityKind.PATTERN)
        again = await graph.upsert_entity("Async/Await", EntityKind.CONCEPT)
        assert again == first
        assert again.kind == EntityKind.PATTERN
        assert (await graph.stats())["entity_count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_entity_is_none(self, graph):
        assert await graph.get_entity("nothing") is None
        assert await graph.relations_of("nothing") == []

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, graph):
        with pytest.raises(ValueError):
            await graph.upsert_entity("   ")


class TestReinforcement:

    @pytest.mark.asyncio
    async def test_new_relation_starts_at_one(self, graph):
        write = await graph.upsert_relation("async/await", "preferred_over", "callbacks", 1)
        assert write.created and not write.reinforced
        assert write.relation.strength == 1.0
        assert write.relation.contributors == (1,)

    @pytest.mark.asyncio
    async def test_new_event_adds_exactly_one(self, graph):
        await graph.upsert_relation("async/await", "preferred_over", "callbacks", 1)
        write = await graph.upsert_relation("Async/Await", "preferred_over", "Callbacks", 4)
        assert write.reinforced and not write.created
        assert write.relation.strength == 2.0
        assert write.relation.contributors == (1, 4)

    @pytest.mark.asyncio
    async def test_replayed_event_changes_nothing(self, graph):
        await graph.upsert_relation("async/await", "preferred_over", "callbacks", 1)
        before = await graph.get_relation("async/await", "preferred_over", "callbacks")
        write = await graph.upsert_relation("async/await", "preferred_over", "callbacks", 1)
        assert not write.changed
        assert write.relation == before
        assert write.relation.strength == 1.0

    @pytest.mark.asyncio
    async def test_strength_counts_distinct_events(self, graph):
        for event_id in [3, 5, 5, 8, 3, 13]:
            await graph.upsert_relation("session cache", "requires", "redis", event_id)
        relation = await graph.get_relation("session cache", "requires", "redis")
        assert relation.strength == 4.0
        assert relation.contributors == (3, 5, 8, 13)

    @pytest.mark.asyncio
    async def test_labels_are_distinct_edges(self, graph):
        await graph.upsert_relation("fetcher.py", "depends_on", "requests", 1)
        await graph.upsert_relation("fetcher.py", "replaces", "requests", 2)
        stats = await graph.stats()
        assert stats["relation_count"] == 2
        assert stats["entity_count"] == 2

    @pytest.mark.asyncio
    async def test_relations_of_outgoing_then_incoming(self, graph):
        await graph.upsert_relation("api", "depends_on", "db", 1)
        await graph.upsert_relation("api", "depends_on", "cache", 2)
        await graph.upsert_relation("api", "depends_on", "cache", 3)
        await graph.upsert_relation("worker", "depends_on", "api", 4)

        views = await graph.relations_of("API")
        assert [(v.direction, v.entity, v.strength) for v in views] == [
            ("out", "cache", 2.0),
            ("out", "db", 1.0),
            ("in", "worker", 1.0),
        ]

    @pytest.mark.asyncio
    async def test_top_relations_strongest_first(self, graph):
        await graph.upsert_relation("a", "rel", "b", 1)
        await graph.upsert_relation("c", "rel", "d", 2)
        await graph.upsert_relation("c", "rel", "d", 3)
        await graph.upsert_relation("e", "rel", "f", 4)

        top = await graph.top_relations(2)
        assert len(top) == 2
        assert (top[0].source, top[0].strength) == ("c", 2.0)
        # Tie at 1.0: the most recently reinforced wins
        assert top[1].source == "e"
        assert await graph.top_relations(0) == []


class TestFailedWrites:

    @staticmethod
    def _disk_full(data):
        raise OSError("disk full")

    @pytest.mark.asyncio
    async def test_failed_save_keeps_old_strength(self, graph, monkeypatch):
        await graph.upsert_relation("async/await", "preferred_over", "callbacks", 1)
        monkeypatch.setattr(graph, "_write", self._disk_full)

        with pytest.raises(OSError):
            await graph.upsert_relation("async/await", "preferred_over", "callbacks", 2)

        relation = await graph.get_relation("async/await", "preferred_over", "callbacks")
        assert relation.strength == 1.0
        assert relation.contributors == (1,)

        # Once the disk is back the same event reinforces normally
        monkeypatch.undo()
        write = await graph.upsert_relation("async/await", "preferred_over", "callbacks", 2)
        assert write.reinforced
        assert write.relation.strength == 2.0

    @pytest.mark.asyncio
    async def test_failed_save_leaves_no_new_entity(self, graph, monkeypatch):
        monkeypatch.setattr(graph, "_write", self._disk_full)
        with pytest.raises(OSError):
            await graph.upsert_entity("redis", EntityKind.CONCEPT)
        with pytest.raises(OSError):
            await graph.upsert_relation("api", "depends_on", "db", 1)
        assert await graph.get_entity("redis") is None
        assert await graph.get_entity("api") is None
        assert (await graph.stats())["entity_count"] == 0

    @pytest.mark.asyncio
    async def test_batch_rolls_back_on_error(self, graph):
        await graph.upsert_relation("api", "depends_on", "db", 1)
        with pytest.raises(RuntimeError):
            async with graph.batch():
                await graph.upsert_relation("api", "depends_on", "db", 2)
                await graph.upsert_relation("api", "depends_on", "cache", 2)
                raise RuntimeError("extraction blew up")

        assert (await graph.get_relation("api", "depends_on", "db")).strength == 1.0
        assert await graph.get_relation("api", "depends_on", "cache") is None
        assert await graph.get_entity("cache") is None

    @pytest.mark.asyncio
    async def test_batch_saves_once(self, graph, monkeypatch):
        writes = []
        original = graph._write

        def counting_write(data):
            writes.append(data)
            original(data)

        monkeypatch.setattr(graph, "_write", counting_write)
        async with graph.batch():
            await graph.upsert_relation("api", "depends_on", "db", 1)
            await graph.upsert_relation("api", "depends_on", "cache", 1)
        assert len(writes) == 1

        # Nothing changed, nothing written
        async with graph.batch():
            await graph.upsert_relation("api", "depends_on", "db", 1)
        assert len(writes) == 1


class TestPath:

    @pytest_asyncio.fixture
    async def chain(self, graph):
        # handler -> retry -> backoff -> sleep, plus a shortcut handler -> backoff
        await graph.upsert_relation("handler", "uses", "retry", 1)
        await graph.upsert_relation("retry", "uses", "backoff", 2)
        await graph.upsert_relation("backoff", "uses", "sleep", 3)
        return graph

    @pytest.mark.asyncio
    async def test_shortest_path(self, chain):
        edges = await chain.path("handler", "sleep")
        assert [(e.source, e.target) for e in edges] == [
            ("handler", "retry"), ("retry", "backoff"), ("backoff", "sleep"),
        ]
        assert all(e.label == "uses" for e in edges)

    @pytest.mark.asyncio
    async def test_shortcut_wins(self, chain):
        await chain.upsert_relation("handler", "calls", "backoff", 9)
        edges = await chain.path("handler", "sleep")
        assert len(edges) == 2
        assert edges[0].label == "calls"

    @pytest.mark.asyncio
    async def test_depth_bound(self, chain):
        assert await chain.path("handler", "sleep", max_depth=2) == []
        assert len(await chain.path("handler", "sleep", max_depth=3)) == 3
        assert await chain.path("handler", "retry", max_depth=0) == []

    @pytest.mark.asyncio
    async def test_direction_matters(self, chain):
        assert await chain.path("sleep", "handler") == []

    @pytest.mark.asyncio
    async def test_cycle_terminates(self, graph):
        await graph.upsert_relation("A", "calls", "B", 1)
        await graph.upsert_relation("B", "calls", "A", 2)
        assert len(await graph.path("A", "B")) == 1
        assert await graph.path("A", "C") == []
        await graph.upsert_entity("C")
        assert await graph.path("A", "C", max_depth=50) == []

    @pytest.mark.asyncio
    async def test_same_or_unknown_entity(self, chain):
        assert await chain.path("handler", "handler") == []
        assert await chain.path("handler", "nowhere") == []

    @pytest.mark.asyncio
    async def test_strongest_label_between_neighbours(self, graph):
        await graph.upsert_relation("x", "weak", "y", 1)
        await graph.upsert_relation("x", "strong", "y", 2)
        await graph.upsert_relation("x", "strong", "y", 3)
        edges = await graph.path("x", "y")
        assert [(e.label, e.strength) for e in edges] == [("strong", 2.0)]


class TestPersistence:

    @pytest.mark.asyncio
    async def test_survives_reconnect(self, config):
        g = KnowledgeGraph(config.graph_dir, "persist")
        await g.connect()
        await g.upsert_relation("async/await", "preferred_over", "callbacks", 1)
        await g.upsert_relation("async/await", "preferred_over", "callbacks", 2)
        await g.close()

        reopened = KnowledgeGraph(config.graph_dir, "persist")
        await reopened.connect()
        relation = await reopened.get_relation("async/await", "preferred_over", "callbacks")
        assert relation.strength == 2.0
        assert relation.contributors == (1, 2)
        # Reloaded contributors still dedupe
        write = await reopened.upsert_relation("async/await", "preferred_over", "callbacks", 2)
        assert not write.changed
        await reopened.close()

    @pytest.mark.asyncio
    async def test_namespaces_use_separate_files(self, config):
        a = KnowledgeGraph(config.graph_dir, "aaa")
        b = KnowledgeGraph(config.graph_dir, "bbb")
        await a.connect()
        await b.connect()
        await a.upsert_relation("x", "rel", "y", 1)
        assert await b.get_entity("x") is None
        await a.close()
        await b.close()
        assert (config.graph_dir / "aaa.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_file_fails_connect(self, config):
        config.graph_dir.mkdir(parents=True)
        (config.graph_dir / "broken.json").write_text("{not json")
        g = KnowledgeGraph(config.graph_dir, "broken")
        with pytest.raises(KnowledgeGraphConnectionError) as exc_info:
            await g.connect()
        assert exc_info.value.backend == "knowledge-graph"

    @pytest.mark.asyncio
    async def test_wrong_shape_fails_connect(self, config):
        config.graph_dir.mkdir(parents=True)
        (config.graph_dir / "shape.json").write_text(json.dumps({"nodes": "nope"}))
        g = KnowledgeGraph(config.graph_dir, "shape")
        with pytest.raises(KnowledgeGraphConnectionError):
            await g.connect()

    @pytest.mark.asyncio
    async def test_closed_graph_rejects_operations(self, graph):
        await graph.close()
        await graph.close()
        with pytest.raises(ClosedResourceError):
            await graph.upsert_relation("a", "rel", "b", 1)
        with pytest.raises(ClosedResourceError):
            await graph.path("a", "b")
