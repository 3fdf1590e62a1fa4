"""
Knowledge Graph Layer - entities and reinforced relations for one project.

Relations are the memory's confidence signal:
- The first time a (source, label, target) triple is seen it gets strength 1.0
- Every new event that observes it again adds exactly 1.0
- The same event can never count twice (its id is already a contributor)
- Nothing here ever lowers a strength

Nodes are entities (concepts, symbols, files, patterns). Edges live in a
NetworkX MultiDiGraph keyed by label, so two entities can be linked by
several different relations. The graph is persisted as node-link JSON, one
file per namespace.
"""

import asyncio
import json
import os
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import networkx as nx

from mnemo.errors import ClosedResourceError, KnowledgeGraphConnectionError
from mnemo.logger import get_logger
from mnemo.models import (
    Entity,
    EntityKind,
    PathEdge,
    Relation,
    RelationView,
    RelationWrite,
    iso,
    utcnow,
)

logger = get_logger("mnemo.graph")


def entity_key(name: str) -> str:
    """Normalized entity identity: trimmed, whitespace-collapsed, case-folded."""
    return " ".join(name.split()).casefold()


def relation_label(label: str) -> str:
    return "_".join(label.strip().lower().split())


class KnowledgeGraph:
    """
    Entity/relation store bound to one namespace.

    Node attributes: name, kind, created_at
    Edge attributes: label, strength, contributors, created_at, reinforced_at
    """

    def __init__(self, graph_dir: Path, namespace: str):
        self.graph_dir = Path(graph_dir)
        self.namespace = namespace
        self.graph_path = self.graph_dir / f"{namespace}.json"
        self.graph: Optional[nx.MultiDiGraph] = None
        self._lock = asyncio.Lock()
        self._closed = False
        self._in_batch = False
        self._dirty = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def connect(self) -> None:
        """Load the graph from disk, or start an empty one."""
        self._require_open()
        try:
            self.graph = await asyncio.to_thread(self._load_graph)
        except (OSError, ValueError, KeyError, TypeError, nx.NetworkXError) as e:
            # json.JSONDecodeError is a ValueError
            raise KnowledgeGraphConnectionError(f"cannot load {self.graph_path}", e) from e
        logger.info(
            f"Knowledge graph ready ({self.namespace}: "
            f"{self.graph.number_of_nodes()} entities, {self.graph.number_of_edges()} relations)"
        )

    def _load_graph(self) -> nx.MultiDiGraph:
        self.graph_dir.mkdir(parents=True, exist_ok=True)
        if not self.graph_path.exists():
            return nx.MultiDiGraph()
        with open(self.graph_path) as f:
            data = json.load(f)
        graph = nx.node_link_graph(data, directed=True, multigraph=True, edges="links")
        if not isinstance(graph, nx.MultiDiGraph):
            raise ValueError("stored graph is not a directed multigraph")
        return graph

    async def close(self) -> None:
        """Flush and release the graph. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            if self.graph is not None:
                data = nx.node_link_data(self.graph, edges="links")
                self.graph = None
                await asyncio.to_thread(self._write, data)

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_open(self) -> None:
        if self._closed:
            raise ClosedResourceError(f"knowledge graph {self.namespace}")

    def _require_graph(self) -> nx.MultiDiGraph:
        self._require_open()
        if self.graph is None:
            raise ClosedResourceError(f"knowledge graph {self.namespace} (not connected)")
        return self.graph

    async def save(self) -> None:
        """Persist graph to disk."""
        async with self._lock:
            graph = self._require_graph()
            data = nx.node_link_data(graph, edges="links")
            await asyncio.to_thread(self._write, data)

    def _write(self, data: dict) -> None:
        self.graph_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.graph_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.graph_path)

    @asynccontextmanager
    async def batch(self):
        """Apply a group of writes as one unit.

        Writes inside the block are saved once, on exit. If the block raises
        or the save fails, the in-memory graph goes back to how it was
        before the block, so a failed write never lingers until the next
        flush. Nested batches join the outermost one.

        Usage:
            async with graph.batch():
                await graph.upsert_relation("api", "depends_on", "db", event_id)
                await graph.upsert_relation("api", "depends_on", "cache", event_id)
        """
        graph = self._require_graph()
        if self._in_batch:
            yield self
            return

        # Edge/node attribute dicts are copied; nothing below mutates values in place
        snapshot = graph.copy()
        self._in_batch = True
        self._dirty = False
        try:
            yield self
            if self._dirty:
                await self.save()
        except BaseException:
            if not self._closed:
                self.graph = snapshot
            raise
        finally:
            self._in_batch = False
            self._dirty = False

    # =========================================================================
    # ENTITIES
    # =========================================================================

    async def upsert_entity(self, name: str, kind=EntityKind.CONCEPT) -> Entity:
        """Create the entity if it's new, otherwise return the existing one.

        The first kind and spelling seen for a name win.
        """
        kind = EntityKind(kind)
        async with self.batch():
            entity, created = self._upsert_entity_node(name, kind)
            self._dirty = self._dirty or created
        return entity

    def _upsert_entity_node(self, name: str, kind: EntityKind) -> tuple:
        graph = self._require_graph()
        if not isinstance(name, str) or not name.strip():
            raise ValueError("entity name must be a non-empty string")
        key = entity_key(name)
        created = False
        if not graph.has_node(key):
            graph.add_node(
                key,
                node_type="entity",
                name=" ".join(name.split()),
                kind=kind.value,
                created_at=iso(utcnow()),
            )
            created = True
        return self._entity(key), created

    def _entity(self, key: str) -> Entity:
        node = self.graph.nodes[key]
        return Entity(key=key, name=node["name"], kind=EntityKind(node["kind"]), created_at=node["created_at"])

    async def get_entity(self, name: str) -> Optional[Entity]:
        graph = self._require_graph()
        key = entity_key(name)
        return self._entity(key) if graph.has_node(key) else None

    # =========================================================================
    # RELATIONS
    # =========================================================================

    async def upsert_relation(
        self,
        source: str,
        label: str,
        target: str,
        contributing_event_id: int,
    ) -> RelationWrite:
        """Create or reinforce source --label--> target.

        - New triple: strength 1.0, contributors [event_id]
        - Known triple, new event: strength += 1.0, event_id appended
        - Known triple, event already a contributor: nothing changes
        """
        label = relation_label(label)
        if not label:
            raise ValueError("relation label must be non-empty")

        async with self.batch():
            graph = self._require_graph()
            src, src_created = self._upsert_entity_node(source, EntityKind.CONCEPT)
            dst, dst_created = self._upsert_entity_node(target, EntityKind.CONCEPT)
            now = iso(utcnow())

            if graph.has_edge(src.key, dst.key, key=label):
                edge = graph.edges[src.key, dst.key, label]
                if contributing_event_id in edge["contributors"]:
                    created = reinforced = False
                else:
                    edge["strength"] = float(edge["strength"]) + 1.0
                    # New list, the batch snapshot shares the old one
                    edge["contributors"] = edge["contributors"] + [contributing_event_id]
                    edge["reinforced_at"] = now
                    created, reinforced = False, True
            else:
                graph.add_edge(
                    src.key,
                    dst.key,
                    key=label,
                    label=label,
                    strength=1.0,
                    contributors=[contributing_event_id],
                    created_at=now,
                    reinforced_at=now,
                )
                created, reinforced = True, False

            self._dirty = self._dirty or created or reinforced or src_created or dst_created
            relation = self._relation(src.key, label, dst.key)

        return RelationWrite(relation=relation, created=created, reinforced=reinforced)

    def _relation(self, source_key: str, label: str, target_key: str) -> Relation:
        edge = self.graph.edges[source_key, target_key, label]
        return Relation(
            source=self.graph.nodes[source_key]["name"],
            label=label,
            target=self.graph.nodes[target_key]["name"],
            strength=float(edge["strength"]),
            contributors=tuple(edge["contributors"]),
            created_at=edge["created_at"],
            reinforced_at=edge["reinforced_at"],
        )

    async def get_relation(self, source: str, label: str, target: str) -> Optional[Relation]:
        graph = self._require_graph()
        src, dst, label = entity_key(source), entity_key(target), relation_label(label)
        if not graph.has_edge(src, dst, key=label):
            return None
        return self._relation(src, label, dst)

    async def relations_of(self, name: str) -> list:
        """All edges touching an entity, outgoing first, strongest first."""
        graph = self._require_graph()
        key = entity_key(name)
        if not graph.has_node(key):
            return []

        views = []
        for _, target, label, data in graph.out_edges(key, keys=True, data=True):
            views.append(RelationView("out", graph.nodes[target]["name"], label, float(data["strength"])))
        for source, _, label, data in graph.in_edges(key, keys=True, data=True):
            views.append(RelationView("in", graph.nodes[source]["name"], label, float(data["strength"])))

        views.sort(key=lambda v: (v.direction != "out", -v.strength, v.label, v.entity))
        return views

    async def top_relations(self, limit: int = 10) -> list:
        """Strongest relations first; ties go to the most recently reinforced."""
        graph = self._require_graph()
        if limit <= 0:
            return []
        edges = [
            (data["strength"], data["reinforced_at"], src, label, dst)
            for src, dst, label, data in graph.edges(keys=True, data=True)
        ]
        # Stable two-pass sort: name order first, then strength/recency on top
        edges.sort(key=lambda e: (e[2], e[3], e[4]))
        edges.sort(key=lambda e: (e[0], e[1]), reverse=True)
        return [self._relation(src, label, dst) for _, _, src, label, dst in edges[:limit]]

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    async def path(self, from_entity: str, to_entity: str, max_depth: int = 5) -> list:
        """Shortest directed path, at most max_depth edges long.

        Breadth-first with a visited set owned by this search only, so cycles
        (A -> B -> A) terminate. Returns [] when the entities are unknown,
        identical, or not connected within the bound.
        """
        graph = self._require_graph()
        start, goal = entity_key(from_entity), entity_key(to_entity)
        if max_depth < 1 or start == goal:
            return []
        if not graph.has_node(start) or not graph.has_node(goal):
            return []

        visited = {start}
        parent = {}  # node -> (previous node, label, strength)
        frontier = deque([(start, 0)])

        while frontier:
            node, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for neighbor, label, strength in self._strongest_out_edges(graph, node):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                parent[neighbor] = (node, label, strength)
                if neighbor == goal:
                    return self._unwind(parent, start, goal)
                frontier.append((neighbor, depth + 1))

        return []

    def _strongest_out_edges(self, graph, node) -> list:
        """One edge per neighbor (the strongest label), in a stable order."""
        best = {}
        for _, neighbor, label, data in graph.out_edges(node, keys=True, data=True):
            strength = float(data["strength"])
            current = best.get(neighbor)
            if current is None or strength > current[1] or (strength == current[1] and label < current[0]):
                best[neighbor] = (label, strength)
        return [(n, label, strength) for n, (label, strength) in sorted(best.items())]

    def _unwind(self, parent: dict, start: str, goal: str) -> list:
        edges = []
        node = goal
        while node != start:
            previous, label, strength = parent[node]
            edges.append(PathEdge(
                source=self.graph.nodes[previous]["name"],
                label=label,
                target=self.graph.nodes[node]["name"],
                strength=strength,
            ))
            node = previous
        edges.reverse()
        return edges

    # =========================================================================
    # STATS
    # =========================================================================

    async def stats(self) -> dict:
        graph = self._require_graph()
        labels = {}
        for _, _, label in graph.edges(keys=True):
            labels[label] = labels.get(label, 0) + 1
        kinds = {}
        for _, kind in graph.nodes(data="kind"):
            kinds[kind] = kinds.get(kind, 0) + 1
        return {
            "entity_count": graph.number_of_nodes(),
            "relation_count": graph.number_of_edges(),
            "entity_kinds": kinds,
            "relation_labels": labels,
        }
