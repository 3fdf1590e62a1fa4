"""
Orchestrator - the one object callers talk to.

Owns the three backend handles for a single project and enforces:
- isolation: every handle is bound to the project's namespace key
- all-or-nothing startup: initialize() either readies all three backends
  or releases whatever it opened and reports which backend failed
- clean shutdown: close() waits for in-flight work, then releases every
  handle; any call after that gets ClosedResourceError

Usage:
    async with MemoryOrchestrator("/path/to/repo") as memory:
        await memory.record_event("preference", "Prefer async/await over callbacks", feedback=1)
        report = await memory.run_consolidation()
        block = await memory.context_block()
"""

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional

from mnemo.config import MnemoConfig
from mnemo.consolidation import ConsolidationPipeline
from mnemo.context import ContextAssembler
from mnemo.embeddings import Embedder, SentenceTransformerEmbedder
from mnemo.errors import BackendConnectionError, ClosedResourceError, NotInitializedError
from mnemo.extraction import PatternTripleExtractor, TripleExtractor
from mnemo.graph import KnowledgeGraph
from mnemo.interaction_log import InteractionLog
from mnemo.isolation import resolve_project
from mnemo.logger import get_logger
from mnemo.models import EventFilter, Feedback
from mnemo.vectors import VectorIndex

logger = get_logger("mnemo.orchestrator")


class State(str, Enum):
    CREATED = "created"
    READY = "ready"
    FAILED = "failed"
    CLOSING = "closing"
    CLOSED = "closed"


class MemoryOrchestrator:
    """Project-scoped memory: event log + knowledge graph + vector index."""

    def __init__(
        self,
        root,
        config: Optional[MnemoConfig] = None,
        embedder: Optional[Embedder] = None,
        extractor: Optional[TripleExtractor] = None,
    ):
        """Resolve the project. Raises InvalidProjectRoot before anything is opened.

        Args:
            root: Project root directory
            config: Settings (defaults to MnemoConfig() - no ambient reads here)
            embedder: Text -> vector strategy (defaults to sentence-transformers)
            extractor: Content -> triples strategy (defaults to keyword patterns)
        """
        self.project = resolve_project(root)
        self.namespace = self.project.namespace
        self.config = config or MnemoConfig()
        self.embedder = embedder or SentenceTransformerEmbedder(self.config.embedding_model)
        self.extractor = extractor or PatternTripleExtractor()

        self.log = InteractionLog(self.config.database_path, self.namespace)
        self.graph = KnowledgeGraph(self.config.graph_dir, self.namespace)
        self.vectors = VectorIndex(self.config.chroma_dir, self.namespace, self.config.embedding_dimension)

        self.pipeline = ConsolidationPipeline(self.log, self.graph, self.vectors, self.embedder, self.extractor)
        self.assembler = ContextAssembler(self.log, self.graph, self.vectors, self.embedder, self.config)

        self.state = State.CREATED
        self.last_report = None
        self._inflight: dict = {}  # task -> number of operations it is inside
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing_task = None
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"MemoryOrchestrator(root={str(self.project.root)!r}, namespace={self.namespace}, state={self.state.value})"

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> "MemoryOrchestrator":
        """Connect all three backends, or none of them.

        Raises the backend-specific BackendConnectionError on failure and
        leaves the instance unusable.
        """
        if self.state in (State.CLOSING, State.CLOSED):
            raise ClosedResourceError(repr(self))
        if self.state == State.READY:
            return self
        if self.state == State.FAILED:
            raise NotInitializedError(f"{self!r} failed to initialize and cannot be reused")

        opened = []
        try:
            await self.log.connect(root_path=str(self.project.root))
            opened.append(self.log)
            for backend in (self.graph, self.vectors):
                await backend.connect()
                opened.append(backend)
        except BaseException as e:
            self.state = State.FAILED
            await self._release(opened)
            if isinstance(e, BackendConnectionError):
                logger.error(f"Initialization failed for {self.project.root}: {e}")
            raise

        self.state = State.READY
        logger.info(f"Memory ready for {self.project.root} (namespace {self.namespace})")
        return self

    async def close(self) -> None:
        """Release all backend handles. Idempotent.

        Operations already running get up to config.close_timeout seconds to
        finish and are cancelled after that. Operations started after close
        begins raise ClosedResourceError.
        """
        if self.state in (State.CLOSING, State.CLOSED):
            if self.state == State.CLOSING:
                await self._closed.wait()
            return

        previous = self.state
        self.state = State.CLOSING
        self._closing_task = asyncio.current_task()
        try:
            await self._drain()
        finally:
            await self._release([self.vectors, self.graph, self.log])
            self.state = State.CLOSED
            self._closed.set()
            if previous == State.READY:
                logger.info(f"Memory closed for {self.project.root}")

    async def _drain(self) -> None:
        """Wait for running operations, cancel whatever outlives close_timeout."""
        if not self._others_inflight():
            return
        self._idle.clear()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=self.config.close_timeout)
            return
        except asyncio.TimeoutError:
            pass

        pending = self._others_inflight()
        logger.warning(f"Cancelling {len(pending)} in-flight operation(s) on close")
        for task in pending:
            task.cancel()
        await asyncio.wait(pending, timeout=self.config.close_timeout)

    async def _release(self, backends) -> None:
        """Close each backend in its own guarded step so one failure can't leak the rest."""
        for backend in backends:
            try:
                await backend.close()
            except Exception:
                logger.error(f"Failed to close {type(backend).__name__} for {self.namespace}", exc_info=True)

    async def __aenter__(self) -> "MemoryOrchestrator":
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @asynccontextmanager
    async def _operation(self):
        """Guard for every public call: state check + in-flight tracking."""
        if self.state in (State.CLOSING, State.CLOSED):
            raise ClosedResourceError(repr(self))
        if self.state != State.READY:
            raise NotInitializedError(f"{self!r} is not initialized")

        task = asyncio.current_task()
        self._inflight[task] = self._inflight.get(task, 0) + 1
        self._idle.clear()
        try:
            yield
        finally:
            remaining = self._inflight.get(task, 1) - 1
            if remaining:
                self._inflight[task] = remaining
            else:
                self._inflight.pop(task, None)
            if not self._others_inflight():
                self._idle.set()

    def _others_inflight(self) -> list:
        return [t for t in self._inflight if t is not self._closing_task]

    async def _touch(self) -> None:
        await self.log.touch_project()

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def record_event(self, kind, content: str, feedback=Feedback.NONE, metadata: Optional[dict] = None) -> int:
        """Append an interaction event. Returns its id."""
        async with self._operation():
            event_id = await self.log.record(kind, content, feedback, metadata)
            await self._touch()
            return event_id

    async def list_events(self, event_filter: Optional[EventFilter] = None) -> list:
        async with self._operation():
            await self._touch()
            return await self.log.list(event_filter)

    async def get_event(self, event_id: int):
        async with self._operation():
            await self._touch()
            return await self.log.get(event_id)

    # =========================================================================
    # CONSOLIDATION
    # =========================================================================

    async def run_consolidation(self):
        """Run one sleep-cycle pass and return its ConsolidationReport."""
        async with self._operation():
            report = await self.pipeline.run()
            self.last_report = report
            return report

    # =========================================================================
    # GRAPH
    # =========================================================================

    async def query_entity(self, name: str) -> list:
        """Relations touching an entity, as RelationViews. Empty if unknown."""
        async with self._operation():
            await self._touch()
            return await self.graph.relations_of(name)

    async def traverse(self, from_entity: str, to_entity: str, max_depth: Optional[int] = None) -> list:
        """Bounded shortest path between two entities, as PathEdges."""
        async with self._operation():
            await self._touch()
            depth = self.config.max_path_depth if max_depth is None else max_depth
            return await self.graph.path(from_entity, to_entity, depth)

    # =========================================================================
    # VECTORS
    # =========================================================================

    async def semantic_search(self, vector, k: int = 5) -> list:
        """Nearest past events to a query vector."""
        async with self._operation():
            await self._touch()
            return await self.vectors.search(vector, k)

    async def search(self, text: str, k: int = 5) -> list:
        """Embed text with the configured embedder, then semantic_search."""
        async with self._operation():
            await self._touch()
            vector = await self.embedder.embed(text)
            return await self.vectors.search(vector, k)

    # =========================================================================
    # CONTEXT
    # =========================================================================

    async def context_block(self, max_tokens: Optional[int] = None, current_context: Optional[str] = None):
        """Whole-project context block for auto-injection."""
        async with self._operation():
            await self._touch()
            return await self.assembler.build(max_tokens=max_tokens, current_context=current_context)

    async def file_context_block(self, path: str, max_tokens: Optional[int] = None):
        """Context block focused on one file."""
        async with self._operation():
            await self._touch()
            return await self.assembler.build_for_file(path, max_tokens=max_tokens)

    # =========================================================================
    # INFO
    # =========================================================================

    async def project_info(self):
        async with self._operation():
            await self._touch()
            return await self.log.get_project()

    async def stats(self) -> dict:
        async with self._operation():
            await self._touch()
            project = await self.log.get_project()
            return {
                "project": project.to_dict() if project else None,
                "events": await self.log.count(),
                "vectors": await self.vectors.count(),
                "graph": await self.graph.stats(),
            }
