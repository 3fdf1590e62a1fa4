"""
Consolidation Pipeline - the "sleep cycle".

Like sleep turning the day's experiences into long-term memory, one pass:
1. Reads events with feedback (validated or rejected) past the watermark
2. Embeds each event first; an event that can't be embedded is skipped
3. Validated events -> extracted triples -> graph entities + reinforced relations
4. Every selected event -> vector index
5. Collects per-event failures without stopping the pass
6. Moves the watermark forward so the next pass starts where this one ended

Each event is applied as a unit: its graph writes and its vector add
either all land or the graph is rolled back. A failed event holds the
watermark just below it, so the next pass retries it. Events after it are
replayed too, which is harmless: a relation ignores an event id it has
already counted and the vector index ignores an id it already holds.
"""

import inspect
from typing import Optional

from mnemo.embeddings import Embedder
from mnemo.errors import ClosedResourceError, ConsolidationInProgressError, ConsolidationItemFailure
from mnemo.extraction import TripleExtractor
from mnemo.graph import KnowledgeGraph
from mnemo.interaction_log import InteractionLog
from mnemo.logger import get_logger
from mnemo.models import ConsolidationReport, EventFilter, Feedback, Triple, utcnow
from mnemo.vectors import VectorIndex

logger = get_logger("mnemo.consolidation")

# Namespaces with a pass in flight, process-wide. Two orchestrators for
# the same root share this, so their passes can't interleave either.
_RUNNING: set = set()

STAGE_EXTRACT = "extract"
STAGE_GRAPH = "graph"
STAGE_EMBED = "embed"
STAGE_INDEX = "index"


def is_running(namespace: str) -> bool:
    return namespace in _RUNNING


class ConsolidationPipeline:
    """Promotes interaction events into graph and vector knowledge."""

    def __init__(
        self,
        log: InteractionLog,
        graph: KnowledgeGraph,
        vectors: VectorIndex,
        embedder: Embedder,
        extractor: TripleExtractor,
    ):
        self.log = log
        self.graph = graph
        self.vectors = vectors
        self.embedder = embedder
        self.extractor = extractor
        self.namespace = log.namespace

    async def run(self) -> ConsolidationReport:
        """Run one pass. Raises ConsolidationInProgressError if one is already running."""
        if self.namespace in _RUNNING:
            raise ConsolidationInProgressError(self.namespace)
        _RUNNING.add(self.namespace)
        try:
            return await self._run_pass()
        finally:
            _RUNNING.discard(self.namespace)

    async def _run_pass(self) -> ConsolidationReport:
        watermark = await self.log.watermark()
        report = ConsolidationReport(namespace=self.namespace, watermark_before=watermark)

        events = await self.log.list(EventFilter(
            feedback=[Feedback.VALIDATED, Feedback.REJECTED],
            after_id=watermark,
            oldest_first=True,
        ))
        logger.info(f"Sleep cycle starting for {self.namespace}: {len(events)} events past watermark {watermark}")

        highest = watermark
        lowest_failed = None
        for event in events:
            report.events_processed += 1
            highest = max(highest, event.id)
            if not await self._consolidate_event(event, report) and lowest_failed is None:
                lowest_failed = event.id

        finished = utcnow()
        # A failed event holds the watermark just below it so the next pass retries it
        target = highest if lowest_failed is None else lowest_failed - 1
        report.watermark_after = await self.log.advance_watermark(target, finished)
        report.finished_at = finished

        level = "warning" if report.failures else "info"
        getattr(logger, level)(
            f"Sleep cycle {report.status.value} for {self.namespace}: "
            f"{report.events_processed} events, {report.graph_entries_written} graph writes, "
            f"{report.vectors_written} vectors, {len(report.failures)} failures"
        )
        return report

    async def _consolidate_event(self, event, report: ConsolidationReport) -> bool:
        """Promote one event into the graph and the vector index.

        Returns False, with the failure recorded in the report, when the
        event has to be retried. Nothing from a failed event is kept in the
        graph; a vector added just before a failed graph save stays, and the
        retry skips it.
        """
        stage = STAGE_INDEX
        written = 0
        indexed = False
        try:
            vector = None
            if not await self.vectors.contains(event.id):
                stage = STAGE_EMBED
                vector = await self.embedder.embed(event.content)

            triples = []
            if event.feedback == Feedback.VALIDATED:
                stage = STAGE_EXTRACT
                triples = await self._extract(event.content)

            stage = STAGE_GRAPH
            async with self.graph.batch():
                for triple in triples:
                    await self.graph.upsert_entity(triple.source, triple.source_kind)
                    await self.graph.upsert_entity(triple.target, triple.target_kind)
                    result = await self.graph.upsert_relation(triple.source, triple.relation, triple.target, event.id)
                    if result.changed:
                        written += 1
                if vector is not None:
                    stage = STAGE_INDEX
                    indexed = await self.vectors.add(event.id, event.content, vector)
                    stage = STAGE_GRAPH  # the batch saves on exit
        except ClosedResourceError:
            raise
        except Exception as e:
            self._fail(report, event.id, stage, e)
            return False

        report.graph_entries_written += written
        if indexed:
            report.vectors_written += 1
        return True

    async def _extract(self, content: str) -> list:
        result = self.extractor.extract(content)
        if inspect.isawaitable(result):
            result = await result
        triples = list(result or [])
        for triple in triples:
            if not isinstance(triple, Triple):
                raise TypeError(f"extractor returned {type(triple).__name__}, expected Triple")
        return triples

    def _fail(self, report: ConsolidationReport, event_id: int, stage: str, error: Exception) -> None:
        failure = ConsolidationItemFailure(event_id, stage, error)
        report.failures.append(failure)
        logger.warning(str(failure))


def summarize(report: Optional[ConsolidationReport]) -> str:
    """One-line human summary of a pass, for tools and scripts."""
    if report is None:
        return "No consolidation has run yet"
    return (
        f"{report.status.value}: {report.events_processed} events processed, "
        f"{report.graph_entries_written} graph entries, {report.vectors_written} vectors, "
        f"{len(report.failures)} failures (watermark {report.watermark_before} -> {report.watermark_after})"
    )
