"""
Context Assembler - "What should the agent know right now?"

Builds the block that gets auto-injected into the calling model's context:

    <project-memory>
    ## Recent Activity
    - [preference +1] Prefer async/await over callbacks
    ## Known Patterns
    - async/await --preferred_over--> callbacks (strength 2, 2 observations)
    ## Relevant Context
    - (0.82) Fixed the retry loop in fetcher.py
    </project-memory>

Token counting is an estimate: ceil(characters / chars_per_token), with 4
characters per token by default. It is deterministic, so the same memory
state and budget always give the same block.

Budgeting fills sections in priority order (Recent Activity, Known
Patterns, Relevant Context). The section that would overflow keeps its
header and as many lines as fit (possibly none), its last line cut at a
word boundary; anything after it is dropped.
"""

import math
from typing import Optional

from mnemo.config import MnemoConfig
from mnemo.embeddings import Embedder
from mnemo.errors import ClosedResourceError
from mnemo.graph import KnowledgeGraph
from mnemo.interaction_log import InteractionLog
from mnemo.logger import get_logger
from mnemo.models import ContextBlock, EventFilter, Feedback
from mnemo.vectors import VectorIndex

logger = get_logger("mnemo.context")

OPEN_TAG = "<project-memory>"
CLOSE_TAG = "</project-memory>"

RECENT_ACTIVITY = "Recent Activity"
KNOWN_PATTERNS = "Known Patterns"
RELEVANT_CONTEXT = "Relevant Context"

ELLIPSIS = "…"
MIN_LINE_CHARS = 12  # Don't bother rendering a cut line shorter than this

_FEEDBACK_MARK = {Feedback.VALIDATED: " +1", Feedback.REJECTED: " -1", Feedback.NONE: ""}


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Approximate token count: ceil(len(text) / chars_per_token)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def truncate_line(line: str, max_chars: int) -> str:
    """Cut a line to at most max_chars, preferring a word boundary."""
    if len(line) <= max_chars:
        return line
    if max_chars <= len(ELLIPSIS):
        return line[:max_chars]
    cut = line[:max_chars - len(ELLIPSIS)]
    last_space = cut.rfind(" ")
    if last_space > len(cut) * 0.6:
        cut = cut[:last_space]
    return cut.rstrip() + ELLIPSIS


def _single_line(text: str) -> str:
    return " ".join(text.split())


class ContextAssembler:
    """Read-only aggregator over the three backends of one project."""

    def __init__(
        self,
        log: InteractionLog,
        graph: KnowledgeGraph,
        vectors: VectorIndex,
        embedder: Embedder,
        config: MnemoConfig,
    ):
        self.log = log
        self.graph = graph
        self.vectors = vectors
        self.embedder = embedder
        self.config = config

    async def build(
        self,
        max_tokens: Optional[int] = None,
        current_context: Optional[str] = None,
    ) -> ContextBlock:
        """Assemble the budgeted memory block.

        Args:
            max_tokens: Token budget (defaults to config.token_budget, 2000)
            current_context: A file path or query. When given, the vector
                             index is searched for related past events.
        """
        max_tokens = self.config.token_budget if max_tokens is None else max_tokens
        if max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")

        events = await self.log.list(EventFilter(limit=self.config.recent_events))
        relations = await self.graph.top_relations(self.config.top_relations)
        hits = []
        if current_context and current_context.strip():
            hits = await self._semantic_hits(current_context, exclude={e.id for e in events})

        sections = [
            (RECENT_ACTIVITY, [self._event_line(e) for e in events]),
            (KNOWN_PATTERNS, [self._relation_line(r) for r in relations]),
            (RELEVANT_CONTEXT, [self._hit_line(h) for h in hits]),
        ]
        return self._render(sections, max_tokens)

    async def build_for_file(self, path: str, max_tokens: Optional[int] = None) -> ContextBlock:
        """build() with the file path as the semantic-search context."""
        return await self.build(max_tokens=max_tokens, current_context=str(path))

    async def _semantic_hits(self, current_context: str, exclude: set) -> list:
        try:
            vector = await self.embedder.embed(current_context)
        except ClosedResourceError:
            raise
        except Exception as e:
            # Best effort: without a query vector there's simply no Relevant Context section
            logger.warning(f"Skipping semantic search, embedding failed: {type(e).__name__}: {e}")
            return []
        limit = self.config.semantic_results
        hits = await self.vectors.search(vector, limit + len(exclude))
        return [h for h in hits if h.event_id not in exclude][:limit]

    # =========================================================================
    # RENDERING
    # =========================================================================

    def _event_line(self, event) -> str:
        content = truncate_line(_single_line(event.content), self.config.event_line_chars)
        return f"- [{event.kind.value}{_FEEDBACK_MARK[event.feedback]}] {content}"

    def _relation_line(self, relation) -> str:
        n = len(relation.contributors)
        return (
            f"- {relation.source} --{relation.label}--> {relation.target} "
            f"(strength {relation.strength:g}, {n} observation{'s' if n != 1 else ''})"
        )

    def _hit_line(self, hit) -> str:
        content = truncate_line(_single_line(hit.text), self.config.event_line_chars)
        return f"- ({hit.score:.2f}) {content}"

    def _render(self, sections: list, max_tokens: int) -> ContextBlock:
        cpt = self.config.chars_per_token
        budget = max_tokens * cpt
        # Every line costs its length plus the newline joining it to the next
        remaining = budget - (len(OPEN_TAG) + 1) - len(CLOSE_TAG)

        if remaining < 0:
            has_data = any(items for _, items in sections)
            return ContextBlock(text="", token_estimate=0, max_tokens=max_tokens, truncated=has_data)

        body = []
        counts = {}
        truncated = False

        for title, items in sections:
            if not items:
                continue
            if truncated:
                break
            header = f"## {title}"
            if remaining < len(header) + 1:
                truncated = True
                break
            body.append(header)
            remaining -= len(header) + 1
            counts[title] = 0

            for line in items:
                cost = len(line) + 1
                if cost <= remaining:
                    body.append(line)
                    remaining -= cost
                    counts[title] += 1
                    continue
                truncated = True
                if remaining - 1 >= MIN_LINE_CHARS:
                    cut = truncate_line(line, remaining - 1)
                    body.append(cut)
                    remaining -= len(cut) + 1
                    counts[title] += 1
                break

        text = "\n".join([OPEN_TAG] + body + [CLOSE_TAG])
        return ContextBlock(
            text=text,
            token_estimate=estimate_tokens(text, cpt),
            max_tokens=max_tokens,
            truncated=truncated,
            sections=counts,
        )
