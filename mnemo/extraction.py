"""
Triple extraction - pull (entity, relation, entity) facts out of event text.

The default extractor is keyword based, the same trick as picking "because"
or "instead of" out of a sentence: cheap, deterministic and good enough for
the short, opinionated things developers say while coding
("prefer async/await over callbacks", "the cache requires redis").

Anything with an `extract(content)` method returning Triples (or an
awaitable of them) can replace it, e.g. an LLM-backed extractor.
"""

import re
from typing import Protocol, runtime_checkable

from mnemo.models import EntityKind, Triple

PREFERRED_OVER = "preferred_over"


@runtime_checkable
class TripleExtractor(Protocol):
    """Validated event content -> zero or more triples. May raise."""

    def extract(self, content: str):
        ...


# Order matters: the first pattern that matches a sentence wins.
# Each entry is (regex, relation, swap) - swap means the named groups are
# (loser, winner) and must be flipped into (winner, relation, loser).
_RELATION_PATTERNS = [
    (r"\bprefer(?:s|red)?\s+(?P<a>.+?)\s+(?:over|to)\s+(?P<b>.+)", PREFERRED_OVER, False),
    (r"\buse\s+(?P<a>.+?)\s+instead of\s+(?P<b>.+)", PREFERRED_OVER, False),
    (r"\bavoid\s+(?P<a>.+?)[,;]?\s+(?:use|in favou?r of|prefer)\s+(?P<b>.+)", PREFERRED_OVER, True),
    (r"(?P<a>.+?)\s+(?:rather than|instead of)\s+(?P<b>.+)", PREFERRED_OVER, False),
    (r"(?P<a>.+?)\s+(?:replaces|supersedes)\s+(?P<b>.+)", "replaces", False),
    (r"(?P<a>.+?)\s+depends on\s+(?P<b>.+)", "depends_on", False),
    (r"(?P<a>.+?)\s+(?:requires|needs)\s+(?P<b>.+)", "requires", False),
    (r"(?P<a>.+?)\s+(?:fixes|fixed|resolves|resolved)\s+(?P<b>.+)", "fixes", False),
    (r"(?P<a>.+?)\s+(?:causes|caused|leads to|led to|results in)\s+(?P<b>.+)", "causes", False),
]
_COMPILED = [(re.compile(p, re.IGNORECASE), rel, swap) for p, rel, swap in _RELATION_PATTERNS]

# Sentence breaks: ., ! or ? followed by whitespace (keeps "utils.py" intact), ; or newline
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|[;\n]+")
_LEADING_NOISE = re.compile(
    r"^(?:(?:always|generally|usually|please|we|i|you|should|must|to|use|using|the|a|an)\s+)+",
    re.IGNORECASE,
)
_TRAILING_CLAUSE = re.compile(
    r"\s+(?:for|in|when|because|since|so that|unless|if|where|while|on|within|whenever)\b.*$",
    re.IGNORECASE,
)
_FILE_NAME = re.compile(
    r"^[\w\-./]+\.(?:py|pyi|js|jsx|ts|tsx|go|rs|java|rb|md|json|ya?ml|toml|cfg|ini|sql|sh|c|h|cpp|hpp|cs|kt|swift)$",
    re.IGNORECASE,
)
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*(?:\(\))?$")

MAX_ENTITY_CHARS = 60
MAX_ENTITY_WORDS = 6


def clean_entity(text: str) -> str:
    """Trim quotes, filler words and trailing clauses off an entity phrase."""
    text = text.strip().strip("`'\"")
    text = _TRAILING_CLAUSE.sub("", text)
    text = _LEADING_NOISE.sub("", text)
    text = text.strip().rstrip(".,:!?").strip().strip("`'\"")
    return " ".join(text.split())


def guess_kind(name: str, relation: str = "") -> EntityKind:
    if _FILE_NAME.match(name):
        return EntityKind.FILE
    if _IDENTIFIER.match(name) and ("_" in name or name.endswith("()") or re.search(r"[a-z][A-Z]", name)):
        return EntityKind.SYMBOL
    if relation == PREFERRED_OVER:
        return EntityKind.PATTERN
    return EntityKind.CONCEPT


def _acceptable(name: str) -> bool:
    return 2 <= len(name) <= MAX_ENTITY_CHARS and len(name.split()) <= MAX_ENTITY_WORDS


class PatternTripleExtractor:
    """Keyword/regex extractor. One triple per sentence at most."""

    def extract(self, content: str) -> list:
        triples = []
        seen = set()
        for sentence in _SENTENCE_SPLIT.split(content or ""):
            sentence = sentence.strip()
            if not sentence:
                continue
            triple = self._extract_sentence(sentence)
            if triple is None:
                continue
            key = (triple.source.casefold(), triple.relation, triple.target.casefold())
            if key not in seen:
                seen.add(key)
                triples.append(triple)
        return triples

    def _extract_sentence(self, sentence: str):
        for regex, relation, swap in _COMPILED:
            match = regex.search(sentence)
            if not match:
                continue
            a, b = clean_entity(match.group("a")), clean_entity(match.group("b"))
            if swap:
                a, b = b, a
            if not (_acceptable(a) and _acceptable(b)) or a.casefold() == b.casefold():
                continue
            return Triple(
                source=a,
                relation=relation,
                target=b,
                source_kind=guess_kind(a, relation),
                target_kind=guess_kind(b, relation),
            )
        return None
