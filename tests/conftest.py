"""
Shared test fixtures.

Backends run for real (SQLite file, NetworkX JSON, ChromaDB directory) in a
temp dir per test. Only the two strategies are faked: the embedder (no
model download) and, where a test needs it, the triple extractor.
"""

import hashlib
import math
import re
import shutil
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).parent.parent))

from mnemo.config import MnemoConfig
from mnemo.models import EventKind, Feedback
from mnemo.orchestrator import MemoryOrchestrator

EMBED_DIM = 16


def fake_vector(text: str, dim: int = EMBED_DIM) -> list:
    """Deterministic bag-of-words vector: shared words -> similar vectors."""
    vec = [0.0] * dim
    vec[0] = 1.0  # never all-zero, cosine needs a norm
    for token in re.findall(r"\w+", text.lower()):
        h = int(hashlib.md5(token.encode()).hexdigest(), 16)
        vec[1 + h % (dim - 1)] += 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    return [v / norm for v in vec]


class FakeEmbedder:
    """Hashing embedder. Raises on any text containing a fail marker."""

    dimension = EMBED_DIM

    def __init__(self, fail_marker: str = "EMBED_FAIL"):
        self.fail_marker = fail_marker
        self.calls = []

    async def embed(self, text: str) -> list:
        self.calls.append(text)
        if self.fail_marker and self.fail_marker in text:
            raise RuntimeError("embedding service unavailable")
        return fake_vector(text)


class FailingExtractor:
    """Extractor that always blows up."""

    def extract(self, content: str):
        raise RuntimeError("extraction model crashed")


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def project_root(temp_data_dir):
    """A project checkout to remember things about."""
    root = temp_data_dir / "projects" / "webapp"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def other_project_root(temp_data_dir):
    root = temp_data_dir / "projects" / "cli-tool"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def config(temp_data_dir):
    return MnemoConfig(data_dir=temp_data_dir / "data", close_timeout=1.0)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest_asyncio.fixture
async def memory(project_root, config, embedder):
    """Initialized orchestrator for the default project, closed afterwards."""
    orchestrator = MemoryOrchestrator(project_root, config=config, embedder=embedder)
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.close()


@pytest.fixture
def coding_session():
    """A realistic slice of one afternoon's events.

    (kind, content, feedback)
    """
    return [
        (EventKind.PREFERENCE, "Prefer async/await over callbacks", Feedback.VALIDATED),
        (EventKind.CODE_FIX, "The retry loop in fetcher.py fixes the flaky upload test", Feedback.VALIDATED),
        (EventKind.ERROR, "pytest fails on import because PYTHONPATH is unset", Feedback.NONE),
        (EventKind.SUGGESTION, "Use print debugging instead of the logger", Feedback.REJECTED),
        (EventKind.PATTERN, "The session cache requires redis", Feedback.VALIDATED),
        (EventKind.PATTERN, "Wrap handlers in a timeout decorator", Feedback.NONE),
    ]
