"""
Error types for Mnemo.

Construction and initialization failures are fatal and leave no usable
orchestrator. Per-event consolidation failures are collected into the pass
report instead of being raised. "No path found" and "context truncated" are
not errors at all.
"""

from typing import Optional


class MnemoError(Exception):
    """Base class for everything Mnemo raises on purpose."""


class InvalidProjectRoot(MnemoError, ValueError):
    """The project root is missing, not a directory, or not writable."""

    def __init__(self, root, reason: str):
        self.root = root
        self.reason = reason
        super().__init__(f"Invalid project root {str(root)!r}: {reason}")


class ConfigError(MnemoError):
    """The configuration file could not be parsed."""


class BackendConnectionError(MnemoError):
    """A storage backend failed its connect handshake."""

    backend = "backend"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"[{self.backend}] {message}{detail}")


class InteractionLogConnectionError(BackendConnectionError):
    backend = "interaction-log"


class KnowledgeGraphConnectionError(BackendConnectionError):
    backend = "knowledge-graph"


class VectorIndexConnectionError(BackendConnectionError):
    backend = "vector-index"


class NotInitializedError(MnemoError, RuntimeError):
    """An operation ran before initialize() succeeded."""


class ClosedResourceError(MnemoError, RuntimeError):
    """An operation ran against a closed orchestrator or backend handle."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"{resource} is closed")


class ConsolidationInProgressError(MnemoError, RuntimeError):
    """A consolidation pass for this project is already running."""

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(f"Consolidation already running for namespace {namespace}")


class ConsolidationItemFailure(MnemoError):
    """One event's contribution failed during a consolidation pass.

    These are recorded in the ConsolidationReport, never raised out of
    the pass.
    """

    def __init__(self, event_id: int, stage: str, cause: BaseException):
        self.event_id = event_id
        self.stage = stage
        self.cause = cause
        super().__init__(f"event {event_id} failed at {stage}: {type(cause).__name__}: {cause}")

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "stage": self.stage,
            "error": f"{type(self.cause).__name__}: {self.cause}",
        }
