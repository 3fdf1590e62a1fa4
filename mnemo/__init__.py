"""
Mnemo MCP - Project memory for AI coding agents

Records what happens while you code, consolidates it in a "sleep cycle",
and hands the agent a budgeted memory block without being asked.
"""

__version__ = "0.1.0"

from mnemo.config import MnemoConfig
from mnemo.models import EventFilter, EventKind, Feedback
from mnemo.orchestrator import MemoryOrchestrator


def serve() -> None:
    """Run the Mnemo MCP server.

    This is called when you run: python -m mnemo.server
    Or when the coding agent starts Mnemo as an MCP server.
    """
    from mnemo.server import serve as _serve
    _serve()


__all__ = [
    "EventFilter",
    "EventKind",
    "Feedback",
    "MemoryOrchestrator",
    "MnemoConfig",
    "serve",
    "__version__",
]
