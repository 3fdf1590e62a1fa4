"""
MCP Server - how coding agents talk to Mnemo.

A thin layer: every tool maps onto one orchestrator call.

Tools:
1. mnemo_record       - "This just happened" (passive event capture)
2. mnemo_list_events  - "What happened recently?"
3. mnemo_consolidate  - run a sleep cycle now
4. mnemo_query_entity - "What do we know about X?"
5. mnemo_traverse     - "How is X connected to Y?"
6. mnemo_search       - "Find past events like this"
7. mnemo_context      - "What should I know right now?"
8. mnemo_stats        - counts for the project's three stores

Resources (for auto-injection, no tool call needed):
- mnemo://context/project      - whole-project context block
- mnemo://context/file/{path}  - context block focused on one file
"""

import asyncio
import json
import os
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Resource, ResourceTemplate, TextContent, Tool

from mnemo.config import MnemoConfig
from mnemo.consolidation import summarize
from mnemo.errors import MnemoError
from mnemo.logger import get_logger
from mnemo.models import EventFilter, EventKind, Feedback
from mnemo.orchestrator import MemoryOrchestrator

logger = get_logger("mnemo.server")

PROJECT_CONTEXT_URI = "mnemo://context/project"
FILE_CONTEXT_PREFIX = "mnemo://context/file/"

# Create the MCP server
server = Server("mnemo")

# One orchestrator per server process (lazy - initialized on first use)
_orchestrator: Optional[MemoryOrchestrator] = None
_orchestrator_lock: Optional[asyncio.Lock] = None


def _project_root() -> str:
    """The hook/editor tells us the project via MNEMO_PROJECT_ROOT, else cwd."""
    return os.environ.get("MNEMO_PROJECT_ROOT") or os.getcwd()


async def get_orchestrator() -> MemoryOrchestrator:
    """Get the orchestrator, creating and initializing it if needed."""
    global _orchestrator, _orchestrator_lock
    if _orchestrator_lock is None:
        _orchestrator_lock = asyncio.Lock()
    async with _orchestrator_lock:
        if _orchestrator is None:
            orchestrator = MemoryOrchestrator(_project_root(), config=MnemoConfig.load())
            await orchestrator.initialize()
            _orchestrator = orchestrator
        return _orchestrator


async def shutdown() -> None:
    global _orchestrator
    if _orchestrator is not None:
        orchestrator, _orchestrator = _orchestrator, None
        await orchestrator.close()


def _text(text: str) -> list:
    return [TextContent(type="text", text=text)]


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

@server.list_tools()
async def list_tools() -> list[Tool]:
    """Tell the agent what tools are available."""
    kinds = [k.value for k in EventKind]
    return [
        Tool(
            name="mnemo_record",
            description="""Record an interaction event for this project.

Events are raw material: they become durable knowledge only after a
consolidation pass, and only validated events feed the knowledge graph.

Examples:
- preference: "Prefer async/await over callbacks" (feedback 1 once the user agrees)
- code-fix: "Fixed the race in cache.py by holding the lock during refresh"
- error: "pytest fails on import because PYTHONPATH is unset\"""",
            inputSchema={
                "type": "object",
                "properties": {
                    "kind": {"type": "string", "enum": kinds, "description": "Event kind"},
                    "content": {"type": "string", "description": "What happened, in one or two sentences"},
                    "feedback": {
                        "type": "integer",
                        "enum": [-1, 0, 1],
                        "default": 0,
                        "description": "1 = user validated, -1 = user rejected, 0 = no feedback",
                    },
                    "metadata": {"type": "object", "description": "Extra structured data (file, symbol, tool...)"},
                },
                "required": ["kind", "content"],
            },
        ),
        Tool(
            name="mnemo_list_events",
            description="List recent interaction events, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "kind": {"type": "string", "enum": kinds},
                    "feedback": {"type": "integer", "enum": [-1, 0, 1]},
                    "limit": {"type": "integer", "minimum": 1, "default": 20},
                },
            },
        ),
        Tool(
            name="mnemo_consolidate",
            description="Run one consolidation (sleep cycle) pass: promote new feedback events into the knowledge graph and vector index.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="mnemo_query_entity",
            description="Show every known relation of an entity (pattern, file, symbol or concept) with its strength.",
            inputSchema={
                "type": "object",
                "properties": {"name": {"type": "string", "description": "Entity name, e.g. 'async/await'"}},
                "required": ["name"],
            },
        ),
        Tool(
            name="mnemo_traverse",
            description="Find how two entities are connected (shortest directed path, bounded depth).",
            inputSchema={
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "max_depth": {"type": "integer", "minimum": 1, "default": 5},
                },
                "required": ["source", "target"],
            },
        ),
        Tool(
            name="mnemo_search",
            description="Search consolidated events by meaning.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "limit": {"type": "integer", "minimum": 1, "default": 5},
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="mnemo_context",
            description="Get the budgeted project memory block (recent activity, known patterns, relevant context).",
            inputSchema={
                "type": "object",
                "properties": {
                    "max_tokens": {"type": "integer", "minimum": 0, "default": 2000},
                    "current_context": {"type": "string", "description": "File path or query to focus on"},
                },
            },
        ),
        Tool(
            name="mnemo_stats",
            description="Show event, vector and graph counts plus consolidation status for this project.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


# =============================================================================
# TOOL HANDLERS
# =============================================================================

@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls. Errors come back as text, never crash the server."""
    arguments = arguments or {}
    try:
        memory = await get_orchestrator()
        return await _dispatch(memory, name, arguments)
    except (MnemoError, ValueError, KeyError) as e:
        return _text(f"Error: {type(e).__name__}: {e}")
    except Exception as e:
        logger.error(f"Tool {name} failed: {e}", exc_info=True)
        return _text(f"Error running {name}: {type(e).__name__}: {e}")


async def _dispatch(memory: MemoryOrchestrator, name: str, arguments: dict) -> list:
    if name == "mnemo_record":
        event_id = await memory.record_event(
            arguments["kind"],
            arguments["content"],
            feedback=arguments.get("feedback", 0),
            metadata=arguments.get("metadata"),
        )
        return _text(f"Recorded event #{event_id}")

    if name == "mnemo_list_events":
        event_filter = EventFilter(
            kinds=[EventKind(arguments["kind"])] if arguments.get("kind") else None,
            feedback=[Feedback(arguments["feedback"])] if arguments.get("feedback") is not None else None,
            limit=arguments.get("limit", 20),
        )
        events = await memory.list_events(event_filter)
        if not events:
            return _text("No events recorded yet.")
        lines = [f"## Events ({len(events)})\n"]
        for e in events:
            lines.append(f"- #{e.id} [{e.kind.value}, feedback {int(e.feedback):+d}] {e.content}")
        return _text("\n".join(lines))

    if name == "mnemo_consolidate":
        report = await memory.run_consolidation()
        lines = [f"## Sleep cycle: {summarize(report)}"]
        for failure in report.failures:
            lines.append(f"- event #{failure.event_id} ({failure.stage}): {failure.cause}")
        return _text("\n".join(lines))

    if name == "mnemo_query_entity":
        views = await memory.query_entity(arguments["name"])
        if not views:
            return _text(f"Nothing known about {arguments['name']!r}.")
        lines = [f"## {arguments['name']}\n"]
        for v in views:
            arrow = f"--{v.label}--> {v.entity}" if v.direction == "out" else f"<--{v.label}-- {v.entity}"
            lines.append(f"- {arrow} (strength {v.strength:g})")
        return _text("\n".join(lines))

    if name == "mnemo_traverse":
        edges = await memory.traverse(arguments["source"], arguments["target"], arguments.get("max_depth"))
        if not edges:
            return _text(f"No path from {arguments['source']!r} to {arguments['target']!r}.")
        chain = " ".join([edges[0].source] + [f"--{e.label}--> {e.target}" for e in edges])
        return _text(chain)

    if name == "mnemo_search":
        hits = await memory.search(arguments["query"], arguments.get("limit", 5))
        if not hits:
            return _text("No matching events.")
        return _text("\n".join(f"- ({h.score:.2f}) #{h.event_id} {h.text}" for h in hits))

    if name == "mnemo_context":
        block = await memory.context_block(
            max_tokens=arguments.get("max_tokens"),
            current_context=arguments.get("current_context"),
        )
        return _text(block.text)

    if name == "mnemo_stats":
        stats = await memory.stats()
        stats["last_consolidation"] = summarize(memory.last_report)
        return _text(json.dumps(stats, indent=2, default=str))

    return _text(f"Unknown tool: {name}")


# =============================================================================
# RESOURCES
# =============================================================================

@server.list_resources()
async def list_resources() -> list[Resource]:
    return [
        Resource(
            uri=PROJECT_CONTEXT_URI,
            name="Project memory",
            description="Budgeted summary of recent activity, known patterns and relevant context",
            mimeType="text/plain",
        ),
    ]


@server.list_resource_templates()
async def list_resource_templates() -> list[ResourceTemplate]:
    return [
        ResourceTemplate(
            uriTemplate=FILE_CONTEXT_PREFIX + "{path}",
            name="File memory",
            description="Project memory focused on one file (adds semantically related past events)",
            mimeType="text/plain",
        ),
    ]


@server.read_resource()
async def read_resource(uri) -> str:
    """Serve context blocks. File blocks use mnemo://context/file/<path>."""
    uri = str(uri)
    memory = await get_orchestrator()
    if uri == PROJECT_CONTEXT_URI:
        return (await memory.context_block()).text
    if uri.startswith(FILE_CONTEXT_PREFIX):
        path = uri[len(FILE_CONTEXT_PREFIX):]
        if not path:
            raise ValueError("file context resource needs a path")
        return (await memory.file_context_block(path)).text
    raise ValueError(f"Unknown resource: {uri}")


# =============================================================================
# SERVER STARTUP
# =============================================================================

def serve():
    """Start the MCP server over stdio."""

    async def main():
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options()
                )
        finally:
            await shutdown()

    asyncio.run(main())


if __name__ == "__main__":
    serve()
