"""Line-oriented JSON-RPC tool server over stdio.

One JSON request per input line, one JSON response per output line.  The
methods follow the Model Context Protocol shape: ``initialize``,
``tools/list`` and ``tools/call``.  Notifications (requests without an
``id``) get no response.  Logging goes to stderr; stdout carries only
protocol traffic.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TextIO

from . import __version__
from .config import MAX_TOOL_LIMIT
from .models import Corpus, GameDataType, SearchResult
from .search import RetrievalService

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
DEFAULT_TOOL_LIMIT = 5

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

# Corpora searched, in order, when a tool is called with ``expand=true``.
EXPANSION_CORPORA: Dict[Corpus, List[Corpus]] = {
    Corpus.CODE: list(Corpus),
    Corpus.CLIENT: [Corpus.CLIENT, Corpus.GAMEDATA, Corpus.CODE],
    Corpus.GAMEDATA: [Corpus.GAMEDATA, Corpus.CODE, Corpus.CLIENT],
    Corpus.DOCS: [Corpus.DOCS, Corpus.CODE, Corpus.GAMEDATA],
}

_SEARCH_DESCRIPTIONS = {
    Corpus.CODE: (
        "Search the decompiled server codebase. Returns relevant classes and methods with source.",
        "classFilter",
        "Filter results to a class name or file path fragment",
    ),
    Corpus.CLIENT: (
        "Search client UI definition files (layouts, screens, panels).",
        "classFilter",
        "Filter results to a UI category (e.g. InGame, MainMenu)",
    ),
    Corpus.GAMEDATA: (
        "Search game data: items, recipes, NPCs, drops, blocks, shops and more.",
        "type",
        "Filter by data type: " + ", ".join(t.value for t in GameDataType),
    ),
    Corpus.DOCS: (
        "Search modding documentation: guides, tutorials and reference pages.",
        "type",
        "Filter by documentation type",
    ),
}


class ToolError(Exception):
    """A tool failure reported to the client as an ``isError`` result."""


@dataclass
class Tool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Callable[[Dict[str, Any]], Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def _prop(kind: str, description: str) -> Dict[str, str]:
    return {"type": kind, "description": description}


def clamp_limit(raw: Any, default: int = DEFAULT_TOOL_LIMIT) -> int:
    if raw is None or isinstance(raw, bool):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return max(1, min(MAX_TOOL_LIMIT, value))


def encode_search_results(query: str, results: List[SearchResult]) -> Dict[str, Any]:
    return {
        "query": query,
        "resultCount": len(results),
        "results": [r.to_dict() for r in results],
    }


class KnowledgeToolServer:
    """Expose :class:`RetrievalService` as ``search_<corpus>`` and ``<corpus>_stats`` tools."""

    def __init__(self, service: RetrievalService) -> None:
        self.service = service
        self.tools: Dict[str, Tool] = {}
        for corpus in Corpus:
            self._register(self._search_tool(corpus))
        for corpus in Corpus:
            self._register(self._stats_tool(corpus))

    def _register(self, tool: Tool) -> None:
        self.tools[tool.name] = tool

    # ------------------------------------------------------------------
    # Tool definitions
    # ------------------------------------------------------------------

    def _search_tool(self, corpus: Corpus) -> Tool:
        description, filter_key, filter_help = _SEARCH_DESCRIPTIONS[corpus]
        schema = {
            "type": "object",
            "properties": {
                "query": _prop("string", "Natural language description of what you're looking for"),
                filter_key: _prop("string", filter_help),
                "limit": _prop("integer", f"Number of results to return (default {DEFAULT_TOOL_LIMIT}, max {MAX_TOOL_LIMIT})"),
                "expand": _prop("boolean", "Follow cross-corpus graph links to related results (default false)"),
            },
            "required": ["query"],
        }

        def handler(arguments: Dict[str, Any]) -> Dict[str, Any]:
            query = arguments.get("query")
            if not isinstance(query, str) or not query.strip():
                raise ToolError("Missing 'query' parameter")
            limit = clamp_limit(arguments.get("limit"))
            filter_value = arguments.get(filter_key) or None
            if arguments.get("expand") is True:
                results = self.service.search_with_expansion(query, EXPANSION_CORPORA[corpus], limit, expand=True)
            elif corpus == Corpus.CODE:
                results = self.service.search_code(query, filter_value, limit)
            else:
                results = self.service.search_corpus(query, corpus, limit, filter_value)
            return encode_search_results(query, results)

        return Tool(f"search_{corpus.id}", description, schema, handler)

    def _stats_tool(self, corpus: Corpus) -> Tool:
        def handler(arguments: Dict[str, Any]) -> Dict[str, Any]:
            return self.service.get_corpus_stats(corpus).to_dict()

        return Tool(
            f"{corpus.id}_stats",
            f"Get statistics about the indexed {corpus.display_name} corpus.",
            {"type": "object", "properties": {}},
            handler,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Run a tool and wrap its payload as MCP ``content`` text."""
        tool = self.tools[name]
        try:
            payload = tool.handler(arguments or {})
        except ToolError as exc:
            return {"content": [{"type": "text", "text": str(exc)}], "isError": True}
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return {"content": [{"type": "text", "text": f"Tool failed: {exc}"}], "isError": True}
        return {"content": [{"type": "text", "text": json.dumps(payload, indent=2)}]}

    def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """Answer one decoded JSON-RPC message; ``None`` for notifications."""
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            return _error(None, INVALID_REQUEST, "Invalid request")

        request_id = message.get("id")
        method = message["method"]
        params = message.get("params") or {}
        is_notification = "id" not in message

        if method == "initialize":
            result: Any = {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": "hyve-knowledge", "version": __version__},
            }
        elif method == "ping":
            result = {}
        elif method == "tools/list":
            result = {"tools": [tool.to_dict() for tool in self.tools.values()]}
        elif method == "tools/call":
            name = params.get("name") if isinstance(params, dict) else None
            if name not in self.tools:
                return None if is_notification else _error(request_id, METHOD_NOT_FOUND, f"Unknown tool: {name}")
            arguments = params.get("arguments")
            if arguments is not None and not isinstance(arguments, dict):
                return None if is_notification else _error(request_id, INVALID_PARAMS, "'arguments' must be an object")
            result = self.call_tool(name, arguments)
        elif method.startswith("notifications/"):
            return None
        else:
            return None if is_notification else _error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def handle_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            return _error(None, PARSE_ERROR, f"Parse error: {exc.msg}")
        return self.handle_message(message)

    def serve(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
        """Process requests until *stdin* is exhausted."""
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        logger.info("Knowledge tool server running on stdio (%d tools)", len(self.tools))
        for line in stdin:
            response = self.handle_line(line)
            if response is None:
                continue
            stdout.write(json.dumps(response) + "\n")
            stdout.flush()
        logger.info("Knowledge tool server stopped")


def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
