"""Tests for the stdio JSON-RPC tool server."""

import io
import json

import pytest

from hyve_knowledge.index_manager import CorpusIndexManager
from hyve_knowledge.models import Corpus
from hyve_knowledge.search import RetrievalService
from hyve_knowledge.server import (
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    KnowledgeToolServer,
    clamp_limit,
)
from hyve_knowledge.storage import GraphStore


@pytest.fixture
def server(service: RetrievalService, index_manager: CorpusIndexManager, seeded_store: GraphStore) -> KnowledgeToolServer:
    index_manager.rebuild(seeded_store, Corpus.GAMEDATA)
    return KnowledgeToolServer(service)


def _call(server: KnowledgeToolServer, name: str, arguments=None):
    response = server.handle_message({
        "jsonrpc": "2.0",
        "id": 7,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments or {}},
    })
    return response["result"]


class TestProtocol:

    def test_initialize(self, server: KnowledgeToolServer):
        response = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
        assert response["id"] == 1
        assert response["result"]["protocolVersion"] == PROTOCOL_VERSION
        assert response["result"]["serverInfo"]["name"] == "hyve-knowledge"

    def test_tools_list(self, server: KnowledgeToolServer):
        response = server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
        names = [tool["name"] for tool in response["result"]["tools"]]
        assert names == [
            "search_code",
            "search_client",
            "search_gamedata",
            "search_docs",
            "code_stats",
            "client_stats",
            "gamedata_stats",
            "docs_stats",
        ]
        search_code = response["result"]["tools"][0]
        assert search_code["inputSchema"]["required"] == ["query"]
        assert "classFilter" in search_code["inputSchema"]["properties"]
        gamedata_type = response["result"]["tools"][2]["inputSchema"]["properties"]["type"]
        assert "npc_group" in gamedata_type["description"]

    def test_notification_gets_no_response(self, server: KnowledgeToolServer):
        assert server.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None

    def test_unknown_method(self, server: KnowledgeToolServer):
        response = server.handle_message({"jsonrpc": "2.0", "id": 3, "method": "resources/list"})
        assert response["error"]["code"] == METHOD_NOT_FOUND

    def test_unknown_tool(self, server: KnowledgeToolServer):
        response = server.handle_message({
            "jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "search_everything"},
        })
        assert response["error"]["code"] == METHOD_NOT_FOUND

    def test_parse_error(self, server: KnowledgeToolServer):
        assert server.handle_line("{not json")["error"]["code"] == PARSE_ERROR

    def test_invalid_request(self, server: KnowledgeToolServer):
        assert server.handle_message([1, 2])["error"]["code"] == INVALID_REQUEST

    def test_serve_round_trip(self, server: KnowledgeToolServer):
        stdin = io.StringIO(
            '{"jsonrpc":"2.0","id":1,"method":"ping"}\n'
            "\n"
            '{"jsonrpc":"2.0","method":"notifications/initialized"}\n'
            '{"jsonrpc":"2.0","id":2,"method":"tools/call","params":{"name":"gamedata_stats"}}\n'
        )
        stdout = io.StringIO()
        server.serve(stdin, stdout)

        lines = [json.loads(line) for line in stdout.getvalue().splitlines()]
        assert [line["id"] for line in lines] == [1, 2]
        assert lines[0]["result"] == {}


class TestTools:

    def test_search_gamedata(self, server: KnowledgeToolServer):
        result = _call(server, "search_gamedata", {"query": "gold coin currency", "limit": 1})
        assert "isError" not in result
        payload = json.loads(result["content"][0]["text"])
        assert payload["query"] == "gold coin currency"
        assert payload["resultCount"] == 1
        assert payload["results"][0]["id"] == "gamedata:item:gold_coin"
        assert payload["results"][0]["dataType"] == "item"

    def test_search_gamedata_type_filter(self, server: KnowledgeToolServer):
        result = _call(server, "search_gamedata", {"query": "goblin", "type": "npc_group"})
        payload = json.loads(result["content"][0]["text"])
        assert [r["id"] for r in payload["results"]] == ["gamedata:group:goblin_party"]

    def test_search_with_expand(self, server: KnowledgeToolServer):
        result = _call(server, "search_gamedata", {"query": "torch light source", "expand": True})
        payload = json.loads(result["content"][0]["text"])
        ids = [r["id"] for r in payload["results"]]
        assert ids[:2] == ["gamedata:item:torch", "class:com.hytale.ItemManager"]
        assert payload["results"][1]["bridgedFrom"] == "Torch"

    def test_missing_query(self, server: KnowledgeToolServer):
        result = _call(server, "search_code", {"limit": 3})
        assert result["isError"] is True
        assert result["content"][0]["text"] == "Missing 'query' parameter"

    def test_stats_tool(self, server: KnowledgeToolServer):
        payload = json.loads(_call(server, "gamedata_stats")["content"][0]["text"])
        assert payload["nodeCount"] == 11
        assert payload["vectorIndexLoaded"] is True

    def test_tool_failure_is_reported(self, server: KnowledgeToolServer, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("db gone")

        monkeypatch.setattr(server.service, "get_corpus_stats", _boom)
        result = _call(server, "code_stats")
        assert result["isError"] is True
        assert "db gone" in result["content"][0]["text"]


class TestClampLimit:

    @pytest.mark.parametrize(
        "raw, expected",
        [(None, 5), (0, 1), (-3, 1), (7, 7), (99, 20), ("4", 4), ("lots", 5), (True, 5)],
    )
    def test_clamp(self, raw, expected):
        assert clamp_limit(raw) == expected
