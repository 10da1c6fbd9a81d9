"""Core data models shared by storage, routing, traversal and search."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class EmbeddingPurpose(str, Enum):
    CODE = "code"
    TEXT = "text"


class Corpus(Enum):
    """Top-level partitions of the knowledge base.

    Every corpus shares the graph schema but owns a separate vector index,
    stored at ``<index_dir>/<index_file_name>``.
    """

    CODE = ("code", "Server Code", EmbeddingPurpose.CODE)
    CLIENT = ("client", "Client UI", EmbeddingPurpose.TEXT)
    GAMEDATA = ("gamedata", "Game Data", EmbeddingPurpose.TEXT)
    DOCS = ("docs", "Modding Docs", EmbeddingPurpose.TEXT)

    def __init__(self, corpus_id: str, display_name: str, purpose: EmbeddingPurpose) -> None:
        self.id = corpus_id
        self.display_name = display_name
        self.embedding_purpose = purpose

    @property
    def index_file_name(self) -> str:
        return f"{self.id}.hnsw"

    @classmethod
    def from_id(cls, corpus_id: str) -> "Corpus":
        for corpus in cls:
            if corpus.id == corpus_id:
                return corpus
        raise ValueError(
            f"Unknown corpus: '{corpus_id}'. "
            f"Available: {', '.join(c.id for c in cls)}"
        )


class EdgeType(str, Enum):
    """Closed relation vocabulary of the graph."""

    EXTENDS = "EXTENDS"
    IMPLEMENTS = "IMPLEMENTS"
    CALLS = "CALLS"
    CONTAINS = "CONTAINS"
    REQUIRES_ITEM = "REQUIRES_ITEM"
    PRODUCES_ITEM = "PRODUCES_ITEM"
    DROPS_ON_DEATH = "DROPS_ON_DEATH"
    DROPS_ITEM = "DROPS_ITEM"
    OFFERED_IN_SHOP = "OFFERED_IN_SHOP"
    HAS_MEMBER = "HAS_MEMBER"
    UI_BINDS_TO = "UI_BINDS_TO"
    IMPLEMENTED_BY = "IMPLEMENTED_BY"
    DOCS_REFERENCES = "DOCS_REFERENCES"

    @classmethod
    def parse(cls, value: "str | EdgeType") -> "EdgeType":
        if isinstance(value, EdgeType):
            return value
        try:
            return cls(value.upper())
        except ValueError:
            raise ValueError(f"Unknown edge type: '{value}'") from None


class QueryStrategy(str, Enum):
    VECTOR = "VECTOR"
    GRAPH = "GRAPH"
    HYBRID = "HYBRID"


class ResultSource(str, Enum):
    VECTOR = "VECTOR"
    GRAPH = "GRAPH"
    HYBRID = "HYBRID"


class GameDataType(str, Enum):
    ITEM = "item"
    RECIPE = "recipe"
    BLOCK = "block"
    INTERACTION = "interaction"
    DROP = "drop"
    NPC = "npc"
    NPC_GROUP = "npc_group"
    NPC_AI = "npc_ai"
    ENTITY = "entity"
    PROJECTILE = "projectile"
    FARMING = "farming"
    SHOP = "shop"
    ENVIRONMENT = "environment"
    WEATHER = "weather"
    BIOME = "biome"
    WORLDGEN = "worldgen"
    CAMERA = "camera"
    OBJECTIVE = "objective"
    GAMEPLAY = "gameplay"
    LOCALIZATION = "localization"
    ZONE = "zone"
    TERRAIN_LAYER = "terrain_layer"
    CAVE = "cave"
    PREFAB = "prefab"

    @classmethod
    def from_id(cls, type_id: str) -> Optional["GameDataType"]:
        for member in cls:
            if member.value == type_id:
                return member
        return None


@dataclass
class Node:
    node_id: str
    node_type: str
    display_name: str
    corpus: str = Corpus.CODE.id
    data_type: Optional[str] = None
    file_path: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    content: str = ""
    embedding_text: Optional[str] = None
    chunk_index: Optional[int] = None
    owning_file: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Edge:
    source_id: str
    target_id: str
    edge_type: EdgeType
    owning_file_id: Optional[str] = None
    target_resolved: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    node_id: str
    display_name: str
    snippet: str
    file_path: str
    line_start: int
    score: float
    source: ResultSource
    data_type: Optional[str] = None
    corpus: str = Corpus.CODE.id
    bridged_from: Optional[str] = None
    bridge_edge_type: Optional[str] = None
    connected_node_ids: List[str] = field(default_factory=list)
    # Internal only; never serialized.
    expanded_from_node_id: Optional[str] = None

    def copy(self, **changes: Any) -> "SearchResult":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used by the tool server."""
        payload: Dict[str, Any] = {
            "id": self.node_id,
            "displayName": self.display_name,
            "snippet": self.snippet,
            "filePath": self.file_path,
            "lineStart": self.line_start,
            "score": self.score,
            "source": self.source.value,
            "corpus": self.corpus,
        }
        if self.data_type is not None:
            payload["dataType"] = self.data_type
        if self.bridged_from is not None:
            payload["bridgedFrom"] = self.bridged_from
        if self.bridge_edge_type is not None:
            payload["bridgeEdgeType"] = self.bridge_edge_type
        if self.connected_node_ids:
            payload["connectedNodeIds"] = list(self.connected_node_ids)
        return payload


@dataclass(frozen=True)
class RouteResult:
    strategy: QueryStrategy
    entity_name: Optional[str] = None
    relation: Optional[EdgeType] = None


@dataclass
class IndexStats:
    corpus: str = Corpus.CODE.id
    node_count: int = 0
    type_breakdown: Dict[str, int] = field(default_factory=dict)
    edge_count: int = 0
    vector_index_loaded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "corpus": self.corpus,
            "nodeCount": self.node_count,
            "typeBreakdown": dict(self.type_breakdown),
            "edgeCount": self.edge_count,
            "vectorIndexLoaded": self.vector_index_loaded,
        }
