"""Pytest configuration and fixtures for Hyve Knowledge tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from hyve_knowledge.config_manager import KnowledgeConfig
from hyve_knowledge.index_manager import CorpusIndexManager
from hyve_knowledge.models import Corpus, Edge, EdgeType, Node
from hyve_knowledge.search import RetrievalService
from hyve_knowledge.storage import GraphStore

# (id, display_name, data_type, embedding_text)
GAMEDATA_NODES = [
    ("gamedata:item:torch", "Torch", "item", "Torch light source"),
    ("gamedata:item:wood_log", "Wood_Log", "item", "Wood Log timber"),
    ("gamedata:item:resin", "Resin", "item", "Resin sap"),
    ("gamedata:drop:goblin_drop", "Drop_Goblin", "drop", "Goblin drop table"),
    ("gamedata:item:gold_coin", "Gold_Coin", "item", "Gold Coin currency"),
    ("gamedata:item:workbench", "Workbench", "item", "Workbench crafting station"),
    ("gamedata:shop:blacksmith", "Blacksmith", "shop", "Blacksmith shop sells weapons"),
    ("gamedata:npc:goblin", "NPC_Goblin", "npc", "Goblin hostile creature"),
    ("gamedata:npc:goblin_archer", "NPC_Goblin_Archer", "npc", "Goblin Archer ranged creature"),
    ("gamedata:npc:npc_blacksmith", "NPC_Blacksmith", "npc", "Blacksmith merchant npc"),
    ("gamedata:group:goblin_party", "GoblinRaidingParty", "npc_group", "Goblin raiding party group"),
]

# (id, display_name, embedding_text)
CODE_CLASSES = [
    ("class:com.hytale.ItemManager", "ItemManager", "ItemManager registers every item type"),
    ("class:com.hytale.ShopSystem", "ShopSystem", "ShopSystem runs merchant trades"),
    ("class:com.hytale.BaseItem", "BaseItem", "BaseItem abstract item"),
    ("class:com.hytale.SwordItem", "SwordItem", "SwordItem melee weapon"),
    ("class:com.hytale.AbstractController", "AbstractController", "AbstractController base controller"),
    ("class:com.hytale.NpcController", "NpcController", "NpcController drives npc behaviour"),
]

CLIENT_FILES = [
    ("ui:InGame/CraftingScreen.ui", "CraftingScreen", "Crafting screen layout"),
    ("ui:InGame/ShopPanel.ui", "ShopPanel", "Shop panel layout"),
]

EDGES = [
    ("gamedata:item:torch", "gamedata:item:wood_log", EdgeType.REQUIRES_ITEM),
    ("gamedata:item:torch", "gamedata:item:resin", EdgeType.REQUIRES_ITEM),
    ("gamedata:npc:goblin", "gamedata:drop:goblin_drop", EdgeType.DROPS_ON_DEATH),
    ("gamedata:drop:goblin_drop", "gamedata:item:gold_coin", EdgeType.DROPS_ITEM),
    ("gamedata:shop:blacksmith", "gamedata:item:torch", EdgeType.OFFERED_IN_SHOP),
    ("gamedata:group:goblin_party", "gamedata:npc:goblin", EdgeType.HAS_MEMBER),
    ("gamedata:group:goblin_party", "gamedata:npc:goblin_archer", EdgeType.HAS_MEMBER),
    ("gamedata:item:torch", "class:com.hytale.ItemManager", EdgeType.IMPLEMENTED_BY),
    ("gamedata:shop:blacksmith", "class:com.hytale.ShopSystem", EdgeType.IMPLEMENTED_BY),
    ("ui:InGame/CraftingScreen.ui", "gamedata:item:workbench", EdgeType.UI_BINDS_TO),
    ("ui:InGame/ShopPanel.ui", "gamedata:item:gold_coin", EdgeType.UI_BINDS_TO),
    ("ui:InGame/ShopPanel.ui", "gamedata:npc:npc_blacksmith", EdgeType.UI_BINDS_TO),
    ("class:com.hytale.SwordItem", "class:com.hytale.BaseItem", EdgeType.EXTENDS),
    ("class:com.hytale.NpcController", "class:com.hytale.AbstractController", EdgeType.EXTENDS),
    ("docs:crafting-guide", "class:com.hytale.ItemManager", EdgeType.DOCS_REFERENCES),
    ("docs:crafting-guide", "gamedata:item:torch", EdgeType.DOCS_REFERENCES),
    ("docs:crafting-guide", "ui:InGame/CraftingScreen.ui", EdgeType.DOCS_REFERENCES),
]


def seed_graph(store: GraphStore) -> None:
    """Populate *store* with a small cross-corpus graph."""
    nodes = []
    for chunk, (node_id, name, data_type, text) in enumerate(GAMEDATA_NODES):
        nodes.append(
            Node(
                node_id=node_id,
                node_type="GameData",
                display_name=name,
                corpus=Corpus.GAMEDATA.id,
                data_type=data_type,
                file_path="test.json",
                embedding_text=text,
                chunk_index=chunk,
            )
        )
    for chunk, (node_id, name, text) in enumerate(CODE_CLASSES):
        nodes.append(
            Node(
                node_id=node_id,
                node_type="JavaClass",
                display_name=name,
                corpus=Corpus.CODE.id,
                file_path=f"src/{name}.java",
                line_start=1,
                content=f"public class {name} {{}}",
                embedding_text=text,
                chunk_index=chunk,
            )
        )
    for chunk, (node_id, name, text) in enumerate(CLIENT_FILES):
        nodes.append(
            Node(
                node_id=node_id,
                node_type="ui",
                display_name=name,
                corpus=Corpus.CLIENT.id,
                file_path="test.ui",
                embedding_text=text,
                chunk_index=chunk,
            )
        )
    nodes.append(
        Node(
            node_id="docs:crafting-guide",
            node_type="doc",
            display_name="CraftingGuide",
            corpus=Corpus.DOCS.id,
            data_type="guide",
            file_path="docs/crafting.md",
            embedding_text="Guide to crafting torches",
            chunk_index=0,
        )
    )
    store.upsert_nodes(nodes)
    store.upsert_edges(Edge(src, tgt, edge_type) for src, tgt, edge_type in EDGES)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def store(temp_dir: Path) -> Generator[GraphStore, None, None]:
    """An empty, fully migrated store."""
    graph_store = GraphStore(temp_dir / "knowledge.db")
    yield graph_store
    graph_store.close()


@pytest.fixture
def seeded_store(store: GraphStore) -> GraphStore:
    seed_graph(store)
    return store


@pytest.fixture
def hash_config(temp_dir: Path) -> KnowledgeConfig:
    """Offline config: hash embeddings, database and indices under *temp_dir*."""
    return KnowledgeConfig(provider="hash", index_path=str(temp_dir))


@pytest.fixture
def index_manager(hash_config: KnowledgeConfig) -> Generator[CorpusIndexManager, None, None]:
    manager = CorpusIndexManager(hash_config)
    yield manager
    manager.close_all()


@pytest.fixture
def service(seeded_store: GraphStore, index_manager: CorpusIndexManager, hash_config: KnowledgeConfig) -> RetrievalService:
    return RetrievalService(seeded_store, index_manager, hash_config)
