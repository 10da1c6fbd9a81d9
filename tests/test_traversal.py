"""Tests for graph traversal queries."""

import pytest

from hyve_knowledge.models import Edge, EdgeType, Node, ResultSource
from hyve_knowledge.storage import GraphStore
from hyve_knowledge.traversal import FORWARD_SCORE, REVERSE_SCORE, GraphTraversal


@pytest.fixture
def traversal(seeded_store: GraphStore) -> GraphTraversal:
    return GraphTraversal(seeded_store)


def _ids(results):
    return [r.node_id for r in results]


class TestGameDataRelations:
    """Recipe, drop, shop and group lookups."""

    def test_recipe_inputs(self, traversal: GraphTraversal):
        """Test the ingredients of Torch are returned."""
        ids = _ids(traversal.find_recipe_inputs("gamedata:item:torch"))
        assert "gamedata:item:wood_log" in ids
        assert "gamedata:item:resin" in ids

    def test_recipe_inputs_include_reverse_usage(self, traversal: GraphTraversal):
        """Test items that use an ingredient come back at the reverse score."""
        results = traversal.find_recipe_inputs("gamedata:item:wood_log")
        assert _ids(results) == ["gamedata:item:torch"]
        assert results[0].score == REVERSE_SCORE

    def test_recipe_inputs_skip_unresolved_targets(self, traversal: GraphTraversal, seeded_store: GraphStore):
        """Test a virtual ingredient never surfaces as a result."""
        seeded_store.upsert_edges([
            Edge("gamedata:item:torch", "virtual:resource:WoodResin", EdgeType.REQUIRES_ITEM, target_resolved=False)
        ])
        ids = _ids(traversal.find_recipe_inputs("gamedata:item:torch"))
        assert "virtual:resource:WoodResin" not in ids
        assert "gamedata:item:wood_log" in ids

    def test_drops_two_hop(self, traversal: GraphTraversal):
        """Test goblin -> drop table -> gold coin."""
        results = traversal.find_drops_from("gamedata:npc:goblin")
        assert _ids(results) == ["gamedata:item:gold_coin"]
        assert results[0].source == ResultSource.GRAPH

    def test_shops_selling_item(self, traversal: GraphTraversal):
        assert _ids(traversal.find_shops_selling_item("gamedata:item:torch")) == ["gamedata:shop:blacksmith"]

    def test_group_members(self, traversal: GraphTraversal):
        ids = _ids(traversal.find_group_members("gamedata:group:goblin_party"))
        assert sorted(ids) == ["gamedata:npc:goblin", "gamedata:npc:goblin_archer"]

    def test_unknown_seed_is_empty(self, traversal: GraphTraversal):
        assert traversal.find_drops_from("gamedata:npc:nobody") == []

    def test_resolve_gamedata_node_is_case_insensitive(self, traversal: GraphTraversal):
        assert traversal.resolve_gamedata_node("npc_goblin") == "gamedata:npc:goblin"
        assert traversal.resolve_gamedata_node("ItemManager") is None


class TestCrossCorpusBridges:
    """UI, code and docs bridges."""

    def test_ui_bindings_for_shop_panel(self, traversal: GraphTraversal):
        results = traversal.find_ui_bindings("ui:InGame/ShopPanel.ui")
        assert sorted(_ids(results)) == ["gamedata:item:gold_coin", "gamedata:npc:npc_blacksmith"]
        assert all(r.corpus == "gamedata" for r in results)

    def test_ui_bindings_for_crafting_screen(self, traversal: GraphTraversal):
        assert _ids(traversal.find_ui_bindings("ui:InGame/CraftingScreen.ui")) == ["gamedata:item:workbench"]

    def test_ui_for_gamedata(self, traversal: GraphTraversal):
        results = traversal.find_ui_for_gamedata("gamedata:item:workbench")
        assert _ids(results) == ["ui:InGame/CraftingScreen.ui"]
        assert all(r.corpus == "client" for r in results)

    def test_ui_for_gamedata_without_bindings(self, traversal: GraphTraversal):
        assert traversal.find_ui_for_gamedata("gamedata:item:resin") == []

    def test_implementing_code(self, traversal: GraphTraversal):
        results = traversal.find_implementing_code("gamedata:item:torch")
        assert _ids(results) == ["class:com.hytale.ItemManager"]
        assert results[0].corpus == "code"

    def test_implementing_code_without_links(self, traversal: GraphTraversal):
        assert traversal.find_implementing_code("gamedata:item:resin") == []

    def test_gamedata_for_code(self, traversal: GraphTraversal):
        results = traversal.find_gamedata_for_code("class:com.hytale.ShopSystem")
        assert _ids(results) == ["gamedata:shop:blacksmith"]
        assert results[0].corpus == "gamedata"

    def test_docs_references_only_code_and_gamedata(self, traversal: GraphTraversal):
        """Test a docs page links to code and gamedata but not to UI files."""
        ids = set(_ids(traversal.find_docs_references("docs:crafting-guide")))
        assert ids == {"class:com.hytale.ItemManager", "gamedata:item:torch"}

    def test_docs_references_empty(self, traversal: GraphTraversal, seeded_store: GraphStore):
        seeded_store.upsert_nodes([Node("docs:intro", "doc", "Introduction", corpus="docs")])
        assert traversal.find_docs_references("docs:intro") == []


class TestNameLookups:
    """Relation and name lookups starting from a display name."""

    def test_relation_forward_from_entity(self, traversal: GraphTraversal):
        """Test the named entity as edge source returns its targets."""
        results = traversal.find_by_relation("NpcController", EdgeType.EXTENDS)
        assert _ids(results)[0] == "class:com.hytale.AbstractController"
        assert results[0].score == FORWARD_SCORE

    def test_relation_reverse_fallback(self, traversal: GraphTraversal):
        """Test nothing outgoing from BaseItem falls back to its subclasses."""
        results = traversal.find_by_relation("BaseItem", "EXTENDS")
        assert _ids(results)[0] == "class:com.hytale.SwordItem"
        assert results[0].score == REVERSE_SCORE

    def test_relation_matches_gamedata_display_name(self, traversal: GraphTraversal):
        results = traversal.find_by_relation("GoblinRaidingParty", EdgeType.HAS_MEMBER)
        assert len(results) == 2

    def test_relation_unknown_entity(self, traversal: GraphTraversal):
        assert traversal.find_by_relation("Nope", EdgeType.CALLS) == []

    def test_relation_ignores_unresolved_edges(self, traversal: GraphTraversal, seeded_store: GraphStore):
        seeded_store.upsert_edges([
            Edge("class:com.hytale.ShopSystem", "class:java.io.Serializable", EdgeType.IMPLEMENTS, target_resolved=False)
        ])
        assert traversal.find_by_relation("ShopSystem", EdgeType.IMPLEMENTS) == []

    def test_find_by_name_exact_before_member(self, traversal: GraphTraversal, seeded_store: GraphStore):
        """Test an exact display-name match ranks ahead of 'Name#member'."""
        seeded_store.upsert_nodes([
            Node("method:Torch#light", "JavaMethod", "Torch#light", file_path="src/Torch.java")
        ])
        results = traversal.find_by_name("Torch")
        assert results[0].display_name == "Torch"
        assert "method:Torch#light" in _ids(results)
