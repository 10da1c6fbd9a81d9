"""Retrieval orchestration: routing, graph and vector search, fusion, expansion.

``RetrievalService`` owns the router, the graph traversal and (through
:class:`~hyve_knowledge.index_manager.CorpusIndexManager`) every corpus's
vector index and embedding provider.  Closing the service releases all of
them together.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Pattern, Sequence, Set, Tuple, Union

from .config_manager import KnowledgeConfig
from .embeddings import EmbeddingError
from .index_manager import CorpusIndexManager
from .models import Corpus, EdgeType, IndexStats, QueryStrategy, ResultSource, RouteResult, SearchResult
from .router import QueryRouter
from .scoring import merge_rrf
from .storage import GraphStore
from .traversal import GraphTraversal

logger = logging.getLogger(__name__)

Traverse = Callable[[GraphTraversal, str, int], List[SearchResult]]


# ===================================================================
# Gamedata intent
# ===================================================================

GAMEDATA_INTENT_RULES: List[Tuple[Pattern[str], FrozenSet[str]]] = [
    (re.compile(r"\b(craft|recipe|crafting|bench|smelt|cook|brew)s?\b", re.IGNORECASE), frozenset({"recipe", "item"})),
    (re.compile(r"\b(drop|loot)s?\s+from\b", re.IGNORECASE), frozenset({"drop", "npc"})),
    (
        re.compile(r"\b(npc|mob|creature|enem(?:y|ies)|trork|kweebec|feran)s?\b", re.IGNORECASE),
        frozenset({"npc", "npc_group"}),
    ),
    (re.compile(r"\b(block|ore|stone|wood|plank)s?\b", re.IGNORECASE), frozenset({"block"})),
    (re.compile(r"\b(farm|farming|crop|grow|plant|seed|harvest)s?\b", re.IGNORECASE), frozenset({"farming", "item"})),
    (re.compile(r"\b(shop|merchant|vendor|buy|sell|trade)s?\b", re.IGNORECASE), frozenset({"shop"})),
    (re.compile(r"\b(biome|zone|climate)s?\b", re.IGNORECASE), frozenset({"biome"})),
    (re.compile(r"\b(weather|rain|snow|storm)s?\b", re.IGNORECASE), frozenset({"weather"})),
    (re.compile(r"\b(objective|quest|mission|task|bount(?:y|ies))s?\b", re.IGNORECASE), frozenset({"objective"})),
]


def detect_gamedata_intent(query: str) -> Optional[Set[str]]:
    """Union of data types hinted at by *query*, or ``None`` when nothing matches."""
    matched: Set[str] = set()
    for pattern, data_types in GAMEDATA_INTENT_RULES:
        if pattern.search(query):
            matched.update(data_types)
    return matched or None


# ===================================================================
# Deduplication
# ===================================================================

def deduplicate_results(results: Iterable[SearchResult]) -> List[SearchResult]:
    """Collapse results sharing a node id.

    The higher score wins.  Provenance missing on the winner is filled in
    from the other copy.  First-occurrence order is kept.
    """
    best: Dict[str, SearchResult] = {}
    for result in results:
        existing = best.get(result.node_id)
        if existing is None:
            best[result.node_id] = result
            continue
        winner, other = (result, existing) if result.score > existing.score else (existing, result)
        best[result.node_id] = winner.copy(
            bridged_from=winner.bridged_from if winner.bridged_from is not None else other.bridged_from,
            bridge_edge_type=(
                winner.bridge_edge_type if winner.bridge_edge_type is not None else other.bridge_edge_type
            ),
            connected_node_ids=list(winner.connected_node_ids or other.connected_node_ids),
        )
    return list(best.values())


# ===================================================================
# Cross-corpus bridges
# ===================================================================

@dataclass(frozen=True)
class Bridge:
    edge_type: EdgeType
    target_corpora: FrozenSet[Corpus]
    traverse: Traverse


EXPANSION_BRIDGES: Dict[Corpus, Tuple[Bridge, ...]] = {
    Corpus.GAMEDATA: (
        Bridge(EdgeType.IMPLEMENTED_BY, frozenset({Corpus.CODE}), GraphTraversal.find_implementing_code),
        Bridge(EdgeType.UI_BINDS_TO, frozenset({Corpus.CLIENT}), GraphTraversal.find_ui_for_gamedata),
    ),
    Corpus.CODE: (
        Bridge(EdgeType.IMPLEMENTED_BY, frozenset({Corpus.GAMEDATA}), GraphTraversal.find_gamedata_for_code),
    ),
    Corpus.CLIENT: (
        Bridge(EdgeType.UI_BINDS_TO, frozenset({Corpus.GAMEDATA}), GraphTraversal.find_ui_bindings),
    ),
    Corpus.DOCS: (
        Bridge(
            EdgeType.DOCS_REFERENCES,
            frozenset({Corpus.CODE, Corpus.GAMEDATA}),
            GraphTraversal.find_docs_references,
        ),
    ),
}

# Relations answered from the gamedata graph once the entity resolves there.
GAMEDATA_RELATIONS: Dict[EdgeType, Traverse] = {
    EdgeType.REQUIRES_ITEM: GraphTraversal.find_recipe_inputs,
    EdgeType.DROPS_ON_DEATH: GraphTraversal.find_drops_from,
    EdgeType.OFFERED_IN_SHOP: GraphTraversal.find_shops_selling_item,
    EdgeType.HAS_MEMBER: GraphTraversal.find_group_members,
    EdgeType.UI_BINDS_TO: GraphTraversal.find_ui_for_gamedata,
}


def _seed_label(display_name: str) -> str:
    return display_name.rsplit("#", 1)[-1].rsplit(".", 1)[-1]


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


# ===================================================================
# RetrievalService
# ===================================================================

class RetrievalService:
    """Hybrid graph + vector search over every corpus of the knowledge base."""

    def __init__(
        self,
        store: GraphStore,
        index_manager: CorpusIndexManager,
        cfg: Optional[KnowledgeConfig] = None,
    ) -> None:
        self.store = store
        self.index_manager = index_manager
        self.cfg = cfg or index_manager.cfg
        self.router = QueryRouter(store)
        self.traversal = GraphTraversal(store)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        corpora: Optional[Sequence[Corpus]] = None,
        limit_per_corpus: Optional[int] = None,
        expand: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SearchResult]:
        """Search *corpora* (all by default) and return a deduplicated, score-sorted list."""
        return self.search_with_expansion(
            query,
            list(corpora) if corpora else list(Corpus),
            per_corpus=limit_per_corpus or self.cfg.results_per_corpus,
            expand=expand,
            cancel_event=cancel_event,
        )

    def route_search(self, query: str, limit: int = 10, corpus: Corpus = Corpus.CODE) -> List[SearchResult]:
        """Route *query* and answer it by graph, vector or fused search."""
        route = self.router.route(query)
        logger.debug(
            "Route for %r: %s entity=%s relation=%s",
            query,
            route.strategy.value,
            route.entity_name,
            route.relation,
        )
        if route.strategy == QueryStrategy.GRAPH:
            return self.graph_search(query, route, limit, corpus)
        if route.strategy == QueryStrategy.HYBRID:
            vector_results = self.vector_search(query, corpus, limit)
            graph_results = self.graph_search(query, route, limit, corpus)
            return merge_rrf([vector_results, graph_results], limit=limit)
        return self.vector_search(query, corpus, limit)

    def search_code(self, query: str, class_filter: Optional[str] = None, limit: int = 10) -> List[SearchResult]:
        results = self.route_search(query, limit * 2)
        if not class_filter:
            return results[:limit]
        needle = class_filter.lower()
        return [
            r for r in results if needle in r.display_name.lower() or needle in r.file_path.lower()
        ][:limit]

    def search_corpus(
        self,
        query: str,
        corpus: Corpus,
        limit: int = 10,
        data_type_filters: Union[None, str, Iterable[str]] = None,
    ) -> List[SearchResult]:
        """Search a single corpus, optionally keeping only some data types."""
        filters: Optional[Set[str]]
        if data_type_filters is None:
            filters = None
        elif isinstance(data_type_filters, str):
            filters = {data_type_filters}
        else:
            filters = set(data_type_filters)

        if corpus == Corpus.CODE:
            return self.search_code(query, sorted(filters)[0] if filters else None, limit)

        fetch = limit * 5 if filters else limit
        results = self.vector_search(query, corpus, fetch)
        if filters:
            results = [r for r in results if r.data_type in filters]
        return results[:limit]

    def search_with_expansion(
        self,
        query: str,
        corpora: Sequence[Corpus],
        per_corpus: int = 10,
        expansion_limit: int = 5,
        expand: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SearchResult]:
        """Direct per-corpus search, plus cross-corpus graph expansion when *expand* is set."""
        intent = detect_gamedata_intent(query)
        direct: List[SearchResult] = []
        for corpus in corpora:
            if _cancelled(cancel_event):
                logger.info("Search cancelled before corpus %s", corpus.id)
                break
            try:
                filters = intent if corpus == Corpus.GAMEDATA else None
                results = self.search_corpus(query, corpus, per_corpus, filters)
            except Exception as exc:
                logger.warning("Search failed for corpus %s: %s", corpus.id, exc)
                continue
            if corpus == Corpus.GAMEDATA and intent is None:
                results = [r for r in results if r.score >= self.cfg.gamedata_unintent_floor]
            direct.extend(results)

        expanded: List[SearchResult] = []
        if expand and not _cancelled(cancel_event):
            expanded = [
                r
                for r in self._expand_cross_corpus(direct, corpora, expansion_limit, cancel_event)
                if r.score >= self.cfg.min_expansion_result_score
            ]
            logger.info("Graph expansion: %d direct -> %d expanded results", len(direct), len(expanded))

        connections: Dict[str, List[str]] = {}
        for result in expanded:
            if result.expanded_from_node_id:
                connections.setdefault(result.expanded_from_node_id, []).append(result.node_id)

        annotated = []
        for result in direct:
            linked = connections.get(result.node_id)
            if linked:
                result = result.copy(connected_node_ids=linked[: self.cfg.max_related_connections])
            annotated.append(result)

        merged = deduplicate_results(annotated + expanded)
        return sorted(merged, key=lambda r: r.score, reverse=True)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def graph_search(
        self,
        query: str,
        route: RouteResult,
        limit: int,
        corpus: Corpus = Corpus.CODE,
    ) -> List[SearchResult]:
        entity, relation = route.entity_name, route.relation
        if entity and relation:
            traverse = GAMEDATA_RELATIONS.get(relation)
            if traverse is not None:
                primary_id = self.traversal.resolve_gamedata_node(entity)
                if primary_id is not None:
                    return traverse(self.traversal, primary_id, limit)
            return self.traversal.find_by_relation(entity, relation, limit)
        if entity:
            return self.traversal.find_by_name(entity, limit)
        return self.vector_search(query, corpus, limit)

    def vector_search(self, query: str, corpus: Corpus, limit: int) -> List[SearchResult]:
        """Embed *query* and look it up in *corpus*'s vector index.

        A corpus without an index, or a failing embedding provider, yields
        an empty list.
        """
        index = self.index_manager.get_index(corpus)
        if index is None:
            return []
        try:
            vector = self.index_manager.get_provider(corpus).embed_query(query)
        except EmbeddingError as exc:
            logger.warning("Vector search unavailable for %s: %s", corpus.id, exc)
            return []
        hits = index.query(vector, limit)
        return self._hydrate(hits, corpus)

    def _hydrate(self, hits: Sequence[Tuple[int, float]], corpus: Corpus) -> List[SearchResult]:
        """Turn ``(ordinal, score)`` hits into results via the nodes' ``chunk_index``."""
        if not hits:
            return []
        ordinals = [ordinal for ordinal, _ in hits]
        placeholders = ",".join("?" * len(ordinals))
        rows = self.store.query_safe(
            f"""SELECT id, display_name, content, embedding_text, file_path, line_start, data_type, chunk_index
                FROM nodes WHERE corpus = ? AND chunk_index IN ({placeholders})""",
            (corpus.id, *ordinals),
        )
        by_chunk = {row["chunk_index"]: row for row in rows}

        results = []
        for ordinal, score in hits:
            row = by_chunk.get(ordinal)
            if row is None:
                continue
            if corpus == Corpus.CODE:
                text = row["content"]
            else:
                text = row["embedding_text"] if row["embedding_text"] is not None else row["content"]
            results.append(
                SearchResult(
                    node_id=row["id"],
                    display_name=row["display_name"],
                    snippet=(text or "")[:500],
                    file_path=row["file_path"] or "",
                    line_start=row["line_start"] or 0,
                    score=float(score),
                    source=ResultSource.VECTOR,
                    data_type=row["data_type"],
                    corpus=corpus.id,
                )
            )
        return results

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    def _expand_cross_corpus(
        self,
        seeds: Sequence[SearchResult],
        enabled: Sequence[Corpus],
        limit: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SearchResult]:
        enabled_set = set(enabled)
        cap = self.cfg.per_seed_expansion_cap
        expanded: List[SearchResult] = []
        seen: Set[str] = set()

        for seed in seeds:
            if seed.node_id in seen:
                continue
            seen.add(seed.node_id)
            if seed.score < self.cfg.min_expansion_seed_score:
                continue
            try:
                seed_corpus = Corpus.from_id(seed.corpus)
            except ValueError:
                continue

            label = _seed_label(seed.display_name)
            taken = 0
            for bridge in EXPANSION_BRIDGES.get(seed_corpus, ()):
                if taken >= cap:
                    break
                allowed = {c.id for c in bridge.target_corpora & enabled_set}
                if not allowed:
                    continue
                if _cancelled(cancel_event):
                    logger.info("Graph expansion cancelled after %d results", len(expanded))
                    return expanded
                try:
                    neighbours = bridge.traverse(self.traversal, seed.node_id, limit)
                except Exception as exc:
                    logger.warning("Expansion via %s failed for %s: %s", bridge.edge_type.value, seed.node_id, exc)
                    continue
                for result in neighbours:
                    if taken >= cap:
                        break
                    if result.node_id in seen or result.corpus not in allowed:
                        continue
                    seen.add(result.node_id)
                    taken += 1
                    expanded.append(
                        result.copy(
                            score=seed.score * self.cfg.expansion_discount,
                            bridged_from=label,
                            bridge_edge_type=bridge.edge_type.value,
                            expanded_from_node_id=seed.node_id,
                        )
                    )

        if expanded:
            logger.info("Graph expansion found %d cross-corpus results from %d seeds", len(expanded), len(seen))
        return expanded

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def get_corpus_stats(self, corpus: Corpus) -> IndexStats:
        node_count = self.store.scalar("SELECT COUNT(*) FROM nodes WHERE corpus = ?", (corpus.id,))
        rows = self.store.query_safe(
            """SELECT COALESCE(data_type, node_type) AS t, COUNT(*) AS c
               FROM nodes WHERE corpus = ? GROUP BY t ORDER BY t""",
            (corpus.id,),
        )
        edge_count = self.store.scalar(
            """SELECT COUNT(*) FROM edges e
               JOIN nodes n ON n.id = e.source_id
               WHERE n.corpus = ?""",
            (corpus.id,),
        )
        return IndexStats(
            corpus=corpus.id,
            node_count=int(node_count),
            type_breakdown={row["t"]: int(row["c"]) for row in rows},
            edge_count=int(edge_count),
            vector_index_loaded=self.index_manager.get_index(corpus) is not None,
        )

    def close(self) -> None:
        """Release every corpus index and provider, then the store."""
        self.index_manager.close_all()
        self.store.close()
