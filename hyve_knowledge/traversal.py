"""Named multi-hop graph queries over the knowledge store.

Every traversal returns :class:`SearchResult` objects tagged
``ResultSource.GRAPH``.  Only edges with ``target_resolved = 1`` are
followed, and every projected node is joined against ``nodes`` so virtual
targets never surface as results.  A seed that matches nothing yields an
empty list.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, List, Optional

from .models import Corpus, EdgeType, ResultSource, SearchResult
from .storage import GraphStore

logger = logging.getLogger(__name__)

FORWARD_SCORE = 1.0
REVERSE_SCORE = 0.9

_NODE_COLUMNS = (
    "n.id, n.display_name, n.content, n.embedding_text, n.file_path, "
    "n.line_start, n.data_type, n.corpus"
)


def _row_mapper(
    score: float,
    snippet_chars: int = 300,
    prefer_embedding_text: bool = True,
    corpus: Optional[str] = None,
) -> Callable[[sqlite3.Row], SearchResult]:
    """Build a mapper turning a node row into a graph :class:`SearchResult`."""

    def _map(row: sqlite3.Row) -> SearchResult:
        text = None
        if prefer_embedding_text:
            text = row["embedding_text"]
        if text is None:
            text = row["content"]
        return SearchResult(
            node_id=row["id"],
            display_name=row["display_name"],
            snippet=(text or "")[:snippet_chars],
            file_path=row["file_path"] or "",
            line_start=row["line_start"] or 0,
            score=score,
            source=ResultSource.GRAPH,
            data_type=row["data_type"],
            corpus=corpus or row["corpus"] or Corpus.CODE.id,
        )

    return _map


class GraphTraversal:
    """Relation-specific lookups against a :class:`GraphStore`."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _outgoing(
        self,
        source_id: str,
        edge_type: EdgeType,
        limit: int,
        score: float = FORWARD_SCORE,
        corpus: Optional[str] = None,
        node_type: Optional[str] = None,
        snippet_chars: int = 300,
    ) -> List[SearchResult]:
        """Nodes reached from *source_id* along resolved *edge_type* edges."""
        sql = f"""SELECT {_NODE_COLUMNS}
                  FROM edges e
                  JOIN nodes n ON n.id = e.target_id
                  WHERE e.source_id = ?
                    AND e.edge_type = ?
                    AND e.target_resolved = 1"""
        params: List[object] = [source_id, edge_type.value]
        if corpus is not None:
            sql += " AND n.corpus = ?"
            params.append(corpus)
        if node_type is not None:
            sql += " AND n.node_type = ?"
            params.append(node_type)
        sql += " ORDER BY e.id LIMIT ?"
        params.append(limit)
        return self.store.query_safe(sql, params, _row_mapper(score, snippet_chars, corpus=corpus))

    def _incoming(
        self,
        target_id: str,
        edge_type: EdgeType,
        limit: int,
        score: float = FORWARD_SCORE,
        corpus: Optional[str] = None,
        snippet_chars: int = 300,
    ) -> List[SearchResult]:
        """Nodes with a resolved *edge_type* edge pointing at *target_id*."""
        sql = f"""SELECT {_NODE_COLUMNS}
                  FROM edges e
                  JOIN nodes n ON n.id = e.source_id
                  WHERE e.target_id = ?
                    AND e.edge_type = ?
                    AND e.target_resolved = 1"""
        params: List[object] = [target_id, edge_type.value]
        if corpus is not None:
            sql += " AND n.corpus = ?"
            params.append(corpus)
        sql += " ORDER BY e.id LIMIT ?"
        params.append(limit)
        return self.store.query_safe(sql, params, _row_mapper(score, snippet_chars, corpus=corpus))

    # ------------------------------------------------------------------
    # Name resolution
    # ------------------------------------------------------------------

    def find_by_relation(
        self,
        entity_name: str,
        relation: EdgeType,
        limit: int = 10,
    ) -> List[SearchResult]:
        """Follow *relation* from the named entity, falling back to the reverse direction.

        The name matches ``class:<name>`` / ``class:<pkg>.<name>`` ids as well
        as nodes displayed as ``<name>`` or ``<pkg>.<name>``.  The forward
        direction (entity as edge source) is tried first; when it yields
        nothing, edges pointing at the entity are followed backwards.
        """
        relation = EdgeType.parse(relation)
        name_params = (
            f"class:{entity_name}",
            f"class:%.{entity_name}",
            entity_name,
            f"%.{entity_name}",
        )

        def _matches(column: str) -> str:
            return (
                f"({column} LIKE ? OR {column} LIKE ? OR {column} IN "
                f"(SELECT id FROM nodes WHERE display_name = ? OR display_name LIKE ?))"
            )

        forward = self.store.query_safe(
            f"""SELECT DISTINCT {_NODE_COLUMNS}
                FROM edges e
                JOIN nodes n ON n.id = e.target_id
                WHERE e.edge_type = ?
                  AND e.target_resolved = 1
                  AND {_matches("e.source_id")}
                LIMIT ?""",
            (relation.value, *name_params, limit),
            _row_mapper(FORWARD_SCORE, prefer_embedding_text=False),
        )
        if forward:
            return forward

        return self.store.query_safe(
            f"""SELECT DISTINCT {_NODE_COLUMNS}
                FROM edges e
                JOIN nodes n ON n.id = e.source_id
                WHERE e.edge_type = ?
                  AND e.target_resolved = 1
                  AND {_matches("e.target_id")}
                LIMIT ?""",
            (relation.value, *name_params, limit),
            _row_mapper(REVERSE_SCORE, prefer_embedding_text=False),
        )

    def find_by_name(self, entity_name: str, limit: int = 10) -> List[SearchResult]:
        """Exact display-name matches first, then ``name#...`` members, then ``...name``."""
        return self.store.query_safe(
            f"""SELECT {_NODE_COLUMNS}
                FROM nodes n
                WHERE n.display_name = ? OR n.display_name LIKE ? OR n.display_name LIKE ?
                ORDER BY
                  CASE WHEN n.display_name = ? THEN 0
                       WHEN n.display_name LIKE ? THEN 1
                       ELSE 2
                  END
                LIMIT ?""",
            (
                entity_name,
                f"{entity_name}#%",
                f"%.{entity_name}",
                entity_name,
                f"{entity_name}#%",
                limit,
            ),
            _row_mapper(FORWARD_SCORE, prefer_embedding_text=False),
        )

    def resolve_gamedata_node(self, name: str) -> Optional[str]:
        """Case-insensitive display-name lookup restricted to the gamedata corpus."""
        rows = self.store.query_safe(
            "SELECT id FROM nodes WHERE LOWER(display_name) = LOWER(?) AND corpus = ? LIMIT 1",
            (name, Corpus.GAMEDATA.id),
        )
        return rows[0]["id"] if rows else None

    # ------------------------------------------------------------------
    # Cross-corpus bridges
    # ------------------------------------------------------------------

    def find_implementing_code(self, gamedata_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._outgoing(
            gamedata_node_id,
            EdgeType.IMPLEMENTED_BY,
            limit,
            corpus=Corpus.CODE.id,
            node_type="JavaClass",
        )

    def find_gamedata_for_code(self, code_node_id: str, limit: int = 5) -> List[SearchResult]:
        return self._incoming(
            code_node_id,
            EdgeType.IMPLEMENTED_BY,
            limit,
            corpus=Corpus.GAMEDATA.id,
            snippet_chars=500,
        )

    def find_ui_bindings(self, client_node_id: str, limit: int = 10) -> List[SearchResult]:
        """Gamedata entities a UI file binds to."""
        return self._outgoing(
            client_node_id,
            EdgeType.UI_BINDS_TO,
            limit,
            corpus=Corpus.GAMEDATA.id,
            snippet_chars=500,
        )

    def find_ui_for_gamedata(self, gamedata_node_id: str, limit: int = 5) -> List[SearchResult]:
        """UI files that bind to a gamedata entity."""
        return self._incoming(
            gamedata_node_id,
            EdgeType.UI_BINDS_TO,
            limit,
            corpus=Corpus.CLIENT.id,
            snippet_chars=500,
        )

    def find_docs_references(self, docs_node_id: str, limit: int = 10) -> List[SearchResult]:
        """Code and gamedata nodes referenced by a documentation page."""
        results = self._outgoing(docs_node_id, EdgeType.DOCS_REFERENCES, limit)
        allowed = {Corpus.CODE.id, Corpus.GAMEDATA.id}
        return [r for r in results if r.corpus in allowed]

    # ------------------------------------------------------------------
    # Game data relations
    # ------------------------------------------------------------------

    def find_recipe_inputs(self, item_node_id: str, limit: int = 10) -> List[SearchResult]:
        """Ingredients of *item_node_id* followed by the items that use it."""
        forward = self._outgoing(item_node_id, EdgeType.REQUIRES_ITEM, limit, corpus=Corpus.GAMEDATA.id)
        reverse = self._incoming(
            item_node_id,
            EdgeType.REQUIRES_ITEM,
            limit,
            score=REVERSE_SCORE,
            corpus=Corpus.GAMEDATA.id,
        )
        seen: Dict[str, SearchResult] = {}
        for result in forward + reverse:
            seen.setdefault(result.node_id, result)
        return list(seen.values())

    def find_drops_from(self, entity_node_id: str, limit: int = 10) -> List[SearchResult]:
        """Items dropped by an NPC: ``DROPS_ON_DEATH`` to a drop table, then ``DROPS_ITEM``."""
        return self.store.query_safe(
            f"""SELECT DISTINCT {_NODE_COLUMNS}
                FROM edges e1
                JOIN nodes d ON d.id = e1.target_id
                JOIN edges e2 ON e2.source_id = e1.target_id AND e2.edge_type = ?
                JOIN nodes n ON n.id = e2.target_id
                WHERE e1.source_id = ?
                  AND e1.edge_type = ?
                  AND e1.target_resolved = 1
                  AND e2.target_resolved = 1
                  AND n.corpus = ?
                LIMIT ?""",
            (
                EdgeType.DROPS_ITEM.value,
                entity_node_id,
                EdgeType.DROPS_ON_DEATH.value,
                Corpus.GAMEDATA.id,
                limit,
            ),
            _row_mapper(FORWARD_SCORE, corpus=Corpus.GAMEDATA.id),
        )

    def find_shops_selling_item(self, item_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._incoming(item_node_id, EdgeType.OFFERED_IN_SHOP, limit, corpus=Corpus.GAMEDATA.id)

    def find_group_members(self, group_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._outgoing(group_node_id, EdgeType.HAS_MEMBER, limit, corpus=Corpus.GAMEDATA.id)
