"""Priority-ordered query classifier.

Each rule maps a pattern to a ``(strategy, relation)`` pair.  Rules are
evaluated top to bottom and the first match wins, so the order of
:data:`ROUTE_RULES` is behaviour, not presentation.
"""

from __future__ import annotations

import logging
import re
from typing import List, NamedTuple, Optional, Pattern

from .models import EdgeType, QueryStrategy, RouteResult
from .storage import GraphStore

logger = logging.getLogger(__name__)


class RouteRule(NamedTuple):
    name: str
    pattern: Pattern[str]
    strategy: QueryStrategy
    relation: Optional[EdgeType]


def _rule(name: str, regex: str, strategy: QueryStrategy, relation: Optional[EdgeType]) -> RouteRule:
    return RouteRule(name, re.compile(regex, re.IGNORECASE), strategy, relation)


ROUTE_RULES: List[RouteRule] = [
    # Structural code relations take priority over game-data phrasing.
    _rule(
        "extends",
        r"(?:what|which|classes?|types?)\s+(?:extends?|inherits?|subclass(?:es)?(?:\s+of)?)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.EXTENDS,
    ),
    _rule(
        "implements",
        r"(?:what|which|classes?|types?)\s+(?:implements?)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.IMPLEMENTS,
    ),
    _rule(
        "calls",
        r"(?:what|who|which)\s+(?:calls?|invokes?)\s+(\w+(?:\.\w+)?)",
        QueryStrategy.GRAPH,
        EdgeType.CALLS,
    ),
    _rule(
        "methods_of",
        r"(?:methods?|functions?)\s+(?:of|in|on)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.CONTAINS,
    ),
    # Game data.
    _rule(
        "craft",
        r"(?:how|what)\s+(?:to\s+)?(?:craft|make|produce|create)\s+(\w+)",
        QueryStrategy.HYBRID,
        EdgeType.REQUIRES_ITEM,
    ),
    _rule(
        "drops_from",
        r"(?:what|which)\s+(?:drops?|loot)\s+(?:from|by)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.DROPS_ON_DEATH,
    ),
    _rule(
        "uses_item",
        r"(?:what|which)\s+(?:uses?|requires?|needs?)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.REQUIRES_ITEM,
    ),
    _rule(
        "buy",
        r"(?:where|who)\s+(?:to\s+)?(?:buy|sells?|trade)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.OFFERED_IN_SHOP,
    ),
    _rule(
        "ui_shows",
        r"(?:what|which)\s+(?:ui|screen|panel|view)\s+(?:shows?|displays?|contains?|for)\s+(\w+)",
        QueryStrategy.GRAPH,
        EdgeType.UI_BINDS_TO,
    ),
]

FIND_ENTITY_PATTERN = re.compile(r"(?:find|show|get|where\s+is)\s+(?:class\s+)?(\w+)", re.IGNORECASE)

# Case-sensitive on purpose: only capitalised tokens look like type names.
CANDIDATE_NAME_PATTERN = re.compile(r"\b[A-Z]\w{2,}\b")


class QueryRouter:
    """Classify a free-text query into a retrieval strategy."""

    def __init__(self, store: GraphStore, rules: Optional[List[RouteRule]] = None) -> None:
        self.store = store
        self.rules = list(rules) if rules is not None else list(ROUTE_RULES)

    def route(self, query: str) -> RouteResult:
        for rule in self.rules:
            match = rule.pattern.search(query)
            if match:
                logger.debug("Query routed by rule '%s' to %s", rule.name, rule.strategy.value)
                return RouteResult(rule.strategy, match.group(1), rule.relation)

        match = FIND_ENTITY_PATTERN.search(query)
        if match and self.entity_exists(match.group(1)):
            return RouteResult(QueryStrategy.HYBRID, match.group(1))

        for name in CANDIDATE_NAME_PATTERN.findall(query):
            if self.entity_exists(name):
                logger.debug("Query mentions known entity '%s'", name)
                return RouteResult(QueryStrategy.HYBRID, name)

        return RouteResult(QueryStrategy.VECTOR)

    def entity_exists(self, name: str) -> bool:
        """True when a node is displayed as *name* or as a dotted ``...name``."""
        count = self.store.scalar(
            "SELECT COUNT(*) FROM nodes WHERE display_name = ? OR display_name LIKE ?",
            (name, f"%.{name}"),
        )
        return int(count) > 0
