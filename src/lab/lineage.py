"""Candidate lineage: generation depth by walking recycled_from_id pointers.

Built from one bulk read of (id, strategy_name, recycled_from_id) rows, then
walked in memory. A depth limit and a visited set guard against corrupt
chains that loop back on themselves.
"""

from __future__ import annotations

from typing import Iterable, Optional

import structlog

log = structlog.get_logger()

MAX_LINEAGE_DEPTH = 32


class LineageMap:
    def __init__(self, rows: Iterable[dict], max_depth: int = MAX_LINEAGE_DEPTH) -> None:
        self._nodes = {r["id"]: r for r in rows}
        self._max_depth = max_depth

    def __contains__(self, candidate_id: str) -> bool:
        return candidate_id in self._nodes

    def parent(self, candidate_id: str) -> Optional[dict]:
        node = self._nodes.get(candidate_id)
        if not node or not node.get("recycled_from_id"):
            return None
        return self._nodes.get(node["recycled_from_id"])

    def ancestors(self, candidate_id: str) -> list[str]:
        """Ancestor ids, nearest first. Stops at a missing parent, a cycle, or max depth."""
        chain: list[str] = []
        seen = {candidate_id}
        current = self._nodes.get(candidate_id)
        while current and current.get("recycled_from_id"):
            parent_id = current["recycled_from_id"]
            if parent_id in seen:
                log.warning("lineage.cycle", candidate_id=candidate_id, at=parent_id)
                break
            if len(chain) >= self._max_depth:
                log.warning("lineage.max_depth", candidate_id=candidate_id, depth=len(chain))
                break
            if parent_id not in self._nodes:
                break
            chain.append(parent_id)
            seen.add(parent_id)
            current = self._nodes[parent_id]
        return chain

    def generation(self, candidate_id: str) -> int:
        """1 for roots, parent + 1 otherwise."""
        return len(self.ancestors(candidate_id)) + 1

    def enrich(self, row: dict) -> dict:
        parent = self.parent(row["id"])
        return {
            **row,
            "evolution_generation": self.generation(row["id"]),
            "parent_strategy_name": parent["strategy_name"] if parent else None,
        }
