"""Navigable small-world graph for approximate nearest-neighbour search.

Nodes are row indices into the snapshot's vector matrix; edges live in a
fixed-width int32 neighbour table padded with -1. Nothing holds references
to other nodes, so the graph is plain data that persists as one .npy array.

The build is deterministic: nodes are inserted in row order and each new
node is linked to the best matches found by searching the graph built so
far, the same greedy insertion HNSW uses on its bottom layer.
"""
from __future__ import annotations

import heapq
from typing import List, Tuple

import numpy as np

from .distance import DistanceMetric, scores

EMPTY = -1


class NeighborGraph:
    """Single-layer NSW graph over a prepared vector matrix."""

    def __init__(
        self,
        matrix: np.ndarray,
        neighbors: np.ndarray,
        metric: DistanceMetric,
        ef_search: int = 64,
    ) -> None:
        if neighbors.ndim != 2 or neighbors.shape[0] != matrix.shape[0]:
            raise ValueError("neighbor table does not match vector matrix")
        if ef_search <= 0:
            raise ValueError("ef_search must be positive")
        self.matrix = matrix
        self.neighbors = neighbors.astype(np.int32, copy=False)
        self.metric = metric
        self.m = neighbors.shape[1]
        self.ef_search = max(ef_search, self.m)

    def __len__(self) -> int:
        return self.matrix.shape[0]

    @classmethod
    def build(
        cls,
        matrix: np.ndarray,
        metric: DistanceMetric,
        m: int = 16,
        ef_construction: int = 64,
        ef_search: int = 64,
    ) -> "NeighborGraph":
        if m <= 0:
            raise ValueError("m must be positive")
        n = matrix.shape[0]
        adjacency: List[List[int]] = [[] for _ in range(n)]
        graph = cls(matrix, np.full((n, m), EMPTY, dtype=np.int32), metric, ef_search)
        for node in range(1, n):
            candidates = graph._beam_search(matrix[node], max(ef_construction, m), adjacency, limit=node)
            selected = [idx for idx, _ in candidates[:m]]
            adjacency[node] = selected
            for other in selected:
                adjacency[other].append(node)
                if len(adjacency[other]) > m:
                    adjacency[other] = graph._closest(other, adjacency[other], m)
        table = np.full((n, m), EMPTY, dtype=np.int32)
        for node, linked in enumerate(adjacency):
            table[node, : len(linked)] = linked
        graph.neighbors = table
        return graph

    def _closest(self, node: int, ids: List[int], keep: int) -> List[int]:
        node_scores = scores(self.matrix[ids], self.matrix[node], self.metric)
        order = sorted(range(len(ids)), key=lambda i: (-node_scores[i], ids[i]))
        return [ids[i] for i in order[:keep]]

    def _entry_points(self, limit: int) -> List[int]:
        count = min(limit, 8)
        if count <= 0:
            return []
        step = max(limit // count, 1)
        return sorted({i * step for i in range(count) if i * step < limit})

    def _beam_search(
        self,
        query: np.ndarray,
        ef: int,
        adjacency: List[List[int]] | None = None,
        limit: int | None = None,
    ) -> List[Tuple[int, float]]:
        limit = len(self) if limit is None else limit
        entries = self._entry_points(limit)
        if not entries:
            return []

        def linked(node: int) -> List[int]:
            if adjacency is not None:
                return adjacency[node]
            row = self.neighbors[node]
            return [int(i) for i in row if i != EMPTY]

        visited = set(entries)
        entry_scores = scores(self.matrix[entries], query, self.metric)
        candidates: List[Tuple[float, int]] = []
        best: List[Tuple[float, int]] = []
        for node, score in zip(entries, entry_scores):
            heapq.heappush(candidates, (-float(score), node))
            heapq.heappush(best, (float(score), node))
            if len(best) > ef:
                heapq.heappop(best)

        while candidates:
            neg_score, current = heapq.heappop(candidates)
            if len(best) >= ef and -neg_score < best[0][0]:
                break
            fresh = [i for i in linked(current) if i < limit and i not in visited]
            if not fresh:
                continue
            visited.update(fresh)
            for node, score in zip(fresh, scores(self.matrix[fresh], query, self.metric)):
                score = float(score)
                if len(best) < ef or score > best[0][0]:
                    heapq.heappush(candidates, (-score, node))
                    heapq.heappush(best, (score, node))
                    if len(best) > ef:
                        heapq.heappop(best)

        ranked = sorted(best, key=lambda item: (-item[0], item[1]))
        return [(node, score) for score, node in ranked]

    def search(self, query: np.ndarray, top_k: int) -> List[int]:
        """Candidate row indices, best first. Callers re-score exactly."""
        if top_k <= 0 or len(self) == 0:
            return []
        ef = max(self.ef_search, top_k)
        return [node for node, _ in self._beam_search(query, ef)]
