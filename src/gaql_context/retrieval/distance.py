"""
Distance metrics and score normalization.

Every caller-visible score is "higher = more relevant" regardless of the
metric's natural direction:

- cosine: cosine similarity, clipped to [-1, 1]
- dot:    raw inner product (unbounded)
- l2:     1 / (1 + euclidean distance), in (0, 1]
"""

from __future__ import annotations

from enum import Enum

import numpy as np


class DistanceMetric(str, Enum):
    COSINE = "cosine"
    DOT = "dot"
    L2 = "l2"

    @classmethod
    def parse(cls, value: "str | DistanceMetric") -> "DistanceMetric":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown distance metric {value!r}; expected one of "
                f"{', '.join(m.value for m in cls)}"
            ) from None

    @property
    def score_range(self) -> tuple[float, float]:
        if self is DistanceMetric.COSINE:
            return (-1.0, 1.0)
        if self is DistanceMetric.L2:
            return (0.0, 1.0)
        return (float("-inf"), float("inf"))


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize rows; zero rows stay zero instead of becoming NaN."""
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    return np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)


def prepare_matrix(matrix: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    """Precompute the stored form of the vectors for a metric."""
    matrix = np.asarray(matrix, dtype=np.float32)
    if metric is DistanceMetric.COSINE:
        return normalize_rows(matrix)
    return matrix


def prepare_query(query: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    query = np.asarray(query, dtype=np.float32).reshape(-1)
    if metric is DistanceMetric.COSINE:
        return normalize_rows(query)
    return query


def scores(prepared_matrix: np.ndarray, prepared_query: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    """Scores of every row of prepared_matrix against prepared_query."""
    if prepared_matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    if metric is DistanceMetric.L2:
        distances = np.linalg.norm(prepared_matrix.astype(np.float64) - prepared_query, axis=1)
        return 1.0 / (1.0 + distances)
    raw = prepared_matrix.astype(np.float64) @ prepared_query.astype(np.float64)
    if metric is DistanceMetric.COSINE:
        # Float error can push |cos| slightly past 1.
        return np.clip(raw, -1.0, 1.0)
    return raw
