"""
Vector math shared by the generator and the index.

All vectors are 1-D float32 numpy arrays. Similarity is cosine: vectors are
normalized on the way in so an inner product is the cosine score.
"""
from typing import Iterable, List, Sequence, Tuple, Union

import numpy as np

from boltindex.core.errors import DimensionMismatchError, EmbeddingError

VectorLike = Union[np.ndarray, Sequence[float]]

EPSILON = 1e-12


def as_vector(values: VectorLike) -> np.ndarray:
    """Coerce to a 1-D float32 array."""
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1:
        raise EmbeddingError(f"Expected a 1-D vector, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise EmbeddingError("Vector contains NaN or infinite values")
    return vector


def normalize(vector: VectorLike) -> np.ndarray:
    """Unit-length copy of vector. A zero vector is returned unchanged."""
    v = as_vector(vector)
    norm = float(np.linalg.norm(v))
    if norm < EPSILON:
        return v.copy()
    return (v / norm).astype(np.float32)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms < EPSILON] = 1.0
    return (matrix / norms).astype(np.float32)


def validate_weights(structural_weight: float, semantic_weight: float) -> Tuple[float, float]:
    if structural_weight < 0 or semantic_weight < 0:
        raise EmbeddingError(
            f"Fusion weights must be non-negative, got ({structural_weight}, {semantic_weight})"
        )
    if structural_weight == 0 and semantic_weight == 0:
        raise EmbeddingError("At least one fusion weight must be positive")
    return float(structural_weight), float(semantic_weight)


def combine(
    structural: VectorLike,
    semantic: VectorLike,
    structural_weight: float = 0.4,
    semantic_weight: float = 0.6,
) -> np.ndarray:
    """
    Bolt two aspect vectors into one.

    Returns normalize(structural * w_s + semantic * w_m).

    Raises:
        DimensionMismatchError: the two vectors differ in length
        EmbeddingError: negative weights, or both weights zero
    """
    a = as_vector(structural)
    b = as_vector(semantic)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0], "combine")
    w_s, w_m = validate_weights(structural_weight, semantic_weight)
    return normalize(a * w_s + b * w_m)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    va = as_vector(a)
    vb = as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError(va.shape[0], vb.shape[0], "cosine_similarity")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom < EPSILON:
        return 0.0
    return float(np.dot(va, vb) / denom)


def weighted_mean(vectors: Iterable[VectorLike], weights: Iterable[float]) -> np.ndarray:
    """
    Weighted mean pool of equal-length vectors, normalized.

    Used to build a parent embedding (a file) from its children (chunks).
    """
    stacked: List[np.ndarray] = [as_vector(v) for v in vectors]
    if not stacked:
        raise EmbeddingError("Cannot pool an empty set of vectors")
    dimension = stacked[0].shape[0]
    for v in stacked[1:]:
        if v.shape[0] != dimension:
            raise DimensionMismatchError(dimension, v.shape[0], "weighted_mean")

    w = np.asarray(list(weights), dtype=np.float64)
    if w.shape[0] != len(stacked):
        raise EmbeddingError(f"Got {w.shape[0]} weights for {len(stacked)} vectors")
    if np.any(w < 0):
        raise EmbeddingError("Pooling weights must be non-negative")
    if float(w.sum()) == 0:
        # Every child is empty: uniform mean
        w = np.ones(len(stacked), dtype=np.float64)

    pooled = np.average(np.vstack(stacked), axis=0, weights=w)
    return normalize(pooled)
