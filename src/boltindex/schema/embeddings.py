"""
Embedding records.

Vectors are float32 numpy arrays. A MultiVectorEmbedding keeps both source
aspects so the bolted (combined) vector can be recomputed at any weights
without regenerating either aspect.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple
import hashlib

import numpy as np


class Granularity(str, Enum):
    """Unit level an embedding or index entry represents."""
    CHUNK = "chunk"
    FILE = "file"
    FUNCTION = "function"
    MODULE = "module"


class Aspect(str, Enum):
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"
    BOLTED = "bolted"


@dataclass(frozen=True)
class Provenance:
    """
    Where an embedding came from.

    ``unit_id`` names the input unit that produced the record. Two units may
    share a source path (two functions of one file), so ids are keyed on the
    unit as well as the path.
    """
    source_path: str
    granularity: Granularity
    chunk_index: Optional[int] = None
    language: str = "text"
    content_type: str = "text"
    unit_id: Optional[str] = None

    def stable_id(self) -> str:
        """Deterministic identifier for (granularity, unit, path, chunk)."""
        suffix = "" if self.chunk_index is None else f"#{self.chunk_index}"
        owner = "" if self.unit_id is None else f"{self.unit_id}:"
        key = f"{self.granularity.value}:{owner}{self.source_path}{suffix}"
        return hashlib.sha256(key.encode()).hexdigest()[:24]


@dataclass(frozen=True)
class Embedding:
    """A single-aspect vector with provenance."""
    id: str
    vector: np.ndarray
    aspect: Aspect
    provenance: Provenance
    source_bytes: int = 0

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class MultiVectorEmbedding:
    """
    Structural and semantic vectors plus a default bolted vector.

    A degraded record has no semantic aspect; its combined vector is the
    normalized structural vector.
    """
    id: str
    aspects: Dict[Aspect, np.ndarray]
    combined: np.ndarray
    weights: Tuple[float, float]
    provenance: Provenance
    source_bytes: int = 0
    degraded: bool = False
    description: Optional[str] = None

    @property
    def dimension(self) -> int:
        return int(self.combined.shape[0])

    @property
    def structural(self) -> np.ndarray:
        return self.aspects[Aspect.STRUCTURAL]

    @property
    def semantic(self) -> Optional[np.ndarray]:
        return self.aspects.get(Aspect.SEMANTIC)

    def reweighted(self, structural_weight: float, semantic_weight: float) -> np.ndarray:
        """Bolted vector at custom weights, computed from the retained aspects."""
        from boltindex.embedding.vectors import combine

        if self.semantic is None:
            return combine(self.structural, np.zeros_like(self.structural), 1.0, 0.0)
        return combine(self.structural, self.semantic, structural_weight, semantic_weight)

    def with_weights(self, structural_weight: float, semantic_weight: float) -> "MultiVectorEmbedding":
        return replace(
            self,
            combined=self.reweighted(structural_weight, semantic_weight),
            weights=(structural_weight, semantic_weight),
        )

    def as_embedding(self, aspect: Aspect = Aspect.BOLTED) -> Embedding:
        if aspect == Aspect.BOLTED:
            vector = self.combined
        elif aspect in self.aspects:
            vector = self.aspects[aspect]
        else:
            raise KeyError(f"Embedding {self.id} has no {aspect.value} aspect")
        return Embedding(
            id=self.id,
            vector=vector,
            aspect=aspect,
            provenance=self.provenance,
            source_bytes=self.source_bytes,
        )
