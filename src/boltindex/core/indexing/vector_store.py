"""
Vector Index Store - multi-granularity flat indices with metadata filters.

One flat (exact, brute-force) index per granularity, plus an optional
combined index over every entry. Each index keeps three row-aligned
matrices (bolted, structural, semantic) so queries can re-bolt at custom
weights without touching the generator.

Writes are staged and published by commit(), which swaps a new immutable
IndexSnapshot in by reference. Readers grab the current snapshot once per
query and never take the writer lock.

Index storage is append-only. A commit appends the staged rows and
tombstones replaced or removed ones by stamping the snapshot id that
retired them, so its cost follows the size of the write rather than the
size of the index. Published views only ever cover rows that existed when
they were published, and a tombstone stays invisible to snapshots older
than it. Once tombstones outnumber live rows an index is rebuilt from its
live entries.

Similarity is cosine: every stored row and every query vector is unit
length, so the score is an inner product in [-1, 1].
"""
import bisect
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from boltindex.config import settings
from boltindex.core.errors import CollisionError, DimensionMismatchError, IndexStoreError
from boltindex.core.logging import get_logger
from boltindex.embedding.vectors import as_vector, normalize, normalize_rows, validate_weights
from boltindex.schema.embeddings import Granularity, MultiVectorEmbedding

logger = get_logger(__name__)

DEFAULT_PREFILTER_THRESHOLD = 0.5

# Tombstone value of a row that is still live
ALIVE = np.iinfo(np.int64).max
INITIAL_CAPACITY = 16
# Indices smaller than this are never compacted
MIN_COMPACT_ROWS = 64


# =============================================================================
# Entries, filters and results
# =============================================================================

@dataclass(frozen=True)
class IndexEntry:
    """One indexed embedding: its vectors plus filterable metadata."""
    id: str
    combined: np.ndarray
    structural: np.ndarray
    semantic: Optional[np.ndarray]
    path: str
    granularity: Granularity
    language: str
    content_type: str
    chunk_index: Optional[int] = None
    degraded: bool = False
    weights: Tuple[float, float] = (0.4, 0.6)
    unit_id: Optional[str] = None

    @classmethod
    def from_embedding(
        cls, embedding: MultiVectorEmbedding, unit_id: Optional[str] = None
    ) -> "IndexEntry":
        p = embedding.provenance
        return cls(
            id=embedding.id,
            combined=normalize(embedding.combined),
            structural=normalize(embedding.structural),
            semantic=normalize(embedding.semantic) if embedding.semantic is not None else None,
            path=p.source_path,
            granularity=p.granularity,
            language=p.language,
            content_type=p.content_type,
            chunk_index=p.chunk_index,
            degraded=embedding.degraded,
            weights=tuple(embedding.weights),
            unit_id=unit_id if unit_id is not None else p.unit_id,
        )

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "granularity": self.granularity.value,
            "language": self.language,
            "content_type": self.content_type,
            "chunk_index": self.chunk_index,
            "degraded": self.degraded,
            "unit_id": self.unit_id,
        }

    def same_content(self, other: "IndexEntry") -> bool:
        """True when re-adding ``other`` would change nothing."""
        if self.metadata != other.metadata or self.weights != other.weights:
            return False
        if not np.array_equal(self.combined, other.combined):
            return False
        if not np.array_equal(self.structural, other.structural):
            return False
        if (self.semantic is None) != (other.semantic is None):
            return False
        return self.semantic is None or np.array_equal(self.semantic, other.semantic)


@dataclass(frozen=True)
class QueryFilter:
    """Conjunctive metadata filter. None means "any"."""
    language: Optional[str] = None
    content_type: Optional[str] = None
    path_prefix: Optional[str] = None
    degraded: Optional[bool] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.language is None
            and self.content_type is None
            and self.path_prefix is None
            and self.degraded is None
        )

    def matches(self, entry: IndexEntry) -> bool:
        if self.language is not None and entry.language != self.language:
            return False
        if self.content_type is not None and entry.content_type != self.content_type:
            return False
        if self.path_prefix is not None and not entry.path.startswith(self.path_prefix):
            return False
        if self.degraded is not None and entry.degraded != self.degraded:
            return False
        return True


FilterLike = Union[QueryFilter, Mapping[str, Any], None]


def _as_filter(filters: FilterLike) -> QueryFilter:
    if filters is None:
        return QueryFilter()
    if isinstance(filters, QueryFilter):
        return filters
    try:
        return QueryFilter(**dict(filters))
    except TypeError as e:
        raise IndexStoreError(f"Unsupported query filter: {e}") from e


@dataclass(frozen=True)
class QueryResult:
    id: str
    score: float
    metadata: Dict[str, Any]


# =============================================================================
# Append-only storage
# =============================================================================

class _GrowableArray:
    """
    Append-only numpy buffer with capacity doubling.

    view() exposes the filled prefix. Appends never touch rows that are
    already filled, so a view taken earlier is unaffected by later appends.
    """

    def __init__(self, dtype, width: Optional[int] = None, capacity: int = INITIAL_CAPACITY, fill=0):
        self._tail = (width,) if width else ()
        self._fill = fill
        self._data = np.full((max(capacity, 1),) + self._tail, fill, dtype=dtype)
        self.size = 0

    def append(self, value) -> int:
        if self.size == self._data.shape[0]:
            grown = np.full((2 * self.size,) + self._tail, self._fill, dtype=self._data.dtype)
            grown[: self.size] = self._data
            self._data = grown
        row = self.size
        self._data[row] = value
        self.size += 1
        return row

    def __setitem__(self, row: int, value):
        self._data[row] = value

    def view(self) -> np.ndarray:
        v = self._data[: self.size].view()
        v.flags.writeable = False
        return v


@dataclass(frozen=True)
class FlatIndex:
    """
    Read-only view of one flat index as of one snapshot.

    ``ids`` is shared with the writer and only grows: rows at or past
    ``size`` belong to later snapshots. A row is live here while its
    ``removed_at`` stamp is greater than ``as_of``.
    """
    ids: Sequence[str]
    size: int
    live_count: int
    as_of: int
    combined: np.ndarray
    structural: np.ndarray
    semantic: np.ndarray
    degraded: np.ndarray
    removed_at: np.ndarray
    path_codes: np.ndarray
    by_language: Mapping[str, np.ndarray]
    by_content_type: Mapping[str, np.ndarray]
    sorted_paths: Tuple[Tuple[str, int], ...]

    @classmethod
    def build(cls, entries: Iterable[IndexEntry], dimension: int) -> "FlatIndex":
        """Standalone index over ``entries``, rows ordered by id."""
        return _FlatIndexBuilder.from_entries(entries, dimension).publish(0)

    def __len__(self) -> int:
        return self.live_count

    def live_rows(self) -> np.ndarray:
        return np.flatnonzero(self.removed_at > self.as_of)

    def candidates(self, flt: QueryFilter) -> Optional[np.ndarray]:
        """
        Sorted live row numbers satisfying the filter, or None when unfiltered.

        Uses the inverted indices for equality filters and a bisect over the
        sorted distinct paths for the prefix filter.
        """
        if flt.is_empty:
            return None

        selected: Optional[np.ndarray] = None

        def intersect(rows: np.ndarray):
            nonlocal selected
            selected = rows if selected is None else np.intersect1d(selected, rows, assume_unique=True)

        empty = np.zeros(0, dtype=np.int64)
        if flt.language is not None:
            intersect(self.by_language.get(flt.language, empty))
        if flt.content_type is not None:
            intersect(self.by_content_type.get(flt.content_type, empty))
        if flt.path_prefix is not None:
            lo = bisect.bisect_left(self.sorted_paths, (flt.path_prefix, -1))
            codes = []
            for path, code in self.sorted_paths[lo:]:
                if not path.startswith(flt.path_prefix):
                    break
                codes.append(code)
            intersect(np.flatnonzero(np.isin(self.path_codes, codes)).astype(np.int64))
        if flt.degraded is not None:
            intersect(np.flatnonzero(self.degraded == flt.degraded).astype(np.int64))

        return np.intersect1d(selected, self.live_rows(), assume_unique=True)

    def matrix(self, weights: Optional[Tuple[float, float]]) -> np.ndarray:
        """Bolted rows, re-fused at ``weights`` when given."""
        if weights is None:
            return self.combined
        w_s, w_m = weights
        fused = self.structural * w_s + self.semantic * w_m
        # Degraded rows have no semantic aspect: they stay structural-only
        fused[self.degraded] = self.structural[self.degraded]
        return normalize_rows(fused)


class _FlatIndexBuilder:
    """Writer-side state behind the FlatIndex views of one index."""

    def __init__(self, dimension: int, capacity: int = INITIAL_CAPACITY):
        self.dimension = dimension
        self.ids: List[str] = []
        self.combined = _GrowableArray(np.float32, dimension, capacity)
        self.structural = _GrowableArray(np.float32, dimension, capacity)
        self.semantic = _GrowableArray(np.float32, dimension, capacity)
        self.degraded = _GrowableArray(bool, capacity=capacity)
        self.removed_at = _GrowableArray(np.int64, capacity=capacity, fill=ALIVE)
        self.path_codes = _GrowableArray(np.int64, capacity=capacity)
        self.by_language: Dict[str, _GrowableArray] = {}
        self.by_content_type: Dict[str, _GrowableArray] = {}
        self.path_code: Dict[str, int] = {}
        self.row_of: Dict[str, int] = {}
        self.dead = 0
        self._sorted_paths: Tuple[Tuple[str, int], ...] = ()
        self._paths_dirty = False

    @classmethod
    def from_entries(cls, entries: Iterable[IndexEntry], dimension: int) -> "_FlatIndexBuilder":
        rows = sorted(entries, key=lambda e: e.id)
        builder = cls(dimension, capacity=max(len(rows), INITIAL_CAPACITY))
        for entry in rows:
            builder.append(entry)
        return builder

    @property
    def live_count(self) -> int:
        return len(self.ids) - self.dead

    def append(self, entry: IndexEntry) -> int:
        if entry.id in self.row_of:
            raise IndexStoreError(f"Entry {entry.id} already has a live row")
        row = len(self.ids)
        self.ids.append(entry.id)
        self.combined.append(entry.combined)
        self.structural.append(entry.structural)
        self.semantic.append(entry.semantic if entry.semantic is not None else 0.0)
        self.degraded.append(entry.degraded)
        self.removed_at.append(ALIVE)

        code = self.path_code.get(entry.path)
        if code is None:
            code = len(self.path_code)
            self.path_code[entry.path] = code
            self._paths_dirty = True
        self.path_codes.append(code)

        self.by_language.setdefault(entry.language, _GrowableArray(np.int64)).append(row)
        self.by_content_type.setdefault(entry.content_type, _GrowableArray(np.int64)).append(row)
        self.row_of[entry.id] = row
        return row

    def remove(self, entry_id: str, snapshot_id: int) -> bool:
        """Tombstone the live row of ``entry_id`` as of ``snapshot_id``."""
        row = self.row_of.pop(entry_id, None)
        if row is None:
            return False
        self.removed_at[row] = snapshot_id
        self.dead += 1
        return True

    def needs_compaction(self) -> bool:
        return self.dead > max(MIN_COMPACT_ROWS, len(self.ids) // 2)

    def publish(self, snapshot_id: int) -> FlatIndex:
        if self._paths_dirty:
            self._sorted_paths = tuple(sorted(self.path_code.items()))
            self._paths_dirty = False
        return FlatIndex(
            ids=self.ids,
            size=len(self.ids),
            live_count=self.live_count,
            as_of=snapshot_id,
            combined=self.combined.view(),
            structural=self.structural.view(),
            semantic=self.semantic.view(),
            degraded=self.degraded.view(),
            removed_at=self.removed_at.view(),
            path_codes=self.path_codes.view(),
            by_language=MappingProxyType({k: v.view() for k, v in self.by_language.items()}),
            by_content_type=MappingProxyType({k: v.view() for k, v in self.by_content_type.items()}),
            sorted_paths=self._sorted_paths,
        )


@dataclass(frozen=True)
class IndexSnapshot:
    """
    Immutable, published state of the store.

    ``units`` maps an input unit id to the entry ids it owns, ``sources``
    counts entries per source path.
    """
    snapshot_id: int
    dimension: int
    entries: Mapping[str, IndexEntry]
    indices: Mapping[Granularity, FlatIndex]
    combined: Optional[FlatIndex]
    units: Mapping[str, FrozenSet[str]] = field(default_factory=lambda: MappingProxyType({}))
    sources: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def empty(cls, dimension: int, enable_combined: bool) -> "IndexSnapshot":
        return cls(
            snapshot_id=0,
            dimension=dimension,
            entries=MappingProxyType({}),
            indices=MappingProxyType({}),
            combined=FlatIndex.build([], dimension) if enable_combined else None,
        )

    def __len__(self) -> int:
        return len(self.entries)


def _top_k(index: FlatIndex, scores: np.ndarray, rows: np.ndarray, k: int) -> List[Tuple[float, str, int]]:
    """Exact top-k of ``rows`` by score descending, ties broken by id."""
    if rows.size == 0:
        return []
    row_scores = scores[rows]
    if rows.size > k:
        # Keep everything tied with the k-th best so the id tie-break is exact
        kth = np.partition(-row_scores, k - 1)[k - 1]
        keep = -row_scores <= kth
        rows, row_scores = rows[keep], row_scores[keep]
    ranked = sorted(
        ((float(s), index.ids[r], int(r)) for s, r in zip(row_scores, rows)),
        key=lambda t: (-t[0], t[1]),
    )
    return ranked[:k]


# =============================================================================
# Store
# =============================================================================

class VectorIndexStore:
    """
    Single-writer / multi-reader vector index.

    Usage:
        store = VectorIndexStore(dimension=384)
        store.add_unit("src/app.py", records, replace=store.has_unit("src/app.py"))
        store.commit()
        hits = store.query(vector, k=5, filters={"language": "python"})
    """

    def __init__(
        self,
        dimension: int = settings.embedding_dimension,
        enable_combined: bool = settings.enable_combined_index,
        prefilter_threshold: float = DEFAULT_PREFILTER_THRESHOLD,
    ):
        if dimension <= 0:
            raise IndexStoreError(f"Index dimension must be positive, got {dimension}")
        self.dimension = dimension
        self.enable_combined = enable_combined
        self.prefilter_threshold = prefilter_threshold

        self._snapshot = IndexSnapshot.empty(dimension, enable_combined)
        self._builders: Dict[Granularity, _FlatIndexBuilder] = {}
        self._combined_builder = _FlatIndexBuilder(dimension) if enable_combined else None
        self._staged: Dict[str, IndexEntry] = {}
        self._removed: Set[str] = set()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    @property
    def snapshot_id(self) -> int:
        return self._snapshot.snapshot_id

    def __len__(self) -> int:
        return len(self._snapshot)

    def get(self, entry_id: str) -> Optional[IndexEntry]:
        return self._snapshot.entries.get(entry_id)

    def has_source(self, path: str) -> bool:
        """True when any committed entry came from ``path``."""
        return path in self._snapshot.sources

    def has_unit(self, unit_id: str) -> bool:
        """True when any committed entry is owned by input unit ``unit_id``."""
        return unit_id in self._snapshot.units

    def unit_entries(self, unit_id: str) -> FrozenSet[str]:
        return self._snapshot.units.get(unit_id, frozenset())

    def query(
        self,
        vector,
        k: int = 10,
        filters: FilterLike = None,
        granularity: Optional[Granularity] = None,
        weights: Optional[Tuple[float, float]] = None,
    ) -> List[QueryResult]:
        """
        Exact top-k by cosine similarity over the last committed snapshot.

        Args:
            vector: Query vector (any scale; normalized here)
            k: Maximum number of results
            filters: QueryFilter or dict with language/content_type/path_prefix/degraded
            granularity: Search one granularity index; None searches everything
            weights: Re-bolt stored aspects at these (structural, semantic) weights

        Returns:
            Results with non-increasing scores; ties ordered by id

        Raises:
            DimensionMismatchError: query vector has the wrong dimension
        """
        snap = self._snapshot
        q = as_vector(vector)
        if q.shape[0] != snap.dimension:
            raise DimensionMismatchError(snap.dimension, q.shape[0], "query vector")
        if k <= 0:
            return []
        flt = _as_filter(filters)
        if weights is not None:
            weights = validate_weights(*weights)
        q = normalize(q)

        if granularity is not None:
            granularity = Granularity(granularity)
            targets = [snap.indices[granularity]] if granularity in snap.indices else []
        elif snap.combined is not None:
            targets = [snap.combined]
        else:
            targets = [snap.indices[g] for g in sorted(snap.indices, key=lambda g: g.value)]

        ranked: List[Tuple[float, str, int, FlatIndex]] = []
        for index in targets:
            for score, entry_id, row in self._search(index, q, k, flt, weights):
                ranked.append((score, entry_id, row, index))

        ranked.sort(key=lambda t: (-t[0], t[1]))
        return [
            QueryResult(id=entry_id, score=score, metadata=snap.entries[entry_id].metadata)
            for score, entry_id, _, _ in ranked[:k]
        ]

    def _search(
        self,
        index: FlatIndex,
        q: np.ndarray,
        k: int,
        flt: QueryFilter,
        weights: Optional[Tuple[float, float]],
    ) -> List[Tuple[float, str, int]]:
        n = len(index)
        if n == 0:
            return []

        candidates = index.candidates(flt)
        matrix = index.matrix(weights)

        if candidates is None:
            scores = matrix @ q
            return _top_k(index, scores, index.live_rows(), k)

        if candidates.size < self.prefilter_threshold * n:
            # Pre-filter: score only the selected rows
            scores = np.zeros(index.size, dtype=np.float32)
            if candidates.size:
                scores[candidates] = matrix[candidates] @ q
            strategy = "prefilter"
        else:
            # Post-filter: score everything, then drop rows outside the filter
            scores = matrix @ q
            strategy = "postfilter"

        logger.debug("index_query_filtered", strategy=strategy, rows=n, candidates=int(candidates.size))
        return _top_k(index, scores, candidates, k)

    def stats(self) -> Dict[str, Any]:
        snap = self._snapshot
        return {
            "snapshot_id": snap.snapshot_id,
            "dimension": snap.dimension,
            "entries": len(snap.entries),
            "staged": len(self._staged),
            "pending_removals": len(self._removed),
            "units": len(snap.units),
            "by_granularity": {g.value: len(idx) for g, idx in snap.indices.items()},
            "combined": len(snap.combined) if snap.combined is not None else None,
            "degraded": sum(1 for e in snap.entries.values() if e.degraded),
        }

    # -------------------------------------------------------------------------
    # Write side
    # -------------------------------------------------------------------------

    def _current_locked(self, entry_id: str) -> Optional[IndexEntry]:
        """Entry as the next commit would publish it."""
        entry = self._staged.get(entry_id)
        if entry is not None:
            return entry
        if entry_id in self._removed:
            return None
        return self._snapshot.entries.get(entry_id)

    def _unit_ids_locked(self, unit_id: str) -> Set[str]:
        ids = set()
        for entry_id in self._snapshot.units.get(unit_id, ()):
            entry = self._current_locked(entry_id)
            if entry is not None and entry.unit_id == unit_id:
                ids.add(entry_id)
        ids.update(entry_id for entry_id, e in self._staged.items() if e.unit_id == unit_id)
        return ids

    def _remove_locked(self, entry_id: str):
        self._staged.pop(entry_id, None)
        if entry_id in self._snapshot.entries:
            self._removed.add(entry_id)

    def _check_dimension(self, embedding: MultiVectorEmbedding):
        if embedding.dimension != self.dimension:
            raise DimensionMismatchError(self.dimension, embedding.dimension, f"index add {embedding.id}")

    def add(self, embedding: MultiVectorEmbedding, replace: bool = False) -> bool:
        """
        Stage one embedding; visible after commit().

        Returns:
            True if staged, False if an identical entry already exists

        Raises:
            DimensionMismatchError: embedding dimension differs from the index
            CollisionError: same id, different content, and replace is False
        """
        self._check_dimension(embedding)
        entry = IndexEntry.from_embedding(embedding)

        with self._lock:
            existing = self._current_locked(entry.id)
            if existing is not None and not replace:
                if existing.same_content(entry):
                    return False
                raise CollisionError(entry.id)
            self._staged[entry.id] = entry
            self._removed.discard(entry.id)
            return True

    def add_many(self, embeddings: Iterable[MultiVectorEmbedding], replace: bool = False) -> int:
        return sum(1 for e in embeddings if self.add(e, replace=replace))

    def add_unit(
        self,
        unit_id: str,
        embeddings: Iterable[MultiVectorEmbedding],
        replace: bool = False,
    ) -> int:
        """
        Stage every record of one input unit as a single write.

        The records are owned by ``unit_id``. Nothing is staged unless every
        record passes: a wrong dimension, an id owned by another unit, or a
        changed record without ``replace`` rejects the whole unit. With
        ``replace`` the unit's earlier entries missing from ``embeddings``
        are staged for removal, so a unit that shrank leaves no stale rows.

        Returns:
            Number of entries staged (identical entries are skipped)

        Raises:
            DimensionMismatchError: a record's dimension differs from the index
            CollisionError: id owned by another unit, duplicate id with different
                content, or changed content without replace
        """
        entries = []
        for embedding in embeddings:
            self._check_dimension(embedding)
            entries.append(IndexEntry.from_embedding(embedding, unit_id=unit_id))

        with self._lock:
            pending: Dict[str, IndexEntry] = {}
            for entry in entries:
                existing = pending.get(entry.id) or self._current_locked(entry.id)
                if existing is None:
                    pending[entry.id] = entry
                    continue
                if existing.same_content(entry):
                    continue
                if existing.unit_id != unit_id or not replace or entry.id in pending:
                    raise CollisionError(entry.id)
                pending[entry.id] = entry

            stale = self._unit_ids_locked(unit_id) - {e.id for e in entries} if replace else set()
            for entry_id in stale:
                self._remove_locked(entry_id)
            for entry in pending.values():
                self._staged[entry.id] = entry
                self._removed.discard(entry.id)

        if stale:
            logger.debug("index_unit_pruned", unit_id=unit_id, removed=len(stale))
        return len(pending)

    def remove(self, entry_id: str) -> bool:
        """Stage removal of one entry. Returns False when it does not exist."""
        with self._lock:
            if self._current_locked(entry_id) is None:
                return False
            self._remove_locked(entry_id)
            return True

    def remove_unit(self, unit_id: str) -> int:
        """Stage removal of every entry owned by ``unit_id``. Returns the count."""
        with self._lock:
            ids = self._unit_ids_locked(unit_id)
            for entry_id in ids:
                self._remove_locked(entry_id)
        return len(ids)

    def build(self, embeddings: Iterable[MultiVectorEmbedding], replace: bool = False) -> IndexSnapshot:
        """Batch insert and commit. Nothing is published if any insert fails."""
        try:
            self.add_many(embeddings, replace=replace)
        except Exception:
            self.rollback()
            raise
        return self.commit()

    def commit(self) -> IndexSnapshot:
        """Publish staged writes as a new snapshot (no-op when nothing is staged)."""
        with self._lock:
            if not self._staged and not self._removed:
                return self._snapshot

            old = self._snapshot
            snapshot_id = old.snapshot_id + 1
            entries = dict(old.entries)
            sources = dict(old.sources)
            touched_units: Dict[str, Set[str]] = {}

            def unit_ids(unit_id: str) -> Set[str]:
                if unit_id not in touched_units:
                    touched_units[unit_id] = set(old.units.get(unit_id, ()))
                return touched_units[unit_id]

            def retire(entry: IndexEntry):
                self._builders[entry.granularity].remove(entry.id, snapshot_id)
                if self._combined_builder is not None:
                    self._combined_builder.remove(entry.id, snapshot_id)
                sources[entry.path] -= 1
                if not sources[entry.path]:
                    del sources[entry.path]
                if entry.unit_id is not None:
                    unit_ids(entry.unit_id).discard(entry.id)

            removed = 0
            for entry_id in sorted(self._removed):
                entry = entries.pop(entry_id, None)
                if entry is not None:
                    retire(entry)
                    removed += 1

            for entry in self._staged.values():
                previous = entries.get(entry.id)
                if previous is not None:
                    retire(previous)
                entries[entry.id] = entry
                builder = self._builders.get(entry.granularity)
                if builder is None:
                    builder = self._builders[entry.granularity] = _FlatIndexBuilder(self.dimension)
                builder.append(entry)
                if self._combined_builder is not None:
                    self._combined_builder.append(entry)
                sources[entry.path] = sources.get(entry.path, 0) + 1
                if entry.unit_id is not None:
                    unit_ids(entry.unit_id).add(entry.id)

            compacted = self._compact_locked(entries)

            units = dict(old.units)
            for unit_id, ids in touched_units.items():
                if ids:
                    units[unit_id] = frozenset(ids)
                else:
                    units.pop(unit_id, None)

            new = IndexSnapshot(
                snapshot_id=snapshot_id,
                dimension=self.dimension,
                entries=MappingProxyType(entries),
                indices=MappingProxyType({g: b.publish(snapshot_id) for g, b in self._builders.items()}),
                combined=self._combined_builder.publish(snapshot_id) if self._combined_builder else None,
                units=MappingProxyType(units),
                sources=MappingProxyType(sources),
            )
            staged = len(self._staged)
            self._staged = {}
            self._removed = set()
            self._snapshot = new

        logger.info(
            "index_committed",
            snapshot_id=new.snapshot_id,
            staged=staged,
            removed=removed,
            compacted=compacted,
            total=len(new.entries),
        )
        return new

    def _compact_locked(self, entries: Mapping[str, IndexEntry]) -> List[str]:
        """Rebuild indices whose tombstones outnumber their live rows."""
        compacted = []
        for granularity, builder in list(self._builders.items()):
            if builder.needs_compaction():
                self._builders[granularity] = _FlatIndexBuilder.from_entries(
                    (e for e in entries.values() if e.granularity == granularity), self.dimension
                )
                compacted.append(granularity.value)
        if self._combined_builder is not None and self._combined_builder.needs_compaction():
            self._combined_builder = _FlatIndexBuilder.from_entries(entries.values(), self.dimension)
            compacted.append("combined")
        return compacted

    def rollback(self) -> int:
        """Discard staged writes and removals. Returns how many were dropped."""
        with self._lock:
            dropped = len(self._staged) + len(self._removed)
            self._staged = {}
            self._removed = set()
        if dropped:
            logger.info("index_rolled_back", dropped=dropped)
        return dropped
