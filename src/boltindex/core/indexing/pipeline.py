"""
Main indexing orchestrator.

Coordinates: chunking → embedding → indexing, and edge discovery → graph.

Inputs are processed in bounded batches. Inside a batch every unit runs as
its own asyncio task; the only suspension point is the generative call made
by the embedding generator. After a batch the staged embeddings and edges
are committed and one checkpoint record is appended, so a crashed run can
be resumed by skipping every input the log already lists. Logged inputs
whose content fingerprint changed are processed again and replace their
earlier entries and edges.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from itertools import islice
from typing import Dict, Iterable, List, Optional, Set, Tuple

from boltindex.config import settings
from boltindex.core.cancellation import CancellationToken
from boltindex.core.errors import BoltIndexError, DimensionMismatchError, GraphError, RunCancelledError
from boltindex.core.indexing.checkpoint import CheckpointLog
from boltindex.core.indexing.graph_store import RelationshipGraphStore
from boltindex.core.indexing.vector_store import VectorIndexStore
from boltindex.core.logging import bind_run_context, clear_run_context, get_logger
from boltindex.core.memory import MemoryMonitor
from boltindex.embedding.features import LanguageRegistry
from boltindex.embedding.generator import EmbeddingGenerator
from boltindex.preprocessing.adaptive_chunker import AdaptiveChunker
from boltindex.schema.embeddings import Granularity, MultiVectorEmbedding, Provenance
from boltindex.schema.graph import EdgeFact
from boltindex.schema.pipeline import ContentUnit, RunSummary, UnitFailure
from boltindex.utils.content import (
    ContentSource,
    FileSystemContentSource,
    content_fingerprint,
    detect_content_type,
    detect_language,
)

logger = get_logger(__name__)

BATCH_SHRINK = 0.5
BATCH_GROWTH = 1.5


# ============================================================================
# RESULT MODELS
# ============================================================================

@dataclass
class UnitResult:
    """Everything one unit produced before it is staged."""
    unit: ContentUnit
    embeddings: List[MultiVectorEmbedding] = field(default_factory=list)
    facts: List[EdgeFact] = field(default_factory=list)
    fingerprint: Optional[str] = None
    # Set while staging: the unit already owned entries and replaces them
    replaced: bool = False


async def _gather_or_cancel(coros) -> list:
    """gather() that cancels the siblings as soon as one fails."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def next_batch_size(current: int, peak_bytes: int, ceiling_bytes: int, max_batch_size: int) -> int:
    """
    Batch sizing policy.

    Halve when the batch peak exceeded the ceiling, grow by half when it
    stayed under half of the ceiling, otherwise keep the size.
    """
    if peak_bytes > ceiling_bytes:
        return max(1, int(current * BATCH_SHRINK))
    if peak_bytes < ceiling_bytes / 2:
        return min(max_batch_size, max(current + 1, int(current * BATCH_GROWTH)))
    return current


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class PipelineOrchestrator:
    """
    Batch pipeline over ContentUnits.

    Usage:
        pipeline = create_default_pipeline()
        summary = await pipeline.run(units_from_paths([Path("src")]))
        hits = pipeline.index.query(vector, k=5)
    """

    def __init__(
        self,
        generator: EmbeddingGenerator,
        index: Optional[VectorIndexStore] = None,
        graphs: Optional[RelationshipGraphStore] = None,
        checkpoint: Optional[CheckpointLog] = None,
        chunker: Optional[AdaptiveChunker] = None,
        monitor: Optional[MemoryMonitor] = None,
        content_source: Optional[ContentSource] = None,
        registry: Optional[LanguageRegistry] = None,
        batch_size: int = settings.batch_size,
        max_batch_size: int = settings.max_batch_size,
        memory_ceiling: int = settings.memory_ceiling_bytes,
        memory_target: int = settings.memory_target_bytes,
        chunk_min_size: int = settings.chunk_min_size,
        chunk_max_size: int = settings.chunk_max_size,
        chunk_overlap: int = settings.chunk_overlap,
        reindex_changed: bool = settings.reindex_changed,
    ):
        self.generator = generator
        self.index = index if index is not None else VectorIndexStore(dimension=generator.dimension)
        if self.index.dimension != generator.dimension:
            raise DimensionMismatchError(self.index.dimension, generator.dimension, "generator vs index")
        self.graphs = graphs if graphs is not None else RelationshipGraphStore()
        self.checkpoint = checkpoint
        self.monitor = monitor or MemoryMonitor(min_interval=settings.memory_sample_interval)
        self.chunker = chunker or AdaptiveChunker(monitor=self.monitor)
        self.content_source = content_source or FileSystemContentSource()
        self.registry = registry or generator.registry

        self.batch_size = max(1, batch_size)
        self.max_batch_size = max(self.batch_size, max_batch_size)
        self.memory_ceiling = memory_ceiling
        self.memory_target = memory_target
        self.chunk_min_size = chunk_min_size
        self.chunk_max_size = chunk_max_size
        self.chunk_overlap = chunk_overlap
        self.reindex_changed = reindex_changed

        self.token = CancellationToken()
        self._inflight: List[asyncio.Task] = []
        self._revisit: Set[str] = set()

        logger.info(
            "indexing_pipeline_initialized",
            batch_size=self.batch_size,
            dimension=generator.dimension,
            checkpoint=str(checkpoint.path) if checkpoint else None,
        )

    # ------------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------------

    def cancel(self, reason: str = "cancelled"):
        """Stop issuing external calls and abandon the in-flight batch."""
        self.token.cancel(reason)
        for task in self._inflight:
            task.cancel()
        logger.warning("pipeline_cancel_requested", reason=reason, inflight=len(self._inflight))

    # ------------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------------

    async def run(self, units: Iterable[ContentUnit]) -> RunSummary:
        """
        Process every unit not already listed in the checkpoint log.

        Listed units whose content no longer matches the fingerprint in the
        log are processed again and replace what they indexed before.

        Returns:
            RunSummary with counts of completed, skipped, re-indexed, failed
            and degraded work. When cancelled, ``summary.cancelled`` is set
            and nothing from the interrupted batch is committed.
        """
        ordered: List[ContentUnit] = []
        seen: Set[str] = set()
        for unit in units:
            if unit.id not in seen:
                seen.add(unit.id)
                ordered.append(unit)

        summary = RunSummary(total_inputs=len(ordered))
        pending, self._revisit = self._plan(ordered)
        summary.skipped = len(ordered) - len(pending)
        summary.reindexed = len(self._revisit)

        run_id = uuid.uuid4().hex[:12]
        bind_run_context(run_id=run_id)
        logger.info(
            "pipeline_run_started",
            total=summary.total_inputs,
            skipped=summary.skipped,
            reindexed=summary.reindexed,
        )

        batch_id = self.checkpoint.next_batch_id() if self.checkpoint else 1
        batch_size = self.batch_size
        peak = 0
        pending_iter = iter(pending)

        try:
            while True:
                if self.token.cancelled:
                    summary.cancelled = True
                    break
                batch = list(islice(pending_iter, batch_size))
                if not batch:
                    break

                self.monitor.reset()
                chunk_size = self.chunker.adapt(self.chunk_min_size, self.chunk_max_size, self.memory_target)
                logger.info("batch_started", batch_id=batch_id, size=len(batch), chunk_size=chunk_size)

                try:
                    await self._process_batch(batch, batch_id, summary)
                except RunCancelledError as e:
                    summary.cancelled = True
                    logger.warning("batch_cancelled", batch_id=batch_id, reason=str(e))
                    break

                self.monitor.sample()
                batch_peak = self.monitor.high_watermark
                peak = max(peak, batch_peak)
                summary.batches += 1
                batch_id += 1

                new_size = next_batch_size(batch_size, batch_peak, self.memory_ceiling, self.max_batch_size)
                if new_size != batch_size:
                    logger.info("batch_size_adjusted", previous=batch_size, size=new_size, peak_bytes=batch_peak)
                batch_size = new_size
        finally:
            summary.index_snapshot_id = self.index.snapshot_id
            summary.graph_snapshot_id = self.graphs.snapshot_id
            summary.peak_memory_bytes = max(peak, self.monitor.high_watermark)
            logger.info(
                "pipeline_run_finished",
                completed=summary.completed,
                skipped=summary.skipped,
                reindexed=summary.reindexed,
                failed=len(summary.failed),
                degraded=summary.degraded_embeddings,
                unresolved_edges=summary.unresolved_edges,
                cancelled=summary.cancelled,
            )
            clear_run_context()

        return summary

    def _read(self, unit: ContentUnit) -> str:
        return unit.content if unit.content is not None else self.content_source.read(unit.path)

    def _plan(self, units: List[ContentUnit]) -> Tuple[List[ContentUnit], Set[str]]:
        """
        Split inputs against the checkpoint log.

        Returns:
            (units to process in input order, ids of logged units that changed)
        """
        if self.checkpoint is None:
            return list(units), set()

        done = self.checkpoint.completed_ids()
        recorded = self.checkpoint.fingerprints() if self.reindex_changed else {}
        pending: List[ContentUnit] = []
        changed: Set[str] = set()
        for unit in units:
            if unit.id not in done:
                pending.append(unit)
                continue
            # Logged without a fingerprint: nothing to compare, keep it
            if unit.id not in recorded:
                continue
            try:
                current = content_fingerprint(self._read(unit))
            except OSError as e:
                # Processing it again reports the read error as a unit failure
                logger.warning("unit_unreadable", input_id=unit.id, path=unit.path, error=str(e))
                current = None
            if current != recorded[unit.id]:
                pending.append(unit)
                changed.add(unit.id)

        if changed:
            logger.info("changed_units_detected", count=len(changed))
        return pending, changed

    async def _process_batch(self, batch: List[ContentUnit], batch_id: int, summary: RunSummary):
        self._inflight = [asyncio.ensure_future(self._process_unit(u)) for u in batch]
        try:
            results = await asyncio.gather(*self._inflight, return_exceptions=True)
        except asyncio.CancelledError:
            # The run itself was cancelled from outside
            self.token.cancel("run task cancelled")
            for task in self._inflight:
                task.cancel()
            await asyncio.gather(*self._inflight, return_exceptions=True)
            self._abort(batch_id)
            raise
        finally:
            self._inflight = []

        if self.token.cancelled:
            self._abort(batch_id)
            raise RunCancelledError(self.token.reason or "cancelled")

        batch_summary = RunSummary()
        staged: List[UnitResult] = []
        for unit, result in zip(batch, results):
            if isinstance(result, BaseException):
                self._record_failure(batch_summary, unit, result)
                continue
            if self._stage_embeddings(result, batch_summary):
                staged.append(result)

        # Units indexed before report their edges afresh
        revisited = [r.unit.id for r in staged if r.replaced]
        if revisited:
            self.graphs.retract(revisited)

        completed: List[str] = []
        fingerprints: Dict[str, str] = {}
        for result in staged:
            self._stage_facts(result, batch_summary)
            completed.append(result.unit.id)
            if result.fingerprint is not None:
                fingerprints[result.unit.id] = result.fingerprint

        # Last chance to back out before anything becomes visible
        if self.token.cancelled:
            self._abort(batch_id)
            raise RunCancelledError(self.token.reason or "cancelled")

        index_snapshot = self.index.commit()
        graph_snapshot = self.graphs.commit()
        if self.checkpoint is not None:
            self.checkpoint.record_batch(
                completed,
                index_snapshot_id=index_snapshot.snapshot_id,
                graph_snapshot_id=graph_snapshot.snapshot_id,
                batch_id=batch_id,
                fingerprints=fingerprints,
            )

        summary.completed += len(completed)
        summary.failed.extend(batch_summary.failed)
        summary.embeddings_indexed += batch_summary.embeddings_indexed
        summary.degraded_embeddings += batch_summary.degraded_embeddings
        summary.edges_added += batch_summary.edges_added
        summary.unresolved_edges += batch_summary.unresolved_edges

        logger.info(
            "batch_committed",
            batch_id=batch_id,
            completed=len(completed),
            failed=len(batch_summary.failed),
            revisited=len(revisited),
            index_snapshot_id=index_snapshot.snapshot_id,
            graph_snapshot_id=graph_snapshot.snapshot_id,
        )

    def _abort(self, batch_id: int):
        dropped = self.index.rollback()
        self.graphs.rollback()
        logger.warning("batch_rolled_back", batch_id=batch_id, dropped_embeddings=dropped)

    def _record_failure(self, summary: RunSummary, unit: ContentUnit, error: BaseException):
        summary.failed.append(UnitFailure(
            input_id=unit.id,
            error_type=type(error).__name__,
            message=str(error),
        ))
        log = logger.error if isinstance(error, DimensionMismatchError) else logger.warning
        log("unit_failed", input_id=unit.id, path=unit.path, error_type=type(error).__name__, error=str(error))

    def _stage_embeddings(self, result: UnitResult, summary: RunSummary) -> bool:
        """Stage one unit's embeddings as a single write. Returns False if the unit failed."""
        unit = result.unit
        # Entries owned by this unit exist when its content changed, or when an
        # earlier run committed it and crashed before the checkpoint.
        result.replaced = unit.id in self._revisit or self.index.has_unit(unit.id)
        try:
            summary.embeddings_indexed += self.index.add_unit(
                unit.id, result.embeddings, replace=result.replaced
            )
        except BoltIndexError as e:
            self._record_failure(summary, unit, e)
            return False

        summary.degraded_embeddings += sum(1 for e in result.embeddings if e.degraded)
        return True

    def _stage_facts(self, result: UnitResult, summary: RunSummary):
        unit = result.unit
        for fact in result.facts:
            try:
                if self.graphs.add_fact(fact, owner=unit.id):
                    summary.edges_added += 1
            except GraphError as e:
                summary.unresolved_edges += 1
                logger.warning(
                    "edge_unresolved",
                    input_id=unit.id,
                    source=fact.source.id,
                    target=fact.target.id,
                    kind=fact.kind.value,
                    error=str(e),
                )

    # ------------------------------------------------------------------------
    # Per unit
    # ------------------------------------------------------------------------

    async def _process_unit(self, unit: ContentUnit) -> UnitResult:
        self.token.raise_if_cancelled()
        content = self._read(unit)
        fingerprint = content_fingerprint(content)
        language = unit.language or detect_language(unit.path)
        content_type = unit.content_type or detect_content_type(language)

        if not content:
            # Nothing to embed, but the unit still completes and is logged
            logger.debug("unit_empty", input_id=unit.id, path=unit.path)
            return UnitResult(unit=unit, facts=list(unit.edges), fingerprint=fingerprint)

        if unit.granularity == Granularity.FILE:
            embeddings = await self._embed_file(unit, content, language, content_type)
        else:
            provenance = Provenance(
                source_path=unit.path,
                granularity=unit.granularity,
                language=language,
                content_type=content_type,
                unit_id=unit.id,
            )
            embeddings = [await self.generator.embed(content, provenance, token=self.token)]

        facts = list(unit.edges)
        facts.extend(self.registry.discoverer_for(language).discover(unit, content))

        logger.debug(
            "unit_processed",
            input_id=unit.id,
            embeddings=len(embeddings),
            facts=len(facts),
        )
        return UnitResult(unit=unit, embeddings=embeddings, facts=facts, fingerprint=fingerprint)

    async def _embed_file(
        self,
        unit: ContentUnit,
        content: str,
        language: str,
        content_type: str,
    ) -> List[MultiVectorEmbedding]:
        chunks = list(self.chunker.chunk(
            content,
            min_size=self.chunk_min_size,
            max_size=self.chunk_max_size,
            overlap_bytes=self.chunk_overlap,
            target_memory=self.memory_target,
            source_id=unit.id,
            language=language,
            content_type=content_type,
            adapt=False,
        ))
        chunk_records = await _gather_or_cancel(
            self.generator.embed_chunk(chunk, unit.path, token=self.token) for chunk in chunks
        )

        # Join barrier: the file record is pooled only once every chunk exists
        file_record = self.generator.pool(
            chunk_records,
            Provenance(
                source_path=unit.path,
                granularity=Granularity.FILE,
                language=language,
                content_type=content_type,
                unit_id=unit.id,
            ),
        )
        return list(chunk_records) + [file_record]


# ============================================================================
# FACTORY
# ============================================================================

def create_default_pipeline(
    checkpoint_path: Optional[str] = None,
    content_root: Optional[str] = None,
) -> PipelineOrchestrator:
    """
    Pipeline wired to the default collaborators.

    Uses LLMClient (ChatOpenAI) for descriptions and the FastEmbed
    EmbeddingService as text encoder; the encoder's dimension becomes the
    index dimension.
    """
    from boltindex.utils.embeddings import get_embedding_service
    from boltindex.utils.llm_client import LLMClient

    encoder = get_embedding_service()
    generator = EmbeddingGenerator(
        llm=LLMClient(),
        encoder=encoder,
        dimension=encoder.get_dimensions(),
    )
    pipeline = PipelineOrchestrator(
        generator=generator,
        checkpoint=CheckpointLog(checkpoint_path or settings.checkpoint_path),
        content_source=FileSystemContentSource(content_root),
    )
    logger.info("default_pipeline_created")
    return pipeline
