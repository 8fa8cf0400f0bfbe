"""
Bolted Embedding Generator.

Produces a MultiVectorEmbedding per content unit from two independent
aspects:

- structural: language-selected feature extractor -> feature hashing
- semantic: content-derived prompt -> generative collaborator -> description
  -> text encoder

and fuses them with fixed weights: normalize(s * w_s + m * w_m).

The generative call is the only suspension point. It is bounded by an
admission semaphore, a per-attempt timeout and a retry budget with
exponential backoff. When the budget is spent the unit is returned
structural-only with ``degraded=True`` instead of failing.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from boltindex.config import settings
from boltindex.core.cancellation import CancellationToken
from boltindex.core.errors import DimensionMismatchError, EmbeddingError, RunCancelledError
from boltindex.core.logging import get_logger
from boltindex.embedding.features import LanguageRegistry, hash_features
from boltindex.embedding.vectors import as_vector, combine, normalize, validate_weights, weighted_mean
from boltindex.preprocessing.adaptive_chunker import Chunk
from boltindex.schema.embeddings import Aspect, Granularity, MultiVectorEmbedding, Provenance
from boltindex.utils.llm_client import build_description_prompt

logger = get_logger(__name__)


class GenerativeModel:
    """Protocol for the generative collaborator."""
    async def generate(self, prompt: str) -> str:
        raise NotImplementedError


class TextEncoder:
    """Protocol for the text encoder."""
    def encode(self, text: str) -> Sequence[float]:
        raise NotImplementedError


class EmbeddingGenerator:
    """
    Dual-aspect embedding generator.

    Usage:
        generator = EmbeddingGenerator(llm=LLMClient(), encoder=get_embedding_service())
        record = await generator.embed(source, Provenance("src/lib.py", Granularity.FILE,
                                                          language="python"))
    """

    def __init__(
        self,
        llm: GenerativeModel,
        encoder: TextEncoder,
        registry: Optional[LanguageRegistry] = None,
        dimension: int = settings.embedding_dimension,
        weights: Tuple[float, float] = (settings.structural_weight, settings.semantic_weight),
        max_attempts: int = settings.semantic_max_attempts,
        timeout: Optional[float] = settings.semantic_timeout_seconds,
        backoff: float = settings.semantic_backoff_seconds,
        max_concurrency: int = settings.max_concurrent_generations,
        max_prompt_chars: int = settings.max_prompt_chars,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if dimension <= 0:
            raise EmbeddingError(f"Embedding dimension must be positive, got {dimension}")
        if max_attempts < 1:
            raise EmbeddingError(f"max_attempts must be at least 1, got {max_attempts}")
        if max_concurrency < 1:
            raise EmbeddingError(f"max_concurrency must be at least 1, got {max_concurrency}")

        self.llm = llm
        self.encoder = encoder
        self.registry = registry or LanguageRegistry()
        self.dimension = dimension
        self.weights = validate_weights(*weights)
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff = backoff
        self.max_prompt_chars = max_prompt_chars
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)

        self.stats = {
            "generated": 0,
            "degraded": 0,
            "semantic_attempts": 0,
            "semantic_failures": 0,
        }

    # =========================================================================
    # Aspects
    # =========================================================================

    def structural(self, content: str, language: str) -> np.ndarray:
        """Deterministic structural vector (raises FeatureExtractionError)."""
        extractor = self.registry.extractor_for(language)
        return hash_features(extractor.extract(content, language), self.dimension)

    def encode(self, text: str) -> np.ndarray:
        """Run the text encoder and enforce the configured dimension."""
        vector = as_vector(self.encoder.encode(text))
        if vector.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, vector.shape[0], "text encoder output")
        return normalize(vector)

    async def semantic(
        self,
        content: str,
        language: str,
        content_type: str,
        token: Optional[CancellationToken] = None,
        context: str = "",
    ) -> Optional[Tuple[np.ndarray, str]]:
        """
        Semantic vector and the description it was encoded from.

        Returns None once every attempt has failed or timed out.

        Raises:
            RunCancelledError: the token was set before an attempt
            DimensionMismatchError: the encoder broke its dimension contract
        """
        prompt = build_description_prompt(content, language, content_type, self.max_prompt_chars)
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if token is not None:
                token.raise_if_cancelled()
            self.stats["semantic_attempts"] += 1
            try:
                async with self._semaphore:
                    # Re-check after queueing behind the admission limit
                    if token is not None:
                        token.raise_if_cancelled()
                    description = await asyncio.wait_for(
                        self.llm.generate(prompt), timeout=self.timeout or None
                    )
                if not description or not description.strip():
                    raise EmbeddingError("generative collaborator returned an empty description")
                return self.encode(description), description
            except (DimensionMismatchError, RunCancelledError):
                raise
            except Exception as e:
                last_error = e
                self.stats["semantic_failures"] += 1
                logger.warning(
                    "semantic_attempt_failed",
                    context=context,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff * (2 ** (attempt - 1)))

        logger.warning(
            "semantic_retries_exhausted",
            context=context,
            attempts=self.max_attempts,
            error=str(last_error) if last_error else None,
        )
        return None

    # =========================================================================
    # Records
    # =========================================================================

    def _record(
        self,
        provenance: Provenance,
        structural: np.ndarray,
        semantic: Optional[np.ndarray],
        source_bytes: int,
        description: Optional[str] = None,
        weights: Optional[Tuple[float, float]] = None,
    ) -> MultiVectorEmbedding:
        w_s, w_m = validate_weights(*weights) if weights else self.weights
        aspects: Dict[Aspect, np.ndarray] = {Aspect.STRUCTURAL: structural}
        if semantic is None:
            combined = normalize(structural)
            degraded = True
        else:
            aspects[Aspect.SEMANTIC] = semantic
            combined = combine(structural, semantic, w_s, w_m)
            degraded = False

        self.stats["generated"] += 1
        if degraded:
            self.stats["degraded"] += 1

        return MultiVectorEmbedding(
            id=provenance.stable_id(),
            aspects=aspects,
            combined=combined,
            weights=(w_s, w_m),
            provenance=provenance,
            source_bytes=source_bytes,
            degraded=degraded,
            description=description,
        )

    async def embed(
        self,
        content: str,
        provenance: Provenance,
        token: Optional[CancellationToken] = None,
        weights: Optional[Tuple[float, float]] = None,
    ) -> MultiVectorEmbedding:
        """
        Bolted embedding for one unit of content.

        Args:
            content: Text of the unit
            provenance: Path, granularity and language of the unit
            token: Cancellation token checked before each external call
            weights: Override of the default (structural, semantic) weights

        Returns:
            MultiVectorEmbedding, degraded when the semantic aspect failed
        """
        structural = self.structural(content, provenance.language)
        result = await self.semantic(
            content,
            provenance.language,
            provenance.content_type,
            token=token,
            context=f"{provenance.granularity.value}:{provenance.source_path}",
        )
        semantic, description = result if result is not None else (None, None)
        return self._record(
            provenance,
            structural,
            semantic,
            source_bytes=len(content.encode("utf-8")),
            description=description,
            weights=weights,
        )

    async def embed_chunk(
        self,
        chunk: Chunk,
        path: str,
        token: Optional[CancellationToken] = None,
    ) -> MultiVectorEmbedding:
        provenance = Provenance(
            source_path=path,
            granularity=Granularity.CHUNK,
            chunk_index=chunk.index,
            language=chunk.language,
            content_type=chunk.content_type,
            unit_id=chunk.source_id or None,
        )
        return await self.embed(chunk.content, provenance, token=token)

    def pool(
        self,
        children: List[MultiVectorEmbedding],
        provenance: Provenance,
    ) -> MultiVectorEmbedding:
        """
        Parent record from child records by byte-weighted mean of each aspect.

        Must be called only after every child exists. The parent is degraded
        only when no child has a semantic aspect.
        """
        if not children:
            raise EmbeddingError(f"Cannot pool zero children for {provenance.source_path}")

        structural = weighted_mean(
            [c.structural for c in children], [c.source_bytes for c in children]
        )
        with_semantic = [c for c in children if c.semantic is not None]
        semantic = None
        if with_semantic:
            semantic = weighted_mean(
                [c.semantic for c in with_semantic], [c.source_bytes for c in with_semantic]
            )
        return self._record(
            provenance,
            structural,
            semantic,
            source_bytes=sum(c.source_bytes for c in children),
        )

    def embed_text(
        self,
        text: str,
        language: str = "text",
        weights: Optional[Tuple[float, float]] = None,
    ) -> np.ndarray:
        """
        Query vector in the bolted space.

        The query text is encoded directly, with no generative call.
        """
        w_s, w_m = validate_weights(*weights) if weights else self.weights
        return combine(self.structural(text, language), self.encode(text), w_s, w_m)
