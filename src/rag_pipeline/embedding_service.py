"""Embedding service for generating text embeddings via OpenAI-compatible APIs."""

import asyncio
from dataclasses import dataclass

import numpy as np
from openai import AsyncOpenAI

from src.utils.logging import get_logger

from .config import RAGConfig
from .cost_service import PricingTable
from .errors import PermanentProviderError
from .providers import (
    PermanentFailure,
    ProviderResult,
    ProviderSuccess,
    TransientFailure,
    classify_exception,
    failure_to_error,
)
from .schemas import Chunk, EmbeddingBatchResult, QueryEmbedding
from .tokens import estimate_tokens

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmbeddingResponse:
    vectors: list[list[float]]
    total_tokens: int | None


class OpenAIEmbeddingProvider:
    """Adapter over the OpenAI embeddings endpoint.

    Works with OpenAI, Ollama, OpenRouter or any OpenAI-compatible server.
    Never raises for provider errors; returns a tagged result instead.
    """

    def __init__(self, config: RAGConfig):
        self.config = config
        self.name = config.embedding_provider
        self.client = self._get_client()

    def _get_client(self) -> AsyncOpenAI:
        if self.config.embedding_provider == "ollama":
            # Ollama doesn't require a real API key
            return AsyncOpenAI(
                base_url=self.config.embedding_base_url,
                api_key="ollama",
            )
        return AsyncOpenAI(
            base_url=self.config.embedding_base_url,
            api_key=self.config.embedding_api_key,
        )

    async def embed_texts(self, texts: list[str]) -> ProviderResult[EmbeddingResponse]:
        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(
                    input=texts,
                    model=self.config.embedding_model,
                ),
                timeout=self.config.embedding_timeout_seconds,
            )
        except Exception as e:
            failure = classify_exception(e)
            logger.warning(
                "embedding_request_failed",
                count=len(texts),
                error_type=type(e).__name__,
                transient=isinstance(failure, TransientFailure),
            )
            return failure

        try:
            data = sorted(response.data, key=lambda item: item.index)
            vectors = [list(item.embedding) for item in data]
        except (AttributeError, TypeError) as e:
            return PermanentFailure(reason=f"malformed response: {type(e).__name__}")

        usage = getattr(response, "usage", None)
        total_tokens = getattr(usage, "total_tokens", None)
        if not isinstance(total_tokens, int):
            total_tokens = None

        return ProviderSuccess(EmbeddingResponse(vectors=vectors, total_tokens=total_tokens))


class EmbeddingService:
    """Service for generating validated embeddings with cost accounting.

    Texts are sent in sequential batches. Transient batch failures are
    retried with exponential backoff; a permanent failure or an exhausted
    retry budget fails the whole call, so a caller either gets one valid
    vector per input or an exception.
    """

    def __init__(
        self,
        config: RAGConfig,
        provider: OpenAIEmbeddingProvider | None = None,
        pricing: PricingTable | None = None,
    ):
        """Initialize embedding service with configuration.

        Args:
            config: Configuration object with embedding provider settings.
            provider: Provider adapter. Built from config when omitted.
            pricing: Price table used to compute cost.
        """
        self.config = config
        self.provider = provider or OpenAIEmbeddingProvider(config)
        overrides = (
            {config.embedding_model: config.embedding_price_per_million}
            if config.embedding_price_per_million is not None
            else None
        )
        self.pricing = pricing or PricingTable(embedding_prices=overrides)
        logger.info(
            "embedding_service_initialized",
            provider=config.embedding_provider,
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            batch_size=config.embedding_batch_size,
        )

    async def embed(self, chunks: list[Chunk]) -> EmbeddingBatchResult:
        """Generate embeddings for chunks, all or nothing.

        Args:
            chunks: Chunks to embed, in order.

        Returns:
            EmbeddingBatchResult whose ``embeddings[i]`` belongs to ``chunks[i]``.

        Raises:
            TransientProviderError: If a batch still fails after retries.
            PermanentProviderError: If the provider rejects a batch or returns
                vectors of the wrong shape.
        """
        return await self.embed_texts([chunk.text for chunk in chunks])

    async def embed_texts(self, texts: list[str]) -> EmbeddingBatchResult:
        """Generate embeddings for raw texts with batching."""
        model = self.config.embedding_model
        if not texts:
            return EmbeddingBatchResult(embeddings=[], total_tokens=0, total_cost=0.0, model=model)

        batch_size = self.config.embedding_batch_size
        logger.info("batch_embedding_started", count=len(texts), batch_size=batch_size)

        embeddings: list[list[float]] = []
        total_tokens = 0

        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            vectors, tokens = await self._embed_batch(batch, batch_num=start // batch_size + 1)
            embeddings.extend(vectors)
            total_tokens += tokens

        total_cost = self.pricing.embedding_cost(model, total_tokens)
        logger.info(
            "batch_embedding_completed",
            total_embeddings=len(embeddings),
            total_tokens=total_tokens,
            total_cost=total_cost,
        )
        return EmbeddingBatchResult(
            embeddings=embeddings,
            total_tokens=total_tokens,
            total_cost=total_cost,
            model=model,
        )

    async def embed_query(self, text: str) -> QueryEmbedding:
        """Generate the embedding for a single search query."""
        result = await self.embed_texts([text])
        return QueryEmbedding(
            embedding=result.embeddings[0],
            tokens=result.total_tokens,
            cost=result.total_cost,
            model=result.model,
        )

    async def _embed_batch(
        self, batch: list[str], batch_num: int
    ) -> tuple[list[list[float]], int]:
        max_retries = self.config.embedding_max_retries

        for attempt in range(max_retries + 1):
            result = await self.provider.embed_texts(batch)

            if isinstance(result, ProviderSuccess):
                failure = self._validate(result.value.vectors, expected=len(batch))
                if failure is None:
                    tokens = result.value.total_tokens
                    if tokens is None:
                        tokens = sum(estimate_tokens(text) for text in batch)
                    logger.debug("batch_completed", batch_num=batch_num, count=len(batch))
                    return result.value.vectors, tokens
                result = failure

            if isinstance(result, TransientFailure) and attempt < max_retries:
                delay = self.config.embedding_retry_base_delay * (2**attempt)
                logger.warning(
                    "embedding_batch_retry",
                    batch_num=batch_num,
                    attempt=attempt + 1,
                    delay=delay,
                    reason=result.reason,
                )
                await asyncio.sleep(delay)
                continue

            logger.error(
                "batch_embedding_failed",
                batch_num=batch_num,
                attempts=attempt + 1,
                reason=result.reason,
                transient=isinstance(result, TransientFailure),
            )
            raise failure_to_error(result, provider=self.provider.name, operation="embedding")

        # Loop always returns or raises
        raise PermanentProviderError("embedding retry loop exited", provider=self.provider.name)

    def _validate(self, vectors: list[list[float]], expected: int) -> PermanentFailure | None:
        """Check count, dimensionality and finiteness of a batch."""
        if len(vectors) != expected:
            return PermanentFailure(reason=f"expected {expected} vectors, got {len(vectors)}")
        try:
            matrix = np.asarray(vectors, dtype=np.float64)
        except (TypeError, ValueError):
            return PermanentFailure(reason="ragged or non-numeric vectors")

        dimensions = self.config.embedding_dimensions
        if matrix.ndim != 2 or matrix.shape[1] != dimensions:
            return PermanentFailure(
                reason=f"dimension mismatch: expected {dimensions}, got shape {matrix.shape}"
            )
        if not np.isfinite(matrix).all():
            return PermanentFailure(reason="vector contains NaN or Inf")
        return None
