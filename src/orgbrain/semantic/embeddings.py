"""BGE-M3 singleton embedding service with asyncio.Lock serialization.

Loads the configured model (BAAI/bge-m3 by default) once and produces
1024-dimensional dense vectors for insight deduplication. Model access is
serialized via asyncio.Lock and encode() runs in an executor thread.

embed() raises EmbeddingError; embed_batch() never fails the whole batch and
returns None for the texts it could not embed. Vectors are cached by
normalized text in a bounded LRU.

For tests, embed/embed_batch are patched with deterministic fakes -- see
tests/conftest.py.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Optional

from orgbrain.config import get_settings
from orgbrain.exceptions import EmbeddingError

logger = logging.getLogger(__name__)

# Module-level singleton -- loaded once, kept resident
_model = None
_lock = asyncio.Lock()

# BGE-M3 dense embedding dimension
EMBEDDING_DIM = 1024

# Identifier stored on learning events next to their vector
EMBEDDING_MODEL = "BAAI/bge-m3"

MAX_RETRIES = 2
RETRY_BACKOFF_SECONDS = 0.5
BATCH_CHUNK_SIZE = 32
CACHE_SIZE = 1000

_cache: OrderedDict[str, list[float]] = OrderedDict()


def load_model():
    """Lazy-load the embedding model. Returns the same instance on subsequent calls."""
    global _model
    if _model is None:
        settings = get_settings()
        logger.info(
            "Loading embedding model (%s, fp16=%s)...",
            settings.embedding_model,
            settings.embedding_use_fp16,
        )
        from FlagEmbedding import BGEM3FlagModel

        _model = BGEM3FlagModel(
            settings.embedding_model, use_fp16=settings.embedding_use_fp16
        )
        logger.info("Embedding model loaded successfully.")
    return _model


def unload_model() -> None:
    """Drop the model and the vector cache."""
    global _model
    if _model is not None:
        logger.info("Unloading embedding model.")
        _model = None
    _cache.clear()


def _cache_key(text: str) -> str:
    return " ".join(text.lower().split())


def _cache_get(text: str) -> Optional[list[float]]:
    key = _cache_key(text)
    vector = _cache.get(key)
    if vector is not None:
        _cache.move_to_end(key)
    return vector


def _cache_put(text: str, vector: list[float]) -> None:
    key = _cache_key(text)
    _cache[key] = vector
    _cache.move_to_end(key)
    while len(_cache) > CACHE_SIZE:
        _cache.popitem(last=False)


async def _encode(texts: list[str]) -> list[list[float]]:
    async with _lock:
        model = load_model()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: [v.tolist() for v in model.encode(texts)["dense_vecs"]],
        )


async def _encode_with_retry(texts: list[str]) -> list[list[float]]:
    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            vectors = await _encode(texts)
            if len(vectors) != len(texts):
                raise EmbeddingError(
                    message="Embedding model returned wrong number of vectors",
                    detail=f"expected={len(texts)} got={len(vectors)}",
                )
            return vectors
        except Exception as e:
            last_error = e
            if attempt < MAX_RETRIES:
                logger.warning(
                    "Embedding attempt %d/%d failed: %s", attempt + 1, MAX_RETRIES + 1, e
                )
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * (attempt + 1))
    raise EmbeddingError(
        message="Embedding generation failed",
        detail=str(last_error),
        suggestion="Check that the embedding model is installed and fits in memory",
    )


async def embed(text: str) -> list[float]:
    """Generate a dense embedding for a single text.

    Raises:
        EmbeddingError: For empty text, or once retries are exhausted.
    """
    if not text or not text.strip():
        raise EmbeddingError(message="Cannot embed empty text")
    cached = _cache_get(text)
    if cached is not None:
        return cached
    vector = (await _encode_with_retry([text]))[0]
    _cache_put(text, vector)
    return vector


async def embed_batch(texts: list[str]) -> list[Optional[list[float]]]:
    """Embed many texts, one result per input in the same order.

    Empty texts and texts in a sub-batch that still fails after retries get
    None. Cached texts are not re-encoded.
    """
    results: list[Optional[list[float]]] = [None] * len(texts)
    missing: list[int] = []
    for index, text in enumerate(texts):
        if not text or not text.strip():
            continue
        cached = _cache_get(text)
        if cached is not None:
            results[index] = cached
        else:
            missing.append(index)

    for start in range(0, len(missing), BATCH_CHUNK_SIZE):
        chunk = missing[start : start + BATCH_CHUNK_SIZE]
        try:
            vectors = await _encode_with_retry([texts[i] for i in chunk])
        except EmbeddingError as e:
            logger.warning("Embedding sub-batch of %d texts failed: %s", len(chunk), e)
            continue
        for index, vector in zip(chunk, vectors):
            results[index] = vector
            _cache_put(texts[index], vector)

    return results
