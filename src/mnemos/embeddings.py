"""
Async embedding providers.
Pattern: OpenAI-compatible cloud API (OpenRouter by default) or local Ollama,
with an optional content-hash disk cache in front.
"""

import asyncio
import hashlib
import logging
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import aiofiles
import aiofiles.os
import httpx
import numpy as np

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text to fixed-length vector."""

    async def embed_one(self, text: str) -> List[float]:
        ...

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class EmbeddingError(RuntimeError):
    """Raised when the provider cannot produce embeddings."""


class OpenAIEmbedder:
    """
    OpenAI-compatible /embeddings client.

    Model: openai/text-embedding-3-large through OpenRouter by default.
    Sends up to ``batch_size`` texts per request and retries each request
    with linear backoff.
    """

    DEFAULT_MODEL = "openai/text-embedding-3-large"
    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

    def __init__(self,
                 api_key: Optional[str],
                 model: str = DEFAULT_MODEL,
                 base_url: str = DEFAULT_BASE_URL,
                 batch_size: int = 100,
                 max_retries: int = 3,
                 timeout: float = 30.0,
                 retry_delay: float = 0.5,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                timeout=self.timeout
            )
        return self._client

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed([text])
        return vectors[0]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts, preserving order."""
        results: List[List[float]] = []
        texts = list(texts)
        for i in range(0, len(texts), self.batch_size):
            results.extend(await self._call_api(texts[i:i + self.batch_size]))
        return results

    async def _call_api(self, batch: List[str]) -> List[List[float]]:
        if not self.api_key:
            raise EmbeddingError("Embedding API key missing (set MNEMOS_EMBEDDING_API_KEY or OPENROUTER_API_KEY)")
        client = self._get_client()
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json={"model": self.model, "input": batch},
                )
                response.raise_for_status()
                data = response.json()["data"]
                # Providers may return items out of order
                data = sorted(data, key=lambda item: item.get("index", 0))
                return [item["embedding"] for item in data]
            except (httpx.HTTPError, KeyError, ValueError) as e:
                if attempt == self.max_retries:
                    raise EmbeddingError(f"Embedding failed after {attempt} attempts: {e}") from e
                logger.debug(f"Embedding attempt {attempt} failed, retrying: {e}")
                await asyncio.sleep(self.retry_delay * attempt)
        raise EmbeddingError("Embedding failed after retries")

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None


class OllamaEmbedder:
    """
    Local Ollama embeddings

    Models:
    - nomic-embed-text (768 dim, fast)
    - mxbai-embed-large (1024 dim, quality)
    """

    DEFAULT_MODEL = "nomic-embed-text"

    def __init__(self, model: str = DEFAULT_MODEL,
                 base_url: str = "http://localhost:11434",
                 timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def embed_one(self, text: str) -> List[float]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text}
            )
            response.raise_for_status()
            return response.json()["embedding"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise EmbeddingError(f"Ollama embedding failed: {e}") from e

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [await self.embed_one(t) for t in texts]

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class EmbeddingCache:
    """Async disk cache for embeddings, keyed by content hash."""

    def __init__(self, cache_dir: Path, embedder: EmbeddingProvider):
        self.cache_dir = Path(cache_dir)
        self.embedder = embedder
        self._dir_ready = False

    async def _ensure_cache_dir(self) -> None:
        if not self._dir_ready:
            await aiofiles.os.makedirs(self.cache_dir, exist_ok=True)
            self._dir_ready = True

    def _cache_path(self, text: str) -> Path:
        content_hash = hashlib.sha256(text.encode()).hexdigest()
        return self.cache_dir / f"{content_hash}.npy"

    async def _read(self, text: str) -> Optional[List[float]]:
        try:
            async with aiofiles.open(self._cache_path(text), 'rb') as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        try:
            return np.load(BytesIO(content)).tolist()
        except ValueError:
            logger.warning(f"Corrupt embedding cache entry for hash {self._cache_path(text).stem}")
            return None

    async def _write(self, text: str, embedding: List[float]) -> None:
        buffer = BytesIO()
        np.save(buffer, np.array(embedding, dtype=np.float32))
        try:
            async with aiofiles.open(self._cache_path(text), 'wb') as f:
                await f.write(buffer.getvalue())
        except OSError as e:
            logger.warning(f"Could not write embedding cache: {e}")

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed([text])
        return vectors[0]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Serve cached vectors and embed only the misses, in one provider call."""
        await self._ensure_cache_dir()
        texts = list(texts)
        results: List[Optional[List[float]]] = [await self._read(t) for t in texts]
        missing = [i for i, vec in enumerate(results) if vec is None]
        if missing:
            computed = await self.embedder.embed([texts[i] for i in missing])
            for i, vec in zip(missing, computed):
                results[i] = vec
                await self._write(texts[i], vec)
        logger.debug(f"Embedded {len(missing)} new, {len(texts) - len(missing)} cached")
        return results

    async def close(self) -> None:
        close = getattr(self.embedder, "close", None)
        if close is not None:
            await close()


__all__ = ['EmbeddingProvider', 'EmbeddingError', 'OpenAIEmbedder', 'OllamaEmbedder', 'EmbeddingCache']
