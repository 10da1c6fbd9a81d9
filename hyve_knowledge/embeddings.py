"""Embedding providers used for query-time search and index builds.

========= =============================== ====== ==============================
Key       Backend                         Dim    Notes
========= =============================== ====== ==============================
ollama    local Ollama ``/api/embed``     model  Default; per-purpose models
voyage    VoyageAI ``/v1/embeddings``     1024   Needs ``VOYAGE_API_KEY``
hash      (none)                          256    Offline, keyword-level only
========= =============================== ====== ==============================

Every provider exposes the same call contract: ``embed`` (order
preserving), ``embed_query``, ``dimension``, ``model_id`` and ``validate``.
Failures are reported as :class:`EmbeddingError` subclasses so callers can
degrade to graph-only retrieval without catching raw network errors.
"""

from __future__ import annotations

import logging
import math
import re
import time
from concurrent.futures import ThreadPoolExecutor
from hashlib import blake2b
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import requests

from .config_manager import KnowledgeConfig
from .models import EmbeddingPurpose

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


# ===================================================================
# Errors
# ===================================================================

class EmbeddingError(Exception):
    """Base class for every embedding failure."""


class ConnectionFailed(EmbeddingError):
    def __init__(self, url: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to connect to embedding provider at {url}")
        self.url = url
        self.cause = cause


class ModelNotFound(EmbeddingError):
    def __init__(self, model: str) -> None:
        super().__init__(f"Embedding model '{model}' not found. Pull it first with: ollama pull {model}")
        self.model = model


class ApiError(EmbeddingError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Embedding API error ({status}): {body}")
        self.status = status
        self.body = body


class InvalidApiKey(EmbeddingError):
    def __init__(self) -> None:
        super().__init__("Invalid or missing API key for VoyageAI")


class RateLimited(EmbeddingError):
    def __init__(self, retry_after: Optional[float] = None) -> None:
        suffix = f", retry after {retry_after:g}s" if retry_after is not None else ""
        super().__init__(f"Rate limited{suffix}")
        self.retry_after = retry_after


# ===================================================================
# Provider contract
# ===================================================================

class EmbeddingProvider:
    """Turns text into fixed-dimension vectors."""

    model_id: str = ""
    dimension: int = 0

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        raise NotImplementedError

    def embed_query(self, query: str) -> List[float]:
        return self.embed([query])[0]

    def validate(self) -> None:
        """Raise an :class:`EmbeddingError` when the provider is unusable."""
        raise NotImplementedError

    def close(self) -> None:
        pass


def embed_in_waves(
    embed_one: Callable[[str], List[float]],
    texts: Sequence[str],
    wave_size: int = 10,
    delay: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> List[List[float]]:
    """Embed *texts* in waves of ``wave_size`` concurrent calls.

    Output order always matches input order, whatever order the calls
    finish in.  Waves are separated by *delay* seconds.
    """
    if not texts:
        return []
    results: List[List[float]] = []
    with ThreadPoolExecutor(max_workers=max(1, wave_size)) as pool:
        for start in range(0, len(texts), wave_size):
            if start:
                sleep(delay)
            wave = texts[start : start + wave_size]
            # map() yields in submission order.
            results.extend(pool.map(embed_one, wave))
    return results


# ===================================================================
# Ollama
# ===================================================================

OLLAMA_DIMENSIONS: Dict[str, int] = {
    "qwen3-embedding": 4096,
    "qwen3-embedding:8b": 4096,
    "qwen3-embedding:4b": 2560,
    "qwen3-embedding:0.6b": 1024,
    "nomic-embed-text": 768,
    "nomic-embed-text-v2-moe": 768,
    "nomic-embed-code": 3584,
    "jina-code-embeddings-1.5b": 1536,
    "jina-code-embeddings-0.5b": 896,
    "snowflake-arctic-embed2": 1024,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
}


class OllamaProvider(EmbeddingProvider):
    """Local Ollama server; one HTTP call per text, batched in waves."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        batch_size: int = 10,
        max_chars: int = 4000,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model_id = model
        self.dimension = OLLAMA_DIMENSIONS.get(model, 768)
        self.batch_size = batch_size
        self.max_chars = max_chars
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return embed_in_waves(self._embed_single, [t[: self.max_chars] for t in texts], self.batch_size)

    def embed_query(self, query: str) -> List[float]:
        return self._embed_single(query[: self.max_chars])

    def validate(self) -> None:
        url = f"{self.base_url}/api/tags"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ConnectionFailed(self.base_url, exc) from exc
        if response.status_code != 200:
            raise ConnectionFailed(self.base_url)
        if self.model_id not in response.text:
            raise ModelNotFound(self.model_id)

    def _embed_single(self, text: str) -> List[float]:
        url = f"{self.base_url}/api/embed"
        try:
            response = self.session.post(
                url,
                json={"model": self.model_id, "input": text, "truncate": True},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectionFailed(self.base_url, exc) from exc
        if response.status_code == 404 and "not found" in response.text.lower():
            raise ModelNotFound(self.model_id)
        if response.status_code != 200:
            raise ApiError(response.status_code, response.text)
        try:
            return [float(x) for x in response.json()["embeddings"][0]]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ApiError(response.status_code, f"Malformed embedding response: {exc}") from exc

    def close(self) -> None:
        self.session.close()


# ===================================================================
# VoyageAI
# ===================================================================

VOYAGE_API_URL = "https://api.voyageai.com/v1/embeddings"

VOYAGE_DIMENSIONS: Dict[str, int] = {
    "voyage-code-3": 1024,
    "voyage-3-large": 1024,
    "voyage-4-large": 1024,
}


class VoyageAIProvider(EmbeddingProvider):
    """Hosted VoyageAI embeddings with retry on rate limits and transport errors."""

    def __init__(
        self,
        api_key: str,
        model: str = "voyage-code-3",
        batch_size: int = 128,
        max_chars: int = 32000,
        max_retries: int = 3,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.model_id = model
        self.dimension = VOYAGE_DIMENSIONS.get(model, 1024)
        self.batch_size = batch_size
        self.max_chars = max_chars
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def _require_key(self) -> None:
        if not self.api_key.strip():
            raise InvalidApiKey()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self._require_key()
        results: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            if start:
                self._sleep(0.1)
            batch = [t[: self.max_chars] for t in texts[start : start + self.batch_size]]
            results.extend(self._embed_batch(batch, "document"))
        return results

    def embed_query(self, query: str) -> List[float]:
        self._require_key()
        return self._embed_batch([query[: self.max_chars]], "query")[0]

    def validate(self) -> None:
        self._require_key()
        self._embed_batch(["test"], "query")

    def _embed_batch(self, texts: List[str], input_type: str) -> List[List[float]]:
        payload = {"model": self.model_id, "input": texts, "input_type": input_type}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.post(VOYAGE_API_URL, json=payload, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                last_error = exc
                if attempt < self.max_retries - 1:
                    self._sleep(float(1 << attempt))
                continue

            if response.status_code == 200:
                try:
                    data = sorted(response.json()["data"], key=lambda entry: entry["index"])
                    return [[float(x) for x in entry["embedding"]] for entry in data]
                except (ValueError, KeyError, TypeError) as exc:
                    raise ApiError(response.status_code, f"Malformed embedding response: {exc}") from exc
            if response.status_code == 401:
                raise InvalidApiKey()
            if response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("retry-after"))
                logger.warning("VoyageAI rate limited, retrying in %.1fs", retry_after)
                last_error = RateLimited(retry_after)
                self._sleep(retry_after)
                continue
            raise ApiError(response.status_code, response.text)

        if isinstance(last_error, RateLimited):
            raise last_error
        raise ConnectionFailed(VOYAGE_API_URL, last_error)

    def close(self) -> None:
        self.session.close()


def _parse_retry_after(value: Optional[str], default: float = 5.0) -> float:
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# ===================================================================
# HashEmbeddingModel  (Zero-dependency fallback)
# ===================================================================

class HashEmbeddingModel(EmbeddingProvider):
    """Deterministic token-hashing embedder; no network, no model weights.

    Provides basic keyword-level similarity.  Selected with
    ``hk config set-embedding hash``.
    """

    def __init__(self, dim: int = 256) -> None:
        self.dim = dim
        self.dimension = dim
        self.model_id = f"hash-{dim}"

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return _l2_normalize(vec)

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return self.embed_many(texts)

    def embed_many(self, texts: Iterable[str]) -> List[List[float]]:
        return [self.embed_text(text) for text in texts]

    def embed_query(self, query: str) -> List[float]:
        return self.embed_text(query)

    def validate(self) -> None:
        return None


def _l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0:
        return vec
    return [v / norm for v in vec]


# ===================================================================
# Factory
# ===================================================================

PROVIDERS = ("ollama", "voyage", "hash")


def get_provider(cfg: KnowledgeConfig, purpose: EmbeddingPurpose = EmbeddingPurpose.CODE) -> EmbeddingProvider:
    """Return the provider configured in *cfg* for the given *purpose*.

    Unknown provider names fall back to Ollama with a warning.
    """
    provider = cfg.provider.strip().lower()
    if provider == "hash":
        return HashEmbeddingModel()
    if provider == "voyage":
        return VoyageAIProvider(api_key=cfg.voyage_api_key, model=cfg.model_for(purpose))
    if provider != "ollama":
        logger.warning("Unknown embedding provider '%s', falling back to ollama.", cfg.provider)
    return OllamaProvider(base_url=cfg.ollama_url, model=cfg.model_for(purpose))
