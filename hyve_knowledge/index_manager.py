"""Per-corpus ownership of vector indices and embedding providers."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from .config_manager import KnowledgeConfig
from .embeddings import EmbeddingProvider, get_provider
from .models import Corpus, EmbeddingPurpose
from .storage import GraphStore
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[KnowledgeConfig, EmbeddingPurpose], EmbeddingProvider]


class CorpusIndexManager:
    """Lazily loads and caches one :class:`VectorIndex` and provider per corpus.

    A missing or unreadable index file is not an error: :meth:`get_index`
    returns ``None`` and callers skip vector search for that corpus.
    """

    def __init__(
        self,
        cfg: Optional[KnowledgeConfig] = None,
        provider_factory: ProviderFactory = get_provider,
    ) -> None:
        self.cfg = cfg or KnowledgeConfig()
        self._provider_factory = provider_factory
        self._indices: Dict[Corpus, VectorIndex] = {}
        self._providers: Dict[Corpus, EmbeddingProvider] = {}
        self._lock = threading.Lock()

    def index_path(self, corpus: Corpus) -> Path:
        return self.cfg.index_dir() / corpus.index_file_name

    def get_index(self, corpus: Corpus) -> Optional[VectorIndex]:
        with self._lock:
            cached = self._indices.get(corpus)
            if cached is not None and cached.is_loaded():
                return cached

            path = self.index_path(corpus)
            if not path.exists():
                return None

            index = VectorIndex()
            try:
                index.load(path)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to load vector index for %s: %s", corpus.display_name, exc)
                return None
            if not index.is_loaded():
                logger.warning("Vector index for %s is empty: %s", corpus.display_name, path)
                return None
            self._indices[corpus] = index
            return index

    def get_provider(self, corpus: Corpus) -> EmbeddingProvider:
        with self._lock:
            provider = self._providers.get(corpus)
            if provider is None:
                provider = self._provider_factory(self.cfg, corpus.embedding_purpose)
                self._providers[corpus] = provider
            return provider

    def rebuild(self, store: GraphStore, corpus: Corpus) -> int:
        """Embed the corpus's nodes in ``chunk_index`` order and replace its index.

        The new index is built and saved in a fresh instance, then loaded
        from disk and swapped in; the previous instance is never mutated.
        Returns the number of indexed vectors.
        """
        rows = store.corpus_nodes_by_chunk(corpus.id)
        expected = list(range(len(rows)))
        actual = [row["chunk_index"] for row in rows]
        if actual != expected:
            raise ValueError(
                f"Chunk indices for corpus '{corpus.id}' must be dense 0..{len(rows) - 1}"
            )
        if not rows:
            logger.warning("Corpus %s has no embeddable nodes; nothing to index", corpus.display_name)
            return 0

        provider = self.get_provider(corpus)
        texts = [row["embedding_text"] or row["content"] or "" for row in rows]
        logger.info("Embedding %d %s nodes with %s", len(texts), corpus.id, provider.model_id)
        vectors = provider.embed(texts)
        if len(vectors) != len(texts):
            raise ValueError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts")

        fresh = VectorIndex(dimension=len(vectors[0]))
        count = fresh.build(vectors)
        path = self.index_path(corpus)
        fresh.save(path)
        fresh.close()

        loaded = VectorIndex()
        loaded.load(path)
        with self._lock:
            self._indices[corpus] = loaded
        return count

    def close_corpus(self, corpus: Corpus) -> None:
        with self._lock:
            index = self._indices.pop(corpus, None)
            if index is not None:
                index.close()
            provider = self._providers.pop(corpus, None)
        if provider is not None:
            provider.close()

    def close_all(self) -> None:
        with self._lock:
            for index in self._indices.values():
                index.close()
            providers = list(self._providers.values())
            self._indices.clear()
            self._providers.clear()
        for provider in providers:
            provider.close()
