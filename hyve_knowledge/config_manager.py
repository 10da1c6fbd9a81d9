"""Configuration manager for the knowledge base using TOML files.

Resolution order for every setting: environment variable, then
``config.toml``, then the defaults declared on :class:`KnowledgeConfig`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from . import config
from .models import EmbeddingPurpose

logger = logging.getLogger(__name__)


@dataclass
class KnowledgeConfig:
    # [embeddings]
    provider: str = config.DEFAULT_EMBEDDING_PROVIDER
    ollama_url: str = "http://localhost:11434"
    ollama_code_model: str = "qwen3-embedding:8b"
    ollama_text_model: str = "nomic-embed-text-v2-moe"
    voyage_api_key: str = ""
    voyage_code_model: str = "voyage-code-3"
    voyage_text_model: str = "voyage-3-large"

    # [search]
    index_path: str = ""
    results_per_corpus: int = config.DEFAULT_RESULTS_PER_CORPUS
    max_related_connections: int = 5
    expansion_discount: float = 0.4
    min_expansion_seed_score: float = 0.5
    per_seed_expansion_cap: int = 3
    min_expansion_result_score: float = 0.35
    gamedata_unintent_floor: float = 0.70

    def resolved_index_path(self) -> Path:
        """Directory holding ``knowledge.db`` and the ``hnsw/`` indices."""
        if self.index_path.strip():
            return Path(self.index_path).expanduser()
        return config.BASE_DIR

    def db_path(self) -> Path:
        return self.resolved_index_path() / config.DB_FILE_NAME

    def index_dir(self) -> Path:
        return self.resolved_index_path() / config.INDEX_DIR_NAME

    def model_for(self, purpose: EmbeddingPurpose) -> str:
        if self.provider == "voyage":
            return self.voyage_code_model if purpose == EmbeddingPurpose.CODE else self.voyage_text_model
        return self.ollama_code_model if purpose == EmbeddingPurpose.CODE else self.ollama_text_model


EMBEDDING_KEYS = (
    "provider",
    "ollama_url",
    "ollama_code_model",
    "ollama_text_model",
    "voyage_api_key",
    "voyage_code_model",
    "voyage_text_model",
)

SEARCH_KEYS = (
    "index_path",
    "results_per_corpus",
    "max_related_connections",
    "expansion_discount",
    "min_expansion_seed_score",
    "per_seed_expansion_cap",
    "min_expansion_result_score",
    "gamedata_unintent_floor",
)

ENV_OVERRIDES = {
    "provider": "HYVE_EMBEDDING_PROVIDER",
    "ollama_url": "HYVE_OLLAMA_URL",
    "ollama_code_model": "HYVE_OLLAMA_CODE_MODEL",
    "ollama_text_model": "HYVE_OLLAMA_TEXT_MODEL",
    "voyage_api_key": "VOYAGE_API_KEY",
    "voyage_code_model": "HYVE_VOYAGE_CODE_MODEL",
    "voyage_text_model": "HYVE_VOYAGE_TEXT_MODEL",
    "index_path": "HYVE_INDEX_PATH",
}


def load_full_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    path = path or config.CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}


def _save_full_config(payload: Dict[str, Any], path: Optional[Path] = None) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    path = path or config.CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, "w", encoding="utf-8") as f:
            toml.dump(payload, f)
        return True
    except OSError as exc:
        logger.warning("Failed to write config file %s: %s", path, exc)
        return False


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return None
    return value


def load_knowledge_config(path: Optional[Path] = None) -> KnowledgeConfig:
    """Build a :class:`KnowledgeConfig` from env vars, the TOML file and defaults."""
    full = load_full_config(path)
    file_values: Dict[str, Any] = {}
    file_values.update({k: v for k, v in full.get("embeddings", {}).items() if k in EMBEDDING_KEYS})
    file_values.update({k: v for k, v in full.get("search", {}).items() if k in SEARCH_KEYS})

    defaults = KnowledgeConfig()
    values: Dict[str, Any] = {}
    for f in fields(KnowledgeConfig):
        default = getattr(defaults, f.name)
        env_name = ENV_OVERRIDES.get(f.name)
        env_value = _env(env_name) if env_name else None
        raw = env_value if env_value is not None else file_values.get(f.name, default)
        try:
            values[f.name] = type(default)(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid value for '%s': %r, using default", f.name, raw)
            values[f.name] = default
    return KnowledgeConfig(**values)


def save_knowledge_config(cfg: KnowledgeConfig, path: Optional[Path] = None) -> bool:
    """Persist *cfg* into ``[embeddings]`` and ``[search]``, keeping other sections."""
    full = load_full_config(path)
    data = asdict(cfg)
    full["embeddings"] = {k: data[k] for k in EMBEDDING_KEYS}
    full["search"] = {k: data[k] for k in SEARCH_KEYS}
    return _save_full_config(full, path)


def save_embedding_config(provider: str, path: Optional[Path] = None, **models: str) -> bool:
    """Save the embedding provider choice (and optional model names).

    Preserves ``[search]`` and other sections.
    """
    full = load_full_config(path)
    section = dict(full.get("embeddings", {}))
    section["provider"] = provider
    for key, value in models.items():
        if key in EMBEDDING_KEYS and value:
            section[key] = value
    full["embeddings"] = section
    return _save_full_config(full, path)
