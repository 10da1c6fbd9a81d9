"""Configuration paths for the local knowledge base."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("HYVE_HOME", str(Path.home() / ".hyve" / "knowledge"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
DB_FILE_NAME = "knowledge.db"
INDEX_DIR_NAME = "hnsw"

DEFAULT_EMBEDDING_PROVIDER = "ollama"
DEFAULT_RESULTS_PER_CORPUS = 10
MAX_TOOL_LIMIT = 20

