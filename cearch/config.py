"""Centralised configuration for cearch.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.cearch/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables
"""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env first so real env vars still win over it
load_dotenv()

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "embedding_model": "sentence-transformers/all-MiniLM-L6-v2",
    "model_cache_dir": "",  # Empty means ~/.cearch/models
    "hnsw_m": "16",
    "hnsw_ef_construction": "200",
    "hnsw_ef_search": "64",
    "index_workers": "4",
    "embed_batch_size": "32",
    "num_results": "7",
}

# Name of the per-repository store directory
STORE_DIR_NAME = ".cearch"


# ── data directory (configurable via CEARCH_DATA_DIR) ─────────────────
def _get_data_dir() -> Path:
    """Return the data directory, respecting CEARCH_DATA_DIR env var."""
    env_dir = os.environ.get("CEARCH_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".cearch"


_config_path = _get_data_dir() / "config.json"

_file_cfg: dict = {}
if _config_path.is_file():
    try:
        _file_cfg = json.loads(_config_path.read_text(encoding="utf-8"))
        if not isinstance(_file_cfg, dict):
            _file_cfg = {}
    except (json.JSONDecodeError, OSError):
        _file_cfg = {}


def _get(key: str) -> str:
    """Return a config value using the load-order described above."""
    env_map = {
        "embedding_model": "EMBEDDING_MODEL",
        "model_cache_dir": "CEARCH_MODEL_CACHE",
        "hnsw_m": "HNSW_M",
        "hnsw_ef_construction": "HNSW_EF_CONSTRUCTION",
        "hnsw_ef_search": "HNSW_EF_SEARCH",
        "index_workers": "INDEX_WORKERS",
        "embed_batch_size": "EMBED_BATCH_SIZE",
        "num_results": "NUM_RESULTS",
    }

    # 4) env var  (highest priority)
    env_name = env_map.get(key)
    if env_name:
        env_val = os.getenv(env_name)
        if env_val:  # non-empty string
            return env_val

    # 3) ~/.cearch/config.json
    val = _file_cfg.get(key)
    if val is not None and str(val):
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


def _get_int(key: str) -> int:
    """Return an integer setting, falling back to the default on bad input."""
    try:
        return int(_get(key))
    except ValueError:
        return int(_DEFAULTS[key])


# ── public constants ──────────────────────────────────────────────────
EMBEDDING_MODEL: str = _get("embedding_model")
HNSW_M: int = _get_int("hnsw_m")
HNSW_EF_CONSTRUCTION: int = _get_int("hnsw_ef_construction")
HNSW_EF_SEARCH: int = _get_int("hnsw_ef_search")
INDEX_WORKERS: int = max(1, _get_int("index_workers"))
EMBED_BATCH_SIZE: int = max(1, _get_int("embed_batch_size"))
NUM_RESULTS: int = _get_int("num_results")


def data_dir() -> Path:
    """Return the data directory path, respecting CEARCH_DATA_DIR env var."""
    return _get_data_dir()


def get_model_cache_dir() -> Path:
    """Return the directory where downloaded embedding models are cached."""
    custom_path = _get("model_cache_dir")
    if custom_path:
        return Path(custom_path)
    return _get_data_dir() / "models"


def get_store_dir(repo_root: str | Path) -> Path:
    """Return the index store directory for a repository."""
    return Path(repo_root) / STORE_DIR_NAME
