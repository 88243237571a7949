"""Embedding adapter over sentence-transformers.

The model handle is acquired once per process with ``Embedder.load`` (which
downloads the model into the cache directory on first use) and passed by
reference into the index and query pipelines.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from cearch import config
from cearch.errors import EmbedError

logger = logging.getLogger(__name__)


class Embedder:
    """Produces L2-normalized float32 vectors of a fixed dimension."""

    def __init__(self, model: Any, model_name: str) -> None:
        self._model = model
        self._model_name = model_name
        self._dimension: int | None = None

    @classmethod
    def load(
        cls, model_name: str | None = None, cache_dir: str | Path | None = None
    ) -> Embedder:
        """Acquire the embedding model, downloading it if it is not cached.

        Raises:
            EmbedError: If the model cannot be loaded.
        """
        from sentence_transformers import SentenceTransformer

        # Suppress harmless transformer library warnings
        warnings.filterwarnings("ignore", message=".*position_ids.*")
        logging.getLogger("transformers.modeling_utils").setLevel(logging.ERROR)

        name = model_name or config.EMBEDDING_MODEL
        cache = Path(cache_dir) if cache_dir else config.get_model_cache_dir()
        cache.mkdir(parents=True, exist_ok=True)
        logger.info("Loading embedding model %s (cache: %s)", name, cache)
        try:
            model = SentenceTransformer(name, cache_folder=str(cache))
        except Exception as e:
            raise EmbedError(
                f"Failed to load embedding model '{name}'. "
                f"Check internet connection and model availability. Error: {e}"
            ) from e
        return cls(model, name)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        """Vector dimension D of the loaded model."""
        if self._dimension is None:
            dim = self._model.get_sentence_embedding_dimension()
            if not dim:
                dim = len(self.embed(""))
            self._dimension = int(dim)
        return self._dimension

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text."""
        return self.embed_many([text])[0]

    def embed_many(
        self, texts: Sequence[str], batch_size: int | None = None
    ) -> list[np.ndarray]:
        """Embed multiple texts in a batch.

        Raises:
            EmbedError: If the backend fails or returns malformed output.
        """
        if not texts:
            return []
        try:
            embeddings = self._model.encode(
                list(texts),
                batch_size=batch_size or config.EMBED_BATCH_SIZE,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise EmbedError(f"Embedding backend failed: {e}") from e

        embeddings = np.asarray(embeddings, dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[0] != len(texts):
            raise EmbedError(
                f"Embedding backend returned shape {embeddings.shape} "
                f"for {len(texts)} texts"
            )
        return [row for row in embeddings]
