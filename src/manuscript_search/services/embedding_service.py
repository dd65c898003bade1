"""
Embedding Service

Turns chunk and query text into normalized dense vectors with a local
sentence-transformers model. E5 models are trained with "query: " and
"passage: " prefixes; the prefix is chosen from the ``input_type`` of each
call, so documents and queries land in the same space the model expects.

Vectors are cached by (prefixed) text in a bounded LRU, which makes
reindexing an unchanged file nearly free.
"""

import hashlib
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Protocol, runtime_checkable

import numpy as np
from sentence_transformers import SentenceTransformer

from ..logging_config import configure_logger_for_debug_trace
from ..search_exceptions import EmbeddingError

logger = configure_logger_for_debug_trace(__name__)

INPUT_QUERY = "query"
INPUT_DOCUMENT = "document"

DEFAULT_MODEL = "intfloat/multilingual-e5-small"


@runtime_checkable
class EmbeddingProvider(Protocol):
    """What the vector backend needs from an embedding model."""

    @property
    def dimensions(self) -> int:
        ...

    def initialize(self) -> None:
        ...

    def is_ready(self) -> bool:
        ...

    def embed(self, text: str, input_type: str = INPUT_QUERY) -> np.ndarray:
        ...

    def embed_batch(self, texts: List[str], input_type: str = INPUT_DOCUMENT) -> np.ndarray:
        ...

    def dispose(self) -> None:
        ...


class ModelProfile(NamedTuple):
    dim: int
    query_prefix: str = ""
    document_prefix: str = ""


KNOWN_MODELS: Dict[str, ModelProfile] = {
    "intfloat/multilingual-e5-small": ModelProfile(384, "query: ", "passage: "),
    "intfloat/multilingual-e5-base": ModelProfile(768, "query: ", "passage: "),
    "intfloat/multilingual-e5-large": ModelProfile(1024, "query: ", "passage: "),
    "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2": ModelProfile(384),
    "sentence-transformers/all-MiniLM-L6-v2": ModelProfile(384),
}


class _VectorCache:
    """Thread-safe LRU of text digest -> vector."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._items: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(text: str) -> str:
        return hashlib.sha256(text.encode('utf-8')).hexdigest()

    def get(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            vector = self._items.get(key)
            if vector is None:
                return None
            self._items.move_to_end(key)
            return vector.copy()

    def put(self, key: str, vector: np.ndarray) -> None:
        if self.capacity <= 0:
            return
        with self._lock:
            self._items[key] = vector.copy()
            self._items.move_to_end(key)
            while len(self._items) > self.capacity:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


def _batches(items: List[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EmbeddingService:
    """
    Local sentence-transformers embeddings with prefixing and caching.

    ::: This is-in-layer Service-Layer.
    ::: This is a service.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    One instance is shared by every project; the model is loaded lazily on
    the first initialize() or embed call.

    Attributes:
        model_name: sentence-transformers model id
        embedding_dim: Vector size (read back from the model once loaded)
        batch_size: Texts per encode call
    """

    PROGRESS_EVERY = 10  # batches

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        cache_size: int = 1000,
        batch_size: int = 32,
    ):
        profile = KNOWN_MODELS.get(model_name, ModelProfile(384))
        self.model_name = model_name
        self.batch_size = max(1, batch_size)
        self.embedding_dim: int = profile.dim
        self._prefixes = {
            INPUT_QUERY: profile.query_prefix,
            INPUT_DOCUMENT: profile.document_prefix,
        }
        self._cache = _VectorCache(cache_size)
        self._model: Optional[SentenceTransformer] = None
        self._ready = False
        self._load_lock = threading.Lock()

    @property
    def dimensions(self) -> int:
        return self.embedding_dim

    @property
    def cache_size(self) -> int:
        return self._cache.capacity

    def is_ready(self) -> bool:
        return self._ready

    def initialize(self) -> None:
        """
        Load the model. Concurrent callers block until the first load ends.

        Raises:
            EmbeddingError: If the model cannot be loaded
        """
        if self._ready:
            return
        with self._load_lock:
            if self._ready:
                return
            started = time.time()
            try:
                self._load_model()
            except Exception as e:
                raise EmbeddingError(
                    f"Failed to load embedding model {self.model_name}: {e}",
                    {"model": self.model_name},
                ) from e
            self._ready = True
            logger.info(
                f"[Embedding] {self.model_name} ready in {time.time() - started:.2f}s "
                f"(dim={self.embedding_dim})"
            )

    def _load_model(self) -> None:
        cache_folder = os.environ.get('SENTENCE_TRANSFORMERS_HOME') or None
        if cache_folder:
            os.makedirs(cache_folder, exist_ok=True)
        model = SentenceTransformer(self.model_name, cache_folder=cache_folder)
        dim = model.get_sentence_embedding_dimension()
        if dim:
            self.embedding_dim = int(dim)
        self._model = model

    def dispose(self) -> None:
        """Drop the model and the cache; the next call reloads."""
        with self._load_lock:
            self._model = None
            self._ready = False
        self._cache.clear()

    # =========================================================================
    # Embedding
    # =========================================================================

    def embed(self, text: str, input_type: str = INPUT_QUERY) -> np.ndarray:
        """Embed one text. Returns a normalized vector of shape (dim,)."""
        return self.embed_batch([text], input_type=input_type)[0]

    def embed_batch(self, texts: List[str], input_type: str = INPUT_DOCUMENT) -> np.ndarray:
        """
        Embed several texts, encoding only those missing from the cache.

        Returns:
            Array of shape (len(texts), dim), rows in input order

        Raises:
            EmbeddingError: If the model fails
        """
        self.initialize()
        if not texts:
            return np.zeros((0, self.embedding_dim), dtype=np.float32)

        prefix = self._prefixes.get(input_type, "")
        keys = [self._cache.key(prefix + text) for text in texts]
        vectors: List[Optional[np.ndarray]] = [self._cache.get(key) for key in keys]

        missing = [i for i, vector in enumerate(vectors) if vector is None]
        if missing:
            logger.debug(f"[Embedding] encoding {len(missing)}/{len(texts)} texts (rest cached)")
            try:
                encoded = self._encode([prefix + texts[i] for i in missing])
            except Exception as e:
                raise EmbeddingError(
                    f"Embedding {len(missing)} texts failed: {e}",
                    {"model": self.model_name},
                ) from e
            for i, raw in zip(missing, encoded):
                vector = self._normalize(np.asarray(raw, dtype=np.float32))
                self._cache.put(keys[i], vector)
                vectors[i] = vector

        return np.stack(vectors).astype(np.float32, copy=False)

    def _encode(self, texts: List[str]) -> np.ndarray:
        """Run the model over texts, logging progress on long inputs."""
        total_batches = -(-len(texts) // self.batch_size)
        started = time.time()
        done = 0
        parts = []
        for number, batch in enumerate(_batches(texts, self.batch_size), start=1):
            parts.append(self._model.encode(
                batch,
                batch_size=self.batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            ))
            done += len(batch)
            if total_batches > 2 and (number % self.PROGRESS_EVERY == 0 or number == total_batches):
                elapsed = time.time() - started
                logger.info(
                    "[Embedding] %d/%d texts (%.0f%%), %.0f texts/s",
                    done, len(texts), 100.0 * done / len(texts), done / elapsed if elapsed else 0.0,
                )
        return np.vstack(parts)

    @staticmethod
    def _normalize(vector: np.ndarray) -> np.ndarray:
        norm = float(np.linalg.norm(vector))
        return vector / norm if norm > 0 else vector

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_info(self) -> Dict[str, Any]:
        return {
            'model': self.model_name,
            'dimension': self.embedding_dim,
            'ready': self._ready,
            'cached_vectors': len(self._cache),
            'cache_capacity': self._cache.capacity,
        }


class LightweightEmbeddingService(EmbeddingService):
    """
    Hash-based stand-in for tests and offline runs.

    Equal texts get equal vectors and unrelated texts are close to
    orthogonal, but similarity carries no meaning. Not for production.
    """

    def __init__(self, embedding_dim: int = 384, cache_size: int = 1000, batch_size: int = 32):
        super().__init__(model_name="lightweight-test", cache_size=cache_size, batch_size=batch_size)
        self.embedding_dim = embedding_dim
        self._prefixes = {INPUT_QUERY: "", INPUT_DOCUMENT: ""}

    def _load_model(self) -> None:
        """Nothing to load."""

    def _encode(self, texts: List[str]) -> np.ndarray:
        return np.stack([self._hash_vector(text) for text in texts])

    def _hash_vector(self, text: str) -> np.ndarray:
        # Chain sha256 digests until there is one byte per dimension
        digest = hashlib.sha256(text.encode('utf-8')).digest()
        stream = bytearray(digest)
        counter = 0
        while len(stream) < self.embedding_dim:
            counter += 1
            stream += hashlib.sha256(digest + counter.to_bytes(4, 'little')).digest()
        raw = np.frombuffer(bytes(stream[:self.embedding_dim]), dtype=np.uint8)
        return self._normalize(raw.astype(np.float32) / 127.5 - 1.0)


# Process-wide instance shared by all projects, so the model loads once
_shared_service: Optional[EmbeddingService] = None
_shared_lock = threading.Lock()


def get_embedding_service(
    model_name: str = DEFAULT_MODEL,
    cache_size: int = 1000,
    batch_size: int = 32,
    use_lightweight: bool = False,
) -> EmbeddingService:
    """
    Return the shared embedding service, creating it on first call.

    Arguments only take effect on that first call.
    """
    global _shared_service
    with _shared_lock:
        if _shared_service is None:
            if use_lightweight:
                logger.warning("[Embedding] Using hash-based embeddings; semantic search will not be meaningful")
                _shared_service = LightweightEmbeddingService(cache_size=cache_size, batch_size=batch_size)
            else:
                _shared_service = EmbeddingService(model_name, cache_size=cache_size, batch_size=batch_size)
        return _shared_service


def reset_embedding_service_singleton() -> None:
    """Forget the shared instance (tests only)."""
    global _shared_service
    with _shared_lock:
        _shared_service = None
