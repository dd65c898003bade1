"""
Vector Store

Thin repository over Qdrant. Chunk ids are arbitrary strings while Qdrant
only accepts unsigned integers and UUIDs as point ids, so every id is mapped
through ``to_point_id`` and the original id is kept in the payload.

Every call into qdrant-client is wrapped in a VectorStore*Error carrying the
original exception as its cause.
"""

import hashlib
import math
import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from qdrant_client import QdrantClient, models

from ..logging_config import configure_logger_for_debug_trace
from ..search_exceptions import (
    InvalidInputError,
    NotInitializedError,
    VectorStoreCollectionError,
    VectorStoreConnectionError,
    VectorStoreDeleteError,
    VectorStoreSearchError,
    VectorStoreUpsertError,
)

logger = configure_logger_for_debug_trace(__name__)

ORIGINAL_ID_FIELD = "original_id"

# Payload fields used in filters; indexed as keywords on collection creation
PAYLOAD_INDEX_FIELDS = ("project_id", "path", "category")

_UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE
)

PointId = Union[str, int]


def to_point_id(value: PointId) -> PointId:
    """
    Map an arbitrary id to a Qdrant-compatible point id.

    Unsigned integers and canonical UUID strings pass through unchanged.
    Any other string becomes the MD5 of its UTF-8 bytes formatted as a
    version-4 UUID, so the same input always maps to the same point.
    """
    if isinstance(value, int) and value >= 0:
        return value
    text = str(value)
    if text.isdigit():
        return int(text)
    if _UUID_PATTERN.match(text):
        return text
    digest = hashlib.md5(text.encode('utf-8')).digest()
    return str(uuid.UUID(bytes=digest, version=4))


@dataclass
class VectorPoint:
    """
    Point to write: original id, vector and payload.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    id: str
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorHit:
    """
    Point returned by a similarity search, with its original id restored.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CollectionInfo:
    """
    Summary of one collection.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    name: str
    points_count: int
    status: str
    vector_size: Optional[int] = None


@runtime_checkable
class VectorStore(Protocol):
    """Operations the vector backend and the bootstrap need from a store."""

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def ensure_collection(self, name: str, dimensions: int) -> None: ...

    def upsert(self, name: str, points: List[VectorPoint]) -> None: ...

    def search(
        self,
        name: str,
        vector: List[float],
        limit: int,
        score_threshold: Optional[float] = None,
        conditions: Optional[Dict[str, Any]] = None,
    ) -> List[VectorHit]: ...

    def delete(self, name: str, ids: List[str]) -> None: ...

    def delete_by_filter(self, name: str, conditions: Dict[str, Any]) -> None: ...

    def delete_collection(self, name: str) -> None: ...

    def collection_info(self, name: str) -> Optional[CollectionInfo]: ...


class QdrantVectorStore:
    """
    VectorStore implementation backed by qdrant-client.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a repository.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    Pass ``location=":memory:"`` for an in-process store (used by tests).
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        location: Optional[str] = None,
    ):
        if not url and not location:
            raise InvalidInputError("QdrantVectorStore needs a url or a location")
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.location = location
        self._client: Optional[QdrantClient] = None
        self._lock = threading.Lock()
        self._ensured: Dict[str, int] = {}

    @property
    def target(self) -> str:
        return self.url or self.location

    # =========================================================================
    # Connection
    # =========================================================================

    def connect(self) -> None:
        """Open the client and verify the server answers. No-op when connected."""
        with self._lock:
            if self._client is not None:
                return
            try:
                if self.location:
                    client = QdrantClient(location=self.location)
                else:
                    client = QdrantClient(
                        url=self.url,
                        api_key=self.api_key,
                        timeout=int(math.ceil(self.timeout)),
                    )
                client.get_collections()
            except Exception as e:
                raise VectorStoreConnectionError(
                    f"Cannot connect to Qdrant at {self.target}: {e}",
                    context={"target": self.target},
                ) from e
            self._client = client
            logger.info(f"Connected to Qdrant at {self.target}")

    def disconnect(self) -> None:
        with self._lock:
            client, self._client = self._client, None
            self._ensured.clear()
        if client is None:
            return
        try:
            client.close()
        except Exception as e:
            logger.debug(f"Error closing Qdrant client: {e}")

    def is_connected(self) -> bool:
        return self._client is not None

    def _require_client(self) -> QdrantClient:
        client = self._client
        if client is None:
            raise NotInitializedError(f"Vector store {self.target} is not connected")
        return client

    # =========================================================================
    # Collections
    # =========================================================================

    def ensure_collection(self, name: str, dimensions: int) -> None:
        """
        Create the collection if missing and verify its vector size.

        Idempotent, including under concurrent calls from several backends.

        Raises:
            VectorStoreCollectionError: On failure or dimension mismatch
        """
        client = self._require_client()
        with self._lock:
            if self._ensured.get(name) == dimensions:
                return
            try:
                if not client.collection_exists(name):
                    client.create_collection(
                        collection_name=name,
                        vectors_config=models.VectorParams(
                            size=dimensions, distance=models.Distance.COSINE
                        ),
                    )
                    logger.info(f"Created collection {name} (dim={dimensions})")
                    self._create_payload_indexes(client, name)
            except Exception as e:
                # Another process may have created it in between
                if not self._exists_quietly(client, name):
                    raise VectorStoreCollectionError(
                        f"Failed to create collection {name}: {e}", collection_name=name
                    ) from e

            info = self._describe(client, name)
            if info.vector_size is not None and info.vector_size != dimensions:
                raise VectorStoreCollectionError(
                    f"Collection {name} has vector size {info.vector_size}, expected {dimensions}",
                    collection_name=name,
                )
            self._ensured[name] = dimensions

    @staticmethod
    def _create_payload_indexes(client: QdrantClient, name: str) -> None:
        for field_name in PAYLOAD_INDEX_FIELDS:
            try:
                client.create_payload_index(
                    collection_name=name,
                    field_name=field_name,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )
            except Exception as e:
                logger.warning(f"Payload index {field_name} on {name} not created: {e}")

    @staticmethod
    def _exists_quietly(client: QdrantClient, name: str) -> bool:
        try:
            return client.collection_exists(name)
        except Exception:
            return False

    def _describe(self, client: QdrantClient, name: str) -> CollectionInfo:
        try:
            info = client.get_collection(name)
        except Exception as e:
            raise VectorStoreCollectionError(
                f"Failed to read collection {name}: {e}", collection_name=name
            ) from e

        vectors = info.config.params.vectors
        vector_size = getattr(vectors, "size", None)
        return CollectionInfo(
            name=name,
            points_count=info.points_count or 0,
            status=str(getattr(info.status, "value", info.status)),
            vector_size=vector_size,
        )

    def collection_info(self, name: str) -> Optional[CollectionInfo]:
        """Describe a collection, or None if it does not exist."""
        client = self._require_client()
        try:
            if not client.collection_exists(name):
                return None
        except Exception as e:
            raise VectorStoreCollectionError(
                f"Failed to check collection {name}: {e}", collection_name=name
            ) from e
        return self._describe(client, name)

    def delete_collection(self, name: str) -> None:
        client = self._require_client()
        try:
            client.delete_collection(collection_name=name)
        except Exception as e:
            raise VectorStoreCollectionError(
                f"Failed to delete collection {name}: {e}", collection_name=name
            ) from e
        with self._lock:
            self._ensured.pop(name, None)
        logger.info(f"Deleted collection {name}")

    # =========================================================================
    # Points
    # =========================================================================

    def upsert(self, name: str, points: List[VectorPoint]) -> None:
        if not points:
            return
        client = self._require_client()
        structs = [
            models.PointStruct(
                id=to_point_id(point.id),
                vector=list(point.vector),
                payload={**point.payload, ORIGINAL_ID_FIELD: point.id},
            )
            for point in points
        ]
        try:
            client.upsert(collection_name=name, points=structs, wait=True)
        except Exception as e:
            raise VectorStoreUpsertError(
                f"Failed to upsert {len(points)} points into {name}: {e}",
                collection_name=name,
                context={"vector_count": len(points)},
            ) from e

    def search(
        self,
        name: str,
        vector: List[float],
        limit: int,
        score_threshold: Optional[float] = None,
        conditions: Optional[Dict[str, Any]] = None,
    ) -> List[VectorHit]:
        client = self._require_client()
        try:
            response = client.query_points(
                collection_name=name,
                query=list(vector),
                limit=limit,
                query_filter=self._build_filter(conditions),
                score_threshold=score_threshold,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreSearchError(
                f"Search in {name} failed: {e}", collection_name=name
            ) from e

        hits = []
        for point in response.points:
            payload = dict(point.payload or {})
            original_id = payload.pop(ORIGINAL_ID_FIELD, None) or str(point.id)
            hits.append(VectorHit(id=original_id, score=float(point.score), payload=payload))
        return hits

    def delete(self, name: str, ids: List[str]) -> None:
        if not ids:
            return
        client = self._require_client()
        try:
            client.delete(
                collection_name=name,
                points_selector=models.PointIdsList(points=[to_point_id(i) for i in ids]),
                wait=True,
            )
        except Exception as e:
            raise VectorStoreDeleteError(
                f"Failed to delete {len(ids)} points from {name}: {e}", collection_name=name
            ) from e

    def delete_by_filter(self, name: str, conditions: Dict[str, Any]) -> None:
        """Delete every point whose payload matches all conditions."""
        query_filter = self._build_filter(conditions)
        if query_filter is None:
            raise InvalidInputError("delete_by_filter needs at least one condition")
        client = self._require_client()
        try:
            client.delete(
                collection_name=name,
                points_selector=models.FilterSelector(filter=query_filter),
                wait=True,
            )
        except Exception as e:
            raise VectorStoreDeleteError(
                f"Failed to delete points by filter {conditions} from {name}: {e}",
                collection_name=name,
            ) from e

    @staticmethod
    def _build_filter(conditions: Optional[Dict[str, Any]]) -> Optional[models.Filter]:
        must = [
            models.FieldCondition(key=key, match=models.MatchValue(value=value))
            for key, value in (conditions or {}).items()
            if value is not None
        ]
        return models.Filter(must=must) if must else None
