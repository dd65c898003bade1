"""
Manuscript Search Exception Hierarchy

Contains all exception classes raised by the indexing and retrieval layer.
External failures are chained with ``raise ... from error`` so that the
original cause stays reachable through ``SearchError.cause``.
"""

from typing import Any, Dict, Optional


class SearchError(Exception):
    """
    Base exception for all manuscript search operations.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "SEARCH_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def cause(self) -> Optional[BaseException]:
        """The wrapped lower-level exception, if any."""
        return self.__cause__

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for callers that report errors to users."""
        result = {"code": self.code, "message": self.message}
        if self.context:
            result["context"] = self.context
        if self.__cause__ is not None:
            result["cause"] = str(self.__cause__)
        return result


class NotInitializedError(SearchError):
    """
    Raised when a component is used before ``initialize()`` completed.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "NOT_INITIALIZED"


class InvalidInputError(SearchError):
    """
    Raised for invalid arguments (empty query, bad chunk budget, unknown project).

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "INVALID_INPUT"


class BackendUnavailableError(SearchError):
    """
    Raised when the vector store is unreachable after all bootstrap phases.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "BACKEND_UNAVAILABLE"


class SemanticSearchUnavailableError(BackendUnavailableError):
    """
    Raised when semantic search is requested while running degraded.

    Carries a ``suggestion`` that points the user to keyword search.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "SEMANTIC_SEARCH_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        suggestion: str = "Use keyword search instead.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["suggestion"] = self.suggestion
        return result


class ExternalCallError(SearchError):
    """
    Base exception for failed calls into external services.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "EXTERNAL_CALL_FAILED"


class EmbeddingError(ExternalCallError):
    """
    Raised when the embedding model fails to load or encode.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "EMBEDDING_FAILED"


class VectorBackendError(ExternalCallError):
    """
    Raised by the vector backend when an add, remove or search fails.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_BACKEND_ERROR"


class VectorStoreError(ExternalCallError):
    """
    Base exception for vector store (Qdrant) operations.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_STORE_ERROR"

    def __init__(
        self,
        message: str,
        collection_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        if collection_name:
            context.setdefault("collection", collection_name)
        super().__init__(message, context)
        self.collection_name = collection_name


class VectorStoreConnectionError(VectorStoreError):
    """
    Raised when the vector store cannot be reached.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_STORE_CONNECTION_ERROR"


class VectorStoreCollectionError(VectorStoreError):
    """
    Raised when creating, inspecting or deleting a collection fails.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_STORE_COLLECTION_ERROR"


class VectorStoreUpsertError(VectorStoreError):
    """
    Raised when writing points fails.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_STORE_UPSERT_ERROR"


class VectorStoreSearchError(VectorStoreError):
    """
    Raised when a similarity query fails.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_STORE_SEARCH_ERROR"


class VectorStoreDeleteError(VectorStoreError):
    """
    Raised when deleting points fails.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "VECTOR_STORE_DELETE_ERROR"


class ProvisioningError(SearchError):
    """
    Base exception for auto-provisioning of the vector store.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "PROVISIONING_FAILED"


class PortInUseError(ProvisioningError):
    """
    Raised when the port for the managed instance is taken by another process.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "PORT_IN_USE"

    def __init__(self, port: int):
        super().__init__(f"Port {port} is already in use", {"port": port})
        self.port = port


class ProvisioningPermissionError(ProvisioningError):
    """
    Raised when the provisioning runtime (docker) is missing or not permitted.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "PROVISIONING_PERMISSION_DENIED"


class HealthCheckTimeoutError(ProvisioningError):
    """
    Raised when the managed instance does not become healthy in time.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "HEALTH_CHECK_TIMEOUT"

    def __init__(self, url: str, timeout: float):
        super().__init__(
            f"Vector store at {url} did not become healthy within {timeout:.0f}s",
            {"url": url, "timeout": timeout},
        )
        self.timeout = timeout


class IndexingError(SearchError):
    """
    Raised when a single file cannot be read or indexed.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    code = "INDEXING_FAILED"


__all__ = [
    "SearchError",
    "NotInitializedError",
    "InvalidInputError",
    "BackendUnavailableError",
    "SemanticSearchUnavailableError",
    "ExternalCallError",
    "EmbeddingError",
    "VectorBackendError",
    "VectorStoreError",
    "VectorStoreConnectionError",
    "VectorStoreCollectionError",
    "VectorStoreUpsertError",
    "VectorStoreSearchError",
    "VectorStoreDeleteError",
    "ProvisioningError",
    "PortInUseError",
    "ProvisioningPermissionError",
    "HealthCheckTimeoutError",
    "IndexingError",
]
