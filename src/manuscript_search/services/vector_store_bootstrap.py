"""
Vector Store Bootstrap

Staged acquisition of the optional Qdrant dependency, evaluated once per
process:

1. Explicit: a configured URL answers a connect/disconnect probe.
2. Auto-provisioned: port free (or held by our own container), docker
   usable, managed container ensured, health endpoint answering.
3. Degraded: a structured failure is returned, never raised, and the
   caller falls back to keyword search.
"""

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..logging_config import configure_logger_for_debug_trace
from ..models import BootstrapMode
from ..search_exceptions import (
    BackendUnavailableError,
    HealthCheckTimeoutError,
    PortInUseError,
    ProvisioningError,
    ProvisioningPermissionError,
    SearchError,
    VectorStoreConnectionError,
)
from .config_loader import ProvisioningConfig, VectorStoreConfig
from .provisioning import (
    DockerProvisioningRuntime,
    ManagedInstanceInfo,
    ManagedInstanceSpec,
    ProvisioningRuntime,
    is_port_free,
)
from .vector_store import QdrantVectorStore, VectorStore

logger = configure_logger_for_debug_trace(__name__)

StoreFactory = Callable[[str], VectorStore]
PortChecker = Callable[[str, int], bool]


@dataclass
class BootstrapResult:
    """
    Outcome of the vector store bootstrap.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    success: bool
    mode: BootstrapMode
    url: Optional[str] = None
    store: Optional[VectorStore] = None
    error: Optional[SearchError] = None
    explicit_error: Optional[SearchError] = None
    instance: Optional[ManagedInstanceInfo] = None

    @property
    def degraded(self) -> bool:
        return self.mode == BootstrapMode.DEGRADED

    def user_message(self) -> str:
        """Actionable description of the current semantic search state."""
        if self.success:
            return f"Semantic search is available ({self.mode.value}, {self.url})."
        reason = str(self.error) if self.error else "vector store unavailable"
        return (
            f"Semantic search is unavailable: {reason}. "
            "Keyword search still works. To enable semantic search, set "
            "MANUSCRIPT_SEARCH_QDRANT_URL to a running Qdrant server or make "
            "docker available for automatic provisioning."
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "mode": self.mode.value,
            "url": self.url,
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        if self.explicit_error is not None:
            result["explicit_error"] = self.explicit_error.to_dict()
        if self.instance is not None:
            result["container"] = {
                "name": self.instance.name,
                "id": self.instance.container_id,
                "state": self.instance.state,
            }
        return result


class VectorStoreBootstrap:
    """
    One-shot state machine that produces a connected store or a degraded result.

    ::: This is-in-layer Service-Layer.
    ::: This is a manager.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    The result is cached: repeated initialize() calls return the same
    object and never re-run the phases.
    """

    def __init__(
        self,
        vector_config: Optional[VectorStoreConfig] = None,
        provisioning_config: Optional[ProvisioningConfig] = None,
        runtime: Optional[ProvisioningRuntime] = None,
        store_factory: Optional[StoreFactory] = None,
        port_checker: PortChecker = is_port_free,
    ):
        self.vector_config = vector_config or VectorStoreConfig()
        self.provisioning_config = provisioning_config or ProvisioningConfig()
        self._runtime = runtime
        self._store_factory = store_factory or self._default_store_factory
        self._port_checker = port_checker
        self._lock = threading.Lock()
        self._result: Optional[BootstrapResult] = None

    def _default_store_factory(self, url: str) -> VectorStore:
        return QdrantVectorStore(
            url=url,
            api_key=self.vector_config.api_key,
            timeout=self.vector_config.timeout,
        )

    @property
    def runtime(self) -> ProvisioningRuntime:
        if self._runtime is None:
            self._runtime = DockerProvisioningRuntime(
                command_timeout=self.provisioning_config.command_timeout
            )
        return self._runtime

    @property
    def mode(self) -> BootstrapMode:
        return self._result.mode if self._result else BootstrapMode.UNCONFIGURED

    @property
    def result(self) -> Optional[BootstrapResult]:
        return self._result

    def initialize(self) -> BootstrapResult:
        """
        Run the bootstrap phases once and return the cached result.

        Never raises for connection or provisioning failures; those end in a
        DEGRADED result.
        """
        with self._lock:
            if self._result is None:
                self._result = self._run()
                logger.info(f"Vector store bootstrap finished: {self._result.mode.value}")
            return self._result

    def _run(self) -> BootstrapResult:
        explicit_error: Optional[SearchError] = None
        last_error: Optional[SearchError] = None

        url = self.vector_config.url
        if url:
            try:
                return self._try_explicit(url)
            except SearchError as e:
                logger.warning(f"Explicit vector store {url} unavailable: {e}")
                explicit_error = last_error = e
            except Exception as e:
                logger.warning(f"Explicit vector store {url} unavailable: {e!r}")
                explicit_error = VectorStoreConnectionError(f"Cannot reach {url}: {e}")
                explicit_error.__cause__ = e
                last_error = explicit_error

        if self.provisioning_config.enabled:
            try:
                return self._try_auto_provision(explicit_error)
            except SearchError as e:
                logger.warning(f"Auto-provisioning failed: {e}")
                last_error = e
            except Exception as e:
                logger.warning(f"Auto-provisioning failed unexpectedly: {e!r}")
                last_error = ProvisioningError(f"Auto-provisioning failed: {e}")
                last_error.__cause__ = e
        else:
            logger.info("Auto-provisioning disabled")

        error = BackendUnavailableError(
            self._degraded_reason(url, last_error),
            {"explicit_url": url, "provisioning_enabled": self.provisioning_config.enabled},
        )
        error.__cause__ = last_error
        return BootstrapResult(
            success=False,
            mode=BootstrapMode.DEGRADED,
            url=url,
            error=error,
            explicit_error=explicit_error,
        )

    def _degraded_reason(self, url: Optional[str], last_error: Optional[SearchError]) -> str:
        if last_error is not None:
            return f"vector store not reachable ({last_error})"
        if not url:
            return "no vector store URL configured and auto-provisioning is disabled"
        return "vector store not reachable"

    def _try_explicit(self, url: str) -> BootstrapResult:
        probe = self._store_factory(url)
        probe.connect()
        probe.disconnect()
        logger.info(f"Using explicitly configured vector store at {url}")
        return BootstrapResult(
            success=True,
            mode=BootstrapMode.EXPLICIT,
            url=url,
            store=self._store_factory(url),
        )

    def _try_auto_provision(self, explicit_error: Optional[SearchError]) -> BootstrapResult:
        config = self.provisioning_config
        runtime = self.runtime

        if not self._port_checker(config.host, config.port):
            if self._running_instance(runtime) is None:
                raise PortInUseError(config.port)
            logger.info(f"Port {config.port} is held by managed container {config.container_name}")

        if not runtime.check_permission():
            raise ProvisioningPermissionError(
                "docker is not available or the current user may not use it"
            )

        info = runtime.ensure_managed_instance(ManagedInstanceSpec(
            name=config.container_name,
            image=config.image,
            host_port=config.port,
            volume_name=config.volume_name,
        ))

        url = config.url
        if not runtime.wait_for_health(url, config.health_timeout):
            raise HealthCheckTimeoutError(url, config.health_timeout)

        store = self._store_factory(url)
        store.connect()
        logger.info(f"Using auto-provisioned vector store at {url} ({info.name})")
        return BootstrapResult(
            success=True,
            mode=BootstrapMode.AUTO_PROVISIONED,
            url=url,
            store=store,
            explicit_error=explicit_error,
            instance=info,
        )

    def _running_instance(self, runtime: ProvisioningRuntime) -> Optional[ManagedInstanceInfo]:
        try:
            info = runtime.instance_info(self.provisioning_config.container_name)
        except ProvisioningError as e:
            logger.debug(f"Could not inspect managed container: {e}")
            return None
        return info if info is not None and info.running else None
