"""
Configuration Loader Service

Loads manuscript search configuration from manuscript_search.json in the
projects root. Environment variables always take precedence over config
file values, and config file values over built-in defaults.

Config file location (in order of precedence):
1. MANUSCRIPT_SEARCH_PROJECTS_ROOT/manuscript_search.json (if set)
2. CWD/manuscript_search.json

Supported settings in manuscript_search.json:
{
    "chunk_max_tokens": 400,                   // -> MANUSCRIPT_SEARCH_CHUNK_MAX_TOKENS
    "chunk_overlap": 0.2,                      // -> MANUSCRIPT_SEARCH_CHUNK_OVERLAP
    "search_backend": "vector",                // -> MANUSCRIPT_SEARCH_BACKEND ("keyword" or "vector")
    "embedding_model": "intfloat/multilingual-e5-small",  // -> MANUSCRIPT_SEARCH_EMBEDDING_MODEL
    "qdrant_url": "http://localhost:6333",     // -> MANUSCRIPT_SEARCH_QDRANT_URL
    "provisioning_enabled": true,              // -> MANUSCRIPT_SEARCH_PROVISIONING_ENABLED
    "watch_extensions": "md,txt",              // -> MANUSCRIPT_SEARCH_WATCH_EXTENSIONS
    ...
}
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..logging_config import configure_logger_for_debug_trace
from ..search_exceptions import InvalidInputError

logger = configure_logger_for_debug_trace(__name__)

CONFIG_FILENAME = "manuscript_search.json"


class ChunkConfig(BaseModel):
    """Chunking budget"""
    max_tokens: int = Field(400, ge=1)
    overlap_ratio: float = Field(0.2, ge=0.0, lt=1.0)
    chars_per_token: float = Field(2.5, gt=0.0)


class KeywordConfig(BaseModel):
    """Keyword backend tuning"""
    min_token_length: int = Field(2, ge=1)
    snippet_length: int = Field(120, ge=10)


class EmbeddingConfig(BaseModel):
    """Embedding model selection"""
    model_name: str = "intfloat/multilingual-e5-small"
    batch_size: int = Field(32, ge=1)
    cache_size: int = Field(1000, ge=0)
    use_lightweight: bool = False


class VectorStoreConfig(BaseModel):
    """Qdrant connection and retrieval settings"""
    url: Optional[str] = None
    api_key: Optional[str] = None
    collection_name: str = "manuscript-chunks"
    timeout: float = Field(5.0, gt=0.0)
    score_threshold: float = Field(0.7, ge=0.0, le=1.0)
    snippet_length: int = Field(120, ge=10)


class ProvisioningConfig(BaseModel):
    """Docker-managed Qdrant instance"""
    enabled: bool = True
    image: str = "qdrant/qdrant:latest"
    container_name: str = "manuscript-search-qdrant"
    volume_name: str = "manuscript-search-qdrant-data"
    host: str = "localhost"
    port: int = Field(6333, ge=1, le=65535)
    health_timeout: float = Field(30.0, gt=0.0)
    command_timeout: float = Field(60.0, gt=0.0)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class SearchSettings(BaseModel):
    """Query defaults"""
    backend: Literal["keyword", "vector"] = "keyword"
    default_k: int = Field(10, ge=1)
    max_k: int = Field(50, ge=1)


class WatcherConfig(BaseModel):
    """Filesystem watcher settings"""
    extensions: List[str] = Field(default_factory=lambda: ["md", "txt"])
    debounce_ms: int = Field(500, ge=0)

    @field_validator("extensions")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        return [ext.strip().lower().lstrip(".") for ext in value if ext.strip()]


class SearchConfig(BaseModel):
    """Complete configuration tree for the indexer registry"""
    projects_root: Path = Field(default_factory=Path.cwd)
    project_config_file: str = "project.json"
    index_on_create: bool = True
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)
    keyword: KeywordConfig = Field(default_factory=KeywordConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    search: SearchSettings = Field(default_factory=SearchSettings)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)


class ConfigLoader:
    """
    Loads configuration from manuscript_search.json file.

    ::: This is-in-layer Service-Layer.
    ::: This is a loader.
    ::: This is-in-process Main-Process.
    ::: This is stateless.

    Priority: Environment variables > manuscript_search.json > defaults
    """

    # Mapping from manuscript_search.json keys to environment variable names
    CONFIG_KEY_TO_ENV = {
        "projects_root": "MANUSCRIPT_SEARCH_PROJECTS_ROOT",
        "project_config_file": "MANUSCRIPT_SEARCH_PROJECT_CONFIG_FILE",
        "index_on_create": "MANUSCRIPT_SEARCH_INDEX_ON_CREATE",
        # Chunking
        "chunk_max_tokens": "MANUSCRIPT_SEARCH_CHUNK_MAX_TOKENS",
        "chunk_overlap": "MANUSCRIPT_SEARCH_CHUNK_OVERLAP",
        "chunk_chars_per_token": "MANUSCRIPT_SEARCH_CHUNK_CHARS_PER_TOKEN",
        # Keyword backend
        "keyword_min_token_length": "MANUSCRIPT_SEARCH_KEYWORD_MIN_TOKEN_LENGTH",
        "keyword_snippet_length": "MANUSCRIPT_SEARCH_KEYWORD_SNIPPET_LENGTH",
        # Embeddings
        "embedding_model": "MANUSCRIPT_SEARCH_EMBEDDING_MODEL",
        "embedding_batch_size": "MANUSCRIPT_SEARCH_EMBEDDING_BATCH_SIZE",
        "embedding_cache_size": "MANUSCRIPT_SEARCH_EMBEDDING_CACHE_SIZE",
        "embedding_use_lightweight": "MANUSCRIPT_SEARCH_EMBEDDING_LIGHTWEIGHT",
        # Vector store
        "qdrant_url": "MANUSCRIPT_SEARCH_QDRANT_URL",
        "qdrant_api_key": "MANUSCRIPT_SEARCH_QDRANT_API_KEY",
        "qdrant_collection": "MANUSCRIPT_SEARCH_QDRANT_COLLECTION",
        "qdrant_timeout": "MANUSCRIPT_SEARCH_QDRANT_TIMEOUT",
        "vector_score_threshold": "MANUSCRIPT_SEARCH_VECTOR_SCORE_THRESHOLD",
        "vector_snippet_length": "MANUSCRIPT_SEARCH_VECTOR_SNIPPET_LENGTH",
        # Auto-provisioning
        "provisioning_enabled": "MANUSCRIPT_SEARCH_PROVISIONING_ENABLED",
        "provisioning_image": "MANUSCRIPT_SEARCH_PROVISIONING_IMAGE",
        "provisioning_container_name": "MANUSCRIPT_SEARCH_PROVISIONING_CONTAINER",
        "provisioning_host": "MANUSCRIPT_SEARCH_PROVISIONING_HOST",
        "provisioning_port": "MANUSCRIPT_SEARCH_PROVISIONING_PORT",
        "provisioning_health_timeout": "MANUSCRIPT_SEARCH_PROVISIONING_HEALTH_TIMEOUT",
        # Search
        "search_backend": "MANUSCRIPT_SEARCH_BACKEND",
        "search_default_k": "MANUSCRIPT_SEARCH_DEFAULT_K",
        "search_max_k": "MANUSCRIPT_SEARCH_MAX_K",
        # Watcher
        "watch_extensions": "MANUSCRIPT_SEARCH_WATCH_EXTENSIONS",
        "watch_debounce_ms": "MANUSCRIPT_SEARCH_WATCH_DEBOUNCE_MS",
    }

    DEFAULTS: Dict[str, Any] = {
        "projects_root": None,
        "project_config_file": "project.json",
        "index_on_create": True,
        "chunk_max_tokens": 400,
        "chunk_overlap": 0.2,
        "chunk_chars_per_token": 2.5,
        "keyword_min_token_length": 2,
        "keyword_snippet_length": 120,
        "embedding_model": "intfloat/multilingual-e5-small",
        "embedding_batch_size": 32,
        "embedding_cache_size": 1000,
        "embedding_use_lightweight": False,
        "qdrant_url": None,
        "qdrant_api_key": None,
        "qdrant_collection": "manuscript-chunks",
        "qdrant_timeout": 5.0,
        "vector_score_threshold": 0.7,
        "vector_snippet_length": 120,
        "provisioning_enabled": True,
        "provisioning_image": "qdrant/qdrant:latest",
        "provisioning_container_name": "manuscript-search-qdrant",
        "provisioning_host": "localhost",
        "provisioning_port": 6333,
        "provisioning_health_timeout": 30.0,
        "search_backend": "keyword",
        "search_default_k": 10,
        "search_max_k": 50,
        "watch_extensions": ["md", "txt"],
        "watch_debounce_ms": 500,
    }

    def __init__(self):
        self._config: Dict[str, Any] = {}
        self._config_path: Optional[Path] = None
        self._project_root: Optional[Path] = None
        self._loaded = False

    def load(self, project_root: Optional[Path] = None) -> bool:
        """
        Load configuration from manuscript_search.json.

        Args:
            project_root: Projects root directory. If None, uses
                MANUSCRIPT_SEARCH_PROJECTS_ROOT or CWD.

        Returns:
            True if config file was found and loaded, False otherwise.
        """
        if self._loaded:
            return self._config_path is not None

        if project_root is None:
            env_root = os.getenv("MANUSCRIPT_SEARCH_PROJECTS_ROOT")
            project_root = Path(env_root) if env_root else Path.cwd()
        self._project_root = Path(project_root)

        config_path = self._project_root / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("top-level value must be an object")
                self._config = data
                self._config_path = config_path
                logger.info(f"Loaded config from: {config_path}")
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON in {config_path}: {e}")
            except (OSError, ValueError) as e:
                logger.warning(f"Error loading {config_path}: {e}")

        self._loaded = True
        return self._config_path is not None

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw value from the config file."""
        return self._config.get(key, default)

    def get_value(self, key: str) -> Any:
        """
        Resolve one setting: environment variable, then config file, then default.

        Environment strings are converted to the type of the default value.
        """
        default_value = self.DEFAULTS.get(key)
        env_var = self.CONFIG_KEY_TO_ENV.get(key)
        if env_var:
            env_value = os.getenv(env_var)
            if env_value is not None:
                return self._convert_env_value(env_value, default_value)
        return self._config.get(key, default_value)

    @staticmethod
    def _convert_env_value(env_value: str, default_value: Any) -> Any:
        if isinstance(default_value, bool):
            return env_value.strip().lower() in ('true', '1', 'yes')
        if isinstance(default_value, int):
            try:
                return int(env_value)
            except ValueError:
                return default_value
        if isinstance(default_value, float):
            try:
                return float(env_value)
            except ValueError:
                return default_value
        if isinstance(default_value, list):
            return [item.strip() for item in env_value.split(',') if item.strip()]
        return env_value or None

    def build_search_config(self) -> SearchConfig:
        """
        Build the validated configuration tree.

        Raises:
            InvalidInputError: If a value fails validation
        """
        if not self._loaded:
            self.load()

        projects_root = self.get_value("projects_root") or self._project_root or Path.cwd()
        extensions = self.get_value("watch_extensions")
        if isinstance(extensions, str):
            extensions = [item for item in extensions.split(',')]

        try:
            return SearchConfig(
                projects_root=Path(projects_root),
                project_config_file=self.get_value("project_config_file"),
                index_on_create=self.get_value("index_on_create"),
                chunk=ChunkConfig(
                    max_tokens=self.get_value("chunk_max_tokens"),
                    overlap_ratio=self.get_value("chunk_overlap"),
                    chars_per_token=self.get_value("chunk_chars_per_token"),
                ),
                keyword=KeywordConfig(
                    min_token_length=self.get_value("keyword_min_token_length"),
                    snippet_length=self.get_value("keyword_snippet_length"),
                ),
                embedding=EmbeddingConfig(
                    model_name=self.get_value("embedding_model"),
                    batch_size=self.get_value("embedding_batch_size"),
                    cache_size=self.get_value("embedding_cache_size"),
                    use_lightweight=self.get_value("embedding_use_lightweight"),
                ),
                vector_store=VectorStoreConfig(
                    url=self.get_value("qdrant_url"),
                    api_key=self.get_value("qdrant_api_key"),
                    collection_name=self.get_value("qdrant_collection"),
                    timeout=self.get_value("qdrant_timeout"),
                    score_threshold=self.get_value("vector_score_threshold"),
                    snippet_length=self.get_value("vector_snippet_length"),
                ),
                provisioning=ProvisioningConfig(
                    enabled=self.get_value("provisioning_enabled"),
                    image=self.get_value("provisioning_image"),
                    container_name=self.get_value("provisioning_container_name"),
                    host=self.get_value("provisioning_host"),
                    port=self.get_value("provisioning_port"),
                    health_timeout=self.get_value("provisioning_health_timeout"),
                ),
                search=SearchSettings(
                    backend=self.get_value("search_backend"),
                    default_k=self.get_value("search_default_k"),
                    max_k=self.get_value("search_max_k"),
                ),
                watcher=WatcherConfig(
                    extensions=extensions,
                    debounce_ms=self.get_value("watch_debounce_ms"),
                ),
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid manuscript search configuration: {e}") from e


# Global instance
_config_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get the global config loader instance."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


def load_config(project_root: Optional[Path] = None) -> SearchConfig:
    """
    Load configuration and return the validated tree.

    Call this early in startup so file values are available to all components.

    Args:
        project_root: Projects root directory (optional)

    Returns:
        SearchConfig built from env, config file and defaults
    """
    loader = get_config_loader()
    loader.load(project_root)
    return loader.build_search_config()


def reset_config_loader() -> None:
    """Reset the global config loader (for testing only)."""
    global _config_loader
    _config_loader = None
