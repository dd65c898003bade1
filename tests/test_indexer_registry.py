"""
Tests for the indexer registry.

Tests cover:
- Lazy, single-flight creation and eviction
- Query routing, k clamping and input validation
- Backend selection from configuration and bootstrap outcome
- File-change routing and live file watching
- Best-effort, idempotent cleanup
"""

import threading
import time

import pytest

from conftest import FakeProvisioningRuntime, write_file
from manuscript_search.models import BootstrapMode, FileChangeEvent, FileEventType
from manuscript_search.search_exceptions import (
    BackendUnavailableError,
    InvalidInputError,
    SemanticSearchUnavailableError,
)
from manuscript_search.services.config_loader import (
    ProvisioningConfig,
    SearchConfig,
    SearchSettings,
    VectorStoreConfig,
    WatcherConfig,
)
from manuscript_search.services.file_watcher import FileChangeWatcher
from manuscript_search.services.indexer_registry import IndexerRegistry
from manuscript_search.services.keyword_backend import KeywordBackend
from manuscript_search.services.vector_store_bootstrap import VectorStoreBootstrap


def wait_until(predicate, timeout=5.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def config(projects_root):
    return SearchConfig(
        projects_root=projects_root,
        watcher=WatcherConfig(debounce_ms=50),
    )


@pytest.fixture
def registry(config, tokenizer):
    registry = IndexerRegistry(config, tokenizer=tokenizer)
    yield registry
    registry.cleanup()


class TestIndexerTable:

    def test_indexer_created_lazily(self, registry):
        assert registry.loaded_projects() == []

        indexer = registry.get_or_create("alpha")

        assert indexer.is_ready()
        assert indexer.last_summary.files_indexed == 3
        assert registry.loaded_projects() == ["alpha"]
        assert registry.get_or_create("alpha") is indexer

    def test_index_on_create_disabled(self, projects_root, tokenizer):
        config = SearchConfig(projects_root=projects_root, index_on_create=False)
        registry = IndexerRegistry(config, tokenizer=tokenizer)

        indexer = registry.get_or_create("alpha")

        assert indexer.is_ready()
        assert indexer.last_summary is None
        registry.cleanup()

    def test_concurrent_first_access_builds_once(self, registry, monkeypatch):
        builds = []
        original = registry._build_indexer

        def slow_build(project_id):
            builds.append(project_id)
            time.sleep(0.2)
            return original(project_id)

        monkeypatch.setattr(registry, "_build_indexer", slow_build)
        results = []

        def worker():
            results.append(registry.get_or_create("alpha"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert builds == ["alpha"]
        assert len(results) == 8
        assert all(indexer is results[0] for indexer in results)

    def test_failed_creation_is_not_cached(self, registry):
        with pytest.raises(InvalidInputError):
            registry.get_or_create("gamma")
        with pytest.raises(InvalidInputError):
            registry.get_or_create("gamma")
        assert registry.loaded_projects() == []

    def test_invalid_project_id(self, registry):
        with pytest.raises(InvalidInputError):
            registry.get_or_create("../alpha")

    def test_remove_indexer(self, registry):
        indexer = registry.get_or_create("alpha")

        assert registry.remove_indexer("alpha")

        assert not indexer.is_ready()
        assert registry.get_indexer("alpha") is None
        assert not registry.remove_indexer("alpha")

    def test_list_projects(self, registry, projects_root):
        (projects_root / ".cache").mkdir()
        assert registry.list_projects() == ["alpha", "beta"]


class TestRegistryOperations:

    def test_search(self, registry):
        results = registry.search("alpha", "harbor")
        assert [r.path for r in results] == ["alpha/manuscript/chapter1.md"]

    def test_search_is_scoped_to_project(self, registry):
        assert {r.path for r in registry.search("beta", "lighthouse")} == {"beta/story.md"}
        assert all(r.path.startswith("alpha/") for r in registry.search("alpha", "lighthouse"))

    def test_empty_query(self, registry):
        with pytest.raises(InvalidInputError):
            registry.search("alpha", "  ")

    def test_k_is_clamped(self, projects_root, tokenizer):
        config = SearchConfig(projects_root=projects_root,
                              search=SearchSettings(default_k=10, max_k=1))
        registry = IndexerRegistry(config, tokenizer=tokenizer)

        assert len(registry.search("alpha", "lighthouse", k=100)) == 1
        assert len(registry.search("alpha", "lighthouse", k=0)) == 1
        registry.cleanup()

    def test_process_file_and_remove_file(self, registry, projects_root):
        path = write_file(projects_root / "alpha" / "manuscript" / "chapter3.md",
                          "The albatross returned.\n")

        assert registry.process_file(path, "alpha") == 1
        assert len(registry.search("alpha", "albatross")) == 1

        registry.remove_file(path, "alpha")
        assert registry.search("alpha", "albatross") == []

    def test_remove_file_of_unloaded_project_is_noop(self, registry, projects_root):
        registry.remove_file(projects_root / "beta" / "story.md", "beta")
        assert registry.loaded_projects() == []

    def test_index_all_returns_creation_summary(self, registry):
        summary = registry.index_all("alpha")
        assert summary.files_indexed == 3
        assert registry.get_indexer("alpha").last_summary is summary

    def test_rebuild_index_picks_up_unwatched_edits(self, registry, projects_root):
        registry.get_or_create("alpha")
        (projects_root / "alpha" / "manuscript" / "chapter2.txt").write_text(
            "The keeper sailed to the albatross islands.\n", encoding="utf-8")
        assert registry.search("alpha", "albatross") == []

        summary = registry.rebuild_index("alpha")

        assert summary.files_indexed == 3
        assert len(registry.search("alpha", "albatross")) == 1
        assert registry.search("alpha", "sister") == []

    def test_semantic_search_disabled_for_keyword_backend(self, registry):
        with pytest.raises(SemanticSearchUnavailableError) as exc_info:
            registry.semantic_search("alpha", "storm")
        assert "keyword" in exc_info.value.suggestion.lower()


class TestBackendSelection:

    def test_keyword_backend_by_default(self, registry):
        assert registry.initialize_backend() is None
        assert isinstance(registry.get_or_create("alpha").backend, KeywordBackend)

    def test_degraded_vector_backend_falls_back_to_keyword(self, projects_root, tokenizer):
        config = SearchConfig(
            projects_root=projects_root,
            search=SearchSettings(backend="vector"),
            provisioning=ProvisioningConfig(enabled=False),
        )
        runtime = FakeProvisioningRuntime()
        bootstrap = VectorStoreBootstrap(config.vector_store, config.provisioning, runtime=runtime)
        registry = IndexerRegistry(config, tokenizer=tokenizer, bootstrap=bootstrap)

        result = registry.initialize_backend()

        assert result.mode == BootstrapMode.DEGRADED
        assert isinstance(registry.get_or_create("alpha").backend, KeywordBackend)
        assert len(registry.search("alpha", "harbor")) == 1
        with pytest.raises(BackendUnavailableError) as exc_info:
            registry.semantic_search("alpha", "harbor")
        assert isinstance(exc_info.value, SemanticSearchUnavailableError)
        status = registry.get_status()
        assert status["semantic_search"] is False
        assert "Keyword search still works" in status["message"]
        registry.cleanup()

    def test_vector_backend_when_store_available(self, projects_root, tokenizer, embedding_service):
        pytest.importorskip("qdrant_client")
        from manuscript_search.services.vector_backend import VectorBackend
        from manuscript_search.services.vector_store import QdrantVectorStore

        config = SearchConfig(
            projects_root=projects_root,
            search=SearchSettings(backend="vector"),
            vector_store=VectorStoreConfig(url="http://qdrant.test:6333", score_threshold=0.9),
        )
        bootstrap = VectorStoreBootstrap(
            config.vector_store,
            config.provisioning,
            runtime=FakeProvisioningRuntime(),
            store_factory=lambda url: QdrantVectorStore(location=":memory:"),
        )
        registry = IndexerRegistry(config, tokenizer=tokenizer,
                                   embedding_service=embedding_service, bootstrap=bootstrap)

        indexer = registry.get_or_create("alpha")
        assert isinstance(indexer.backend, VectorBackend)
        assert registry.get_status()["vector_store"]["mode"] == "explicit"

        chunk = indexer.process_file(projects_root / "alpha" / "settings" / "characters.md")[0]
        results = registry.semantic_search("alpha", chunk.composite_text)

        assert [r.id for r in results] == [chunk.id]
        assert results[0].backend == "vector"
        registry.cleanup()


class TestFileChanges:

    def test_add_event_indexes_new_file(self, registry, projects_root):
        registry.get_or_create("alpha")
        path = write_file(projects_root / "alpha" / "settings" / "ships.md", "The albatross schooner.\n")

        registry.handle_file_change(FileChangeEvent(FileEventType.ADD, str(path), "alpha"))

        results = registry.search("alpha", "albatross")
        assert len(results) == 1
        assert results[0].payload["category"] == "settings"

    def test_unlink_event_removes_file(self, registry, projects_root):
        registry.get_or_create("alpha")
        path = projects_root / "alpha" / "manuscript" / "chapter1.md"
        path.unlink()

        registry.handle_file_change(FileChangeEvent(FileEventType.UNLINK, str(path), "alpha"))

        assert registry.search("alpha", "harbor") == []

    def test_event_for_unloaded_project_is_ignored(self, registry, projects_root):
        path = projects_root / "beta" / "story.md"
        registry.handle_file_change(FileChangeEvent(FileEventType.CHANGE, str(path), "beta"))
        assert registry.loaded_projects() == []

    def test_file_outside_configured_directories_is_ignored(self, registry, projects_root):
        registry.get_or_create("alpha")
        path = write_file(projects_root / "alpha" / "notes" / "more.md", "albatross\n")

        registry.handle_file_change(FileChangeEvent(FileEventType.ADD, str(path), "alpha"))

        assert registry.search("alpha", "albatross") == []

    def test_failing_event_is_logged_not_raised(self, registry, projects_root):
        registry.get_or_create("alpha")
        path = projects_root / "alpha" / "manuscript" / "vanished.md"
        registry.handle_file_change(FileChangeEvent(FileEventType.CHANGE, str(path), "alpha"))

    def test_watching_reindexes_changed_files(self, registry, projects_root):
        registry.get_or_create("alpha")
        registry.start_file_watching()
        assert registry.is_file_watching()

        write_file(projects_root / "alpha" / "manuscript" / "chapter4.md", "An albatross circled.\n")

        assert wait_until(lambda: len(registry.search("alpha", "albatross")) == 1)

        registry.stop_file_watching()
        assert not registry.is_file_watching()


class TestUnresolvedProjectsRoot:
    """Watcher events carry resolved paths; the registry must match them."""

    def _apply_watcher_add(self, registry, watcher_root, path):
        watcher = FileChangeWatcher(watcher_root, debounce_seconds=0.01)
        watcher.start()
        try:
            watcher.notify(FileEventType.ADD, path)
            event = watcher.events.get(timeout=2.0)
        finally:
            watcher.stop()
        registry.handle_file_change(event)
        return event

    def test_relative_root(self, projects_root, tokenizer, monkeypatch):
        monkeypatch.chdir(projects_root.parent)
        registry = IndexerRegistry(SearchConfig(projects_root=projects_root.name), tokenizer=tokenizer)
        try:
            registry.get_or_create("beta")
            write_file(projects_root / "beta" / "zebrafish.md", "A zebrafish in the tide pool.\n")

            event = self._apply_watcher_add(registry, projects_root.name, "projects/beta/zebrafish.md")

            assert event.project_id == "beta"
            results = registry.search("beta", "zebrafish")
            assert len(results) == 1
            assert results[0].payload["path"] == "beta/zebrafish.md"
        finally:
            registry.cleanup()

    def test_symlinked_root(self, projects_root, tokenizer, tmp_path):
        link = tmp_path / "linked-projects"
        link.symlink_to(projects_root, target_is_directory=True)
        registry = IndexerRegistry(SearchConfig(projects_root=link), tokenizer=tokenizer)
        try:
            registry.get_or_create("beta")
            write_file(projects_root / "beta" / "heron.md", "A heron on the jetty.\n")

            self._apply_watcher_add(registry, link, link / "beta" / "heron.md")

            assert len(registry.search("beta", "heron")) == 1
        finally:
            registry.cleanup()


class TestCleanup:

    def test_cleanup_is_best_effort(self, registry, monkeypatch):
        alpha = registry.get_or_create("alpha")
        beta = registry.get_or_create("beta")

        def broken_cleanup():
            raise RuntimeError("cannot release")

        monkeypatch.setattr(alpha, "cleanup", broken_cleanup)

        registry.cleanup()

        assert not beta.is_ready()
        assert registry.loaded_projects() == []

    def test_cleanup_is_idempotent(self, registry):
        registry.get_or_create("alpha")
        registry.start_file_watching()

        registry.cleanup()
        registry.cleanup()

        assert registry.loaded_projects() == []
        assert not registry.is_file_watching()
