"""
Shared pytest fixtures for manuscript search tests.

Provides a deterministic tokenizer, an in-memory file reader, the
lightweight embedding service, an in-process Qdrant store, a fake
provisioning runtime and a temporary projects tree.
"""

import json
import os

# Keep the trace log out of the working tree while tests run
os.environ.setdefault("MANUSCRIPT_SEARCH_DEBUG_LOG", "")

import pytest

from manuscript_search.services.config_loader import reset_config_loader
from manuscript_search.services.embedding_service import (
    LightweightEmbeddingService,
    reset_embedding_service_singleton,
)
from manuscript_search.services.provisioning import ManagedInstanceInfo
from manuscript_search.services.tokenizer import POS_NOUN, POS_PUNCT, AnalyzedToken


class WordTokenizer:
    """
    Whitespace tokenizer with a trivial lemma (lowercase, trailing 's' dropped).

    Trailing ".,;:" is stripped from each piece. Pieces without any
    alphanumeric character are tagged as punctuation.
    """

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = 0

    def analyze(self, text):
        self.calls += 1
        if self.fail_on is not None and self.fail_on in text:
            raise RuntimeError(f"cannot analyze {self.fail_on!r}")
        tokens = []
        offset = 0
        for piece in text.split():
            offset = text.index(piece, offset)
            piece = piece.rstrip(".,;:") or piece
            if any(ch.isalnum() for ch in piece):
                lemma = piece.lower()
                if len(lemma) > 3 and lemma.endswith("s"):
                    lemma = lemma[:-1]
                tokens.append(AnalyzedToken(surface=piece, lemma=lemma, pos=POS_NOUN, offset=offset))
            else:
                tokens.append(AnalyzedToken(surface=piece, lemma=piece, pos=POS_PUNCT, offset=offset))
            offset += len(piece)
        return tokens


class DictFileReader:
    """FileReader over an in-memory dict of relative path -> text."""

    def __init__(self, files=None):
        self.files = dict(files or {})

    def read_text(self, relative_path):
        try:
            return self.files[relative_path]
        except KeyError:
            raise FileNotFoundError(relative_path) from None


class FakeProvisioningRuntime:
    """
    Scriptable ProvisioningRuntime that records every call.

    state: None (no container), "exited" or "running"
    """

    def __init__(self, permission=True, state=None, healthy=True, ensure_error=None):
        self.permission = permission
        self.state = state
        self.healthy = healthy
        self.ensure_error = ensure_error
        self.calls = []

    def check_permission(self):
        self.calls.append("check_permission")
        return self.permission

    def instance_info(self, name):
        self.calls.append("instance_info")
        if self.state is None:
            return None
        return ManagedInstanceInfo(name=name, container_id="c0ffee", state=self.state)

    def ensure_managed_instance(self, spec):
        self.calls.append("ensure_managed_instance")
        if self.ensure_error is not None:
            raise self.ensure_error
        created = self.state is None
        self.state = "running"
        return ManagedInstanceInfo(
            name=spec.name, container_id="c0ffee", state="running", image=spec.image, created=created
        )

    def wait_for_health(self, url, timeout):
        self.calls.append("wait_for_health")
        return self.healthy


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Clear MANUSCRIPT_SEARCH_* settings and module singletons around each test."""
    for name in list(os.environ):
        if name.startswith("MANUSCRIPT_SEARCH_") and name != "MANUSCRIPT_SEARCH_DEBUG_LOG":
            monkeypatch.delenv(name, raising=False)
    reset_config_loader()
    reset_embedding_service_singleton()
    yield
    reset_config_loader()
    reset_embedding_service_singleton()


@pytest.fixture
def tokenizer():
    return WordTokenizer()


@pytest.fixture
def file_reader():
    return DictFileReader()


@pytest.fixture
def embedding_service():
    service = LightweightEmbeddingService(embedding_dim=64)
    service.initialize()
    return service


@pytest.fixture
def memory_store():
    """
    In-process Qdrant store.

    Yields:
        QdrantVectorStore: Connected store using qdrant-client local mode.
    """
    pytest.importorskip("qdrant_client")
    from manuscript_search.services.vector_store import QdrantVectorStore

    store = QdrantVectorStore(location=":memory:")
    store.connect()
    yield store
    store.disconnect()


@pytest.fixture
def fake_runtime():
    return FakeProvisioningRuntime()


def write_file(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def projects_root(tmp_path):
    """
    Temporary projects tree.

    alpha: project.json with manuscript/ as content and settings/ as settings
    beta:  no project.json, whole directory is content
    """
    root = tmp_path / "projects"
    alpha = root / "alpha"
    write_file(alpha / "project.json", json.dumps({
        "content_directories": ["manuscript"],
        "settings_directories": ["settings"],
    }))
    write_file(alpha / "manuscript" / "chapter1.md",
               "# Arrival\n\nThe lighthouse keeper watched the storm.\n\n"
               "# Departure\n\nMorning came and the ship left the harbor.\n")
    write_file(alpha / "manuscript" / "chapter2.txt",
               "The keeper wrote letters to his sister every week.\n")
    write_file(alpha / "settings" / "characters.md",
               "# Keeper\n\nA quiet man who keeps the lighthouse.\n")
    write_file(alpha / "notes" / "ignored.md", "lighthouse outside configured directories\n")
    write_file(alpha / "manuscript" / ".draft" / "hidden.md", "lighthouse hidden draft\n")
    write_file(alpha / "manuscript" / "cover.png", "not text")

    beta = root / "beta"
    write_file(beta / "story.md", "# Desert\n\nThe caravan crossed the lighthouse of sand.\n")
    return root
