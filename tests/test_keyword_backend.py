"""
Tests for the in-memory keyword backend.
"""

import pytest

from conftest import WordTokenizer
from manuscript_search.models import FileCategory
from manuscript_search.search_exceptions import NotInitializedError
from manuscript_search.services.chunker import ChunkingEngine
from manuscript_search.services.keyword_backend import KeywordBackend
from manuscript_search.services.tokenizer import NltkTokenizer


def add_file(backend, reader, project_id, name, text, category=FileCategory.CONTENT, max_tokens=400):
    path = f"{project_id}/{name}"
    reader.files[path] = text
    chunks = ChunkingEngine().chunk(text, path, max_tokens, 0.0,
                                    project_id=project_id, category=category)
    backend.add(chunks)
    return chunks


@pytest.fixture
def backend(tokenizer, file_reader):
    backend = KeywordBackend(tokenizer, file_reader)
    backend.initialize()
    return backend


class TestKeywordBackendLifecycle:

    def test_calls_before_initialize_fail(self, tokenizer, file_reader):
        backend = KeywordBackend(tokenizer, file_reader)
        assert not backend.is_ready()
        with pytest.raises(NotInitializedError):
            backend.add([])
        with pytest.raises(NotInitializedError):
            backend.search("keeper", 5, "alpha")
        with pytest.raises(NotInitializedError):
            backend.remove_file("alpha/a.md", "alpha")

    def test_initialize_is_idempotent(self, backend):
        backend.initialize()
        assert backend.is_ready()

    def test_dispose_clears_index(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "keeper of the light\n")
        backend.dispose()
        assert not backend.is_ready()
        backend.initialize()
        assert backend.search("keeper", 5, "alpha") == []


class TestKeywordSearch:
    """Test KeywordBackend.search."""

    def test_finds_matching_chunk(self, backend, file_reader):
        chunks = add_file(backend, file_reader, "alpha", "a.md",
                          "# Storm\n\nThe keeper watched the storm rise.\n")

        results = backend.search("storm", 5, "alpha")

        assert len(results) == 1
        result = results[0]
        assert result.id == chunks[0].id
        assert result.backend == "keyword"
        assert result.path == "alpha/a.md"
        assert result.payload["start_line"] == 1
        assert result.payload["end_line"] == 3
        assert result.payload["title"] == "Storm"
        assert result.payload["matched_tokens"] == 2
        assert result.score == pytest.approx(0.2)
        assert "keeper watched" in result.snippet

    def test_score_saturates_at_one(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", " ".join(["storm"] * 15) + "\n")
        result = backend.search("storm", 5, "alpha")[0]
        assert result.score == 1.0

    def test_matches_by_lemma(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "one keeper alone\n")
        results = backend.search("keepers", 5, "alpha")
        assert len(results) == 1

    def test_matching_is_case_insensitive(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "The Lighthouse stood\n")
        assert len(backend.search("lighthouse", 5, "alpha")) == 1

    def test_results_ranked_by_match_count(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm once\n")
        add_file(backend, file_reader, "alpha", "b.md", "storm storm storm\n")

        results = backend.search("storm", 5, "alpha")

        assert [r.path for r in results] == ["alpha/b.md", "alpha/a.md"]

    def test_result_count_capped_at_k(self, backend, file_reader):
        for i in range(5):
            add_file(backend, file_reader, "alpha", f"f{i}.md", "storm\n")
        assert len(backend.search("storm", 3, "alpha")) == 3
        assert backend.search("storm", 0, "alpha") == []

    def test_category_filter(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "ch.md", "storm in the book\n")
        add_file(backend, file_reader, "alpha", "notes.md", "storm in the notes\n",
                 category=FileCategory.SETTINGS)

        results = backend.search("storm", 5, "alpha", category=FileCategory.SETTINGS)

        assert [r.path for r in results] == ["alpha/notes.md"]
        assert results[0].payload["category"] == "settings"

    def test_short_tokens_are_not_indexed(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "a storm\n")
        assert backend.search("a", 5, "alpha") == []

    def test_punctuation_query_falls_back_to_substring(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "wait??? what\n")

        results = backend.search("???", 5, "alpha")

        assert len(results) == 1
        assert results[0].path == "alpha/a.md"

    def test_fallback_without_substring_match_is_empty(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "plain words\n")
        assert backend.search("!!!", 5, "alpha") == []

    def test_unreadable_file_gives_empty_snippet(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm\n")
        del file_reader.files["alpha/a.md"]

        results = backend.search("storm", 5, "alpha")

        assert len(results) == 1
        assert results[0].snippet == ""

    def test_snippet_reads_current_file_content(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm rising\n")
        file_reader.files["alpha/a.md"] = "storm fading\n"
        assert backend.search("storm", 5, "alpha")[0].snippet == "storm fading"


class TestKeywordMutation:
    """Test add/remove and tenant isolation."""

    def test_tokenizer_failure_skips_only_that_chunk(self, file_reader):
        backend = KeywordBackend(WordTokenizer(fail_on="BROKEN"), file_reader)
        backend.initialize()
        chunks = ChunkingEngine().chunk("# A\n\nstorm BROKEN\n\n# B\n\nstorm ok\n",
                                        "alpha/a.md", 400, 0.0, project_id="alpha")

        assert backend.add(chunks) == 1
        file_reader.files["alpha/a.md"] = "irrelevant\n"
        assert [r.id for r in backend.search("storm", 5, "alpha")] == [chunks[1].id]

    def test_remove_file(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm\n")
        add_file(backend, file_reader, "alpha", "b.md", "storm\n")

        backend.remove_file("alpha/a.md", "alpha")

        assert [r.path for r in backend.search("storm", 5, "alpha")] == ["alpha/b.md"]

    def test_remove_unknown_file_is_noop(self, backend):
        backend.remove_file("alpha/never.md", "alpha")
        assert backend.get_stats()["chunks"] == 0

    def test_remove_then_add_has_no_duplicates(self, backend, file_reader):
        for _ in range(2):
            backend.remove_file("alpha/a.md", "alpha")
            add_file(backend, file_reader, "alpha", "a.md", "storm\n")

        assert len(backend.search("storm", 5, "alpha")) == 1
        assert backend.get_stats()["chunks"] == 1

    def test_readding_same_chunk_replaces_it(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm\n")
        add_file(backend, file_reader, "alpha", "a.md", "storm\n")
        assert backend.get_stats()["tokens"] == 1

    def test_query_never_returns_other_project(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm over alpha\n")
        add_file(backend, file_reader, "beta", "a.md", "storm over beta\n")

        alpha = backend.search("storm", 10, "alpha")
        beta = backend.search("storm", 10, "beta")

        assert [r.path for r in alpha] == ["alpha/a.md"]
        assert [r.path for r in beta] == ["beta/a.md"]

    def test_remove_project_keeps_other_projects(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm\n")
        add_file(backend, file_reader, "beta", "a.md", "storm\n")

        backend.remove_project("beta")

        assert len(backend.search("storm", 10, "alpha")) == 1
        assert backend.search("storm", 10, "beta") == []

    def test_stats(self, backend, file_reader):
        add_file(backend, file_reader, "alpha", "a.md", "storm keeper\n")
        stats = backend.get_stats()
        assert stats["backend"] == "keyword"
        assert stats["chunks"] == 1
        assert stats["tokens"] == 2
        assert stats["files"] == 1


class TestNltkTokenizer:
    """The default tokenizer needs no downloaded NLTK data."""

    def test_analyze(self):
        tokens = NltkTokenizer().analyze("Keepers watched 42 storms!")

        surfaces = [t.surface for t in tokens]
        assert surfaces == ["Keepers", "watched", "42", "storms", "!"]
        assert tokens[0].offset == 0
        assert tokens[1].offset == len("Keepers ")
        assert tokens[2].pos == "NUM"
        assert tokens[4].pos == "PUNCT"
        assert tokens[3].lemma == "storm"

    def test_backend_with_nltk_tokenizer(self, file_reader):
        backend = KeywordBackend(NltkTokenizer(), file_reader)
        backend.initialize()
        add_file(backend, file_reader, "alpha", "a.md", "The keepers watched the storms.\n")

        results = backend.search("storm", 5, "alpha")

        assert len(results) == 1
        assert results[0].payload["matched_tokens"] == 1
