# tests/test_search_service.py
"""Tests for the SearchService class."""
import datetime
import json
import re

import pytest

from typenote_mcp.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    SearchError,
    ValidationError,
)
from typenote_mcp.models.schema import NoteMetadata
from typenote_mcp.services.search_service import (
    MetadataFilter,
    SearchService,
    SortRule,
    parse_date_filter,
)
from typenote_mcp.storage.search_index import INDEX_FORMAT_VERSION, SearchIndex


@pytest.fixture
def python_notes(note_service):
    tips = note_service.create_note(
        "Python Tips", "python is great. Python again.", tags=["python"]
    )
    cooking = note_service.create_note("Cooking", "no snakes, but python once")
    other = note_service.create_note("Gardening", "tomatoes", note_type="hobbies")
    return tips, cooking, other


class TestSearchNotes:
    """Tests for text and regex search."""

    def test_weighted_scores(self, search_service, python_notes):
        results = search_service.search_notes("python")

        assert [(r.id, r.score) for r in results] == [
            ("general/python-tips", 23),
            ("general/cooking", 5),
        ]

    def test_scores_sum_over_terms(self, search_service, python_notes):
        results = search_service.search_notes("python great")
        assert results[0].id == "general/python-tips"
        assert results[0].score == 28

    def test_case_insensitive(self, search_service, python_notes):
        assert [r.id for r in search_service.search_notes("PYTHON")] == [
            "general/python-tips",
            "general/cooking",
        ]

    def test_regex_search(self, search_service, python_notes):
        results = search_service.search_notes(r"pyth(on)?", use_regex=True)
        assert [(r.id, r.score) for r in results] == [
            ("general/python-tips", 23),
            ("general/cooking", 5),
        ]

    def test_literal_mode_escapes_metacharacters(self, search_service, note_service):
        note_service.create_note("Costs", "price is $5.00 (approx)")
        assert search_service.search_notes("$5.00")[0].id == "general/costs"
        assert search_service.search_notes("(approx)")[0].id == "general/costs"

    def test_invalid_regex(self, search_service, python_notes):
        with pytest.raises(ValidationError) as exc_info:
            search_service.search_notes("[unclosed", use_regex=True)
        assert exc_info.value.code == ErrorCode.SEARCH_INVALID_QUERY

    def test_invalid_regex_rejected_before_index_load(self, note_service, python_notes):
        index_path = note_service.search_index.index_path
        index_path.unlink()
        scans = []

        def counting_source():
            scans.append(1)
            return note_service.repository.iter_notes()

        service = SearchService(
            note_service, search_index=SearchIndex(index_path, counting_source)
        )

        with pytest.raises(ValidationError):
            service.search_notes("[unterminated", use_regex=True)
        assert scans == []
        assert not index_path.exists()

    def test_invalid_limit(self, search_service):
        with pytest.raises(ValidationError):
            search_service.search_notes("python", limit=0)

    def test_type_filter(self, search_service, python_notes):
        assert search_service.search_notes("python", type_filter="hobbies") == []
        results = search_service.search_notes("tomatoes", type_filter="hobbies")
        assert [r.id for r in results] == ["hobbies/gardening"]

    def test_limit(self, search_service, python_notes):
        assert len(search_service.search_notes("python", limit=1)) == 1

    def test_empty_query_lists_recent_first(self, search_service, note_service, python_notes):
        tips, _, _ = python_notes
        note_service.update_note(tips.id, "edited last")

        results = search_service.search_notes("")

        assert len(results) == 3
        assert results[0].id == tips.id
        assert all(r.score == 0 for r in results)

    def test_no_matches(self, search_service, python_notes):
        assert search_service.search_notes("haskell") == []

    def test_result_fields(self, search_service, python_notes):
        result = search_service.search_notes("cooking")[0]
        assert result.title == "Cooking"
        assert result.type == "general"
        assert result.filename == "cooking.md"
        assert result.path.endswith("cooking.md")
        assert result.last_updated

    def test_deleted_note_not_found(self, search_service, note_service, python_notes):
        _, cooking, _ = python_notes
        note_service.delete_note(cooking.id)
        assert [r.id for r in search_service.search_notes("python")] == [
            "general/python-tips"
        ]


class TestSnippets:
    """Tests for snippet building."""

    def test_highlight_with_ellipses(self):
        content = "a" * 300 + " needle " + "b" * 300
        snippet = SearchService.build_snippet(
            content, [re.compile("needle", re.IGNORECASE)], length=50
        )
        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "**needle**" in snippet

    def test_no_match_uses_start(self):
        snippet = SearchService.build_snippet("short text", [], length=50)
        assert snippet == "short text"

    def test_no_match_long_content_truncated(self):
        snippet = SearchService.build_snippet("x" * 100, [], length=30)
        assert snippet == "x" * 30 + "..."

    def test_newlines_flattened(self):
        snippet = SearchService.build_snippet(
            "first line\nsecond line", [re.compile("second")], length=100
        )
        assert snippet == "first line **second** line"

    def test_search_results_carry_snippet(self, search_service, python_notes):
        result = search_service.search_notes("snakes")[0]
        assert "**snakes**" in result.snippet


class TestTagSearch:
    """Tests for tag queries."""

    @pytest.fixture
    def tagged(self, note_service):
        note_service.create_note("One", "", tags=["Work", "urgent"])
        note_service.create_note("Two", "", tags=["work"])
        note_service.create_note("Three", "", tags=["home"])

    def test_match_any(self, search_service, tagged):
        ids = {r.id for r in search_service.search_by_tags(["work", "home"])}
        assert ids == {"general/one", "general/two", "general/three"}

    def test_match_all(self, search_service, tagged):
        results = search_service.search_by_tags(["work", "URGENT"], match_all=True)
        assert [r.id for r in results] == ["general/one"]

    def test_empty_tags(self, search_service, tagged):
        assert search_service.search_by_tags([]) == []

    def test_get_all_tags(self, search_service, tagged):
        counts = {(t.tag, t.count) for t in search_service.get_all_tags()}
        assert counts == {("Work", 1), ("work", 1), ("urgent", 1), ("home", 1)}


class TestSimilarNotes:
    """Tests for similarity search."""

    def test_similar_notes(self, search_service, note_service):
        note_service.create_note(
            "Gardening Tomatoes", "tomatoes need sun water soil tomatoes"
        )
        note_service.create_note("Tomato Care", "tomatoes require water sun and good soil")
        note_service.create_note("Tax Returns", "filing taxes deadline april forms")

        similar = search_service.find_similar_notes("general/gardening-tomatoes")

        assert [s.id for s in similar] == ["general/tomato-care"]
        assert 0.1 < similar[0].similarity <= 1.0

    def test_missing_note(self, search_service):
        with pytest.raises(NoteNotFoundError):
            search_service.find_similar_notes("general/missing")


class TestSearchIndex:
    """Tests for the persisted search index."""

    def test_index_file_written(self, note_service, python_notes):
        index_path = note_service.search_index.index_path
        with open(index_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        assert data["version"] == INDEX_FORMAT_VERSION
        assert data["last_updated"]
        assert set(data["notes"]) == {
            "general/python-tips",
            "general/cooking",
            "hobbies/gardening",
        }
        assert data["notes"]["general/python-tips"]["tags"] == ["python"]

    def test_rebuild_picks_up_external_files(self, search_service, note_service):
        type_dir = note_service.repository.vault_dir / "imported"
        type_dir.mkdir()
        (type_dir / "outside.md").write_text(
            "---\ntitle: Outside\n---\nwritten by another tool", encoding="utf-8"
        )

        result = search_service.rebuild_search_index()

        assert result.indexed_notes == 1
        assert result.timestamp
        assert [r.id for r in search_service.search_notes("another tool")] == [
            "imported/outside"
        ]

    def test_missing_index_rebuilt_on_first_use(self, note_service, python_notes):
        index_path = note_service.search_index.index_path
        index_path.unlink()

        fresh = SearchIndex(index_path, note_service.repository.iter_notes)
        assert len(fresh.entries) == 3
        assert index_path.exists()

    def test_corrupted_index_raises_search_error(self, note_service, tmp_path):
        index_path = tmp_path / "index.json"
        index_path.write_text("{not json", encoding="utf-8")
        service = SearchService(
            note_service,
            search_index=SearchIndex(index_path, note_service.repository.iter_notes),
        )

        with pytest.raises(SearchError) as exc_info:
            service.search_notes("anything")
        assert exc_info.value.__cause__.code == ErrorCode.SEARCH_INDEX_CORRUPTED


class TestRanking:
    def test_title_only_beats_body_only(self, search_service, note_service):
        note_service.create_note("Body", "mentions zebra once")
        note_service.create_note("Zebra", "nothing else")

        results = search_service.search_notes("zebra")

        assert [r.id for r in results] == ["general/zebra", "general/body"]
        assert results[0].score > results[1].score


class TestAdvancedSearch:
    """Tests for structured search over the notes table."""

    @pytest.fixture
    def projects(self, note_service):
        note_service.create_note(
            "Alpha",
            "Kickoff meeting for the launch",
            note_type="projects",
            tags=["q3"],
            metadata={"status": "active", "priority": 3},
        )
        note_service.create_note(
            "Beta",
            "Retrospective",
            note_type="projects",
            metadata={"status": "done", "priority": 1},
        )
        note_service.create_note("Gamma", "launch checklist", note_type="projects")
        note_service.create_note("Journal", "launch day", metadata={"status": "active"})

    @staticmethod
    def ids(response):
        return [r.id for r in response.results]

    def test_metadata_equality(self, search_service, projects):
        response = search_service.search_notes_advanced(
            note_type="projects",
            metadata_filters=[MetadataFilter(key="status", value="active")],
        )
        assert self.ids(response) == ["projects/alpha"]
        assert response.total == 1
        assert not response.has_more
        assert response.results[0].tags == ["q3"]

    @pytest.mark.parametrize(
        "metadata_filter,expected",
        [
            (MetadataFilter("priority", 2, ">="), ["projects/alpha"]),
            (MetadataFilter("priority", 3, "<"), ["projects/beta"]),
            (MetadataFilter("status", "active,done", "IN"), ["projects/alpha", "projects/beta"]),
            (MetadataFilter("status", "active", "!="), ["projects/beta"]),
            (MetadataFilter("status", "act%", "like"), ["projects/alpha"]),
        ],
    )
    def test_metadata_operators(self, search_service, projects, metadata_filter, expected):
        response = search_service.search_notes_advanced(
            note_type="projects",
            metadata_filters=[metadata_filter],
            sort=[SortRule("title", "asc")],
        )
        assert self.ids(response) == expected

    def test_content_contains_with_paging(self, search_service, projects):
        response = search_service.search_notes_advanced(
            content_contains="LAUNCH",
            sort=[SortRule("title", "asc")],
            limit=2,
        )
        assert self.ids(response) == ["projects/alpha", "projects/gamma"]
        assert response.total == 3
        assert response.has_more
        assert "**launch**" in response.results[0].snippet

        last_page = search_service.search_notes_advanced(
            content_contains="launch", sort=[SortRule("title", "asc")], limit=2, offset=2
        )
        assert self.ids(last_page) == ["general/journal"]
        assert not last_page.has_more

    def test_date_filters(self, search_service, note_service, projects):
        note_service.repository.save(
            "archive/old",
            NoteMetadata(title="Old", type="archive", created="2020-01-01T00:00:00+00:00"),
            "from long ago",
        )

        old = search_service.search_notes_advanced(created_before="1y")
        assert self.ids(old) == ["archive/old"]

        recent = search_service.search_notes_advanced(
            created_within="7d", sort=[SortRule("title", "asc")]
        )
        assert "archive/old" not in self.ids(recent)
        assert len(recent.results) == 4
        assert search_service.search_notes_advanced(updated_before="1d").total == 0

    def test_default_order_is_recent_first(self, search_service, note_service, projects):
        note_service.update_note("projects/beta", "edited last")
        response = search_service.search_notes_advanced(note_type="projects")
        assert self.ids(response)[0] == "projects/beta"

    def test_yaml_dates_in_metadata(self, search_service, note_service):
        note_service.create_note("Due", "", metadata={"due": datetime.date(2024, 5, 1)})
        response = search_service.search_notes_advanced(
            metadata_filters=[MetadataFilter("due", "2024-06-01", "<")]
        )
        assert self.ids(response) == ["general/due"]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"metadata_filters": [MetadataFilter("status", "x", "~")]},
            {"metadata_filters": [MetadataFilter('bad"key', "x")]},
            {"updated_within": "yesterday"},
            {"sort": [SortRule("content", "asc")]},
            {"sort": [SortRule("title", "sideways")]},
            {"limit": 0},
            {"offset": -1},
        ],
    )
    def test_invalid_arguments(self, search_service, kwargs):
        with pytest.raises(ValidationError):
            search_service.search_notes_advanced(**kwargs)


class TestParseDateFilter:
    def test_units(self):
        now = datetime.datetime.now(datetime.timezone.utc)
        cutoff = datetime.datetime.fromisoformat(parse_date_filter("2w"))
        assert abs((now - cutoff) - datetime.timedelta(days=14)) < datetime.timedelta(minutes=1)

    def test_invalid(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_date_filter("7 days", "updated_within")
        assert exc_info.value.field == "updated_within"
