"""Tests for link extraction and the link index."""
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from typenote_mcp.exceptions import ErrorCode, StorageError
from typenote_mcp.models.schema import ExternalLinkType
from typenote_mcp.storage.link_extractor import LinkExtractor


class TestExtractLinks:
    """Tests for extracting links from note bodies."""

    def setup_method(self):
        self.extractor = LinkExtractor(session_factory=None)

    def test_wikilinks_with_line_numbers(self):
        result = self.extractor.extract_links("intro\n[[Alpha]] and [[ideas/b|Bee]]")

        assert [(w.target_title, w.link_text, w.line_number) for w in result.wikilinks] == [
            ("Alpha", None, 2),
            ("ideas/b", "Bee", 2),
        ]

    def test_external_links(self):
        content = (
            "Line one [[Alpha]]\n"
            "![diagram](https://example.com/img.png) and "
            "[site](https://example.com \"Home\")\n"
            "Visit https://example.org/page. Again https://example.com"
        )
        result = self.extractor.extract_links(content)

        links = [(l.url, l.title, l.line_number, l.link_type) for l in result.external_links]
        assert links == [
            ("https://example.com/img.png", "diagram", 2, ExternalLinkType.IMAGE),
            ("https://example.com", "site", 2, ExternalLinkType.URL),
            ("https://example.org/page", None, 3, ExternalLinkType.URL),
        ]

    def test_non_http_destinations_ignored(self):
        result = self.extractor.extract_links(
            "[doc](./local.md) [mail](mailto:a@b.c) ftp://files.example.com"
        )
        assert result.external_links == []

    def test_angle_bracket_destination(self):
        result = self.extractor.extract_links("[x](<https://example.com/a b>)")
        assert result.external_links[0].url == "https://example.com/a b"


class TestLinkIndex:
    """Tests for resolving and querying stored links."""

    def test_backlinks_and_broken_links(self, note_service):
        note_service.create_note("Alpha", "Alpha body")
        note_service.create_note("Beta", "See [[Alpha]] and [[Missing Note]]")
        extractor = note_service.link_extractor

        backlinks = extractor.get_backlinks("general/alpha")
        assert len(backlinks) == 1
        assert backlinks[0].source_note_id == "general/beta"
        assert backlinks[0].source_title == "Beta"

        broken = extractor.find_broken_links()
        assert [b.target_title for b in broken] == ["Missing Note"]

    def test_creating_target_repairs_broken_link(self, note_service):
        note_service.create_note("Beta", "Waiting for [[Missing Note]]")
        note_service.create_note("Missing Note", "Here now")

        extractor = note_service.link_extractor
        assert extractor.find_broken_links() == []
        backlinks = extractor.get_backlinks("general/missing-note")
        assert [b.source_note_id for b in backlinks] == ["general/beta"]

    def test_broken_link_by_filename_repaired(self, note_service):
        note_service.create_note("Source", "Points at [[ideas/spark]]")
        note_service.create_note("A Spark", "", note_type="ideas")
        # Title differs, so only the identifier matched the new note
        assert note_service.link_extractor.find_broken_links() != []

        note_service.create_note("Spark", "", note_type="ideas")
        broken = note_service.link_extractor.find_broken_links()
        assert broken == []

    @pytest.mark.parametrize(
        "link", ["[[alpha]]", "[[general/alpha]]", "[[general/alpha.md|A]]", "[[ALPHA]]"]
    )
    def test_resolution_forms(self, note_service, link):
        note_service.create_note("Alpha", "")
        note_service.create_note("Linker", f"Link: {link}")
        backlinks = note_service.link_extractor.get_backlinks("general/alpha")
        assert [b.source_note_id for b in backlinks] == ["general/linker"]

    def test_deleting_target_breaks_links(self, note_service):
        note_service.create_note("Alpha", "")
        note_service.create_note("Beta", "[[Alpha]]")

        note_service.delete_note("general/alpha")

        broken = note_service.link_extractor.find_broken_links()
        assert [(b.source_note_id, b.target_title) for b in broken] == [
            ("general/beta", "Alpha")
        ]

    def test_update_replaces_link_rows(self, note_service):
        note_service.create_note("Alpha", "")
        note_service.create_note("Beta", "[[Alpha]] https://example.com")

        note_service.update_note("general/beta", "no links any more")

        view = note_service.get_note_links("general/beta")
        assert view.outgoing_internal == []
        assert view.outgoing_external == []
        assert note_service.link_extractor.get_backlinks("general/alpha") == []

    def test_note_links_view(self, note_service):
        note_service.create_note("Alpha", "Back to [[Beta]]")
        note_service.create_note("Beta", "Line\n[[Alpha]]\nhttps://example.com/x")

        view = note_service.get_note_links("beta")

        assert [(l.target_title, l.target_note_id, l.line_number)
                for l in view.outgoing_internal] == [("Alpha", "general/alpha", 2)]
        assert [(l.url, l.line_number) for l in view.outgoing_external] == [
            ("https://example.com/x", 3)
        ]
        assert [l.source_note_id for l in view.incoming] == ["general/alpha"]

    def test_migrate_links_reports_counts(self, note_service):
        note_service.create_note("Alpha", "[[Beta]] https://example.com")
        note_service.create_note("Beta", "[[Alpha]]")

        report = note_service.migrate_links()

        assert report.processed == 2
        assert report.wikilinks == 2
        assert report.external_links == 1
        assert report.errors == {}


class TestExternalLinkDedup:
    def test_markdown_link_and_bare_url_on_same_line(self):
        extractor = LinkExtractor(session_factory=None)
        result = extractor.extract_links(
            "[docs](https://example.com/docs) also https://example.com/docs"
        )
        assert [(l.url, l.title) for l in result.external_links] == [
            ("https://example.com/docs", "docs")
        ]


class TestStoreLinksTransaction:
    def test_failed_insert_keeps_previous_rows(self, note_service):
        note_service.create_note("Alpha", "")
        note_service.create_note("Gamma", "")
        note_service.create_note("Beta", "[[Alpha]] https://example.com")
        extractor = note_service.link_extractor

        original_add = Session.add
        added = []

        def failing_add(self, instance, *args, **kwargs):
            added.append(instance)
            if len(added) == 2:
                raise SQLAlchemyError("disk I/O error")
            return original_add(self, instance, *args, **kwargs)

        with patch.object(Session, "add", failing_add):
            with pytest.raises(StorageError) as exc_info:
                extractor.store_links(
                    "general/beta",
                    extractor.extract_links("[[Alpha]] [[Gamma]] https://example.org"),
                )
        assert exc_info.value.code == ErrorCode.STORAGE_WRITE_FAILED

        view = extractor.get_links_for_note("general/beta")
        assert [l.target_title for l in view.outgoing_internal] == ["Alpha"]
        assert [l.url for l in view.outgoing_external] == ["https://example.com"]
        assert extractor.get_backlinks("general/gamma") == []
