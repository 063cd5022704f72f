"""Tests for propagating title changes to linking notes."""
import os

import pytest

from typenote_mcp.exceptions import NoteNotFoundError, ValidationError
from typenote_mcp.storage.link_extractor import LinkExtractor


class TestRewriteForRename:
    """Tests for the pure rewrite rules."""

    def test_all_rules(self):
        content = (
            "[[Banana]] and [[general/banana|Banana]] and "
            "[[Banana|fruit]] and [[Other]]"
        )
        new_content, changed = LinkExtractor.rewrite_for_rename(
            content, "general/banana", "Banana", "Plantain"
        )
        assert new_content == (
            "[[Plantain]] and [[general/banana|Plantain]] and "
            "[[Plantain|fruit]] and [[Other]]"
        )
        assert changed == 3

    def test_title_link_showing_old_title_becomes_plain(self):
        new_content, changed = LinkExtractor.rewrite_for_rename(
            "see [[Banana|Banana]]", "general/banana", "Banana", "Plantain"
        )
        assert new_content == "see [[Plantain]]"
        assert changed == 1

    def test_identifier_link_with_custom_display_untouched(self):
        content = "[[general/banana|my fruit]]"
        new_content, changed = LinkExtractor.rewrite_for_rename(
            content, "general/banana", "Banana", "Plantain"
        )
        assert new_content == content
        assert changed == 0

    def test_title_match_is_exact(self):
        content = "[[banana]] [[Banana split]]"
        _, changed = LinkExtractor.rewrite_for_rename(
            content, "general/banana", "Banana", "Plantain"
        )
        assert changed == 0


class TestRenameNote:
    """Tests for NoteService.rename_note."""

    def test_rename_updates_linking_notes(self, note_service):
        note_service.create_note("Banana", "Yellow")
        note_service.create_note(
            "Smoothie", "Needs [[Banana]]\nAlso [[general/banana|Banana]]"
        )

        result = note_service.rename_note("general/banana", "Plantain")

        assert result.note_id == "general/banana"
        assert result.old_title == "Banana"
        assert result.new_title == "Plantain"
        assert result.report.notes_updated == 1
        assert result.report.links_updated == 2
        assert result.report.failures == []

        smoothie = note_service.get_note("general/smoothie")
        assert smoothie.content == "Needs [[Plantain]]\nAlso [[general/banana|Plantain]]"
        assert note_service.get_note("general/banana").title == "Plantain"

        backlinks = note_service.link_extractor.get_backlinks("general/banana")
        assert len(backlinks) == 2

    def test_rename_keeps_filename(self, note_service):
        note = note_service.create_note("Banana", "")
        note_service.rename_note(note.id, "Plantain")

        assert os.path.exists(note.path)
        assert not (note_service.repository.vault_dir / "general" / "plantain.md").exists()

    def test_rename_refreshes_search_index(self, note_service, search_service):
        note_service.create_note("Banana", "")
        note_service.create_note("Smoothie", "[[Banana]]")

        note_service.rename_note("general/banana", "Plantain")

        ids = [r.id for r in search_service.search_notes("Plantain")]
        assert set(ids) == {"general/banana", "general/smoothie"}

    def test_rename_resolves_broken_links(self, note_service):
        note_service.create_note("Banana", "")
        note_service.create_note("Wishlist", "Want a [[Plantain]]")

        result = note_service.rename_note("general/banana", "Plantain")

        assert result.broken_links_resolved == 1
        assert result.report.links_updated == 0
        assert note_service.link_extractor.find_broken_links() == []

    def test_failure_in_one_note_does_not_stop_batch(self, note_service):
        note_service.create_note("Banana", "")
        first = note_service.create_note("First", "[[Banana]]")
        note_service.create_note("Second", "[[Banana]]")
        # Remove the file behind the index's back
        os.remove(first.path)

        result = note_service.rename_note("general/banana", "Plantain")

        assert [f.note_id for f in result.report.failures] == ["general/first"]
        assert result.report.notes_updated == 1
        assert note_service.get_note("general/second").content == "[[Plantain]]"

    def test_same_title_is_noop(self, note_service):
        note_service.create_note("Banana", "")
        note_service.create_note("Smoothie", "[[Banana]]")

        result = note_service.rename_note("general/banana", "Banana")

        assert result.report.outcomes == []
        assert note_service.get_note("general/smoothie").content == "[[Banana]]"

    def test_rename_missing_note(self, note_service):
        with pytest.raises(NoteNotFoundError):
            note_service.rename_note("general/nope", "Anything")

    def test_rename_to_empty_title(self, note_service):
        note_service.create_note("Banana", "")
        with pytest.raises(ValidationError):
            note_service.rename_note("general/banana", "   ")
