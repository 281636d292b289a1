"""Reader/writer tests against real .docx files built with python-docx."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

from bulk_editor.collaborators import MemoryCache
from bulk_editor.documents.reader import HyperlinkReader, cache_key, cache_pattern, validate_document
from bulk_editor.documents.types import page_hint
from bulk_editor.documents.writer import HyperlinkWriter, path_lock
from bulk_editor.errors import DocumentAccessError, DocumentFormatError
from bulk_editor.models import TextReplacementRule

pytest.importorskip("docx")


class TestValidateDocument:
    def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentAccessError, match="not found"):
            validate_document(str(tmp_path / "nope.docx"))

    def test_empty_file(self, tmp_path):
        p = tmp_path / "empty.docx"
        p.write_bytes(b"")
        with pytest.raises(DocumentAccessError, match="empty"):
            validate_document(str(p))

    def test_wrong_extension(self, tmp_path):
        p = tmp_path / "notes.txt"
        p.write_text("hello")
        with pytest.raises(DocumentAccessError, match="extension"):
            validate_document(str(p))

    def test_oversized(self, make_docx):
        path = make_docx([{"text": "A", "url": "https://x"}])
        with pytest.raises(DocumentAccessError, match="exceeds"):
            validate_document(path, max_bytes=10)

    def test_lock_file_rejected(self, tmp_path):
        p = tmp_path / "~$report.docx"
        p.write_bytes(b"lock")
        with pytest.raises(DocumentAccessError, match="lock"):
            validate_document(str(p))

    def test_valid_returns_size(self, make_docx):
        path = make_docx([{"text": "A", "url": "https://x"}])
        assert validate_document(path) == os.path.getsize(path)


class TestReader:
    def test_extracts_links_in_order(self, make_docx):
        path = make_docx(
            [
                {"text": "Policy Doc", "url": "https://x/y?id=TSRC-ABC-012345"},
                {"text": ["Split ", "Title"], "url": "https://x/page#section-2"},
                {"text": "Jump", "anchor": "intro"},
            ],
            bookmarks=["intro"],
        )
        doc = HyperlinkReader().read(path)
        links = doc.hyperlinks
        assert [h.element_id for h in links] == ["hl-0", "hl-1", "hl-2"]
        assert (links[0].address, links[0].sub_address, links[0].display_text) == (
            "https://x/y?id=TSRC-ABC-012345",
            "",
            "Policy Doc",
        )
        assert links[0].lookup_id == "TSRC-ABC-012345"
        assert (links[1].address, links[1].sub_address, links[1].display_text) == (
            "https://x/page",
            "section-2",
            "Split Title",
        )
        assert (links[2].address, links[2].sub_address) == ("", "intro")
        assert links[2].is_internal
        assert [h.line_number for h in links] == [1, 2, 3]
        assert doc.bookmarks == frozenset({"intro"})

    def test_page_hint(self):
        assert page_hint(1) == 1
        assert page_hint(50) == 1
        assert page_hint(51) == 2
        assert page_hint(0) == 1

    def test_corrupted_package(self, tmp_path):
        p = tmp_path / "broken.docx"
        p.write_bytes(b"this is not a zip file")
        with pytest.raises(DocumentFormatError):
            HyperlinkReader().read(str(p))

    def test_cache_hit_returns_independent_copy(self, make_docx):
        cache = MemoryCache()
        path = make_docx([{"text": "A", "url": "https://x"}])
        reader = HyperlinkReader(cache=cache)
        first = reader.read(path)
        first.hyperlinks[0].display_text = "mutated"
        second = reader.read(path)
        assert second.from_cache is True
        assert second.hyperlinks[0].display_text == "A"
        assert cache.get(cache_key(path)) is not None

    def test_same_named_files_do_not_share_cache_entries(self, make_docx, tmp_path):
        a = make_docx([{"text": "Alpha", "url": "https://x/a"}], name="report.docx")
        (tmp_path / "d2").mkdir()
        b = str(tmp_path / "d2" / "report.docx")
        shutil.move(make_docx([{"text": "Beta", "url": "https://x/b"}], name="other.docx"), b)
        st = os.stat(a)
        os.utime(b, ns=(st.st_atime_ns, st.st_mtime_ns))

        assert cache_key(a) != cache_key(b)
        reader = HyperlinkReader(cache=MemoryCache())
        assert reader.read(a).hyperlinks[0].display_text == "Alpha"
        second = reader.read(b)
        assert second.from_cache is False
        assert second.hyperlinks[0].display_text == "Beta"

    def test_invalidation_is_scoped_to_one_path(self, make_docx, tmp_path):
        cache = MemoryCache()
        a = make_docx([{"text": "A", "url": "https://x"}], name="report.docx")
        (tmp_path / "d2").mkdir()
        b = str(tmp_path / "d2" / "report.docx")
        shutil.copy2(a, b)
        reader = HyperlinkReader(cache=cache)
        reader.read(a)
        reader.read(b)
        assert cache.invalidate(cache_pattern(a)) == 1
        assert cache.get(cache_key(b)) is not None


class TestWriter:
    def test_round_trip_without_changes(self, make_docx, read_links):
        path = make_docx(
            [
                {"text": "One", "url": "https://x/1#frag"},
                {"text": "Two", "anchor": "intro"},
            ],
            bookmarks=["intro"],
        )
        before = read_links(path)
        records = HyperlinkReader().extract(path)
        result = HyperlinkWriter().write(path, records)
        assert result.saved is False
        assert result.hyperlinks_updated == 0
        assert read_links(path) == before

    def test_updates_text_and_target(self, make_docx, read_links):
        path = make_docx(
            [
                {"text": ["Old ", "Title"], "url": "https://x/TSRC-AB-111111"},
                {"text": "Untouched", "url": "https://x/other"},
            ]
        )
        records = HyperlinkReader().extract(path)
        records[0].display_text = "New Title (111111)"
        records[0].address = "https://docs.example.com/thesource/"
        records[0].sub_address = "docid=doc-1"
        result = HyperlinkWriter().write(path, records)
        assert result.saved is True
        assert result.hyperlinks_updated == 1
        assert read_links(path) == [
            ("https://docs.example.com/thesource/", "docid=doc-1", "New Title (111111)"),
            ("https://x/other", "", "Untouched"),
        ]

    def test_internal_anchor_update(self, make_docx, read_links):
        path = make_docx([{"text": "Jump", "anchor": "old"}], bookmarks=["old", "new"])
        records = HyperlinkReader().extract(path)
        records[0].sub_address = "new"
        HyperlinkWriter().write(path, records)
        assert read_links(path) == [("", "new", "Jump")]

    def test_removes_links_and_replaces_text_in_one_save(self, make_docx, read_links):
        path = make_docx(
            [{"text": "", "url": "https://x/ghost"}, {"text": "Keep", "url": "https://x/keep"}],
            paragraphs=["The cat sat in the catalog."],
        )
        rules = [TextReplacementRule(old_text="cat", new_text="dog", whole_words_only=True)]
        result = HyperlinkWriter().write(path, [], removed_ids=["hl-0"], text_rules=rules)
        assert result.hyperlinks_removed == 1
        assert result.text_replacements == 1
        assert read_links(path) == [("https://x/keep", "", "Keep")]

        import docx

        text = "\n".join(p.text for p in docx.Document(path).paragraphs)
        assert "The dog sat in the catalog." in text

    def test_save_invalidates_cache(self, make_docx):
        cache = MemoryCache()
        path = make_docx([{"text": "A", "url": "https://x"}])
        HyperlinkReader(cache=cache).read(path)
        key = cache_key(path)
        records = HyperlinkReader().extract(path)
        records[0].display_text = "B"
        HyperlinkWriter(cache=cache).write(path, records)
        assert cache.get(key) is None

    def test_path_lock_is_shared_per_path(self, tmp_path):
        a = str(tmp_path / "a.docx")
        assert path_lock(a) is path_lock(str(Path(a)))
        assert path_lock(a) is not path_lock(str(tmp_path / "b.docx"))
