"""Unit test conftest: real .docx files built in memory, no network."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from bulk_editor.pipeline.types import PipelineOptions

LinkDef = dict[str, Any]


def _add_hyperlink(paragraph, *, text: str | list[str] = "", url: str | None = None, anchor: str | None = None) -> None:
    from docx.opc.constants import RELATIONSHIP_TYPE as RT
    from docx.oxml import OxmlElement
    from docx.oxml.ns import qn

    h = OxmlElement("w:hyperlink")
    if url:
        h.set(qn("r:id"), paragraph.part.relate_to(url, RT.HYPERLINK, is_external=True))
    if anchor:
        h.set(qn("w:anchor"), anchor)
    chunks = [text] if isinstance(text, str) else text
    for chunk in chunks:
        r = OxmlElement("w:r")
        t = OxmlElement("w:t")
        t.text = chunk
        t.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")
        r.append(t)
        h.append(r)
    paragraph._p.append(h)


def _add_bookmark(paragraph, name: str, bookmark_id: int) -> None:
    from docx.oxml import OxmlElement
    from docx.oxml.ns import qn

    start = OxmlElement("w:bookmarkStart")
    start.set(qn("w:id"), str(bookmark_id))
    start.set(qn("w:name"), name)
    end = OxmlElement("w:bookmarkEnd")
    end.set(qn("w:id"), str(bookmark_id))
    paragraph._p.append(start)
    paragraph._p.append(end)


@pytest.fixture
def make_docx(tmp_path: Path) -> Callable[..., str]:
    """Factory: write a .docx with one paragraph per hyperlink definition.

    A definition is ``{"text": str | list[str], "url": str, "anchor": str}``.
    """
    docx = pytest.importorskip("docx")

    def _make(
        links: list[LinkDef],
        *,
        paragraphs: list[str] = (),  # type: ignore[assignment]
        bookmarks: list[str] = (),  # type: ignore[assignment]
        name: str = "sample.docx",
    ) -> str:
        doc = docx.Document()
        for text in paragraphs:
            doc.add_paragraph(text)
        for link in links:
            p = doc.add_paragraph("See ")
            _add_hyperlink(p, text=link.get("text", ""), url=link.get("url"), anchor=link.get("anchor"))
        for i, bm in enumerate(bookmarks):
            _add_bookmark(doc.add_paragraph(f"Section {bm}"), bm, i)
        path = str(tmp_path / name)
        doc.save(path)
        return path

    return _make


@pytest.fixture
def read_links() -> Callable[[str], list[tuple[str, str, str]]]:
    """Re-open a document and list ``(address, sub_address, display_text)``."""
    pytest.importorskip("docx")
    from bulk_editor.documents.reader import HyperlinkReader

    def _read(path: str) -> list[tuple[str, str, str]]:
        return [(h.address, h.sub_address, h.display_text) for h in HyperlinkReader().extract(path)]

    return _read


@pytest.fixture
def pipeline_options() -> Callable[..., PipelineOptions]:
    def _opts(**overrides: Any) -> PipelineOptions:
        base = dataclasses.replace(
            PipelineOptions.from_env(),
            validation_workers=2,
            extraction_workers=2,
            api_workers=2,
            update_workers=2,
            bounded_capacity=4,
            stage_timeout_seconds=30.0,
            api_batch_size=50,
            cross_document_batching=False,
            detect_only=False,
            create_backups=True,
            max_file_bytes=10 * 1024 * 1024,
            allowed_extensions=(".docx",),
        )
        return dataclasses.replace(base, **overrides)

    return _opts


@pytest.fixture
def lookup_transport() -> Callable[..., httpx.MockTransport]:
    """MockTransport answering lookups from a fixed table; records requests."""

    def _make(table: dict[str, dict[str, Any]], *, calls: list[list[str]] | None = None) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            ids = body.get("lookupIds", [])
            if calls is not None:
                calls.append(ids)
            return httpx.Response(200, json={i: table[i] for i in ids if i in table})

        return httpx.MockTransport(handler)

    return _make
