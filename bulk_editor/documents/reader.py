"""Document validation and hyperlink extraction (python-docx + lxml)."""

from __future__ import annotations

import copy
import glob
import logging
import os
import zipfile
from collections.abc import Iterator
from pathlib import Path

import docx  # python-docx
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml.ns import qn
from lxml import etree

from bulk_editor.collaborators import Cache
from bulk_editor.config import ALLOWED_EXTENSIONS, CACHE_TTL_SECONDS, MAX_FILE_BYTES
from bulk_editor.documents.types import ExtractedDocument, HyperlinkRecord, page_hint
from bulk_editor.errors import DocumentAccessError, DocumentFormatError
from bulk_editor.lookup import extract_lookup_id, sanitize_title

logger = logging.getLogger(__name__)

_OPEN_ERRORS = (PackageNotFoundError, zipfile.BadZipFile, etree.XMLSyntaxError, KeyError, ValueError)


def validate_document(
    path: str,
    *,
    max_bytes: int = MAX_FILE_BYTES,
    allowed_extensions: list[str] | None = None,
) -> int:
    """Raise DocumentAccessError unless ``path`` may be processed; returns its size."""
    allowed = [e.lower() for e in (allowed_extensions or ALLOWED_EXTENSIONS)]
    p = Path(path)
    if not p.is_file():
        raise DocumentAccessError(path, "file not found")
    if p.suffix.lower() not in allowed:
        raise DocumentAccessError(path, f"unsupported extension {p.suffix or '(none)'}")
    size = p.stat().st_size
    if size == 0:
        raise DocumentAccessError(path, "file is empty")
    if size > max_bytes:
        raise DocumentAccessError(path, f"file exceeds {max_bytes} bytes ({size})")
    if p.name.startswith("~$"):
        raise DocumentAccessError(path, "Word lock file")
    try:
        with p.open("rb") as f:
            f.read(1)
    except OSError as e:
        raise DocumentAccessError(path, f"file is locked or unreadable ({e})") from e
    return size


def open_document(path: str):
    try:
        return docx.Document(path)
    except _OPEN_ERRORS as e:
        raise DocumentFormatError(path, f"cannot open document ({type(e).__name__}: {e})") from e


def iter_hyperlink_elements(body) -> Iterator[tuple[str, etree._Element]]:
    """Yield ``(element_id, w:hyperlink)`` in document order.

    The ordinal id is recomputed the same way at write time, so it stays a
    valid join key as long as the file is not edited in between.
    """
    for n, el in enumerate(body.iter(qn("w:hyperlink"))):
        yield f"hl-{n}", el


def element_text(el: etree._Element) -> str:
    return "".join(t.text or "" for t in el.iter(qn("w:t")))


def element_target(el: etree._Element, rels) -> tuple[str, str]:
    """Return ``(address, sub_address)`` for a w:hyperlink element.

    A fragment in the relationship target becomes the sub-address; the
    ``w:anchor`` attribute is used when there is no fragment.
    """
    anchor = el.get(qn("w:anchor")) or ""
    r_id = el.get(qn("r:id"))
    address = ""
    if r_id:
        rel = rels[r_id]  # KeyError for a dangling r:id
        address = rel.target_ref or ""
    sub_address = anchor
    if "#" in address:
        address, fragment = address.split("#", 1)
        sub_address = fragment or anchor
    return address, sub_address


def list_bookmarks(body) -> frozenset[str]:
    names = (b.get(qn("w:name")) for b in body.iter(qn("w:bookmarkStart")))
    return frozenset(n for n in names if n)


def cache_key(path: str) -> str:
    """Key on the resolved path plus mtime and size, so same-named files in
    different folders never share an entry."""
    real = os.path.realpath(path)
    st = os.stat(real)
    return f"hyperlinks|{real}|{st.st_mtime_ns}|{st.st_size}"


def cache_pattern(path: str) -> str:
    return f"hyperlinks|{glob.escape(os.path.realpath(path))}|*"


class HyperlinkReader:
    def __init__(
        self,
        *,
        cache: Cache | None = None,
        cache_ttl: float = CACHE_TTL_SECONDS,
        max_bytes: int = MAX_FILE_BYTES,
        allowed_extensions: list[str] | None = None,
    ) -> None:
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._max_bytes = max_bytes
        self._allowed = allowed_extensions

    def extract(self, path: str) -> list[HyperlinkRecord]:
        return self.read(path).hyperlinks

    def read(self, path: str) -> ExtractedDocument:
        validate_document(path, max_bytes=self._max_bytes, allowed_extensions=self._allowed)

        key = cache_key(path) if self._cache is not None else ""
        if self._cache is not None:
            hit = self._cache.get(key)
            if hit is not None:
                logger.debug("Extraction cache hit for %s", path)
                out = copy.deepcopy(hit)
                out.from_cache = True
                return out

        doc = open_document(path)
        try:
            body = doc.element.body
            rels = doc.part.rels
        except AttributeError as e:
            raise DocumentFormatError(path, "document has no body") from e

        records: list[HyperlinkRecord] = []
        line = 0
        for element_id, el in iter_hyperlink_elements(body):
            try:
                address, sub_address = element_target(el, rels)
                text = element_text(el)
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed hyperlink %s in %s: %s", element_id, path, e)
                continue
            line += 1
            records.append(
                HyperlinkRecord(
                    address=address,
                    sub_address=sub_address,
                    display_text=text,
                    element_id=element_id,
                    title=sanitize_title(text),
                    lookup_id=extract_lookup_id(address, sub_address),
                    page_number=page_hint(line),
                    line_number=line,
                )
            )

        result = ExtractedDocument(
            path=os.fspath(path),
            hyperlinks=records,
            bookmarks=list_bookmarks(body),
        )
        logger.info("Extracted %d hyperlinks from %s", len(records), path)

        if self._cache is not None:
            self._cache.set(key, copy.deepcopy(result), self._cache_ttl)
        return result
