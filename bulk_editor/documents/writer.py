"""Write rewritten hyperlink records (and text rules) back into a document."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable

from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml import OxmlElement
from docx.oxml.ns import nsmap, qn

from bulk_editor.collaborators import Cache
from bulk_editor.documents.reader import (
    cache_pattern,
    element_target,
    element_text,
    iter_hyperlink_elements,
    open_document,
)
from bulk_editor.documents.text_replace import replace_text
from bulk_editor.documents.types import HyperlinkRecord, WriteResult
from bulk_editor.errors import DocumentAccessError
from bulk_editor.models import TextReplacementRule

logger = logging.getLogger(__name__)

_XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"
_R_PREFIX = "{%s}" % nsmap["r"]

_locks_guard = threading.Lock()
_path_locks: dict[str, threading.Lock] = {}


def path_lock(path: str) -> threading.Lock:
    """One lock per real path; every write to a file goes through it."""
    key = os.path.realpath(path)
    with _locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = _path_locks[key] = threading.Lock()
        return lock


def _set_text(el, text: str) -> None:
    runs = list(el.iter(qn("w:t")))
    if not runs:
        r = OxmlElement("w:r")
        t = OxmlElement("w:t")
        r.append(t)
        el.append(r)
        runs = [t]
    first, rest = runs[0], runs[1:]
    first.text = text
    first.set(_XML_SPACE, "preserve")
    for t in rest:
        t.getparent().remove(t)


def _rel_in_use(root, r_id: str) -> bool:
    for node in root.iter():
        for k, v in node.attrib.items():
            if v == r_id and k.startswith(_R_PREFIX):
                return True
    return False


def _release_rel(part, r_id: str | None) -> None:
    if r_id and not _rel_in_use(part.element, r_id):
        part.drop_rel(r_id)


def _set_target(part, el, address: str, sub_address: str) -> None:
    old_rid = el.get(qn("r:id"))
    if address:
        target = f"{address}#{sub_address}" if sub_address else address
        new_rid = part.relate_to(target, RT.HYPERLINK, is_external=True)
        el.set(qn("r:id"), new_rid)
        el.attrib.pop(qn("w:anchor"), None)
        if old_rid != new_rid:
            _release_rel(part, old_rid)
        return
    el.attrib.pop(qn("r:id"), None)
    if sub_address:
        el.set(qn("w:anchor"), sub_address)
    else:
        el.attrib.pop(qn("w:anchor"), None)
    _release_rel(part, old_rid)


class HyperlinkWriter:
    def __init__(self, *, cache: Cache | None = None) -> None:
        self._cache = cache

    def write(
        self,
        path: str,
        records: Iterable[HyperlinkRecord],
        *,
        removed_ids: Iterable[str] = (),
        text_rules: list[TextReplacementRule] | None = None,
    ) -> WriteResult:
        """Apply records by ``element_id``, drop ``removed_ids``, run text
        rules, and save once. Nothing is saved when nothing changed."""
        with path_lock(path):
            return self._write_locked(path, list(records), set(removed_ids), text_rules or [])

    def _write_locked(
        self,
        path: str,
        records: list[HyperlinkRecord],
        removed_ids: set[str],
        text_rules: list[TextReplacementRule],
    ) -> WriteResult:
        doc = open_document(path)
        part = doc.part
        body = doc.element.body
        elements = dict(iter_hyperlink_elements(body))

        updated = 0
        for rec in records:
            el = elements.get(rec.element_id)
            if el is None:
                logger.warning("Hyperlink %s not found in %s; skipped", rec.element_id, path)
                continue
            try:
                address, sub_address = element_target(el, part.rels)
            except KeyError:
                address, sub_address = "", el.get(qn("w:anchor")) or ""
            changed = False
            if element_text(el) != rec.display_text:
                _set_text(el, rec.display_text)
                changed = True
            if (address, sub_address) != (rec.address, rec.sub_address):
                _set_target(part, el, rec.address, rec.sub_address)
                changed = True
            updated += int(changed)

        removed = 0
        for element_id in removed_ids:
            el = elements.get(element_id)
            if el is None or el.getparent() is None:
                continue
            r_id = el.get(qn("r:id"))
            el.getparent().remove(el)
            _release_rel(part, r_id)
            removed += 1

        replaced, entries = replace_text(body, text_rules)

        saved = False
        if updated or removed or replaced:
            try:
                doc.save(path)
            except OSError as e:
                raise DocumentAccessError(path, f"cannot save document ({e})") from e
            saved = True
            if self._cache is not None:
                self._cache.invalidate(cache_pattern(path))
            logger.info(
                "Saved %s: %d hyperlinks updated, %d removed, %d text runs replaced",
                path,
                updated,
                removed,
                replaced,
            )

        return WriteResult(
            path=path,
            hyperlinks_updated=updated,
            hyperlinks_removed=removed,
            text_replacements=replaced,
            saved=saved,
            text_entries=entries,
        )
