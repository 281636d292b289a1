"""Hyperlink rewrite rules.

Every step below is safe to run on a record that has already been through
it. Display text is kept in the layout ``"{title} ({last6}){marker}"``:
steps that touch the title or suffix split the marker off first and put it
back afterwards, so the steps commute with each other across re-runs.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from bulk_editor.config import REPLACEMENT_BASE_URL
from bulk_editor.documents.types import ExtractedDocument, HyperlinkRecord
from bulk_editor.lookup import (
    CONTENT_ID_SUFFIX_PATTERN,
    EXPIRED_MARKER,
    LEGACY_MARKERS,
    NOT_FOUND_MARKER,
    collapse_spaces,
    extract_lookup_id,
    is_canonical_lookup_id,
    last_digits,
    sanitize_title,
    split_content_id_suffix,
    split_marker,
    strip_markers,
    titles_match,
)
from bulk_editor.models import MatchType, ReplacementRule, ResolvedRecord
from bulk_editor.rewrite.changelog import ChangeEntry, ChangeKind, DocumentChangelog

logger = logging.getLogger(__name__)

STATUS_NOT_FOUND = "Not Found"
STATUS_EXPIRED = "Expired"
STATUS_BROKEN = "Broken"

_STATUS_MARKER = {
    STATUS_EXPIRED.casefold(): EXPIRED_MARKER,
    STATUS_NOT_FOUND.casefold(): NOT_FOUND_MARKER,
}


# -- Single-record steps ------------------------------------------------------


def is_invisible(rec: HyperlinkRecord) -> bool:
    return not rec.display_text.strip() and bool(rec.address or rec.sub_address)


def remove_invisible_links(
    records: Iterable[HyperlinkRecord],
) -> tuple[list[HyperlinkRecord], list[HyperlinkRecord]]:
    """Split ``records`` into ``(kept, removed)``."""
    kept: list[HyperlinkRecord] = []
    removed: list[HyperlinkRecord] = []
    for rec in records:
        (removed if is_invisible(rec) else kept).append(rec)
    for rec in removed:
        logger.info("Removing invisible hyperlink %s -> %s", rec.element_id, rec.address or rec.sub_address)
    return kept, removed


def assign_lookup_id(rec: HyperlinkRecord) -> str:
    rec.lookup_id = extract_lookup_id(rec.address, rec.sub_address, rec.content_id)
    return rec.lookup_id


def lookup(resolution: Mapping[str, ResolvedRecord], lookup_id: str) -> ResolvedRecord | None:
    if not lookup_id:
        return None
    return resolution.get(lookup_id) or resolution.get(lookup_id.upper())


def apply_status_marker(rec: HyperlinkRecord, status: str | None = None) -> bool:
    """Replace any existing marker with the one for ``status`` (or none)."""
    status = rec.status if status is None else status
    marker = _STATUS_MARKER.get(status.strip().casefold(), "")
    core = strip_markers(rec.display_text)
    new_text = f"{core.rstrip()}{marker}" if marker else core
    if new_text == rec.display_text:
        return False
    rec.display_text = new_text
    return True


def apply_title(rec: HyperlinkRecord, resolved: ResolvedRecord | None) -> bool:
    """Bring the display title in line with the resolved record.

    Unresolved records keep their title and get the Not Found marker.
    """
    if resolved is None:
        if not rec.lookup_id:
            return False
        rec.status = STATUS_NOT_FOUND
        return apply_status_marker(rec)

    rec.status = resolved.status
    rec.content_id = resolved.content_id or rec.content_id
    rec.document_id = resolved.document_id or rec.document_id
    new_title, _ = collapse_spaces(resolved.title.strip())
    if not new_title:
        return False
    rec.title = new_title
    if titles_match(rec.display_text, new_title):
        return False

    core, marker = split_marker(rec.display_text)
    _, digits = split_content_id_suffix(core)
    suffix = f" ({digits})" if digits else ""
    rec.display_text = f"{new_title}{suffix}{marker}"
    return True


def apply_content_id_suffix(rec: HyperlinkRecord, source_id: str) -> bool:
    """Make the display text end in ``(last6)`` of ``source_id``.

    ``(last5)`` is widened to ``(last6)``; a missing suffix is appended; any
    other bracketed suffix is left alone. Ids whose last six characters are
    not digits never produce a suffix. The engine calls this for resolved
    records only; an unresolved link keeps its text plus the Not Found marker.
    """
    digits = last_digits(source_id or "")
    if digits is None:
        return False
    last6, last5 = digits

    core, marker = split_marker(rec.display_text)
    core = core.rstrip()
    if not core.strip():
        return False
    m = CONTENT_ID_SUFFIX_PATTERN.search(core)
    if m is None:
        core = f"{core} ({last6})"
    elif m.group(1) == last5:
        core = core[: m.start(1)] + last6 + core[m.end(1) :]
    else:
        return False
    rec.display_text = f"{core}{marker}"
    return True


def normalize_whitespace(rec: HyperlinkRecord) -> int:
    new_text, n = collapse_spaces(rec.display_text)
    if n:
        rec.display_text = new_text
    return n


def detect_title_mismatch(rec: HyperlinkRecord, resolved: ResolvedRecord | None) -> ChangeEntry | None:
    """Report (never fix) a display title that differs from the resolved one."""
    if resolved is None or not resolved.title.strip():
        return None
    if split_marker(rec.display_text)[1]:
        return None
    if titles_match(rec.display_text, resolved.title):
        return None
    current = sanitize_title(rec.display_text)
    correct = resolved.title.strip()
    return ChangeEntry(
        kind=ChangeKind.TITLE_MISMATCH,
        page=rec.page_number,
        line=rec.line_number,
        message=(
            "Title Mismatch, Please Review\n"
            f"    Current Title: {current}\n"
            f"    Correct Title: {correct}\n"
            f"    Content ID: {resolved.content_id or rec.lookup_id}"
        ),
        before=current,
        after=correct,
        content_id=resolved.content_id or rec.lookup_id,
        element_id=rec.element_id,
    )


# -- Replacement rules --------------------------------------------------------


def rule_matches(rule: ReplacementRule, text: str) -> bool:
    """Case-insensitive match of ``rule.find_text`` against sanitized text."""
    subject = sanitize_title(text)
    if rule.match_type is MatchType.REGEX:
        return re.search(rule.find_text, subject, re.IGNORECASE) is not None
    needle = rule.find_text.strip().casefold()
    hay = subject.casefold()
    if rule.match_type is MatchType.CONTAINS:
        return needle in hay
    if rule.match_type is MatchType.STARTS_WITH:
        return hay.startswith(needle)
    if rule.match_type is MatchType.ENDS_WITH:
        return hay.endswith(needle)
    return hay == needle


def apply_replacement_rules(
    records: Iterable[HyperlinkRecord],
    rules: Iterable[ReplacementRule],
    resolution: Mapping[str, ResolvedRecord],
    *,
    base_url: str = REPLACEMENT_BASE_URL,
) -> list[ChangeEntry]:
    """Repoint hyperlinks whose title matches an enabled rule.

    A rule whose target id does not resolve is skipped and reported as not
    found; the hyperlink is left as it was.
    """
    enabled = [r for r in rules if r.enabled]
    entries: list[ChangeEntry] = []
    if not enabled:
        return entries

    for rec in records:
        for rule in enabled:
            if not rule_matches(rule, rec.display_text):
                continue
            target = lookup(resolution, rule.replace_text)
            if target is None or not target.title.strip():
                logger.warning(
                    "Replacement target %s for '%s' did not resolve; skipped",
                    rule.replace_text,
                    rule.find_text,
                )
                entries.append(
                    ChangeEntry(
                        kind=ChangeKind.NOT_FOUND,
                        page=rec.page_number,
                        line=rec.line_number,
                        message=f"Replacement target not found: {rule.replace_text}",
                        before=rec.display_text,
                        content_id=rule.replace_text,
                        element_id=rec.element_id,
                    )
                )
                break

            before_text = rec.display_text
            before_url = f"{rec.address}#{rec.sub_address}" if rec.sub_address else rec.address
            title = target.title.strip()
            rec.display_text = f"{title} ({rule.replace_text[-6:]})"
            rec.title = title
            rec.address = base_url
            rec.sub_address = f"docid={target.document_id}"
            rec.document_id = target.document_id
            rec.content_id = target.content_id or rule.replace_text
            rec.status = target.status
            rec.lookup_id = rule.replace_text
            entries.append(
                ChangeEntry(
                    kind=ChangeKind.REPLACED_HYPERLINK,
                    page=rec.page_number,
                    line=rec.line_number,
                    message=(
                        "Replaced Hyperlink based on User Replacement\n"
                        f"    Old Hyperlink: {before_text} ({before_url})\n"
                        f"    New Hyperlink: {rec.display_text} ({rec.address}#{rec.sub_address})"
                    ),
                    before=before_text,
                    after=rec.display_text,
                    content_id=rec.content_id,
                    element_id=rec.element_id,
                )
            )
            break
    return entries


# -- Maintenance passes -------------------------------------------------------


def fix_titles(records: Iterable[HyperlinkRecord]) -> list[ChangeEntry]:
    """Strip status markers (including the legacy Broken one) and reset titles."""
    entries: list[ChangeEntry] = []
    for rec in records:
        before = rec.display_text
        core = strip_markers(before, LEGACY_MARKERS)
        rec.title = sanitize_title(core)
        if core == before:
            continue
        rec.display_text = core
        entries.append(
            ChangeEntry(
                kind=ChangeKind.FIXED_TITLE,
                page=rec.page_number,
                line=rec.line_number,
                message="Fixed Mismatched Title",
                before=before,
                after=core,
                element_id=rec.element_id,
            )
        )
    return entries


@dataclass
class ValidationReport:
    valid: int = 0
    invalid: int = 0
    messages: list[str] = field(default_factory=list)


def validate_hyperlinks(records: Iterable[HyperlinkRecord]) -> ValidationReport:
    report = ValidationReport()
    for rec in records:
        where = f"Page:{rec.page_number} | Line:{rec.line_number}"
        problems: list[str] = []
        if not rec.address and not rec.sub_address:
            problems.append("no target address or anchor")
        if not rec.display_text.strip():
            problems.append("no display text")
        if rec.address:
            parts = urlsplit(rec.address)
            if not parts.scheme or (parts.scheme in ("http", "https") and not parts.netloc):
                problems.append(f"malformed URL {rec.address!r}")
        if problems:
            report.invalid += 1
            report.messages.append(f"{where} | invalid: {'; '.join(problems)}")
            continue
        report.valid += 1
        lookup_id = rec.lookup_id or extract_lookup_id(rec.address, rec.sub_address)
        if lookup_id and not is_canonical_lookup_id(lookup_id):
            report.messages.append(f"{where} | warning: unvalidated docid lookup id {lookup_id!r}")
    return report


def check_internal_links(records: Iterable[HyperlinkRecord], bookmarks: Iterable[str]) -> list[ChangeEntry]:
    """Mark anchor-only hyperlinks pointing at a missing bookmark as Broken."""
    known = set(bookmarks)
    entries: list[ChangeEntry] = []
    for rec in records:
        if not rec.is_internal or rec.sub_address in known:
            continue
        rec.status = STATUS_BROKEN
        entries.append(
            ChangeEntry(
                kind=ChangeKind.INTERNAL_ISSUE,
                page=rec.page_number,
                line=rec.line_number,
                message=f"Broken internal hyperlink: bookmark '{rec.sub_address}' not found",
                before=rec.display_text,
                element_id=rec.element_id,
            )
        )
    return entries


# -- Engine -------------------------------------------------------------------


@dataclass
class RewriteStats:
    hyperlinks_processed: int = 0
    hyperlinks_updated: int = 0
    titles_updated: int = 0
    content_ids_appended: int = 0
    status_markers_applied: int = 0
    invisible_removed: int = 0
    whitespace_fixes: int = 0
    replaced_hyperlinks: int = 0
    errors: int = 0


@dataclass
class RewriteResult:
    hyperlinks: list[HyperlinkRecord]
    removed: list[HyperlinkRecord]
    changed_ids: set[str]
    changelog: DocumentChangelog
    stats: RewriteStats


class RewriteEngine:
    def __init__(self, *, base_url: str = REPLACEMENT_BASE_URL) -> None:
        self._base_url = base_url

    def rewrite(
        self,
        doc: ExtractedDocument,
        resolution: Mapping[str, ResolvedRecord],
        rules: Iterable[ReplacementRule] = (),
    ) -> RewriteResult:
        changelog = DocumentChangelog(path=doc.path)
        stats = RewriteStats(hyperlinks_processed=len(doc.hyperlinks))

        kept, removed = remove_invisible_links(doc.hyperlinks)
        stats.invisible_removed = len(removed)
        for rec in removed:
            changelog.add(
                ChangeEntry(
                    kind=ChangeKind.INVISIBLE_REMOVED,
                    page=rec.page_number,
                    line=rec.line_number,
                    message="Removed invisible hyperlink",
                    before=rec.address or rec.sub_address,
                    element_id=rec.element_id,
                )
            )

        originals = {rec.element_id: rec.copy() for rec in kept}
        for rec in kept:
            try:
                self._rewrite_one(rec, resolution, changelog, stats)
            except Exception as e:
                logger.exception("Rewrite failed for %s in %s; left unmodified", rec.element_id, doc.path)
                rec.restore(originals[rec.element_id])
                stats.errors += 1
                changelog.add(
                    ChangeEntry(
                        kind=ChangeKind.ERROR,
                        page=rec.page_number,
                        line=rec.line_number,
                        message=f"Error processing hyperlink: {type(e).__name__}: {e}",
                        before=rec.display_text,
                        element_id=rec.element_id,
                    )
                )

        rule_entries = apply_replacement_rules(kept, rules, resolution, base_url=self._base_url)
        changelog.extend(rule_entries)
        stats.replaced_hyperlinks = sum(1 for e in rule_entries if e.kind is ChangeKind.REPLACED_HYPERLINK)

        changelog.extend(check_internal_links(kept, doc.bookmarks))

        changed = {
            rec.element_id
            for rec in kept
            if (rec.display_text, rec.address, rec.sub_address)
            != (
                originals[rec.element_id].display_text,
                originals[rec.element_id].address,
                originals[rec.element_id].sub_address,
            )
        }
        stats.hyperlinks_updated = len(changed)
        return RewriteResult(
            hyperlinks=kept,
            removed=removed,
            changed_ids=changed,
            changelog=changelog,
            stats=stats,
        )

    def _rewrite_one(
        self,
        rec: HyperlinkRecord,
        resolution: Mapping[str, ResolvedRecord],
        changelog: DocumentChangelog,
        stats: RewriteStats,
    ) -> None:
        before = rec.display_text
        lookup_id = assign_lookup_id(rec)
        resolved = lookup(resolution, lookup_id)

        title_changed = apply_title(rec, resolved)
        stats.titles_updated += int(title_changed and resolved is not None)

        marker_changed = False
        suffix_changed = False
        # the content-id suffix needs a resolved record
        if resolved is not None:
            marker_changed = apply_status_marker(rec)
            suffix_changed = apply_content_id_suffix(rec, resolved.content_id or lookup_id)
        else:
            marker_changed = title_changed
        stats.status_markers_applied += int(marker_changed)
        stats.content_ids_appended += int(suffix_changed)

        spaces = normalize_whitespace(rec)
        stats.whitespace_fixes += spaces
        changelog.double_space_count += spaces

        if resolved is None:
            rec.title = sanitize_title(rec.display_text)
            if lookup_id:
                changelog.add(self._entry(rec, ChangeKind.NOT_FOUND, "Hyperlink Not Found", before))
            return

        if resolved.is_expired:
            changelog.add(self._entry(rec, ChangeKind.EXPIRED, "Expired Hyperlink", before))
        elif resolved.is_not_found:
            changelog.add(self._entry(rec, ChangeKind.NOT_FOUND, "Hyperlink Not Found", before))
        if title_changed or suffix_changed:
            what = []
            if title_changed:
                what.append("Title Updated")
            if suffix_changed:
                what.append("Content ID Appended")
            changelog.add(self._entry(rec, ChangeKind.UPDATED, ", ".join(what), before))

    @staticmethod
    def _entry(rec: HyperlinkRecord, kind: ChangeKind, message: str, before: str) -> ChangeEntry:
        return ChangeEntry(
            kind=kind,
            page=rec.page_number,
            line=rec.line_number,
            message=message,
            before=before,
            after=rec.display_text,
            content_id=rec.content_id or rec.lookup_id,
            element_id=rec.element_id,
        )

    def detect(
        self,
        doc: ExtractedDocument,
        resolution: Mapping[str, ResolvedRecord],
    ) -> DocumentChangelog:
        """Report-only pass: title mismatches plus not-found/expired links."""
        changelog = DocumentChangelog(path=doc.path)
        for rec in doc.hyperlinks:
            if is_invisible(rec):
                continue
            lookup_id = rec.lookup_id or extract_lookup_id(rec.address, rec.sub_address, rec.content_id)
            resolved = lookup(resolution, lookup_id)
            if resolved is None:
                if lookup_id:
                    changelog.add(self._entry(rec, ChangeKind.NOT_FOUND, "Hyperlink Not Found", rec.display_text))
                continue
            if resolved.is_expired:
                changelog.add(self._entry(rec, ChangeKind.EXPIRED, "Expired Hyperlink", rec.display_text))
            entry = detect_title_mismatch(rec, resolved)
            if entry is not None:
                changelog.add(entry)
        changelog.extend(check_internal_links([r.copy() for r in doc.hyperlinks], doc.bookmarks))
        return changelog
