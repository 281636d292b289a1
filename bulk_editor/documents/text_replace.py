"""Find/replace over a document's text runs, independent of hyperlinks.

A rule only ever sees one ``w:t`` element at a time, so matches never span
run boundaries.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from docx.oxml.ns import qn
from lxml import etree

from bulk_editor.documents.types import page_hint
from bulk_editor.models import TextReplacementRule
from bulk_editor.rewrite.changelog import ChangeEntry, ChangeKind

logger = logging.getLogger(__name__)


def compile_rule(rule: TextReplacementRule) -> re.Pattern[str] | None:
    """Pattern for a rule, or None for an invalid (empty ``old_text``) rule."""
    if not rule.is_valid():
        return None
    pattern = re.escape(rule.old_text)
    if rule.whole_words_only:
        pattern = rf"\b{pattern}\b"
    flags = 0 if rule.case_sensitive else re.IGNORECASE
    return re.compile(pattern, flags)


def apply_rule(text: str, rule: TextReplacementRule) -> tuple[str, int]:
    """Apply one rule to a string; returns ``(new_text, matches)``."""
    pattern = compile_rule(rule)
    if pattern is None:
        return text, 0
    new_text = rule.new_text
    return pattern.subn(lambda _m: new_text, text)


def replace_in_runs(
    runs: Iterable[etree._Element],
    rules: list[TextReplacementRule],
) -> tuple[int, list[ChangeEntry]]:
    """Apply ``rules`` in order to every run; returns ``(runs changed, log)``.

    Line is the 1-based run ordinal; page is the coarse hint derived from it.
    """
    compiled = []
    for rule in rules:
        pattern = compile_rule(rule)
        if pattern is None:
            logger.warning("Skipping text rule with empty old_text")
            continue
        compiled.append((rule, pattern))
    if not compiled:
        return 0, []

    count = 0
    entries: list[ChangeEntry] = []
    for line, run in enumerate(runs, start=1):
        before = run.text or ""
        if not before:
            continue
        after = before
        for rule, pattern in compiled:
            after = pattern.sub(lambda _m, r=rule: r.new_text, after)
        if after == before:
            continue
        run.text = after
        if after != after.strip():
            run.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")
        count += 1
        entries.append(
            ChangeEntry(
                kind=ChangeKind.REPLACED_TEXT,
                page=page_hint(line),
                line=line,
                message="Replaced Text based on User Rule",
                before=before,
                after=after,
            )
        )
    return count, entries


def replace_text(body: etree._Element, rules: list[TextReplacementRule]) -> tuple[int, list[ChangeEntry]]:
    """Run the rules over every ``w:t`` in ``body`` in document order."""
    return replace_in_runs(list(body.iter(qn("w:t"))), rules)
