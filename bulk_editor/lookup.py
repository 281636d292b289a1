"""Lookup-ID extraction and the small text helpers shared by the rewrite
engine, the reader and the validators.

Everything here is pure: no I/O, no logging, deterministic for a given input.
"""

from __future__ import annotations

import re

# Two known identifier shapes; first match wins, result is upper-cased.
LOOKUP_ID_PATTERN = re.compile(r"(TSRC-[A-Za-z0-9]+-[0-9]{6}|CMS-[A-Za-z0-9]+-[0-9]{6})", re.IGNORECASE)

# Permissive fallback: raw docid query value, case preserved.
DOCID_PATTERN = re.compile(r"(?:^|[?&#/])docid=([^&#\s]+)", re.IGNORECASE)

# Trailing "(12345)" or "(123456)" content-id suffix.
CONTENT_ID_SUFFIX_PATTERN = re.compile(r"\s*\((\d{5,6})\)\s*$")

MULTI_SPACE_PATTERN = re.compile(r" {2,}")

EXPIRED_MARKER = " - Expired"
NOT_FOUND_MARKER = " - Not Found"
BROKEN_MARKER = " - Broken"

STATUS_MARKERS: tuple[str, ...] = (EXPIRED_MARKER, NOT_FOUND_MARKER)
LEGACY_MARKERS: tuple[str, ...] = (EXPIRED_MARKER, NOT_FOUND_MARKER, BROKEN_MARKER)


def full_address(address: str, sub_address: str) -> str:
    address = address or ""
    sub_address = sub_address or ""
    if address and sub_address:
        return f"{address}#{sub_address}"
    return address or sub_address


def extract_lookup_id(address: str, sub_address: str, stored_content_id: str = "") -> str:
    """Derive the lookup id for a hyperlink.

    Order: known identifier shape (upper-cased), then the raw ``docid=``
    value, then ``stored_content_id``. Returns "" when nothing matches.

    The ``docid=`` path returns the captured value unvalidated; callers that
    care use :func:`is_canonical_lookup_id` to tell the two apart.
    """
    target = full_address(address, sub_address)
    if target:
        m = LOOKUP_ID_PATTERN.search(target)
        if m:
            return m.group(1).upper()
        m = DOCID_PATTERN.search(target)
        if m:
            return m.group(1)
    return (stored_content_id or "").strip()


def is_canonical_lookup_id(value: str) -> bool:
    return bool(value) and LOOKUP_ID_PATTERN.fullmatch(value) is not None


def last_digits(value: str) -> tuple[str, str] | None:
    """Return ``(last6, last5)`` when the last six characters are digits."""
    if len(value) < 6:
        return None
    last6 = value[-6:]
    if not last6.isdigit():
        return None
    return last6, last6[-5:]


def split_marker(text: str, markers: tuple[str, ...] = STATUS_MARKERS) -> tuple[str, str]:
    """Split ``text`` into ``(core, marker)``; marker is "" when absent.

    Trailing whitespace after a marker is tolerated and dropped.
    """
    stripped = text.rstrip()
    for marker in markers:
        if stripped.lower().endswith(marker.lower()):
            return stripped[: len(stripped) - len(marker)], marker
    return text, ""


def strip_markers(text: str, markers: tuple[str, ...] = STATUS_MARKERS) -> str:
    """Remove any number of trailing markers (handles already-stacked ones)."""
    core, marker = split_marker(text, markers)
    while marker:
        core, marker = split_marker(core, markers)
    return core


def split_content_id_suffix(text: str) -> tuple[str, str]:
    """Split ``text`` into ``(core, digits)``; digits is "" when no suffix."""
    m = CONTENT_ID_SUFFIX_PATTERN.search(text)
    if not m:
        return text, ""
    return text[: m.start()], m.group(1)


def sanitize_title(text: str) -> str:
    """Display text reduced to its comparable title: markers, content-id
    suffix and surrounding whitespace removed."""
    core = strip_markers(text or "")
    core, _ = split_content_id_suffix(core)
    return core.strip()


def titles_match(current: str, resolved: str) -> bool:
    """Case-insensitive comparison of sanitized titles, with space runs collapsed
    so a title differing only in double spaces counts as the same."""

    def norm(text: str) -> str:
        return MULTI_SPACE_PATTERN.sub(" ", sanitize_title(text)).casefold()

    return norm(current) == norm(resolved)


def collapse_spaces(text: str) -> tuple[str, int]:
    """Collapse runs of 2+ spaces; returns the new text and runs collapsed."""
    new_text, n = MULTI_SPACE_PATTERN.subn(" ", text)
    return new_text, n
