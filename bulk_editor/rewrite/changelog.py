"""Structured change entries produced while rewriting a document.

Rendering to human-readable text is left to whoever consumes these; the
only export here is a plain dict for JSON.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ChangeKind(str, Enum):
    UPDATED = "updated"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    ERROR = "error"
    TITLE_MISMATCH = "title_mismatch"
    FIXED_TITLE = "fixed_title"
    INTERNAL_ISSUE = "internal_issue"
    REPLACED_HYPERLINK = "replaced_hyperlink"
    REPLACED_TEXT = "replaced_text"
    INVISIBLE_REMOVED = "invisible_removed"


@dataclass(frozen=True)
class ChangeEntry:
    kind: ChangeKind
    page: int
    line: int
    message: str
    before: str = ""
    after: str = ""
    content_id: str = ""
    element_id: str = ""

    def describe(self) -> str:
        return f"Page:{self.page} | Line:{self.line} | {self.message}"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d


_SECTIONS: dict[ChangeKind, str] = {
    ChangeKind.UPDATED: "updated",
    ChangeKind.EXPIRED: "expired",
    ChangeKind.NOT_FOUND: "not_found",
    ChangeKind.ERROR: "errors",
    ChangeKind.TITLE_MISMATCH: "title_mismatches",
    ChangeKind.FIXED_TITLE: "fixed_titles",
    ChangeKind.INTERNAL_ISSUE: "internal_issues",
    ChangeKind.REPLACED_HYPERLINK: "replaced_hyperlinks",
    ChangeKind.REPLACED_TEXT: "replaced_text",
    ChangeKind.INVISIBLE_REMOVED: "invisible_removed",
}


@dataclass
class DocumentChangelog:
    path: str
    updated: list[ChangeEntry] = field(default_factory=list)
    expired: list[ChangeEntry] = field(default_factory=list)
    not_found: list[ChangeEntry] = field(default_factory=list)
    errors: list[ChangeEntry] = field(default_factory=list)
    title_mismatches: list[ChangeEntry] = field(default_factory=list)
    fixed_titles: list[ChangeEntry] = field(default_factory=list)
    internal_issues: list[ChangeEntry] = field(default_factory=list)
    replaced_hyperlinks: list[ChangeEntry] = field(default_factory=list)
    replaced_text: list[ChangeEntry] = field(default_factory=list)
    invisible_removed: list[ChangeEntry] = field(default_factory=list)
    double_space_count: int = 0

    def add(self, entry: ChangeEntry) -> None:
        getattr(self, _SECTIONS[entry.kind]).append(entry)

    def extend(self, entries: list[ChangeEntry]) -> None:
        for e in entries:
            self.add(e)

    def entries(self) -> list[ChangeEntry]:
        out: list[ChangeEntry] = []
        for section in _SECTIONS.values():
            out.extend(getattr(self, section))
        return out

    def count(self, kind: ChangeKind) -> int:
        return len(getattr(self, _SECTIONS[kind]))

    @property
    def has_changes(self) -> bool:
        return self.double_space_count > 0 or any(getattr(self, s) for s in _SECTIONS.values())

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"path": self.path, "double_space_count": self.double_space_count}
        for section in _SECTIONS.values():
            d[section] = [e.to_dict() for e in getattr(self, section)]
        return d
