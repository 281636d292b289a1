from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from bulk_editor.rewrite.changelog import ChangeEntry

PAGE_HINT_LINES = 50


def page_hint(line_number: int) -> int:
    """Coarse page number for a 1-based line ordinal.

    Not real pagination: one "line" is a hyperlink (reader) or a text run
    (text replacement), and a page is every 50 of them.
    """
    if line_number < 1:
        return 1
    return (line_number - 1) // PAGE_HINT_LINES + 1


@dataclass(eq=False)
class HyperlinkRecord:
    address: str
    sub_address: str
    display_text: str
    element_id: str  # "hl-<ordinal>"; join key for write-back
    title: str = ""
    content_id: str = ""
    document_id: str = ""
    status: str = ""
    lookup_id: str = ""
    page_number: int = 1  # positional hint, see page_hint()
    line_number: int = 0

    @property
    def is_internal(self) -> bool:
        return not self.address and bool(self.sub_address)

    def key(self) -> tuple[str, str, str, int, int]:
        """Deduplication / logging identity."""
        return (
            self.address,
            self.sub_address,
            self.display_text,
            self.page_number,
            self.line_number,
        )

    def copy(self) -> HyperlinkRecord:
        return dataclasses.replace(self)

    def restore(self, snapshot: HyperlinkRecord) -> None:
        for f in dataclasses.fields(self):
            setattr(self, f.name, getattr(snapshot, f.name))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HyperlinkRecord):
            return NotImplemented
        return self.key() == other.key()

    __hash__ = None  # type: ignore[assignment]


@dataclass
class ExtractedDocument:
    path: str
    hyperlinks: list[HyperlinkRecord]
    bookmarks: frozenset[str] = frozenset()
    from_cache: bool = False

    def lookup_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for h in self.hyperlinks:
            if h.lookup_id:
                seen.setdefault(h.lookup_id, None)
        return list(seen)


@dataclass(frozen=True)
class WriteResult:
    path: str
    hyperlinks_updated: int
    hyperlinks_removed: int
    text_replacements: int
    saved: bool
    text_entries: list[ChangeEntry] = field(default_factory=list)
