from __future__ import annotations

import argparse

from bulk_editor.config import LOG_JSON, LOG_LEVEL


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bulk-editor",
        description="Resolve and rewrite hyperlinks in Word documents in bulk",
    )
    p.add_argument("paths", nargs="+", metavar="FILE_OR_DIR", help="Documents, or folders to scan for documents")
    p.add_argument(
        "--detect-only",
        action="store_true",
        help="Report title mismatches without modifying any document",
    )
    p.add_argument("--rules", default=None, help="JSON file of hyperlink replacement rules")
    p.add_argument("--text-rules", default=None, help="JSON file of text find/replace rules")
    p.add_argument("--no-backup", action="store_true", help="Do not back up documents before writing")
    p.add_argument(
        "--batch-size",
        type=int,
        default=0,
        help="Override BULK_EDITOR_API_BATCH_SIZE",
    )
    p.add_argument(
        "--cross-document-batching",
        action="store_true",
        help="Pool lookup ids across documents before calling the resolution API",
    )
    p.add_argument(
        "--concurrency",
        type=int,
        default=0,
        help="Override the extraction and update worker counts",
    )
    p.add_argument("--changelog-json", default=None, help="Write the structured changelog to this file")
    p.add_argument("--log-level", default=LOG_LEVEL, help="Python logging level (INFO, DEBUG, ...)")
    p.add_argument(
        "--log-json",
        action="store_true",
        default=LOG_JSON,
        help="One JSON object per log record (default: BULK_EDITOR_LOG_JSON)",
    )
    return p
