from __future__ import annotations

import asyncio
import dataclasses
import logging
import signal
from pathlib import Path

from bulk_editor.cli import build_parser
from bulk_editor.collaborators import JsonChangelogSink, MemoryCache
from bulk_editor.errors import ValidationError
from bulk_editor.logging_config import setup_logging
from bulk_editor.models import load_replacement_rules, load_text_rules
from bulk_editor.pipeline.orchestrator import DocumentPipeline
from bulk_editor.pipeline.types import PipelineOptions, ProgressReport
from bulk_editor.resolution.client import ResolutionClient

EXIT_OK = 0
EXIT_FAILED = 2
EXIT_CANCELLED = 130


def expand_paths(inputs: list[str], allowed_extensions: tuple[str, ...]) -> list[str]:
    """Files pass through as given; folders expand to their allowed documents."""
    out: list[str] = []
    for raw in inputs:
        p = Path(raw)
        if p.is_dir():
            out.extend(
                str(f)
                for f in sorted(p.rglob("*"))
                if f.is_file() and f.suffix.lower() in allowed_extensions and not f.name.startswith("~$")
            )
        else:
            out.append(raw)
    return out


async def _log_progress(queue: asyncio.Queue[ProgressReport], logger: logging.Logger) -> None:
    while True:
        report = await queue.get()
        logger.info(
            "[%s] %d/%d %s %s",
            report.stage.value,
            report.processed_count,
            report.total_count,
            report.current_file,
            report.message,
        )
        if report.is_final:
            return


async def _amain() -> int:
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(level=args.log_level.upper(), json=args.log_json)
    logger = logging.getLogger("bulk_editor")

    opts = PipelineOptions.from_env()
    overrides: dict[str, object] = {"detect_only": bool(args.detect_only)}
    if args.no_backup:
        overrides["create_backups"] = False
    if args.batch_size and args.batch_size > 0:
        overrides["api_batch_size"] = args.batch_size
    if args.cross_document_batching:
        overrides["cross_document_batching"] = True
    if args.concurrency and args.concurrency > 0:
        overrides["extraction_workers"] = args.concurrency
        overrides["update_workers"] = args.concurrency
    opts = dataclasses.replace(opts, **overrides)
    opts.validate()

    try:
        rules = load_replacement_rules(args.rules) if args.rules else []
        text_rules = load_text_rules(args.text_rules) if args.text_rules else []
    except ValidationError as e:
        parser.error(str(e))

    paths = expand_paths(args.paths, opts.allowed_extensions)
    if not paths:
        logger.warning("No documents to process. Exiting.")
        return EXIT_OK

    sink = JsonChangelogSink()
    pipeline = DocumentPipeline(
        client=ResolutionClient(batch_size=opts.api_batch_size),
        options=opts,
        cache=MemoryCache(),
        changelog_sink=sink,
    )

    loop = asyncio.get_running_loop()
    handled = False
    try:
        loop.add_signal_handler(signal.SIGINT, pipeline.cancel)
        handled = True
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unsupported here; Ctrl-C aborts immediately")

    progress: asyncio.Queue[ProgressReport] = asyncio.Queue()
    printer = asyncio.create_task(_log_progress(progress, logger))
    try:
        result = await pipeline.run(paths, rules=rules, text_rules=text_rules, progress=progress)
        await printer
    finally:
        if handled:
            loop.remove_signal_handler(signal.SIGINT)

    if args.changelog_json:
        sink.write(args.changelog_json)
        logger.info("Changelog written to %s", args.changelog_json)

    for doc in result.failed:
        logger.error("FAILED %s: %s", doc.path, doc.error_message)
    logger.info("DONE %s stats=%s", result.summary(), dataclasses.asdict(result.statistics))

    if result.status == "cancelled":
        return EXIT_CANCELLED
    return EXIT_OK if not result.failed else EXIT_FAILED


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
