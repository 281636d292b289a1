"""Bounded multi-stage document pipeline.

validate -> extract -> batch -> resolve -> update -> complete

Stages are linked by bounded ``asyncio.Queue``s, so a slow stage blocks the
one feeding it. Each stage runs its own pool of workers. A document that
fails or is cancelled keeps flowing to completion as a no-op so that every
input path gets exactly one result. Blocking file I/O runs in threads.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field

from bulk_editor.collaborators import BackupService, Cache, ChangelogSink, FileBackupService
from bulk_editor.config import BACKUP_FOLDER
from bulk_editor.documents.reader import HyperlinkReader, validate_document
from bulk_editor.documents.types import ExtractedDocument
from bulk_editor.documents.writer import HyperlinkWriter
from bulk_editor.errors import BulkEditorError, ProcessingCancelled, ResolutionTimeoutError
from bulk_editor.logging_config import generate_run_id
from bulk_editor.models import ReplacementRule, ResolvedRecord, TextReplacementRule
from bulk_editor.pipeline.stats import StatisticsAggregator
from bulk_editor.pipeline.types import (
    DocumentResult,
    PipelineOptions,
    ProgressReport,
    RunResult,
    Stage,
    ValidationSummary,
)
from bulk_editor.resolution.client import BatchProgress, ResolutionClient
from bulk_editor.rewrite.engine import RewriteEngine

logger = logging.getLogger(__name__)

_DONE = object()

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class _Work:
    path: str
    result: DocumentResult
    extracted: ExtractedDocument | None = None
    resolution: Mapping[str, ResolvedRecord] = field(default_factory=dict)

    @property
    def pending(self) -> bool:
        return self.result.status == PENDING


class DocumentPipeline:
    def __init__(
        self,
        *,
        client: ResolutionClient,
        options: PipelineOptions | None = None,
        cache: Cache | None = None,
        backup: BackupService | None = None,
        changelog_sink: ChangelogSink | None = None,
        engine: RewriteEngine | None = None,
    ) -> None:
        self._opts = options or PipelineOptions.from_env()
        self._opts.validate()
        self._client = client
        self._reader = HyperlinkReader(
            cache=cache,
            max_bytes=self._opts.max_file_bytes,
            allowed_extensions=list(self._opts.allowed_extensions),
        )
        self._writer = HyperlinkWriter(cache=cache)
        self._backup = backup if backup is not None else FileBackupService(BACKUP_FOLDER)
        self._changelog_sink = changelog_sink
        self._engine = engine or RewriteEngine()
        self._cancel = asyncio.Event()

        # per-run state, reset by run()
        self._run_id = ""
        self._started = 0.0
        self._total = 0
        self._completed = 0
        self._progress: asyncio.Queue[ProgressReport] | None = None
        self._stats = StatisticsAggregator()
        self._rules: list[ReplacementRule] = []
        self._text_rules: list[TextReplacementRule] = []

    # -- public -----------------------------------------------------------

    def cancel(self) -> None:
        """Stop admitting work; in-flight steps stop at their next checkpoint.

        Called while idle, it cancels the next run. Each run clears it on exit.
        """
        logger.info("Cancellation requested for run %s", self._run_id or "(idle)")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def run(
        self,
        paths: Iterable[str],
        *,
        rules: Iterable[ReplacementRule] = (),
        text_rules: Iterable[TextReplacementRule] = (),
        progress: asyncio.Queue[ProgressReport] | None = None,
    ) -> RunResult:
        unique = list(dict.fromkeys(str(p) for p in paths))
        loop = asyncio.get_running_loop()

        self._run_id = generate_run_id()
        self._started = loop.time()
        self._total = len(unique)
        self._completed = 0
        self._progress = progress
        self._rules = [r for r in rules if r.enabled]
        self._text_rules = [r for r in text_rules if r.is_valid()]
        self._stats = StatisticsAggregator()
        self._stats.start()
        self._stats.add(total_documents=len(unique))

        logger.info("Run %s: %d documents (detect_only=%s)", self._run_id, len(unique), self._opts.detect_only)

        cap = self._opts.bounded_capacity
        q_validate: asyncio.Queue = asyncio.Queue(maxsize=cap)
        q_extract: asyncio.Queue = asyncio.Queue(maxsize=cap)
        q_batch: asyncio.Queue = asyncio.Queue(maxsize=cap)
        q_resolve: asyncio.Queue = asyncio.Queue(maxsize=cap)
        q_update: asyncio.Queue = asyncio.Queue(maxsize=cap)
        q_complete: asyncio.Queue = asyncio.Queue(maxsize=cap)
        results: list[DocumentResult] = []

        async def feed() -> None:
            for p in unique:
                await q_validate.put(
                    _Work(path=p, result=DocumentResult(path=p, status=PENDING, stage=Stage.FILE_VALIDATION))
                )
            await q_validate.put(_DONE)

        try:
            opts = self._opts
            await asyncio.gather(
                feed(),
                self._stage(Stage.FILE_VALIDATION, q_validate, q_extract, opts.validation_workers, self._validate),
                self._stage(Stage.HYPERLINK_EXTRACTION, q_extract, q_batch, opts.extraction_workers, self._extract),
                self._batcher(q_batch, q_resolve),
                self._resolver(q_resolve, q_update),
                self._stage(Stage.DOCUMENT_UPDATE, q_update, q_complete, opts.update_workers, self._update),
                self._completer(q_complete, results),
            )
            cancelled = self.cancelled
        finally:
            # a cancel applies to the run it interrupts (or the next one), never beyond
            self._cancel.clear()

        stats = await self._stats.close()
        stats.elapsed_seconds = loop.time() - self._started

        if cancelled:
            status = CANCELLED
        elif any(r.status == FAILED for r in results):
            status = FAILED
        else:
            status = COMPLETED
        run = RunResult(run_id=self._run_id, status=status, documents=results, statistics=stats)

        if self._progress is not None:
            # the final report is never dropped; consumers wait for it
            await self._progress.put(
                self._make_report(
                    Stage.COMPLETION,
                    "",
                    f"Run {status}: {run.summary()}",
                    success=status != FAILED,
                    is_final=True,
                )
            )
        logger.info("Run %s %s: %s in %.2fs", self._run_id, status, run.summary(), stats.elapsed_seconds)
        return run

    async def validate_documents(self, paths: Iterable[str]) -> ValidationSummary:
        """Run only the file-validation checks over ``paths``."""
        unique = list(dict.fromkeys(str(p) for p in paths))
        summary = ValidationSummary(total=len(unique))
        sem = asyncio.Semaphore(self._opts.validation_workers)

        async def check(p: str) -> None:
            async with sem:
                try:
                    await asyncio.to_thread(
                        validate_document,
                        p,
                        max_bytes=self._opts.max_file_bytes,
                        allowed_extensions=list(self._opts.allowed_extensions),
                    )
                except BulkEditorError as e:
                    summary.invalid += 1
                    summary.messages[p] = str(e)
                else:
                    summary.valid += 1
                    summary.messages[p] = "ok"

        await asyncio.gather(*(check(p) for p in unique))
        return summary

    # -- stage plumbing ---------------------------------------------------

    async def _stage(
        self,
        stage: Stage,
        inbox: asyncio.Queue,
        outbox: asyncio.Queue,
        workers: int,
        handler: Callable[[_Work], Awaitable[None]],
    ) -> None:
        async def worker() -> None:
            while True:
                work = await inbox.get()
                if work is _DONE:
                    await inbox.put(_DONE)  # let sibling workers see it
                    return
                await self._step(stage, work, handler)
                await outbox.put(work)

        await asyncio.gather(*(worker() for _ in range(workers)))
        await outbox.put(_DONE)

    async def _step(self, stage: Stage, work: _Work, handler: Callable[[_Work], Awaitable[None]]) -> None:
        if not work.pending:
            return
        if self.cancelled:
            self._mark(work, CANCELLED, stage)
            return
        work.result.stage = stage
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        try:
            await asyncio.wait_for(handler(work), timeout=self._opts.stage_timeout_seconds)
        except ProcessingCancelled:
            self._mark(work, CANCELLED, stage)
        except TimeoutError:
            self._fail(work, stage, "TimeoutError", f"{stage.value} exceeded {self._opts.stage_timeout_seconds}s")
        except BulkEditorError as e:
            self._fail(work, stage, type(e).__name__, str(e))
        except Exception as e:
            logger.exception("Unexpected error in %s for %s", stage.value, work.path)
            self._fail(work, stage, type(e).__name__, str(e))
        finally:
            self._stats.add_stage_time(stage.value, loop.time() - t0)

    def _mark(self, work: _Work, status: str, stage: Stage) -> None:
        work.result.status = status
        work.result.stage = stage

    def _fail(self, work: _Work, stage: Stage, error_type: str, message: str) -> None:
        logger.error("%s failed at %s: %s: %s", work.path, stage.value, error_type, message)
        self._mark(work, FAILED, Stage.ERROR)
        work.result.error_type = error_type
        work.result.error_message = f"{stage.value}: {message}"
        self._report(Stage.ERROR, work.path, message, success=False)

    def _make_report(
        self, stage: Stage, path: str, message: str, *, success: bool = True, is_final: bool = False
    ) -> ProgressReport:
        return ProgressReport(
            run_id=self._run_id,
            stage=stage,
            current_file=path,
            message=message,
            processed_count=self._completed,
            total_count=self._total,
            elapsed_seconds=asyncio.get_running_loop().time() - self._started,
            success=success,
            is_final=is_final,
        )

    def _report(self, stage: Stage, path: str, message: str, *, success: bool = True) -> None:
        """Intermediate reports are best-effort: a full queue drops them."""
        if self._progress is None:
            return
        try:
            self._progress.put_nowait(self._make_report(stage, path, message, success=success))
        except asyncio.QueueFull:
            logger.debug("Progress queue full; dropped report for %s", path or stage.value)

    # -- stage handlers ---------------------------------------------------

    async def _validate(self, work: _Work) -> None:
        await asyncio.to_thread(
            validate_document,
            work.path,
            max_bytes=self._opts.max_file_bytes,
            allowed_extensions=list(self._opts.allowed_extensions),
        )
        self._report(Stage.FILE_VALIDATION, work.path, "Validated")

    async def _extract(self, work: _Work) -> None:
        work.extracted = await asyncio.to_thread(self._reader.read, work.path)
        n = len(work.extracted.hyperlinks)
        work.result.hyperlinks_found = n
        self._stats.add(hyperlinks_processed=n)
        self._report(Stage.HYPERLINK_EXTRACTION, work.path, f"Extracted {n} hyperlinks")

    async def _batcher(self, inbox: asyncio.Queue, outbox: asyncio.Queue) -> None:
        """Group documents for resolution.

        Per-document mode forwards each document alone. Cross-document mode
        holds documents until their combined ids fill an API batch (or the
        input ends), then forwards them as one group.
        """
        group: list[_Work] = []
        ids: set[str] = set()
        while True:
            work = await inbox.get()
            if work is _DONE:
                break
            if not work.pending or not self._opts.cross_document_batching:
                await outbox.put([work])
                continue
            group.append(work)
            ids.update(work.extracted.lookup_ids() if work.extracted else ())
            if len(ids) >= self._opts.api_batch_size:
                await outbox.put(group)
                group, ids = [], set()
        if group:
            await outbox.put(group)
        await outbox.put(_DONE)

    async def _resolver(self, inbox: asyncio.Queue, outbox: asyncio.Queue) -> None:
        async def worker() -> None:
            while True:
                group = await inbox.get()
                if group is _DONE:
                    await inbox.put(_DONE)
                    return
                await self._resolve_group(group)
                for work in group:
                    await outbox.put(work)

        await asyncio.gather(*(worker() for _ in range(self._opts.api_workers)))
        await outbox.put(_DONE)

    async def _resolve_group(self, group: list[_Work]) -> None:
        live = [w for w in group if w.pending]
        if not live:
            return
        if self.cancelled:
            for w in live:
                self._mark(w, CANCELLED, Stage.API_PROCESSING)
            return

        ids: dict[str, None] = {}
        has_links = False
        for w in live:
            w.result.stage = Stage.API_PROCESSING
            if w.extracted is None:
                continue
            has_links = has_links or bool(w.extracted.hyperlinks)
            for i in w.extracted.lookup_ids():
                ids.setdefault(i, None)
        if has_links:
            for rule in self._rules:
                ids.setdefault(rule.replace_text, None)
        if not ids:
            return

        label = live[0].path if len(live) == 1 else f"{len(live)} documents"

        def on_batch(p: BatchProgress) -> None:
            self._report(
                Stage.API_PROCESSING,
                label,
                f"Batch {p.completed_batches}/{p.total_batches} ({p.processed_items}/{p.total_items} ids)",
            )

        loop = asyncio.get_running_loop()
        t0 = loop.time()
        try:
            res = await asyncio.wait_for(
                self._client.resolve(
                    list(ids),
                    self._opts.api_batch_size,
                    progress=on_batch,
                    cancel_event=self._cancel,
                ),
                timeout=self._opts.stage_timeout_seconds,
            )
        except ProcessingCancelled:
            for w in live:
                self._mark(w, CANCELLED, Stage.API_PROCESSING)
            return
        except TimeoutError:
            err = ResolutionTimeoutError(f"resolution exceeded {self._opts.stage_timeout_seconds}s")
            for w in live:
                self._fail(w, Stage.API_PROCESSING, type(err).__name__, str(err))
            return
        finally:
            self._stats.add_stage_time(Stage.API_PROCESSING.value, loop.time() - t0)

        self._stats.add(
            api_calls=res.api_calls,
            api_batches_succeeded=res.succeeded_batches,
            api_batches_failed=res.failed_batches,
        )
        if res.failed_batches:
            logger.warning(
                "%d/%d resolution batches failed for %s; missing ids are treated as not found",
                res.failed_batches,
                res.total_batches,
                label,
            )
        for w in live:
            w.resolution = res.records

    async def _update(self, work: _Work) -> None:
        assert work.extracted is not None
        if self._opts.detect_only:
            work.result.changelog = self._engine.detect(work.extracted, work.resolution)
            self._report(
                Stage.DOCUMENT_UPDATE,
                work.path,
                f"{len(work.result.changelog.title_mismatches)} title mismatches found",
            )
            return

        rewritten = self._engine.rewrite(work.extracted, work.resolution, self._rules)
        work.result.changelog = rewritten.changelog
        s = rewritten.stats
        self._stats.add(
            titles_updated=s.titles_updated,
            content_ids_appended=s.content_ids_appended,
            status_markers_applied=s.status_markers_applied,
            invisible_removed=s.invisible_removed,
            whitespace_fixes=s.whitespace_fixes,
            replaced_hyperlinks=s.replaced_hyperlinks,
        )

        changed = [h for h in rewritten.hyperlinks if h.element_id in rewritten.changed_ids]
        removed_ids = [h.element_id for h in rewritten.removed]
        if not changed and not removed_ids and not self._text_rules:
            self._report(Stage.DOCUMENT_UPDATE, work.path, "No changes")
            return

        if self.cancelled:
            raise ProcessingCancelled(work.path)

        if self._opts.create_backups:
            work.result.backup_path = await asyncio.to_thread(self._backup.create_backup, work.path)

        written = await asyncio.to_thread(
            self._writer.write,
            work.path,
            changed,
            removed_ids=removed_ids,
            text_rules=self._text_rules,
        )
        rewritten.changelog.extend(written.text_entries)
        work.result.hyperlinks_updated = written.hyperlinks_updated
        work.result.hyperlinks_removed = written.hyperlinks_removed
        work.result.text_replacements = written.text_replacements
        self._stats.add(hyperlinks_updated=written.hyperlinks_updated, text_replacements=written.text_replacements)
        self._report(
            Stage.DOCUMENT_UPDATE,
            work.path,
            f"Updated {written.hyperlinks_updated} hyperlinks, replaced text in {written.text_replacements} runs",
        )

    async def _completer(self, inbox: asyncio.Queue, results: list[DocumentResult]) -> None:
        while True:
            work = await inbox.get()
            if work is _DONE:
                return
            r = work.result
            if r.status == PENDING:
                r.status = COMPLETED
                r.stage = Stage.COMPLETION
            self._completed += 1
            if r.status == COMPLETED:
                self._stats.add(processed_documents=1)
            elif r.status == FAILED:
                self._stats.add(failed_documents=1)
            else:
                self._stats.add(cancelled_documents=1)
            if r.changelog is not None and self._changelog_sink is not None:
                self._changelog_sink.record(r.changelog)
            results.append(r)
            self._report(Stage.COMPLETION, work.path, r.status, success=r.status != FAILED)
