from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from bulk_editor.config import (
    ALLOWED_EXTENSIONS,
    API_BATCH_SIZE,
    API_WORKERS,
    BOUNDED_CAPACITY,
    CREATE_BACKUPS,
    CROSS_DOCUMENT_BATCHING,
    EXTRACTION_WORKERS,
    MAX_FILE_BYTES,
    STAGE_TIMEOUT_SECONDS,
    UPDATE_WORKERS,
    VALIDATION_WORKERS,
)
from bulk_editor.rewrite.changelog import DocumentChangelog


class Stage(str, Enum):
    FILE_VALIDATION = "FileValidation"
    HYPERLINK_EXTRACTION = "HyperlinkExtraction"
    API_PROCESSING = "ApiProcessing"
    DOCUMENT_UPDATE = "DocumentUpdate"
    COMPLETION = "Completion"
    ERROR = "Error"


@dataclass(frozen=True)
class ProgressReport:
    run_id: str
    stage: Stage
    current_file: str
    message: str
    processed_count: int
    total_count: int
    elapsed_seconds: float
    success: bool = True
    is_final: bool = False


@dataclass(frozen=True)
class PipelineOptions:
    # Worker pools
    validation_workers: int
    extraction_workers: int
    api_workers: int
    update_workers: int

    # Flow control
    bounded_capacity: int
    stage_timeout_seconds: float

    # Resolution
    api_batch_size: int
    cross_document_batching: bool

    # Behaviour
    detect_only: bool
    create_backups: bool
    max_file_bytes: int
    allowed_extensions: tuple[str, ...]

    @classmethod
    def from_env(cls) -> PipelineOptions:
        return cls(
            validation_workers=VALIDATION_WORKERS,
            extraction_workers=EXTRACTION_WORKERS,
            api_workers=API_WORKERS,
            update_workers=UPDATE_WORKERS,
            bounded_capacity=BOUNDED_CAPACITY,
            stage_timeout_seconds=STAGE_TIMEOUT_SECONDS,
            api_batch_size=API_BATCH_SIZE,
            cross_document_batching=CROSS_DOCUMENT_BATCHING,
            detect_only=False,
            create_backups=CREATE_BACKUPS,
            max_file_bytes=MAX_FILE_BYTES,
            allowed_extensions=tuple(ALLOWED_EXTENSIONS),
        )

    def validate(self) -> None:
        for name in ("validation_workers", "extraction_workers", "api_workers", "update_workers"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.bounded_capacity < 1:
            raise ValueError("BULK_EDITOR_BOUNDED_CAPACITY must be >= 1")
        if self.stage_timeout_seconds <= 0:
            raise ValueError("BULK_EDITOR_STAGE_TIMEOUT_SECONDS must be > 0")
        if self.api_batch_size < 1:
            raise ValueError("BULK_EDITOR_API_BATCH_SIZE must be >= 1")
        if not self.allowed_extensions:
            raise ValueError("BULK_EDITOR_ALLOWED_EXTENSIONS was set but parsed as empty")


@dataclass
class DocumentResult:
    path: str
    status: str  # completed|failed|cancelled
    stage: Stage
    hyperlinks_found: int = 0
    hyperlinks_updated: int = 0
    hyperlinks_removed: int = 0
    text_replacements: int = 0
    backup_path: str | None = None
    changelog: DocumentChangelog | None = None
    error_type: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


@dataclass
class RunStatistics:
    total_documents: int = 0
    processed_documents: int = 0
    failed_documents: int = 0
    cancelled_documents: int = 0
    hyperlinks_processed: int = 0
    hyperlinks_updated: int = 0
    titles_updated: int = 0
    content_ids_appended: int = 0
    status_markers_applied: int = 0
    invisible_removed: int = 0
    whitespace_fixes: int = 0
    replaced_hyperlinks: int = 0
    text_replacements: int = 0
    api_calls: int = 0
    api_batches_succeeded: int = 0
    api_batches_failed: int = 0
    elapsed_seconds: float = 0.0
    stage_seconds: dict[str, float] = field(default_factory=dict)


@dataclass
class RunResult:
    run_id: str
    status: str  # completed|failed|cancelled
    documents: list[DocumentResult]
    statistics: RunStatistics

    @property
    def succeeded(self) -> list[DocumentResult]:
        return [d for d in self.documents if d.succeeded]

    @property
    def failed(self) -> list[DocumentResult]:
        return [d for d in self.documents if d.status == "failed"]

    def summary(self) -> str:
        return f"{len(self.succeeded)}/{len(self.documents)} files succeeded"


@dataclass
class ValidationSummary:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    messages: dict[str, str] = field(default_factory=dict)
