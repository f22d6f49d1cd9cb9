"""Upload ingestion: parse, normalize, aggregate and persist one file.

Plain async function taking the repositories as a parameter for dependency
injection. Each call owns exactly one UploadRecord, created in PROCESSING
and moved once to SUCCESS or FAILED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatkpi.analytics.conversations import aggregate_conversations
from chatkpi.db.repositories import Repositories
from chatkpi.ingestion.normalizer import NormalizationError, normalize_rows
from chatkpi.ingestion.parsers import ParseError, file_type_for, parse_bytes
from chatkpi.security import safe_filename, secure_directory, secure_file

logger = logging.getLogger(__name__)

INVALID_FILE_TYPE = "Invalid file type. Only CSV and JSON files are supported"


class IngestionError(RuntimeError):
    """Raised when a parsed batch could not be aggregated or stored."""

    def __init__(self, message: str, upload_id: str) -> None:
        super().__init__(message)
        self.upload_id = upload_id


@dataclass
class IngestResult:
    """Outcome of one ingestion call.

    Attributes:
        success: Whether the batch was stored.
        records_count: Canonical records stored.
        conversations_count: Conversations written (created or replaced).
        upload_id: Audit entry id; None when rejected before one was created.
        error: Human-readable failure message.
        warnings: Parser warnings and row-level validation errors.
        dropped_count: Alternative-format rows skipped for their message type.
        input_format: Detected input schema ('standard' / 'alternative').
    """

    success: bool
    records_count: int = 0
    conversations_count: int = 0
    upload_id: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    dropped_count: int = 0
    input_format: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "recordsCount": self.records_count,
            "conversationsCount": self.conversations_count,
            "uploadId": self.upload_id,
            "warnings": self.warnings,
            "droppedCount": self.dropped_count,
            "format": self.input_format,
        }
        if self.error is not None:
            body["error"] = self.error
        return body


def _save_raw(upload_dir: Path, client_id: str, upload_id: str, name: str, content: bytes) -> Path:
    """Keep a copy of the uploaded bytes under upload_dir/<client_id>/."""
    target_dir = upload_dir / safe_filename(client_id)
    secure_directory(target_dir)
    path = target_dir / f"{upload_id}_{name}"
    path.write_bytes(content)
    secure_file(path)
    return path


async def ingest_upload(
    repos: Repositories,
    filename: str,
    content: bytes,
    client_id: str,
    upload_dir: Path | None = None,
) -> IngestResult:
    """Ingest one uploaded CSV/JSON file for a client.

    Parse and validation failures mark the upload FAILED and come back as an
    unsuccessful IngestResult. Failures while storing the batch also mark it
    FAILED, then raise IngestionError. Conversations, messages and the SUCCESS
    transition are written in one transaction, so a failed batch leaves the
    conversations stored by earlier uploads as they were.
    """
    file_type = file_type_for(filename)
    if file_type is None:
        return IngestResult(success=False, error=INVALID_FILE_TYPE)

    name = safe_filename(filename)
    upload = repos.uploads.create(client_id=client_id, filename=name, file_size=len(content))
    logger.info(
        "Upload %s created for client %s (%s, %d bytes)", upload.id, client_id, name, len(content)
    )

    try:
        parsed = parse_bytes(content, file_type)
        normalized = normalize_rows(parsed.rows)
    except (ParseError, NormalizationError) as exc:
        logger.warning("Upload %s rejected: %s", upload.id, exc)
        repos.uploads.mark_failed(upload.id, str(exc))
        row_errors = exc.errors if isinstance(exc, NormalizationError) else []
        return IngestResult(success=False, upload_id=upload.id, error=str(exc), warnings=row_errors)

    warnings = [*parsed.warnings, *normalized.errors]
    records = [
        record.model_copy(update={"client_id": client_id, "upload_id": upload.id})
        for record in normalized.records
    ]

    try:
        if upload_dir is not None:
            _save_raw(upload_dir, client_id, upload.id, name, content)
        conversations = aggregate_conversations(records, client_id=client_id, upload_id=upload.id)
        with repos.transaction():
            for conversation in conversations:
                repos.conversations.upsert(conversation)
            repos.messages.append(records)
            repos.uploads.mark_success(upload.id, len(records), warnings or None)
    except Exception as exc:
        logger.exception("Upload %s failed while storing conversations", upload.id)
        message = str(exc) or exc.__class__.__name__
        repos.uploads.mark_failed(upload.id, message)
        raise IngestionError(message, upload.id) from exc

    logger.info(
        "Upload %s stored %d records in %d conversations (%s format, %d warnings)",
        upload.id,
        len(records),
        len(conversations),
        normalized.input_format,
        len(warnings),
    )
    return IngestResult(
        success=True,
        records_count=len(records),
        conversations_count=len(conversations),
        upload_id=upload.id,
        warnings=warnings,
        dropped_count=normalized.dropped_count,
        input_format=normalized.input_format.value,
    )
