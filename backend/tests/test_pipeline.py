"""Tests for chatkpi.ingestion.pipeline: upload ingestion.

ingest_upload is a plain async function taking the repositories as
dependency injection.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from chatkpi.db.models import UploadStatus
from chatkpi.db.repositories import Repositories
from chatkpi.db.sqlite import SQLiteDB
from chatkpi.ingestion import pipeline
from chatkpi.ingestion.pipeline import IngestionError, ingest_upload


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def repos(tmp_path: Path) -> Repositories:
    """Repositories over a fresh SQLiteDB."""
    return Repositories.from_db(SQLiteDB(str(tmp_path / "test.db")))


@pytest.fixture
def client_id(repos: Repositories) -> str:
    return repos.clients.create(name="Acme").id


STANDARD_CSV = (
    "conversation_id,tenant_id,timestamp,role,message,response_time_ms,resolved,satisfaction_score\n"
    'conv_001,tenant_123,2024-01-15T10:00:00Z,tenant,"hi",,,\n'
    'conv_001,tenant_123,2024-01-15T10:01:03Z,ai,"hello",3000,true,4\n'
).encode("utf-8")

ALTERNATIVE_JSON = json.dumps(
    [
        {"Content": "hi", "MessageType": 3, "TimeSent": "2025-03-24 08:39:41", "ConversationId": "c1"},
        {"Content": "system note", "MessageType": 5, "TimeSent": "2025-03-24 08:39:42", "ConversationId": "c1"},
        {"Content": "hello", "MessageType": 1, "TimeSent": "2025-03-24 08:40:00", "ConversationId": "c1"},
        {"Content": "typing", "MessageType": 6, "TimeSent": "2025-03-24 08:40:01", "ConversationId": "c1"},
    ]
).encode("utf-8")


# ---------------------------------------------------------------------------
# Successful ingestion
# ---------------------------------------------------------------------------


class TestIngestStandardCSV:
    """A standard CSV upload produces records, a conversation and a SUCCESS upload."""

    async def test_conversation_derived(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)

        assert result.success is True
        assert result.records_count == 2
        assert result.conversations_count == 1
        assert result.input_format == "standard"

        conversation = repos.conversations.get("conv_001")
        assert conversation.message_count == 2
        assert conversation.resolved is True
        assert conversation.satisfaction_score == 4
        assert conversation.duration == 63
        assert conversation.client_id == client_id
        assert conversation.upload_id == result.upload_id

    async def test_upload_marked_success(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)
        upload = repos.uploads.get(result.upload_id)
        assert upload.status is UploadStatus.SUCCESS
        assert upload.records_count == 2
        assert upload.file_size == len(STANDARD_CSV)
        assert upload.filename == "chats.csv"

    async def test_records_tagged(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)
        records = repos.messages.query(client_id=client_id)
        assert len(records) == 2
        assert {r.upload_id for r in records} == {result.upload_id}


class TestIngestAlternativeJSON:
    async def test_alternative_format(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "export.json", ALTERNATIVE_JSON, client_id)

        assert result.success is True
        assert result.input_format == "alternative"
        assert result.records_count == 2
        assert result.dropped_count == 2

        records = repos.messages.query(client_id=client_id)
        assert [r.role.value for r in records] == ["tenant", "ai"]
        assert records[0].tenant_id == "c1"
        assert records[0].timestamp == datetime(2025, 3, 24, 8, 39, 41, tzinfo=timezone.utc)


class TestPartialFailures:
    """Row-level errors are surfaced as warnings next to the stored records."""

    async def test_warnings_reported(self, repos: Repositories, client_id: str):
        content = STANDARD_CSV + b"conv_002,tenant_9,2024-01-15T11:00:00Z,bot,hey,,,\n"
        result = await ingest_upload(repos, "chats.csv", content, client_id)

        assert result.success is True
        assert result.records_count == 2
        assert result.warnings == ['Record 3: Invalid role "bot". Must be "ai" or "tenant"']
        assert repos.uploads.get(result.upload_id).warnings == result.warnings
        assert repos.conversations.get("conv_002") is None


class TestReupload:
    """A later upload replaces conversations wholesale (last write wins)."""

    async def test_last_write_wins(self, repos: Repositories, client_id: str):
        await ingest_upload(repos, "first.csv", STANDARD_CSV, client_id)
        second = (
            b"conversation_id,tenant_id,timestamp,role,message\n"
            b"conv_001,tenant_123,2024-02-01T09:00:00Z,tenant,again\n"
        )
        result = await ingest_upload(repos, "second.csv", second, client_id)

        conversation = repos.conversations.get("conv_001")
        assert conversation.message_count == 1
        assert conversation.resolved is False
        assert conversation.upload_id == result.upload_id
        # Messages are append-only.
        assert repos.messages.count(client_id) == 3
        assert len(repos.messages.get_by_conversation("conv_001", result.upload_id)) == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestRejectedUploads:
    async def test_unsupported_extension(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "chats.xlsx", b"data", client_id)
        assert result.success is False
        assert result.upload_id is None
        assert "Invalid file type" in result.error
        assert repos.uploads.list_all() == []

    async def test_parse_error_marks_failed(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "bad.json", b'[{"a": 1},', client_id)
        assert result.success is False
        assert "Invalid JSON format" in result.error
        upload = repos.uploads.get(result.upload_id)
        assert upload.status is UploadStatus.FAILED
        assert upload.error_message == result.error
        assert repos.messages.count() == 0

    async def test_empty_file(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "empty.csv", b"", client_id)
        assert result.success is False
        assert result.error == "No records found in file"

    async def test_all_rows_invalid(self, repos: Repositories, client_id: str):
        content = b"conversation_id,tenant_id,timestamp,role,message\nc1,t1,2024-01-15T10:00:00Z,bot,hi\n"
        result = await ingest_upload(repos, "bad.csv", content, client_id)
        assert result.success is False
        assert result.error == 'Record 1: Invalid role "bot". Must be "ai" or "tenant"'
        assert result.warnings == [result.error]
        assert repos.uploads.get(result.upload_id).status is UploadStatus.FAILED


class TestStorageFailure:
    """Failures after validation mark the upload FAILED and propagate."""

    async def test_aggregation_error_propagates(
        self, repos: Repositories, client_id: str, monkeypatch
    ):
        def boom(*args, **kwargs):
            raise RuntimeError("aggregation exploded")

        monkeypatch.setattr(pipeline, "aggregate_conversations", boom)

        with pytest.raises(IngestionError, match="aggregation exploded") as exc_info:
            await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)

        upload = repos.uploads.get(exc_info.value.upload_id)
        assert upload.status is UploadStatus.FAILED
        assert upload.error_message == "aggregation exploded"
        assert repos.messages.count() == 0

    async def test_earlier_batches_untouched(
        self, repos: Repositories, client_id: str, monkeypatch
    ):
        await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)
        monkeypatch.setattr(pipeline, "aggregate_conversations", lambda *a, **k: 1 / 0)

        with pytest.raises(IngestionError):
            await ingest_upload(repos, "more.csv", STANDARD_CSV, client_id)

        assert repos.messages.count() == 2
        assert repos.conversations.get("conv_001") is not None

    async def test_failed_reupload_keeps_stored_conversation(
        self, repos: Repositories, client_id: str, monkeypatch
    ):
        first = await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)

        def fail_append(records):
            raise RuntimeError("disk full")

        monkeypatch.setattr(repos.messages, "append", fail_append)
        reupload = STANDARD_CSV.replace(b"tenant_123", b"tenant_999").replace(b"true", b"false")

        with pytest.raises(IngestionError, match="disk full") as exc_info:
            await ingest_upload(repos, "again.csv", reupload, client_id)

        conversation = repos.conversations.get("conv_001")
        assert conversation.upload_id == first.upload_id
        assert conversation.tenant_id == "tenant_123"
        assert conversation.message_count == 2
        assert conversation.resolved is True
        assert len(repos.messages.get_by_conversation("conv_001", conversation.upload_id)) == 2

        failed = repos.uploads.get(exc_info.value.upload_id)
        assert failed.status is UploadStatus.FAILED
        assert failed.error_message == "disk full"
        assert repos.uploads.get(first.upload_id).status is UploadStatus.SUCCESS

    async def test_failed_success_transition_rolls_back_batch(
        self, repos: Repositories, client_id: str, monkeypatch
    ):
        def fail_mark_success(*args, **kwargs):
            raise RuntimeError("status write failed")

        monkeypatch.setattr(repos.uploads, "mark_success", fail_mark_success)

        with pytest.raises(IngestionError):
            await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)

        assert repos.messages.count() == 0
        assert repos.conversations.count() == 0


class TestRawFileCopy:
    async def test_saved_under_client_dir(self, repos: Repositories, client_id: str, tmp_path: Path):
        upload_dir = tmp_path / "uploads"
        result = await ingest_upload(repos, "../chats.csv", STANDARD_CSV, client_id, upload_dir=upload_dir)

        saved = upload_dir / client_id / f"{result.upload_id}_chats.csv"
        assert saved.read_bytes() == STANDARD_CSV

    async def test_to_dict_camel_case(self, repos: Repositories, client_id: str):
        result = await ingest_upload(repos, "chats.csv", STANDARD_CSV, client_id)
        body = result.to_dict()
        assert body["success"] is True
        assert body["recordsCount"] == 2
        assert body["conversationsCount"] == 1
        assert body["format"] == "standard"
        assert "error" not in body
