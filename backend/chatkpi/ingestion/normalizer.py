"""Format detection and normalization of parsed rows into canonical ChatRecords.

Two input schemas are understood:

- standard: ``conversation_id, tenant_id, timestamp, role, message`` plus the
  optional ``response_time_ms, resolved, satisfaction_score``;
- alternative: ``Content, MessageType, TimeSent, ConversationId`` (keys matched
  case-insensitively), where MessageType 1 is the AI and 3 the tenant.

The schema is decided once per batch from the first row's keys, so a batch
must be homogeneous. Alternative rows are first rewritten into standard rows;
every row then goes through the same validation. Invalid rows never raise:
they are collected as error strings and left out of the output.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping, Sequence

from chatkpi.db.models import ChatRecord, Role
from chatkpi.ingestion.timestamps import parse_timestamp, to_iso

logger = logging.getLogger(__name__)

ALTERNATIVE_FORMAT_KEYS = frozenset({"content", "messagetype", "timesent", "conversationid"})
REQUIRED_FIELDS = ("conversation_id", "tenant_id", "timestamp", "role", "message")
MAX_REPORTED_ERRORS = 5

_MESSAGE_TYPE_ROLES = {1: Role.AI, 3: Role.TENANT}
_RESOLVED_TRUE = frozenset({"true", "1", "yes"})
_ROLES = frozenset(role.value for role in Role)


class InputFormat(StrEnum):
    STANDARD = "standard"
    ALTERNATIVE = "alternative"


class NormalizationError(ValueError):
    """Raised when a batch yields no usable records."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


@dataclass
class NormalizeResult:
    """Accepted records plus every row-level problem found on the way.

    Attributes:
        records: Canonical records, in input order.
        errors: One message per rejected row.
        dropped_count: Alternative-format rows skipped for their MessageType.
        input_format: Schema detected from the first row.
    """

    records: list[ChatRecord]
    errors: list[str] = field(default_factory=list)
    dropped_count: int = 0
    input_format: InputFormat = InputFormat.STANDARD


# ---------------------------------------------------------------------------
# Detection and the alternative-format transform
# ---------------------------------------------------------------------------


def _lower_keys(row: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key).strip().lower(): value for key, value in row.items()}


def detect_format(rows: Sequence[Mapping[str, Any]]) -> InputFormat:
    """Classify a batch by the key set of its first row."""
    if not rows:
        return InputFormat.STANDARD
    keys = set(_lower_keys(rows[0]))
    if ALTERNATIVE_FORMAT_KEYS <= keys:
        return InputFormat.ALTERNATIVE
    return InputFormat.STANDARD


def _parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        pass
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return int(number) if number.is_integer() else None


def transform_alternative_row(row: Mapping[str, Any]) -> dict[str, Any] | None:
    """Rewrite one alternative-format row as a standard row.

    Returns None for rows whose MessageType is neither 1 (ai) nor 3 (tenant);
    system message types are dropped rather than reported.
    """
    fields = _lower_keys(row)
    role = _MESSAGE_TYPE_ROLES.get(_parse_int(fields.get("messagetype")))
    if role is None:
        return None

    conversation_id = fields.get("conversationid")
    time_sent = fields.get("timesent")
    parsed = parse_timestamp(time_sent)
    content = fields.get("content")
    return {
        "conversation_id": conversation_id,
        # This schema carries no tenant identifier; the conversation id stands in.
        "tenant_id": conversation_id,
        "timestamp": to_iso(parsed) if parsed is not None else time_sent,
        "role": role.value,
        "message": content if content is not None else "",
    }


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def parse_resolved(value: Any) -> bool | None:
    """Tri-state parse: absent -> None, bool passthrough, positive-match strings.

    Any non-empty string other than true/1/yes (case-insensitive) is False.
    Values of any other type, numbers included, are absent.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in _RESOLVED_TRUE
    return None


def parse_optional_float(value: Any) -> float | None:
    """Parse a number if present; empty, non-numeric or non-finite input is absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_row(row: Mapping[str, Any], index: int) -> tuple[ChatRecord | None, str | None]:
    """Validate one standard-format row.

    Returns (record, None) on success or (None, error) on rejection. ``index``
    is the 1-based position used in error messages.
    """
    missing = [name for name in REQUIRED_FIELDS if _is_missing(row.get(name))]
    if missing:
        return None, f"Record {index}: Missing required fields: {', '.join(missing)}"

    raw_role = row["role"]
    role = _as_text(raw_role).lower()
    if role not in _ROLES:
        return None, f'Record {index}: Invalid role "{raw_role}". Must be "ai" or "tenant"'

    timestamp = parse_timestamp(row["timestamp"])
    if timestamp is None:
        return None, f'Record {index}: Invalid timestamp "{row["timestamp"]}"'

    response_time_ms = parse_optional_float(row.get("response_time_ms"))
    if response_time_ms is not None and response_time_ms < 0:
        response_time_ms = None

    record = ChatRecord(
        conversation_id=_as_text(row["conversation_id"]),
        tenant_id=_as_text(row["tenant_id"]),
        timestamp=timestamp,
        role=Role(role),
        message=_as_text(row["message"]),
        response_time_ms=response_time_ms,
        resolved=parse_resolved(row.get("resolved")),
        satisfaction_score=parse_optional_float(row.get("satisfaction_score")),
    )
    return record, None


def summarize_errors(errors: Sequence[str], limit: int = MAX_REPORTED_ERRORS) -> str:
    """Join the first ``limit`` errors and count the rest."""
    summary = "\n".join(errors[:limit])
    if len(errors) > limit:
        summary += f"\n... and {len(errors) - limit} more errors"
    return summary


def normalize_rows(rows: Sequence[Mapping[str, Any]]) -> NormalizeResult:
    """Detect the batch schema, transform if needed and validate every row.

    Raises:
        NormalizationError: If the batch is empty or no row survives validation.
    """
    if not rows:
        raise NormalizationError("No records found in file")

    input_format = detect_format(rows)
    dropped_count = 0
    if input_format is InputFormat.ALTERNATIVE:
        candidates: list[Mapping[str, Any]] = []
        for row in rows:
            transformed = transform_alternative_row(row)
            if transformed is None:
                dropped_count += 1
                continue
            candidates.append(transformed)
        logger.info(
            "Alternative format detected: %d rows kept, %d dropped by message type",
            len(candidates),
            dropped_count,
        )
    else:
        candidates = list(rows)

    if not candidates:
        raise NormalizationError("No records found in file")

    records: list[ChatRecord] = []
    errors: list[str] = []
    for index, row in enumerate(candidates, start=1):
        record, error = validate_row(row, index)
        if error is not None:
            errors.append(error)
            continue
        records.append(record)  # type: ignore[arg-type]

    if not records:
        raise NormalizationError(summarize_errors(errors), errors)

    if errors:
        logger.warning("Rejected %d of %d rows during validation", len(errors), len(candidates))

    return NormalizeResult(
        records=records,
        errors=errors,
        dropped_count=dropped_count,
        input_format=input_format,
    )
