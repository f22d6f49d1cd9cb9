"""KPI calculation over canonical records and conversations.

calculate_kpis() is a pure function of its inputs: it filters them to the
requested scope, never mutates them, and can be recomputed on every query.
Every average or rate over an empty population is None rather than 0/NaN.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from statistics import fmean
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from chatkpi.db.models import ChatRecord, Conversation, Role
from chatkpi.ingestion.timestamps import ensure_utc

_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class KPIScope:
    """Inclusive date window and optional client filter for a KPI query.

    Dates bound a record's timestamp and a conversation's start_time.
    """

    start_date: datetime | None = None
    end_date: datetime | None = None
    client_id: str | None = None

    def __post_init__(self) -> None:
        if self.start_date is not None:
            object.__setattr__(self, "start_date", ensure_utc(self.start_date))
        if self.end_date is not None:
            object.__setattr__(self, "end_date", ensure_utc(self.end_date))
        if (
            self.start_date is not None
            and self.end_date is not None
            and self.start_date > self.end_date
        ):
            raise ValueError("startDate must not be after endDate")

    def includes(self, moment: datetime) -> bool:
        if self.start_date is not None and moment < self.start_date:
            return False
        if self.end_date is not None and moment > self.end_date:
            return False
        return True

    def contains_record(self, record: ChatRecord) -> bool:
        if self.client_id is not None and record.client_id != self.client_id:
            return False
        return self.includes(record.timestamp)

    def contains_conversation(self, conversation: Conversation) -> bool:
        if self.client_id is not None and conversation.client_id != self.client_id:
            return False
        return self.includes(conversation.start_time)

    @property
    def span_days(self) -> int | None:
        """Whole days covered by the window (rounded up), if both bounds are set."""
        if self.start_date is None or self.end_date is None:
            return None
        return math.ceil((self.end_date - self.start_date).total_seconds() / _SECONDS_PER_DAY)


class _ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DailyCount(_ReportModel):
    date: str  # YYYY-MM-DD (UTC)
    count: int


class HourlyCount(_ReportModel):
    hour: int  # 0-23
    count: int


class KPIReport(_ReportModel):
    """Aggregate indicators for one scope. Serialize with ``by_alias=True``."""

    # Response metrics
    avg_response_time_ms: float | None
    avg_message_length: float | None
    avg_response_quality: float | None

    # Conversation metrics
    resolution_rate: float | None
    avg_satisfaction: float | None
    avg_conversation_duration: float | None

    # Usage metrics
    total_conversations: int
    total_messages: int
    active_tenants: int
    messages_per_day: float | None

    # AI accuracy
    avg_turns_to_resolution: float | None

    # Time series
    messages_over_time: list[DailyCount]
    peak_hours: list[HourlyCount]


def resolve_timezone(name: str) -> tzinfo:
    """Map a timezone name from settings to a tzinfo (UTC without tzdata lookup)."""
    if name.strip().upper() in ("UTC", "Z", ""):
        return timezone.utc
    return ZoneInfo(name)


def _mean(values: Sequence[float]) -> float | None:
    return fmean(values) if values else None


def messages_over_time(records: Iterable[ChatRecord]) -> list[DailyCount]:
    """Message counts per UTC calendar date, ascending."""
    counts = Counter(ensure_utc(r.timestamp).date().isoformat() for r in records)
    return [DailyCount(date=day, count=counts[day]) for day in sorted(counts)]


def peak_hours(records: Iterable[ChatRecord], tz: tzinfo = timezone.utc) -> list[HourlyCount]:
    """Message counts per hour of day in ``tz``; empty hours are omitted."""
    counts = Counter(r.timestamp.astimezone(tz).hour for r in records)
    return [HourlyCount(hour=hour, count=counts[hour]) for hour in sorted(counts)]


def calculate_kpis(
    records: Iterable[ChatRecord],
    conversations: Iterable[Conversation],
    scope: KPIScope | None = None,
    tz: tzinfo = timezone.utc,
) -> KPIReport:
    """Compute the KPI report for the records and conversations inside ``scope``."""
    scope = scope or KPIScope()
    in_scope = [r for r in records if scope.contains_record(r)]
    convs = [c for c in conversations if scope.contains_conversation(c)]

    ai_messages = [r for r in in_scope if r.role == Role.AI]
    response_times = [r.response_time_ms for r in ai_messages if r.response_time_ms is not None]
    ai_scores = [r.satisfaction_score for r in ai_messages if r.satisfaction_score is not None]

    resolved = [c for c in convs if c.resolved]
    conversation_scores = [c.satisfaction_score for c in convs if c.satisfaction_score is not None]

    resolution_rate = len(resolved) / len(convs) * 100 if convs else None
    turns = _mean([c.message_count for c in resolved])

    span = scope.span_days
    messages_per_day = len(in_scope) / span if span is not None and span > 0 else None

    return KPIReport(
        avg_response_time_ms=_mean(response_times),
        avg_message_length=_mean([len(r.message) for r in ai_messages]),
        avg_response_quality=_mean(ai_scores),
        resolution_rate=resolution_rate,
        avg_satisfaction=_mean(conversation_scores),
        avg_conversation_duration=_mean([c.duration for c in convs]),
        total_conversations=len(convs),
        total_messages=len(in_scope),
        active_tenants=len({r.tenant_id for r in in_scope}),
        messages_per_day=messages_per_day,
        # Two messages make one back-and-forth turn.
        avg_turns_to_resolution=turns / 2 if turns is not None else None,
        messages_over_time=messages_over_time(in_scope),
        peak_hours=peak_hours(in_scope, tz),
    )
