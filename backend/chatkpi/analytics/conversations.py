"""Conversation aggregation over one upload batch of canonical records."""

from __future__ import annotations

import math
from collections import defaultdict
from statistics import fmean
from typing import Iterable

from chatkpi.db.models import ChatRecord, Conversation


def merge_resolved(current: bool | None, incoming: bool | None) -> bool | None:
    """Tri-state merge of resolution flags.

    True is sticky, None carries no information, and False only replaces an
    unknown state.
    """
    if current is True or incoming is True:
        return True
    if current is None:
        return incoming
    return current


def group_by_conversation(records: Iterable[ChatRecord]) -> dict[str, list[ChatRecord]]:
    """Partition records by conversation_id, preserving first-seen order."""
    groups: dict[str, list[ChatRecord]] = defaultdict(list)
    for record in records:
        groups[record.conversation_id].append(record)
    return dict(groups)


def build_conversation(
    conversation_id: str,
    records: list[ChatRecord],
    client_id: str | None = None,
    upload_id: str | None = None,
) -> Conversation:
    """Derive one Conversation from all of its records."""
    if not records:
        raise ValueError(f"Conversation {conversation_id} has no records")

    ordered = sorted(records, key=lambda r: r.timestamp)
    first, last = ordered[0], ordered[-1]

    resolved: bool | None = None
    for record in ordered:
        resolved = merge_resolved(resolved, record.resolved)

    scores = [r.satisfaction_score for r in ordered if r.satisfaction_score is not None]

    return Conversation(
        conversation_id=conversation_id,
        tenant_id=first.tenant_id,
        start_time=first.timestamp,
        end_time=last.timestamp,
        message_count=len(ordered),
        resolved=resolved is True,
        satisfaction_score=fmean(scores) if scores else None,
        duration=math.floor((last.timestamp - first.timestamp).total_seconds()),
        client_id=client_id if client_id is not None else first.client_id,
        upload_id=upload_id if upload_id is not None else first.upload_id,
    )


def aggregate_conversations(
    records: Iterable[ChatRecord],
    client_id: str | None = None,
    upload_id: str | None = None,
) -> list[Conversation]:
    """Group a batch into Conversations, one per conversation_id.

    Each result is computed from this batch only; storing it replaces any
    earlier version of the same conversation.
    """
    return [
        build_conversation(conversation_id, group, client_id, upload_id)
        for conversation_id, group in group_by_conversation(records).items()
    ]
