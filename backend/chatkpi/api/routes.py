"""REST API routes for the chatkpi backend.

All endpoints are under /api/v1. Routes receive dependencies
(repos, settings) via app.state, populated by the application lifespan.
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from chatkpi.analytics.kpis import KPIScope, calculate_kpis, resolve_timezone
from chatkpi.db.models import Client
from chatkpi.ingestion.parsers import file_type_for
from chatkpi.ingestion.pipeline import INVALID_FILE_TYPE, IngestionError, ingest_upload
from chatkpi.ingestion.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


# -- Request/Response models --------------------------------------------------

class CreateClientRequest(BaseModel):
    name: str = ""
    description: str | None = None
    color: str | None = None


class UpdateClientRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    color: str | None = None


# -- Helpers ------------------------------------------------------------------

def _get_state(request: Request) -> Any:
    """Get app state (repos, settings, etc.)."""
    return request.app.state


def _random_color() -> str:
    return f"#{random.randrange(0x1000000):06x}"


def _require_client(state: Any, client_id: str) -> Client:
    client = state.repos.clients.get(client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


def _parse_date_param(value: str | None, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value!r}")
    return parsed


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


# -- Upload endpoints ---------------------------------------------------------

@router.post("/upload")
async def upload_file(
    request: Request,
    file: UploadFile | None = File(None),
    client_id: str | None = Form(None, alias="clientId"),
) -> Any:
    """Upload a CSV/JSON chat log for a client and ingest it.

    Parse and validation failures answer 400 with the row errors; a failure
    while storing the batch answers 500. Either way the upload is recorded
    as FAILED.
    """
    state = _get_state(request)
    settings = state.settings

    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file provided")
    if not client_id:
        raise HTTPException(status_code=400, detail="Client ID is required")
    _require_client(state, client_id)

    if file_type_for(file.filename) is None:
        raise HTTPException(status_code=400, detail=INVALID_FILE_TYPE)

    content = await file.read()
    max_bytes = settings.MAX_UPLOAD_MB * 1024 * 1024
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"File exceeds maximum size of {settings.MAX_UPLOAD_MB} MB",
        )

    upload_dir = Path(settings.UPLOAD_DIR) if settings.SAVE_UPLOADS else None
    try:
        result = await ingest_upload(
            state.repos,
            filename=file.filename,
            content=content,
            client_id=client_id,
            upload_dir=upload_dir,
        )
    except IngestionError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if not result.success:
        return JSONResponse(status_code=400, content=result.to_dict())
    return result.to_dict()


@router.get("/uploads")
async def list_uploads(
    request: Request,
    client_id: str | None = Query(None, alias="clientId"),
) -> dict[str, Any]:
    """Upload history, newest first."""
    repos = _get_state(request).repos
    uploads = repos.uploads.list_by_client(client_id) if client_id else repos.uploads.list_all()
    return {"uploads": [_dump(u) for u in uploads]}


# -- KPI endpoint -------------------------------------------------------------

@router.get("/kpis")
async def get_kpis(
    request: Request,
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    client_id: str | None = Query(None, alias="clientId"),
) -> dict[str, Any]:
    """KPI report for the optional client and inclusive date range."""
    state = _get_state(request)
    start = _parse_date_param(start_date, "startDate")
    end = _parse_date_param(end_date, "endDate")
    try:
        scope = KPIScope(start_date=start, end_date=end, client_id=client_id or None)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    repos = state.repos
    records = repos.messages.query(scope.client_id, scope.start_date, scope.end_date)
    conversations = repos.conversations.query(scope.client_id, scope.start_date, scope.end_date)
    report = calculate_kpis(
        records,
        conversations,
        scope,
        resolve_timezone(state.settings.REPORT_TIMEZONE),
    )
    logger.info(
        "KPIs for client=%s start=%s end=%s: %d messages, %d conversations",
        scope.client_id,
        scope.start_date,
        scope.end_date,
        report.total_messages,
        report.total_conversations,
    )
    return _dump(report)


# -- Conversation endpoints ---------------------------------------------------

@router.get("/conversations")
async def list_conversations(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    client_id: str | None = Query(None, alias="clientId"),
) -> dict[str, Any]:
    """Conversations, most recent start first, one page at a time."""
    repos = _get_state(request).repos
    client_id = client_id or None
    total = repos.conversations.count(client_id)
    conversations = repos.conversations.page(limit, (page - 1) * limit, client_id)
    return {
        "conversations": [_dump(c) for c in conversations],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request) -> dict[str, Any]:
    """A conversation with the messages of the batch that last wrote it."""
    repos = _get_state(request).repos
    conversation = repos.conversations.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    messages = repos.messages.get_by_conversation(conversation_id, conversation.upload_id)
    return {
        "conversation": _dump(conversation),
        "messages": [m.model_dump(mode="json") for m in messages],
    }


# -- Client endpoints ---------------------------------------------------------

@router.get("/clients")
async def list_clients(request: Request) -> dict[str, Any]:
    """List all clients, oldest first."""
    repos = _get_state(request).repos
    return {"clients": [_dump(c) for c in repos.clients.list_all()]}


@router.post("/clients", status_code=201)
async def create_client(body: CreateClientRequest, request: Request) -> dict[str, Any]:
    """Create a client; a random colour is assigned when none is given."""
    repos = _get_state(request).repos
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Client name is required")
    description = body.description.strip() if body.description else None
    client = repos.clients.create(
        name=name,
        description=description or None,
        color=body.color or _random_color(),
    )
    logger.info("Client created: %s (%s)", client.id, client.name)
    return {"client": _dump(client)}


@router.patch("/clients/{client_id}")
async def update_client(
    client_id: str,
    body: UpdateClientRequest,
    request: Request,
) -> dict[str, Any]:
    """Partially update a client."""
    repos = _get_state(request).repos
    name = body.name.strip() if body.name is not None else None
    if name == "":
        raise HTTPException(status_code=400, detail="Client name is required")
    client = repos.clients.update(
        client_id,
        name=name,
        description=body.description,
        color=body.color,
    )
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return {"client": _dump(client)}


@router.delete("/clients/{client_id}")
async def delete_client(client_id: str, request: Request) -> dict[str, Any]:
    """Delete a client together with its conversations, messages and uploads."""
    repos = _get_state(request).repos
    if not repos.clients.delete(client_id):
        raise HTTPException(status_code=404, detail="Client not found")
    return {"success": True}


@router.delete("/clients/{client_id}/data")
async def clear_client_data(client_id: str, request: Request) -> dict[str, Any]:
    """Delete a client's data but keep the client."""
    state = _get_state(request)
    _require_client(state, client_id)
    state.repos.clients.clear_data(client_id)
    return {"success": True}


@router.get("/clients/{client_id}/stats")
async def get_client_stats(client_id: str, request: Request) -> dict[str, Any]:
    """Counts, last upload date and data time range for one client."""
    state = _get_state(request)
    _require_client(state, client_id)
    repos = state.repos

    uploads = repos.uploads.list_by_client(client_id)
    time_range = repos.messages.time_range(client_id)
    stats: dict[str, Any] = repos.stats(client_id)
    stats["lastUploadDate"] = uploads[0].uploaded_at.isoformat() if uploads else None
    stats["dataTimeRange"] = (
        {"start": time_range[0].isoformat(), "end": time_range[1].isoformat()}
        if time_range
        else None
    )
    return stats
