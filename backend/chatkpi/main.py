"""FastAPI application for chatkpi.

Wires together settings, logging, the SQLite record store and the API routes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chatkpi.config import Settings
from chatkpi.db.repositories import Repositories
from chatkpi.db.sqlite import MEMORY_PATH, SQLiteDB
from chatkpi.security import secure_directory, secure_file

settings = Settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler.

    Opens the record store on startup and closes it on shutdown.
    """
    # Ensure data and upload directories exist with proper permissions
    upload_dir = Path(settings.UPLOAD_DIR)
    if settings.SAVE_UPLOADS:
        secure_directory(upload_dir)

    if settings.IN_MEMORY_STORE:
        db_path = MEMORY_PATH
        db = SQLiteDB(db_path)
    else:
        data_dir = Path(settings.DATABASE_DIR)
        secure_directory(data_dir)
        db_path = str(data_dir / "chatkpi.db")
        db = SQLiteDB(db_path)
        secure_file(Path(db_path))

    # Store on app.state for access in routes
    app.state.settings = settings
    app.state.db = db
    app.state.repos = Repositories.from_db(db)
    logger.info("Record store ready (%s)", db_path)

    yield

    db.close()
    logger.info("Record store closed")


app = FastAPI(
    title="chatkpi",
    description="Chat log ingestion and KPI analytics for AI customer-support conversations",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware using Settings.FRONTEND_URL
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from chatkpi.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Health check endpoint with record store counts."""
    return {"status": "ok", "store": request.app.state.repos.stats()}
