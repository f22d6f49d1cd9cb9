"""Filesystem permission helpers for stored transcripts.

Chat transcripts can carry tenant PII, so the database directory and raw
upload copies are kept readable by the service user only.
"""

import os
from pathlib import Path


def secure_directory(path: Path, mode: int = 0o700) -> None:
    """Create directory with restrictive permissions. Creates parent dirs if needed."""
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, mode)


def secure_file(path: Path, mode: int = 0o600) -> None:
    """Set restrictive permissions on a file."""
    if path.exists():
        os.chmod(path, mode)


def safe_filename(filename: str) -> str:
    """Strip directory components from a client-supplied filename."""
    name = Path(filename.replace("\\", "/")).name
    return name or "upload"
