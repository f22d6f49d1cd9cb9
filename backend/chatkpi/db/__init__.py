"""chatkpi persistence layer: SQLite record store and repositories."""

from chatkpi.db.models import (
    ChatRecord,
    Client,
    Conversation,
    Role,
    UploadRecord,
    UploadStatus,
)
from chatkpi.db.repositories import (
    ClientRepo,
    ConversationRepo,
    MessageRepo,
    Repositories,
    UploadRepo,
)
from chatkpi.db.sqlite import SQLiteDB

__all__ = [
    "SQLiteDB",
    "ChatRecord",
    "Client",
    "Conversation",
    "Role",
    "UploadRecord",
    "UploadStatus",
    "ClientRepo",
    "ConversationRepo",
    "MessageRepo",
    "UploadRepo",
    "Repositories",
]
