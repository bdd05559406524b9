from .base import (
    Blob,
    ChangeStatus,
    ObjectId,
    PathChange,
    Signature,
    Snapshot,
    StorageEngine,
    TreeEntry,
)
from .errors import (
    BranchNotFoundError,
    CommitNotFoundError,
    ConfigurationError,
    InvalidPathError,
    ModeMismatchError,
    ObjectStoreError,
    ObjectStoreLookupError,
)
from .impl.git import create_git_engine
from .impl.memory import create_memory_engine
from .impl.sql import create_sql_engine
from .index import StagingIndex
from .session import (
    ObjectStoreSession,
    ReaderSession,
    WriterSession,
    open_object_store,
)

__all__ = [
    "Blob",
    "ChangeStatus",
    "ObjectId",
    "PathChange",
    "Signature",
    "Snapshot",
    "StorageEngine",
    "TreeEntry",
    "BranchNotFoundError",
    "CommitNotFoundError",
    "ConfigurationError",
    "InvalidPathError",
    "ModeMismatchError",
    "ObjectStoreError",
    "ObjectStoreLookupError",
    "create_git_engine",
    "create_memory_engine",
    "create_sql_engine",
    "StagingIndex",
    "ObjectStoreSession",
    "ReaderSession",
    "WriterSession",
    "open_object_store",
]
