import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from git_objectstore.errors import InvalidPathError

Blob = bytes
ObjectId = str

DEFAULT_AUTHOR_NAME = "ObjectStore"
DEFAULT_AUTHOR_EMAIL = "ObjectStore@localhost"

FILE_MODE = 0o100644
DIRECTORY_MODE = 0o040000


@dataclass(frozen=True)
class Signature:
    name: str = DEFAULT_AUTHOR_NAME
    email: str = DEFAULT_AUTHOR_EMAIL

    @property
    def identity(self) -> bytes:
        return f"{self.name} <{self.email}>".encode("utf-8")


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable reference to one commit and its root tree.
    """

    commit_id: ObjectId
    tree_id: ObjectId
    parent_ids: tuple[ObjectId, ...] = field(default_factory=tuple)
    message: str = ""


@dataclass(frozen=True)
class TreeEntry:
    """
    One entry of a snapshot tree, addressed by its full path.
    """

    path: str
    mode: int
    sha: ObjectId

    @property
    def is_directory(self) -> bool:
        return self.mode & 0o170000 == DIRECTORY_MODE

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class ChangeStatus(enum.Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class TreeDelta:
    path: str
    status: ChangeStatus
    # blob id on the new side, None for deletions
    sha: ObjectId | None = None


@dataclass(frozen=True)
class PathChange:
    """
    A path-level change between two snapshots.

    `content` holds the new file content for added and updated paths
    and is None for deleted ones.
    """

    path: str
    status: ChangeStatus
    content: Blob | None = None


def normalize_path(path: str) -> str:
    """Strip surrounding slashes and reject paths git trees cannot hold."""
    if path is None:
        raise InvalidPathError(str(path), "path is missing")

    normalized = path.strip("/")
    if not normalized:
        raise InvalidPathError(path, "path is empty")
    if "\0" in normalized:
        raise InvalidPathError(path, "path contains a NUL character")

    for part in normalized.split("/"):
        if part in ("", ".", ".."):
            raise InvalidPathError(path, f"invalid path component {part!r}")

    return normalized


class StorageEngine:
    """
    Content-addressable storage behind the sessions.

    An engine reads and writes durable objects. buffered() returns a
    private view that keeps new objects in its own pending buffer in front
    of the durable store; only its flush_pending() moves them into durable
    storage. Branch pointers are updated immediately by create_commit().
    """

    def buffered(self) -> "StorageEngine":
        """Return a write view with its own pending buffer over the same store."""
        raise NotImplementedError()

    def lookup_branch(self, name: str) -> ObjectId | None:
        """Return the head commit id of a branch, or None if it does not exist."""
        raise NotImplementedError()

    def list_branches(self) -> list[str]:
        """List the names of all branches in the store."""
        raise NotImplementedError()

    def create_initial_commit(self, branch: str, signature: Signature) -> ObjectId:
        """Create a branch pointing to a durable commit with an empty tree."""
        raise NotImplementedError()

    def lookup_commit(self, commit_id: ObjectId) -> Snapshot | None:
        """Resolve a commit id, or None if it is unknown or not a commit."""
        raise NotImplementedError()

    def add_blob(self, data: Blob) -> ObjectId:
        """Hash data and store the blob, in the pending buffer if there is one."""
        raise NotImplementedError()

    def read_blob(self, blob_id: ObjectId) -> Blob:
        """Return the content of a blob."""
        raise NotImplementedError()

    def write_tree(self, entries: Iterable[tuple[str, int, ObjectId]]) -> ObjectId:
        """Build nested trees from flat (path, mode, blob id) entries."""
        raise NotImplementedError()

    def iter_tree(self, tree_id: ObjectId) -> Iterator[TreeEntry]:
        """Iterate over all leaf entries of a tree, depth first."""
        raise NotImplementedError()

    def tree_entries(self, tree_id: ObjectId, prefix: str = "") -> list[TreeEntry]:
        """List the direct children of a tree in native order."""
        raise NotImplementedError()

    def tree_entry_by_path(self, tree_id: ObjectId, path: str) -> TreeEntry | None:
        """Find the entry at path inside a tree, or None."""
        raise NotImplementedError()

    def walk(self, entry: TreeEntry) -> Iterator[TreeEntry]:
        """Iterate over the leaves below entry, or entry itself for a file."""
        raise NotImplementedError()

    def create_commit(
        self,
        message: str,
        signature: Signature,
        parents: list[ObjectId],
        tree_id: ObjectId,
        branch: str,
    ) -> ObjectId:
        """Store a commit like add_blob() does and move the branch to it."""
        raise NotImplementedError()

    def diff_trees(self, old_tree_id: ObjectId, new_tree_id: ObjectId) -> list[TreeDelta]:
        """Compare two trees by object identity, without reading blob content."""
        raise NotImplementedError()

    def pending_count(self) -> int:
        """Number of objects waiting in the pending buffer."""
        raise NotImplementedError()

    def flush_pending(self) -> int:
        """Write the pending buffer to durable storage and reset it."""
        raise NotImplementedError()

    def reset_pending(self) -> None:
        """Drop everything in the pending buffer."""
        raise NotImplementedError()

    def close(self) -> None:
        """Release resources; a buffered view drops its buffer. Never flushes."""
        raise NotImplementedError()

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        p.text(f"{type(self).__name__}(...)")
