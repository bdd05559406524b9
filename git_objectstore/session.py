import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterator

from git_objectstore.base import (
    DEFAULT_AUTHOR_EMAIL,
    DEFAULT_AUTHOR_NAME,
    Blob,
    ChangeStatus,
    ObjectId,
    PathChange,
    Signature,
    Snapshot,
    StorageEngine,
    TreeDelta,
    TreeEntry,
    normalize_path,
)
from git_objectstore.errors import (
    BranchNotFoundError,
    CommitNotFoundError,
    ConfigurationError,
    InvalidPathError,
    ModeMismatchError,
)
from git_objectstore.impl.git import create_git_engine
from git_objectstore.index import StagingIndex

logger = logging.getLogger(__name__)

VisitCallback = Callable[[str, Blob], Any]
DeletedCallback = Callable[[str], Any]


def _lookup_key(path: str) -> str | None:
    # paths that cannot be stored can never be found
    try:
        return normalize_path(path)
    except InvalidPathError:
        return None


class ObjectStoreSession:
    """
    Common part of writer and reader sessions on one branch of a store.

    A session is bound to a storage engine and a branch for its whole
    lifetime. Operations that belong to the other mode raise
    ModeMismatchError.

    The engine may be shared with other sessions. close() only closes it
    when owns_engine is set, as for sessions from open_object_store().
    """

    writer: bool = False
    owns_engine: bool = False

    def __init__(
        self,
        engine: StorageEngine,
        branch: str,
        *,
        goto: ObjectId | None = None,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        if engine is None:
            raise ConfigurationError("Mandatory argument missing: engine")
        if not branch:
            raise ConfigurationError("Mandatory argument missing: branch")
        if self.writer and goto:
            raise ConfigurationError("Cannot use goto in writer mode")

        self.engine = engine
        self.store: StorageEngine = engine
        self.branch = branch
        self.signature = Signature(
            author_name or DEFAULT_AUTHOR_NAME,
            author_email or DEFAULT_AUTHOR_EMAIL,
        )
        self._current_commit_id: ObjectId = ""

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        name = type(self).__name__
        if cycle:
            p.text(f"{name}(...)")
        else:
            with p.group(4, f"{name}(", ")"):
                p.breakable()
                p.text(f"branch='{self.branch}',")
                p.breakable()
                p.text(f"commit={self._current_commit_id[:7]},")
                p.breakable()
                p.text("engine=")
                p.pretty(self.engine)
                p.breakable()

    def __enter__(self) -> "ObjectStoreSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def current_commit_id(self) -> ObjectId:
        """Commit the session is anchored to."""
        return self._current_commit_id

    def _resolve_commit(self, commit_id: ObjectId) -> Snapshot:
        snapshot = self.store.lookup_commit(commit_id)
        if snapshot is None:
            raise CommitNotFoundError(commit_id)
        return snapshot

    def _resolve_branch(self) -> Snapshot:
        head = self.store.lookup_branch(self.branch)
        if head is None:
            raise BranchNotFoundError(self.branch)
        return self._resolve_commit(head)

    def read_file(self, path: str) -> Blob | None:
        """Return file content, or None if there is no file at path."""
        raise NotImplementedError()

    def file_exists(self, path: str) -> bool:
        """Check if a file exists at path."""
        raise NotImplementedError()

    # writer operations

    def write_checked(self, path: str, data: Blob) -> bool:
        raise ModeMismatchError("write_checked", self.writer)

    def write_unchecked(self, path: str, data: Blob) -> None:
        raise ModeMismatchError("write_unchecked", self.writer)

    def delete_file(self, path: str) -> bool:
        raise ModeMismatchError("delete_file", self.writer)

    def is_dirty(self) -> bool:
        raise ModeMismatchError("is_dirty", self.writer)

    def commit(self, message: str | None = None) -> bool:
        raise ModeMismatchError("commit", self.writer)

    def flush_pack(self) -> None:
        raise ModeMismatchError("flush_pack", self.writer)

    def commit_and_flush(self, message: str | None = None) -> bool:
        raise ModeMismatchError("commit_and_flush", self.writer)

    def pending_object_count(self) -> int:
        raise ModeMismatchError("pending_object_count", self.writer)

    # reader operations

    def recursive_read(self, root_path: str, visit: VisitCallback) -> None:
        raise ModeMismatchError("recursive_read", self.writer)

    def list_files(self, root_path: str = "") -> list[str]:
        raise ModeMismatchError("list_files", self.writer)

    def changes_since(self, old_commit_id: ObjectId) -> Iterator[PathChange]:
        raise ModeMismatchError("changes_since", self.writer)

    def diff_since(
        self,
        old_commit_id: ObjectId,
        on_changed: VisitCallback,
        on_deleted: DeletedCallback,
    ) -> None:
        raise ModeMismatchError("diff_since", self.writer)

    def close(self) -> None:
        if self.owns_engine:
            self.engine.close()


class WriterSession(ObjectStoreSession):
    """
    Session that writes files at the top of a branch.

    Writes go into a staging index and a pending buffer that belongs to
    this session alone; other sessions on the same engine never see it.
    commit() turns the index into a commit when the content changed,
    flush_pack() makes all commits since the previous flush durable.
    Nothing is flushed implicitly.

    Only one writer per branch may be active at a time; serializing
    writers across threads or processes is up to the caller.
    """

    writer = True

    def __init__(
        self,
        engine: StorageEngine,
        branch: str,
        *,
        goto: ObjectId | None = None,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        super().__init__(
            engine,
            branch,
            goto=goto,
            author_name=author_name,
            author_email=author_email,
        )
        # new objects stay private to this session until flush_pack()
        self.store = engine.buffered()

        self.created_initial_commit: ObjectId | None = None
        if self.store.lookup_branch(branch) is None:
            self.created_initial_commit = self.store.create_initial_commit(
                branch, self.signature
            )

        head = self._resolve_branch()
        self.index = StagingIndex(self.store)
        self.index.read_tree(head.tree_id)
        self._current_commit_id = head.commit_id

        logger.debug(f"Opened writer session on {branch} at {head.commit_id}")

    def read_file(self, path: str) -> Blob | None:
        key = _lookup_key(path)
        entry = self.index.find(key) if key else None
        if entry is None:
            return None
        return self.store.read_blob(entry.sha)

    def file_exists(self, path: str) -> bool:
        key = _lookup_key(path)
        return key is not None and key in self.index

    def write_checked(self, path: str, data: Blob) -> bool:
        """
        Stage data under path.

        Returns True if the content differs from what was staged for
        this path before, or if the path is new.
        """
        key = normalize_path(path)
        previous = self.index.find(key)
        entry = self.index.add(key, data)
        return previous is None or previous.sha != entry.sha

    def write_unchecked(self, path: str, data: Blob) -> None:
        """Stage data under path without comparing it to the previous version."""
        self.index.add(normalize_path(path), data)

    def delete_file(self, path: str) -> bool:
        return self.index.remove(normalize_path(path))

    def is_dirty(self) -> bool:
        return self.index.is_dirty()

    def commit(self, message: str | None = None) -> bool:
        """
        Create a commit from the staging index if the content changed.

        Returns False without creating anything when the resulting tree is
        identical to the tree of the branch head. The default message is
        the current local time.
        """
        if message is None:
            message = time.ctime()

        parent = self._resolve_branch()
        tree_id = self.index.write_tree()

        if tree_id == parent.tree_id:
            # same tree id means no change in content
            logger.debug(f"Nothing to commit on {self.branch}")
            return False

        commit_id = self.store.create_commit(
            message, self.signature, [parent.commit_id], tree_id, self.branch
        )

        self.index.clear()
        self.index.read_tree(tree_id)
        self._current_commit_id = commit_id

        logger.info(f"Committed {commit_id} on {self.branch}")
        return True

    def flush_pack(self) -> None:
        """
        Write everything created since the last flush to durable storage.

        Must be called after one or several commits; commits alone only
        live in memory.
        """
        self.store.flush_pending()

    def commit_and_flush(self, message: str | None = None) -> bool:
        if self.commit(message):
            self.flush_pack()
            return True
        return False

    def pending_object_count(self) -> int:
        return self.store.pending_count()

    def close(self) -> None:
        """Drop anything not flushed yet, with a warning. Never flushes."""
        self.store.close()
        super().close()


class ReaderSession(ObjectStoreSession):
    """
    Read-only view of one snapshot.

    The snapshot is the branch head at construction time, or the commit
    given as goto: a full id or a unique prefix of at least four hex
    digits. Later commits on the branch are not visible, and only flushed
    objects can be read; a branch whose head was committed but not yet
    flushed raises CommitNotFoundError.
    """

    def __init__(
        self,
        engine: StorageEngine,
        branch: str,
        *,
        goto: ObjectId | None = None,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        super().__init__(
            engine,
            branch,
            goto=goto,
            author_name=author_name,
            author_email=author_email,
        )

        if goto:
            self.snapshot = self._resolve_commit(goto)
        else:
            self.snapshot = self._resolve_branch()
        self._current_commit_id = self.snapshot.commit_id

    def _entry(self, path: str) -> TreeEntry | None:
        key = _lookup_key(path)
        if key is None:
            return None
        return self.store.tree_entry_by_path(self.snapshot.tree_id, key)

    def read_file(self, path: str) -> Blob | None:
        entry = self._entry(path)
        if entry is None or entry.is_directory:
            return None
        return self.store.read_blob(entry.sha)

    def file_exists(self, path: str) -> bool:
        entry = self._entry(path)
        return entry is not None and not entry.is_directory

    def _walk(self, root_path: str) -> Iterator[TreeEntry]:
        if root_path.strip("/"):
            entry = self._entry(root_path)
        else:
            entry = self.store.tree_entry_by_path(self.snapshot.tree_id, "")
        if entry is None:
            return iter(())
        return self.store.walk(entry)

    def recursive_read(self, root_path: str, visit: VisitCallback) -> None:
        """
        Call visit(path, content) for every file below root_path.

        Directories are read depth first in tree order. An empty root_path
        reads the whole snapshot; a missing one reads nothing.
        """
        for entry in self._walk(root_path):
            visit(entry.path, self.store.read_blob(entry.sha))

    def list_files(self, root_path: str = "") -> list[str]:
        return [entry.path for entry in self._walk(root_path)]

    def changes_since(self, old_commit_id: ObjectId) -> Iterator[PathChange]:
        """
        Compare an older commit with this snapshot.

        Raises CommitNotFoundError right away if old_commit_id is unknown.
        Changes are found by comparing object ids, content is only read for
        added and updated files as the iterator advances.
        """
        old = self._resolve_commit(old_commit_id)
        deltas = self.store.diff_trees(old.tree_id, self.snapshot.tree_id)
        return self._load_changes(deltas)

    def _load_changes(self, deltas: list[TreeDelta]) -> Iterator[PathChange]:
        for delta in deltas:
            if delta.status is ChangeStatus.DELETED:
                yield PathChange(delta.path, delta.status)
            else:
                assert delta.sha is not None
                yield PathChange(
                    delta.path, delta.status, self.store.read_blob(delta.sha)
                )

    def diff_since(
        self,
        old_commit_id: ObjectId,
        on_changed: VisitCallback,
        on_deleted: DeletedCallback,
    ) -> None:
        """
        Call on_changed(path, content) for every file added or updated since
        old_commit_id and on_deleted(path) for every file deleted since then.
        """
        for change in self.changes_since(old_commit_id):
            if change.status is ChangeStatus.DELETED:
                on_deleted(change.path)
            else:
                assert change.content is not None
                on_changed(change.path, change.content)


def open_object_store(
    repodir: str | Path,
    branchname: str,
    *,
    writer: bool = False,
    goto: ObjectId | None = None,
    author_name: str | None = None,
    author_email: str | None = None,
) -> ObjectStoreSession:
    """
    Open a session on a bare git repository, creating the repository if
    repodir holds none.

    Each session gets its own repository handle. If several processes may
    open writers at the same time, it is up to the caller to provide
    locking so that objects are created one at a time.
    """
    if not repodir:
        raise ConfigurationError("Mandatory argument missing: repodir")
    if not branchname:
        raise ConfigurationError("Mandatory argument missing: branchname")
    if writer and goto:
        raise ConfigurationError("Cannot use goto in writer mode")

    engine = create_git_engine(repodir)
    session_cls = WriterSession if writer else ReaderSession
    try:
        session = session_cls(
            engine,
            branchname,
            goto=goto,
            author_name=author_name,
            author_email=author_email,
        )
    except Exception:
        engine.close()
        raise

    session.owns_engine = True
    return session
