import logging
import time
from typing import Any, Iterable, Iterator

from dulwich.diff_tree import CHANGE_ADD, CHANGE_DELETE, CHANGE_MODIFY, tree_changes
from dulwich.errors import NotTreeError
from dulwich.index import commit_tree
from dulwich.object_store import (
    BaseObjectStore,
    MemoryObjectStore,
    OverlayObjectStore,
    tree_lookup_path,
)
from dulwich.objects import Blob as GitBlob
from dulwich.objects import Commit, ShaFile, Tree

from git_objectstore.base import (
    DIRECTORY_MODE,
    Blob,
    ChangeStatus,
    ObjectId,
    Signature,
    Snapshot,
    StorageEngine,
    TreeDelta,
    TreeEntry,
)

logger = logging.getLogger(__name__)

BRANCH_PREFIX = b"refs/heads/"

# shortest abbreviated commit id accepted, as in git
MIN_PREFIX_LENGTH = 4
HEX_LENGTH = 40
HEX_DIGITS = frozenset("0123456789abcdef")

_CHANGE_STATUS = {
    CHANGE_ADD: ChangeStatus.ADDED,
    CHANGE_MODIFY: ChangeStatus.UPDATED,
    CHANGE_DELETE: ChangeStatus.DELETED,
}


def branch_ref(name: str) -> bytes:
    return BRANCH_PREFIX + name.encode("utf-8")


def encode_path(path: str) -> bytes:
    # tree entry names are bytes; undecodable names survive a round trip
    return path.encode("utf-8", errors="surrogateescape")


def decode_path(path: bytes) -> str:
    return path.decode("utf-8", errors="surrogateescape")


def _join(prefix: str, name: str) -> str:
    return f"{prefix}/{name}" if prefix else name


class PendingObjectStore(OverlayObjectStore):
    """
    In-memory object buffer layered in front of a durable object store.

    Every new object lands in the buffer. Lookups check the buffer first
    and then the durable store. Objects that are already known to either
    layer are not buffered again.
    """

    def __init__(self, durable: BaseObjectStore) -> None:
        self.pending = MemoryObjectStore()
        self.durable = durable
        super().__init__([self.pending, durable], add_store=self.pending)

    def __contains__(self, sha: Any) -> bool:
        return any(sha in store for store in self.bases)

    def iter_prefix(self, prefix: bytes) -> Iterator[bytes]:
        seen = set()
        for store in self.bases:
            for sha in store.iter_prefix(prefix):
                if sha not in seen:
                    seen.add(sha)
                    yield sha

    def add_object(self, obj: ShaFile) -> None:
        if obj.id in self:
            return
        self.pending.add_object(obj)

    def add_objects(self, objects: Any, progress: Any = None) -> None:
        for obj, _path in objects:
            self.add_object(obj)

    def pending_objects(self) -> list[ShaFile]:
        return [self.pending[sha] for sha in self.pending]

    def reset(self) -> None:
        self.pending = MemoryObjectStore()
        self.bases = [self.pending, self.durable]
        self.add_store = self.pending


class DulwichStorageEngine(StorageEngine):
    """
    Storage engine on top of dulwich's object model.

    Backends provide the durable object store and the refs container;
    hashing, tree building and tree diffs are done by dulwich.

    The engine itself only sees durable objects and writes straight to
    durable storage. Writers work through buffered(), which gives each of
    them a private pending buffer.
    """

    def __init__(self, durable_store: BaseObjectStore, refs: Any) -> None:
        self.durable_store = durable_store
        self.refs = refs
        self.object_store: BaseObjectStore = durable_store

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text(f"{type(self).__name__}(...)")
        else:
            with p.group(4, f"{type(self).__name__}(", ")"):
                p.breakable()
                p.text(f"branches={self.list_branches()},")
                p.breakable()

    def buffered(self) -> "BufferedStorageEngine":
        return BufferedStorageEngine(self)

    def write_objects(self, objects: list[ShaFile]) -> None:
        """Store objects durably in one batch."""
        self.durable_store.add_objects([(obj, None) for obj in objects])

    # branches

    def lookup_branch(self, name: str) -> ObjectId | None:
        try:
            sha = self.refs[branch_ref(name)]
        except KeyError:
            return None
        return sha.decode("ascii")

    def list_branches(self) -> list[str]:
        return sorted(
            ref[len(BRANCH_PREFIX) :].decode("utf-8")
            for ref in self.refs.allkeys()
            if ref.startswith(BRANCH_PREFIX)
        )

    def _set_branch(
        self, branch: str, commit: Commit, signature: Signature, reason: str
    ) -> None:
        self.refs.set_if_equals(
            branch_ref(branch),
            None,
            commit.id,
            committer=signature.identity,
            message=reason.encode("utf-8"),
        )

    # commits

    def _build_commit(
        self,
        message: str,
        signature: Signature,
        parents: list[ObjectId],
        tree_id: bytes,
    ) -> Commit:
        now = int(time.time())
        offset = time.localtime(now).tm_gmtoff

        commit = Commit()
        commit.tree = tree_id
        commit.parents = [parent.encode("ascii") for parent in parents]
        commit.author = commit.committer = signature.identity
        commit.author_time = commit.commit_time = now
        commit.author_timezone = commit.commit_timezone = offset
        commit.encoding = b"UTF-8"
        commit.message = message.encode("utf-8")
        return commit

    def create_initial_commit(self, branch: str, signature: Signature) -> ObjectId:
        # always durable, a pending buffer is never involved
        tree = Tree()
        commit = self._build_commit(
            f"Initial empty commit in {branch}", signature, [], tree.id
        )
        self.write_objects([tree, commit])
        self._set_branch(branch, commit, signature, "commit (initial)")

        logger.debug(f"Created branch {branch} at {commit.id.decode('ascii')}")
        return commit.id.decode("ascii")

    def lookup_commit(self, commit_id: ObjectId) -> Snapshot | None:
        if isinstance(commit_id, bytes):
            commit_id = commit_id.decode("ascii", errors="replace")
        commit_id = commit_id.strip().lower()
        if not MIN_PREFIX_LENGTH <= len(commit_id) <= HEX_LENGTH:
            return None
        if not set(commit_id) <= HEX_DIGITS:
            return None

        if len(commit_id) < HEX_LENGTH:
            full_id = self._expand_prefix(commit_id)
            if full_id is None:
                return None
            commit_id = full_id

        try:
            obj = self.object_store[commit_id.encode("ascii")]
        except KeyError:
            return None
        if not isinstance(obj, Commit):
            return None

        return Snapshot(
            commit_id=obj.id.decode("ascii"),
            tree_id=obj.tree.decode("ascii"),
            parent_ids=tuple(parent.decode("ascii") for parent in obj.parents),
            message=obj.message.decode("utf-8", errors="replace"),
        )

    def _expand_prefix(self, prefix: str) -> ObjectId | None:
        """Resolve an abbreviated id, or None if it is unknown or ambiguous."""
        matches = set()
        for sha in self.object_store.iter_prefix(prefix.encode("ascii")):
            matches.add(sha)
            if len(matches) > 1:
                return None
        if not matches:
            return None
        return matches.pop().decode("ascii")

    def create_commit(
        self,
        message: str,
        signature: Signature,
        parents: list[ObjectId],
        tree_id: ObjectId,
        branch: str,
    ) -> ObjectId:
        commit = self._build_commit(
            message, signature, parents, tree_id.encode("ascii")
        )
        self.object_store.add_object(commit)
        summary = message.splitlines()[0] if message else ""
        self._set_branch(branch, commit, signature, f"commit: {summary}")
        return commit.id.decode("ascii")

    # blobs and trees

    def add_blob(self, data: Blob) -> ObjectId:
        blob = GitBlob.from_string(bytes(data))
        self.object_store.add_object(blob)
        return blob.id.decode("ascii")

    def read_blob(self, blob_id: ObjectId) -> Blob:
        return self.object_store[blob_id.encode("ascii")].as_raw_string()

    def write_tree(self, entries: Iterable[tuple[str, int, ObjectId]]) -> ObjectId:
        blobs = [
            (encode_path(path), sha.encode("ascii"), mode)
            for path, mode, sha in entries
        ]
        return commit_tree(self.object_store, blobs).decode("ascii")

    def tree_entries(self, tree_id: ObjectId, prefix: str = "") -> list[TreeEntry]:
        tree = self.object_store[tree_id.encode("ascii")]
        if not isinstance(tree, Tree):
            raise NotTreeError(tree_id)

        return [
            TreeEntry(
                _join(prefix, decode_path(item.path)),
                item.mode,
                item.sha.decode("ascii"),
            )
            for item in tree.items()
        ]

    def iter_tree(self, tree_id: ObjectId) -> Iterator[TreeEntry]:
        root = TreeEntry("", DIRECTORY_MODE, tree_id)
        return self.walk(root)

    def walk(self, entry: TreeEntry) -> Iterator[TreeEntry]:
        """Yield the leaves below entry depth first, or entry itself for a file."""
        if not entry.is_directory:
            yield entry
            return
        for child in self.tree_entries(entry.sha, entry.path):
            yield from self.walk(child)

    def tree_entry_by_path(self, tree_id: ObjectId, path: str) -> TreeEntry | None:
        if not path:
            return TreeEntry("", DIRECTORY_MODE, tree_id)

        try:
            mode, sha = tree_lookup_path(
                self.object_store.__getitem__,
                tree_id.encode("ascii"),
                encode_path(path),
            )
        except (KeyError, NotTreeError):
            return None
        return TreeEntry(path, mode, sha.decode("ascii"))

    def diff_trees(self, old_tree_id: ObjectId, new_tree_id: ObjectId) -> list[TreeDelta]:
        # tree_changes compares entry ids only, blob content is never read
        deltas = []
        for change in tree_changes(
            self.object_store, old_tree_id.encode("ascii"), new_tree_id.encode("ascii")
        ):
            status = _CHANGE_STATUS.get(change.type)
            if status is None:
                continue
            if status is ChangeStatus.DELETED:
                deltas.append(TreeDelta(decode_path(change.old.path), status))
            else:
                deltas.append(
                    TreeDelta(
                        decode_path(change.new.path),
                        status,
                        change.new.sha.decode("ascii"),
                    )
                )
        return deltas

    # nothing is ever pending without a buffer

    def pending_count(self) -> int:
        return 0

    def flush_pending(self) -> int:
        return 0

    def reset_pending(self) -> None:
        pass

    def close(self) -> None:
        pass


class BufferedStorageEngine(DulwichStorageEngine):
    """
    Private write view of an engine.

    Shares the durable store and the refs of its parent, but keeps every
    new object in its own pending buffer until flush_pending(). Nothing
    buffered here is visible through the parent or through other views.
    Closing the view drops the buffer and leaves the parent open.
    """

    def __init__(self, parent: DulwichStorageEngine) -> None:
        super().__init__(parent.durable_store, parent.refs)
        self.parent = parent
        self.object_store = PendingObjectStore(parent.durable_store)

    def __repr__(self) -> str:
        return f"BufferedStorageEngine({self.parent!r})"

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("BufferedStorageEngine(...)")
        else:
            with p.group(4, "BufferedStorageEngine(", ")"):
                p.breakable()
                p.text(f"pending={self.pending_count()},")
                p.breakable()
                p.text("parent=")
                p.pretty(self.parent)
                p.breakable()

    def buffered(self) -> "BufferedStorageEngine":
        return self.parent.buffered()

    def write_objects(self, objects: list[ShaFile]) -> None:
        self.parent.write_objects(objects)

    def pending_count(self) -> int:
        return sum(1 for _ in self.object_store.pending)

    def flush_pending(self) -> int:
        objects = self.object_store.pending_objects()
        if not objects:
            return 0

        self.write_objects(objects)
        self.object_store.reset()

        logger.info(f"Flushed {len(objects)} objects to {self.parent!r}")
        return len(objects)

    def reset_pending(self) -> None:
        self.object_store.reset()

    def close(self) -> None:
        pending = self.pending_count()
        if pending:
            logger.warning(f"Closing {self!r} with {pending} unflushed objects")
        self.object_store.reset()
