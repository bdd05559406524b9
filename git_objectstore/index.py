from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterator

from git_objectstore.base import FILE_MODE, Blob, ObjectId, StorageEngine


@dataclass(frozen=True)
class IndexEntry:
    mode: int
    sha: ObjectId


class StagingIndex:
    """
    Working set of a writer session: an ordered mapping from file path
    to blob id, used to build the next tree.

    The index is seeded from the tree of the commit the writer is anchored
    to. Blob content lives in the engine's pending buffer, the index only
    keeps references to it.
    """

    def __init__(self, engine: StorageEngine) -> None:
        self.engine = engine
        self.entries: dict[str, IndexEntry] = {}
        self.base_tree_id: ObjectId | None = None
        self._base_entries: dict[str, IndexEntry] = {}
        self._directories: Counter[str] = Counter()

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("StagingIndex(...)")
        else:
            with p.group(4, "StagingIndex(", ")"):
                p.breakable()
                p.text(f"base_tree={self.base_tree_id},")
                p.breakable()
                p.text(f"entries={len(self.entries)},")
                p.breakable()
                p.text(f"dirty={self.is_dirty()}")
                p.breakable()

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: str) -> bool:
        return path in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def find(self, path: str) -> IndexEntry | None:
        return self.entries.get(path)

    def add(self, path: str, data: Blob) -> IndexEntry:
        """Store data as a blob and stage it under path."""
        entry = IndexEntry(FILE_MODE, self.engine.add_blob(data))
        self._insert(path, entry)
        return entry

    def remove(self, path: str) -> bool:
        if path not in self.entries:
            return False
        del self.entries[path]
        self._forget_directories(path)
        return True

    def clear(self) -> None:
        self.entries.clear()
        self._directories.clear()

    def read_tree(self, tree_id: ObjectId) -> None:
        """Replace the index contents with the leaves of a tree."""
        self.clear()
        for entry in self.engine.iter_tree(tree_id):
            self._insert(entry.path, IndexEntry(entry.mode, entry.sha))

        self.base_tree_id = tree_id
        self._base_entries = dict(self.entries)

    def write_tree(self) -> ObjectId:
        return self.engine.write_tree(
            (path, entry.mode, entry.sha) for path, entry in self.entries.items()
        )

    def is_dirty(self) -> bool:
        return self.entries != self._base_entries

    def _insert(self, path: str, entry: IndexEntry) -> None:
        if path not in self.entries:
            # a file replaces a directory of the same name and vice versa
            if path in self._directories:
                prefix = path + "/"
                for other in [p for p in self.entries if p.startswith(prefix)]:
                    self.remove(other)
            for parent in _parents(path):
                if parent in self.entries:
                    self.remove(parent)
            self._directories.update(_parents(path))

        self.entries[path] = entry

    def _forget_directories(self, path: str) -> None:
        for parent in _parents(path):
            self._directories[parent] -= 1
            if self._directories[parent] <= 0:
                del self._directories[parent]


def _parents(path: str) -> list[str]:
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]
