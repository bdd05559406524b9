from typing import Any

from dulwich.repo import MemoryRepo

from git_objectstore.base import StorageEngine
from git_objectstore.engine import DulwichStorageEngine


class MemoryStorageEngine(DulwichStorageEngine):
    """
    Storage engine over an in-process dulwich MemoryRepo.

    Several engines may share one repo; whatever a writer flushes lands
    in the repo's object store, where every engine sees it.
    """

    def __init__(self, repo: MemoryRepo) -> None:
        self.repo = repo
        super().__init__(repo.object_store, repo.refs)

    def __repr__(self) -> str:
        return "MemoryStorageEngine()"

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("MemoryStorageEngine(...)")
        else:
            with p.group(4, "MemoryStorageEngine(", ")"):
                p.breakable()
                p.text(f"branches={self.list_branches()},")
                p.breakable()
                p.text(f"objects={sum(1 for _ in self.durable_store)},")
                p.breakable()


def create_memory_engine(repo: MemoryRepo | None = None) -> StorageEngine:
    if repo is None:
        repo = MemoryRepo()
    return MemoryStorageEngine(repo)
