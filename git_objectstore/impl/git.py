import logging
from pathlib import Path
from typing import Any

from dulwich.objects import ShaFile
from dulwich.repo import Repo

from git_objectstore.base import StorageEngine
from git_objectstore.engine import DulwichStorageEngine

logger = logging.getLogger(__name__)


class GitStorageEngine(DulwichStorageEngine):
    """
    Bare git repository on disk.

    Every flush writes exactly one pack (with its index) under
    objects/pack, so the repository stays readable by stock git. Objects
    added without a buffer are written as loose objects.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

        if not (path / "config").exists():
            path.mkdir(parents=True, exist_ok=True)
            Repo.init_bare(str(path))
            logger.debug(f"Initialized bare repository at {path}")

        self.repo = Repo(str(path))
        super().__init__(self.repo.object_store, self.repo.refs)

    def __repr__(self) -> str:
        return f"GitStorageEngine('{self.path}')"

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("GitStorageEngine(...)")
        else:
            with p.group(4, "GitStorageEngine(", ")"):
                p.breakable()
                p.text(f"path='{self.path}',")
                p.breakable()
                p.text(f"branches={self.list_branches()},")
                p.breakable()
                p.text(f"packs={len(self.list_packs())},")
                p.breakable()

    @property
    def pack_dir(self) -> Path:
        return Path(self.repo.object_store.pack_dir)

    def list_packs(self) -> list[str]:
        if not self.pack_dir.exists():
            return []
        return sorted(pack.name for pack in self.pack_dir.glob("*.pack"))

    def write_objects(self, objects: list[ShaFile]) -> None:
        known = set(self.list_packs())
        super().write_objects(objects)
        for name in self.list_packs():
            if name not in known:
                logger.info(f"Wrote {name} with {len(objects)} objects")

    def close(self) -> None:
        super().close()
        self.repo.close()


def create_git_engine(path: str | Path) -> StorageEngine:
    """Open the bare repository at path, initializing it when there is none."""
    return GitStorageEngine(Path(path))
