from typing import Any, Callable, Iterable, Iterator

from dulwich.object_store import BaseObjectStore
from dulwich.objects import ShaFile, sha_to_hex
from sqlalchemy import LargeBinary, String, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from git_objectstore.base import StorageEngine
from git_objectstore.engine import DulwichStorageEngine

# keeps IN (...) lists below the bound parameter limit of sqlite
LOOKUP_CHUNK_SIZE = 500


class Base(DeclarativeBase):
    pass


class GitObjectModel(Base):
    __tablename__ = "git_objects"
    sha: Mapped[str] = mapped_column(String(40), primary_key=True)
    type_num: Mapped[int] = mapped_column(nullable=False)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class GitRefModel(Base):
    __tablename__ = "git_refs"
    name: Mapped[str] = mapped_column(primary_key=True)
    target: Mapped[str] = mapped_column(String(40), nullable=False)


def _hexsha(sha: bytes | str) -> str:
    if isinstance(sha, str):
        return sha
    if len(sha) == 20:
        sha = sha_to_hex(sha)
    return sha.decode("ascii")


class SqlObjectStore(BaseObjectStore):
    """
    Git objects as rows of the git_objects table, keyed by hex id.

    Objects are stored in their raw (uncompressed) form. Each
    add_objects() call runs in a single transaction.
    """

    def __init__(self, session_maker: Callable[[], Session]) -> None:
        super().__init__()
        self.session_maker = session_maker

    def contains_loose(self, sha: Any) -> bool:
        stmt = select(GitObjectModel.sha).where(GitObjectModel.sha == _hexsha(sha))
        with self.session_maker() as session:
            return session.execute(stmt).first() is not None

    def contains_packed(self, sha: Any) -> bool:
        return False

    def __contains__(self, sha: Any) -> bool:
        return self.contains_loose(sha)

    def __iter__(self) -> Iterator[bytes]:
        with self.session_maker() as session:
            shas = session.execute(select(GitObjectModel.sha)).scalars().all()
        return iter(sha.encode("ascii") for sha in shas)

    def iter_prefix(self, prefix: bytes) -> Iterator[bytes]:
        stmt = select(GitObjectModel.sha).where(
            GitObjectModel.sha.startswith(prefix.decode("ascii"))
        )
        with self.session_maker() as session:
            shas = session.execute(stmt).scalars().all()
        return iter(sha.encode("ascii") for sha in shas)

    @property
    def packs(self) -> list:
        return []

    def get_raw(self, name: Any) -> tuple[int, bytes]:
        with self.session_maker() as session:
            row = session.get(GitObjectModel, _hexsha(name))
            if row is None:
                raise KeyError(name)
            return row.type_num, row.data

    def add_object(self, obj: ShaFile) -> None:
        self.add_objects([(obj, None)])

    def add_objects(
        self, objects: Iterable[tuple[ShaFile, Any]], progress: Any = None
    ) -> None:
        new_objects = {obj.id.decode("ascii"): obj for obj, _path in objects}
        if not new_objects:
            return

        with self.session_maker() as session:
            shas = list(new_objects)
            for start in range(0, len(shas), LOOKUP_CHUNK_SIZE):
                chunk = shas[start : start + LOOKUP_CHUNK_SIZE]
                stmt = select(GitObjectModel.sha).where(GitObjectModel.sha.in_(chunk))
                for existing in session.execute(stmt).scalars():
                    del new_objects[existing]

            session.add_all(
                GitObjectModel(sha=sha, type_num=obj.type_num, data=obj.as_raw_string())
                for sha, obj in new_objects.items()
            )
            session.commit()


class SqlRefsContainer:
    """
    Branch pointers as rows of the git_refs table.

    Only the parts of dulwich's refs container the engine relies on are
    provided; reflog arguments are accepted and ignored.
    """

    def __init__(self, session_maker: Callable[[], Session]) -> None:
        self.session_maker = session_maker

    def __getitem__(self, name: bytes) -> bytes:
        with self.session_maker() as session:
            ref = session.get(GitRefModel, name.decode("utf-8"))
            if ref is None:
                raise KeyError(name)
            return ref.target.encode("ascii")

    def __contains__(self, name: bytes) -> bool:
        try:
            self[name]
        except KeyError:
            return False
        return True

    def allkeys(self) -> set[bytes]:
        with self.session_maker() as session:
            names = session.execute(select(GitRefModel.name)).scalars().all()
        return {name.encode("utf-8") for name in names}

    def set_if_equals(
        self,
        name: bytes,
        old_ref: bytes | None,
        new_ref: bytes,
        committer: bytes | None = None,
        timestamp: Any = None,
        timezone: Any = None,
        message: bytes | None = None,
    ) -> bool:
        with self.session_maker() as session:
            ref = session.get(GitRefModel, name.decode("utf-8"))
            if old_ref is not None:
                current = ref.target.encode("ascii") if ref else None
                if current != old_ref:
                    return False

            if ref is None:
                session.add(
                    GitRefModel(name=name.decode("utf-8"), target=_hexsha(new_ref))
                )
            else:
                ref.target = _hexsha(new_ref)
            session.commit()
        return True


class SqlStorageEngine(DulwichStorageEngine):
    def __init__(self, session_maker: Callable[[], Session]) -> None:
        self.session_maker = session_maker
        super().__init__(SqlObjectStore(session_maker), SqlRefsContainer(session_maker))

    def __repr__(self) -> str:
        return "SqlStorageEngine()"

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("SqlStorageEngine(...)")
        else:
            with p.group(4, "SqlStorageEngine(", ")"):
                p.breakable()
                p.text(f"branches={self.list_branches()},")
                p.breakable()


def create_sql_engine(
    session_maker: Callable[[], Session], create_tables: bool = True
) -> StorageEngine:
    if create_tables:
        with session_maker() as session:
            Base.metadata.create_all(session.get_bind())
    return SqlStorageEngine(session_maker)
