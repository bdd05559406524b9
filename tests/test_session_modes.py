from pathlib import Path

import pytest
from dulwich.objects import Blob as GitBlob
from dulwich.objects import Tree as GitTree
from dulwich.repo import MemoryRepo

from git_objectstore.base import Signature
from git_objectstore.errors import (
    BranchNotFoundError,
    CommitNotFoundError,
    ConfigurationError,
    InvalidPathError,
    ModeMismatchError,
    ObjectStoreError,
    ObjectStoreLookupError,
)
from git_objectstore.impl.git import GitStorageEngine
from git_objectstore.impl.memory import create_memory_engine
from git_objectstore.session import ReaderSession, WriterSession, open_object_store


@pytest.fixture
def repo() -> MemoryRepo:
    return MemoryRepo()


@pytest.fixture
def writer(repo: MemoryRepo):
    session = WriterSession(create_memory_engine(repo), "main")
    yield session
    session.close()


@pytest.fixture
def reader(repo: MemoryRepo, writer: WriterSession):
    writer.write_unchecked("a.txt", b"a")
    writer.commit_and_flush()
    session = ReaderSession(create_memory_engine(repo), "main")
    yield session
    session.close()


def test_missing_mandatory_arguments():
    with pytest.raises(ConfigurationError, match="engine"):
        ReaderSession(None, "main")  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError, match="branch"):
        WriterSession(create_memory_engine(), "")


def test_writer_rejects_goto(repo: MemoryRepo, writer: WriterSession):
    with pytest.raises(ConfigurationError, match="goto"):
        WriterSession(
            create_memory_engine(repo), "main", goto=writer.current_commit_id()
        )


def test_open_object_store_validates_arguments(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        open_object_store("", "main")
    with pytest.raises(ConfigurationError):
        open_object_store(tmp_path / "repo", "")
    with pytest.raises(ConfigurationError):
        open_object_store(tmp_path / "repo", "main", writer=True, goto="0" * 40)

    assert not (tmp_path / "repo").exists(), "Nothing is created on bad arguments"


def test_configuration_error_is_value_error():
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(ConfigurationError, ObjectStoreError)
    assert issubclass(InvalidPathError, ValueError)
    assert issubclass(CommitNotFoundError, ObjectStoreLookupError)
    assert issubclass(BranchNotFoundError, LookupError)


@pytest.mark.parametrize(
    "call",
    [
        lambda s: s.write_checked("a", b"x"),
        lambda s: s.write_unchecked("a", b"x"),
        lambda s: s.delete_file("a"),
        lambda s: s.commit(),
        lambda s: s.flush_pack(),
        lambda s: s.commit_and_flush(),
        lambda s: s.is_dirty(),
        lambda s: s.pending_object_count(),
    ],
)
def test_reader_rejects_writer_operations(reader: ReaderSession, call):
    with pytest.raises(ModeMismatchError) as exc_info:
        call(reader)
    assert exc_info.value.writer is False
    assert "is called for a read-only ObjectStore session" in str(exc_info.value)


@pytest.mark.parametrize(
    "call",
    [
        lambda s: s.recursive_read("", lambda path, data: None),
        lambda s: s.list_files(),
        lambda s: s.changes_since(s.current_commit_id()),
        lambda s: s.diff_since(s.current_commit_id(), print, print),
    ],
)
def test_writer_rejects_reader_operations(writer: WriterSession, call):
    with pytest.raises(ModeMismatchError) as exc_info:
        call(writer)
    assert exc_info.value.writer is True
    assert str(exc_info.value).endswith("is called for a read-write ObjectStore session")


def test_mode_error_names_operation(reader: ReaderSession):
    with pytest.raises(ModeMismatchError, match=r"^commit\(\) is called"):
        reader.commit("message")


def test_reader_on_missing_branch(repo: MemoryRepo):
    with pytest.raises(BranchNotFoundError) as exc_info:
        ReaderSession(create_memory_engine(repo), "nope")
    assert exc_info.value.branch == "nope"


@pytest.mark.parametrize(
    "goto", ["0" * 40, "not-a-commit", "abc", "g" * 40, "A" * 41]
)
def test_reader_on_unknown_commit(repo: MemoryRepo, writer: WriterSession, goto: str):
    with pytest.raises(CommitNotFoundError) as exc_info:
        ReaderSession(create_memory_engine(repo), "main", goto=goto)
    assert exc_info.value.commit_id == goto
    assert str(exc_info.value) == f"Cannot lookup commit {goto}"


def test_goto_must_name_a_commit(repo: MemoryRepo, writer: WriterSession):
    blob_id = writer.store.add_blob(b"not a commit")
    writer.flush_pack()
    with pytest.raises(CommitNotFoundError):
        ReaderSession(create_memory_engine(repo), "main", goto=blob_id)


def test_goto_ignores_case_and_whitespace(repo: MemoryRepo, reader: ReaderSession):
    goto = f" {reader.current_commit_id().upper()}\n"
    session = ReaderSession(create_memory_engine(repo), "main", goto=goto)
    assert session.current_commit_id() == reader.current_commit_id()


def test_goto_accepts_unique_prefix(repo: MemoryRepo, reader: ReaderSession):
    commit_id = reader.current_commit_id()
    session = ReaderSession(create_memory_engine(repo), "main", goto=commit_id[:10])
    assert session.current_commit_id() == commit_id
    assert session.read_file("a.txt") == b"a"


def test_goto_rejects_short_prefix(repo: MemoryRepo, reader: ReaderSession):
    goto = reader.current_commit_id()[:3]
    with pytest.raises(CommitNotFoundError):
        ReaderSession(create_memory_engine(repo), "main", goto=goto)


@pytest.mark.parametrize("path", ["", "/", "a//b", "../a", "a/./b", "a/..", "a\0b"])
def test_invalid_paths_rejected_on_write(writer: WriterSession, path: str):
    with pytest.raises(InvalidPathError):
        writer.write_checked(path, b"x")
    with pytest.raises(InvalidPathError):
        writer.delete_file(path)


@pytest.mark.parametrize("path", ["", "../a.txt", "a//b"])
def test_invalid_paths_are_not_found_on_read(reader: ReaderSession, path: str):
    assert reader.read_file(path) is None
    assert reader.file_exists(path) is False


def test_surrounding_slashes_are_ignored(writer: WriterSession):
    writer.write_unchecked("/dir/file/", b"x")
    assert writer.read_file("dir/file") == b"x"
    assert writer.file_exists("/dir/file") is True


def test_session_leaves_caller_engine_open(repo: MemoryRepo, monkeypatch):
    engine = create_memory_engine(repo)
    closed = []
    monkeypatch.setattr(engine, "close", lambda: closed.append(engine))

    writer = WriterSession(engine, "main")
    writer.close()
    ReaderSession(engine, "main").close()

    assert closed == []
    assert engine.list_branches() == ["main"]


def test_context_manager_closes_engine(tmp_path: Path):
    with open_object_store(tmp_path / "repo", "main", writer=True) as writer:
        assert isinstance(writer, WriterSession)
        writer.write_unchecked("a.txt", b"a")
        writer.commit_and_flush("first")

    with open_object_store(tmp_path / "repo", "main") as reader:
        assert isinstance(reader, ReaderSession)
        assert reader.read_file("a.txt") == b"a"


def test_failed_open_closes_engine(tmp_path: Path, monkeypatch):
    closed = []

    original_close = GitStorageEngine.close

    def close(self):
        closed.append(self)
        original_close(self)

    monkeypatch.setattr(GitStorageEngine, "close", close)

    with pytest.raises(BranchNotFoundError):
        open_object_store(tmp_path / "repo", "main")
    assert len(closed) == 1


def test_non_utf8_names_survive_a_writer_commit(repo: MemoryRepo):
    engine = create_memory_engine(repo)
    parent = engine.create_initial_commit("main", Signature())
    blob = GitBlob.from_string(b"legacy")
    tree = GitTree()
    tree.add(b"caf\xe9", 0o100644, blob.id)
    repo.object_store.add_objects([(blob, None), (tree, None)])
    legacy = engine.create_commit(
        "latin-1 name", Signature(), [parent], tree.id.decode("ascii"), "main"
    )

    with WriterSession(create_memory_engine(repo), "main") as writer:
        assert writer.read_file("caf\udce9") == b"legacy"
        writer.write_unchecked("b.txt", b"b")
        assert writer.commit_and_flush()

    with ReaderSession(create_memory_engine(repo), "main") as reader:
        assert sorted(reader.list_files()) == ["b.txt", "caf\udce9"]
        assert reader.read_file("caf\udce9") == b"legacy"
        assert [c.path for c in reader.changes_since(legacy)] == ["b.txt"]
