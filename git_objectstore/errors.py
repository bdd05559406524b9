"""
Error types for object store sessions.

Configuration and mode errors are programming errors and are raised
immediately. Lookup errors are raised for unknown commits and branches.
A missing path is not an error: reads return None.
"""


class ObjectStoreError(Exception):
    """Base exception for all object store errors."""


class ConfigurationError(ObjectStoreError, ValueError):
    """Raised when a session is constructed with invalid arguments."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ModeMismatchError(ObjectStoreError, RuntimeError):
    """Raised when an operation is called on a session of the wrong mode."""

    def __init__(self, operation: str, writer: bool):
        self.operation = operation
        self.writer = writer
        kind = "read-write" if writer else "read-only"
        super().__init__(f"{operation}() is called for a {kind} ObjectStore session")


class ObjectStoreLookupError(ObjectStoreError, LookupError):
    """Raised when a commit or branch does not resolve."""


class CommitNotFoundError(ObjectStoreLookupError):
    def __init__(self, commit_id: str):
        self.commit_id = commit_id
        super().__init__(f"Cannot lookup commit {commit_id}")


class BranchNotFoundError(ObjectStoreLookupError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Cannot lookup branch {branch}")


class InvalidPathError(ObjectStoreError, ValueError):
    """Raised when a file path cannot be stored in a tree."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid path {path!r}: {reason}")
