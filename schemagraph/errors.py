"""Exception hierarchy for SchemaGraph."""

from __future__ import annotations

from typing import Optional, Sequence


class SchemaGraphError(Exception):
    """Base class for every error raised by SchemaGraph."""


class NodeNotFound(SchemaGraphError, KeyError):
    """Requested artifact id is absent from the graph."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")

    def __str__(self) -> str:
        return f"Node not found: {self.node_id}"


class ExtractionFailure(SchemaGraphError):
    """A single file could not be turned into artifact records.

    Non-fatal: the crawler logs it and keeps the file's previous fingerprint.
    """

    def __init__(self, file_path: str, reason: str) -> None:
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Failed to extract {file_path}: {reason}")


class RepositoryStateError(SchemaGraphError):
    """Git precondition failed or the repository could not be restored."""


class OperationTimeout(SchemaGraphError, TimeoutError):
    """A git subprocess, file read or lock wait exceeded its bound."""

    def __init__(self, operation: str, timeout: Optional[float]) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s: {operation}")


class GitCommandError(RepositoryStateError):
    """A git invocation exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        command = " ".join(["git", *self.args_list])
        super().__init__(f"'{command}' failed ({returncode}): {self.stderr}")


class GraphInvariantError(SchemaGraphError):
    """Programming-error-level violation of a graph invariant."""
