# errors.py
from __future__ import annotations

from dataclasses import dataclass


class HelixflowError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Definition / binding errors (fatal before any process is spawned)
# ----------------------------------------------------------------------

class ValidationError(HelixflowError):
    """Malformed workflow/task definition or concrete inputs."""


class TypeMismatch(ValidationError):
    """A value's tag does not match the declared type."""


class UnresolvedDependency(ValidationError):
    """An expression names a value that is not bound (yet)."""


class UndeclaredReference(ValidationError):
    """A reference to a name not declared earlier in scope."""


# ----------------------------------------------------------------------
# Instance-level errors (isolated to one node and its dependents)
# ----------------------------------------------------------------------

class EvaluationError(HelixflowError):
    """An expression failed at run time (absent value, bad index, ...)."""


class ResourceError(HelixflowError):
    """Requested cpu/memory/disk cannot be satisfied."""


@dataclass(eq=False)
class TaskFailed(HelixflowError):
    task: str
    node: str
    exit_code: int | None
    attempts: int
    stderr: str = ""
    message: str = ""

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"[{self.node}] task '{self.task}' failed: {self.message}"
        return (
            f"[{self.node}] task '{self.task}' failed "
            f"(exit={self.exit_code}, attempts={self.attempts})"
        )


@dataclass(eq=False)
class OutputExtractionError(HelixflowError):
    task: str
    node: str
    output: str
    message: str

    def __str__(self) -> str:
        return f"[{self.node}] task '{self.task}' output '{self.output}': {self.message}"


class CacheCorruption(HelixflowError):
    """A stored cache entry could not be deserialized."""
