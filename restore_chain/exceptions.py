"""
Restore chain exceptions.

Planning problems (gaps, missing fulls, unreachable targets) are reported as
values on ``ChainResult`` so a batch can collect per-database outcomes. The
exceptions below cover the boundaries: reading headers, parsing caller
options, and talking to SQL Server.
"""

from typing import Any, Dict, Optional


class RestoreChainError(Exception):
    """Base exception for the restore chain package.

    Attributes:
        message: Human-readable error message
        database_name: Database involved, if known
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        database_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.database_name = database_name
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.database_name:
            parts.append(f"Database: {self.database_name}")
        if self.context:
            parts.append(f"Context: {self.context}")
        return " | ".join(parts)


class HeaderReadError(RestoreChainError):
    """A backup file header could not be read.

    ``code`` is ``UNREADABLE`` or ``UNSUPPORTED_VERSION``.
    """

    UNREADABLE = "UNREADABLE"
    UNSUPPORTED_VERSION = "UNSUPPORTED_VERSION"

    def __init__(self, message: str, path: str, code: str = UNREADABLE, **kwargs):
        self.path = path
        self.code = code
        super().__init__(message, **kwargs)

    def __str__(self) -> str:
        return f"[{self.code}] {super().__str__()} | Path: {self.path}"


class CatalogError(RestoreChainError):
    """A catalog file or record could not be turned into backup sets."""


class TargetError(RestoreChainError):
    """Invalid restore target or end-state options."""


class RestoreExecutionError(RestoreChainError):
    """SQL Server rejected or failed a restore statement."""


class PlanExecutionError(RestoreChainError):
    """A plan stopped at a specific step."""

    def __init__(self, message: str, step_index: int, **kwargs):
        self.step_index = step_index
        super().__init__(message, **kwargs)
