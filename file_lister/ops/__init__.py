"""File operations (rename/delete/move) kept consistent with scan and cache state."""

from .file_operations import BatchResult, FileMutationService, MutationOutcome

__all__ = ["BatchResult", "FileMutationService", "MutationOutcome"]
