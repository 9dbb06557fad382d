"""Deletion error taxonomy and user-facing summaries."""

from __future__ import annotations

import errno
from enum import Enum


class ErrorReason(Enum):
    """Why a deletion attempt failed."""

    PERMISSION_DENIED = "Permission denied"
    FILE_IN_USE = "File is in use"
    FILE_NOT_FOUND = "File not found"
    IS_DIRECTORY = "Is a directory"
    INVALID_PATH = "Invalid path"
    UNKNOWN = "Unknown error"


class DeletionError(Exception):
    """Structured failure for a single path.

    ``retryable`` is only ever true for transient conditions (file busy);
    ``needs_sudo`` marks failures that elevation could fix.
    """

    def __init__(
        self,
        path: str,
        reason: ErrorReason,
        original: BaseException | str | None = None,
        *,
        retryable: bool = False,
        needs_sudo: bool = False,
    ) -> None:
        super().__init__(f"{path}: {reason.value} ({original})")
        self.path = path
        self.reason = reason
        self.original = original
        self.retryable = retryable
        self.needs_sudo = needs_sudo

    def user_message(self) -> str:
        """Return a one-line message an operator can act on."""
        match self.reason:
            case ErrorReason.PERMISSION_DENIED:
                if self.needs_sudo:
                    return f"Need elevated permissions to delete: {self.path}"
                return f"Permission denied: {self.path}"
            case ErrorReason.FILE_IN_USE:
                return f"File is being used: {self.path} (close the application and try again)"
            case ErrorReason.FILE_NOT_FOUND:
                return f"Already deleted: {self.path}"
            case ErrorReason.IS_DIRECTORY:
                return f"Cannot delete directory: {self.path} (use recursive delete)"
            case ErrorReason.INVALID_PATH:
                return f"Invalid or unsafe path: {self.path}"
            case _:
                return f"Error deleting {self.path}: {self.original}"


_ERRNO_REASONS = {
    errno.EACCES: (ErrorReason.PERMISSION_DENIED, False, True),
    errno.EPERM: (ErrorReason.PERMISSION_DENIED, False, True),
    errno.EBUSY: (ErrorReason.FILE_IN_USE, True, False),
    errno.ETXTBSY: (ErrorReason.FILE_IN_USE, True, False),
    errno.ENOENT: (ErrorReason.FILE_NOT_FOUND, False, False),
    errno.EISDIR: (ErrorReason.IS_DIRECTORY, False, False),
}


def categorize_error(path: str, exc: BaseException) -> DeletionError:
    """Map an exception raised while deleting *path* onto the taxonomy."""
    if isinstance(exc, DeletionError):
        return exc
    code = getattr(exc, "errno", None)
    if code in _ERRNO_REASONS:
        reason, retryable, needs_sudo = _ERRNO_REASONS[code]
        return DeletionError(path, reason, exc, retryable=retryable, needs_sudo=needs_sudo)
    if isinstance(exc, PermissionError):
        return DeletionError(path, ErrorReason.PERMISSION_DENIED, exc, needs_sudo=True)
    if isinstance(exc, FileNotFoundError):
        return DeletionError(path, ErrorReason.FILE_NOT_FOUND, exc)
    return DeletionError(path, ErrorReason.UNKNOWN, exc)


def group_errors(errors: list[DeletionError]) -> dict[ErrorReason, list[DeletionError]]:
    grouped: dict[ErrorReason, list[DeletionError]] = {}
    for err in errors:
        grouped.setdefault(err.reason, []).append(err)
    return grouped


_SUMMARY_LINES = (
    (ErrorReason.PERMISSION_DENIED, "Permission denied: {n} files", "Run with sudo or elevate permissions"),
    (ErrorReason.FILE_IN_USE, "File in use: {n} files", "Close applications and retry"),
    (ErrorReason.FILE_NOT_FOUND, "Already deleted: {n} files", "Files may have been deleted already"),
    (ErrorReason.IS_DIRECTORY, "Directories: {n} items", "Use recursive delete option"),
    (ErrorReason.INVALID_PATH, "Unsafe paths: {n} files", "Check path validity"),
    (ErrorReason.UNKNOWN, "Other errors: {n} files", ""),
)

_EXAMPLES_PER_GROUP = 3


def format_error_summary(errors: list[DeletionError]) -> str:
    """Summarize errors grouped by reason, with a tip where one helps.

    Returns an empty string when there is nothing to report.
    """
    if not errors:
        return ""

    grouped = group_errors(errors)
    lines = ["Issues encountered:"]
    for reason, template, tip in _SUMMARY_LINES:
        group = grouped.get(reason)
        if not group:
            continue
        lines.append(f"  - {template.format(n=len(group))}")
        for err in group[:_EXAMPLES_PER_GROUP]:
            lines.append(f"      {err.path}")
        if len(group) > _EXAMPLES_PER_GROUP:
            lines.append(f"      ... and {len(group) - _EXAMPLES_PER_GROUP} more")
        if tip:
            lines.append(f"    Tip: {tip}")
    return "\n".join(lines) + "\n"
