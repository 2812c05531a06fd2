"""
Scribey Companion - Exceptions

Every failure the pipeline can raise derives from CompanionError so the
application shell can tell its own errors apart from library ones.
"""

from typing import Optional


class CompanionError(Exception):
    """Base exception for companion operations."""
    pass


class PathError(CompanionError):
    """The WoW installation or its SavedVariables subtree is unusable."""
    pass


class DecodeError(CompanionError):
    """The SavedVariables text uses syntax outside the table literal grammar."""

    def __init__(self, node_type: str, line: Optional[int] = None, detail: str = ""):
        self.node_type = node_type
        self.line = line
        self.detail = detail
        message = f"Can't decode node type: {node_type}"
        if line is not None:
            message += f" (line {line})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ExtractionError(CompanionError):
    """A single character entry could not be mapped to a record."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class DeliveryError(CompanionError):
    """Network or HTTP failure while talking to the Scribey service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QueueDrop(CompanionError):
    """A queue item exhausted its retries and was discarded."""

    def __init__(self, item_id: str, failure_count: int, reason: str = ""):
        super().__init__(
            f"Dropped queue item {item_id} after {failure_count} failures"
            + (f": {reason}" if reason else "")
        )
        self.item_id = item_id
        self.failure_count = failure_count
        self.reason = reason


class CommandError(CompanionError):
    """Unknown command name or bad command arguments."""
    pass
