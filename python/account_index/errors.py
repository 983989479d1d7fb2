"""
Error Handling - Centralized error policies and custom exceptions.

Each exception type maps to a policy: what to log, at which level, and
whether to retry or skip. Every failure is scoped to one identifier, one
shard letter or one stream connection; nothing here aborts the process.
"""

import asyncio
import logging
from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional

import aiohttp


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """Outcome of an error policy lookup."""
    SKIP = auto()           # Drop this identifier or letter and move on
    RETRY = auto()          # Try the same request again after a backoff
    ABORT = auto()          # Give up on this unit of work and report it


class IndexingError(Exception):
    """Base exception for account index errors."""
    pass


class TransientNetworkError(IndexingError):
    """Fetch failed in a way that is worth retrying."""
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}")


class ResolutionError(IndexingError):
    """Identifier could not be resolved to a profile."""
    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        super().__init__(f"Cannot resolve {identifier}" + (f": {reason}" if reason else ""))


class NotFoundError(ResolutionError):
    """Identifier does not exist (HTTP 400/404 from the resolver)."""
    pass


class PublishError(IndexingError):
    """Committing a shard back to the remote store failed."""
    def __init__(self, letter: str, reason: str):
        self.letter = letter
        self.reason = reason
        super().__init__(f"Publish of shard {letter!r} failed: {reason}")


class AuthError(PublishError):
    """Credentials were rejected."""
    pass


class ConflictError(PublishError):
    """A concurrent write raced this commit."""
    pass


class StreamError(IndexingError):
    """The live event stream failed."""
    pass


@dataclass
class ErrorPolicy:
    """How one error type is logged and acted on."""
    action: ErrorAction
    log_level: int
    message_template: str = "{subject}: {error}"


# Error type to policy mapping (first isinstance match wins, so subclasses first)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    NotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.INFO,
        message_template="Account not found: {subject}"
    ),
    ResolutionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Failed to resolve {subject}: {error}"
    ),
    AuthError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Credentials rejected publishing {subject}: {error}"
    ),
    ConflictError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.WARNING,
        message_template="Concurrent write publishing {subject}: {error}"
    ),
    PublishError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Publish failed for {subject}: {error}"
    ),
    StreamError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.WARNING,
        message_template="Stream dropped: {subject} - {error}"
    ),
    TransientNetworkError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Fetch failed, retrying: {subject} - {error}"
    ),
    aiohttp.ClientError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="HTTP error, retrying: {subject} - {error}"
    ),
    asyncio.TimeoutError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Timed out, retrying: {subject}"
    ),
    ValueError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Malformed response, retrying: {subject} - {error}"
    ),
}


_UNEXPECTED = ErrorPolicy(
    action=ErrorAction.SKIP,
    log_level=logging.ERROR,
    message_template="Unexpected error: {subject} - {error}"
)


def policy_for(error: BaseException) -> ErrorPolicy:
    """First matching policy in ERROR_POLICIES, or the catch-all."""
    return next(
        (policy for error_type, policy in ERROR_POLICIES.items() if isinstance(error, error_type)),
        _UNEXPECTED,
    )


def handle_error(
    error: Exception,
    subject: Optional[str] = None,
    context: str = ""
) -> ErrorAction:
    """
    Log an error at its policy's level and tell the caller what to do next.

    Args:
        error: The exception that was caught
        subject: Identifier, shard letter or URL being worked on
        context: Short label for the step that failed (prefixed to the log line)

    Returns:
        The policy's ErrorAction
    """
    policy = policy_for(error)

    message = policy.message_template.format(subject=subject or "<unknown>", error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)
    return policy.action
