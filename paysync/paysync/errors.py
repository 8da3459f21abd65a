"""Failure taxonomy for event processing, retries and processor calls.

A duplicate delivery is not an error and has no exception; it surfaces as
``IngestResult(duplicate=True)``.  Everything else maps onto one of the
classes below.
"""

from __future__ import annotations

from paysync_core.retry import InvalidTransition


class PaySyncError(Exception):
    """Base class for PaySync failures."""


class TransientProcessingError(PaySyncError):
    """Database or network failure; the event stays unprocessed for re-delivery."""

    def __init__(self, event_id: str, cause: BaseException) -> None:
        self.event_id = event_id
        self.cause = cause
        super().__init__(f"Transient failure processing {event_id}: {cause}")


class TerminalSkip(PaySyncError):
    """The event references data that will never resolve.

    Raised by handler resolution helpers before any write; the router
    turns it into a processed-but-flagged outcome.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ProcessorError(PaySyncError):
    """A call to the payment processor failed.

    Attributes
    ----------
    code:
        Processor error code when one was returned (e.g. ``card_declined``).
    transient:
        True for connection, timeout and rate-limit failures.
    requires_action:
        True when the customer must complete an authentication step.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        transient: bool = False,
        requires_action: bool = False,
    ) -> None:
        self.code = code
        self.transient = transient
        self.requires_action = requires_action
        super().__init__(message)


__all__ = [
    "InvalidTransition",
    "PaySyncError",
    "ProcessorError",
    "TerminalSkip",
    "TransientProcessingError",
]
