"""Event router: dispatches a verified event to its domain handler."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from paysync.errors import TerminalSkip
from paysync.handlers import HANDLERS
from paysync.handlers.base import Handler, HandlerContext, HandlerResult
from paysync_core.events.types import EventKind, ProcessorEvent

logger = logging.getLogger(__name__)


def _check_exhaustive(handlers: Mapping[EventKind, Handler]) -> None:
    missing = sorted(k.value for k in EventKind if k is not EventKind.UNRECOGNIZED and k not in handlers)
    if missing:
        raise RuntimeError(f"No handler registered for event kinds: {', '.join(missing)}")
    if EventKind.UNRECOGNIZED in handlers:
        raise RuntimeError("UNRECOGNIZED events must not have a handler")


_check_exhaustive(HANDLERS)


class EventRouter:
    """Maps each :class:`EventKind` to exactly one handler.

    Unrecognized event types are logged and ignored.  A
    :class:`TerminalSkip` raised by a handler becomes a ``skipped``
    result; every other exception propagates so the caller rolls back.
    """

    def __init__(self, handlers: Mapping[EventKind, Handler] | None = None) -> None:
        self._handlers = dict(handlers if handlers is not None else HANDLERS)
        _check_exhaustive(self._handlers)

    def handler_for(self, kind: EventKind) -> Handler | None:
        return self._handlers.get(kind)

    async def route(self, ctx: HandlerContext, event: ProcessorEvent) -> HandlerResult:
        kind = event.kind
        handler = self._handlers.get(kind)
        if handler is None:
            logger.info("Ignoring unrecognized event type %s", event.type, extra={"event_id": event.id})
            return HandlerResult.ignored(f"unrecognized event type {event.type}")

        try:
            result = await handler(ctx, event)
        except TerminalSkip as exc:
            logger.warning(
                "Skipping %s event %s: %s",
                event.type,
                event.id,
                exc.reason,
                extra={"event_id": event.id},
            )
            return HandlerResult.skipped(exc.reason)

        logger.debug(
            "Routed %s event %s -> %s",
            event.type,
            event.id,
            result.outcome.value,
            extra={"event_id": event.id},
        )
        return result
