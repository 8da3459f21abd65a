"""Processor event kinds and the trusted event envelope."""

from paysync_core.events.types import MONEY_MOVING_KINDS, EventKind, ProcessorEvent, classify

__all__ = ["MONEY_MOVING_KINDS", "EventKind", "ProcessorEvent", "classify"]
