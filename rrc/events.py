"""Structured rollout event stream.

Controllers publish :class:`RolloutEvent` records (state transitions, step
progress, health samples, retries) on an :class:`EventBus`. Sinks are plain
callables; the defaults persist to the sqlite ``events`` table and forward to
the ``logging`` module so a log shipper can pick them up.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable

from . import db
from .db import utc_now

_LOGGER = logging.getLogger(__name__)

_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


@dataclass(frozen=True)
class RolloutEvent:
    kind: str  # state|step|health|artifact|retry|rollback
    message: str
    level: str = "INFO"
    target: str | None = None
    rollout_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Subscriber = Callable[[RolloutEvent], None]


class EventBus:
    """Fan-out of rollout events to subscribers."""

    def __init__(self, sinks: list[Subscriber] | None = None) -> None:
        self._lock = Lock()
        self._subscribers: list[Subscriber] = list(sinks or [])

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return _unsubscribe

    def publish(self, event: RolloutEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(event)
            except Exception:
                # A broken dashboard must not stop a rollout.
                _LOGGER.exception("Event subscriber %r failed", fn)


def db_sink(event: RolloutEvent) -> None:
    db.log_event(
        event.level,
        event.message,
        kind=event.kind,
        target=event.target,
        rollout_id=event.rollout_id,
        data=event.data or None,
        ts=event.ts,
    )


def log_sink(event: RolloutEvent) -> None:
    _LOGGER.log(
        _LEVELS.get(event.level, logging.INFO),
        "[%s] %s %s: %s",
        event.kind,
        event.target or "-",
        event.rollout_id or "-",
        event.message,
    )


def default_bus() -> EventBus:
    return EventBus([db_sink, log_sink])
