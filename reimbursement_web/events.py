"""Change notifications for reimbursement requests.

Each :class:`EventBus` owns its own :class:`blinker.Signal`, so buses are
injected where they are needed instead of living in a process-wide registry.
Subscribers receive a :class:`Subscription` handle and are responsible for
closing it; the handle also works as a context manager.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from blinker import Signal

logger = logging.getLogger(__name__)

REQUEST_CREATED = "created"
REQUEST_CHANGED = "changed"
REQUEST_DELETED = "deleted"


@dataclass(frozen=True)
class RequestEvent:
    """Something happened to the request identified by ``request_id``."""

    kind: str
    request_id: str
    status: Optional[str] = None


Listener = Callable[[RequestEvent], None]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, signal: Signal, receiver: Callable):
        self._signal = signal
        self._receiver = receiver
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._signal.disconnect(self._receiver)
            self.closed = True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


class EventBus:
    """Publishes :class:`RequestEvent` objects to interested listeners."""

    def __init__(self) -> None:
        self._signal = Signal("reimbursement-request-events")

    def subscribe(
        self, listener: Listener, *, request_id: Optional[str] = None
    ) -> Subscription:
        """Register ``listener`` for every event, or only for ``request_id``."""

        def receiver(_sender, event: RequestEvent) -> None:
            if request_id is not None and event.request_id != request_id:
                return
            try:
                listener(event)
            except Exception:
                # Listeners refresh views; the write they observe is already committed.
                logger.exception(
                    "Listener failed for %s event on request %s",
                    event.kind,
                    event.request_id,
                )

        self._signal.connect(receiver, weak=False)
        return Subscription(self._signal, receiver)

    def publish(self, event: RequestEvent) -> None:
        logger.debug("Publishing %s event for request %s", event.kind, event.request_id)
        self._signal.send(self, event=event)

    @property
    def listener_count(self) -> int:
        return len(self._signal.receivers)
