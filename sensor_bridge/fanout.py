"""Publish/subscribe surface between the connection manager and consumers.

Every subscriber owns a bounded mailbox drained by its own task.
``publish`` only enqueues: it never waits on a subscriber, so a slow or
failing consumer cannot hold up the read pump or the other subscribers.
A full mailbox drops its oldest event.  A delivery that raises, or that
takes longer than the delivery timeout, is logged and skipped; a
subscriber raising ``SubscriberGone`` is removed.

Commands travel the other way: ``submit_command`` forwards the string
verbatim to the command sink (``ConnectionManager.write``) and reports a
rejection to the submitting subscriber only.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from sensor_bridge.errors import SubscriberGone
from sensor_bridge.schemas import BridgeEvent, EventKind

logger = structlog.get_logger(__name__)

_DEFAULT_DELIVERY_TIMEOUT: float = 1.0
_DEFAULT_BACKLOG = 256
_REJECT_REASON = "device not connected"


class Subscriber(ABC):
    """A sink for published events."""

    @abstractmethod
    async def deliver(self, event: BridgeEvent) -> None:
        """Receive one event.  Raise ``SubscriberGone`` to unsubscribe."""

    async def command_rejected(self, command: str, reason: str) -> None:
        """Called when a command this subscriber submitted was refused."""


class _Mailbox:
    """Bounded FIFO of pending events for one subscriber."""

    def __init__(self, subscriber: Subscriber, maxsize: int) -> None:
        self.subscriber = subscriber
        self.queue: asyncio.Queue[BridgeEvent] = asyncio.Queue(maxsize=maxsize)
        self.task: Optional[asyncio.Task] = None
        self.dropped = 0

    def put(self, event: BridgeEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.queue.task_done()
            self.dropped += 1
            logger.debug(
                "subscriber_backlog_dropped",
                subscriber=type(self.subscriber).__name__,
                dropped=self.dropped,
            )
        self.queue.put_nowait(event)

    def discard_pending(self) -> None:
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()


class EventFanout:
    """Registry of subscriber mailboxes plus a typed ``publish`` operation."""

    def __init__(
        self,
        delivery_timeout: float = _DEFAULT_DELIVERY_TIMEOUT,
        command_sink: Optional[Callable[[str], bool]] = None,
        *,
        max_backlog: int = _DEFAULT_BACKLOG,
    ) -> None:
        self._delivery_timeout = delivery_timeout
        self._command_sink = command_sink
        self._max_backlog = max_backlog
        # id(subscriber) -> mailbox; identity-keyed, insertion-ordered
        self._mailboxes: Dict[int, _Mailbox] = {}

    # -- registry -----------------------------------------------------------

    def subscribe(self, subscriber: Subscriber) -> None:
        if id(subscriber) not in self._mailboxes:
            self._mailboxes[id(subscriber)] = _Mailbox(subscriber, self._max_backlog)
            logger.debug("subscriber_added", count=len(self._mailboxes))

    def unsubscribe(self, subscriber: Subscriber) -> None:
        mailbox = self._mailboxes.pop(id(subscriber), None)
        if mailbox is None:
            return
        mailbox.discard_pending()
        task = mailbox.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("subscriber_removed", count=len(self._mailboxes))

    @property
    def subscriber_count(self) -> int:
        return len(self._mailboxes)

    def set_command_sink(self, sink: Callable[[str], bool]) -> None:
        self._command_sink = sink

    # -- outbound -----------------------------------------------------------

    async def publish(
        self, kind: EventKind, payload: Optional[Mapping[str, Any]] = None
    ) -> None:
        """Queue one event for every currently registered subscriber.

        Returns without waiting for any delivery.
        """
        event = BridgeEvent(kind=kind, payload=dict(payload or {}))
        for mailbox in list(self._mailboxes.values()):
            mailbox.put(event)
            if mailbox.task is None:
                mailbox.task = asyncio.create_task(self._drain(mailbox))

    async def flush(self) -> None:
        """Wait until every queued event has been delivered or given up on."""
        await asyncio.gather(
            *(mailbox.queue.join() for mailbox in list(self._mailboxes.values()))
        )

    async def close(self) -> None:
        """Stop every drain task.  Undelivered events are dropped."""
        tasks = []
        for mailbox in self._mailboxes.values():
            mailbox.discard_pending()
            if mailbox.task is not None and not mailbox.task.done():
                mailbox.task.cancel()
                tasks.append(mailbox.task)
            mailbox.task = None
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _drain(self, mailbox: _Mailbox) -> None:
        subscriber = mailbox.subscriber
        name = type(subscriber).__name__
        while True:
            event = await mailbox.queue.get()
            try:
                await asyncio.wait_for(
                    subscriber.deliver(event), timeout=self._delivery_timeout
                )
            except SubscriberGone:
                logger.info("subscriber_gone", subscriber=name)
                if self._mailboxes.get(id(subscriber)) is mailbox:
                    self.unsubscribe(subscriber)
                else:
                    mailbox.discard_pending()
                return
            except asyncio.TimeoutError:
                logger.warning(
                    "subscriber_slow",
                    subscriber=name,
                    kind=event.kind.value,
                    timeout=self._delivery_timeout,
                )
            except Exception:
                logger.exception(
                    "subscriber_delivery_failed", subscriber=name, kind=event.kind.value
                )
            finally:
                mailbox.queue.task_done()

    # -- inbound ------------------------------------------------------------

    async def submit_command(self, subscriber: Subscriber, command: str) -> bool:
        """Forward *command* to the device.  Returns ``True`` if accepted."""
        accepted = self._command_sink(command) if self._command_sink else False
        if accepted:
            return True

        logger.info("command_rejected", command=command)
        try:
            await subscriber.command_rejected(command, _REJECT_REASON)
        except SubscriberGone:
            self.unsubscribe(subscriber)
        return False


class LoggingSubscriber(Subscriber):
    """Echoes every event to the structured log."""

    def __init__(self) -> None:
        self._log = structlog.get_logger("sensor_bridge.events")

    async def deliver(self, event: BridgeEvent) -> None:
        if event.kind is EventKind.DATA:
            self._log.debug("sensor_data", **event.payload)
        else:
            self._log.info("link_event", kind=event.kind.value, **event.payload)
