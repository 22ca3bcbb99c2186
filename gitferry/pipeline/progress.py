"""Progress channels for the source fetch step.

A ProgressRegistry is owned by the service instance and holds, per operation
id, the channel subscribers listen on and the git process doing the fetch:
- publish: fan an event out to current subscribers (dropped when none)
- subscribe: a Subscription to events published after subscribing
- close: exactly-once teardown, optionally after a grace delay
- cancel: terminate the registered fetch process (client or timeout)
- final_event: the last complete/error event, for subscribers that arrive late

Git's clone progress (stderr) is mapped to percentages by
parse_progress_line.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from collections import OrderedDict

from gitferry.schemas import CancelReason, ProgressEvent, ProgressEventType, ProgressPhase


logger = logging.getLogger(__name__)

_CLOSED = object()
_PERCENT = re.compile(r"(\d{1,3})%")

# final events kept for subscribers that arrive after teardown
FINISHED_HISTORY = 1000


# =============================================================================
# Line parsing
# =============================================================================

def _percent(line: str) -> int | None:
    match = _PERCENT.search(line)
    if not match:
        return None
    return min(int(match.group(1)), 100)


def parse_progress_line(line: str) -> tuple[int, ProgressPhase, str] | None:
    """Map one line of ``git clone --progress`` output to (percentage, phase, message).

    Returns None for lines that carry no progress information.
    """
    line = line.strip()
    if not line:
        return None

    if "Cloning into" in line:
        return 15, ProgressPhase.CLONING, "Cloning repository..."

    if "Enumerating objects" in line or "Counting objects" in line:
        return 20, ProgressPhase.CLONING, "Counting objects on remote repository..."

    if "Compressing objects" in line:
        pct = _percent(line)
        if pct is None:
            return None
        return min(20 + round(pct * 0.05), 25), ProgressPhase.CLONING, f"Compressing objects: {pct}%"

    if "Receiving objects" in line:
        pct = _percent(line)
        if pct is None:
            return None
        return min(25 + round(pct * 0.6), 85), ProgressPhase.RECEIVING, f"Receiving objects: {pct}%"

    if "Resolving deltas" in line:
        pct = _percent(line)
        if pct is None:
            return None
        return min(85 + round(pct * 0.1), 95), ProgressPhase.RESOLVING, f"Resolving deltas: {pct}%"

    if "Updating files" in line:
        pct = _percent(line)
        if pct is None:
            return None
        return min(95 + round(pct * 0.04), 99), ProgressPhase.RESOLVING, f"Updating files: {pct}%"

    return None


# =============================================================================
# Channels
# =============================================================================

class ProgressChannel:
    """Fan-out of progress events to the subscribers of one operation."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        self._subscribers: list[asyncio.Queue] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> int:
        """Deliver to every current subscriber; returns how many received it."""
        with self._lock:
            if self._closed:
                return 0
            subscribers = list(self._subscribers)
        for queue in subscribers:
            queue.put_nowait(event)
        return len(subscribers)

    def add_subscriber(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            if self._closed:
                queue.put_nowait(_CLOSED)
            else:
                self._subscribers.append(queue)
        return queue

    def remove_subscriber(self, queue: asyncio.Queue) -> None:
        with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def close(self) -> bool:
        """Wake every subscriber with end-of-stream. Only the first call does anything."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            subscribers, self._subscribers = self._subscribers, []
        for queue in subscribers:
            queue.put_nowait(_CLOSED)
        return True


class Subscription:
    """One subscriber's view of a channel.

    Iterate it, or call ``get`` with a timeout to interleave heartbeats.
    """

    def __init__(self, registry: "ProgressRegistry", channel: ProgressChannel):
        self._registry = registry
        self._channel = channel
        self._queue = channel.add_subscriber()
        self._finished = False

    @property
    def operation_id(self) -> str:
        return self._channel.operation_id

    async def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None once the channel is closed.

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout`` seconds
        """
        if self._finished:
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            self._finished = True
            return None
        return item

    def close(self) -> None:
        self._channel.remove_subscriber(self._queue)
        self._registry.discard_if_abandoned(self.operation_id, self._channel)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class ProgressRegistry:
    """Channels and running fetch processes, keyed by operation id."""

    def __init__(self):
        self._channels: dict[str, ProgressChannel] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._cancel_reasons: dict[str, CancelReason] = {}
        self._finished: OrderedDict[str, ProgressEvent] = OrderedDict()
        self._lock = threading.Lock()

    def channel(self, operation_id: str) -> ProgressChannel:
        """Get the open channel for an operation, creating it if needed."""
        with self._lock:
            channel = self._channels.get(operation_id)
            if channel is None or channel.closed:
                channel = ProgressChannel(operation_id)
                self._channels[operation_id] = channel
            return channel

    def start(self, operation_id: str) -> ProgressChannel:
        """Open the channel for a new fetch and forget any earlier outcome."""
        with self._lock:
            self._finished.pop(operation_id, None)
        return self.channel(operation_id)

    def has_channel(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._channels

    def publish(self, event: ProgressEvent) -> int:
        with self._lock:
            channel = self._channels.get(event.operation_id)
            if event.is_terminal:
                self._finished[event.operation_id] = event
                self._finished.move_to_end(event.operation_id)
                while len(self._finished) > FINISHED_HISTORY:
                    self._finished.popitem(last=False)
        if channel is None:
            return 0
        return channel.publish(event)

    def final_event(self, operation_id: str) -> ProgressEvent | None:
        """The complete or error event of a finished fetch, if one is remembered."""
        with self._lock:
            return self._finished.get(operation_id)

    def subscribe(self, operation_id: str) -> Subscription:
        """Receive events published for ``operation_id`` from now on.

        Use as ``async with registry.subscribe(op) as events: async for ...``
        """
        return Subscription(self, self.channel(operation_id))

    def close(self, operation_id: str, delay: float = 0.0) -> None:
        """Tear down the channel now or after ``delay`` seconds."""
        with self._lock:
            channel = self._channels.get(operation_id)
        if channel is None:
            return

        if delay > 0:
            asyncio.get_running_loop().call_later(delay, self._close_channel, operation_id, channel)
        else:
            self._close_channel(operation_id, channel)

    def _close_channel(self, operation_id: str, channel: ProgressChannel) -> None:
        with self._lock:
            if self._channels.get(operation_id) is channel:
                del self._channels[operation_id]
        if channel.close():
            logger.debug(f"Closed progress channel {operation_id}")

    def discard_if_abandoned(self, operation_id: str, channel: ProgressChannel) -> None:
        with self._lock:
            if (
                self._channels.get(operation_id) is channel
                and channel.subscriber_count == 0
                and operation_id not in self._processes
            ):
                del self._channels[operation_id]

    # =========================================================================
    # Processes and cancellation
    # =========================================================================

    def register_process(self, operation_id: str, process: asyncio.subprocess.Process) -> None:
        with self._lock:
            self._processes[operation_id] = process
            self._cancel_reasons.pop(operation_id, None)

    def unregister_process(self, operation_id: str) -> None:
        with self._lock:
            self._processes.pop(operation_id, None)

    def is_running(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._processes

    def cancel(self, operation_id: str, reason: CancelReason = CancelReason.USER) -> bool:
        """Terminate the fetch registered under ``operation_id``.

        Returns False when no fetch is running for it.
        """
        with self._lock:
            process = self._processes.get(operation_id)
            if process is None:
                return False
            self._cancel_reasons[operation_id] = reason

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                logger.debug(f"Fetch process for {operation_id} already exited")
        logger.info(f"Cancelled fetch {operation_id} ({reason.value})")
        return True

    def cancel_reason(self, operation_id: str) -> CancelReason | None:
        with self._lock:
            return self._cancel_reasons.get(operation_id)

    def clear_cancel(self, operation_id: str) -> None:
        with self._lock:
            self._cancel_reasons.pop(operation_id, None)


class OperationProgress:
    """Publishes the events of one operation through a registry."""

    def __init__(self, registry: ProgressRegistry, operation_id: str, teardown_delay: float = 1.0):
        self.registry = registry
        self.operation_id = operation_id
        self.teardown_delay = teardown_delay
        registry.start(operation_id)

    def _publish(
        self,
        type_: ProgressEventType,
        message: str,
        percentage: int | None = None,
        phase: ProgressPhase | None = None,
    ) -> None:
        self.registry.publish(
            ProgressEvent(
                operation_id=self.operation_id,
                type=type_,
                message=message,
                percentage=percentage,
                phase=phase,
            )
        )

    def progress(self, message: str, percentage: int, phase: ProgressPhase) -> None:
        self._publish(ProgressEventType.PROGRESS, message, percentage, phase)

    def status(self, message: str) -> None:
        self._publish(ProgressEventType.STATUS, message)

    def line(self, line: str) -> None:
        """Publish a git output line if it carries progress."""
        parsed = parse_progress_line(line)
        if parsed is not None:
            percentage, phase, message = parsed
            self.progress(message, percentage, phase)

    def complete(self, message: str) -> None:
        self._publish(ProgressEventType.COMPLETE, message, 100, ProgressPhase.COMPLETE)
        self.registry.close(self.operation_id, delay=self.teardown_delay)

    def error(self, message: str) -> None:
        self._publish(ProgressEventType.ERROR, message, 0)
        self.registry.close(self.operation_id)
