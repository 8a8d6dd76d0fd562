"""
Event Subscription Manager.

Runs a source on a background thread and pushes decoded items into a
bounded queue.

Disconnected -> Subscribing -> Streaming -> (stream error) Reconnecting
-> Streaming -> Closed

The cursor is the last block whose items have all been delivered. A
reconnect resumes at ``cursor + 1``; items of that block that were
already delivered are suppressed by their (blockHash, txHash, logIndex)
triple.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional, Union

from ..errors import DecodeMismatch, InvalidStateError, KerykeionError, SubscriptionDropped
from ..logging import get_logger
from .abi import EventRegistry
from .models import BlockHeader, LogEvent
from .sources import HEADS, Checkpoint, StreamSource

logger = get_logger("pneuma.subscribe")


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class Backpressure(str, Enum):
    BLOCK = "block"
    DROP_OLDEST = "drop_oldest"


@dataclass(frozen=True)
class SkippedEvent:
    """A log that could not be decoded. Delivered as a warning, not a failure."""

    reason: str
    log: Optional[LogEvent] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


Delivered = Union[LogEvent, BlockHeader, SkippedEvent]

_GET_SLICE = 0.2


class Subscription:
    """
    Resilient live subscription to logs or new heads.

    Args:
        source: Stream source (PollingSource or WebSocketSource)
        registry: Event schemas used to decode logs; None delivers raw logs
        start_block: First block to deliver; None starts at the live head
        queue_size: Capacity of the delivery queue
        backpressure: BLOCK the stream or DROP_OLDEST when the queue is full
        max_reconnects: Consecutive failures tolerated before closing
        reconnect_delay: Linear backoff step between reconnects, in seconds
    """

    def __init__(
        self,
        source: StreamSource,
        registry: Optional[EventRegistry] = None,
        start_block: Optional[int] = None,
        queue_size: int = 1024,
        backpressure: Backpressure = Backpressure.BLOCK,
        max_reconnects: int = 5,
        reconnect_delay: float = 1.0,
        name: Optional[str] = None,
    ) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.source = source
        self.registry = registry
        self.start_block = start_block
        self.backpressure = Backpressure(backpressure)
        self.max_reconnects = max_reconnects
        self.reconnect_delay = reconnect_delay
        self.name = name or source.kind

        self._queue: queue.Queue[Delivered] = queue.Queue(maxsize=queue_size)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = SubscriptionState.DISCONNECTED
        self._error: Optional[SubscriptionDropped] = None
        self._dropped = 0
        self._reconnects = 0

        self._cursor: Optional[int] = None
        self._open_block: Optional[int] = None
        self._recent: set[tuple[str, str, int]] = set()

    # ============ Introspection ============

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def cursor(self) -> Optional[int]:
        """Last block whose items have all been delivered."""
        return self._cursor

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def reconnects(self) -> int:
        return self._reconnects

    @property
    def error(self) -> Optional[SubscriptionDropped]:
        return self._error

    def _set_state(self, state: SubscriptionState) -> None:
        if state is not self._state:
            logger.info("Subscription %s: %s -> %s", self.name, self._state.value, state.value)
            self._state = state

    # ============ Lifecycle ============

    def start(self) -> "Subscription":
        if self._thread is not None:
            raise InvalidStateError(f"Subscription {self.name} already started")
        self._thread = threading.Thread(target=self._run, name=f"kerykeion-{self.name}", daemon=True)
        self._thread.start()
        return self

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """
        Stop the worker and wait up to ``timeout`` for it to exit.

        If the worker is still blocked in the source after the timeout the
        state is left as is; the worker moves to CLOSED when it returns.
        """
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(
                    "Subscription %s worker still running %ss after close; it will exit when its source returns",
                    self.name,
                    timeout,
                )
                return
        self._set_state(SubscriptionState.CLOSED)

    def __enter__(self) -> "Subscription":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _resume_block(self) -> Optional[int]:
        return self._cursor + 1 if self._cursor is not None else self.start_block

    def _run(self) -> None:
        failures = 0
        self._set_state(SubscriptionState.SUBSCRIBING)

        while not self._stop.is_set():
            start = self._resume_block()
            baseline = self._cursor
            try:
                for item in self.source.open(start, self._stop):
                    if self._stop.is_set():
                        break
                    if self._state is not SubscriptionState.STREAMING:
                        self._set_state(SubscriptionState.STREAMING)
                    self._handle(item)
                    # Only items or a checkpoint past the baseline count as progress
                    if isinstance(item, Checkpoint) and (baseline is None or self._cursor <= baseline):
                        baseline = self._cursor
                        continue
                    failures = 0
                if self._stop.is_set():
                    break
                raise SubscriptionDropped("Stream ended unexpectedly")
            except (KerykeionError, OSError) as e:
                if self._stop.is_set():
                    break
                failures += 1
                if failures > self.max_reconnects:
                    self._fail(
                        SubscriptionDropped(
                            f"Subscription {self.name} gave up after {failures} consecutive failures: {e}",
                            terminal=True,
                        ),
                        e,
                    )
                    return
                self._reconnects += 1
                self._set_state(SubscriptionState.RECONNECTING)
                logger.warning(
                    "Subscription %s dropped (%s); reconnect %d/%d from block %s",
                    self.name,
                    e,
                    failures,
                    self.max_reconnects,
                    self._resume_block(),
                )
                self._stop.wait(self.reconnect_delay * failures)
            except Exception as e:
                logger.exception("Subscription %s failed", self.name)
                self._fail(SubscriptionDropped(f"Subscription {self.name} failed: {e}", terminal=True), e)
                return

        self._set_state(SubscriptionState.CLOSED)

    def _fail(self, error: SubscriptionDropped, cause: BaseException) -> None:
        error.__cause__ = cause
        self._error = error
        self._set_state(SubscriptionState.CLOSED)
        logger.error("%s", error)

    # ============ Ordering and dedupe ============

    def _advance(self, block_number: int) -> None:
        if self._cursor is None or block_number > self._cursor:
            self._cursor = block_number
        if self._open_block is not None and self._open_block <= self._cursor:
            self._open_block = None
            self._recent = set()

    def _accept_log(self, log: LogEvent) -> bool:
        block = log.block_number
        if self._cursor is None:
            self._cursor = block - 1
        if block <= self._cursor or log.triple in self._recent:
            return False
        if self._open_block is None or block > self._open_block:
            if self._open_block is not None:
                self._cursor = self._open_block
            self._open_block = block
            self._recent = set()
        self._recent.add(log.triple)
        return True

    def _handle(self, item: Any) -> None:
        if isinstance(item, Checkpoint):
            self._advance(item.block_number)
            return

        if self.source.kind == HEADS:
            try:
                header = BlockHeader.from_rpc(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed header payload: %s", e)
                self._deliver(SkippedEvent(reason=f"malformed header: {e}", raw=dict(item)))
                return
            if self._cursor is not None and header.number <= self._cursor:
                return
            self._cursor = header.number
            self._deliver(header)
            return

        try:
            log = LogEvent.from_rpc(item)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed log payload: %s", e)
            self._deliver(SkippedEvent(reason=f"malformed log: {e}", raw=dict(item)))
            return

        if not self._accept_log(log):
            logger.debug("Suppressed duplicate log %s", log.triple)
            return

        if log.removed:
            logger.warning("Log %s was removed by a reorg", log.triple)
            self._deliver(SkippedEvent(reason="removed by reorg", log=log, raw=dict(item)))
            return

        if self.registry is not None:
            try:
                log = self.registry.decode(log)
            except DecodeMismatch as e:
                logger.warning("Skipping log %s: %s", log.triple, e)
                self._deliver(SkippedEvent(reason=str(e), log=log, raw=dict(item)))
                return

        self._deliver(log)

    def _deliver(self, item: Delivered) -> None:
        if self.backpressure is Backpressure.BLOCK:
            while not self._stop.is_set():
                try:
                    self._queue.put(item, timeout=_GET_SLICE)
                    return
                except queue.Full:
                    continue
            return

        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    oldest = self._queue.get_nowait()
                except queue.Empty:
                    continue
                self._dropped += 1
                logger.warning("Subscription %s queue full; dropped oldest item %r", self.name, oldest)

    # ============ Consumer ============

    def get(self, timeout: Optional[float] = None) -> Delivered:
        """
        Next delivered item.

        Raises:
            queue.Empty: Nothing arrived within ``timeout``
            SubscriptionDropped: The manager gave up (terminal)
            InvalidStateError: The subscription was closed and is drained
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = _GET_SLICE
            if deadline is not None:
                wait = min(wait, max(deadline - time.monotonic(), 0.0))
            try:
                return self._queue.get(timeout=wait) if wait > 0 else self._queue.get_nowait()
            except queue.Empty:
                if self._error is not None:
                    raise self._error
                if self._state is SubscriptionState.CLOSED:
                    raise InvalidStateError(f"Subscription {self.name} is closed")
                if deadline is not None and time.monotonic() >= deadline:
                    raise

    def __iter__(self) -> Iterator[Delivered]:
        while True:
            try:
                yield self.get()
            except InvalidStateError:
                return
