"""
Stream sources for the subscription manager.

A source opens one stream starting at a block and yields raw node
payloads (log objects or block headers) plus Checkpoint markers meaning
"everything up to this block has been yielded". Any exception ends the
stream; reconnecting is the manager's job.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Protocol, Union

from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.sync.client import connect

from ..errors import SubscriptionDropped
from ..logging import get_logger
from ..utils import normalize_address, to_data, to_quantity
from .rpc import RpcClient

logger = get_logger("pneuma.sources")

LOGS = "logs"
HEADS = "newHeads"


@dataclass(frozen=True)
class Checkpoint:
    block_number: int


@dataclass(frozen=True)
class LogFilter:
    """Contract addresses plus an optional topic0."""

    addresses: tuple[str, ...] = ()
    topic0: Optional[bytes] = None

    @classmethod
    def create(cls, addresses: Union[str, list[str], tuple[str, ...]] = (), topic0: Optional[bytes] = None) -> "LogFilter":
        if isinstance(addresses, str):
            addresses = (addresses,)
        return cls(addresses=tuple(normalize_address(a) for a in addresses), topic0=topic0)

    def params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.addresses:
            params["address"] = list(self.addresses)
        if self.topic0 is not None:
            params["topics"] = [to_data(self.topic0)]
        return params

    def range(self, from_block: int, to_block: int) -> dict[str, Any]:
        return {**self.params(), "fromBlock": to_quantity(from_block), "toBlock": to_quantity(to_block)}


Item = Union[dict, Checkpoint]


class StreamSource(Protocol):
    kind: str

    def open(self, start_block: Optional[int], stop: threading.Event) -> Iterator[Item]:
        ...


def _backfill_logs(rpc: RpcClient, log_filter: LogFilter, start: int, head: int, chunk: int) -> Iterator[Item]:
    for low in range(start, head + 1, chunk):
        high = min(low + chunk - 1, head)
        yield from rpc.get_logs(log_filter.range(low, high))
        yield Checkpoint(high)


def _backfill_heads(rpc: RpcClient, start: int, head: int) -> Iterator[Item]:
    for number in range(start, head + 1):
        header = rpc.get_block(number)
        if header is None:
            raise SubscriptionDropped(f"Block {number} not available during backfill")
        yield header


class PollingSource:
    """
    Polls eth_getLogs or eth_getBlockByNumber over HTTP.

    Args:
        rpc: Session RPC client
        kind: LOGS or HEADS
        log_filter: Filter for LOGS streams
        poll_interval: Seconds between head checks
        chunk: Maximum block span per eth_getLogs query
    """

    def __init__(
        self,
        rpc: RpcClient,
        kind: str = LOGS,
        log_filter: Optional[LogFilter] = None,
        poll_interval: float = 2.0,
        chunk: int = 2000,
    ) -> None:
        if kind not in (LOGS, HEADS):
            raise ValueError(f"Unknown stream kind: {kind}")
        self.rpc = rpc
        self.kind = kind
        self.log_filter = log_filter or LogFilter()
        self.poll_interval = poll_interval
        self.chunk = chunk

    def open(self, start_block: Optional[int], stop: threading.Event) -> Iterator[Item]:
        if start_block is None:
            next_block = self.rpc.block_number() + 1
            # Pin the live baseline so a reconnect resumes from here
            yield Checkpoint(next_block - 1)
        else:
            next_block = start_block
        logger.debug("Polling %s from block %d", self.kind, next_block)

        while not stop.is_set():
            head = self.rpc.block_number()
            if head >= next_block:
                if self.kind == LOGS:
                    yield from _backfill_logs(self.rpc, self.log_filter, next_block, head, self.chunk)
                else:
                    yield from _backfill_heads(self.rpc, next_block, head)
                next_block = head + 1
            stop.wait(self.poll_interval)


class WebSocketSource:
    """
    Push subscription via eth_subscribe over a websocket.

    On open it subscribes first, then backfills from ``start_block`` to the
    current head over HTTP, then yields live notifications. Overlap between
    backfill and live items is removed by the manager. Without a
    ``start_block`` the head read before subscribing becomes the baseline,
    and blocks mined while the subscription is set up are backfilled.
    """

    def __init__(
        self,
        ws_url: str,
        rpc: RpcClient,
        kind: str = LOGS,
        log_filter: Optional[LogFilter] = None,
        open_timeout: float = 10.0,
        recv_timeout: float = 1.0,
        chunk: int = 2000,
    ) -> None:
        if kind not in (LOGS, HEADS):
            raise ValueError(f"Unknown stream kind: {kind}")
        self.ws_url = ws_url
        self.rpc = rpc
        self.kind = kind
        self.log_filter = log_filter or LogFilter()
        self.open_timeout = open_timeout
        self.recv_timeout = recv_timeout
        self.chunk = chunk

    def _subscribe_params(self) -> list:
        if self.kind == LOGS:
            return [LOGS, self.log_filter.params()]
        return [HEADS]

    def _await_ack(self, ws: Any) -> str:
        while True:
            message = json.loads(ws.recv(timeout=self.open_timeout))
            if message.get("id") != 1:
                continue
            if "error" in message:
                raise SubscriptionDropped(f"eth_subscribe rejected: {message['error']}")
            return message["result"]

    def open(self, start_block: Optional[int], stop: threading.Event) -> Iterator[Item]:
        baseline = None
        if start_block is None:
            baseline = self.rpc.block_number()
            start_block = baseline + 1

        try:
            with connect(self.ws_url, open_timeout=self.open_timeout) as ws:
                ws.send(json.dumps({
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "eth_subscribe",
                    "params": self._subscribe_params(),
                }))
                subscription_id = self._await_ack(ws)
                logger.info("Subscribed to %s (%s)", self.kind, subscription_id)
                if baseline is not None:
                    yield Checkpoint(baseline)

                head = self.rpc.block_number()
                if self.kind == LOGS:
                    yield from _backfill_logs(self.rpc, self.log_filter, start_block, head, self.chunk)
                else:
                    yield from _backfill_heads(self.rpc, start_block, head)

                while not stop.is_set():
                    try:
                        raw = ws.recv(timeout=self.recv_timeout)
                    except TimeoutError:
                        continue
                    message = json.loads(raw)
                    if message.get("method") != "eth_subscription":
                        continue
                    params = message.get("params") or {}
                    if params.get("subscription") == subscription_id:
                        yield params["result"]
        except ConnectionClosed as e:
            raise SubscriptionDropped(f"Websocket closed: {e}") from e
        except (InvalidHandshake, InvalidURI, OSError) as e:
            raise SubscriptionDropped(f"Websocket connect failed: {e}") from e
        except json.JSONDecodeError as e:
            raise SubscriptionDropped(f"Websocket sent invalid JSON: {e}") from e
