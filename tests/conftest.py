"""
Shared fixtures: an in-memory JSON-RPC node served through
httpx.MockTransport, so no test needs network access.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import pytest

from kerykeion.pneuma.models import Account
from kerykeion.pneuma.rpc import RpcClient

SENDER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
RECIPIENT = "0x4592d8f8d7b001e72cb26a73e4fa1806a51ac79d"


@dataclass
class NodeFault:
    """JSON-RPC error object returned by the fake node."""

    message: str
    code: int = -32000
    data: Any = None


def sequence(*outcomes: Any) -> Callable[[list], Any]:
    """Responder returning ``outcomes`` in order; the last one repeats.

    Exceptions in the list are raised instead of returned.
    """
    remaining = list(outcomes)

    def respond(params: list) -> Any:
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return respond


class FakeNode:
    """
    Minimal JSON-RPC node.

    ``node.on(method, outcome)`` registers a value, a NodeFault, an
    httpx.Response or a callable taking the params list.
    """

    def __init__(self) -> None:
        self.handlers: dict[str, Any] = {}
        self.calls: list[tuple[str, list]] = []

    def on(self, method: str, outcome: Any) -> "FakeNode":
        self.handlers[method] = outcome
        return self

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def params(self, method: str) -> list[list]:
        return [params for name, params in self.calls if name == method]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params, request_id = body["method"], body.get("params", []), body["id"]
        self.calls.append((method, params))

        if method not in self.handlers:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"{method} not found"}},
            )

        outcome = self.handlers[method]
        if callable(outcome):
            outcome = outcome(params)
        if isinstance(outcome, httpx.Response):
            return outcome
        if isinstance(outcome, NodeFault):
            error = {"code": outcome.code, "message": outcome.message}
            if outcome.data is not None:
                error["data"] = outcome.data
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "error": error})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "result": outcome})


@pytest.fixture()
def node() -> FakeNode:
    """Fake node preloaded with a fee-market chain (id 1337)."""
    fake = FakeNode()
    fake.on("eth_chainId", "0x539")
    fake.on("eth_blockNumber", "0x64")
    fake.on("eth_getTransactionCount", "0x5")
    fake.on("eth_getBalance", hex(10**18))
    fake.on("eth_getBlockByNumber", {
        "number": "0x64",
        "hash": "0x" + "ab" * 32,
        "parentHash": "0x" + "aa" * 32,
        "timestamp": "0x6500",
        "baseFeePerGas": hex(10**9),
    })
    fake.on("eth_maxPriorityFeePerGas", hex(10**9))
    fake.on("eth_gasPrice", hex(3 * 10**9))
    fake.on("eth_estimateGas", "0x5208")
    return fake


@pytest.fixture()
def rpc(node: FakeNode) -> RpcClient:
    client = httpx.Client(transport=httpx.MockTransport(node))
    rpc = RpcClient("http://node.test", backoff=0.0, client=client, sleep=lambda seconds: None)
    yield rpc
    client.close()


@pytest.fixture()
def account() -> Account:
    return Account.from_key(SENDER_KEY)


@pytest.fixture()
def other_account() -> Account:
    return Account.from_key(OTHER_KEY)
