"""Tests for the JSON-RPC client: retries, deadlines and error classification."""

from __future__ import annotations

import httpx
import pytest

from conftest import FakeNode, NodeFault, sequence
from kerykeion.errors import (
    ConnectivityError,
    InsufficientFunds,
    NonceConflict,
    ProtocolError,
    RpcApplicationError,
)
from kerykeion.pneuma.rpc import RpcClient


class TestReads:

    def test_chain_id_and_block_number(self, rpc: RpcClient) -> None:
        assert rpc.chain_id() == 1337
        assert rpc.block_number() == 100

    def test_transaction_count_uses_pending(self, rpc: RpcClient, node: FakeNode) -> None:
        assert rpc.get_transaction_count("0x" + "01" * 20) == 5
        assert node.params("eth_getTransactionCount")[0][1] == "pending"

    def test_block_numbers_are_hex_encoded(self, rpc: RpcClient, node: FakeNode) -> None:
        rpc.get_block(100)
        assert node.params("eth_getBlockByNumber")[0] == ["0x64", False]

    def test_base_fee_from_latest_header(self, rpc: RpcClient) -> None:
        assert rpc.base_fee() == 10**9

    def test_base_fee_absent_on_legacy_chain(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_getBlockByNumber", {"number": "0x1", "hash": "0x" + "00" * 32})
        assert rpc.base_fee() is None

    def test_call_returns_bytes(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_call", "0x" + "00" * 31 + "2a")
        assert rpc.call({"to": "0x" + "01" * 20, "data": "0x"}) == bytes(31) + b"\x2a"

    def test_get_logs_none_is_empty(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_getLogs", None)
        assert rpc.get_logs({}) == []

    def test_get_logs_rejects_non_list(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_getLogs", {"oops": True})
        with pytest.raises(ProtocolError):
            rpc.get_logs({})


class TestRetries:

    def test_read_retried_after_connect_error(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_blockNumber", sequence(httpx.ConnectError("refused"), "0x10"))
        assert rpc.block_number() == 16
        assert node.count("eth_blockNumber") == 2

    def test_read_retried_after_http_503(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_blockNumber", sequence(httpx.Response(503), "0x10"))
        assert rpc.block_number() == 16

    def test_read_gives_up_after_retries(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_blockNumber", sequence(httpx.ReadTimeout("slow")))
        with pytest.raises(ConnectivityError):
            rpc.block_number()
        assert node.count("eth_blockNumber") == rpc.retries

    def test_retries_wait_linearly(self, node: FakeNode) -> None:
        waits: list[float] = []
        client = httpx.Client(transport=httpx.MockTransport(node))
        rpc = RpcClient("http://node.test", retries=3, backoff=0.5, client=client, sleep=waits.append)
        node.on("eth_blockNumber", sequence(httpx.ConnectError("refused")))

        with pytest.raises(ConnectivityError):
            rpc.block_number()
        assert waits == [0.5, 1.0]

    def test_application_error_not_retried(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_call", NodeFault("execution reverted", code=3))
        with pytest.raises(RpcApplicationError) as exc_info:
            rpc.call({"to": "0x" + "01" * 20})
        assert exc_info.value.code == 3
        assert node.count("eth_call") == 1

    def test_send_raw_transaction_never_retried(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_sendRawTransaction", sequence(httpx.ConnectError("refused"), "0x" + "00" * 32))
        with pytest.raises(ConnectivityError):
            rpc.send_raw_transaction(b"\x02\x01")
        assert node.count("eth_sendRawTransaction") == 1


class TestClassification:

    def test_http_4xx_is_protocol_error(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_chainId", httpx.Response(401))
        with pytest.raises(ProtocolError):
            rpc.chain_id()

    def test_invalid_json_is_protocol_error(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_chainId", httpx.Response(200, content=b"<html>"))
        with pytest.raises(ProtocolError):
            rpc.chain_id()

    def test_missing_result_is_protocol_error(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_chainId", httpx.Response(200, json={"jsonrpc": "2.0", "id": 1}))
        with pytest.raises(ProtocolError):
            rpc.chain_id()

    @pytest.mark.parametrize(
        "message",
        ["nonce too low", "already known", "replacement transaction underpriced"],
    )
    def test_nonce_conflicts(self, rpc: RpcClient, node: FakeNode, message: str) -> None:
        node.on("eth_sendRawTransaction", NodeFault(message))
        with pytest.raises(NonceConflict):
            rpc.send_raw_transaction(b"\x02\x01")

    def test_insufficient_funds(self, rpc: RpcClient, node: FakeNode) -> None:
        node.on("eth_sendRawTransaction", NodeFault("insufficient funds for gas * price + value"))
        with pytest.raises(InsufficientFunds) as exc_info:
            rpc.send_raw_transaction(b"\x02\x01")
        assert isinstance(exc_info.value.__cause__, RpcApplicationError)
