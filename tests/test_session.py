"""End-to-end tests of a Session against the in-memory node."""

from __future__ import annotations

import pytest

from conftest import RECIPIENT, FakeNode, NodeFault
from kerykeion.errors import (
    ConfigError,
    EstimationFailure,
    InsufficientFunds,
    NonceConflict,
    RpcApplicationError,
)
from kerykeion.pneuma.abi import EventSchema, keccak256
from kerykeion.pneuma.confirm import TxState
from kerykeion.pneuma.models import Account, BlockHeader, LogEvent
from kerykeion.pneuma.rpc import RpcClient
from kerykeion.pneuma.sources import LOGS, PollingSource, WebSocketSource
from kerykeion.pneuma.tx import decode_signed_payload
from kerykeion.session import Session
from kerykeion.utils import from_data, normalize_address

ITEM_SET = "ItemSet(bytes32 indexed key, bytes32 value)"
CONTRACT = "0x" + "ef" * 20


def accept_raw(params: list) -> str:
    return "0x" + keccak256(from_data(params[0])).hex()


def mined(status: str = "0x1", contract: str | None = None):
    def respond(params: list) -> dict:
        return {
            "transactionHash": params[0],
            "status": status,
            "blockNumber": "0x65",
            "blockHash": "0x" + "cd" * 32,
            "gasUsed": "0x5208",
            "contractAddress": contract,
            "logs": [],
        }

    return respond


@pytest.fixture()
def session(rpc: RpcClient, node: FakeNode) -> Session:
    node.on("eth_sendRawTransaction", accept_raw)
    node.on("eth_getTransactionReceipt", mined())
    with Session(rpc, poll_interval=0.01, receipt_timeout=5) as session:
        yield session


def sent_payload(node: FakeNode) -> dict:
    return decode_signed_payload(node.params("eth_sendRawTransaction")[-1][0])


class TestSend:

    def test_value_transfer(self, session: Session, node: FakeNode, account: Account) -> None:
        result = session.send(account, RECIPIENT, value=10**15)
        assert result.state is TxState.MINED_SUCCESS

        payload = sent_payload(node)
        assert payload["nonce"] == 5
        assert payload["value"] == 10**15
        assert payload["chainId"] == 1337
        assert payload["maxFeePerGas"] == 3 * 10**9
        assert payload["gas"] == 24150
        assert payload["sender"] == account.address

    def test_consecutive_sends_use_consecutive_nonces(
        self, session: Session, node: FakeNode, account: Account
    ) -> None:
        session.send(account, RECIPIENT, value=1, wait=False)
        session.send(account, RECIPIENT, value=1, wait=False)
        nonces = [decode_signed_payload(p[0])["nonce"] for p in node.params("eth_sendRawTransaction")]
        assert nonces == [5, 6]

    def test_no_wait(self, session: Session, node: FakeNode, account: Account) -> None:
        result = session.send(account, RECIPIENT, value=1, wait=False)
        assert result.state is TxState.BROADCAST
        assert node.count("eth_getTransactionReceipt") == 0

    def test_reverted(self, session: Session, node: FakeNode, account: Account) -> None:
        node.on("eth_getTransactionReceipt", mined(status="0x0"))
        assert session.send(account, RECIPIENT, value=1).state is TxState.MINED_FAILURE

    def test_chain_id_mismatch(self, rpc: RpcClient, node: FakeNode, account: Account) -> None:
        session = Session(rpc, expected_chain_id=1)
        with pytest.raises(ConfigError):
            session.send(account, RECIPIENT, value=1)
        assert node.count("eth_getTransactionCount") == 0

    def test_chain_id_cached(self, session: Session, node: FakeNode) -> None:
        assert session.chain_id == 1337
        assert session.chain_id == 1337
        assert node.count("eth_chainId") == 1


class TestNonceRecovery:

    def test_conflict_resets_nonce_state(self, session: Session, node: FakeNode, account: Account) -> None:
        node.on("eth_sendRawTransaction", NodeFault("nonce too low"))
        with pytest.raises(NonceConflict):
            session.send(account, RECIPIENT, value=1)
        assert session.planner.next_nonce(account) == 5

    def test_rejected_broadcast_releases_nonce(
        self, session: Session, node: FakeNode, account: Account
    ) -> None:
        node.on("eth_sendRawTransaction", NodeFault("insufficient funds for gas * price + value"))
        with pytest.raises(InsufficientFunds):
            session.send(account, RECIPIENT, value=1)
        assert session.planner.next_nonce(account) == 5

    def test_rejected_earlier_nonce_is_reused(
        self, session: Session, node: FakeNode, account: Account
    ) -> None:
        first = session.prepare(account, RECIPIENT, value=1)
        second = session.prepare(account, RECIPIENT, value=2)
        assert (first.unsigned.nonce, second.unsigned.nonce) == (5, 6)

        node.on("eth_sendRawTransaction", NodeFault("intrinsic gas too low"))
        with pytest.raises(RpcApplicationError):
            session.submit(account, first)

        node.on("eth_sendRawTransaction", accept_raw)
        retry = session.prepare(account, RECIPIENT, value=1)
        assert retry.unsigned.nonce == 5
        assert session.prepare(account, RECIPIENT, value=3).unsigned.nonce == 7

    def test_funds_checked_before_signing(self, session: Session, node: FakeNode, account: Account) -> None:
        node.on("eth_getBalance", "0x0")
        with pytest.raises(InsufficientFunds):
            session.send(account, RECIPIENT, value=1)
        assert node.count("eth_sendRawTransaction") == 0
        assert session.planner.next_nonce(account) == 5

    def test_estimation_failure_releases_nonce(
        self, session: Session, node: FakeNode, account: Account
    ) -> None:
        node.on("eth_estimateGas", NodeFault("execution reverted: paused", code=3))
        with pytest.raises(EstimationFailure) as exc_info:
            session.send(account, RECIPIENT, data=b"\x01\x02\x03\x04")
        assert exc_info.value.revert_reason == "paused"
        assert session.planner.next_nonce(account) == 5


class TestContracts:

    def test_transact(self, session: Session, node: FakeNode, account: Account) -> None:
        session.transact(account, CONTRACT, "transfer(address,uint256)", [RECIPIENT, 5])
        payload = sent_payload(node)
        assert payload["to"] == normalize_address(CONTRACT)
        assert payload["data"][:4].hex() == "a9059cbb"
        assert len(payload["data"]) == 68

    def test_deploy(self, session: Session, node: FakeNode, account: Account) -> None:
        node.on("eth_getTransactionReceipt", mined(contract=CONTRACT))
        result = session.deploy(account, "0x6000", ["uint256"], [7])
        assert result.contract_address == normalize_address(CONTRACT)

        payload = sent_payload(node)
        assert payload["to"] is None
        assert payload["data"] == b"\x60\x00" + (7).to_bytes(32, "big")

    def test_read(self, session: Session, node: FakeNode) -> None:
        node.on("eth_call", "0x" + "00" * 31 + "2a")
        assert session.read(CONTRACT, "balanceOf(address)", [RECIPIENT], returns=["uint256"]) == (42,)
        call, block = node.params("eth_call")[0]
        assert call["to"] == normalize_address(CONTRACT)
        assert call["data"].startswith("0x" + keccak256(b"balanceOf(address)")[:4].hex())
        assert block == "latest"

    def test_balance_and_receipt(self, session: Session) -> None:
        assert session.balance(RECIPIENT) == 10**18
        receipt = session.receipt("0x" + "aa" * 32)
        assert receipt is not None and receipt.succeeded

    def test_receipt_pending(self, session: Session, node: FakeNode) -> None:
        node.on("eth_getTransactionReceipt", None)
        assert session.receipt("0x" + "aa" * 32) is None


class TestSubscriptions:

    def test_polling_logs(self, session: Session, node: FakeNode) -> None:
        schema = EventSchema.parse(ITEM_SET)
        topics, data = schema.encode_log({"key": b"\x01" * 32, "value": b"\x02" * 32})
        node.on("eth_getLogs", [
            {
                "address": CONTRACT,
                "blockNumber": hex(block),
                "blockHash": "0x" + f"{block:064x}",
                "transactionHash": "0x" + "77" * 32,
                "logIndex": "0x0",
                "topics": ["0x" + t.hex() for t in topics],
                "data": "0x" + data.hex(),
            }
            for block in (99, 100)
        ])

        sub = session.subscribe_logs(addresses=CONTRACT, events=[ITEM_SET], start_block=99)
        try:
            first, second = sub.get(timeout=5), sub.get(timeout=5)
        finally:
            sub.close()

        assert isinstance(first, LogEvent) and isinstance(second, LogEvent)
        assert [first.block_number, second.block_number] == [99, 100]
        assert second.decoded.args["value"] == b"\x02" * 32

        query = node.params("eth_getLogs")[0][0]
        assert query["address"] == [normalize_address(CONTRACT)]
        assert query["fromBlock"] == "0x63"
        assert query["toBlock"] == "0x64"

    def test_polling_heads(self, session: Session) -> None:
        sub = session.subscribe_heads(start_block=100)
        try:
            header = sub.get(timeout=5)
        finally:
            sub.close()
        assert isinstance(header, BlockHeader)
        assert header.number == 100
        assert header.base_fee == 10**9

    def test_source_selection(self, rpc: RpcClient) -> None:
        assert isinstance(Session(rpc)._source(LOGS), PollingSource)
        assert isinstance(Session(rpc, ws_url="ws://node.test")._source(LOGS), WebSocketSource)
